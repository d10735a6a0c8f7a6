"""Time helpers. All persisted timestamps are naive UTC."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time without tzinfo."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


__all__ = ["utcnow"]
