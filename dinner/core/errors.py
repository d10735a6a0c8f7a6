"""
Exception taxonomy for the matching engine
"""

from typing import Any, Optional


class DinnerError(Exception):
    """Base class for domain errors carrying enough detail to act on"""

    error_code = "dinner_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "error_code": self.error_code, "details": self.details}


class RematchConflictError(DinnerError):
    """Another rematch holds the event lock"""

    error_code = "rematch_conflict"


class InvalidStateError(DinnerError):
    """Operation rejected before any mutation (frozen course, cancelled or reserve couple...)"""

    error_code = "invalid_state"


class FrozenEnvelopeError(InvalidStateError):
    """An activated envelope may only be cancelled"""

    error_code = "frozen_envelope"


class PersistenceError(DinnerError):
    """An underlying write failed part way through a multi-step operation"""

    error_code = "persistence_failure"

    def __init__(self, step: str, reason: str, details: Optional[dict] = None):
        super().__init__(f"{step} failed: {reason}", details)
        self.step = step
        self.reason = reason
