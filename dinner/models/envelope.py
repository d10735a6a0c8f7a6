"""
Envelope model

The six reveal timestamps and ``activated_at`` keep their column names so
external tooling that reads and writes them directly stays compatible.
Once ``activated_at`` is set the envelope is frozen: destination and
timestamps can no longer change, only ``cancel()`` is allowed.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.enums import EnvelopeLifecycle
from dinner.core.errors import FrozenEnvelopeError
from dinner.core.time import utcnow

LADDER_FIELDS = ("teasing_at", "clue_1_at", "clue_2_at", "street_at", "number_at", "opened_at")

class Envelope(Base):
    __tablename__ = "envelopes"

    id = Column(Integer, primary_key=True, index=True)
    match_plan_id = Column(Integer, ForeignKey("match_plans.id"), nullable=False, index=True)
    couple_id = Column(Integer, ForeignKey("couples.id"), nullable=False, index=True)
    course = Column(String(20), nullable=False)
    host_couple_id = Column(Integer, ForeignKey("couples.id"), nullable=True)
    destination_address = Column(String(255), nullable=True)
    destination_notes = Column(String(255), nullable=True)
    scheduled_at = Column(DateTime, nullable=False)

    teasing_at = Column(DateTime, nullable=True)
    clue_1_at = Column(DateTime, nullable=True)
    clue_2_at = Column(DateTime, nullable=True)
    street_at = Column(DateTime, nullable=True)
    number_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)

    activated_at = Column(DateTime, nullable=True)
    cancelled = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)
    cycling_minutes = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    match_plan = relationship("MatchPlan", back_populates="envelopes")

    @property
    def lifecycle(self) -> EnvelopeLifecycle:
        if self.cancelled:
            return EnvelopeLifecycle.CANCELLED
        if self.activated_at is not None:
            return EnvelopeLifecycle.ACTIVATED
        return EnvelopeLifecycle.PENDING

    @property
    def is_frozen(self) -> bool:
        return self.activated_at is not None

    def ladder(self) -> dict:
        return {name: getattr(self, name) for name in LADDER_FIELDS}

    def _ensure_editable(self) -> None:
        if self.is_frozen:
            raise FrozenEnvelopeError(
                "Envelope has already been revealed and can only be cancelled",
                {"envelope_id": self.id, "couple_id": self.couple_id, "course": self.course},
            )

    def set_times(self, times: dict, scheduled_at=None) -> None:
        self._ensure_editable()
        for name in LADDER_FIELDS:
            setattr(self, name, times[name])
        if scheduled_at is not None:
            self.scheduled_at = scheduled_at

    def set_destination(self, host_couple_id, address, notes) -> None:
        self._ensure_editable()
        self.host_couple_id = host_couple_id
        self.destination_address = address
        self.destination_notes = notes

    def activate(self, at=None) -> None:
        if self.activated_at is None:
            self.activated_at = at or utcnow()

    def cancel(self) -> bool:
        """Cancel the envelope; returns False when it was already cancelled"""
        if self.cancelled:
            return False
        self.cancelled = True
        self.cancelled_at = utcnow()
        return True
