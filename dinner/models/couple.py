"""
Couple model
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, JSON
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.enums import CoupleLifecycle, CoupleRole
from dinner.core.errors import InvalidStateError
from dinner.core.time import utcnow

class Couple(Base):
    __tablename__ = "couples"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)

    invited_name = Column(String(255), nullable=False)
    invited_birth_year = Column(Integer, nullable=True)
    invited_fun_facts = Column(JSON, nullable=True)
    partner_name = Column(String(255), nullable=True)
    partner_birth_year = Column(Integer, nullable=True)
    partner_fun_facts = Column(JSON, nullable=True)

    address = Column(String(255), nullable=False)
    address_notes = Column(String(255), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    course_preference = Column(String(20), nullable=True)
    person_count = Column(Integer, nullable=False, default=2)
    role = Column(String(20), nullable=False, default=CoupleRole.NORMAL.value)

    # Soft delete, rows are never removed
    cancelled = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    event = relationship("Event", back_populates="couples")

    @property
    def display_name(self) -> str:
        if self.partner_name:
            return f"{self.invited_name} & {self.partner_name}"
        return self.invited_name

    @property
    def lifecycle(self) -> CoupleLifecycle:
        if self.cancelled:
            return CoupleLifecycle.CANCELLED
        if self.role == CoupleRole.RESERVE.value:
            return CoupleLifecycle.RESERVE
        return CoupleLifecycle.ACTIVE

    @property
    def is_matchable(self) -> bool:
        return self.lifecycle == CoupleLifecycle.ACTIVE

    @property
    def coordinates(self):
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)

    def cancel(self) -> None:
        if self.cancelled:
            raise InvalidStateError("Couple has already dropped out", {"couple_id": self.id})
        self.cancelled = True
        self.cancelled_at = utcnow()
