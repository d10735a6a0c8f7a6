"""
Match plan model
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.enums import PlanStatus
from dinner.core.time import utcnow

class MatchPlan(Base):
    __tablename__ = "match_plans"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=PlanStatus.DRAFT.value)
    frozen_courses = Column(JSON, nullable=False, default=list)
    stats = Column(JSON, nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    superseded_at = Column(DateTime, nullable=True)
    superseded_by = Column(Integer, ForeignKey("match_plans.id"), nullable=True)

    # Relationships
    event = relationship("Event", back_populates="match_plans")
    pairings = relationship("CoursePairing", back_populates="match_plan", cascade="all, delete-orphan")
    envelopes = relationship("Envelope", back_populates="match_plan", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("event_id", "version", name="uq_match_plan_version"),)

    def supersede(self, successor_id: int) -> None:
        self.status = PlanStatus.SUPERSEDED.value
        self.superseded_at = utcnow()
        self.superseded_by = successor_id
