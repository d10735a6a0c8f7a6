"""
Course pairing model
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.time import utcnow

class CoursePairing(Base):
    __tablename__ = "course_pairings"

    id = Column(Integer, primary_key=True, index=True)
    match_plan_id = Column(Integer, ForeignKey("match_plans.id"), nullable=False, index=True)
    course = Column(String(20), nullable=False)
    host_couple_id = Column(Integer, ForeignKey("couples.id"), nullable=False)
    guest_couple_id = Column(Integer, ForeignKey("couples.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    match_plan = relationship("MatchPlan", back_populates="pairings")
