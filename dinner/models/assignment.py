"""
Assignment model
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.time import utcnow

class Assignment(Base):
    __tablename__ = "assignments"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    couple_id = Column(Integer, ForeignKey("couples.id"), nullable=False, index=True)
    course = Column(String(20), nullable=False)
    is_host = Column(Boolean, nullable=False, default=False)
    max_guests = Column(Integer, nullable=False, default=6)
    is_flex_host = Column(Boolean, nullable=False, default=False)
    flex_extra_capacity = Column(Integer, nullable=False, default=0)
    is_emergency_host = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    couple = relationship("Couple")
