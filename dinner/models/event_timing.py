"""
Event timing model
"""

from sqlalchemy import Column, Integer, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.time import utcnow

class EventTiming(Base):
    __tablename__ = "event_timing"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, unique=True)

    # Minutes before the course starts
    teasing_minutes_before = Column(Integer, nullable=False, default=360)
    clue_1_minutes_before = Column(Integer, nullable=False, default=120)
    clue_2_minutes_before = Column(Integer, nullable=False, default=30)
    street_minutes_before = Column(Integer, nullable=False, default=15)
    number_minutes_before = Column(Integer, nullable=False, default=5)

    during_meal_clue_interval_minutes = Column(Integer, nullable=False, default=15)
    distance_adjustment_enabled = Column(Boolean, nullable=False, default=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    event = relationship("Event", back_populates="timing")
