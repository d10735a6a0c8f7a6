"""
Event model
"""

from datetime import time
from sqlalchemy import Column, Integer, String, Date, Time, DateTime, JSON
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.time import utcnow

class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    event_date = Column(Date, nullable=False)

    # Local wall-clock start time of each course
    starter_time = Column(Time, nullable=False, default=time(17, 30))
    main_time = Column(Time, nullable=False, default=time(19, 0))
    dessert_time = Column(Time, nullable=False, default=time(20, 30))
    afterparty_time = Column(Time, nullable=True)

    # Cumulative organizer delay applied to every course
    time_offset_minutes = Column(Integer, nullable=False, default=0)
    time_offset_updated_at = Column(DateTime, nullable=True)
    dropout_cutoff_hours = Column(Integer, nullable=False, default=24)

    # {"main": {"street_minutes_before": 20}, ...}
    course_timing_offsets = Column(JSON, nullable=True)

    active_match_plan_id = Column(Integer, nullable=True)

    # Advisory rematch lock, set only when absent or expired
    rematch_lock_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    couples = relationship("Couple", back_populates="event", cascade="all, delete-orphan")
    match_plans = relationship("MatchPlan", back_populates="event", cascade="all, delete-orphan")
    timing = relationship("EventTiming", back_populates="event", uselist=False, cascade="all, delete-orphan")
