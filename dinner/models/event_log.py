"""
Event log model
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON

from dinner.core.db import Base
from dinner.core.time import utcnow

class EventLog(Base):
    __tablename__ = "event_log"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    match_plan_id = Column(Integer, ForeignKey("match_plans.id"), nullable=True)
    action = Column(String(64), nullable=False)
    actor = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
