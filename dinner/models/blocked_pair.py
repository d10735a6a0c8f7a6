"""
Blocked pair model
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from dinner.core.db import Base
from dinner.core.time import utcnow

class BlockedPair(Base):
    __tablename__ = "blocked_pairs"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    couple_a_id = Column(Integer, ForeignKey("couples.id"), nullable=False)
    couple_b_id = Column(Integer, ForeignKey("couples.id"), nullable=False)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    event = relationship("Event")

    def as_tuple(self):
        return (self.couple_a_id, self.couple_b_id)
