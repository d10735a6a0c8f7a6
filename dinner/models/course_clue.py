"""
Course clue allocation model
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint

from dinner.core.db import Base
from dinner.core.time import utcnow

class CourseClue(Base):
    __tablename__ = "course_clues"

    id = Column(Integer, primary_key=True, index=True)
    couple_id = Column(Integer, ForeignKey("couples.id"), nullable=False, index=True)
    course = Column(String(20), nullable=False)
    clue_indices = Column(JSON, nullable=False, default=list)
    allocated_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("couple_id", "course", name="uq_course_clue"),)
