"""
Database models package
"""

from .event import Event
from .event_timing import EventTiming
from .couple import Couple
from .match_plan import MatchPlan
from .assignment import Assignment
from .course_pairing import CoursePairing
from .envelope import Envelope
from .blocked_pair import BlockedPair
from .course_clue import CourseClue
from .event_log import EventLog

__all__ = [
    "Event",
    "EventTiming",
    "Couple",
    "MatchPlan",
    "Assignment",
    "CoursePairing",
    "Envelope",
    "BlockedPair",
    "CourseClue",
    "EventLog",
]
