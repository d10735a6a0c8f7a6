"""
Domain enumerations shared by models, schemas and services
"""

from enum import Enum


class Course(str, Enum):
    STARTER = "starter"
    MAIN = "main"
    DESSERT = "dessert"
    AFTERPARTY = "afterparty"


# Courses that are hosted at a couple's home and matched
MEAL_COURSES = (Course.STARTER, Course.MAIN, Course.DESSERT)


class CoupleRole(str, Enum):
    NORMAL = "normal"
    RESERVE = "reserve"


class CoupleLifecycle(str, Enum):
    ACTIVE = "active"
    RESERVE = "reserve"
    CANCELLED = "cancelled"


class PlanStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class EnvelopeLifecycle(str, Enum):
    PENDING = "pending"
    ACTIVATED = "activated"
    CANCELLED = "cancelled"


class EnvelopeState(str, Enum):
    LOCKED = "LOCKED"
    TEASING = "TEASING"
    CLUE_1 = "CLUE_1"
    CLUE_2 = "CLUE_2"
    STREET = "STREET"
    NUMBER = "NUMBER"
    OPEN = "OPEN"


class CascadeType(str, Enum):
    GUEST_DROPOUT = "guest_dropout"
    HOST_DROPOUT = "host_dropout"
    RESIGN_HOST = "resign_host"
    SPLIT = "split"
    TRANSFER_HOST = "transfer_host"
    REASSIGN = "reassign"
    ADDRESS_CHANGE = "address_change"


def parse_course(value) -> Course:
    """Coerce a raw value to a Course, raising ValueError for unknown names"""
    if isinstance(value, Course):
        return value
    try:
        return Course(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown course: {value!r}") from None
