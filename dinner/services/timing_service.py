"""
Envelope timing calculator

Pure functions turning a course start time and the layered timing
configuration into the six reveal timestamps of one envelope.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from dinner.core.config import settings
from dinner.core.enums import Course
from dinner.schemas.timing import CourseOffsets, CourseTimingOverrides, TimingConfig

DEFAULT_TIMING = TimingConfig()
DEFAULT_AFTERPARTY_TIME = "22:00"
ACTIVATION_STEP_SECONDS = 30


@dataclass(frozen=True)
class EnvelopeTimes:
    teasing_at: datetime
    clue_1_at: datetime
    clue_2_at: datetime
    street_at: datetime
    number_at: datetime
    opened_at: datetime

    def as_dict(self) -> Dict[str, datetime]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def is_monotonic(self) -> bool:
        values = list(self.as_dict().values())
        return all(a <= b for a, b in zip(values, values[1:]))


def distance_adjusted_offsets(street_minutes: int, number_minutes: int, travel_minutes: int):
    """Stretch street/number offsets so the exact address arrives in time to travel"""
    if travel_minutes > 15:
        return max(street_minutes, travel_minutes + 10), max(number_minutes, travel_minutes)
    if travel_minutes > 8:
        return max(street_minutes, travel_minutes + 5), max(number_minutes, max(5, travel_minutes - 3))
    return street_minutes, number_minutes


def compute_envelope_times(
    course_start: datetime,
    timing: Optional[TimingConfig] = None,
    travel_minutes: Optional[int] = None,
    course_override: Optional[CourseOffsets] = None,
) -> EnvelopeTimes:
    """Compute the reveal ladder for one envelope.

    Layers are merged global defaults -> event timing -> per-course override.
    When distance adjustment is enabled and a travel time is known the street
    and number stages move earlier as travel grows. The result is clamped so
    no stage precedes the one before it.
    """
    if course_start is None:
        raise ValueError("course_start is required")
    if travel_minutes is not None and travel_minutes < 0:
        raise ValueError("travel_minutes cannot be negative")

    t = (timing or DEFAULT_TIMING).merged(course_override)

    street_minutes = t.street_minutes_before
    number_minutes = t.number_minutes_before
    if t.distance_adjustment_enabled and travel_minutes:
        street_minutes, number_minutes = distance_adjusted_offsets(street_minutes, number_minutes, travel_minutes)

    offsets = [
        t.teasing_minutes_before,
        t.clue_1_minutes_before,
        t.clue_2_minutes_before,
        street_minutes,
        number_minutes,
        0,
    ]
    # A later stage can never be revealed before an earlier one
    for i in range(len(offsets) - 2, -1, -1):
        offsets[i] = max(offsets[i], offsets[i + 1])

    stamps = [course_start - timedelta(minutes=m) for m in offsets]
    return EnvelopeTimes(*stamps)


def activation_ladder(now: datetime, step_seconds: int = ACTIVATION_STEP_SECONDS) -> EnvelopeTimes:
    """Ladder used when an organizer force-opens a course"""
    return EnvelopeTimes(*[now + timedelta(seconds=step_seconds * i) for i in range(6)])


def shift_times(times: Dict[str, datetime], minutes: int) -> Dict[str, datetime]:
    delta = timedelta(minutes=minutes)
    return {name: (value + delta if value is not None else None) for name, value in times.items()}


def _zone(name: str):
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _parse_clock(value) -> tuple:
    if value is None:
        return None
    if hasattr(value, "hour"):
        return value.hour, value.minute
    hours, minutes = str(value).split(":")[:2]
    return int(hours), int(minutes)


def parse_course_schedules(event, tz_name: Optional[str] = None) -> Dict[Course, datetime]:
    """Course start per course as naive UTC, including the organizer delay"""
    zone = _zone(tz_name or settings.EVENT_TIMEZONE)
    offset = timedelta(minutes=event.time_offset_minutes or 0)
    clocks = {
        Course.STARTER: _parse_clock(event.starter_time),
        Course.MAIN: _parse_clock(event.main_time),
        Course.DESSERT: _parse_clock(event.dessert_time),
        Course.AFTERPARTY: _parse_clock(event.afterparty_time or DEFAULT_AFTERPARTY_TIME),
    }

    schedules = {}
    for course, (hour, minute) in clocks.items():
        local = datetime(event.event_date.year, event.event_date.month, event.event_date.day,
                         hour, minute, tzinfo=zone)
        schedules[course] = (local + offset).astimezone(timezone.utc).replace(tzinfo=None)
    return schedules


def timing_for_event(event) -> TimingConfig:
    if event.timing is None:
        return DEFAULT_TIMING
    return TimingConfig.model_validate(event.timing)


def overrides_for_event(event) -> CourseTimingOverrides:
    return CourseTimingOverrides.from_json(event.course_timing_offsets)
