"""
Tests for envelope timing calculation
"""

import pytest
from datetime import date, datetime, time, timedelta
from types import SimpleNamespace

from dinner.core.enums import Course
from dinner.schemas.timing import CourseOffsets, CourseTimingOverrides, TimingConfig
from dinner.services.timing_service import (
    activation_ladder,
    compute_envelope_times,
    parse_course_schedules,
    shift_times,
)

COURSE_START = datetime(2099, 6, 6, 19, 0)

def at(hour, minute):
    return datetime(2099, 6, 6, hour, minute)

def test_default_ladder_without_travel():
    """19:00 course with default offsets"""
    times = compute_envelope_times(COURSE_START)

    assert times.teasing_at == at(13, 0)
    assert times.clue_1_at == at(17, 0)
    assert times.clue_2_at == at(18, 30)
    assert times.street_at == at(18, 45)
    assert times.number_at == at(18, 55)
    assert times.opened_at == at(19, 0)

def test_long_travel_moves_street_and_number_earlier():
    times = compute_envelope_times(COURSE_START, TimingConfig(), travel_minutes=20)

    assert times.street_at == at(18, 30)
    assert times.number_at == at(18, 40)
    assert times.street_at <= at(18, 40)
    assert times.number_at <= at(18, 40)
    # Earlier stages are unaffected
    assert times.clue_2_at == at(18, 30)
    assert times.opened_at == COURSE_START

def test_medium_travel_adjustment():
    times = compute_envelope_times(COURSE_START, travel_minutes=10)

    assert times.street_at == at(18, 45)
    assert times.number_at == at(18, 53)

def test_short_travel_keeps_defaults():
    times = compute_envelope_times(COURSE_START, travel_minutes=5)

    assert times.street_at == at(18, 45)
    assert times.number_at == at(18, 55)

def test_adjustment_disabled_ignores_travel():
    timing = TimingConfig(distance_adjustment_enabled=False)
    times = compute_envelope_times(COURSE_START, timing, travel_minutes=40)

    assert times.street_at == at(18, 45)
    assert times.number_at == at(18, 55)

def test_very_long_travel_stays_monotonic():
    times = compute_envelope_times(COURSE_START, travel_minutes=200)

    assert times.is_monotonic()
    assert times.number_at == COURSE_START - timedelta(minutes=200)
    assert times.street_at == COURSE_START - timedelta(minutes=210)
    assert times.clue_2_at == times.street_at
    assert times.clue_1_at == times.street_at

def test_course_override_replaces_single_offset():
    override = CourseOffsets(street_minutes_before=25)
    times = compute_envelope_times(COURSE_START, course_override=override)

    assert times.street_at == at(18, 35)
    assert times.clue_2_at == at(18, 30)
    assert times.number_at == at(18, 55)

def test_event_timing_layer():
    timing = TimingConfig(teasing_minutes_before=240, clue_1_minutes_before=90)
    times = compute_envelope_times(COURSE_START, timing)

    assert times.teasing_at == at(15, 0)
    assert times.clue_1_at == at(17, 30)

@pytest.mark.parametrize("travel", [0, 3, 9, 16, 45, 500])
def test_ladder_is_monotonic(travel):
    assert compute_envelope_times(COURSE_START, travel_minutes=travel).is_monotonic()

def test_invalid_input():
    with pytest.raises(ValueError):
        compute_envelope_times(None)
    with pytest.raises(ValueError):
        compute_envelope_times(COURSE_START, travel_minutes=-1)

def test_activation_ladder_steps_thirty_seconds():
    now = datetime(2099, 6, 6, 18, 0)
    ladder = activation_ladder(now).as_dict()

    assert list(ladder.values()) == [now + timedelta(seconds=30 * i) for i in range(6)]

def test_shift_times_keeps_missing_values():
    shifted = shift_times({"teasing_at": at(13, 0), "clue_1_at": None}, 15)

    assert shifted == {"teasing_at": at(13, 15), "clue_1_at": None}

def test_parse_course_schedules_applies_offset():
    event = SimpleNamespace(
        event_date=date(2099, 6, 6),
        starter_time=time(17, 30),
        main_time=time(19, 0),
        dessert_time="20:30",
        afterparty_time=None,
        time_offset_minutes=15,
    )
    schedules = parse_course_schedules(event, "UTC")

    assert schedules[Course.STARTER] == at(17, 45)
    assert schedules[Course.MAIN] == at(19, 15)
    assert schedules[Course.DESSERT] == at(20, 45)
    assert schedules[Course.AFTERPARTY] == at(22, 15)

def test_parse_course_schedules_converts_local_time_to_utc():
    event = SimpleNamespace(
        event_date=date(2099, 6, 6),
        starter_time=time(17, 30),
        main_time=time(19, 0),
        dessert_time=time(20, 30),
        afterparty_time=None,
        time_offset_minutes=0,
    )
    schedules = parse_course_schedules(event, "Europe/Stockholm")

    # Central European Summer Time is UTC+2
    assert schedules[Course.MAIN] == at(17, 0)

def test_course_overrides_are_validated():
    overrides = CourseTimingOverrides.from_json({"Main": {"street_minutes_before": 20}})

    assert overrides.for_course(Course.MAIN).street_minutes_before == 20
    assert overrides.for_course(Course.STARTER) is None
    assert overrides.to_json() == {"main": {"street_minutes_before": 20}}

    with pytest.raises(ValueError):
        CourseTimingOverrides.from_json({"brunch": {"street_minutes_before": 20}})
    with pytest.raises(ValueError):
        CourseTimingOverrides.from_json({"main": {"street_minutes_before": -5}})
