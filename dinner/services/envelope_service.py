"""
Envelope service

Builds the envelopes of a match plan and runs the organizer operations on
them: force-opening a course, delaying the rest of the evening and
recalculating reveal times. Also renders the progressive guest view.

Activated envelopes are never touched here except by cancellation, which
lives in the cascade service.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from dinner.core.enums import Course, EnvelopeState, MEAL_COURSES, parse_course
from dinner.core.errors import InvalidStateError
from dinner.core.time import utcnow
from dinner.models import Couple, CourseClue, Envelope, Event, MatchPlan
from dinner.models.envelope import LADDER_FIELDS
from dinner.services.clue_service import (
    allocate_clue_indices,
    clues_for_course,
    combine_fun_facts,
    fallback_context_for,
    parse_address,
)
from dinner.services.matching_service import Pairing
from dinner.services.repositories import EventLogRepo, PlanRepo, commit_or_fail
from dinner.services.timing_service import (
    activation_ladder,
    compute_envelope_times,
    overrides_for_event,
    parse_course_schedules,
    shift_times,
    timing_for_event,
)
from dinner.services.travel_service import TravelTimeLookup

logger = logging.getLogger(__name__)

_STATE_BY_FIELD = [
    ("opened_at", EnvelopeState.OPEN),
    ("number_at", EnvelopeState.NUMBER),
    ("street_at", EnvelopeState.STREET),
    ("clue_2_at", EnvelopeState.CLUE_2),
    ("clue_1_at", EnvelopeState.CLUE_1),
    ("teasing_at", EnvelopeState.TEASING),
]
_STATE_ORDER = [EnvelopeState.LOCKED] + [state for _, state in reversed(_STATE_BY_FIELD)]


def envelope_state(envelope: Envelope, now: Optional[datetime] = None) -> EnvelopeState:
    now = now or utcnow()
    for name, state in _STATE_BY_FIELD:
        value = getattr(envelope, name)
        if value is not None and now >= value:
            return state
    return EnvelopeState.LOCKED


def next_reveal(envelope: Envelope, now: Optional[datetime] = None) -> Optional[dict]:
    now = now or utcnow()
    for name, state in reversed(_STATE_BY_FIELD):
        value = getattr(envelope, name)
        if value is not None and value > now:
            return {"state": state.value, "at": value.isoformat(), "in_seconds": int((value - now).total_seconds())}
    return None


# -------- Building plan envelopes --------

def build_plan_envelopes(
    event: Event,
    plan: MatchPlan,
    pairings: Iterable[Pairing],
    couples_by_id: Dict[int, Couple],
    lookup: Optional[TravelTimeLookup] = None,
    skip_courses: Iterable[Course] = (),
) -> List[Envelope]:
    """Guest and host envelopes for every pairing outside ``skip_courses``"""
    lookup = lookup or TravelTimeLookup()
    skip = set(skip_courses)
    schedules = parse_course_schedules(event)
    timing = timing_for_event(event)
    overrides = overrides_for_event(event)

    envelopes: List[Envelope] = []
    hosts_done: Set[tuple] = set()
    for pairing in pairings:
        if pairing.course in skip:
            continue
        host = couples_by_id[pairing.host_couple_id]
        guest = couples_by_id[pairing.guest_couple_id]
        course_start = schedules[pairing.course]
        override = overrides.for_course(pairing.course)

        if (host.id, pairing.course) not in hosts_done:
            hosts_done.add((host.id, pairing.course))
            envelopes.append(_new_envelope(plan, host, host, pairing.course, course_start,
                                           compute_envelope_times(course_start, timing, 0, override), 0))

        travel = lookup.minutes(guest.coordinates, host.coordinates)
        times = compute_envelope_times(course_start, timing, travel, override)
        envelopes.append(_new_envelope(plan, guest, host, pairing.course, course_start, times, travel))

    return envelopes


def _new_envelope(plan, couple, host, course, course_start, times, travel) -> Envelope:
    return Envelope(
        match_plan_id=plan.id,
        couple_id=couple.id,
        course=course.value,
        host_couple_id=host.id,
        destination_address=host.address,
        destination_notes=host.address_notes,
        scheduled_at=course_start,
        cycling_minutes=travel,
        **times.as_dict(),
    )


_COPIED_COLUMNS = (
    "couple_id", "course", "host_couple_id", "destination_address", "destination_notes",
    "scheduled_at", *LADDER_FIELDS, "activated_at", "cancelled", "cancelled_at", "cycling_minutes",
)


def copy_envelopes(source: Iterable[Envelope], plan: MatchPlan) -> List[Envelope]:
    """Carry envelopes of frozen courses into a new plan unchanged"""
    return [
        Envelope(match_plan_id=plan.id, **{name: getattr(env, name) for name in _COPIED_COLUMNS})
        for env in source
    ]


def upsert_course_clues(db: Session, host_courses: Iterable[tuple], couples_by_id: Dict[int, Couple]) -> int:
    """Store the fact indices each host reveals for the course it hosts"""
    written = 0
    for host_id, course in host_courses:
        host = couples_by_id[host_id]
        facts = combine_fun_facts(host.invited_fun_facts, host.partner_fun_facts)
        indices = allocate_clue_indices(len(facts))[course]
        row = db.query(CourseClue).filter(CourseClue.couple_id == host_id, CourseClue.course == course.value).first()
        if row is None:
            row = CourseClue(couple_id=host_id, course=course.value)
            db.add(row)
        row.clue_indices = list(indices)
        row.allocated_at = utcnow()
        written += 1
    return written


def activate_due_envelopes(db: Session, match_plan_id: int, now: Optional[datetime] = None) -> int:
    """Freeze every envelope whose first reveal has passed"""
    now = now or utcnow()
    due = db.query(Envelope).filter(
        Envelope.match_plan_id == match_plan_id,
        Envelope.activated_at.is_(None),
        Envelope.cancelled == False,  # noqa: E712
        Envelope.teasing_at <= now,
    ).all()
    for envelope in due:
        envelope.activate(now)
    if due:
        logger.info(f"Activated {len(due)} due envelopes in plan {match_plan_id}")
    return len(due)


# -------- Organizer operations --------

def _require_active_plan(db: Session, event: Event) -> MatchPlan:
    plan = PlanRepo.get_active(db, event)
    if plan is None:
        raise InvalidStateError("Event has no active match plan", {"event_id": event.id})
    return plan


def activate_course(db: Session, event: Event, course, actor: Optional[str] = None,
                    now: Optional[datetime] = None) -> dict:
    """Force-open a course: remaining envelopes get a 30 second reveal ladder"""
    course = parse_course(course)
    if course not in MEAL_COURSES:
        raise ValueError(f"{course.value} cannot be activated as a meal course")
    plan = _require_active_plan(db, event)
    now = now or utcnow()

    ladder = activation_ladder(now).as_dict()
    activated = 0
    for envelope in PlanRepo.envelopes(db, plan.id, course):
        if envelope.is_frozen or envelope.cancelled:
            continue
        envelope.set_times(ladder)
        envelope.activate(now)
        activated += 1

    frozen = list(plan.frozen_courses or [])
    if course.value not in frozen:
        plan.frozen_courses = frozen + [course.value]

    entry = EventLogRepo.add(db, event.id, "course_activated",
                             {"course": course.value, "activated_envelopes": activated, "manual_activation": True},
                             match_plan_id=plan.id, actor=actor)
    commit_or_fail(db, "activate_course")
    EventLogRepo.mirror_fs(entry)
    logger.info(f"Course {course.value} activated for event {event.id}: {activated} envelopes")
    return {"course": course.value, "activated_count": activated, "frozen_courses": plan.frozen_courses}


def delay_envelopes(db: Session, event: Event, delay_minutes: int, reason: Optional[str] = None,
                    actor: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """Push back every envelope whose first reveal has not happened yet"""
    if not delay_minutes:
        raise ValueError("delay_minutes must be a non-zero number of minutes")

    new_offset = (event.time_offset_minutes or 0) + delay_minutes
    event.time_offset_minutes = new_offset
    event.time_offset_updated_at = utcnow()

    affected = 0
    plan = PlanRepo.get_active(db, event)
    if plan is not None:
        activate_due_envelopes(db, plan.id, now)
        delta = timedelta(minutes=delay_minutes)
        for envelope in PlanRepo.envelopes(db, plan.id):
            if envelope.is_frozen or envelope.cancelled:
                continue
            envelope.set_times(shift_times(envelope.ladder(), delay_minutes), envelope.scheduled_at + delta)
            affected += 1

    entry = EventLogRepo.add(db, event.id, "envelopes_delayed",
                             {"delay_minutes": delay_minutes, "new_offset": new_offset,
                              "affected_envelopes": affected, "reason": reason or "Organizer delay"},
                             match_plan_id=plan.id if plan else None, actor=actor)
    commit_or_fail(db, "delay_envelopes")
    EventLogRepo.mirror_fs(entry)
    logger.info(f"Delayed event {event.id} by {delay_minutes} minutes ({affected} envelopes)")
    return {"new_offset": new_offset, "delay_applied": delay_minutes, "affected_envelopes": affected}


def recalculate_envelope_times(db: Session, event: Event, actor: Optional[str] = None,
                               now: Optional[datetime] = None) -> dict:
    """Recompute reveal times of pending envelopes after a schedule or timing change"""
    plan = _require_active_plan(db, event)
    activate_due_envelopes(db, plan.id, now)
    schedules = parse_course_schedules(event)
    timing = timing_for_event(event)
    overrides = overrides_for_event(event)

    updated = skipped = 0
    for envelope in PlanRepo.envelopes(db, plan.id):
        if envelope.cancelled:
            continue
        if envelope.is_frozen:
            skipped += 1
            continue
        course = parse_course(envelope.course)
        start = schedules[course]
        times = compute_envelope_times(start, timing, envelope.cycling_minutes, overrides.for_course(course))
        envelope.set_times(times.as_dict(), start)
        updated += 1

    entry = EventLogRepo.add(db, event.id, "envelope_times_recalculated",
                             {"updated": updated, "frozen_skipped": skipped},
                             match_plan_id=plan.id, actor=actor)
    commit_or_fail(db, "recalculate_envelope_times")
    EventLogRepo.mirror_fs(entry)
    return {"updated": updated, "frozen_skipped": skipped}


# -------- Guest view --------

_STREET_STATES = {EnvelopeState.STREET, EnvelopeState.NUMBER, EnvelopeState.OPEN}
_NUMBER_STATES = {EnvelopeState.NUMBER, EnvelopeState.OPEN}


def _revealed_clue_count(state: EnvelopeState) -> int:
    position = _STATE_ORDER.index(state)
    if position >= _STATE_ORDER.index(EnvelopeState.CLUE_2):
        return 2
    if position >= _STATE_ORDER.index(EnvelopeState.CLUE_1):
        return 1
    return 0


def guest_envelope_view(db: Session, couple: Couple, now: Optional[datetime] = None) -> dict:
    """Progressive reveal of a couple's envelopes in the active plan"""
    now = now or utcnow()
    event = couple.event
    schedules = parse_course_schedules(event)
    plan = PlanRepo.get_active(db, event)
    envelopes = [e for e in PlanRepo.envelopes_for_couple(db, plan.id, couple.id) if not e.cancelled] if plan else []
    by_course = {parse_course(e.course): e for e in envelopes}

    courses = []
    for course in MEAL_COURSES:
        envelope = by_course.get(course)
        if envelope is None:
            courses.append({"course": course.value, "state": EnvelopeState.LOCKED.value,
                            "starts_at": schedules[course].isoformat(), "clues": []})
            continue

        state = envelope_state(envelope, now)
        host = db.query(Couple).filter(Couple.id == envelope.host_couple_id).first()
        is_self_host = envelope.host_couple_id == couple.id
        street = parse_address(envelope.destination_address)

        clues: List[str] = []
        if host is not None and not is_self_host:
            clue_row = db.query(CourseClue).filter(
                CourseClue.couple_id == host.id, CourseClue.course == course.value
            ).first()
            facts = combine_fun_facts(host.invited_fun_facts, host.partner_fun_facts)
            allocation = {course: clue_row.clue_indices if clue_row else allocate_clue_indices(len(facts))[course]}
            fallback = fallback_context_for(host, envelope.cycling_minutes)
            clues = clues_for_course(facts, allocation, course, fallback)[:_revealed_clue_count(state)]

        courses.append({
            "course": course.value,
            "state": state.value,
            "starts_at": envelope.scheduled_at.isoformat(),
            "is_self_host": is_self_host,
            "clues": clues,
            "street": {
                "name": street.street_name,
                "range": f"{street.range_low}-{street.range_high}" if street.range_low is not None else None,
                "cycling_minutes": envelope.cycling_minutes or 0,
            } if state in _STREET_STATES else None,
            "number": street.street_number if state in _NUMBER_STATES else None,
            "full_address": {
                "address": envelope.destination_address,
                "notes": envelope.destination_notes,
                "coordinates": host.coordinates if host else None,
            } if state == EnvelopeState.OPEN else None,
            "host_names": host.display_name if host is not None and state == EnvelopeState.OPEN else None,
            "next_reveal": next_reveal(envelope, now),
        })

    return {"server_time": now.isoformat(), "event_id": event.id, "couple_id": couple.id, "courses": courses}
