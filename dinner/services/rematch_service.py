"""
Rematch orchestrator

Runs a full or partial rematch of one event under the event's rematch lock:

1. take the lock (compare-and-swap on ``events.rematch_lock_until``)
2. freeze envelopes whose reveal has started
3. run the triggering cascade against the current plan
4. create plan ``version + 1`` and pair every course that is not frozen
5. build envelopes, copy frozen-course envelopes, allocate host clues
6. activate the new plan, supersede the old one, log, commit once
7. release the lock, always

Also hosts the dropout workflow and reserve toggling, which decide whether
a rematch is needed at all.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dinner.core.config import settings
from dinner.core.enums import CascadeType, Course, CoupleRole, MEAL_COURSES, PlanStatus, parse_course
from dinner.core.errors import DinnerError, InvalidStateError
from dinner.core.time import utcnow
from dinner.models import Assignment, CoursePairing, Envelope, Event, MatchPlan
from dinner.services.cascade_service import CascadeResult, resolve_cascade
from dinner.services.envelope_service import (
    activate_due_envelopes,
    build_plan_envelopes,
    copy_envelopes,
    upsert_course_clues,
)
from dinner.services.matching_service import DEFAULT_MAX_GUESTS, assign_courses, generate_pairings
from dinner.services.repositories import CoupleRepo, EventLogRepo, EventRepo, PlanRepo, commit_or_fail
from dinner.services.timing_service import parse_course_schedules
from dinner.services.travel_service import TravelTimeLookup

logger = logging.getLogger(__name__)

URGENT_DROPOUT_HOURS = 24


@dataclass
class RematchTrigger:
    cascade_type: CascadeType
    couple_id: int
    details: dict = field(default_factory=dict)


@dataclass
class RematchResult:
    success: bool = False
    conflict: bool = False
    plan_id: Optional[int] = None
    version: Optional[int] = None
    course_pairings: List[dict] = field(default_factory=list)
    envelopes: int = 0
    stats: dict = field(default_factory=dict)
    unplaced_guest_ids: List[int] = field(default_factory=list)
    frozen_courses: List[str] = field(default_factory=list)
    cascade: Optional[dict] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    step: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RematchOrchestrator:
    """Plan (re)generation for one event, serialized by the event lock"""

    def __init__(self, db: Session, lookup: Optional[TravelTimeLookup] = None, lock_minutes: Optional[int] = None):
        self.db = db
        self.lookup = lookup or TravelTimeLookup()
        self.lock_minutes = lock_minutes
        self.step: Optional[str] = None

    # -------- public entry points --------

    def run_rematch(self, event_id: int, trigger: Optional[RematchTrigger] = None,
                    created_by: Optional[str] = None, now: Optional[datetime] = None) -> RematchResult:
        return self._locked(event_id, lambda event, result: self._rematch(event, trigger, created_by, now, result))

    def run_initial_match(self, event_id: int, created_by: Optional[str] = None,
                          max_guests: int = DEFAULT_MAX_GUESTS) -> RematchResult:
        return self._locked(event_id, lambda event, result: self._initial(event, created_by, max_guests, result))

    # -------- lock handling --------

    def _locked(self, event_id: int, work: Callable[[Event, RematchResult], RematchResult]) -> RematchResult:
        event = EventRepo.get_by_id(self.db, event_id)
        if event is None:
            raise InvalidStateError("Event not found", {"event_id": event_id})

        result = RematchResult()
        if not EventRepo.try_acquire_lock(self.db, event_id, self.lock_minutes):
            logger.warning(f"Rematch lock for event {event_id} is held, rejecting concurrent rematch")
            entry = EventLogRepo.add(self.db, event_id, "rematch_conflict", {"lock_until": _iso(event.rematch_lock_until)})
            self.db.commit()
            EventLogRepo.mirror_fs(entry)
            result.conflict = True
            result.step = "acquire_lock"
            result.errors.append("Another rematch is in progress for this event")
            return result

        try:
            return work(event, result)
        except (SQLAlchemyError, ValueError) as exc:
            self.db.rollback()
            logger.error(f"Rematch for event {event_id} failed at {self.step}: {exc}")
            result.success = False
            result.step = self.step
            result.errors.append(str(exc))
            return result
        except DinnerError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception(f"Rematch for event {event_id} crashed at {self.step}")
            raise
        finally:
            EventRepo.release_lock(self.db, event_id)

    # -------- workflows --------

    def _rematch(self, event: Event, trigger: Optional[RematchTrigger], created_by: Optional[str],
                 now: Optional[datetime], result: RematchResult) -> RematchResult:
        current = PlanRepo.get_active(self.db, event)

        if current is not None:
            self.step = "activate_due_envelopes"
            activate_due_envelopes(self.db, current.id, now)
            self.db.flush()

        if trigger is not None:
            self.step = "cascade"
            cascade = resolve_cascade(
                self.db, event, current.id if current else None, trigger.cascade_type, trigger.couple_id,
                trigger.details, commit=False, actor=created_by, lookup=self.lookup, now=now,
            )
            result.cascade = cascade.to_dict()
            if not cascade.success:
                result.step = f"cascade:{cascade.step}"
                result.errors.extend(cascade.errors)
                return result

        action = "rematch_completed"
        details = {"trigger": trigger.cascade_type.value if trigger else "manual"}
        if trigger is not None:
            details["couple_id"] = trigger.couple_id
        return self._build_plan(event, current, created_by, action, details, result)

    def _initial(self, event: Event, created_by: Optional[str], max_guests: int,
                 result: RematchResult) -> RematchResult:
        current = PlanRepo.get_active(self.db, event)

        self.step = "assign_courses"
        if not CoupleRepo.host_assignments(self.db, event.id):
            assigned = assign_courses(CoupleRepo.list_for_event(self.db, event.id), max_guests)
            for a in assigned.assignments:
                self.db.add(Assignment(
                    event_id=event.id,
                    couple_id=a.couple_id,
                    course=a.course.value,
                    is_host=True,
                    max_guests=a.max_guests,
                    is_flex_host=a.is_flex_host,
                    flex_extra_capacity=a.flex_extra_capacity,
                ))
            self.db.flush()
            if assigned.preference_satisfaction < 0.8:
                result.warnings.append(
                    f"Only {round(assigned.preference_satisfaction * 100)}% of course preferences satisfied"
                )

        return self._build_plan(event, current, created_by, "initial_match", {}, result)

    def _frozen_courses(self, plan: Optional[MatchPlan]) -> List[Course]:
        if plan is None:
            return []
        frozen = {parse_course(c) for c in (plan.frozen_courses or [])}
        activated = self.db.query(Envelope.course).filter(
            Envelope.match_plan_id == plan.id,
            Envelope.activated_at.isnot(None),
        ).distinct().all()
        frozen |= {parse_course(row.course) for row in activated}
        return [c for c in MEAL_COURSES if c in frozen]

    def _build_plan(self, event: Event, current: Optional[MatchPlan], created_by: Optional[str],
                    action: str, details: dict, result: RematchResult) -> RematchResult:
        self.step = "compute_frozen_courses"
        frozen = self._frozen_courses(current)

        self.step = "create_plan"
        plan = MatchPlan(
            event_id=event.id,
            version=PlanRepo.latest_version(self.db, event.id) + 1,
            status=PlanStatus.DRAFT.value,
            frozen_courses=[c.value for c in frozen],
            created_by=created_by,
        )
        self.db.add(plan)
        self.db.flush()

        self.step = "generate_pairings"
        couples = CoupleRepo.list_for_event(self.db, event.id)
        couples_by_id = {c.id: c for c in couples}
        match = generate_pairings(
            couples,
            CoupleRepo.host_assignments(self.db, event.id),
            CoupleRepo.blocked_pairs(self.db, event.id),
            frozen,
            PlanRepo.pairings(self.db, current.id) if current else [],
        )

        self.step = "persist_pairings"
        self.db.add_all([
            CoursePairing(match_plan_id=plan.id, course=p.course.value,
                          host_couple_id=p.host_couple_id, guest_couple_id=p.guest_couple_id)
            for p in match.pairings
        ])
        self.db.flush()

        self.step = "build_envelopes"
        envelopes = build_plan_envelopes(event, plan, match.pairings, couples_by_id, self.lookup, frozen)
        if current is not None and frozen:
            envelopes += copy_envelopes(
                [e for e in PlanRepo.envelopes(self.db, current.id) if parse_course(e.course) in frozen], plan
            )
        self.db.add_all(envelopes)
        self.db.flush()

        self.step = "allocate_clues"
        host_courses = sorted({(p.host_couple_id, p.course) for p in match.pairings if p.course not in frozen},
                              key=lambda hc: (hc[0], MEAL_COURSES.index(hc[1])))
        upsert_course_clues(self.db, host_courses, couples_by_id)

        self.step = "activate_plan"
        plan.status = PlanStatus.ACTIVE.value
        plan.stats = match.stats
        for previous in self.db.query(MatchPlan).filter(
            MatchPlan.event_id == event.id,
            MatchPlan.status == PlanStatus.ACTIVE.value,
            MatchPlan.id != plan.id,
        ).all():
            previous.supersede(plan.id)
        event.active_match_plan_id = plan.id

        self.step = "write_event_log"
        entry = EventLogRepo.add(
            self.db, event.id, action,
            {**details, "version": plan.version, "frozen_courses": plan.frozen_courses,
             "pairings": len(match.pairings), "unplaced": match.unplaced_guest_ids},
            match_plan_id=plan.id, actor=created_by,
        )

        self.step = "commit"
        self.db.commit()
        EventLogRepo.mirror_fs(entry)
        logger.info(
            f"Event {event.id} plan v{plan.version} active: {len(match.pairings)} pairings, "
            f"{len(match.unplaced_guest_ids)} unplaced, frozen {plan.frozen_courses}"
        )

        result.success = True
        result.step = None
        result.plan_id = plan.id
        result.version = plan.version
        result.course_pairings = [
            {"course": p.course.value, "host_couple_id": p.host_couple_id, "guest_couple_id": p.guest_couple_id}
            for p in match.pairings
        ]
        result.envelopes = len(envelopes)
        result.stats = match.stats
        result.unplaced_guest_ids = match.unplaced_guest_ids
        result.frozen_courses = [c.value for c in frozen]
        result.warnings.extend(match.warnings)
        return result


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def run_rematch(db: Session, event_id: int, trigger: Optional[RematchTrigger] = None,
                created_by: Optional[str] = None, lookup: Optional[TravelTimeLookup] = None) -> RematchResult:
    return RematchOrchestrator(db, lookup).run_rematch(event_id, trigger, created_by)


def run_initial_match(db: Session, event_id: int, created_by: Optional[str] = None,
                      lookup: Optional[TravelTimeLookup] = None) -> RematchResult:
    return RematchOrchestrator(db, lookup).run_initial_match(event_id, created_by)


def run_rematch_with_retry(
    db: Session,
    event_id: int,
    trigger: Optional[RematchTrigger] = None,
    created_by: Optional[str] = None,
    attempts: Optional[int] = None,
    delay_seconds: Optional[float] = None,
    lookup: Optional[TravelTimeLookup] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RematchResult:
    """Retry a conflicting rematch a few times before handing the conflict back"""
    attempts = attempts or settings.REMATCH_RETRY_ATTEMPTS
    delay_seconds = settings.REMATCH_RETRY_DELAY_SECONDS if delay_seconds is None else delay_seconds
    orchestrator = RematchOrchestrator(db, lookup)

    for attempt in range(1, attempts + 1):
        result = orchestrator.run_rematch(event_id, trigger, created_by)
        if not result.conflict or attempt == attempts:
            return result
        logger.info(f"Rematch for event {event_id} conflicted, retry {attempt}/{attempts - 1}")
        sleep(delay_seconds)
    return result


# -------- Dropout workflow --------

def handle_dropout(db: Session, couple_id: int, reason: Optional[str] = None, actor: Optional[str] = None,
                   now: Optional[datetime] = None, lookup: Optional[TravelTimeLookup] = None) -> Dict:
    """Cancel a couple, clean up after it and rematch when it was hosting.

    A guest dropout only needs the cascade. A host dropout leaves guests
    without a table, so the plan is regenerated.
    """
    couple = CoupleRepo.get_by_id(db, couple_id)
    if couple is None:
        raise InvalidStateError("Couple not found", {"couple_id": couple_id})
    event = couple.event
    now = now or utcnow()

    starts_at = parse_course_schedules(event)[Course.STARTER]
    hours_until = (starts_at - now).total_seconds() / 3600
    is_urgent = hours_until < URGENT_DROPOUT_HOURS
    is_emergency = hours_until < (event.dropout_cutoff_hours or URGENT_DROPOUT_HOURS)
    was_host = bool(CoupleRepo.host_assignments(db, event.id, couple.id))

    couple.cancel()
    EventLogRepo.add(
        db, event.id, "host_dropout" if was_host else "guest_dropout",
        {"couple_id": couple.id, "couple_name": couple.display_name, "reason": reason,
         "hours_until_event": round(hours_until), "is_urgent": is_urgent, "is_emergency": is_emergency},
        match_plan_id=event.active_match_plan_id, actor=actor,
    )
    cascade: CascadeResult = resolve_cascade(
        db, event, event.active_match_plan_id, CascadeType.GUEST_DROPOUT, couple.id,
        actor=actor, lookup=lookup, now=now,
    )

    rematch = None
    if cascade.success and was_host:
        rematch = run_rematch_with_retry(
            db, event.id, RematchTrigger(CascadeType.HOST_DROPOUT, couple.id), created_by=actor, lookup=lookup
        )

    return {
        "couple_id": couple_id,
        "was_host": was_host,
        "is_urgent": is_urgent,
        "is_emergency": is_emergency,
        "hours_until_event": round(hours_until, 1),
        "cascade": cascade.to_dict(),
        "rematch": rematch.to_dict() if rematch else None,
        "success": cascade.success and (rematch is None or rematch.success),
    }


# -------- Reserves --------

def set_reserve(db: Session, couple_id: int, actor: Optional[str] = None) -> Dict:
    """Move a couple to the reserve list and out of the active plan"""
    couple = CoupleRepo.get_by_id(db, couple_id)
    if couple is None:
        raise InvalidStateError("Couple not found", {"couple_id": couple_id})
    if couple.cancelled:
        raise InvalidStateError("Cancelled couples cannot become reserves", {"couple_id": couple.id})
    if couple.role == CoupleRole.RESERVE.value:
        raise InvalidStateError("Couple is already a reserve", {"couple_id": couple.id})

    event = couple.event
    plan = PlanRepo.get_active(db, event)
    unplaced: List[int] = []

    couple.role = CoupleRole.RESERVE.value
    for assignment in db.query(Assignment).filter(Assignment.couple_id == couple.id).all():
        db.delete(assignment)
    if plan is not None:
        for pairing in PlanRepo.pairings(db, plan.id):
            if pairing.host_couple_id == couple.id and pairing.guest_couple_id not in unplaced:
                unplaced.append(pairing.guest_couple_id)
            if couple.id in (pairing.host_couple_id, pairing.guest_couple_id):
                db.delete(pairing)
        for envelope in PlanRepo.envelopes(db, plan.id):
            if couple.id in (envelope.couple_id, envelope.host_couple_id):
                envelope.cancel()

    entry = EventLogRepo.add(db, event.id, "reserve_set",
                             {"couple_id": couple.id, "name": couple.display_name, "unplaced_guest_ids": unplaced},
                             match_plan_id=plan.id if plan else None, actor=actor)
    commit_or_fail(db, "set_reserve")
    EventLogRepo.mirror_fs(entry)
    return {"couple_id": couple.id, "role": couple.role, "unplaced_guest_ids": unplaced, "needs_rematch": bool(unplaced)}


def activate_reserve(db: Session, couple_id: int, actor: Optional[str] = None) -> Dict:
    """Bring a reserve back as a normal participant; a rematch places it"""
    couple = CoupleRepo.get_by_id(db, couple_id)
    if couple is None:
        raise InvalidStateError("Couple not found", {"couple_id": couple_id})
    if couple.cancelled or couple.role != CoupleRole.RESERVE.value:
        raise InvalidStateError("Only reserve couples can be activated",
                                {"couple_id": couple.id, "lifecycle": couple.lifecycle.value})

    couple.role = CoupleRole.NORMAL.value
    entry = EventLogRepo.add(db, couple.event_id, "reserve_activated",
                             {"couple_id": couple.id, "name": couple.display_name}, actor=actor)
    commit_or_fail(db, "activate_reserve")
    EventLogRepo.mirror_fs(entry)
    return {"couple_id": couple.id, "role": couple.role, "needs_rematch": True}
