"""
Cascade resolver

Removes exactly the pairings, envelopes and assignments invalidated by one
structural change (dropout, host resignation, split, host transfer,
reassignment or address change) and reports which guests became unplaced.

Validation happens before anything is written and raises
``InvalidStateError``. Once writing starts, a database failure rolls the
whole cascade back and is reported in the result with the failing step.
Activated envelopes are only ever cancelled.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import partial
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dinner.core.enums import CascadeType, Course, MEAL_COURSES, parse_course
from dinner.core.errors import InvalidStateError
from dinner.models import Assignment, Couple, CoursePairing, Envelope, Event, MatchPlan
from dinner.services.envelope_service import activate_due_envelopes
from dinner.services.matching_service import capacity_warning, duplicate_address_warning, reveal_freeze_warning
from dinner.services.repositories import CoupleRepo, EventLogRepo
from dinner.services.timing_service import (
    compute_envelope_times,
    overrides_for_event,
    parse_course_schedules,
    timing_for_event,
)
from dinner.services.travel_service import TravelTimeLookup

logger = logging.getLogger(__name__)


@dataclass
class CascadeResult:
    success: bool = True
    cascade_type: Optional[str] = None
    pairings_removed: List[Dict[str, int]] = field(default_factory=list)
    unplaced_guest_ids: List[int] = field(default_factory=list)
    envelopes_cancelled: int = 0
    envelopes_updated: int = 0
    envelopes_created: int = 0
    pairings_created: int = 0
    assignments_removed: int = 0
    assignments_created: int = 0
    frozen_envelopes_skipped: int = 0
    warnings: List[dict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    step: Optional[str] = None

    def add_unplaced(self, couple_id: int) -> None:
        if couple_id not in self.unplaced_guest_ids:
            self.unplaced_guest_ids.append(couple_id)

    def to_dict(self) -> dict:
        return asdict(self)


class CascadeResolver:
    """One cascade against one match plan"""

    def __init__(self, db: Session, event: Event, plan: Optional[MatchPlan], lookup: Optional[TravelTimeLookup] = None):
        self.db = db
        self.event = event
        self.plan = plan
        self.lookup = lookup or TravelTimeLookup()
        self.result = CascadeResult()
        self.step: Optional[str] = None

    # -------- validation helpers --------

    def _couple(self, couple_id, label: str = "Couple") -> Couple:
        couple = CoupleRepo.get_by_id(self.db, couple_id) if couple_id is not None else None
        if couple is None or couple.event_id != self.event.id:
            raise InvalidStateError(f"{label} not found in this event", {"couple_id": couple_id})
        return couple

    def _active_couple(self, couple_id, label: str = "Couple") -> Couple:
        couple = self._couple(couple_id, label)
        if not couple.is_matchable:
            raise InvalidStateError(
                f"{label} is {couple.lifecycle.value} and cannot take part in this change",
                {"couple_id": couple.id, "lifecycle": couple.lifecycle.value},
            )
        return couple

    def _require_plan(self) -> MatchPlan:
        if self.plan is None:
            raise InvalidStateError("Event has no active match plan", {"event_id": self.event.id})
        return self.plan

    def _frozen_courses(self) -> set:
        return {parse_course(c) for c in (self.plan.frozen_courses or [])} if self.plan else set()

    def _reject_frozen(self, courses) -> None:
        frozen = self._frozen_courses() & set(courses)
        if frozen:
            raise InvalidStateError(
                "Course has already been revealed and is frozen",
                {"courses": sorted(c.value for c in frozen)},
            )

    def _courses(self, details: dict, key: str = "courses") -> Optional[List[Course]]:
        raw = details.get(key)
        if raw is None:
            return None
        if isinstance(raw, (str, Course)):
            raw = [raw]
        try:
            return [parse_course(c) for c in raw]
        except ValueError as exc:
            raise InvalidStateError(str(exc), {key: raw}) from None

    def _hosted_courses(self, couple_id: int) -> List[Course]:
        courses = [parse_course(a.course) for a in CoupleRepo.host_assignments(self.db, self.event.id, couple_id)]
        return [c for c in MEAL_COURSES if c in courses]

    # -------- query helpers --------

    def _pairings(self, **filters) -> List[CoursePairing]:
        if self.plan is None:
            return []
        query = self.db.query(CoursePairing).filter(CoursePairing.match_plan_id == self.plan.id)
        for name, value in filters.items():
            query = query.filter(getattr(CoursePairing, name) == value)
        return query.order_by(CoursePairing.id).all()

    def _envelopes(self, **filters) -> List[Envelope]:
        if self.plan is None:
            return []
        query = self.db.query(Envelope).filter(Envelope.match_plan_id == self.plan.id)
        for name, value in filters.items():
            query = query.filter(getattr(Envelope, name) == value)
        return query.order_by(Envelope.id).all()

    # -------- mutation helpers --------

    def _delete_pairing(self, pairing: CoursePairing) -> None:
        self.result.pairings_removed.append({
            "course": pairing.course,
            "host_couple_id": pairing.host_couple_id,
            "guest_couple_id": pairing.guest_couple_id,
        })
        self.db.delete(pairing)

    def _cancel(self, envelope: Envelope) -> None:
        if envelope.cancel():
            self.result.envelopes_cancelled += 1

    def _redirect(self, envelope: Envelope, host: Couple) -> None:
        if envelope.cancelled:
            return
        if envelope.is_frozen:
            self.result.frozen_envelopes_skipped += 1
            return
        envelope.set_destination(host.id, host.address, host.address_notes)
        self.result.envelopes_updated += 1

    def _new_envelope(self, couple: Couple, host: Couple, course: Course) -> Envelope:
        start = parse_course_schedules(self.event)[course]
        travel = 0 if couple.id == host.id else self.lookup.minutes(couple.coordinates, host.coordinates)
        times = compute_envelope_times(
            start, timing_for_event(self.event), travel, overrides_for_event(self.event).for_course(course)
        )
        envelope = Envelope(
            match_plan_id=self.plan.id,
            couple_id=couple.id,
            course=course.value,
            host_couple_id=host.id,
            destination_address=host.address,
            destination_notes=host.address_notes,
            scheduled_at=start,
            cycling_minutes=travel,
            **times.as_dict(),
        )
        self.db.add(envelope)
        self.result.envelopes_created += 1
        return envelope

    def _flush(self, step: str) -> None:
        self.step = step
        self.db.flush()

    # -------- cascades --------

    def guest_dropout(self, couple: Couple) -> None:
        self.step = "delete_guest_pairings"
        for pairing in self._pairings(guest_couple_id=couple.id):
            self._delete_pairing(pairing)
        self._flush("delete_guest_pairings")

        self.step = "cancel_own_envelopes"
        for envelope in self._envelopes(couple_id=couple.id):
            self._cancel(envelope)
        self._flush("cancel_own_envelopes")

    def resign_host(self, couple: Couple, courses: List[Course]) -> None:
        self.step = "delete_host_pairings"
        for course in courses:
            for pairing in self._pairings(host_couple_id=couple.id, course=course.value):
                self.result.add_unplaced(pairing.guest_couple_id)
                self._delete_pairing(pairing)
        self._flush("delete_host_pairings")

        self.step = "cancel_guest_envelopes"
        for course in courses:
            for envelope in self._envelopes(host_couple_id=couple.id, course=course.value):
                self._cancel(envelope)
        self._flush("cancel_guest_envelopes")

        self.step = "delete_host_assignments"
        for assignment in CoupleRepo.host_assignments(self.db, self.event.id, couple.id):
            if parse_course(assignment.course) in courses:
                self.db.delete(assignment)
                self.result.assignments_removed += 1
        self._flush("delete_host_assignments")

    def host_dropout(self, couple: Couple) -> None:
        self.resign_host(couple, list(MEAL_COURSES))
        self.guest_dropout(couple)

        self.step = "delete_assignments"
        for assignment in self.db.query(Assignment).filter(
            Assignment.event_id == self.event.id, Assignment.couple_id == couple.id
        ).all():
            self.db.delete(assignment)
            self.result.assignments_removed += 1
        self._flush("delete_assignments")

    def split(self, couple: Couple, new_couple: Couple) -> None:
        # The original keeps every pairing; the new solo entry waits to be matched
        self.step = "register_split"
        self.result.add_unplaced(new_couple.id)

    def transfer_host(self, source: Couple, target: Couple, courses: List[Course]) -> None:
        for course in courses:
            self.step = f"transfer_assignment_{course.value}"
            assignment = self.db.query(Assignment).filter(
                Assignment.event_id == self.event.id,
                Assignment.couple_id == source.id,
                Assignment.course == course.value,
                Assignment.is_host == True,  # noqa: E712
            ).first()
            assignment.couple_id = target.id
            self._flush(self.step)

            # The target stops being a guest anywhere for this course
            self.step = f"transfer_pairings_{course.value}"
            for pairing in self._pairings(guest_couple_id=target.id, course=course.value):
                self._delete_pairing(pairing)
            self._flush(self.step)
            for envelope in self._envelopes(couple_id=target.id, course=course.value):
                self._cancel(envelope)
            for pairing in self._pairings(host_couple_id=source.id, course=course.value):
                pairing.host_couple_id = target.id
            self._flush(self.step)

            self.step = f"transfer_envelopes_{course.value}"
            for envelope in self._envelopes(host_couple_id=source.id, course=course.value):
                if envelope.couple_id == source.id:
                    self._cancel(envelope)
                else:
                    self._redirect(envelope, target)
            if self.plan is not None and self._pairings(host_couple_id=target.id, course=course.value):
                self._new_envelope(target, target, course)
            self._flush(self.step)

            # The former host now needs a table of its own for this course
            self.result.add_unplaced(source.id)

    def reassign(self, guest: Couple, course: Course, new_host: Couple) -> None:
        plan = self._require_plan()
        self.step = "check_capacity"
        warning = capacity_warning(self.db, self.event.id, plan.id, new_host.id, course, guest.id)
        if warning:
            self.result.warnings.append(warning)

        self.step = "replace_pairing"
        for pairing in self._pairings(guest_couple_id=guest.id, course=course.value):
            self._delete_pairing(pairing)
        self.db.add(CoursePairing(
            match_plan_id=plan.id, course=course.value, host_couple_id=new_host.id, guest_couple_id=guest.id
        ))
        self.result.pairings_created += 1
        self._flush("replace_pairing")

        self.step = "redirect_envelope"
        for envelope in self._envelopes(couple_id=guest.id, course=course.value):
            self._cancel(envelope)
        self._new_envelope(guest, new_host, course)
        self._flush("redirect_envelope")

    def address_change(self, couple: Couple, new_address: str, new_notes: Optional[str], details: dict) -> None:
        warning = duplicate_address_warning(self.db, self.event.id, new_address, couple.id)
        if warning:
            self.result.warnings.append(warning)
        if self.plan is not None:
            warning = reveal_freeze_warning(self.db, self.plan.id, couple.id)
            if warning:
                self.result.warnings.append(warning)

        self.step = "update_couple_address"
        couple.address = new_address
        couple.address_notes = new_notes
        if "latitude" in details and "longitude" in details:
            couple.latitude = details["latitude"]
            couple.longitude = details["longitude"]
        self._flush("update_couple_address")

        self.step = "update_envelope_destinations"
        for envelope in self._envelopes(host_couple_id=couple.id):
            self._redirect(envelope, couple)
        self._flush("update_envelope_destinations")


def resolve_cascade(
    db: Session,
    event: Event,
    match_plan_id: Optional[int],
    cascade_type,
    couple_id: int,
    details: Optional[dict] = None,
    commit: bool = True,
    actor: Optional[str] = None,
    lookup: Optional[TravelTimeLookup] = None,
    now: Optional[datetime] = None,
) -> CascadeResult:
    """Apply one structural change to a match plan.

    Envelopes whose first reveal is due at ``now`` are frozen first, so a
    cascade never rewrites something a guest has already seen.

    Raises ``InvalidStateError`` before any structural change when it is not
    allowed. Database failures roll back and come back as
    ``success=False`` with the failing ``step``. With ``commit=False`` the
    caller owns the transaction.
    """
    cascade_type = CascadeType(cascade_type)
    details = details or {}
    plan = db.query(MatchPlan).filter(MatchPlan.id == match_plan_id).first() if match_plan_id else None
    resolver = CascadeResolver(db, event, plan, lookup)
    if plan is not None:
        activate_due_envelopes(db, plan.id, now)

    # Validate everything up front; no structural change has been made yet
    if cascade_type == CascadeType.GUEST_DROPOUT:
        couple = resolver._couple(couple_id)
        run = partial(resolver.guest_dropout, couple)

    elif cascade_type == CascadeType.HOST_DROPOUT:
        couple = resolver._couple(couple_id)
        run = partial(resolver.host_dropout, couple)

    elif cascade_type == CascadeType.RESIGN_HOST:
        couple = resolver._active_couple(couple_id)
        hosted = resolver._hosted_courses(couple.id)
        courses = resolver._courses(details) or hosted
        missing = [c for c in courses if c not in hosted]
        if not courses or missing:
            raise InvalidStateError(
                "Couple is not hosting the given course",
                {"couple_id": couple.id, "courses": [c.value for c in (missing or courses)]},
            )
        run = partial(resolver.resign_host, couple, courses)

    elif cascade_type == CascadeType.SPLIT:
        couple = resolver._active_couple(couple_id)
        if not details.get("new_couple_id"):
            raise InvalidStateError("Split requires new_couple_id", {"couple_id": couple.id})
        new_couple = resolver._active_couple(details["new_couple_id"], "New couple")
        if new_couple.id == couple.id:
            raise InvalidStateError("A couple cannot be split into itself", {"couple_id": couple.id})
        run = partial(resolver.split, couple, new_couple)

    elif cascade_type == CascadeType.TRANSFER_HOST:
        couple = resolver._active_couple(couple_id)
        if not details.get("to_couple_id"):
            raise InvalidStateError("Host transfer requires to_couple_id", {"couple_id": couple.id})
        target = resolver._active_couple(details["to_couple_id"], "Target couple")
        if target.id == couple.id:
            raise InvalidStateError("Cannot transfer hosting to the same couple", {"couple_id": couple.id})
        hosted = resolver._hosted_courses(couple.id)
        courses = resolver._courses(details) or hosted
        if not courses or any(c not in hosted for c in courses):
            raise InvalidStateError("Couple is not hosting the given course", {"couple_id": couple.id})
        clash = set(resolver._hosted_courses(target.id)) & set(courses)
        if clash:
            raise InvalidStateError(
                "Target couple already hosts this course",
                {"couple_id": target.id, "courses": sorted(c.value for c in clash)},
            )
        resolver._reject_frozen(courses)
        run = partial(resolver.transfer_host, couple, target, courses)

    elif cascade_type == CascadeType.REASSIGN:
        guest = resolver._active_couple(couple_id)
        courses = resolver._courses(details, "course")
        if not courses or not details.get("new_host_couple_id"):
            raise InvalidStateError("Reassign requires course and new_host_couple_id", {"couple_id": guest.id})
        course = courses[0]
        new_host = resolver._active_couple(details["new_host_couple_id"], "New host")
        resolver._require_plan()
        resolver._reject_frozen([course])
        if course not in resolver._hosted_courses(new_host.id):
            raise InvalidStateError("New host is not hosting this course",
                                    {"couple_id": new_host.id, "course": course.value})
        if new_host.id == guest.id or course in resolver._hosted_courses(guest.id):
            raise InvalidStateError("Couple hosts this course and cannot be a guest",
                                    {"couple_id": guest.id, "course": course.value})
        for envelope in resolver._envelopes(couple_id=guest.id, course=course.value):
            if envelope.is_frozen and not envelope.cancelled:
                raise InvalidStateError("Guest envelope has already been activated",
                                        {"envelope_id": envelope.id, "course": course.value})
        run = partial(resolver.reassign, guest, course, new_host)

    else:  # address_change
        couple = resolver._active_couple(couple_id)
        new_address = (details.get("new_address") or "").strip()
        if not new_address:
            raise InvalidStateError("Address change requires new_address", {"couple_id": couple.id})
        run = partial(resolver.address_change, couple, new_address, details.get("new_address_notes"), details)

    result = resolver.result
    result.cascade_type = cascade_type.value
    try:
        run()
        resolver.step = "write_event_log"
        entry = EventLogRepo.add(
            db, event.id, f"cascade_{cascade_type.value}",
            {
                "couple_id": couple_id,
                "pairings_removed": len(result.pairings_removed),
                "unplaced_guest_ids": result.unplaced_guest_ids,
                "envelopes_cancelled": result.envelopes_cancelled,
                "envelopes_updated": result.envelopes_updated,
                "frozen_envelopes_skipped": result.frozen_envelopes_skipped,
                **{k: v for k, v in details.items() if isinstance(v, (str, int, float, list))},
            },
            match_plan_id=plan.id if plan else None,
            actor=actor,
        )
        db.flush()
        if commit:
            resolver.step = "commit"
            db.commit()
            EventLogRepo.mirror_fs(entry)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Cascade {cascade_type.value} for couple {couple_id} failed at {resolver.step}: {exc}")
        result.success = False
        result.step = resolver.step
        result.errors.append(str(exc))
        return result

    logger.info(
        f"Cascade {cascade_type.value} for couple {couple_id}: "
        f"{len(result.pairings_removed)} pairings removed, {len(result.unplaced_guest_ids)} guests unplaced"
    )
    return result
