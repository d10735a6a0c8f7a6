"""
Course assignment and host/guest pairing

``assign_courses`` decides which couples host which course (run once per
event). ``generate_pairings`` seats every eligible guest couple at a host
table for every meal course. Both are pure and deterministic: the same
input always produces the same output. The policy helpers at the bottom
look at persisted state and return soft warnings for manual placements.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from dinner.core.enums import Course, CoupleRole, MEAL_COURSES, parse_course
from dinner.models import Assignment, Couple, CoursePairing, Envelope

logger = logging.getLogger(__name__)

DEFAULT_MAX_GUESTS = 6
DEFAULT_FLEX_EXTRA_CAPACITY = 4
DEFAULT_PERSON_COUNT = 2

UNPLACED_NO_CAPACITY = "no_capacity"
UNPLACED_BLOCKED = "blocked"
UNPLACED_FROZEN = "frozen"


@dataclass(frozen=True)
class Pairing:
    course: Course
    host_couple_id: int
    guest_couple_id: int


@dataclass(frozen=True)
class UnplacedGuest:
    couple_id: int
    course: Course
    reason: str


@dataclass
class MatchResult:
    pairings: List[Pairing]
    stats: dict
    unplaced: List[UnplacedGuest] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def unplaced_guest_ids(self) -> List[int]:
        return list(dict.fromkeys(u.couple_id for u in self.unplaced))

    def pairings_for(self, course: Course) -> List[Pairing]:
        return [p for p in self.pairings if p.course == course]


@dataclass
class _Table:
    host_id: int
    capacity: int
    flex_extra: int = 0
    guests: List[int] = field(default_factory=list)
    persons: int = 0

    def members(self) -> List[int]:
        return [self.host_id, *self.guests]

    def seat(self, couple_id: int, size: int) -> None:
        self.guests.append(couple_id)
        self.persons += size


def is_eligible(couple) -> bool:
    """Cancelled couples and reserves are never matched"""
    return not couple.cancelled and (couple.role or CoupleRole.NORMAL.value) == CoupleRole.NORMAL.value


def _person_count(couple) -> int:
    count = couple.person_count if couple.person_count is not None else DEFAULT_PERSON_COUNT
    if count < 1:
        raise ValueError(f"Couple {couple.id} has invalid person_count {count}")
    return count


def _pair(a: int, b: int) -> frozenset:
    return frozenset((a, b))


def _blocked_set(blocked_pairs: Iterable) -> Set[frozenset]:
    result = set()
    for item in blocked_pairs or ():
        a, b = item.as_tuple() if hasattr(item, "as_tuple") else item
        result.add(_pair(a, b))
    return result


def _host_tables(assignments: Iterable, couples_by_id: dict) -> Dict[Course, Dict[int, _Table]]:
    tables: Dict[Course, Dict[int, _Table]] = {course: {} for course in MEAL_COURSES}
    for a in assignments:
        course = parse_course(a.course)
        if not a.is_host:
            continue
        couple = couples_by_id.get(a.couple_id)
        if couple is None:
            raise ValueError(f"Host assignment references unknown couple {a.couple_id}")
        if course == Course.AFTERPARTY:
            continue
        if a.max_guests is None or a.max_guests <= 0:
            raise ValueError(f"Host {a.couple_id} has non-positive capacity for {course.value}")
        if not is_eligible(couple) or a.couple_id in tables[course]:
            continue
        flex_extra = (a.flex_extra_capacity or 0) if a.is_flex_host else 0
        tables[course][a.couple_id] = _Table(a.couple_id, a.max_guests, flex_extra)
    return tables


def _choose_table(
    guest_id: int,
    size: int,
    tables: Iterable[_Table],
    met: Set[frozenset],
    seen: Counter,
    blocked: Set[frozenset],
) -> Tuple[Optional[_Table], bool, bool, Optional[str]]:
    normal, flex = [], []
    blocked_only = False

    for table in tables:
        if table.host_id == guest_id:
            continue
        fits_normal = table.persons + size <= table.capacity
        limit = table.capacity if fits_normal else table.capacity + table.flex_extra
        if table.persons + size > limit:
            continue
        if any(_pair(guest_id, member) in blocked for member in table.members()):
            blocked_only = True
            continue
        is_repeat = _pair(guest_id, table.host_id) in met
        co_meetings = sum(seen[_pair(guest_id, member)] for member in table.members())
        key = (is_repeat, -(limit - table.persons), co_meetings, table.host_id)
        (normal if fits_normal else flex).append((key, table))

    # Flex capacity only opens once no normal seat is left
    candidates = normal or flex
    if not candidates:
        return None, False, False, UNPLACED_BLOCKED if blocked_only else UNPLACED_NO_CAPACITY

    key, table = min(candidates, key=lambda c: c[0])
    return table, key[0], not normal, None


def _record_meetings(tables: Iterable[_Table], met: Set[frozenset], seen: Counter) -> None:
    for table in tables:
        for guest_id in table.guests:
            met.add(_pair(table.host_id, guest_id))
        for a, b in combinations(table.members(), 2):
            seen[_pair(a, b)] += 1


def generate_pairings(
    couples: Iterable,
    assignments: Iterable,
    blocked_pairs: Iterable = (),
    frozen_courses: Iterable = (),
    prior_pairings: Iterable = (),
) -> MatchResult:
    """Seat every eligible guest couple at a host table for each meal course.

    Capacity, own-home and blocked pairs are hard constraints; repeat
    host/guest meetings are avoided but accepted (and counted) when no other
    table is left. Courses in ``frozen_courses`` copy ``prior_pairings``
    verbatim. Guests that cannot be seated are reported, not raised.
    """
    couples_by_id = {c.id: c for c in couples}
    eligible = {cid: c for cid, c in couples_by_id.items() if is_eligible(c)}
    persons = {cid: _person_count(c) for cid, c in eligible.items()}
    blocked = _blocked_set(blocked_pairs)
    frozen = {parse_course(c) for c in frozen_courses or ()}
    tables_by_course = _host_tables(assignments, couples_by_id)

    prior_by_course: Dict[Course, List[Pairing]] = {course: [] for course in MEAL_COURSES}
    for p in prior_pairings or ():
        course = parse_course(p.course)
        if course in prior_by_course:
            prior_by_course[course].append(Pairing(course, p.host_couple_id, p.guest_couple_id))

    met: Set[frozenset] = set()
    seen: Counter = Counter()
    pairings: List[Pairing] = []
    unplaced: List[UnplacedGuest] = []
    warnings: List[str] = []
    course_stats = {}
    repeat_violations = flex_placements = 0
    used_capacity = total_capacity = 0

    # Frozen courses are copied first so their meetings count against every open course
    frozen_tables: Dict[Course, Dict[int, _Table]] = {}
    for course in MEAL_COURSES:
        if course not in frozen:
            continue
        copied = prior_by_course[course]
        tables: Dict[int, _Table] = {}
        for p in copied:
            if _pair(p.host_couple_id, p.guest_couple_id) in met:
                repeat_violations += 1
                warnings.append(f"Couple {p.guest_couple_id} meets host {p.host_couple_id} again at {course.value}")
            tables.setdefault(p.host_couple_id, _Table(p.host_couple_id, 0)).guests.append(p.guest_couple_id)
        _record_meetings(tables.values(), met, seen)
        frozen_tables[course] = tables

    for course in MEAL_COURSES:
        if course in frozen:
            copied = prior_by_course[course]
            pairings.extend(copied)
            tables = frozen_tables[course]
            seated = {p.guest_couple_id for p in copied}
            hosting = set(tables) | set(tables_by_course[course])
            for guest_id in sorted(eligible):
                if guest_id not in seated and guest_id not in hosting:
                    unplaced.append(UnplacedGuest(guest_id, course, UNPLACED_FROZEN))
            course_stats[course.value] = {
                "pairings": len(copied),
                "hosts": len(tables),
                "guests": len(seated),
                "frozen": True,
            }
            continue

        tables = tables_by_course[course]
        if not tables:
            warnings.append(f"No hosts available for {course.value}")
        guest_ids = sorted((cid for cid in eligible if cid not in tables), key=lambda cid: (-persons[cid], cid))

        placed = 0
        for guest_id in guest_ids:
            table, is_repeat, uses_flex, reason = _choose_table(
                guest_id, persons[guest_id], tables.values(), met, seen, blocked
            )
            if table is None:
                unplaced.append(UnplacedGuest(guest_id, course, reason))
                warnings.append(f"Couple {guest_id} could not be placed for {course.value} ({reason})")
                continue
            if is_repeat:
                repeat_violations += 1
                warnings.append(f"Couple {guest_id} meets host {table.host_id} again at {course.value}")
            if uses_flex:
                flex_placements += 1
            table.seat(guest_id, persons[guest_id])
            pairings.append(Pairing(course, table.host_id, guest_id))
            placed += 1

        _record_meetings(tables.values(), met, seen)
        used_capacity += sum(t.persons for t in tables.values())
        total_capacity += sum(t.capacity for t in tables.values())
        course_stats[course.value] = {
            "pairings": placed,
            "hosts": len(tables),
            "guests": len(guest_ids),
            "frozen": False,
        }

    matched = {p.guest_couple_id for p in pairings} | {p.host_couple_id for p in pairings}
    stats = {
        "courses": course_stats,
        "couples_matched": len(matched & set(eligible)),
        "capacity_utilization": round(used_capacity / total_capacity, 2) if total_capacity else 0.0,
        "repeat_violations": repeat_violations,
        "flex_placements": flex_placements,
        "unplaced_count": len(unplaced),
        "unplaced": [{"couple_id": u.couple_id, "course": u.course.value, "reason": u.reason} for u in unplaced],
        "frozen_courses": [c.value for c in MEAL_COURSES if c in frozen],
    }
    if unplaced:
        logger.warning(f"{len(unplaced)} guest placements could not be made")

    return MatchResult(pairings=pairings, stats=stats, unplaced=unplaced, warnings=warnings)


# -------- Course assignment --------

@dataclass(frozen=True)
class HostAssignment:
    couple_id: int
    course: Course
    max_guests: int = DEFAULT_MAX_GUESTS
    is_flex_host: bool = False
    flex_extra_capacity: int = DEFAULT_FLEX_EXTRA_CAPACITY


@dataclass
class CourseAssignmentResult:
    assignments: List[HostAssignment]
    preference_satisfaction: float
    capacity_per_course: Dict[str, int]


def assign_courses(couples: Iterable, max_guests: int = DEFAULT_MAX_GUESTS) -> CourseAssignmentResult:
    """Give every eligible couple one meal course to host.

    Preferences are honored up to ``ceil(n / 3) + 1`` hosts per course; the
    remaining couples go to the least-filled course.
    """
    if max_guests <= 0:
        raise ValueError("max_guests must be positive")

    active = sorted((c for c in couples if is_eligible(c)), key=lambda c: c.id)
    if len(active) < 3:
        raise ValueError("At least 3 couples are required to run matching")

    hosts: Dict[Course, List[int]] = {course: [] for course in MEAL_COURSES}
    target = math.ceil(len(active) / 3)
    with_preference, overflow = [], []
    for couple in active:
        preferred = None
        if couple.course_preference:
            try:
                preferred = parse_course(couple.course_preference)
            except ValueError:
                preferred = None
        if preferred in hosts:
            with_preference.append((couple, preferred))
        else:
            overflow.append(couple)

    satisfied = 0
    for couple, preferred in with_preference:
        if len(hosts[preferred]) < target + 1:
            hosts[preferred].append(couple.id)
            satisfied += 1
        else:
            overflow.append(couple)

    for couple in overflow:
        least_filled = min(MEAL_COURSES, key=lambda c: len(hosts[c]))
        hosts[least_filled].append(couple.id)

    capacity = {}
    for course in MEAL_COURSES:
        hosting = set(hosts[course])
        guest_persons = sum(_person_count(c) for c in active if c.id not in hosting)
        capacity[course.value] = len(hosting) * max_guests
        if capacity[course.value] < guest_persons:
            raise ValueError(
                f"Insufficient capacity for {course.value}: "
                f"{capacity[course.value]} seats < {guest_persons} guests"
            )

    assignments = [HostAssignment(cid, course, max_guests) for course in MEAL_COURSES for cid in hosts[course]]
    return CourseAssignmentResult(
        assignments=assignments,
        preference_satisfaction=round(satisfied / len(with_preference), 2) if with_preference else 1.0,
        capacity_per_course=capacity,
    )


# -------- Policy warnings for manual placements --------

def reveal_freeze_warning(db: Session, match_plan_id: int, host_couple_id: int) -> Optional[dict]:
    activated = db.query(Envelope).filter(
        Envelope.match_plan_id == match_plan_id,
        Envelope.host_couple_id == host_couple_id,
        Envelope.activated_at.isnot(None),
        Envelope.cancelled == False,  # noqa: E712
    ).count()
    if not activated:
        return None
    return {
        "type": "reveal_freeze",
        "message": f"{activated} envelopes are already activated, guests may have seen the old address",
        "affected_envelopes": activated,
    }


def capacity_warning(
    db: Session,
    event_id: int,
    match_plan_id: int,
    host_couple_id: int,
    course: Course,
    guest_couple_id: int,
) -> Optional[dict]:
    assignment = db.query(Assignment).filter(
        Assignment.event_id == event_id,
        Assignment.couple_id == host_couple_id,
        Assignment.course == course.value,
        Assignment.is_host == True,  # noqa: E712
    ).first()
    if not assignment:
        return None

    guest_ids = {
        row.guest_couple_id
        for row in db.query(CoursePairing).filter(
            CoursePairing.match_plan_id == match_plan_id,
            CoursePairing.host_couple_id == host_couple_id,
            CoursePairing.course == course.value,
        )
    }
    guest_ids.add(guest_couple_id)
    guests = db.query(Couple).filter(Couple.event_id == event_id, Couple.id.in_(guest_ids)).all()
    current = sum(c.person_count or DEFAULT_PERSON_COUNT for c in guests)
    if current <= assignment.max_guests:
        return None
    return {
        "type": "capacity",
        "message": f"Host capacity exceeded ({current}/{assignment.max_guests})",
        "current_guest_count": current,
        "max_guests": assignment.max_guests,
    }


def duplicate_address_warning(db: Session, event_id: int, address: str, couple_id: Optional[int] = None) -> Optional[dict]:
    duplicates = [
        c.id
        for c in db.query(Couple).filter(
            Couple.event_id == event_id,
            Couple.address == address,
            Couple.cancelled == False,  # noqa: E712
        )
        if c.id != couple_id
    ]
    if not duplicates:
        return None
    return {
        "type": "duplicate_address",
        "message": f"Address is already used by {len(duplicates)} other couples",
        "duplicate_couple_ids": duplicates,
    }
