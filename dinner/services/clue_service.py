"""
Clue allocation

Distributes a host's fun facts across the courses so guests meeting the
same host at different courses do not hear the same clue twice.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from dinner.core.enums import Course, MEAL_COURSES

MIN_FACTS_FOR_UNIQUE_CLUES = 6
CLUES_PER_COURSE = 2


def combine_fun_facts(invited_facts, partner_facts) -> List[str]:
    invited = invited_facts if isinstance(invited_facts, list) else []
    partner = partner_facts if isinstance(partner_facts, list) else []
    return [str(f) for f in [*invited, *partner] if f]


def allocate_clue_indices(total_facts: int) -> Dict[Course, List[int]]:
    """Fact indices per meal course, degrading 6 -> 4 -> 2 -> 1 -> 0"""
    if total_facts < 0:
        raise ValueError("total_facts cannot be negative")

    if total_facts >= 6:
        allocation = [[0, 1], [2, 3], [4, 5]]
    elif total_facts >= 4:
        allocation = [[0, 1], [2, 3 if total_facts > 4 else 0], [total_facts - 2, total_facts - 1]]
    elif total_facts >= 2:
        allocation = [[0], [1 if total_facts > 2 else 0], [total_facts - 1]]
    elif total_facts == 1:
        allocation = [[0], [0], [0]]
    else:
        allocation = [[], [], []]

    return dict(zip(MEAL_COURSES, allocation))


@dataclass
class FallbackClueContext:
    host_names: List[str] = field(default_factory=list)
    travel_minutes: Optional[int] = None
    birth_years: List[Optional[int]] = field(default_factory=list)


def generate_fallback_clues(context: FallbackClueContext) -> List[str]:
    clues = []

    years = [y for y in context.birth_years if y]
    if years:
        decade = (round(sum(years) / len(years)) // 10) * 10
        clues.append(f"Your hosts were born in the {decade}s")

    if context.travel_minutes:
        if context.travel_minutes < 5:
            clues.append("You live close to each other, under 5 minutes away")
        elif context.travel_minutes < 10:
            clues.append("A short ride away, under 10 minutes")
        else:
            clues.append(f"About {context.travel_minutes} minutes away")

    initials = " & ".join(name[0].upper() for name in context.host_names if name)
    if initials:
        clues.append(f"Your hosts have the initials {initials}")

    clues.append("Your hosts love good food")
    clues.append("You are going to have a great time there")
    return clues


def clues_for_course(
    facts: Sequence[str],
    allocation: Dict[Course, List[int]],
    course: Course,
    fallback: Optional[FallbackClueContext] = None,
) -> List[str]:
    clues = [facts[i] for i in allocation.get(course, []) if 0 <= i < len(facts)]
    if len(clues) < CLUES_PER_COURSE and fallback is not None:
        extra = generate_fallback_clues(fallback)
        while len(clues) < CLUES_PER_COURSE and extra:
            clues.append(extra.pop(0))
    return clues


@dataclass
class ClueValidation:
    is_valid: bool
    total_facts: int
    missing_count: int
    message: str


def validate_fun_facts(invited_facts, partner_facts) -> ClueValidation:
    total = len(combine_fun_facts(invited_facts, partner_facts))
    if total >= MIN_FACTS_FOR_UNIQUE_CLUES:
        return ClueValidation(True, total, 0, f"{total} fun facts registered")
    missing = MIN_FACTS_FOR_UNIQUE_CLUES - total
    return ClueValidation(False, total, missing, f"{missing} more fun facts needed for unique clues")


def fallback_context_for(host, travel_minutes: Optional[int] = None) -> FallbackClueContext:
    return FallbackClueContext(
        host_names=[n for n in (host.invited_name, host.partner_name) if n],
        travel_minutes=travel_minutes,
        birth_years=[host.invited_birth_year, host.partner_birth_year],
    )


@dataclass
class StreetInfo:
    street_name: Optional[str] = None
    street_number: Optional[int] = None
    apartment: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    range_low: Optional[int] = None
    range_high: Optional[int] = None


_STREET_RE = re.compile(r"^(.+?)\s+(\d+)[A-Za-z]?\s*(lgh\s*.+|apt\.?\s*.+)?$", re.IGNORECASE)
_POSTAL_RE = re.compile(r"^(\d{3}\s?\d{2})\s*(.+)?$")


def parse_address(address: Optional[str]) -> StreetInfo:
    """Split "Storgatan 14B lgh 1102, 941 33 Pitea" into its parts"""
    info = StreetInfo()
    if not address:
        return info

    parts = [p.strip() for p in address.split(",")]
    match = _STREET_RE.match(parts[0])
    if match:
        info.street_name = match.group(1).strip()
        info.street_number = int(match.group(2))
        if match.group(3):
            info.apartment = match.group(3).strip()
        base = (info.street_number // 10) * 10
        info.range_low = max(1, base)
        info.range_high = base + 10
    else:
        info.street_name = parts[0]

    if len(parts) > 1:
        postal = _POSTAL_RE.match(parts[1])
        if postal:
            info.postal_code = postal.group(1).replace(" ", "")
            info.city = (postal.group(2) or "").strip() or None
        else:
            info.city = parts[1]

    for part in parts[1:]:
        apt = re.search(r"lgh\s*(.+)", part, re.IGNORECASE)
        if apt and not info.apartment:
            info.apartment = f"lgh {apt.group(1).strip()}"

    return info
