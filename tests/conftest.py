"""
Shared test setup: UTC schedules, no Firestore, and an event seeding helper
"""

import os

os.environ.setdefault("EVENT_TIMEZONE", "UTC")
os.environ.setdefault("USE_FIREBASE", "false")
os.environ.setdefault("OPENROUTESERVICE_API_KEY", "")

from datetime import date, time

import pytest

from dinner.models import Assignment, Couple, Event

EVENT_DATE = date(2099, 6, 6)

# Six facts per couple so every course gets two unique clues
FUN_FACTS = {
    "invited": ["Plays the cello", "Has climbed Kebnekaise", "Owns three cats"],
    "partner": ["Speaks Finnish", "Was a child actor", "Bakes sourdough"],
}

@pytest.fixture
def seed_event():
    """Create an event with one couple per entry in ``host_courses``.

    Each couple hosts the course at its position; ``None`` means the couple
    only ever takes part as a guest.
    """
    def _seed(db, host_courses=("starter", "starter", "main", "main", "dessert", "dessert"),
              max_guests=2, person_count=1):
        event = Event(
            name="Pitea Progressive Dinner",
            event_date=EVENT_DATE,
            starter_time=time(17, 30),
            main_time=time(19, 0),
            dessert_time=time(20, 30),
        )
        db.add(event)
        db.flush()

        couples = []
        for i, course in enumerate(host_courses, start=1):
            couple = Couple(
                event_id=event.id,
                invited_name=f"Invited{i}",
                partner_name=f"Partner{i}",
                invited_birth_year=1980 + i,
                partner_birth_year=1982 + i,
                invited_fun_facts=[f"{fact} ({i})" for fact in FUN_FACTS["invited"]],
                partner_fun_facts=[f"{fact} ({i})" for fact in FUN_FACTS["partner"]],
                address=f"Storgatan {10 + i}, 941 33 Pitea",
                person_count=person_count,
            )
            db.add(couple)
            db.flush()
            couples.append(couple)
            if course is not None:
                db.add(Assignment(
                    event_id=event.id,
                    couple_id=couple.id,
                    course=course,
                    is_host=True,
                    max_guests=max_guests,
                ))

        db.commit()
        db.refresh(event)
        return event, couples

    return _seed
