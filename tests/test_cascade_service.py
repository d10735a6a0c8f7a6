"""
Tests for cascade resolution after structural changes
"""

import pytest
from datetime import datetime
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dinner.core.db import Base
from dinner.core.enums import CascadeType, Course
from dinner.core.errors import InvalidStateError
from dinner.models import Couple, CoursePairing, Envelope, EventLog, MatchPlan
from dinner.services.cascade_service import resolve_cascade
from dinner.services.rematch_service import run_initial_match
from dinner.services.repositories import CoupleRepo, PlanRepo

# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_cascade.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture
def db_session():
    """Create test database session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)

@pytest.fixture
def matched_event(db_session, seed_event):
    """Six couples with an active plan (version 1)"""
    event, couples = seed_event(db_session)
    result = run_initial_match(db_session, event.id)
    assert result.success
    return event, couples, result.plan_id

def guests_of(db, plan_id, host_id, course):
    return sorted(p.guest_couple_id for p in PlanRepo.pairings(db, plan_id, course) if p.host_couple_id == host_id)

def test_resign_host_unplaces_exactly_its_guests(db_session, matched_event):
    event, couples, plan_id = matched_event
    host = couples[0]
    expected = guests_of(db_session, plan_id, host.id, Course.STARTER)

    result = resolve_cascade(db_session, event, plan_id, CascadeType.RESIGN_HOST, host.id, {"courses": ["starter"]})

    assert result.success
    assert sorted(result.unplaced_guest_ids) == expected
    assert len(result.unplaced_guest_ids) == len(set(result.unplaced_guest_ids))
    assert len(result.pairings_removed) == len(expected)
    assert result.assignments_removed == 1
    # Host envelope plus one envelope per guest
    assert result.envelopes_cancelled == len(expected) + 1

    assert guests_of(db_session, plan_id, host.id, Course.STARTER) == []
    assert CoupleRepo.host_assignments(db_session, event.id, host.id) == []
    envelopes = db_session.query(Envelope).filter(
        Envelope.match_plan_id == plan_id, Envelope.host_couple_id == host.id, Envelope.course == "starter"
    ).all()
    assert envelopes and all(e.cancelled for e in envelopes)

def test_resign_host_leaves_guest_role_untouched(db_session, matched_event):
    event, couples, plan_id = matched_event
    host = couples[0]

    resolve_cascade(db_session, event, plan_id, CascadeType.RESIGN_HOST, host.id)

    as_guest = db_session.query(CoursePairing).filter(
        CoursePairing.match_plan_id == plan_id, CoursePairing.guest_couple_id == host.id
    ).count()
    assert as_guest == 2
    own_guest_envelopes = db_session.query(Envelope).filter(
        Envelope.match_plan_id == plan_id, Envelope.couple_id == host.id, Envelope.course != "starter"
    ).all()
    assert not any(e.cancelled for e in own_guest_envelopes)

def test_activated_envelope_is_only_cancelled(db_session, matched_event):
    event, couples, plan_id = matched_event
    host = couples[0]
    envelope = db_session.query(Envelope).filter(
        Envelope.match_plan_id == plan_id,
        Envelope.host_couple_id == host.id,
        Envelope.couple_id != host.id,
    ).first()
    envelope.activate()
    db_session.commit()
    activated_at = envelope.activated_at
    ladder = envelope.ladder()
    destination = envelope.destination_address

    result = resolve_cascade(db_session, event, plan_id, CascadeType.RESIGN_HOST, host.id, {"courses": ["starter"]})

    db_session.refresh(envelope)
    assert result.success
    assert envelope.cancelled
    assert envelope.activated_at == activated_at
    assert envelope.ladder() == ladder
    assert envelope.destination_address == destination
    assert envelope.couple_id in result.unplaced_guest_ids

def test_guest_dropout_keeps_hosting(db_session, matched_event):
    event, couples, plan_id = matched_event
    couple = couples[2]  # hosts main

    result = resolve_cascade(db_session, event, plan_id, CascadeType.GUEST_DROPOUT, couple.id)

    assert result.success
    assert result.unplaced_guest_ids == []
    assert len(result.pairings_removed) == 2
    assert db_session.query(CoursePairing).filter(
        CoursePairing.match_plan_id == plan_id, CoursePairing.guest_couple_id == couple.id
    ).count() == 0
    assert len(guests_of(db_session, plan_id, couple.id, Course.MAIN)) == 2
    own = db_session.query(Envelope).filter(Envelope.match_plan_id == plan_id, Envelope.couple_id == couple.id).all()
    assert own and all(e.cancelled for e in own)
    assert db_session.query(EventLog).filter(EventLog.action == "cascade_guest_dropout").count() == 1

def test_host_dropout_removes_everything(db_session, matched_event):
    event, couples, plan_id = matched_event
    host = couples[4]  # hosts dessert

    result = resolve_cascade(db_session, event, plan_id, CascadeType.HOST_DROPOUT, host.id)

    assert result.success
    assert len(result.unplaced_guest_ids) == 2
    assert db_session.query(CoursePairing).filter(
        CoursePairing.match_plan_id == plan_id,
        (CoursePairing.guest_couple_id == host.id) | (CoursePairing.host_couple_id == host.id),
    ).count() == 0
    assert CoupleRepo.host_assignments(db_session, event.id, host.id) == []

def test_split_returns_new_entry_unplaced(db_session, matched_event):
    event, couples, plan_id = matched_event
    solo = Couple(event_id=event.id, invited_name="Solo", address="Kyrkbrinken 3, 941 31 Pitea", person_count=1)
    db_session.add(solo)
    db_session.commit()
    pairings_before = len(PlanRepo.pairings(db_session, plan_id))

    result = resolve_cascade(db_session, event, plan_id, CascadeType.SPLIT, couples[1].id, {"new_couple_id": solo.id})

    assert result.success
    assert result.unplaced_guest_ids == [solo.id]
    assert result.pairings_removed == []
    assert len(PlanRepo.pairings(db_session, plan_id)) == pairings_before

def test_transfer_host_moves_table(db_session, matched_event):
    event, couples, plan_id = matched_event
    source = couples[0]
    starter_guests = guests_of(db_session, plan_id, source.id, Course.STARTER)
    target_id, remaining = starter_guests[0], starter_guests[1:]

    result = resolve_cascade(db_session, event, plan_id, CascadeType.TRANSFER_HOST, source.id,
                             {"to_couple_id": target_id, "courses": ["starter"]})

    assert result.success
    assert result.unplaced_guest_ids == [source.id]
    assert guests_of(db_session, plan_id, target_id, Course.STARTER) == remaining
    assert guests_of(db_session, plan_id, source.id, Course.STARTER) == []
    hosted = {a.course for a in CoupleRepo.host_assignments(db_session, event.id, target_id)}
    assert "starter" in hosted
    assert result.envelopes_updated == len(remaining)
    assert result.envelopes_created == 1

    target = CoupleRepo.get_by_id(db_session, target_id)
    moved = db_session.query(Envelope).filter(
        Envelope.match_plan_id == plan_id,
        Envelope.course == "starter",
        Envelope.couple_id.in_(remaining),
        Envelope.cancelled == False,  # noqa: E712
    ).all()
    assert moved and all(e.destination_address == target.address for e in moved)

def test_reassign_moves_guest_and_warns_on_capacity(db_session, matched_event):
    event, couples, plan_id = matched_event
    first_host, second_host = couples[0], couples[1]
    guest_id = guests_of(db_session, plan_id, first_host.id, Course.STARTER)[0]

    result = resolve_cascade(db_session, event, plan_id, CascadeType.REASSIGN, guest_id,
                             {"course": "starter", "new_host_couple_id": second_host.id})

    assert result.success
    assert guest_id in guests_of(db_session, plan_id, second_host.id, Course.STARTER)
    assert guest_id not in guests_of(db_session, plan_id, first_host.id, Course.STARTER)
    assert [w["type"] for w in result.warnings] == ["capacity"]
    assert result.envelopes_cancelled == 1
    assert result.envelopes_created == 1

    active = db_session.query(Envelope).filter(
        Envelope.match_plan_id == plan_id,
        Envelope.couple_id == guest_id,
        Envelope.course == "starter",
        Envelope.cancelled == False,  # noqa: E712
    ).one()
    assert active.host_couple_id == second_host.id
    assert active.destination_address == second_host.address

def test_address_change_skips_activated_envelopes(db_session, matched_event):
    event, couples, plan_id = matched_event
    host = couples[0]
    frozen = db_session.query(Envelope).filter(
        Envelope.match_plan_id == plan_id, Envelope.host_couple_id == host.id, Envelope.couple_id != host.id
    ).first()
    frozen.activate()
    db_session.commit()
    old_address = host.address

    result = resolve_cascade(db_session, event, plan_id, CascadeType.ADDRESS_CHANGE, host.id,
                             {"new_address": "Hamngatan 5, 941 32 Pitea", "new_address_notes": "Blue door"})

    assert result.success
    assert result.envelopes_updated == 2
    assert result.frozen_envelopes_skipped == 1
    assert [w["type"] for w in result.warnings] == ["reveal_freeze"]
    db_session.refresh(frozen)
    assert frozen.destination_address == old_address
    assert CoupleRepo.get_by_id(db_session, host.id).address == "Hamngatan 5, 941 32 Pitea"

def test_address_change_leaves_revealed_envelopes(db_session, matched_event):
    """Envelopes whose teasing stage has passed are frozen before the change"""
    event, couples, plan_id = matched_event
    host = couples[0]  # hosts starter
    now = datetime(2099, 6, 6, 12, 0)
    old_address = host.address

    result = resolve_cascade(db_session, event, plan_id, CascadeType.ADDRESS_CHANGE, host.id,
                             {"new_address": "Hamngatan 5, 941 32 Pitea"}, now=now)

    assert result.success
    assert result.envelopes_updated == 0
    assert result.frozen_envelopes_skipped == 3
    pointing = db_session.query(Envelope).filter(
        Envelope.match_plan_id == plan_id, Envelope.host_couple_id == host.id
    ).all()
    assert all(e.activated_at == now for e in pointing)
    assert all(e.destination_address == old_address for e in pointing)

def test_address_change_warns_on_duplicate_address(db_session, matched_event):
    event, couples, plan_id = matched_event

    result = resolve_cascade(db_session, event, plan_id, CascadeType.ADDRESS_CHANGE, couples[0].id,
                             {"new_address": couples[1].address})

    assert [w["type"] for w in result.warnings] == ["duplicate_address"]
    assert result.warnings[0]["duplicate_couple_ids"] == [couples[1].id]

def test_invalid_changes_raise_before_writing(db_session, matched_event):
    event, couples, plan_id = matched_event
    pairings_before = len(PlanRepo.pairings(db_session, plan_id))

    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.RESIGN_HOST, couples[0].id, {"courses": ["main"]})
    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.SPLIT, couples[0].id, {"new_couple_id": couples[0].id})
    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.SPLIT, couples[0].id, {"new_couple_id": 999})
    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.TRANSFER_HOST, couples[0].id,
                        {"to_couple_id": couples[1].id, "courses": ["starter"]})
    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.ADDRESS_CHANGE, couples[0].id, {"new_address": " "})
    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, None, CascadeType.REASSIGN, couples[2].id,
                        {"course": "starter", "new_host_couple_id": couples[1].id})
    with pytest.raises(ValueError):
        resolve_cascade(db_session, event, plan_id, "teleport", couples[0].id)

    assert len(PlanRepo.pairings(db_session, plan_id)) == pairings_before

def test_frozen_course_rejects_reassign_and_transfer(db_session, matched_event):
    event, couples, plan_id = matched_event
    plan = db_session.query(MatchPlan).filter(MatchPlan.id == plan_id).one()
    plan.frozen_courses = ["starter"]
    db_session.commit()
    guest_id = guests_of(db_session, plan_id, couples[0].id, Course.STARTER)[0]

    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.REASSIGN, guest_id,
                        {"course": "starter", "new_host_couple_id": couples[1].id})
    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.TRANSFER_HOST, couples[0].id,
                        {"to_couple_id": guest_id, "courses": ["starter"]})

def test_cancelled_couple_cannot_resign(db_session, matched_event):
    event, couples, plan_id = matched_event
    couples[0].cancel()
    db_session.commit()

    with pytest.raises(InvalidStateError):
        resolve_cascade(db_session, event, plan_id, CascadeType.RESIGN_HOST, couples[0].id)

def test_database_failure_rolls_back(db_session, matched_event, monkeypatch):
    event, couples, plan_id = matched_event
    pairings_before = len(PlanRepo.pairings(db_session, plan_id))

    def failing_flush(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(db_session, "flush", failing_flush)
    result = resolve_cascade(db_session, event, plan_id, CascadeType.GUEST_DROPOUT, couples[2].id)
    monkeypatch.undo()

    assert not result.success
    assert result.step == "delete_guest_pairings"
    assert "disk I/O error" in result.errors[0]
    assert len(PlanRepo.pairings(db_session, plan_id)) == pairings_before
