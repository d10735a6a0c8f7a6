"""
Tests for the rematch orchestrator, its lock and the dropout workflow
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dinner.core.db import Base
from dinner.core.enums import CascadeType, Course, PlanStatus
from dinner.core.errors import InvalidStateError
from dinner.core.time import utcnow
from dinner.models import Assignment, CoursePairing, Envelope, EventLog, MatchPlan
from dinner.services import rematch_service
from dinner.services.rematch_service import (
    RematchOrchestrator,
    RematchTrigger,
    activate_reserve,
    handle_dropout,
    run_initial_match,
    run_rematch,
    run_rematch_with_retry,
    set_reserve,
)
from dinner.services.repositories import CoupleRepo, EventRepo, PlanRepo

# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_rematch.db"
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

def hold_lock(db, event, minutes):
    event.rematch_lock_until = utcnow() + timedelta(minutes=minutes)
    db.commit()

def guests_of(db, plan_id, host_id, course):
    return sorted(p.guest_couple_id for p in PlanRepo.pairings(db, plan_id, course) if p.host_couple_id == host_id)

def test_initial_match_creates_active_plan(db_session, seed_event):
    event, couples = seed_event(db_session)

    result = run_initial_match(db_session, event.id, created_by="organizer")

    db_session.refresh(event)
    assert result.success
    assert result.version == 1
    assert len(result.course_pairings) == 12
    # One host envelope per hosted course plus one per guest placement
    assert result.envelopes == 18
    assert result.stats["unplaced_count"] == 0
    assert event.active_match_plan_id == result.plan_id
    assert event.rematch_lock_until is None
    plan = PlanRepo.get_active(db_session, event)
    assert plan.status == PlanStatus.ACTIVE.value
    assert plan.created_by == "organizer"
    assert db_session.query(EventLog).filter(EventLog.action == "initial_match").count() == 1

def test_initial_match_assigns_courses_when_missing(db_session, seed_event):
    event, couples = seed_event(db_session, host_courses=(None,) * 6, person_count=2)

    result = run_initial_match(db_session, event.id)

    assert result.success
    hosts = db_session.query(Assignment).filter(Assignment.event_id == event.id, Assignment.is_host == True).all()  # noqa: E712
    assert len(hosts) == 6
    assert {a.course for a in hosts} == {"starter", "main", "dessert"}
    assert result.stats["unplaced_count"] == 0

def test_initial_match_with_too_few_couples_fails_cleanly(db_session, seed_event):
    event, _ = seed_event(db_session, host_courses=(None, None))

    result = run_initial_match(db_session, event.id)

    db_session.refresh(event)
    assert not result.success
    assert result.step == "assign_courses"
    assert event.rematch_lock_until is None
    assert db_session.query(MatchPlan).count() == 0

def test_rematch_increments_version_and_supersedes(db_session, seed_event):
    event, _ = seed_event(db_session)
    first = run_initial_match(db_session, event.id)

    second = run_rematch(db_session, event.id, created_by="organizer")

    assert second.success
    assert second.version == 2
    old = db_session.query(MatchPlan).filter(MatchPlan.id == first.plan_id).one()
    assert old.status == PlanStatus.SUPERSEDED.value
    assert old.superseded_by == second.plan_id
    assert old.superseded_at is not None
    active = db_session.query(MatchPlan).filter(MatchPlan.status == PlanStatus.ACTIVE.value).all()
    assert [p.id for p in active] == [second.plan_id]
    # Superseded plans keep their pairings
    assert len(PlanRepo.pairings(db_session, first.plan_id)) == 12

def test_concurrent_rematch_is_rejected(db_session, seed_event):
    event, _ = seed_event(db_session)
    run_initial_match(db_session, event.id)
    hold_lock(db_session, event, 5)

    result = run_rematch(db_session, event.id)

    db_session.refresh(event)
    assert result.conflict
    assert not result.success
    assert result.step == "acquire_lock"
    assert db_session.query(MatchPlan).count() == 1
    assert event.rematch_lock_until is not None
    assert db_session.query(EventLog).filter(EventLog.action == "rematch_conflict").count() == 1

def test_expired_lock_can_be_taken(db_session, seed_event):
    event, _ = seed_event(db_session)
    hold_lock(db_session, event, -1)

    result = run_rematch(db_session, event.id)

    db_session.refresh(event)
    assert result.success
    assert event.rematch_lock_until is None

def test_lock_compare_and_swap(db_session, seed_event):
    event, _ = seed_event(db_session)

    assert EventRepo.try_acquire_lock(db_session, event.id)
    assert not EventRepo.try_acquire_lock(db_session, event.id)
    EventRepo.release_lock(db_session, event.id)
    assert EventRepo.try_acquire_lock(db_session, event.id)

def test_lock_released_after_failure(db_session, seed_event):
    event, couples = seed_event(db_session)
    db_session.add(Assignment(event_id=event.id, couple_id=couples[0].id, course="main", is_host=True, max_guests=0))
    db_session.commit()

    result = run_rematch(db_session, event.id)

    db_session.refresh(event)
    assert not result.success
    assert result.step == "generate_pairings"
    assert result.errors
    assert event.rematch_lock_until is None
    assert event.active_match_plan_id is None
    assert db_session.query(MatchPlan).count() == 0

def test_unexpected_error_rolls_back_partial_plan(db_session, seed_event, monkeypatch):
    event, couples = seed_event(db_session)
    first = run_initial_match(db_session, event.id)

    def broken_envelopes(*args, **kwargs):
        raise RuntimeError("envelope builder crashed")

    monkeypatch.setattr(rematch_service, "build_plan_envelopes", broken_envelopes)
    trigger = RematchTrigger(CascadeType.RESIGN_HOST, couples[0].id, {"courses": ["starter"]})

    with pytest.raises(RuntimeError):
        run_rematch(db_session, event.id, trigger)

    db_session.refresh(event)
    plans = [(p.version, p.status) for p in db_session.query(MatchPlan).order_by(MatchPlan.version)]
    assert plans == [(1, "active")]
    assert event.active_match_plan_id == first.plan_id
    assert event.rematch_lock_until is None
    assert len(PlanRepo.pairings(db_session, first.plan_id)) == 12
    assert CoupleRepo.host_assignments(db_session, event.id, couples[0].id)

def test_retry_gives_up_after_attempts(db_session, seed_event):
    event, _ = seed_event(db_session)
    hold_lock(db_session, event, 5)
    sleeps = []

    result = run_rematch_with_retry(db_session, event.id, attempts=3, delay_seconds=0.5, sleep=sleeps.append)

    assert result.conflict
    assert sleeps == [0.5, 0.5]

def test_retry_succeeds_once_lock_is_free(db_session, seed_event):
    event, _ = seed_event(db_session)
    hold_lock(db_session, event, 5)
    sleeps = []

    def wait(seconds):
        sleeps.append(seconds)
        EventRepo.release_lock(db_session, event.id)

    result = run_rematch_with_retry(db_session, event.id, attempts=3, delay_seconds=0.5, sleep=wait)

    assert result.success
    assert result.version == 1
    assert sleeps == [0.5]

def test_resign_with_activated_envelope(db_session, seed_event):
    """A host with one revealed envelope resigns its course"""
    event, couples = seed_event(db_session)
    first = run_initial_match(db_session, event.id)
    host, other_host = couples[0], couples[1]
    resigned_guests = guests_of(db_session, first.plan_id, host.id, Course.STARTER)
    other_table = guests_of(db_session, first.plan_id, other_host.id, Course.STARTER)
    revealed = db_session.query(Envelope).filter(
        Envelope.match_plan_id == first.plan_id,
        Envelope.host_couple_id == host.id,
        Envelope.couple_id == resigned_guests[0],
    ).one()
    revealed.activate()
    db_session.commit()
    activated_at = revealed.activated_at

    trigger = RematchTrigger(CascadeType.RESIGN_HOST, host.id, {"courses": ["starter"]})
    result = run_rematch(db_session, event.id, trigger)

    assert result.success
    assert sorted(result.cascade["unplaced_guest_ids"]) == resigned_guests
    assert "starter" in result.frozen_courses

    db_session.refresh(revealed)
    assert revealed.cancelled
    assert revealed.activated_at == activated_at

    # The frozen course keeps the surviving table verbatim and has no slot for the resigned host
    assert guests_of(db_session, result.plan_id, host.id, Course.STARTER) == []
    assert guests_of(db_session, result.plan_id, other_host.id, Course.STARTER) == other_table
    frozen_unplaced = {u["couple_id"] for u in result.stats["unplaced"] if u["reason"] == "frozen"}
    assert set(resigned_guests) <= frozen_unplaced

    # The activated envelope is carried into the new plan unchanged
    copied = db_session.query(Envelope).filter(
        Envelope.match_plan_id == result.plan_id,
        Envelope.couple_id == revealed.couple_id,
        Envelope.course == "starter",
    ).one()
    assert copied.activated_at == activated_at
    assert copied.cancelled

def test_rematch_keeps_frozen_course_pairings(db_session, seed_event):
    event, _ = seed_event(db_session)
    first = run_initial_match(db_session, event.id)
    plan = PlanRepo.get_active(db_session, event)
    plan.frozen_courses = ["starter"]
    db_session.commit()
    before = sorted((p.host_couple_id, p.guest_couple_id) for p in PlanRepo.pairings(db_session, first.plan_id, Course.STARTER))

    result = run_rematch(db_session, event.id)

    after = sorted((p.host_couple_id, p.guest_couple_id) for p in PlanRepo.pairings(db_session, result.plan_id, Course.STARTER))
    assert after == before
    assert result.frozen_courses == ["starter"]

def test_due_envelopes_are_activated_before_rematch(db_session, seed_event):
    event, _ = seed_event(db_session)
    first = run_initial_match(db_session, event.id)
    starter = db_session.query(Envelope).filter(
        Envelope.match_plan_id == first.plan_id, Envelope.course == "starter"
    ).first()
    now = starter.teasing_at + timedelta(minutes=1)

    result = RematchOrchestrator(db_session).run_rematch(event.id, now=now)

    assert result.success
    assert result.frozen_courses == ["starter"]

def test_guest_dropout_without_rematch(db_session, seed_event):
    event, couples = seed_event(db_session, host_courses=("starter", "starter", "main", "main", "dessert", "dessert", None),
                                max_guests=3)
    first = run_initial_match(db_session, event.id)
    guest = couples[6]

    result = handle_dropout(db_session, guest.id, reason="Sick", actor="organizer",
                            now=datetime(2099, 6, 1, 12, 0))

    assert result["success"]
    assert not result["was_host"]
    assert result["rematch"] is None
    assert not result["is_urgent"]
    assert db_session.query(CoursePairing).filter(
        CoursePairing.match_plan_id == first.plan_id, CoursePairing.guest_couple_id == guest.id
    ).count() == 0
    assert db_session.query(EventLog).filter(EventLog.action == "guest_dropout").count() == 1

def test_host_dropout_triggers_rematch(db_session, seed_event):
    event, couples = seed_event(db_session)
    run_initial_match(db_session, event.id)
    host = couples[0]

    result = handle_dropout(db_session, host.id, now=datetime(2099, 6, 6, 10, 0))

    assert result["success"]
    assert result["was_host"]
    assert result["is_urgent"]
    assert result["is_emergency"]
    assert result["rematch"]["version"] == 2
    new_pairings = PlanRepo.pairings(db_session, result["rematch"]["plan_id"])
    assert all(host.id not in (p.host_couple_id, p.guest_couple_id) for p in new_pairings)
    db_session.refresh(host)
    assert host.cancelled

    with pytest.raises(InvalidStateError):
        handle_dropout(db_session, host.id)

def test_reserve_round_trip(db_session, seed_event):
    event, couples = seed_event(db_session)
    first = run_initial_match(db_session, event.id)
    reserve = couples[5]
    expected = guests_of(db_session, first.plan_id, reserve.id, Course.DESSERT)

    result = set_reserve(db_session, reserve.id, actor="organizer")

    assert result["role"] == "reserve"
    assert sorted(result["unplaced_guest_ids"]) == expected
    assert result["needs_rematch"]
    with pytest.raises(InvalidStateError):
        set_reserve(db_session, reserve.id)

    rematch = run_rematch(db_session, event.id)
    matched = {p.host_couple_id for p in PlanRepo.pairings(db_session, rematch.plan_id)}
    matched |= {p.guest_couple_id for p in PlanRepo.pairings(db_session, rematch.plan_id)}
    assert reserve.id not in matched

    activated = activate_reserve(db_session, reserve.id)
    assert activated["role"] == "normal"
    with pytest.raises(InvalidStateError):
        activate_reserve(db_session, reserve.id)

def test_missing_event_raises(db_session):
    with pytest.raises(InvalidStateError):
        run_rematch(db_session, 404)
