"""
Repository layer over the SQLAlchemy session.

The audit log is always written to SQL inside the caller's transaction and,
when Firebase is enabled, mirrored to Firestore after the commit.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from google.api_core.exceptions import GoogleAPICallError
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dinner.core.config import settings
from dinner.core.enums import Course
from dinner.core.errors import PersistenceError
from dinner.core.time import utcnow
from dinner.models import (
    Assignment,
    BlockedPair,
    Couple,
    CoursePairing,
    Envelope,
    Event,
    EventLog,
    MatchPlan,
)
from dinner.services.firebase_client import get_firestore_client

logger = logging.getLogger(__name__)


def use_firestore() -> bool:
    return settings.USE_FIREBASE is True


def commit_or_fail(db: Session, step: str) -> None:
    """Commit, turning a failed write into a PersistenceError"""
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Commit failed at {step}: {exc}")
        raise PersistenceError(step, str(exc)) from exc


# -------- Event repository --------

class EventRepo:
    @staticmethod
    def get_by_id(db: Session, event_id: int) -> Optional[Event]:
        return db.query(Event).filter(Event.id == event_id).first()

    @staticmethod
    def try_acquire_lock(db: Session, event_id: int, ttl_minutes: Optional[int] = None) -> bool:
        """Take the rematch lock when it is free or expired; commits immediately"""
        now = utcnow()
        ttl = ttl_minutes if ttl_minutes is not None else settings.REMATCH_LOCK_MINUTES
        updated = db.query(Event).filter(
            Event.id == event_id,
            or_(Event.rematch_lock_until.is_(None), Event.rematch_lock_until < now),
        ).update({Event.rematch_lock_until: now + timedelta(minutes=ttl)}, synchronize_session=False)
        db.commit()
        return updated == 1

    @staticmethod
    def release_lock(db: Session, event_id: int) -> None:
        db.query(Event).filter(Event.id == event_id).update(
            {Event.rematch_lock_until: None}, synchronize_session=False
        )
        db.commit()


# -------- Couple repository --------

class CoupleRepo:
    @staticmethod
    def get_by_id(db: Session, couple_id: int) -> Optional[Couple]:
        return db.query(Couple).filter(Couple.id == couple_id).first()

    @staticmethod
    def list_for_event(db: Session, event_id: int) -> List[Couple]:
        return db.query(Couple).filter(Couple.event_id == event_id).order_by(Couple.id).all()

    @staticmethod
    def host_assignments(db: Session, event_id: int, couple_id: Optional[int] = None) -> List[Assignment]:
        query = db.query(Assignment).filter(Assignment.event_id == event_id, Assignment.is_host == True)  # noqa: E712
        if couple_id is not None:
            query = query.filter(Assignment.couple_id == couple_id)
        return query.order_by(Assignment.id).all()

    @staticmethod
    def blocked_pairs(db: Session, event_id: int) -> List[BlockedPair]:
        return db.query(BlockedPair).filter(BlockedPair.event_id == event_id).all()


# -------- Match plan repository --------

class PlanRepo:
    @staticmethod
    def get_active(db: Session, event: Event) -> Optional[MatchPlan]:
        if event.active_match_plan_id is None:
            return None
        return db.query(MatchPlan).filter(MatchPlan.id == event.active_match_plan_id).first()

    @staticmethod
    def latest_version(db: Session, event_id: int) -> int:
        latest = db.query(MatchPlan).filter(MatchPlan.event_id == event_id).order_by(MatchPlan.version.desc()).first()
        return latest.version if latest else 0

    @staticmethod
    def pairings(db: Session, match_plan_id: int, course: Optional[Course] = None) -> List[CoursePairing]:
        query = db.query(CoursePairing).filter(CoursePairing.match_plan_id == match_plan_id)
        if course is not None:
            query = query.filter(CoursePairing.course == course.value)
        return query.order_by(CoursePairing.id).all()

    @staticmethod
    def envelopes(db: Session, match_plan_id: int, course: Optional[Course] = None) -> List[Envelope]:
        query = db.query(Envelope).filter(Envelope.match_plan_id == match_plan_id)
        if course is not None:
            query = query.filter(Envelope.course == course.value)
        return query.order_by(Envelope.id).all()

    @staticmethod
    def envelopes_for_couple(db: Session, match_plan_id: int, couple_id: int) -> List[Envelope]:
        return db.query(Envelope).filter(
            Envelope.match_plan_id == match_plan_id,
            Envelope.couple_id == couple_id,
        ).order_by(Envelope.scheduled_at, Envelope.id).all()


# -------- Event log repository --------

class EventLogRepo:
    @staticmethod
    def add(
        db: Session,
        event_id: int,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        match_plan_id: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> EventLog:
        """Stage a log row in the current transaction"""
        entry = EventLog(
            event_id=event_id,
            match_plan_id=match_plan_id,
            action=action,
            actor=actor,
            details=details or {},
        )
        db.add(entry)
        return entry

    @staticmethod
    def list_for_event(db: Session, event_id: int, limit: int = 100) -> List[EventLog]:
        return db.query(EventLog).filter(EventLog.event_id == event_id).order_by(EventLog.id.desc()).limit(limit).all()

    # Firestore shape: events/{event_id}/log/{log_id}
    @staticmethod
    def mirror_fs(entry: EventLog) -> None:
        """Copy a committed log row to Firestore; failures are logged only"""
        if not use_firestore():
            return
        fs = get_firestore_client()
        data = {
            "action": entry.action,
            "actor": entry.actor,
            "match_plan_id": entry.match_plan_id,
            "details": entry.details or {},
            "created_at": (entry.created_at or utcnow()).isoformat(),
        }
        try:
            fs.collection("events").document(str(entry.event_id)).collection("log").document(str(entry.id)).set(data)
        except GoogleAPICallError as exc:
            logger.error(f"Failed to mirror event log {entry.id} to Firestore: {exc}")
