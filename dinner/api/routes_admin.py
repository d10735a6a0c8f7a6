"""
Organizer API routes - requires authentication
"""

import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import Response
from sqlalchemy.orm import Session

from dinner.api.ws import websocket_manager
from dinner.core.db import get_db
from dinner.core.enums import CascadeType
from dinner.core.errors import DinnerError
from dinner.models import Couple, Event
from dinner.schemas.matching import (
    ActivateCourseRequest,
    ActorRequest,
    AddressChangeRequest,
    DelayRequest,
    DropoutRequest,
    EnvelopeResponse,
    MatchPlanResponse,
    MatchRequest,
    PairingResponse,
    ReassignRequest,
    ResignHostRequest,
    SplitRequest,
    TransferHostRequest,
)
from dinner.services import envelope_service, rematch_service
from dinner.services.cascade_service import resolve_cascade
from dinner.services.export_service import ExportService
from dinner.services.repositories import EventLogRepo, PlanRepo
from dinner.utils.responses import (
    dinner_error_response,
    error_response,
    not_found_error,
    operation_failed_response,
    success_response,
)
from dinner.utils.security import verify_admin_token

logger = logging.getLogger(__name__)

router = APIRouter()

def _get_event(db: Session, event_id: int) -> Event:
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        not_found_error("Event")
    return event

def _get_couple(db: Session, couple_id: int) -> Couple:
    couple = db.query(Couple).filter(Couple.id == couple_id).first()
    if not couple:
        not_found_error("Couple")
    return couple

def _rematch_response(result, message: str, background_tasks: BackgroundTasks, event_id: int):
    data = result.to_dict()
    if not result.success:
        return operation_failed_response(f"{message} failed", data)
    background_tasks.add_task(
        websocket_manager.broadcast_plan_update, event_id, "plan_updated",
        {"plan_id": result.plan_id, "version": result.version}
    )
    return success_response(message=f"{message} completed (plan v{result.version})", data=data)

def _cascade(db: Session, couple: Couple, cascade_type: CascadeType, details: dict, actor: Optional[str],
             background_tasks: BackgroundTasks, message: str):
    event = couple.event
    result = resolve_cascade(db, event, event.active_match_plan_id, cascade_type, couple.id, details, actor=actor)
    data = result.to_dict()
    if not result.success:
        return operation_failed_response(f"{message} failed", data)
    background_tasks.add_task(
        websocket_manager.broadcast_plan_update, event.id, "cascade",
        {"cascade_type": cascade_type.value, "couple_id": couple.id}
    )
    return success_response(message=message, data=data)

# -------- Matching --------

@router.post("/events/{event_id}/matching")
def run_matching(
    event_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[MatchRequest] = None,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Assign courses (when not yet assigned) and create a match plan"""
    request = request or MatchRequest()
    _get_event(db, event_id)
    try:
        result = rematch_service.run_initial_match(db, event_id, request.created_by)
    except DinnerError as exc:
        return dinner_error_response(exc)
    return _rematch_response(result, "Matching", background_tasks, event_id)

@router.post("/events/{event_id}/rematch")
def run_manual_rematch(
    event_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[MatchRequest] = None,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Regenerate the plan; frozen courses are kept as they are"""
    request = request or MatchRequest()
    _get_event(db, event_id)
    try:
        result = rematch_service.run_rematch(db, event_id, created_by=request.created_by)
    except DinnerError as exc:
        return dinner_error_response(exc)
    return _rematch_response(result, "Rematch", background_tasks, event_id)

# -------- Structural changes --------

@router.post("/couples/{couple_id}/dropout")
def couple_dropout(
    couple_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[DropoutRequest] = None,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Register a dropout; hosts trigger a rematch for their guests"""
    request = request or DropoutRequest()
    couple = _get_couple(db, couple_id)
    event_id = couple.event_id
    try:
        result = rematch_service.handle_dropout(db, couple_id, request.reason, request.actor)
    except DinnerError as exc:
        return dinner_error_response(exc)

    if not result["success"]:
        return operation_failed_response("Dropout could not be completed", result["rematch"] or result["cascade"])

    background_tasks.add_task(websocket_manager.broadcast_plan_update, event_id, "dropout", {"couple_id": couple_id})
    return success_response(message="Dropout registered", data=result)

@router.post("/couples/{couple_id}/resign-host")
def resign_host(
    couple_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[ResignHostRequest] = None,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Stop hosting some or all courses; guests are rematched unless rematch is false"""
    request = request or ResignHostRequest()
    couple = _get_couple(db, couple_id)
    details = {"courses": [c.value for c in request.courses]} if request.courses else {}
    try:
        if not request.rematch:
            return _cascade(db, couple, CascadeType.RESIGN_HOST, details, request.actor,
                            background_tasks, "Host resigned")
        trigger = rematch_service.RematchTrigger(CascadeType.RESIGN_HOST, couple_id, details)
        result = rematch_service.run_rematch(db, couple.event_id, trigger, request.actor)
    except DinnerError as exc:
        return dinner_error_response(exc)
    return _rematch_response(result, "Host resignation", background_tasks, couple.event_id)

@router.post("/couples/{couple_id}/split")
def split_couple(
    couple_id: int,
    request: SplitRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Register that a couple now takes part as two separate entries"""
    couple = _get_couple(db, couple_id)
    try:
        return _cascade(db, couple, CascadeType.SPLIT, {"new_couple_id": request.new_couple_id},
                        request.actor, background_tasks, "Split registered")
    except DinnerError as exc:
        return dinner_error_response(exc)

@router.post("/couples/{couple_id}/address")
def change_address(
    couple_id: int,
    request: AddressChangeRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Move a host; envelopes not yet revealed point at the new address"""
    couple = _get_couple(db, couple_id)
    details = request.model_dump(exclude={"actor"}, exclude_none=True)
    try:
        return _cascade(db, couple, CascadeType.ADDRESS_CHANGE, details, request.actor,
                        background_tasks, "Address updated")
    except DinnerError as exc:
        return dinner_error_response(exc)

@router.post("/events/{event_id}/transfer-host")
def transfer_host(
    event_id: int,
    request: TransferHostRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Hand hosting of one or more courses to another couple"""
    _get_event(db, event_id)
    couple = _get_couple(db, request.from_couple_id)
    if couple.event_id != event_id:
        not_found_error("Couple")
    details = {"to_couple_id": request.to_couple_id}
    if request.courses:
        details["courses"] = [c.value for c in request.courses]
    try:
        return _cascade(db, couple, CascadeType.TRANSFER_HOST, details, request.actor,
                        background_tasks, "Hosting transferred")
    except DinnerError as exc:
        return dinner_error_response(exc)

@router.post("/events/{event_id}/reassign")
def reassign_guest(
    event_id: int,
    request: ReassignRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Move one guest couple to another host for one course"""
    _get_event(db, event_id)
    couple = _get_couple(db, request.couple_id)
    if couple.event_id != event_id:
        not_found_error("Couple")
    details = {"course": request.course.value, "new_host_couple_id": request.new_host_couple_id}
    try:
        return _cascade(db, couple, CascadeType.REASSIGN, details, request.actor,
                        background_tasks, "Guest reassigned")
    except DinnerError as exc:
        return dinner_error_response(exc)

# -------- Envelopes --------

@router.post("/events/{event_id}/activate-course")
def activate_course(
    event_id: int,
    request: ActivateCourseRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Force-open every remaining envelope of a course"""
    event = _get_event(db, event_id)
    try:
        data = envelope_service.activate_course(db, event, request.course, request.actor)
    except DinnerError as exc:
        return dinner_error_response(exc)
    background_tasks.add_task(websocket_manager.broadcast_plan_update, event_id, "course_activated", data)
    return success_response(message=f"{data['activated_count']} envelopes activated", data=data)

@router.post("/events/{event_id}/delay-envelopes")
def delay_envelopes(
    event_id: int,
    request: DelayRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Shift the rest of the evening; activated envelopes keep their times"""
    event = _get_event(db, event_id)
    data = envelope_service.delay_envelopes(db, event, request.delay_minutes, request.reason, request.actor)
    background_tasks.add_task(websocket_manager.broadcast_plan_update, event_id, "envelopes_delayed", data)
    return success_response(message=f"Envelopes delayed by {request.delay_minutes} minutes", data=data)

@router.post("/events/{event_id}/recalc-envelope-times")
def recalc_envelope_times(
    event_id: int,
    request: Optional[ActorRequest] = None,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Recompute reveal times after the schedule or timing settings changed"""
    request = request or ActorRequest()
    event = _get_event(db, event_id)
    try:
        data = envelope_service.recalculate_envelope_times(db, event, request.actor)
    except DinnerError as exc:
        return dinner_error_response(exc)
    return success_response(message=f"{data['updated']} envelopes recalculated", data=data)

# -------- Reserves --------

@router.post("/couples/{couple_id}/reserve")
def set_reserve(
    couple_id: int,
    request: Optional[ActorRequest] = None,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Move a couple to the reserve list"""
    request = request or ActorRequest()
    _get_couple(db, couple_id)
    try:
        data = rematch_service.set_reserve(db, couple_id, request.actor)
    except DinnerError as exc:
        return dinner_error_response(exc)
    return success_response(message="Couple is now a reserve", data=data)

@router.post("/couples/{couple_id}/activate-reserve")
def activate_reserve(
    couple_id: int,
    request: Optional[ActorRequest] = None,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Turn a reserve into a normal participant; run a rematch to place it"""
    request = request or ActorRequest()
    _get_couple(db, couple_id)
    try:
        data = rematch_service.activate_reserve(db, couple_id, request.actor)
    except DinnerError as exc:
        return dinner_error_response(exc)
    return success_response(message="Reserve activated, run a rematch to include them", data=data)

# -------- Read endpoints --------

@router.get("/events/{event_id}/plan")
def get_active_plan(
    event_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Active plan with its pairings and envelopes"""
    event = _get_event(db, event_id)
    plan = PlanRepo.get_active(db, event)
    if plan is None:
        return error_response(message="Event has no active match plan", status_code=404)

    return success_response(
        message="Match plan retrieved",
        data={
            "plan": MatchPlanResponse.model_validate(plan).model_dump(),
            "pairings": [PairingResponse.model_validate(p).model_dump() for p in PlanRepo.pairings(db, plan.id)],
            "envelopes": [EnvelopeResponse.model_validate(e).model_dump() for e in PlanRepo.envelopes(db, plan.id)],
        }
    )

@router.get("/events/{event_id}/unplaced")
def get_unplaced(
    event_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Guests the active plan could not seat, per course with reason"""
    event = _get_event(db, event_id)
    plan = PlanRepo.get_active(db, event)
    unplaced = (plan.stats or {}).get("unplaced", []) if plan else []
    return success_response(
        message=f"{len(unplaced)} unplaced guest placements",
        data={"plan_id": plan.id if plan else None, "unplaced": unplaced}
    )

@router.get("/events/{event_id}/log")
def get_event_log(
    event_id: int,
    limit: int = 100,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Most recent audit log entries"""
    _get_event(db, event_id)
    entries = EventLogRepo.list_for_event(db, event_id, limit)
    return success_response(
        message="Event log retrieved",
        data=[
            {
                "id": e.id,
                "action": e.action,
                "actor": e.actor,
                "match_plan_id": e.match_plan_id,
                "details": e.details,
                "created_at": e.created_at,
            }
            for e in entries
        ]
    )

@router.get("/events/{event_id}/export/plan.xlsx")
def export_plan(
    event_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token)
):
    """Download the active plan as an Excel workbook"""
    event = _get_event(db, event_id)
    try:
        content = ExportService.export_plan(db, event)
    except DinnerError as exc:
        return dinner_error_response(exc)

    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename=match_plan_{event_id}.xlsx"}
    )
