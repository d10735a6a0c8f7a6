"""
Guest-facing API routes
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from dinner.core.db import get_db
from dinner.core.errors import DinnerError
from dinner.services.envelope_service import guest_envelope_view
from dinner.services.repositories import CoupleRepo
from dinner.utils.security import rate_limit_check, get_client_ip
from dinner.utils.responses import success_response, dinner_error_response, rate_limit_error, not_found_error

router = APIRouter()

@router.get("/couples/{couple_id}/envelopes")
def get_envelopes(
    couple_id: int,
    request: Request,
    db: Session = Depends(get_db)
):
    """What a couple may see of its envelopes right now"""
    client_ip = get_client_ip(request)
    if not rate_limit_check(client_ip, scope="envelopes"):
        return rate_limit_error()

    couple = CoupleRepo.get_by_id(db, couple_id)
    if not couple or couple.cancelled:
        not_found_error("Couple")

    try:
        view = guest_envelope_view(db, couple)
    except DinnerError as exc:
        return dinner_error_response(exc)

    return success_response(message="Envelopes retrieved", data=view)
