"""
Standardized response utilities
"""

from typing import Any, Optional
from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from dinner.core.errors import DinnerError, InvalidStateError, PersistenceError, RematchConflictError
from dinner.schemas.common import StandardResponse, ErrorResponse

def success_response(
    message: str,
    data: Any = None,
    status_code: int = 200
) -> JSONResponse:
    """Create standardized success response"""
    response = StandardResponse(
        success=True,
        message=message,
        data=data
    )
    return JSONResponse(
        content=jsonable_encoder(response.model_dump()),
        status_code=status_code
    )

def error_response(
    message: str,
    error_code: Optional[str] = None,
    details: Any = None,
    status_code: int = 400
) -> JSONResponse:
    """Create standardized error response"""
    response = ErrorResponse(
        message=message,
        error_code=error_code,
        details=details
    )
    return JSONResponse(
        content=jsonable_encoder(response.model_dump()),
        status_code=status_code
    )

def dinner_error_response(exc: DinnerError) -> JSONResponse:
    """Map a domain error to its HTTP status"""
    if isinstance(exc, (RematchConflictError, InvalidStateError)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, PersistenceError):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return error_response(
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
        status_code=status_code
    )

def operation_failed_response(message: str, result: dict) -> JSONResponse:
    """Failure reported in a cascade or rematch result"""
    if result.get("conflict"):
        return error_response(
            message="Another rematch is in progress, try again shortly",
            error_code=RematchConflictError.error_code,
            details=result,
            status_code=status.HTTP_409_CONFLICT
        )
    return error_response(
        message=message,
        error_code=PersistenceError.error_code,
        details=result,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    )

def not_found_error(resource: str = "Resource"):
    """Create not found error"""
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{resource} not found"
    )

def rate_limit_error():
    """Create rate limit error"""
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Please try again later."
    )
