"""
Pydantic schemas package
"""

from .common import *
from .matching import *
from .timing import *

__all__ = [
    "StandardResponse",
    "ErrorResponse",
    "MatchRequest",
    "DropoutRequest",
    "ResignHostRequest",
    "SplitRequest",
    "TransferHostRequest",
    "ReassignRequest",
    "AddressChangeRequest",
    "ActivateCourseRequest",
    "DelayRequest",
    "ActorRequest",
    "PairingResponse",
    "EnvelopeResponse",
    "MatchPlanResponse",
    "CourseOffsets",
    "TimingConfig",
    "CourseTimingOverrides",
]
