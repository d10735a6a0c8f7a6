"""
Request and response schemas for matching and envelope operations
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from dinner.core.enums import Course, MEAL_COURSES, parse_course

def _meal_course(value) -> Course:
    course = parse_course(value)
    if course not in MEAL_COURSES:
        raise ValueError("course must be starter, main or dessert")
    return course

class MatchRequest(BaseModel):
    """Initial match or manual rematch"""
    created_by: Optional[str] = None

class DropoutRequest(BaseModel):
    reason: Optional[str] = None
    actor: Optional[str] = None

class ResignHostRequest(BaseModel):
    """Resign hosting for some courses, or all hosted courses when empty"""
    courses: Optional[List[Course]] = None
    rematch: bool = True
    actor: Optional[str] = None

    @field_validator("courses", mode="before")
    @classmethod
    def _parse_courses(cls, value):
        if value is None:
            return None
        return [_meal_course(c) for c in value]

class SplitRequest(BaseModel):
    new_couple_id: int
    actor: Optional[str] = None

class TransferHostRequest(BaseModel):
    from_couple_id: int
    to_couple_id: int
    courses: Optional[List[Course]] = None
    actor: Optional[str] = None

    @field_validator("courses", mode="before")
    @classmethod
    def _parse_courses(cls, value):
        if value is None:
            return None
        return [_meal_course(c) for c in value]

class ReassignRequest(BaseModel):
    couple_id: int
    course: Course
    new_host_couple_id: int
    actor: Optional[str] = None

    @field_validator("course", mode="before")
    @classmethod
    def _parse_course(cls, value):
        return _meal_course(value)

class AddressChangeRequest(BaseModel):
    new_address: str = Field(..., min_length=1)
    new_address_notes: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    actor: Optional[str] = None

class ActivateCourseRequest(BaseModel):
    course: Course
    actor: Optional[str] = None

    @field_validator("course", mode="before")
    @classmethod
    def _parse_course(cls, value):
        return _meal_course(value)

class DelayRequest(BaseModel):
    delay_minutes: int
    reason: Optional[str] = None
    actor: Optional[str] = None

    @field_validator("delay_minutes")
    @classmethod
    def _non_zero(cls, value):
        if value == 0:
            raise ValueError("delay_minutes must not be zero")
        return value

class ActorRequest(BaseModel):
    actor: Optional[str] = None

class PairingResponse(BaseModel):
    course: str
    host_couple_id: int
    guest_couple_id: int

    class Config:
        from_attributes = True

class EnvelopeResponse(BaseModel):
    id: int
    couple_id: int
    course: str
    host_couple_id: Optional[int] = None
    destination_address: Optional[str] = None
    scheduled_at: datetime
    teasing_at: Optional[datetime] = None
    clue_1_at: Optional[datetime] = None
    clue_2_at: Optional[datetime] = None
    street_at: Optional[datetime] = None
    number_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    cancelled: bool
    cycling_minutes: Optional[int] = None

    class Config:
        from_attributes = True

class MatchPlanResponse(BaseModel):
    id: int
    event_id: int
    version: int
    status: str
    frozen_courses: List[str]
    stats: Optional[dict] = None
    created_by: Optional[str] = None
    created_at: datetime
    superseded_at: Optional[datetime] = None
    superseded_by: Optional[int] = None

    class Config:
        from_attributes = True
