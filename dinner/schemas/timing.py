"""
Envelope timing configuration schemas

Per-course overrides are stored on the event as JSON; they are validated
into a typed mapping here instead of being passed around opaquely.
"""

from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator

from dinner.core.enums import Course, parse_course

class CourseOffsets(BaseModel):
    """Partial override of minute offsets for one course"""
    teasing_minutes_before: Optional[int] = Field(None, ge=0)
    clue_1_minutes_before: Optional[int] = Field(None, ge=0)
    clue_2_minutes_before: Optional[int] = Field(None, ge=0)
    street_minutes_before: Optional[int] = Field(None, ge=0)
    number_minutes_before: Optional[int] = Field(None, ge=0)

    def overrides(self) -> dict:
        return self.model_dump(exclude_none=True)

class TimingConfig(BaseModel):
    """Minutes-before offsets for each reveal stage"""
    teasing_minutes_before: int = Field(360, ge=0)
    clue_1_minutes_before: int = Field(120, ge=0)
    clue_2_minutes_before: int = Field(30, ge=0)
    street_minutes_before: int = Field(15, ge=0)
    number_minutes_before: int = Field(5, ge=0)
    during_meal_clue_interval_minutes: int = Field(15, ge=0)
    distance_adjustment_enabled: bool = True

    class Config:
        from_attributes = True

    def merged(self, override: Optional[CourseOffsets]) -> "TimingConfig":
        if override is None:
            return self
        return self.model_copy(update=override.overrides())

class CourseTimingOverrides(BaseModel):
    """Typed mapping of course -> offsets override"""
    courses: Dict[Course, CourseOffsets] = {}

    @field_validator("courses", mode="before")
    @classmethod
    def _coerce_course_keys(cls, value):
        if not value:
            return {}
        return {parse_course(key): offsets for key, offsets in value.items()}

    @classmethod
    def from_json(cls, raw: Optional[dict]) -> "CourseTimingOverrides":
        return cls(courses=raw or {})

    def for_course(self, course: Course) -> Optional[CourseOffsets]:
        return self.courses.get(course)

    def to_json(self) -> dict:
        return {course.value: offsets.overrides() for course, offsets in self.courses.items()}
