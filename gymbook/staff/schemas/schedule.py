from datetime import date, datetime, time
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gymbook.core.exceptions import ValidationError
from gymbook.staff.schemas.sessions import ClassSessionRead


def _validate_days(v: List[int]) -> List[int]:
    days = sorted(set(v))
    if not days:
        raise ValidationError("days_of_week must not be empty")
    if any(day < 1 or day > 7 for day in days):
        raise ValidationError("days_of_week must contain ISO weekdays 1..7 (Mon..Sun)")
    return days


class ScheduleTemplateCreate(BaseModel):
    """Недельный шаблон: дни недели, время начала, длительность"""

    gym_id: int = Field(..., gt=0)
    room_id: int = Field(..., gt=0)
    class_type_id: int = Field(..., gt=0)
    professor_id: Optional[int] = Field(None, gt=0)
    days_of_week: List[int] = Field(..., description="ISO weekdays, 1 = Monday")
    start_time: time = Field(..., description="Local start time in the gym timezone")
    duration_min: int = Field(..., ge=15, le=600)
    capacity: int = Field(..., gt=0, le=500)
    is_active: bool = True

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v):
        return _validate_days(v)


class ScheduleTemplateUpdate(BaseModel):
    room_id: Optional[int] = Field(None, gt=0)
    class_type_id: Optional[int] = Field(None, gt=0)
    professor_id: Optional[int] = Field(None, gt=0)
    days_of_week: Optional[List[int]] = None
    start_time: Optional[time] = None
    duration_min: Optional[int] = Field(None, ge=15, le=600)
    capacity: Optional[int] = Field(None, gt=0, le=500)
    is_active: Optional[bool] = None

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v):
        return _validate_days(v) if v is not None else v


class ScheduleTemplateRead(BaseModel):
    id: int
    gym_id: int
    room_id: int
    class_type_id: int
    professor_id: int
    days_of_week: List[int]
    start_time: time
    duration_min: int
    capacity: int
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GenerateSessionsRequest(BaseModel):
    """Запрос на генерацию сессий из шаблона"""

    template_id: int = Field(..., gt=0)
    start_date: date = Field(..., description="First date to consider")
    weeks: int = Field(1, ge=1, le=26, description="Number of weeks to expand")


class GenerateSessionsResponse(BaseModel):
    generated: int
    sessions: List[ClassSessionRead]
    errors: List[str] = Field(default_factory=list)
