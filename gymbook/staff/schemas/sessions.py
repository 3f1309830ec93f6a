from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gymbook.core.exceptions import ValidationError
from gymbook.staff.models.class_sessions import SessionStatus


def _require_aware(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is None:
        raise ValidationError("Datetime must include a timezone offset")
    return v


class ClassSessionCreate(BaseModel):
    """Схема для создания сессии"""

    gym_id: int = Field(..., gt=0)
    room_id: int = Field(..., gt=0)
    class_type_id: int = Field(..., gt=0)
    professor_id: Optional[int] = Field(
        None, gt=0, description="Defaults to the acting professor"
    )
    start_at: datetime
    end_at: datetime
    capacity: int = Field(..., gt=0, le=500)

    @field_validator("start_at", "end_at")
    @classmethod
    def validate_aware(cls, v):
        return _require_aware(v)

    @field_validator("end_at")
    @classmethod
    def validate_window(cls, v, info):
        start_at = info.data.get("start_at")
        if start_at is not None and v <= start_at:
            raise ValidationError("end_at must be after start_at")
        return v


class ClassSessionUpdate(BaseModel):
    """Схема для обновления сессии (все поля опциональны)"""

    room_id: Optional[int] = Field(None, gt=0)
    class_type_id: Optional[int] = Field(None, gt=0)
    professor_id: Optional[int] = Field(None, gt=0)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    capacity: Optional[int] = Field(None, gt=0, le=500)
    status: Optional[SessionStatus] = None

    @field_validator("start_at", "end_at")
    @classmethod
    def validate_aware(cls, v):
        return _require_aware(v)


class ClassSessionCancel(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500, description="Reason for cancellation")


class ClassSessionDuplicate(BaseModel):
    start_at: datetime = Field(..., description="Start of the copy; duration is preserved")

    @field_validator("start_at")
    @classmethod
    def validate_aware(cls, v):
        return _require_aware(v)


class ClassSessionRead(BaseModel):
    id: int
    gym_id: int
    room_id: int
    class_type_id: int
    professor_id: int
    template_id: Optional[int] = None
    start_at: datetime
    end_at: datetime
    capacity: int
    status: SessionStatus
    cancel_reason: Optional[str] = None
    booked_count: int = 0
    available_spots: int = 0

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_session(cls, class_session, booked_count: int) -> "ClassSessionRead":
        read = cls.model_validate(class_session)
        read.booked_count = booked_count
        read.available_spots = max(class_session.capacity - booked_count, 0)
        return read


class ClassSessionCancelResponse(BaseModel):
    session: ClassSessionRead
    cancelled_bookings: int
    refunded_bookings: int
    cleared_waitlist: int


class SessionFilters(BaseModel):
    gym_id: Optional[int] = None
    professor_id: Optional[int] = None
    class_type_id: Optional[int] = None
    room_id: Optional[int] = None
    status: Optional[SessionStatus] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class SessionListResponse(BaseModel):
    sessions: List[ClassSessionRead]
    total: int


class SessionStats(BaseModel):
    total_sessions: int
    by_status: Dict[str, int]
    total_capacity: int
    total_booked: int
    average_occupancy: float = Field(..., description="Booked seats / capacity, 0..1")
    date_from: Optional[date] = None
    date_to: Optional[date] = None
