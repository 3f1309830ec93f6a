from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from gymbook.students.models.bookings import BookingStatus, CheckInMethod


class BookingCreate(BaseModel):
    session_id: int = Field(..., gt=0)
    student_id: Optional[int] = Field(
        None, gt=0, description="Defaults to the authenticated user"
    )


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CheckInRequest(BaseModel):
    student_id: int = Field(..., gt=0)
    method: CheckInMethod = CheckInMethod.MANUAL


class NoShowRequest(BaseModel):
    student_id: int = Field(..., gt=0)


class BookingRead(BaseModel):
    id: int
    session_id: int
    student_id: int
    wallet_id: Optional[int] = None
    grant_id: Optional[int] = None
    status: BookingStatus
    checked_in_at: Optional[datetime] = None
    check_in_method: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WaitlistEntryRead(BaseModel):
    id: int
    session_id: int
    student_id: int
    position: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingResultRead(BaseModel):
    """Результат бронирования: место либо лист ожидания"""

    kind: Literal["booked", "waitlisted"]
    booking: Optional[BookingRead] = None
    waitlist_entry: Optional[WaitlistEntryRead] = None


class BookingCancelResponse(BaseModel):
    booking: BookingRead
    refunded: bool
    promoted: List[BookingRead] = []


class BookingFilters(BaseModel):
    status: Optional[BookingStatus] = None
    gym_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class BookingListResponse(BaseModel):
    bookings: List[BookingRead]
    total: int


class WaitlistResponse(BaseModel):
    session_id: int
    entries: List[WaitlistEntryRead]


class BookingStats(BaseModel):
    total_bookings: int
    by_status: Dict[str, int]
    attendance_rate: float = Field(..., description="ATTENDED / (ATTENDED + NO_SHOW)")
