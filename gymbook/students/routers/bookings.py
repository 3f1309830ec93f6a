from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.database import get_session
from gymbook.core.dependencies import get_current_principal, require_staff
from gymbook.core.limits import limiter
from gymbook.core.permissions import Principal
from gymbook.students.crud.bookings import (
    cancel_booking,
    create_booking,
    get_booking_stats,
    get_user_bookings,
)
from gymbook.students.models import BookingStatus
from gymbook.students.schemas.bookings import (
    BookingCancel,
    BookingCancelResponse,
    BookingCreate,
    BookingFilters,
    BookingListResponse,
    BookingResultRead,
    BookingStats,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=BookingResultRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def book_session(
    request: Request,
    data: BookingCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Book a seat for 1 token.

    When the session is full the student is put on the waitlist and
    **kind** is `waitlisted` instead of `booked`; no token is taken.
    """
    student_id = data.student_id or principal.user_id
    result = await create_booking(db, data.session_id, student_id, principal)
    return BookingResultRead(
        kind=result.kind,
        booking=result.booking,
        waitlist_entry=result.waitlist_entry,
    )


@router.get("/me", response_model=BookingListResponse)
@limiter.limit("60/minute")
async def get_my_bookings(
    request: Request,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    gym_id: Optional[int] = Query(None, gt=0),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Current user's bookings ordered by session start."""
    filters = BookingFilters(
        status=status_filter, gym_id=gym_id, date_from=date_from, date_to=date_to
    )
    bookings = await get_user_bookings(db, principal.user_id, principal, filters)
    return BookingListResponse(bookings=bookings, total=len(bookings))


@router.get("/stats", response_model=BookingStats)
@limiter.limit("30/minute")
async def booking_stats(
    request: Request,
    gym_id: int = Query(..., gt=0),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
):
    return await get_booking_stats(db, gym_id, date_from, date_to)


@router.post("/{booking_id}/cancel", response_model=BookingCancelResponse)
@limiter.limit("20/minute")
async def cancel_my_booking(
    request: Request,
    data: BookingCancel,
    booking_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Cancel a RESERVED booking.

    The token is refunded only if the plan's cancellation window allows it.
    The freed seat goes to the first eligible student on the waitlist.
    """
    booking, refunded, promoted = await cancel_booking(db, booking_id, principal, data.reason)
    return BookingCancelResponse(booking=booking, refunded=refunded, promoted=promoted)
