from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.database import get_session
from gymbook.core.dependencies import get_current_principal, require_staff
from gymbook.core.limits import limiter
from gymbook.core.permissions import Principal
from gymbook.staff.crud.sessions import (
    cancel_session,
    count_active_bookings,
    create_session,
    delete_session,
    duplicate_session,
    get_session_by_id,
    get_session_stats,
    get_sessions,
    update_session,
)
from gymbook.staff.models import SessionStatus
from gymbook.staff.schemas.sessions import (
    ClassSessionCancel,
    ClassSessionCancelResponse,
    ClassSessionCreate,
    ClassSessionDuplicate,
    ClassSessionRead,
    ClassSessionUpdate,
    SessionFilters,
    SessionListResponse,
    SessionStats,
)
from gymbook.students.crud.bookings import check_in, get_session_bookings, mark_no_show
from gymbook.students.crud.waitlist import get_waitlist, leave_waitlist
from gymbook.students.schemas.bookings import (
    BookingRead,
    CheckInRequest,
    NoShowRequest,
    WaitlistResponse,
)

router = APIRouter(prefix="/sessions", tags=["Class Sessions"])


@router.post("/", response_model=ClassSessionRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_class_session(
    request: Request,
    data: ClassSessionCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Create a class session in SCHEDULED state.

    Requires an ADMIN/PROFESSOR membership in the gym; a professor without
    one is attached to the gym automatically. Overlapping sessions in the
    same room are rejected with 409.
    """
    class_session = await create_session(db, data, principal)
    return ClassSessionRead.from_session(class_session, 0)


@router.get("/", response_model=SessionListResponse)
@limiter.limit("60/minute")
async def list_class_sessions(
    request: Request,
    gym_id: Optional[int] = Query(None, gt=0),
    professor_id: Optional[int] = Query(None, gt=0),
    class_type_id: Optional[int] = Query(None, gt=0),
    room_id: Optional[int] = Query(None, gt=0),
    status_filter: Optional[SessionStatus] = Query(None, alias="status"),
    date_from: Optional[datetime] = Query(None, description="Sessions starting at or after"),
    date_to: Optional[datetime] = Query(None, description="Sessions starting before"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """List sessions ordered by start time."""
    filters = SessionFilters(
        gym_id=gym_id,
        professor_id=professor_id,
        class_type_id=class_type_id,
        room_id=room_id,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
    )
    rows = await get_sessions(db, filters, skip=skip, limit=limit)
    sessions = [ClassSessionRead.from_session(s, booked) for s, booked in rows]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.get("/stats", response_model=SessionStats)
@limiter.limit("30/minute")
async def class_session_stats(
    request: Request,
    gym_id: int = Query(..., gt=0),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
):
    return await get_session_stats(db, gym_id, date_from, date_to)


@router.get("/{session_id}", response_model=ClassSessionRead)
@limiter.limit("60/minute")
async def get_class_session(
    request: Request,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    class_session = await get_session_by_id(db, session_id)
    booked = await count_active_bookings(db, session_id)
    return ClassSessionRead.from_session(class_session, booked)


@router.patch("/{session_id}", response_model=ClassSessionRead)
@limiter.limit("30/minute")
async def update_class_session(
    request: Request,
    data: ClassSessionUpdate,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Update a session.

    Capacity cannot drop below active bookings; a capacity increase
    promotes students from the waitlist. Use the cancel endpoint to cancel.
    """
    class_session = await update_session(db, session_id, data, principal)
    booked = await count_active_bookings(db, session_id)
    return ClassSessionRead.from_session(class_session, booked)


@router.post("/{session_id}/cancel", response_model=ClassSessionCancelResponse)
@limiter.limit("10/minute")
async def cancel_class_session(
    request: Request,
    data: ClassSessionCancel,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Cancel a session: every active booking is cancelled and refunded."""
    result = await cancel_session(db, session_id, data.reason, principal)
    return ClassSessionCancelResponse(
        session=ClassSessionRead.from_session(result["session"], 0),
        cancelled_bookings=result["cancelled_bookings"],
        refunded_bookings=result["refunded_bookings"],
        cleared_waitlist=result["cleared_waitlist"],
    )


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
async def delete_class_session(
    request: Request,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
):
    """
    Delete a session permanently.

    Professors delete only their own sessions. Sessions with reserved or
    attended bookings must be cancelled first.
    """
    await delete_session(db, session_id, principal)


@router.post(
    "/{session_id}/duplicate",
    response_model=ClassSessionRead,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("20/minute")
async def duplicate_class_session(
    request: Request,
    data: ClassSessionDuplicate,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    copy = await duplicate_session(db, session_id, data.start_at, principal)
    return ClassSessionRead.from_session(copy, 0)


@router.get("/{session_id}/bookings", response_model=List[BookingRead])
@limiter.limit("60/minute")
async def list_session_bookings(
    request: Request,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
):
    return await get_session_bookings(db, session_id)


@router.get("/{session_id}/waitlist", response_model=WaitlistResponse)
@limiter.limit("60/minute")
async def list_session_waitlist(
    request: Request,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    entries = await get_waitlist(db, session_id)
    return WaitlistResponse(session_id=session_id, entries=entries)


@router.delete("/{session_id}/waitlist", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
async def leave_session_waitlist(
    request: Request,
    session_id: int = Path(..., gt=0),
    student_id: Optional[int] = Query(None, gt=0, description="Defaults to the current user"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    await leave_waitlist(db, session_id, student_id or principal.user_id, principal)


@router.post("/{session_id}/check-in", response_model=BookingRead)
@limiter.limit("60/minute")
async def check_in_student(
    request: Request,
    data: CheckInRequest,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Check a student in (RESERVED -> ATTENDED), manually or by QR."""
    return await check_in(db, session_id, data.student_id, principal, data.method)


@router.post("/{session_id}/no-show", response_model=BookingRead)
@limiter.limit("60/minute")
async def mark_student_no_show(
    request: Request,
    data: NoShowRequest,
    session_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Mark a checked-in booking as NO_SHOW. The token is not refunded."""
    return await mark_no_show(db, session_id, data.student_id, principal)
