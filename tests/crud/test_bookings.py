from datetime import timedelta

import pytest

from gymbook.core.database import async_session, utc_now
from gymbook.core.exceptions import (
    AlreadyExistsError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from gymbook.staff.crud.sessions import cancel_session, count_active_bookings
from gymbook.staff.models import SessionStatus
from gymbook.students.crud.bookings import (
    can_refund,
    cancel_booking,
    check_in,
    create_booking,
    get_booking_stats,
    get_user_bookings,
    mark_no_show,
)
from gymbook.students.crud.waitlist import get_waitlist
from gymbook.students.models import Booking, BookingStatus, CheckInMethod
from gymbook.students.schemas.bookings import BookingFilters


async def _book(class_session, student):
    async with async_session() as db:
        return await create_booking(db, class_session.id, student.user_id, student)


async def _cancel(booking, student, now=None):
    async with async_session() as db:
        return await cancel_booking(db, booking.id, student, "Can't make it", now=now)


async def test_booking_consumes_one_token(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=3)

    result = await _book(class_session, student)

    assert result.kind == "booked"
    assert result.waitlist_entry is None
    assert result.booking.status == BookingStatus.RESERVED
    assert result.booking.grant_id is not None
    assert await balance_of(student) == 2


async def test_book_cancel_rebook(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=10)

    first = await _book(class_session, student)
    booking, refunded, promoted = await _cancel(first.booking, student)
    assert booking.status == BookingStatus.CANCELLED
    assert refunded is True
    assert promoted == []
    assert await balance_of(student) == 10

    second = await _book(class_session, student)
    assert second.kind == "booked"
    assert second.booking.id != first.booking.id
    assert await balance_of(student) == 9


async def test_duplicate_active_booking_is_rejected(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=5)
    await _book(class_session, student)

    with pytest.raises(AlreadyExistsError):
        await _book(class_session, student)
    assert await balance_of(student) == 4


async def test_booking_without_tokens(make_session, make_student, balance_of, audit_entries):
    class_session = await make_session()
    broke = await make_student(tokens=0)
    no_wallet = await make_student(tokens=0, wallet=False)

    with pytest.raises(InsufficientBalanceError):
        await _book(class_session, broke)
    with pytest.raises(NotFoundError):
        await _book(class_session, no_wallet)

    assert await balance_of(broke) == 0
    assert await audit_entries("Booking") == []


async def test_students_book_only_for_themselves(make_session, make_student, world):
    class_session = await make_session()
    student = await make_student()
    other = await make_student()

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await create_booking(db, class_session.id, student.user_id, other)
    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await create_booking(db, class_session.id, student.user_id, world.professor)


async def test_booking_non_scheduled_session(world, make_session, make_student):
    class_session = await make_session()
    student = await make_student()
    async with async_session() as db:
        await cancel_session(db, class_session.id, "Closed", world.professor)

    with pytest.raises(InvalidStateError):
        await _book(class_session, student)

    async with async_session() as db:
        with pytest.raises(NotFoundError):
            await create_booking(db, 999999, student.user_id, student)


# ===== Refund window =====


async def test_cancel_inside_window_forfeits_token(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=5)
    result = await _book(class_session, student)

    now = class_session.start_at - timedelta(hours=23)
    booking, refunded, _ = await _cancel(result.booking, student, now=now)

    assert booking.status == BookingStatus.CANCELLED
    assert booking.refunded_at is None
    assert refunded is False
    assert await balance_of(student) == 4


async def test_cancel_outside_window_refunds(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=5)
    result = await _book(class_session, student)

    now = class_session.start_at - timedelta(hours=25)
    booking, refunded, _ = await _cancel(result.booking, student, now=now)

    assert refunded is True
    assert booking.refunded_at == now
    assert await balance_of(student) == 5


async def test_cancel_twice_refunds_once(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=5)
    result = await _book(class_session, student)

    await _cancel(result.booking, student)
    with pytest.raises(InvalidStateError):
        await _cancel(result.booking, student)

    assert await balance_of(student) == 5


async def test_grant_without_plan_is_not_refunded(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=2, with_plan=False)
    result = await _book(class_session, student)

    _, refunded, _ = await _cancel(result.booking, student)

    assert refunded is False
    assert await balance_of(student) == 1


async def test_can_refund_rules(world):
    booking = Booking(grant_id=1)
    start = utc_now() + timedelta(days=10)

    assert can_refund(booking, start, world.plan, now=start - timedelta(hours=24)) is True
    assert can_refund(booking, start, world.plan, now=start - timedelta(hours=23, minutes=59)) is False
    assert can_refund(booking, start, None, now=start - timedelta(days=5)) is False
    assert can_refund(Booking(grant_id=None), start, world.plan, now=start - timedelta(days=5)) is False

    world.plan.rules = {"cancel_before_hours": None}
    assert can_refund(booking, start, world.plan, now=start - timedelta(minutes=1)) is True


async def test_only_the_student_cancels(make_session, make_student, world):
    class_session = await make_session()
    student = await make_student()
    result = await _book(class_session, student)

    with pytest.raises(PermissionDeniedError):
        await _cancel(result.booking, world.professor)

    async with async_session() as db:
        with pytest.raises(NotFoundError):
            await cancel_booking(db, 999999, student)


# ===== Attendance =====


async def test_check_in_and_no_show_forfeit(world, make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=3)
    result = await _book(class_session, student)

    async with async_session() as db:
        attended = await check_in(db, class_session.id, student.user_id, student, CheckInMethod.QR)
    assert attended.status == BookingStatus.ATTENDED
    assert attended.check_in_method == "qr"
    assert attended.checked_in_by == student.user_id

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await mark_no_show(db, class_session.id, student.user_id, student)

    async with async_session() as db:
        no_show = await mark_no_show(db, class_session.id, student.user_id, world.professor)
    assert no_show.status == BookingStatus.NO_SHOW
    assert no_show.refunded_at is None
    assert await balance_of(student) == 2

    with pytest.raises(InvalidStateError):
        await _cancel(result.booking, student)
    assert await balance_of(student) == 2

    # NO_SHOW освобождает место
    async with async_session() as db:
        assert await count_active_bookings(db, class_session.id) == 0


async def test_no_show_requires_check_in(world, make_session, make_student):
    class_session = await make_session()
    student = await make_student()
    await _book(class_session, student)

    async with async_session() as db:
        with pytest.raises(InvalidStateError):
            await mark_no_show(db, class_session.id, student.user_id, world.professor)

    async with async_session() as db:
        await check_in(db, class_session.id, student.user_id, world.professor)
    async with async_session() as db:
        with pytest.raises(InvalidStateError):
            await check_in(db, class_session.id, student.user_id, world.professor)


async def test_check_in_by_someone_else_is_forbidden(make_session, make_student):
    class_session = await make_session()
    student = await make_student()
    other = await make_student()
    await _book(class_session, student)

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await check_in(db, class_session.id, student.user_id, other)
    async with async_session() as db:
        with pytest.raises(NotFoundError):
            await check_in(db, class_session.id, other.user_id, other)


# ===== Session cancellation cascade =====


async def test_cancel_session_refunds_everyone(world, make_session, make_student, balance_of):
    class_session = await make_session(capacity=2)
    booked = await make_student(tokens=3)
    attended = await make_student(tokens=3)
    waiting = await make_student(tokens=3)

    await _book(class_session, booked)
    await _book(class_session, attended)
    assert (await _book(class_session, waiting)).kind == "waitlisted"
    async with async_session() as db:
        await check_in(db, class_session.id, attended.user_id, world.professor)

    async with async_session() as db:
        result = await cancel_session(db, class_session.id, "Flooded studio", world.professor)

    assert result["session"].status == SessionStatus.CANCELLED
    assert result["cancelled_bookings"] == 2
    assert result["refunded_bookings"] == 2
    assert result["cleared_waitlist"] == 1
    assert await balance_of(booked) == 3
    assert await balance_of(attended) == 3
    assert await balance_of(waiting) == 3

    async with async_session() as db:
        assert await get_waitlist(db, class_session.id) == []
        bookings = await get_user_bookings(db, booked.user_id, booked)
    assert bookings[0].status == BookingStatus.CANCELLED
    assert bookings[0].cancel_reason == "Session cancelled: Flooded studio"


async def test_cancel_session_skips_already_refunded(world, make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=3)
    result = await _book(class_session, student)
    await _cancel(result.booking, student)
    rebooked = await _book(class_session, student)
    assert rebooked.kind == "booked"
    assert await balance_of(student) == 2

    async with async_session() as db:
        outcome = await cancel_session(db, class_session.id, "Holiday", world.professor)

    assert outcome["cancelled_bookings"] == 1
    assert outcome["refunded_bookings"] == 1
    assert await balance_of(student) == 3


async def test_student_cannot_cancel_session(make_session, make_student):
    class_session = await make_session()
    student = await make_student()

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await cancel_session(db, class_session.id, "No class today", student)


# ===== Queries =====


async def test_user_bookings_and_stats(world, make_session, make_student):
    start = (await make_session()).start_at
    later = await make_session(start_at=start + timedelta(days=1))
    earlier = await make_session(start_at=start - timedelta(hours=2))
    student = await make_student(tokens=5)

    await _book(later, student)
    await _book(earlier, student)
    async with async_session() as db:
        await check_in(db, earlier.id, student.user_id, student)

    async with async_session() as db:
        bookings = await get_user_bookings(db, student.user_id, student)
    assert [b.session_id for b in bookings] == [earlier.id, later.id]

    async with async_session() as db:
        attended = await get_user_bookings(
            db, student.user_id, student, BookingFilters(status=BookingStatus.ATTENDED)
        )
    assert [b.session_id for b in attended] == [earlier.id]

    other = await make_student(tokens=0)
    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await get_user_bookings(db, student.user_id, other)

    async with async_session() as db:
        stats = await get_booking_stats(db, world.gym.id)
    assert stats.total_bookings == 2
    assert stats.by_status == {"RESERVED": 1, "ATTENDED": 1}
    assert stats.attendance_rate == 1.0
