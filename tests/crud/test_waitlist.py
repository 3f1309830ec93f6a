import pytest

from gymbook.core.database import async_session
from gymbook.core.exceptions import AlreadyExistsError, NotFoundError, PermissionDeniedError
from gymbook.core.logging_utils import error_tracker
from gymbook.staff.crud.sessions import count_active_bookings, update_session
from gymbook.staff.schemas.sessions import ClassSessionUpdate
from gymbook.students.crud.bookings import cancel_booking, create_booking
from gymbook.students.crud.waitlist import get_waitlist, leave_waitlist, promote_waitlist
from gymbook.students.models import BookingStatus


async def _book(class_session, student):
    async with async_session() as db:
        return await create_booking(db, class_session.id, student.user_id, student)


async def _positions(class_session):
    async with async_session() as db:
        entries = await get_waitlist(db, class_session.id)
    return [(entry.student_id, entry.position) for entry in entries]


async def test_full_session_enqueues_without_charging(make_session, make_student, balance_of):
    class_session = await make_session(capacity=1)
    first = await make_student(tokens=2)
    second = await make_student(tokens=2)

    await _book(class_session, first)
    result = await _book(class_session, second)

    assert result.kind == "waitlisted"
    assert result.booking is None
    assert result.waitlist_entry.position == 1
    assert await balance_of(second) == 2


async def test_duplicate_enqueue_is_rejected(make_session, make_student):
    class_session = await make_session(capacity=1)
    await _book(class_session, await make_student())
    waiting = await make_student()

    await _book(class_session, waiting)
    with pytest.raises(AlreadyExistsError):
        await _book(class_session, waiting)

    assert await _positions(class_session) == [(waiting.user_id, 1)]


async def test_cancellation_promotes_in_fifo_order(make_session, make_student, balance_of):
    class_session = await make_session(capacity=1)
    holder = await make_student(tokens=2)
    first = await make_student(tokens=2)
    second = await make_student(tokens=2)

    booked = await _book(class_session, holder)
    await _book(class_session, first)
    await _book(class_session, second)

    async with async_session() as db:
        _, _, promoted = await cancel_booking(db, booked.booking.id, holder)

    assert [b.student_id for b in promoted] == [first.user_id]
    assert promoted[0].status == BookingStatus.RESERVED
    assert await balance_of(first) == 1
    assert await balance_of(second) == 2
    assert await _positions(class_session) == [(second.user_id, 2)]

    async with async_session() as db:
        assert await count_active_bookings(db, class_session.id) == 1


async def test_failed_promotion_keeps_entry_and_moves_on(
    make_session, make_student, balance_of, audit_entries
):
    class_session = await make_session(capacity=1)
    holder = await make_student(tokens=1)
    broke = await make_student(tokens=0)
    paying = await make_student(tokens=1)

    booked = await _book(class_session, holder)
    await _book(class_session, broke)
    await _book(class_session, paying)

    async with async_session() as db:
        _, _, promoted = await cancel_booking(db, booked.booking.id, holder)

    assert [b.student_id for b in promoted] == [paying.user_id]
    assert await balance_of(paying) == 0
    assert await _positions(class_session) == [(broke.user_id, 1)]
    assert error_tracker.count("WAITLIST_PROMOTION_FAILED") == 1

    promotions = await audit_entries("WaitlistEntry", "PROMOTE")
    assert [entry.diff["student_id"] for entry in promotions] == [paying.user_id]


async def test_leave_keeps_other_positions(make_session, make_student):
    class_session = await make_session(capacity=1)
    await _book(class_session, await make_student())
    first = await make_student()
    second = await make_student()
    third = await make_student()
    for student in (first, second, third):
        await _book(class_session, student)

    async with async_session() as db:
        await leave_waitlist(db, class_session.id, second.user_id, second)

    assert await _positions(class_session) == [(first.user_id, 1), (third.user_id, 3)]

    # позиции не переиспользуются
    late = await make_student()
    result = await _book(class_session, late)
    assert result.waitlist_entry.position == 4


async def test_leave_permissions_and_missing_entry(world, make_session, make_student):
    class_session = await make_session(capacity=1)
    await _book(class_session, await make_student())
    waiting = await make_student()
    other = await make_student()
    await _book(class_session, waiting)

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await leave_waitlist(db, class_session.id, waiting.user_id, other)
    async with async_session() as db:
        with pytest.raises(NotFoundError):
            await leave_waitlist(db, class_session.id, other.user_id, other)

    # персонал может убрать студента из очереди
    async with async_session() as db:
        await leave_waitlist(db, class_session.id, waiting.user_id, world.professor)
    assert await _positions(class_session) == []


async def test_capacity_increase_promotes(world, make_session, make_student):
    class_session = await make_session(capacity=1)
    await _book(class_session, await make_student())
    first = await make_student()
    second = await make_student()
    await _book(class_session, first)
    await _book(class_session, second)

    async with async_session() as db:
        updated = await update_session(
            db, class_session.id, ClassSessionUpdate(capacity=2), world.professor
        )

    assert updated.capacity == 2
    assert await _positions(class_session) == [(second.user_id, 2)]
    async with async_session() as db:
        assert await count_active_bookings(db, class_session.id) == 2


async def test_explicit_promotion_is_noop_when_full(make_session, make_student):
    class_session = await make_session(capacity=1)
    await _book(class_session, await make_student())
    waiting = await make_student()
    await _book(class_session, waiting)

    async with async_session() as db:
        promoted = await promote_waitlist(db, class_session.id)

    assert promoted == []
    assert await _positions(class_session) == [(waiting.user_id, 1)]

    async with async_session() as db:
        with pytest.raises(NotFoundError):
            await promote_waitlist(db, 999999)
