import pytest

from gymbook.core.audit import audit_trail
from gymbook.core.database import async_session
from gymbook.core.exceptions import InsufficientBalanceError
from gymbook.core.logging_utils import error_tracker
from gymbook.students.crud.bookings import cancel_booking, create_booking, get_user_bookings
from gymbook.students.models import BookingStatus


async def test_booking_writes_audit_entries(world, make_session, make_student, audit_entries):
    class_session = await make_session()
    student = await make_student(tokens=3)

    async with async_session() as db:
        result = await create_booking(db, class_session.id, student.user_id, student)

    bookings = await audit_entries("Booking", "CREATE")
    assert len(bookings) == 1
    assert bookings[0].entity_id == result.booking.id
    assert bookings[0].actor_id == student.user_id
    assert bookings[0].gym_id == world.gym.id
    assert bookings[0].diff["session_id"] == class_session.id
    assert bookings[0].diff["balance"] == 2

    consumed = await audit_entries("TokenWallet", "CONSUME")
    assert len(consumed) == 1

    async with async_session() as db:
        await cancel_booking(db, result.booking.id, student, "sick")

    cancels = await audit_entries("Booking", "CANCEL")
    assert len(cancels) == 1
    assert cancels[0].diff == {
        "session_id": class_session.id,
        "reason": "sick",
        "refunded": True,
    }


async def test_audit_failure_keeps_committed_booking(
    make_session, make_student, balance_of, audit_entries
):
    class_session = await make_session()
    student = await make_student(tokens=3)
    before = len(await audit_entries())

    def broken_factory():
        raise RuntimeError("audit database unavailable")

    audit_trail._session_factory = broken_factory

    async with async_session() as db:
        result = await create_booking(db, class_session.id, student.user_id, student)

    audit_trail._session_factory = None

    assert result.kind == "booked"
    assert await balance_of(student) == 2
    async with async_session() as db:
        bookings = await get_user_bookings(db, student.user_id, student)
    assert [b.status for b in bookings] == [BookingStatus.RESERVED]

    assert error_tracker.count("AUDIT_WRITE_FAILED") == 1
    assert len(await audit_entries()) == before


async def test_rolled_back_operation_writes_no_audit(make_session, make_student, audit_entries):
    class_session = await make_session()
    student = await make_student(tokens=0)
    before = len(await audit_entries())

    async with async_session() as db:
        with pytest.raises(InsufficientBalanceError):
            await create_booking(db, class_session.id, student.user_id, student)

    assert len(await audit_entries()) == before
    assert error_tracker.count("AUDIT_WRITE_FAILED") == 0


async def test_write_skips_empty_batch():
    assert await audit_trail.write([]) is True
