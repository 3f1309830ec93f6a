import asyncio
from datetime import timedelta

from gymbook.core.database import async_session
from gymbook.core.exceptions import AlreadyExistsError, InsufficientBalanceError
from gymbook.staff.crud.sessions import count_active_bookings
from gymbook.students.crud.bookings import create_booking
from gymbook.students.crud.waitlist import get_waitlist


async def _book(session_id, student):
    async with async_session() as db:
        return await create_booking(db, session_id, student.user_id, student)


async def test_parallel_bookings_never_exceed_capacity(make_session, make_student):
    class_session = await make_session(capacity=3)
    students = [await make_student(tokens=1) for _ in range(8)]

    results = await asyncio.gather(*[_book(class_session.id, s) for s in students])

    kinds = [r.kind for r in results]
    assert kinds.count("booked") == 3
    assert kinds.count("waitlisted") == 5

    async with async_session() as db:
        assert await count_active_bookings(db, class_session.id) == 3
        entries = await get_waitlist(db, class_session.id)
    assert sorted(e.position for e in entries) == [1, 2, 3, 4, 5]


async def test_single_token_books_only_one_session(make_session, make_student, balance_of):
    first = await make_session()
    second = await make_session(start_at=first.start_at + timedelta(hours=3))
    student = await make_student(tokens=1)

    results = await asyncio.gather(
        _book(first.id, student),
        _book(second.id, student),
        return_exceptions=True,
    )

    booked = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(booked) == 1
    assert booked[0].kind == "booked"
    assert len(failed) == 1
    assert isinstance(failed[0], InsufficientBalanceError)
    assert await balance_of(student) == 0


async def test_same_student_double_submit(make_session, make_student, balance_of):
    class_session = await make_session()
    student = await make_student(tokens=5)

    results = await asyncio.gather(
        _book(class_session.id, student),
        _book(class_session.id, student),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, AlreadyExistsError)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert await balance_of(student) == 4
