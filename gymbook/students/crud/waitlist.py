"""
Лист ожидания сессии.

Позиция берется из атомарного счетчика ClassSession.waitlist_seq,
поэтому позиции строго возрастают и не переиспользуются. Продвижение
идет по возрастанию позиции через полный путь бронирования от имени
студента.
"""

import logging
from typing import List, Optional

from sqlalchemy import and_, delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from gymbook.core.audit import audit_trail
from gymbook.core.database import TransactionManager, db_operation
from gymbook.core.exceptions import (
    AlreadyExistsError,
    InsufficientBalanceError,
    NotFoundError,
)
from gymbook.core.locks import booking_locks, session_key
from gymbook.core.logging_utils import error_tracker
from gymbook.core.permissions import Principal, UserRole, require_self_or_staff
from gymbook.staff.crud.sessions import count_active_bookings, lock_class_session
from gymbook.staff.models import ClassSession, SessionStatus
from gymbook.students.models import Booking, WaitlistEntry

logger = logging.getLogger(__name__)


async def get_entry(
    session: AsyncSession, session_id: int, student_id: int
) -> Optional[WaitlistEntry]:
    result = await session.execute(
        select(WaitlistEntry).where(
            and_(
                WaitlistEntry.session_id == session_id,
                WaitlistEntry.student_id == student_id,
            )
        )
    )
    return result.scalar_one_or_none()


async def enqueue(
    session: AsyncSession, class_session: ClassSession, student_id: int
) -> WaitlistEntry:
    """Поставить студента в конец очереди (без commit)"""
    if await get_entry(session, class_session.id, student_id):
        raise AlreadyExistsError("Waitlist entry", "student_id", str(student_id))

    result = await session.execute(
        update(ClassSession)
        .where(ClassSession.id == class_session.id)
        .values(waitlist_seq=ClassSession.waitlist_seq + 1)
        .returning(ClassSession.waitlist_seq)
        .execution_options(synchronize_session=False)
    )
    position = result.scalar_one()
    set_committed_value(class_session, "waitlist_seq", position)

    entry = WaitlistEntry(
        session_id=class_session.id,
        student_id=student_id,
        position=position,
    )
    session.add(entry)
    await session.flush()

    audit_trail.stage(
        session,
        actor_id=student_id,
        entity="WaitlistEntry",
        entity_id=entry.id,
        action="ENQUEUE",
        diff={"session_id": class_session.id, "position": position},
        gym_id=class_session.gym_id,
    )
    return entry


async def _promote(session: AsyncSession, class_session: ClassSession) -> List[Booking]:
    """
    Занять освободившиеся места кандидатами из очереди (без commit).

    Кандидат без кошелька или без токенов остается в очереди, ошибка
    логируется, пробуется следующий. Кандидат, уже имеющий бронь,
    удаляется из очереди.
    """
    from gymbook.students.crud.bookings import _create_booking

    if class_session.status != SessionStatus.SCHEDULED:
        return []

    free_seats = class_session.capacity - await count_active_bookings(session, class_session.id)
    if free_seats <= 0:
        return []

    result = await session.execute(
        select(WaitlistEntry)
        .where(WaitlistEntry.session_id == class_session.id)
        .order_by(WaitlistEntry.position)
    )
    entries = list(result.scalars().all())

    promoted: List[Booking] = []
    for entry in entries:
        if free_seats <= 0:
            break

        student = Principal(user_id=entry.student_id, role=UserRole.STUDENT)
        try:
            booking_result = await _create_booking(
                session, class_session.id, entry.student_id, student
            )
        except AlreadyExistsError:
            logger.info(
                f"Dropping stale waitlist entry of student {entry.student_id}",
                extra={"session_id": class_session.id, "position": entry.position},
            )
            await session.delete(entry)
            await session.flush()
            continue
        except (InsufficientBalanceError, NotFoundError) as e:
            logger.warning(
                f"Waitlist promotion failed for student {entry.student_id}: {e.message}",
                extra={"session_id": class_session.id, "position": entry.position},
            )
            error_tracker.track_error(
                "WAITLIST_PROMOTION_FAILED",
                e.message,
                {
                    "session_id": class_session.id,
                    "student_id": entry.student_id,
                    "position": entry.position,
                },
            )
            continue

        await session.delete(entry)
        await session.flush()

        booking = booking_result.booking
        promoted.append(booking)
        free_seats -= 1

        audit_trail.stage(
            session,
            actor_id=None,
            entity="WaitlistEntry",
            entity_id=entry.id,
            action="PROMOTE",
            diff={
                "session_id": class_session.id,
                "student_id": entry.student_id,
                "position": entry.position,
                "booking_id": booking.id,
            },
            gym_id=class_session.gym_id,
        )

    if promoted:
        logger.info(
            f"Promoted {len(promoted)} students from waitlist of session {class_session.id}"
        )
    return promoted


@db_operation
async def promote_waitlist(session: AsyncSession, session_id: int) -> List[Booking]:
    """Явно продвинуть очередь сессии"""
    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            class_session = await lock_class_session(session, session_id)
            promoted = await _promote(session, class_session)
    return promoted


@db_operation
async def leave_waitlist(
    session: AsyncSession, session_id: int, student_id: int, actor: Principal
) -> None:
    """Выйти из листа ожидания. Позиции остальных не меняются."""
    require_self_or_staff(actor, student_id, "leave waitlist for", f"student {student_id}")

    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            class_session = await lock_class_session(session, session_id)
            entry = await get_entry(session, session_id, student_id)
            if not entry:
                raise NotFoundError("Waitlist entry", f"session={session_id}, student={student_id}")

            await session.delete(entry)
            await session.flush()

            audit_trail.stage(
                session,
                actor_id=actor.user_id,
                entity="WaitlistEntry",
                entity_id=entry.id,
                action="LEAVE",
                diff={"session_id": session_id, "student_id": student_id, "position": entry.position},
                gym_id=class_session.gym_id,
            )


@db_operation
async def get_waitlist(session: AsyncSession, session_id: int) -> List[WaitlistEntry]:
    class_session = await session.get(ClassSession, session_id)
    if not class_session:
        raise NotFoundError("Class session", str(session_id))

    result = await session.execute(
        select(WaitlistEntry)
        .where(WaitlistEntry.session_id == session_id)
        .order_by(WaitlistEntry.position)
    )
    return list(result.scalars().all())


async def clear_waitlist(session: AsyncSession, class_session: ClassSession) -> int:
    """Удалить всю очередь сессии (без commit). Возвращает число записей."""
    result = await session.execute(
        delete(WaitlistEntry)
        .where(WaitlistEntry.session_id == class_session.id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
