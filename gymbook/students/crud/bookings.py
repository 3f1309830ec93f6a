"""
Booking Engine.

Бронирование выполняется под блокировкой сессии (in-process ключ
+ SELECT ... FOR UPDATE) от проверки вместимости до вставки брони,
списание токена - условный атомарный UPDATE. Поэтому вместимость не
превышается и баланс не уходит в минус при конкурентных запросах.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from sqlalchemy import and_, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gymbook.core.audit import audit_trail
from gymbook.core.database import TransactionManager, db_operation, utc_now
from gymbook.core.exceptions import (
    AlreadyExistsError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from gymbook.core.locks import booking_locks, session_key
from gymbook.core.permissions import (
    Principal,
    STAFF_ROLES,
    require_capability,
    require_self_or_staff,
)
from gymbook.staff.crud.sessions import count_active_bookings, lock_class_session
from gymbook.staff.models import ClassSession, PackagePlan, SessionStatus
from gymbook.students.crud.tokens import (
    consume_tokens,
    get_wallet,
    refund_tokens,
    select_grant_for_booking,
)
from gymbook.students.crud.waitlist import _promote, enqueue
from gymbook.students.models import (
    SEAT_HOLDING_STATUSES,
    Booking,
    BookingStatus,
    CheckInMethod,
    TokenGrant,
    TokenWallet,
    WaitlistEntry,
)
from gymbook.students.schemas.bookings import BookingFilters, BookingStats

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    """Бронь либо запись в листе ожидания, вызывающий ветвится по kind"""

    kind: Literal["booked", "waitlisted"]
    booking: Optional[Booking] = None
    waitlist_entry: Optional[WaitlistEntry] = None


def can_refund(
    booking: Booking,
    session_start: datetime,
    plan: Optional[PackagePlan],
    now: Optional[datetime] = None,
) -> bool:
    """
    Можно ли вернуть токен при отмене брони студентом.

    Нет партии или у партии нет плана - возврата нет. Если у плана задано
    cancel_before_hours и до начала осталось меньше часов - возврата нет.
    """
    if booking.grant_id is None or plan is None:
        return False

    now = now or utc_now()
    hours_until_session = (session_start - now).total_seconds() / 3600

    cancel_before_hours = plan.get_rule("cancel_before_hours")
    if cancel_before_hours is not None and hours_until_session < cancel_before_hours:
        return False
    return True


async def _get_active_booking(
    session: AsyncSession, session_id: int, student_id: int, lock: bool = False
) -> Optional[Booking]:
    """Неотмененная бронь студента на сессию"""
    query = select(Booking).where(
        and_(
            Booking.session_id == session_id,
            Booking.student_id == student_id,
            Booking.status != BookingStatus.CANCELLED,
        )
    )
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def _create_booking(
    session: AsyncSession, session_id: int, student_id: int, actor: Principal
) -> BookingResult:
    """Забронировать место или встать в очередь (без commit)"""
    if actor.user_id != student_id:
        raise PermissionDeniedError("book", f"session {session_id}", "students book for themselves")

    class_session = await lock_class_session(session, session_id)

    if class_session.status != SessionStatus.SCHEDULED:
        raise InvalidStateError(
            "Class session",
            SessionStatus(class_session.status).value,
            message=f"Class session {session_id} is not open for booking",
        )

    if await _get_active_booking(session, session_id, student_id):
        raise AlreadyExistsError("Booking", "student_id", str(student_id))

    if await count_active_bookings(session, session_id) >= class_session.capacity:
        entry = await enqueue(session, class_session, student_id)
        return BookingResult(kind="waitlisted", waitlist_entry=entry)

    wallet = await get_wallet(session, student_id, class_session.gym_id, lock=True)
    if wallet is None:
        raise NotFoundError("Token wallet", f"user {student_id}, gym {class_session.gym_id}")
    if wallet.balance < 1:
        raise InsufficientBalanceError(wallet.id, wallet.balance, 1)

    grant = await select_grant_for_booking(session, wallet)
    await consume_tokens(session, wallet, 1, f"Booking for session {session_id}", actor)

    booking = Booking(
        session_id=session_id,
        student_id=student_id,
        wallet_id=wallet.id,
        grant_id=grant.id if grant else None,
        status=BookingStatus.RESERVED,
    )
    session.add(booking)
    await session.flush()

    audit_trail.stage(
        session,
        actor_id=actor.user_id,
        entity="Booking",
        entity_id=booking.id,
        action="CREATE",
        diff={
            "session_id": session_id,
            "wallet_id": wallet.id,
            "grant_id": booking.grant_id,
            "balance": wallet.balance,
        },
        gym_id=class_session.gym_id,
    )
    return BookingResult(kind="booked", booking=booking)


@db_operation
async def create_booking(
    session: AsyncSession, session_id: int, student_id: int, actor: Principal
) -> BookingResult:
    """
    Забронировать место в сессии за 1 токен.

    Если мест нет, студент ставится в лист ожидания и возвращается
    результат kind="waitlisted".
    """
    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            result = await _create_booking(session, session_id, student_id, actor)

    logger.info(
        f"Student {student_id} {result.kind} for session {session_id}",
        extra={"session_id": session_id, "student_id": student_id, "kind": result.kind},
    )
    return result


async def _lock_booking(session: AsyncSession, booking_id: int) -> Booking:
    result = await session.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking", str(booking_id))
    return booking


async def _grant_plan(
    session: AsyncSession, booking: Booking
) -> Tuple[Optional[TokenGrant], Optional[PackagePlan]]:
    if booking.grant_id is None:
        return None, None
    grant = await session.get(TokenGrant, booking.grant_id)
    if grant is None or grant.plan_id is None:
        return grant, None
    return grant, await session.get(PackagePlan, grant.plan_id)


@db_operation
async def cancel_booking(
    session: AsyncSession,
    booking_id: int,
    actor: Principal,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Booking, bool, List[Booking]]:
    """
    Отмена брони студентом.

    Возврат токена по правилам плана (can_refund) и не более одного раза
    на бронь. Освободившееся место сразу предлагается листу ожидания.

    Returns:
        Tuple[booking, refunded, promoted_bookings]
    """
    existing = await session.get(Booking, booking_id)
    if not existing:
        raise NotFoundError("Booking", str(booking_id))
    session_id = existing.session_id

    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            booking = await _lock_booking(session, booking_id)
            if actor.user_id != booking.student_id:
                raise PermissionDeniedError(
                    "cancel", f"booking {booking_id}", "only the student can cancel"
                )
            if booking.status != BookingStatus.RESERVED:
                raise InvalidStateError(
                    "Booking",
                    BookingStatus(booking.status).value,
                    message=f"Booking {booking_id} is not RESERVED",
                )

            class_session = await lock_class_session(session, session_id)
            now = now or utc_now()

            grant, plan = await _grant_plan(session, booking)
            eligible = can_refund(booking, class_session.start_at, plan, now)

            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = now
            booking.cancel_reason = reason

            refunded = False
            if eligible and grant is not None and booking.refunded_at is None:
                wallet = await session.get(TokenWallet, grant.wallet_id)
                if wallet is not None:
                    await refund_tokens(
                        session, wallet, 1, f"Cancelled booking {booking_id}", actor, grant=grant
                    )
                    booking.refunded_at = now
                    refunded = True

            await session.flush()

            audit_trail.stage(
                session,
                actor_id=actor.user_id,
                entity="Booking",
                entity_id=booking.id,
                action="CANCEL",
                diff={
                    "session_id": session_id,
                    "reason": reason,
                    "refunded": refunded,
                },
                gym_id=class_session.gym_id,
            )

            promoted = await _promote(session, class_session)

    logger.info(
        f"Booking {booking_id} cancelled, refunded={refunded}, promoted={len(promoted)}",
        extra={"session_id": session_id, "actor_id": actor.user_id},
    )
    return booking, refunded, promoted


async def cancel_session_bookings(
    session: AsyncSession,
    class_session: ClassSession,
    actor: Principal,
    reason: str,
) -> Tuple[int, int]:
    """
    Каскад отмены сессии (без commit): все брони, занимающие место,
    отменяются, токен возвращается безусловно, если еще не возвращался.

    Returns:
        Tuple[cancelled_count, refunded_count]
    """
    result = await session.execute(
        select(Booking)
        .where(
            and_(
                Booking.session_id == class_session.id,
                Booking.status.in_(SEAT_HOLDING_STATUSES),
            )
        )
        .order_by(Booking.id)
        .with_for_update()
    )
    bookings = list(result.scalars().all())
    now = utc_now()

    cancelled = refunded = 0
    for booking in bookings:
        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.cancel_reason = f"Session cancelled: {reason}"
        cancelled += 1

        did_refund = False
        if booking.refunded_at is None and booking.wallet_id is not None:
            wallet = await session.get(TokenWallet, booking.wallet_id)
            if wallet is not None:
                grant = (
                    await session.get(TokenGrant, booking.grant_id)
                    if booking.grant_id is not None
                    else None
                )
                await refund_tokens(
                    session,
                    wallet,
                    1,
                    f"Session {class_session.id} cancelled",
                    actor,
                    grant=grant,
                )
                booking.refunded_at = now
                refunded += 1
                did_refund = True

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="Booking",
            entity_id=booking.id,
            action="CANCEL_BY_SESSION",
            diff={"session_id": class_session.id, "refunded": did_refund},
            gym_id=class_session.gym_id,
        )

    await session.flush()
    return cancelled, refunded


@db_operation
async def check_in(
    session: AsyncSession,
    session_id: int,
    student_id: int,
    actor: Principal,
    method: CheckInMethod = CheckInMethod.MANUAL,
) -> Booking:
    """Отметить приход: RESERVED -> ATTENDED"""
    require_self_or_staff(actor, student_id, "check in", f"student {student_id}")

    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            booking = await _get_active_booking(session, session_id, student_id, lock=True)
            if not booking:
                raise NotFoundError("Booking", f"session={session_id}, student={student_id}")
            if booking.status != BookingStatus.RESERVED:
                raise InvalidStateError(
                    "Booking",
                    BookingStatus(booking.status).value,
                    message="Only RESERVED bookings can be checked in",
                )

            booking.status = BookingStatus.ATTENDED
            booking.checked_in_at = utc_now()
            booking.check_in_method = CheckInMethod(method).value
            booking.checked_in_by = actor.user_id
            await session.flush()

            class_session = await session.get(ClassSession, session_id)
            audit_trail.stage(
                session,
                actor_id=actor.user_id,
                entity="Booking",
                entity_id=booking.id,
                action="CHECK_IN",
                diff={"method": booking.check_in_method},
                gym_id=class_session.gym_id if class_session else None,
            )

    return booking


@db_operation
async def mark_no_show(
    session: AsyncSession, session_id: int, student_id: int, actor: Principal
) -> Booking:
    """ATTENDED -> NO_SHOW, токен не возвращается"""
    require_capability(actor, STAFF_ROLES, "mark no-show for", f"session {session_id}")

    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            booking = await _get_active_booking(session, session_id, student_id, lock=True)
            if not booking:
                raise NotFoundError("Booking", f"session={session_id}, student={student_id}")
            if booking.status != BookingStatus.ATTENDED:
                raise InvalidStateError(
                    "Booking",
                    BookingStatus(booking.status).value,
                    message="Only ATTENDED bookings can be marked as no-show",
                )

            booking.status = BookingStatus.NO_SHOW
            await session.flush()

            class_session = await session.get(ClassSession, session_id)
            audit_trail.stage(
                session,
                actor_id=actor.user_id,
                entity="Booking",
                entity_id=booking.id,
                action="NO_SHOW",
                diff={"student_id": student_id},
                gym_id=class_session.gym_id if class_session else None,
            )

    return booking


@db_operation
async def get_user_bookings(
    session: AsyncSession,
    student_id: int,
    actor: Principal,
    filters: Optional[BookingFilters] = None,
) -> List[Booking]:
    """Брони студента по возрастанию начала сессии"""
    require_self_or_staff(actor, student_id, "view bookings of", f"student {student_id}")

    conditions = [Booking.student_id == student_id]
    if filters:
        if filters.status is not None:
            conditions.append(Booking.status == filters.status)
        if filters.gym_id is not None:
            conditions.append(ClassSession.gym_id == filters.gym_id)
        if filters.date_from is not None:
            conditions.append(ClassSession.start_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(ClassSession.start_at < filters.date_to)

    result = await session.execute(
        select(Booking)
        .join(ClassSession, Booking.session_id == ClassSession.id)
        .where(and_(*conditions))
        .order_by(ClassSession.start_at, Booking.id)
    )
    return list(result.scalars().all())


@db_operation
async def get_session_bookings(session: AsyncSession, session_id: int) -> List[Booking]:
    """Брони сессии в порядке создания"""
    class_session = await session.get(ClassSession, session_id)
    if not class_session:
        raise NotFoundError("Class session", str(session_id))

    result = await session.execute(
        select(Booking)
        .where(Booking.session_id == session_id)
        .order_by(Booking.created_at, Booking.id)
    )
    return list(result.scalars().all())


@db_operation
async def get_booking_stats(
    session: AsyncSession,
    gym_id: int,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> BookingStats:
    conditions = [ClassSession.gym_id == gym_id]
    if date_from is not None:
        conditions.append(ClassSession.start_at >= date_from)
    if date_to is not None:
        conditions.append(ClassSession.start_at < date_to)

    result = await session.execute(
        select(Booking.status, func.count(Booking.id))
        .join(ClassSession, Booking.session_id == ClassSession.id)
        .where(and_(*conditions))
        .group_by(Booking.status)
    )
    by_status = {BookingStatus(status).value: count for status, count in result.all()}

    attended = by_status.get(BookingStatus.ATTENDED.value, 0)
    no_show = by_status.get(BookingStatus.NO_SHOW.value, 0)
    checked = attended + no_show

    return BookingStats(
        total_bookings=sum(by_status.values()),
        by_status=by_status,
        attendance_rate=round(attended / checked, 4) if checked else 0.0,
    )
