"""
Session Registry: создание, изменение и отмена сессий занятий.

Сессии одного помещения не пересекаются по полуоткрытому интервалу
[start_at, end_at) среди SCHEDULED / IN_PROGRESS. Проверка и вставка
выполняются под блокировкой помещения.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gymbook.core.audit import audit_trail
from gymbook.core.database import TransactionManager, db_operation, utc_now
from gymbook.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ScheduleConflictError,
    ValidationError,
)
from gymbook.core.locks import booking_locks, room_key, session_key
from gymbook.core.permissions import Principal, STAFF_ROLES, UserRole, require_capability
from gymbook.staff.crud.memberships import ensure_professor_membership, get_active_membership
from gymbook.staff.models import (
    ACTIVE_SESSION_STATUSES,
    ClassSession,
    ClassType,
    Location,
    Room,
    SessionStatus,
)
from gymbook.staff.schemas.sessions import (
    ClassSessionCreate,
    ClassSessionUpdate,
    SessionFilters,
    SessionStats,
)
from gymbook.students.models import SEAT_HOLDING_STATUSES, Booking, WaitlistEntry

logger = logging.getLogger(__name__)


# ===== Helpers (без commit) =====


async def find_room_conflict(
    session: AsyncSession,
    room_id: int,
    start_at: datetime,
    end_at: datetime,
    exclude_session_id: Optional[int] = None,
) -> Optional[ClassSession]:
    """Первая активная сессия помещения, пересекающая [start_at, end_at)"""
    conditions = [
        ClassSession.room_id == room_id,
        ClassSession.status.in_(ACTIVE_SESSION_STATUSES),
        ClassSession.start_at < end_at,
        ClassSession.end_at > start_at,
    ]
    if exclude_session_id is not None:
        conditions.append(ClassSession.id != exclude_session_id)

    result = await session.execute(
        select(ClassSession).where(and_(*conditions)).order_by(ClassSession.start_at).limit(1)
    )
    return result.scalar_one_or_none()


async def lock_room(session: AsyncSession, room_id: int) -> Room:
    result = await session.execute(select(Room).where(Room.id == room_id).with_for_update())
    room = result.scalar_one_or_none()
    if not room:
        raise NotFoundError("Room", str(room_id))
    return room


async def lock_class_session(session: AsyncSession, session_id: int) -> ClassSession:
    """Прочитать сессию с блокировкой строки (SELECT ... FOR UPDATE)"""
    result = await session.execute(
        select(ClassSession)
        .where(ClassSession.id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    class_session = result.scalar_one_or_none()
    if not class_session:
        raise NotFoundError("Class session", str(session_id))
    return class_session


async def count_active_bookings(session: AsyncSession, session_id: int) -> int:
    """Число броней, занимающих место (RESERVED / ATTENDED)"""
    result = await session.execute(
        select(func.count(Booking.id)).where(
            and_(
                Booking.session_id == session_id,
                Booking.status.in_(SEAT_HOLDING_STATUSES),
            )
        )
    )
    return result.scalar_one()


async def count_active_bookings_bulk(
    session: AsyncSession, session_ids: List[int]
) -> Dict[int, int]:
    if not session_ids:
        return {}
    result = await session.execute(
        select(Booking.session_id, func.count(Booking.id))
        .where(
            and_(
                Booking.session_id.in_(session_ids),
                Booking.status.in_(SEAT_HOLDING_STATUSES),
            )
        )
        .group_by(Booking.session_id)
    )
    return {session_id: count for session_id, count in result.all()}


async def _check_room_in_gym(session: AsyncSession, room_id: int, gym_id: int) -> Room:
    room = await lock_room(session, room_id)
    location = await session.get(Location, room.location_id)
    if location is None or location.gym_id != gym_id:
        raise ValidationError(f"Room {room_id} does not belong to gym {gym_id}")
    return room


async def _check_class_type_in_gym(session: AsyncSession, class_type_id: int, gym_id: int):
    class_type = await session.get(ClassType, class_type_id)
    if not class_type:
        raise NotFoundError("Class type", str(class_type_id))
    if class_type.gym_id != gym_id:
        raise ValidationError(f"Class type {class_type_id} does not belong to gym {gym_id}")
    if not class_type.is_active:
        raise InvalidStateError("Class type", "inactive")
    return class_type


async def _resolve_professor(
    session: AsyncSession, actor: Principal, gym_id: int, professor_id: Optional[int]
) -> int:
    """Преподаватель сессии: по умолчанию сам актор"""
    await ensure_professor_membership(session, actor, gym_id)

    if professor_id is None or professor_id == actor.user_id:
        return actor.user_id

    membership = await get_active_membership(session, professor_id, gym_id)
    if membership is None or membership.role_in_gym not in STAFF_ROLES:
        raise ValidationError(
            f"User {professor_id} is not an active professor of gym {gym_id}"
        )
    return professor_id


def _check_window(start_at: datetime, end_at: datetime) -> None:
    if end_at <= start_at:
        raise ValidationError("end_at must be after start_at")


async def _create_session(
    session: AsyncSession,
    data: ClassSessionCreate,
    actor: Principal,
    template_id: Optional[int] = None,
) -> ClassSession:
    """Создать сессию в текущей транзакции (без commit)"""
    _check_window(data.start_at, data.end_at)
    if data.capacity <= 0:
        raise ValidationError("Capacity must be positive")

    professor_id = await _resolve_professor(session, actor, data.gym_id, data.professor_id)
    await _check_room_in_gym(session, data.room_id, data.gym_id)
    await _check_class_type_in_gym(session, data.class_type_id, data.gym_id)

    conflict = await find_room_conflict(session, data.room_id, data.start_at, data.end_at)
    if conflict:
        raise ScheduleConflictError(data.room_id, conflict.id)

    class_session = ClassSession(
        gym_id=data.gym_id,
        professor_id=professor_id,
        room_id=data.room_id,
        class_type_id=data.class_type_id,
        template_id=template_id,
        start_at=data.start_at,
        end_at=data.end_at,
        capacity=data.capacity,
        status=SessionStatus.SCHEDULED,
        created_by=actor.user_id,
    )
    session.add(class_session)
    await session.flush()

    audit_trail.stage(
        session,
        actor_id=actor.user_id,
        entity="ClassSession",
        entity_id=class_session.id,
        action="CREATE",
        diff={
            "room_id": data.room_id,
            "professor_id": professor_id,
            "start_at": data.start_at.isoformat(),
            "end_at": data.end_at.isoformat(),
            "capacity": data.capacity,
            "template_id": template_id,
        },
        gym_id=data.gym_id,
    )
    return class_session


# ===== Operations =====


@db_operation
async def create_session(
    session: AsyncSession, data: ClassSessionCreate, actor: Principal
) -> ClassSession:
    """Создать сессию в статусе SCHEDULED"""
    async with booking_locks.hold(room_key(data.room_id)):
        async with TransactionManager(session):
            class_session = await _create_session(session, data, actor)

    logger.info(
        f"Class session {class_session.id} created in room {data.room_id}",
        extra={"gym_id": data.gym_id, "actor_id": actor.user_id},
    )
    return class_session


@db_operation
async def get_session_by_id(session: AsyncSession, session_id: int) -> ClassSession:
    if session_id <= 0:
        raise ValidationError("Session ID must be positive")

    class_session = await session.get(ClassSession, session_id)
    if not class_session:
        raise NotFoundError("Class session", str(session_id))
    return class_session


@db_operation
async def get_sessions(
    session: AsyncSession,
    filters: Optional[SessionFilters] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Tuple[ClassSession, int]]:
    """Сессии по фильтрам, по возрастанию start_at, с числом броней"""
    if skip < 0:
        raise ValidationError("Skip parameter must be >= 0")
    if limit <= 0 or limit > 500:
        raise ValidationError("Limit must be between 1 and 500")

    conditions = []
    if filters:
        if filters.gym_id is not None:
            conditions.append(ClassSession.gym_id == filters.gym_id)
        if filters.professor_id is not None:
            conditions.append(ClassSession.professor_id == filters.professor_id)
        if filters.class_type_id is not None:
            conditions.append(ClassSession.class_type_id == filters.class_type_id)
        if filters.room_id is not None:
            conditions.append(ClassSession.room_id == filters.room_id)
        if filters.status is not None:
            conditions.append(ClassSession.status == filters.status)
        if filters.date_from is not None:
            conditions.append(ClassSession.start_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(ClassSession.start_at < filters.date_to)

    query = select(ClassSession)
    if conditions:
        query = query.where(and_(*conditions))
    query = query.order_by(ClassSession.start_at, ClassSession.id).offset(skip).limit(limit)

    result = await session.execute(query)
    sessions = list(result.scalars().all())
    counts = await count_active_bookings_bulk(session, [s.id for s in sessions])
    return [(s, counts.get(s.id, 0)) for s in sessions]


@db_operation
async def update_session(
    session: AsyncSession, session_id: int, data: ClassSessionUpdate, actor: Principal
) -> ClassSession:
    """
    Изменить сессию.

    - терминальную сессию (COMPLETED / CANCELLED) менять нельзя;
    - capacity не может быть меньше числа активных броней;
    - новое окно или помещение повторно проверяется на пересечения;
    - статус меняется только по машине состояний, отмена - через cancel_session;
    - увеличение capacity продвигает лист ожидания.
    """
    current = await get_session_by_id(session, session_id)
    keys = [session_key(session_id), room_key(current.room_id)]
    if data.room_id is not None:
        keys.append(room_key(data.room_id))

    async with booking_locks.hold(*keys):
        async with TransactionManager(session):
            class_session = await lock_class_session(session, session_id)
            await ensure_professor_membership(session, actor, class_session.gym_id)

            status = SessionStatus(class_session.status)
            if status not in ACTIVE_SESSION_STATUSES:
                raise InvalidStateError(
                    "Class session",
                    status.value,
                    message=f"Class session {session_id} is {status.value} and cannot be edited",
                )

            patch = {
                field: value
                for field, value in data.model_dump(exclude_unset=True).items()
                if value is not None
            }
            diff = {}

            new_status = patch.pop("status", None)
            if new_status is not None and new_status != status:
                if new_status == SessionStatus.CANCELLED:
                    raise InvalidStateError(
                        "Class session",
                        status.value,
                        message="Use the cancel operation to cancel a session",
                    )
                if not class_session.can_transition_to(new_status):
                    raise InvalidStateError(
                        "Class session",
                        status.value,
                        message=f"Cannot move session from {status.value} to {new_status.value}",
                    )

            if "capacity" in patch:
                booked = await count_active_bookings(session, session_id)
                if patch["capacity"] < booked:
                    raise InvalidStateError(
                        "Class session",
                        status.value,
                        message=f"Capacity {patch['capacity']} is below {booked} active bookings",
                        details={"active_bookings": booked},
                    )

            start_at = patch.get("start_at", class_session.start_at)
            end_at = patch.get("end_at", class_session.end_at)
            room_id = patch.get("room_id", class_session.room_id)
            _check_window(start_at, end_at)

            if room_id != class_session.room_id:
                await _check_room_in_gym(session, room_id, class_session.gym_id)
            if "class_type_id" in patch and patch["class_type_id"] != class_session.class_type_id:
                await _check_class_type_in_gym(session, patch["class_type_id"], class_session.gym_id)
            if "professor_id" in patch and patch["professor_id"] != class_session.professor_id:
                patch["professor_id"] = await _resolve_professor(
                    session, actor, class_session.gym_id, patch["professor_id"]
                )

            window_changed = (
                start_at != class_session.start_at
                or end_at != class_session.end_at
                or room_id != class_session.room_id
            )
            if window_changed:
                await lock_room(session, room_id)
                conflict = await find_room_conflict(
                    session, room_id, start_at, end_at, exclude_session_id=session_id
                )
                if conflict:
                    raise ScheduleConflictError(room_id, conflict.id)

            old_capacity = class_session.capacity
            for field, value in patch.items():
                old = getattr(class_session, field)
                if old != value:
                    setattr(class_session, field, value)
                    diff[field] = {
                        "old": old.isoformat() if isinstance(old, datetime) else old,
                        "new": value.isoformat() if isinstance(value, datetime) else value,
                    }

            if new_status is not None and new_status != status:
                class_session.status = new_status
                diff["status"] = {"old": status.value, "new": new_status.value}

            await session.flush()

            if diff:
                audit_trail.stage(
                    session,
                    actor_id=actor.user_id,
                    entity="ClassSession",
                    entity_id=class_session.id,
                    action="UPDATE",
                    diff=diff,
                    gym_id=class_session.gym_id,
                )

            if (
                class_session.capacity > old_capacity
                and class_session.status == SessionStatus.SCHEDULED
            ):
                from gymbook.students.crud.waitlist import _promote

                await _promote(session, class_session)

    logger.info(
        f"Class session {session_id} updated",
        extra={"fields": sorted(diff.keys()), "actor_id": actor.user_id},
    )
    return class_session


@db_operation
async def cancel_session(
    session: AsyncSession, session_id: int, reason: str, actor: Principal
) -> Dict[str, object]:
    """
    Отменить сессию: все активные брони отменяются с безусловным
    возвратом токена, лист ожидания очищается.
    """
    from gymbook.students.crud.bookings import cancel_session_bookings
    from gymbook.students.crud.waitlist import clear_waitlist

    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            class_session = await lock_class_session(session, session_id)
            await ensure_professor_membership(session, actor, class_session.gym_id)

            status = SessionStatus(class_session.status)
            if status not in ACTIVE_SESSION_STATUSES:
                raise InvalidStateError(
                    "Class session",
                    status.value,
                    message=f"Class session {session_id} is already {status.value}",
                )

            cancelled, refunded = await cancel_session_bookings(
                session, class_session, actor, reason
            )
            cleared = await clear_waitlist(session, class_session)

            class_session.status = SessionStatus.CANCELLED
            class_session.cancel_reason = reason
            class_session.cancelled_at = utc_now()
            await session.flush()

            audit_trail.stage(
                session,
                actor_id=actor.user_id,
                entity="ClassSession",
                entity_id=class_session.id,
                action="CANCEL",
                diff={
                    "reason": reason,
                    "previous_status": status.value,
                    "cancelled_bookings": cancelled,
                    "refunded_bookings": refunded,
                    "cleared_waitlist": cleared,
                },
                gym_id=class_session.gym_id,
            )

    logger.info(
        f"Class session {session_id} cancelled: {cancelled} bookings, {refunded} refunds",
        extra={"actor_id": actor.user_id, "cleared_waitlist": cleared},
    )
    return {
        "session": class_session,
        "cancelled_bookings": cancelled,
        "refunded_bookings": refunded,
        "cleared_waitlist": cleared,
    }


@db_operation
async def delete_session(session: AsyncSession, session_id: int, actor: Principal) -> None:
    """
    Удалить сессию безвозвратно.

    Только ADMIN или PROFESSOR; преподаватель удаляет только свои сессии.
    Пока есть брони RESERVED / ATTENDED, удаление запрещено: сначала
    отмена сессии или броней. Отмененные брони и лист ожидания
    удаляются вместе с сессией.
    """
    require_capability(actor, STAFF_ROLES, "delete", f"class session {session_id}")

    async with booking_locks.hold(session_key(session_id)):
        async with TransactionManager(session):
            class_session = await lock_class_session(session, session_id)
            await ensure_professor_membership(session, actor, class_session.gym_id)

            if actor.role == UserRole.PROFESSOR and class_session.professor_id != actor.user_id:
                raise PermissionDeniedError(
                    "delete",
                    f"class session {session_id}",
                    "professors delete only their own sessions",
                )

            booked = await count_active_bookings(session, session_id)
            if booked:
                raise InvalidStateError(
                    "Class session",
                    SessionStatus(class_session.status).value,
                    message=(
                        f"Class session {session_id} has {booked} active bookings; "
                        "cancel them first"
                    ),
                    details={"active_bookings": booked},
                )

            waitlisted = await session.execute(
                delete(WaitlistEntry).where(WaitlistEntry.session_id == session_id)
            )
            removed_bookings = await session.execute(
                delete(Booking).where(Booking.session_id == session_id)
            )
            snapshot = {
                "gym_id": class_session.gym_id,
                "room_id": class_session.room_id,
                "professor_id": class_session.professor_id,
                "start_at": class_session.start_at.isoformat(),
                "end_at": class_session.end_at.isoformat(),
                "status": SessionStatus(class_session.status).value,
                "removed_bookings": removed_bookings.rowcount,
                "removed_waitlist": waitlisted.rowcount,
            }
            await session.delete(class_session)
            await session.flush()

            audit_trail.stage(
                session,
                actor_id=actor.user_id,
                entity="ClassSession",
                entity_id=session_id,
                action="DELETE",
                diff=snapshot,
                gym_id=snapshot["gym_id"],
            )

    logger.info(
        f"Class session {session_id} deleted",
        extra={"actor_id": actor.user_id, "removed_bookings": snapshot["removed_bookings"]},
    )


@db_operation
async def duplicate_session(
    session: AsyncSession, session_id: int, new_start: datetime, actor: Principal
) -> ClassSession:
    """Копия сессии с новым началом и той же длительностью"""
    source = await get_session_by_id(session, session_id)
    duration = source.end_at - source.start_at

    data = ClassSessionCreate(
        gym_id=source.gym_id,
        room_id=source.room_id,
        class_type_id=source.class_type_id,
        professor_id=source.professor_id,
        start_at=new_start,
        end_at=new_start + duration,
        capacity=source.capacity,
    )
    async with booking_locks.hold(room_key(source.room_id)):
        async with TransactionManager(session):
            copy = await _create_session(session, data, actor)

    logger.info(f"Class session {session_id} duplicated as {copy.id}")
    return copy


@db_operation
async def get_session_stats(
    session: AsyncSession,
    gym_id: int,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> SessionStats:
    """Статистика сессий зала: количество по статусам и средняя заполненность"""
    conditions = [ClassSession.gym_id == gym_id]
    if date_from is not None:
        conditions.append(ClassSession.start_at >= date_from)
    if date_to is not None:
        conditions.append(ClassSession.start_at < date_to)

    result = await session.execute(
        select(ClassSession.status, func.count(ClassSession.id))
        .where(and_(*conditions))
        .group_by(ClassSession.status)
    )
    by_status = {SessionStatus(status).value: count for status, count in result.all()}

    not_cancelled = and_(*conditions, ClassSession.status != SessionStatus.CANCELLED)
    capacity_result = await session.execute(
        select(func.coalesce(func.sum(ClassSession.capacity), 0)).where(not_cancelled)
    )
    total_capacity = capacity_result.scalar_one()

    booked_result = await session.execute(
        select(func.count(Booking.id))
        .join(ClassSession, Booking.session_id == ClassSession.id)
        .where(and_(not_cancelled, Booking.status.in_(SEAT_HOLDING_STATUSES)))
    )
    total_booked = booked_result.scalar_one()

    return SessionStats(
        total_sessions=sum(by_status.values()),
        by_status=by_status,
        total_capacity=total_capacity,
        total_booked=total_booked,
        average_occupancy=round(total_booked / total_capacity, 4) if total_capacity else 0.0,
        date_from=date_from.date() if date_from else None,
        date_to=date_to.date() if date_to else None,
    )
