import logging
from typing import List, Optional

from sqlalchemy import and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gymbook.core.audit import audit_trail
from gymbook.core.database import db_operation
from gymbook.core.exceptions import NotFoundError, PermissionDeniedError
from gymbook.core.permissions import Principal, UserRole, STAFF_ROLES
from gymbook.staff.models import Gym, GymMembership, User

logger = logging.getLogger(__name__)


async def get_active_membership(
    session: AsyncSession, user_id: int, gym_id: int
) -> Optional[GymMembership]:
    result = await session.execute(
        select(GymMembership).where(
            and_(
                GymMembership.user_id == user_id,
                GymMembership.gym_id == gym_id,
                GymMembership.is_active.is_(True),
            )
        )
    )
    return result.scalar_one_or_none()


async def has_active_membership(session: AsyncSession, user_id: int, gym_id: int) -> bool:
    return await get_active_membership(session, user_id, gym_id) is not None


async def ensure_professor_membership(
    session: AsyncSession, principal: Principal, gym_id: int
) -> GymMembership:
    """
    Политика доступа к управлению расписанием зала.

    - активное членство ADMIN/PROFESSOR в зале -> доступ;
    - глобальная роль PROFESSOR без членства -> создается членство PROFESSOR
      (автоматическое подключение преподавателя к залу, пишется в аудит);
    - иначе PermissionDeniedError.

    Не коммитит: изменения фиксирует вызывающая транзакция.
    """
    result = await session.execute(
        select(GymMembership).where(
            and_(
                GymMembership.user_id == principal.user_id,
                GymMembership.gym_id == gym_id,
            )
        )
    )
    membership = result.scalar_one_or_none()

    if membership and membership.is_active and membership.role_in_gym in STAFF_ROLES:
        return membership

    if principal.role != UserRole.PROFESSOR:
        raise PermissionDeniedError(
            "manage schedule of", f"gym {gym_id}", "ADMIN or PROFESSOR membership required"
        )

    gym = await session.get(Gym, gym_id)
    if not gym:
        raise NotFoundError("Gym", str(gym_id))

    if membership is None:
        membership = GymMembership(
            user_id=principal.user_id,
            gym_id=gym_id,
            role_in_gym=UserRole.PROFESSOR,
            is_active=True,
        )
        session.add(membership)
        action = "AUTO_PROVISION"
    elif not membership.is_active:
        # Неактивное членство не восстанавливается автоматически
        raise PermissionDeniedError(
            "manage schedule of", f"gym {gym_id}", "membership is inactive"
        )
    else:
        # Активное членство STUDENT у преподавателя повышается до PROFESSOR
        membership.role_in_gym = UserRole.PROFESSOR
        action = "PROMOTE_TO_PROFESSOR"

    await session.flush()

    logger.info(
        f"Professor membership provisioned: user {principal.user_id} in gym {gym_id}",
        extra={"user_id": principal.user_id, "gym_id": gym_id, "action": action},
    )
    audit_trail.stage(
        session,
        actor_id=principal.user_id,
        entity="GymMembership",
        entity_id=membership.id,
        action=action,
        diff={"role_in_gym": UserRole.PROFESSOR.value},
        gym_id=gym_id,
    )
    return membership


@db_operation
async def get_gym_memberships(
    session: AsyncSession, gym_id: int, role: Optional[UserRole] = None
) -> List[GymMembership]:
    conditions = [GymMembership.gym_id == gym_id]
    if role is not None:
        conditions.append(GymMembership.role_in_gym == role)

    result = await session.execute(
        select(GymMembership).where(and_(*conditions)).order_by(GymMembership.id)
    )
    return list(result.scalars().all())


async def upsert_membership(
    session: AsyncSession,
    user_id: int,
    gym_id: int,
    role_in_gym: UserRole,
    actor: Principal,
    is_active: bool = True,
) -> GymMembership:
    """Создать или обновить членство пользователя в зале (без commit)"""
    user = await session.get(User, user_id)
    if not user:
        raise NotFoundError("User", str(user_id))
    gym = await session.get(Gym, gym_id)
    if not gym:
        raise NotFoundError("Gym", str(gym_id))

    result = await session.execute(
        select(GymMembership).where(
            and_(GymMembership.user_id == user_id, GymMembership.gym_id == gym_id)
        )
    )
    membership = result.scalar_one_or_none()
    action = "UPDATE" if membership else "CREATE"

    if membership is None:
        membership = GymMembership(user_id=user_id, gym_id=gym_id)
        session.add(membership)

    membership.role_in_gym = role_in_gym
    membership.is_active = is_active
    await session.flush()

    audit_trail.stage(
        session,
        actor_id=actor.user_id,
        entity="GymMembership",
        entity_id=membership.id,
        action=action,
        diff={"user_id": user_id, "role_in_gym": role_in_gym.value, "is_active": is_active},
        gym_id=gym_id,
    )
    return membership
