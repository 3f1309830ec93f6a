"""CRUD справочников: пользователи, залы, локации, помещения, типы занятий, планы"""

import logging
from typing import List, Optional

from sqlalchemy import and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gymbook.core.audit import audit_trail
from gymbook.core.database import TransactionManager, db_operation
from gymbook.core.exceptions import AlreadyExistsError, NotFoundError
from gymbook.core.permissions import ADMIN_ONLY, Principal, require_capability
from gymbook.staff.crud.memberships import ensure_professor_membership, upsert_membership
from gymbook.staff.models import (
    ClassType,
    Gym,
    GymMembership,
    Location,
    PackagePlan,
    Room,
    User,
)
from gymbook.staff.schemas.catalog import (
    ClassTypeCreate,
    GymCreate,
    LocationCreate,
    MembershipAssign,
    PackagePlanCreate,
    RoomCreate,
    UserCreate,
)

logger = logging.getLogger(__name__)


# ===== Users =====


@db_operation
async def create_user(session: AsyncSession, data: UserCreate, actor: Principal) -> User:
    require_capability(actor, ADMIN_ONLY, "create", "user")

    async with TransactionManager(session):
        existing = await session.execute(select(User).where(User.email == data.email))
        if existing.scalar_one_or_none():
            raise AlreadyExistsError("User", "email", data.email)

        user = User(**data.model_dump())
        session.add(user)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="User",
            entity_id=user.id,
            action="CREATE",
            diff={"email": user.email, "role": user.role.value},
        )

    return user


@db_operation
async def get_user_by_id(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if not user:
        raise NotFoundError("User", str(user_id))
    return user


# ===== Gyms =====


@db_operation
async def create_gym(session: AsyncSession, data: GymCreate, actor: Principal) -> Gym:
    require_capability(actor, ADMIN_ONLY, "create", "gym")

    async with TransactionManager(session):
        gym = Gym(name=data.name, timezone=data.timezone)
        session.add(gym)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="Gym",
            entity_id=gym.id,
            action="CREATE",
            diff=data.model_dump(),
            gym_id=gym.id,
        )

    return gym


@db_operation
async def get_gyms(session: AsyncSession, only_active: bool = True) -> List[Gym]:
    query = select(Gym).order_by(Gym.name)
    if only_active:
        query = query.where(Gym.is_active.is_(True))
    result = await session.execute(query)
    return list(result.scalars().all())


@db_operation
async def get_gym_by_id(session: AsyncSession, gym_id: int) -> Gym:
    gym = await session.get(Gym, gym_id)
    if not gym:
        raise NotFoundError("Gym", str(gym_id))
    return gym


# ===== Locations / Rooms / Class types =====


@db_operation
async def create_location(
    session: AsyncSession, data: LocationCreate, actor: Principal
) -> Location:
    require_capability(actor, ADMIN_ONLY, "create", "location")

    async with TransactionManager(session):
        await get_gym_by_id(session, data.gym_id)

        location = Location(**data.model_dump())
        session.add(location)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="Location",
            entity_id=location.id,
            action="CREATE",
            diff=data.model_dump(),
            gym_id=data.gym_id,
        )

    return location


@db_operation
async def create_room(session: AsyncSession, data: RoomCreate, actor: Principal) -> Room:
    require_capability(actor, ADMIN_ONLY, "create", "room")

    async with TransactionManager(session):
        location = await session.get(Location, data.location_id)
        if not location:
            raise NotFoundError("Location", str(data.location_id))

        duplicate = await session.execute(
            select(Room).where(
                and_(Room.location_id == data.location_id, Room.name == data.name)
            )
        )
        if duplicate.scalar_one_or_none():
            raise AlreadyExistsError("Room", "name", data.name)

        room = Room(**data.model_dump())
        session.add(room)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="Room",
            entity_id=room.id,
            action="CREATE",
            diff=data.model_dump(),
            gym_id=location.gym_id,
        )

    return room


async def get_room_gym_id(session: AsyncSession, room_id: int) -> int:
    """ID зала, к которому относится помещение"""
    result = await session.execute(
        select(Location.gym_id)
        .join(Room, Room.location_id == Location.id)
        .where(Room.id == room_id)
    )
    gym_id = result.scalar_one_or_none()
    if gym_id is None:
        raise NotFoundError("Room", str(room_id))
    return gym_id


@db_operation
async def get_rooms(session: AsyncSession, gym_id: Optional[int] = None) -> List[Room]:
    query = select(Room).order_by(Room.id)
    if gym_id is not None:
        query = query.join(Location, Room.location_id == Location.id).where(
            Location.gym_id == gym_id
        )
    result = await session.execute(query)
    return list(result.scalars().all())


@db_operation
async def create_class_type(
    session: AsyncSession, data: ClassTypeCreate, actor: Principal
) -> ClassType:
    async with TransactionManager(session):
        await ensure_professor_membership(session, actor, data.gym_id)

        class_type = ClassType(**data.model_dump())
        session.add(class_type)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="ClassType",
            entity_id=class_type.id,
            action="CREATE",
            diff=data.model_dump(),
            gym_id=data.gym_id,
        )

    return class_type


@db_operation
async def get_class_types(session: AsyncSession, gym_id: int) -> List[ClassType]:
    result = await session.execute(
        select(ClassType)
        .where(and_(ClassType.gym_id == gym_id, ClassType.is_active.is_(True)))
        .order_by(ClassType.name)
    )
    return list(result.scalars().all())


# ===== Memberships =====


@db_operation
async def assign_membership(
    session: AsyncSession, data: MembershipAssign, actor: Principal
) -> GymMembership:
    require_capability(actor, ADMIN_ONLY, "assign", "membership")

    async with TransactionManager(session):
        membership = await upsert_membership(
            session,
            data.user_id,
            data.gym_id,
            data.role_in_gym,
            actor,
            is_active=data.is_active,
        )

    return membership


# ===== Package plans =====


@db_operation
async def create_plan(
    session: AsyncSession, data: PackagePlanCreate, actor: Principal
) -> PackagePlan:
    async with TransactionManager(session):
        await ensure_professor_membership(session, actor, data.gym_id)

        plan = PackagePlan(
            gym_id=data.gym_id,
            name=data.name,
            tokens=data.tokens,
            validity_days=data.validity_days,
            price=data.price,
            currency=data.currency.upper(),
            rules=data.rules.model_dump(),
            is_active=True,
        )
        session.add(plan)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="PackagePlan",
            entity_id=plan.id,
            action="CREATE",
            diff={
                "name": plan.name,
                "tokens": plan.tokens,
                "validity_days": plan.validity_days,
                "price": str(plan.price),
                "rules": plan.rules,
            },
            gym_id=data.gym_id,
        )

    return plan


@db_operation
async def get_plans(session: AsyncSession, gym_id: int, only_active: bool = True) -> List[PackagePlan]:
    conditions = [PackagePlan.gym_id == gym_id]
    if only_active:
        conditions.append(PackagePlan.is_active.is_(True))

    result = await session.execute(
        select(PackagePlan).where(and_(*conditions)).order_by(PackagePlan.price)
    )
    return list(result.scalars().all())
