# tests/conftest.py

import itertools
import os
import tempfile
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

# Окружение задается до импорта gymbook: engine создается при импорте
_TEST_DIR = tempfile.mkdtemp(prefix="gymbook-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"

import pytest
from sqlalchemy import and_
from sqlalchemy.future import select

from gymbook.core.audit import audit_trail
from gymbook.core.database import Base, async_session, engine, utc_now
from gymbook.core.logging_utils import error_tracker
from gymbook.core.permissions import Principal, UserRole
from gymbook.staff.crud.sessions import create_session
from gymbook.staff.models import (
    DEFAULT_PLAN_RULES,
    AuditLog,
    ClassType,
    Gym,
    GymMembership,
    Location,
    PackagePlan,
    Room,
    User,
)
from gymbook.staff.schemas.sessions import ClassSessionCreate
from gymbook.students.crud.tokens import assign_tokens, get_or_create_wallet, get_wallet
from gymbook.students.schemas.wallets import AssignTokensRequest


@pytest.fixture(autouse=True)
async def database():
    """Чистая схема на каждый тест"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    error_tracker.reset_stats()
    audit_trail._session_factory = None
    yield
    await engine.dispose()


@pytest.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest.fixture
async def world():
    """Зал с помещениями, типом занятия, планом, админом и преподавателем"""
    async with async_session() as session:
        admin = User(name="Gym Admin", email="admin@gym.test", role=UserRole.ADMIN)
        professor = User(name="Main Professor", email="prof@gym.test", role=UserRole.PROFESSOR)
        gym = Gym(name="Central Gym", timezone="America/Argentina/Buenos_Aires")
        session.add_all([admin, professor, gym])
        await session.flush()

        location = Location(gym_id=gym.id, name="Downtown", address="Av. Corrientes 1234")
        session.add(location)
        await session.flush()

        room = Room(location_id=location.id, name="Studio A", capacity=20)
        other_room = Room(location_id=location.id, name="Studio B", capacity=10)
        class_type = ClassType(gym_id=gym.id, name="Yoga")
        plan = PackagePlan(
            gym_id=gym.id,
            name="10 classes",
            tokens=10,
            validity_days=30,
            price=Decimal("100.00"),
            currency="ARS",
            rules=dict(DEFAULT_PLAN_RULES),
        )
        session.add_all([room, other_room, class_type, plan])
        session.add_all(
            [
                GymMembership(user_id=admin.id, gym_id=gym.id, role_in_gym=UserRole.ADMIN),
                GymMembership(
                    user_id=professor.id, gym_id=gym.id, role_in_gym=UserRole.PROFESSOR
                ),
            ]
        )
        await session.commit()

    return SimpleNamespace(
        admin=Principal(user_id=admin.id, role=UserRole.ADMIN),
        professor=Principal(user_id=professor.id, role=UserRole.PROFESSOR),
        gym=gym,
        location=location,
        room=room,
        other_room=other_room,
        class_type=class_type,
        plan=plan,
    )


@pytest.fixture
def make_student(world):
    """
    Фабрика студентов: пользователь, членство в зале и (опционально)
    кошелек с токенами по плану зала.
    """
    counter = itertools.count(1)

    async def _make(tokens: int = 10, with_plan: bool = True, wallet: bool = True, membership: bool = True):
        n = next(counter)
        async with async_session() as session:
            user = User(name=f"Student {n}", email=f"student{n}@gym.test", role=UserRole.STUDENT)
            session.add(user)
            await session.flush()
            if membership:
                session.add(
                    GymMembership(user_id=user.id, gym_id=world.gym.id, role_in_gym=UserRole.STUDENT)
                )
            await session.commit()

        if tokens:
            async with async_session() as session:
                await assign_tokens(
                    session,
                    AssignTokensRequest(
                        user_id=user.id,
                        gym_id=world.gym.id,
                        tokens=tokens,
                        plan_id=world.plan.id if with_plan else None,
                    ),
                    world.admin,
                )
        elif wallet and membership:
            async with async_session() as session:
                await get_or_create_wallet(session, user.id, world.gym.id)

        return Principal(user_id=user.id, role=UserRole.STUDENT)

    return _make


@pytest.fixture
def make_session(world):
    """Фабрика сессий в Studio A, по умолчанию через 2 дня"""

    async def _make(start_at=None, duration=timedelta(hours=1), capacity: int = 10, room=None):
        start_at = start_at or utc_now().replace(microsecond=0) + timedelta(days=2)
        async with async_session() as session:
            return await create_session(
                session,
                ClassSessionCreate(
                    gym_id=world.gym.id,
                    room_id=(room or world.room).id,
                    class_type_id=world.class_type.id,
                    start_at=start_at,
                    end_at=start_at + duration,
                    capacity=capacity,
                ),
                world.professor,
            )

    return _make


@pytest.fixture
def balance_of(world):
    async def _balance(principal: Principal):
        async with async_session() as session:
            wallet = await get_wallet(session, principal.user_id, world.gym.id)
            return wallet.balance if wallet else None

    return _balance


@pytest.fixture
def audit_entries():
    async def _entries(entity: str = None, action: str = None):
        conditions = []
        if entity:
            conditions.append(AuditLog.entity == entity)
        if action:
            conditions.append(AuditLog.action == action)
        query = select(AuditLog).order_by(AuditLog.id)
        if conditions:
            query = query.where(and_(*conditions))
        async with async_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    return _entries
