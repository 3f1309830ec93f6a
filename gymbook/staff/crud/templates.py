import logging
from datetime import time
from typing import List

from sqlalchemy import and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gymbook.core.audit import audit_trail
from gymbook.core.database import TransactionManager, db_operation
from gymbook.core.exceptions import NotFoundError
from gymbook.core.permissions import Principal
from gymbook.staff.crud.memberships import ensure_professor_membership
from gymbook.staff.crud.sessions import (
    _check_class_type_in_gym,
    _check_room_in_gym,
    _resolve_professor,
)
from gymbook.staff.models import ScheduleTemplate
from gymbook.staff.schemas.schedule import ScheduleTemplateCreate, ScheduleTemplateUpdate

logger = logging.getLogger(__name__)


def _audit_value(value):
    return value.isoformat() if isinstance(value, time) else value


@db_operation
async def create_template(
    session: AsyncSession, data: ScheduleTemplateCreate, actor: Principal
) -> ScheduleTemplate:
    """Создать недельный шаблон расписания"""
    async with TransactionManager(session):
        professor_id = await _resolve_professor(session, actor, data.gym_id, data.professor_id)
        await _check_room_in_gym(session, data.room_id, data.gym_id)
        await _check_class_type_in_gym(session, data.class_type_id, data.gym_id)

        template = ScheduleTemplate(
            gym_id=data.gym_id,
            professor_id=professor_id,
            room_id=data.room_id,
            class_type_id=data.class_type_id,
            days_of_week=data.days_of_week,
            start_time=data.start_time,
            duration_min=data.duration_min,
            capacity=data.capacity,
            is_active=data.is_active,
            created_by=actor.user_id,
        )
        session.add(template)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="ScheduleTemplate",
            entity_id=template.id,
            action="CREATE",
            diff={
                "days_of_week": data.days_of_week,
                "start_time": data.start_time.isoformat(),
                "duration_min": data.duration_min,
                "capacity": data.capacity,
                "room_id": data.room_id,
            },
            gym_id=data.gym_id,
        )

    logger.info(f"Schedule template {template.id} created for gym {data.gym_id}")
    return template


@db_operation
async def get_template(session: AsyncSession, template_id: int) -> ScheduleTemplate:
    template = await session.get(ScheduleTemplate, template_id)
    if not template:
        raise NotFoundError("Schedule template", str(template_id))
    return template


@db_operation
async def get_templates(
    session: AsyncSession, gym_id: int, only_active: bool = False
) -> List[ScheduleTemplate]:
    conditions = [ScheduleTemplate.gym_id == gym_id]
    if only_active:
        conditions.append(ScheduleTemplate.is_active.is_(True))

    result = await session.execute(
        select(ScheduleTemplate).where(and_(*conditions)).order_by(ScheduleTemplate.id)
    )
    return list(result.scalars().all())


@db_operation
async def update_template(
    session: AsyncSession,
    template_id: int,
    data: ScheduleTemplateUpdate,
    actor: Principal,
) -> ScheduleTemplate:
    """Изменить шаблон. Уже созданные сессии не меняются."""
    async with TransactionManager(session):
        template = await get_template(session, template_id)
        await ensure_professor_membership(session, actor, template.gym_id)

        patch = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if value is not None
        }
        if "room_id" in patch:
            await _check_room_in_gym(session, patch["room_id"], template.gym_id)
        if "class_type_id" in patch:
            await _check_class_type_in_gym(session, patch["class_type_id"], template.gym_id)
        if "professor_id" in patch:
            patch["professor_id"] = await _resolve_professor(
                session, actor, template.gym_id, patch["professor_id"]
            )

        diff = {}
        for field, value in patch.items():
            old = getattr(template, field)
            if old != value:
                setattr(template, field, value)
                diff[field] = {"old": _audit_value(old), "new": _audit_value(value)}

        if diff:
            await session.flush()
            audit_trail.stage(
                session,
                actor_id=actor.user_id,
                entity="ScheduleTemplate",
                entity_id=template.id,
                action="UPDATE",
                diff=diff,
                gym_id=template.gym_id,
            )

    return template
