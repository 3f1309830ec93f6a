import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.audit import audit_trail
from gymbook.core.database import TransactionManager
from gymbook.core.exceptions import InvalidStateError, NotFoundError, ScheduleConflictError
from gymbook.core.locks import booking_locks, room_key
from gymbook.core.permissions import Principal
from gymbook.staff.crud.memberships import ensure_professor_membership
from gymbook.staff.crud.sessions import _create_session
from gymbook.staff.models import ClassSession, Gym, ScheduleTemplate
from gymbook.staff.schemas.sessions import ClassSessionCreate

logger = logging.getLogger(__name__)


def expand_template_dates(days_of_week: List[int], start_date: date, weeks: int) -> List[date]:
    """
    Даты занятий по ISO дням недели на weeks недель, начиная со start_date.

    Неделя отсчитывается от start_date, поэтому все даты >= start_date.
    """
    dates = set()
    for week in range(weeks):
        week_start = start_date + timedelta(weeks=week)
        for day in days_of_week:
            offset = (day - week_start.isoweekday()) % 7
            dates.add(week_start + timedelta(days=offset))
    return sorted(dates)


def occurrence_window(
    day: date, start_time: time, duration_min: int, tz: ZoneInfo
) -> Tuple[datetime, datetime]:
    """Окно [start, end) в UTC для локального времени зала"""
    local_start = datetime.combine(day, start_time).replace(tzinfo=tz)
    start_at = local_start.astimezone(timezone.utc)
    return start_at, start_at + timedelta(minutes=duration_min)


class ScheduleGenerator:
    """Сервис для генерации сессий из шаблона расписания"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def generate_from_template(
        self,
        template_id: int,
        start_date: date,
        weeks: int,
        actor: Principal,
    ) -> Tuple[List[ClassSession], List[str]]:
        """
        Генерирует сессии из шаблона

        Пересечение в помещении пропускает только эту дату и попадает
        в список ошибок. Отсутствующий или неактивный шаблон - ошибка
        всей операции.

        Returns:
            Tuple[created_sessions, errors]
        """
        template = await self.session.get(ScheduleTemplate, template_id)
        if not template:
            raise NotFoundError("Schedule template", str(template_id))
        if not template.is_active:
            raise InvalidStateError(
                "Schedule template",
                "inactive",
                message=f"Schedule template {template_id} is inactive",
            )

        gym = await self.session.get(Gym, template.gym_id)
        if not gym:
            raise NotFoundError("Gym", str(template.gym_id))
        tz = ZoneInfo(gym.timezone or "UTC")

        created: List[ClassSession] = []
        errors: List[str] = []

        async with booking_locks.hold(room_key(template.room_id)):
            async with TransactionManager(self.session):
                await ensure_professor_membership(self.session, actor, template.gym_id)

                for day in expand_template_dates(template.days_of_week, start_date, weeks):
                    start_at, end_at = occurrence_window(
                        day, template.start_time, template.duration_min, tz
                    )
                    data = ClassSessionCreate(
                        gym_id=template.gym_id,
                        room_id=template.room_id,
                        class_type_id=template.class_type_id,
                        professor_id=template.professor_id,
                        start_at=start_at,
                        end_at=end_at,
                        capacity=template.capacity,
                    )
                    try:
                        class_session = await _create_session(
                            self.session, data, actor, template_id=template.id
                        )
                    except ScheduleConflictError as e:
                        errors.append(f"{day.isoformat()}: {e.message}")
                        continue
                    created.append(class_session)

                audit_trail.stage(
                    self.session,
                    actor_id=actor.user_id,
                    entity="ScheduleTemplate",
                    entity_id=template.id,
                    action="GENERATE",
                    diff={
                        "start_date": start_date.isoformat(),
                        "weeks": weeks,
                        "generated": len(created),
                        "skipped": len(errors),
                    },
                    gym_id=template.gym_id,
                )

        logger.info(
            f"Generated {len(created)} sessions from template {template_id}, "
            f"{len(errors)} skipped",
            extra={"template_id": template_id, "actor_id": actor.user_id},
        )
        return created, errors
