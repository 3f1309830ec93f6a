from typing import List

from fastapi import APIRouter, Depends, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.database import get_session
from gymbook.core.dependencies import get_current_principal
from gymbook.core.limits import limiter
from gymbook.core.permissions import Principal
from gymbook.staff.crud.templates import (
    create_template,
    get_template,
    get_templates,
    update_template,
)
from gymbook.staff.schemas.schedule import (
    GenerateSessionsRequest,
    GenerateSessionsResponse,
    ScheduleTemplateCreate,
    ScheduleTemplateRead,
    ScheduleTemplateUpdate,
)
from gymbook.staff.schemas.sessions import ClassSessionRead
from gymbook.staff.services.schedule_generator import ScheduleGenerator

router = APIRouter(prefix="/schedule-templates", tags=["Schedule Templates"])


@router.post("/", response_model=ScheduleTemplateRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_schedule_template(
    request: Request,
    data: ScheduleTemplateCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Create a weekly schedule template.

    - **days_of_week**: ISO weekdays, 1 = Monday ... 7 = Sunday
    - **start_time**: Local start time in the gym timezone
    - **duration_min**: Session length in minutes
    """
    return await create_template(db, data, principal)


@router.get("/", response_model=List[ScheduleTemplateRead])
@limiter.limit("60/minute")
async def list_schedule_templates(
    request: Request,
    gym_id: int = Query(..., gt=0),
    only_active: bool = Query(False),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_templates(db, gym_id, only_active=only_active)


@router.get("/{template_id}", response_model=ScheduleTemplateRead)
@limiter.limit("60/minute")
async def get_schedule_template(
    request: Request,
    template_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_template(db, template_id)


@router.patch("/{template_id}", response_model=ScheduleTemplateRead)
@limiter.limit("20/minute")
async def update_schedule_template(
    request: Request,
    data: ScheduleTemplateUpdate,
    template_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Update a template. Sessions generated earlier are not changed."""
    return await update_template(db, template_id, data, principal)


@router.post("/generate", response_model=GenerateSessionsResponse)
@limiter.limit("5/minute")
async def generate_sessions(
    request: Request,
    data: GenerateSessionsRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Generate sessions from a template for the given number of weeks.

    Dates that collide with another session in the room are skipped and
    reported in **errors**; the rest are created.
    """
    generator = ScheduleGenerator(db)
    created, errors = await generator.generate_from_template(
        data.template_id, data.start_date, data.weeks, principal
    )
    return GenerateSessionsResponse(
        generated=len(created),
        sessions=[ClassSessionRead.from_session(s, 0) for s in created],
        errors=errors,
    )
