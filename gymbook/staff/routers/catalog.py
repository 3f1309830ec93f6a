from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.database import get_session
from gymbook.core.dependencies import get_current_principal
from gymbook.core.limits import limiter
from gymbook.core.permissions import Principal, UserRole
from gymbook.staff.crud.catalog import (
    assign_membership,
    create_class_type,
    create_gym,
    create_location,
    create_plan,
    create_room,
    create_user,
    get_class_types,
    get_gym_by_id,
    get_gyms,
    get_plans,
    get_rooms,
    get_user_by_id,
)
from gymbook.staff.crud.memberships import get_gym_memberships
from gymbook.staff.schemas.catalog import (
    ClassTypeCreate,
    ClassTypeRead,
    GymCreate,
    GymRead,
    LocationCreate,
    LocationRead,
    MembershipAssign,
    MembershipRead,
    PackagePlanCreate,
    PackagePlanRead,
    RoomCreate,
    RoomRead,
    UserCreate,
    UserRead,
)

router = APIRouter(tags=["Catalog"])


# ===== Users =====


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_new_user(
    request: Request,
    data: UserCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Create a user (ADMIN only)."""
    return await create_user(db, data, principal)


@router.get("/users/{user_id}", response_model=UserRead)
@limiter.limit("60/minute")
async def get_user(
    request: Request,
    user_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_user_by_id(db, user_id)


# ===== Gyms =====


@router.post("/gyms", response_model=GymRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_new_gym(
    request: Request,
    data: GymCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Create a gym (ADMIN only).

    - **name**: Gym name
    - **timezone**: IANA timezone used to expand schedule templates
    """
    return await create_gym(db, data, principal)


@router.get("/gyms", response_model=List[GymRead])
@limiter.limit("60/minute")
async def list_gyms(
    request: Request,
    only_active: bool = Query(True, description="Show only active gyms"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_gyms(db, only_active=only_active)


@router.get("/gyms/{gym_id}", response_model=GymRead)
@limiter.limit("60/minute")
async def get_gym(
    request: Request,
    gym_id: int = Path(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_gym_by_id(db, gym_id)


@router.post("/locations", response_model=LocationRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_new_location(
    request: Request,
    data: LocationCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await create_location(db, data, principal)


@router.post("/rooms", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_new_room(
    request: Request,
    data: RoomCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await create_room(db, data, principal)


@router.get("/rooms", response_model=List[RoomRead])
@limiter.limit("60/minute")
async def list_rooms(
    request: Request,
    gym_id: Optional[int] = Query(None, gt=0, description="Filter by gym"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_rooms(db, gym_id)


@router.post("/class-types", response_model=ClassTypeRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_new_class_type(
    request: Request,
    data: ClassTypeCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Create a class type. Requires ADMIN/PROFESSOR membership in the gym."""
    return await create_class_type(db, data, principal)


@router.get("/class-types", response_model=List[ClassTypeRead])
@limiter.limit("60/minute")
async def list_class_types(
    request: Request,
    gym_id: int = Query(..., gt=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_class_types(db, gym_id)


# ===== Memberships =====


@router.post("/memberships", response_model=MembershipRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def assign_gym_membership(
    request: Request,
    data: MembershipAssign,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Create or update a user's membership in a gym (ADMIN only)."""
    return await assign_membership(db, data, principal)


@router.get("/memberships", response_model=List[MembershipRead])
@limiter.limit("60/minute")
async def list_memberships(
    request: Request,
    gym_id: int = Query(..., gt=0),
    role: Optional[UserRole] = Query(None, description="Filter by role in gym"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_gym_memberships(db, gym_id, role)


# ===== Package plans =====


@router.post("/plans", response_model=PackagePlanRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_new_plan(
    request: Request,
    data: PackagePlanCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Create a token package plan.

    - **tokens**: Tokens granted on purchase
    - **validity_days**: Days until purchased tokens expire
    - **rules.cancel_before_hours**: Refund window for student cancellations
    """
    return await create_plan(db, data, principal)


@router.get("/plans", response_model=List[PackagePlanRead])
@limiter.limit("60/minute")
async def list_plans(
    request: Request,
    gym_id: int = Query(..., gt=0),
    only_active: bool = Query(True),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    return await get_plans(db, gym_id, only_active=only_active)
