from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gymbook.core.exceptions import ValidationError
from gymbook.core.permissions import UserRole


# ===== Users =====


class UserCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    role: UserRole = UserRole.STUDENT

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValidationError("Invalid email address")
        return v.lower()


class UserRead(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    role: UserRole
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# ===== Gyms =====


class GymCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    timezone: str = Field("UTC", max_length=64, description="IANA timezone name")

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown timezone: {v}")
        return v


class GymRead(BaseModel):
    id: int
    name: str
    timezone: str
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LocationCreate(BaseModel):
    gym_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=2, max_length=255)
    address: Optional[str] = Field(None, max_length=500)

    model_config = ConfigDict(str_strip_whitespace=True)


class LocationRead(BaseModel):
    id: int
    gym_id: int
    name: str
    address: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RoomCreate(BaseModel):
    location_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    capacity: Optional[int] = Field(None, gt=0)

    model_config = ConfigDict(str_strip_whitespace=True)


class RoomRead(BaseModel):
    id: int
    location_id: int
    name: str
    capacity: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class ClassTypeCreate(BaseModel):
    gym_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)

    model_config = ConfigDict(str_strip_whitespace=True)


class ClassTypeRead(BaseModel):
    id: int
    gym_id: int
    name: str
    description: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# ===== Memberships =====


class MembershipAssign(BaseModel):
    user_id: int = Field(..., gt=0)
    gym_id: int = Field(..., gt=0)
    role_in_gym: UserRole
    is_active: bool = True


class MembershipRead(BaseModel):
    id: int
    user_id: int
    gym_id: int
    role_in_gym: UserRole
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# ===== Package plans =====


class PlanRules(BaseModel):
    """Правила плана: за сколько часов до начала возможен возврат и т.д."""

    cancel_before_hours: Optional[int] = Field(24, ge=0)
    no_show_penalty: bool = True
    transferable: bool = False


class PackagePlanCreate(BaseModel):
    gym_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=2, max_length=255)
    tokens: int = Field(..., gt=0)
    validity_days: int = Field(..., gt=0)
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    currency: str = Field("ARS", min_length=3, max_length=3)
    rules: PlanRules = Field(default_factory=PlanRules)

    model_config = ConfigDict(str_strip_whitespace=True)


class PackagePlanRead(BaseModel):
    id: int
    gym_id: int
    name: str
    tokens: int
    validity_days: int
    price: Decimal
    currency: str
    rules: PlanRules
    is_active: bool

    model_config = ConfigDict(from_attributes=True)
