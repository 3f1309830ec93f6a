"""
Роли и проверка возможностей (capabilities)

Принципал передается в каждую операцию явно, глобального
"текущего пользователя" нет.
"""

from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from gymbook.core.exceptions import PermissionDeniedError


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    PROFESSOR = "PROFESSOR"
    STUDENT = "STUDENT"


STAFF_ROLES = frozenset({UserRole.ADMIN, UserRole.PROFESSOR})
ADMIN_ONLY = frozenset({UserRole.ADMIN})


class Principal(BaseModel):
    """Аутентифицированный пользователь: id и глобальная роль"""

    user_id: int
    role: UserRole

    model_config = ConfigDict(frozen=True)

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def has_capability(role: UserRole, allowed: Iterable[UserRole]) -> bool:
    """Разрешено ли роли действие, требующее одну из ролей allowed"""
    return role in frozenset(allowed)


def require_capability(
    principal: Principal,
    allowed: Iterable[UserRole],
    action: str,
    resource: str,
) -> Principal:
    """Проверить роль принципала, иначе PermissionDeniedError"""
    allowed = frozenset(allowed)
    if not has_capability(principal.role, allowed):
        raise PermissionDeniedError(
            action,
            resource,
            f"requires one of {sorted(r.value for r in allowed)}",
        )
    return principal


def require_self_or_staff(
    principal: Principal, user_id: int, action: str, resource: str
) -> Principal:
    """Действие над своими данными либо сотрудником (ADMIN/PROFESSOR)"""
    if principal.user_id != user_id and not principal.is_staff:
        raise PermissionDeniedError(action, resource, "not the owner")
    return principal
