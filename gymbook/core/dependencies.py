from typing import Iterable

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from gymbook.core.jwt_auth import jwt_manager
from gymbook.core.permissions import (
    Principal,
    UserRole,
    ADMIN_ONLY,
    STAFF_ROLES,
    require_capability,
)

jwt_security = HTTPBearer(scheme_name="JWT Token", description="Enter your JWT token")


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(jwt_security),
) -> Principal:
    """
    Dependency: принципал (user_id, role) из bearer JWT.

    Usage:
    @router.get("/protected")
    async def route(principal: Principal = Depends(get_current_principal)):
        ...
    """
    return jwt_manager.principal_from_token(credentials.credentials)


def require_roles(
    allowed_roles: Iterable[UserRole],
    action: str = "access",
    resource: str = "endpoint",
):
    """
    Dependency factory: принципал с одной из ролей allowed_roles.

    Usage:
    @router.post("/admin-only")
    async def route(principal: Principal = Depends(require_roles([UserRole.ADMIN]))):
        ...
    """
    allowed = frozenset(allowed_roles)

    async def role_dependency(
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        return require_capability(principal, allowed, action, resource)

    return role_dependency


require_admin = require_roles(ADMIN_ONLY)
require_staff = require_roles(STAFF_ROLES)
