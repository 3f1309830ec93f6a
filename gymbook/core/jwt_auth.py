import logging
from datetime import timedelta
from typing import Any, Dict

import jwt
from fastapi import HTTPException, status

from gymbook.core.config import (
    JWT_SECRET_KEY,
    JWT_ALGORITHM,
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES,
)
from gymbook.core.database import utc_now
from gymbook.core.permissions import Principal, UserRole

logger = logging.getLogger(__name__)


class JWTManager:
    """Выпуск и проверка access-токенов с claims sub (user id) и role"""

    def __init__(
        self,
        secret_key: str = None,
        algorithm: str = None,
        access_token_expire_minutes: int = None,
    ):
        self.secret_key = secret_key or JWT_SECRET_KEY
        self.algorithm = algorithm or JWT_ALGORITHM
        self.access_token_expire_minutes = (
            access_token_expire_minutes or JWT_ACCESS_TOKEN_EXPIRE_MINUTES
        )

    def create_access_token(
        self, user_id: int, role: UserRole, extra_data: Dict[str, Any] = None
    ) -> str:
        """
        Create JWT access token for a user

        Args:
            user_id: User ID (stored as `sub`)
            role: Global role of the user
            extra_data: Additional claims
        """
        now = utc_now()
        payload = {
            "sub": str(user_id),
            "role": UserRole(role).value,
            "exp": now + timedelta(minutes=self.access_token_expire_minutes),
            "iat": now,
            "type": "access_token",
        }
        if extra_data:
            payload.update(extra_data)

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        logger.debug(f"JWT token created for user: {user_id}, role: {role}")
        return token

    def decode_token(self, token: str) -> Dict[str, Any]:
        """
        Decode and verify JWT token

        Raises:
            HTTPException: If token is invalid or expired
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.warning("JWT token has expired")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
                headers={"WWW-Authenticate": "Bearer"},
            )
        except jwt.InvalidTokenError:
            logger.warning("Invalid JWT token provided")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if payload.get("type") != "access_token":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token type",
            )

        return payload

    def principal_from_token(self, token: str) -> Principal:
        """Декодировать токен в Principal"""
        payload = self.decode_token(token)
        try:
            return Principal(user_id=int(payload["sub"]), role=UserRole(payload["role"]))
        except (KeyError, ValueError):
            logger.warning("JWT token carries malformed principal claims")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token claims",
                headers={"WWW-Authenticate": "Bearer"},
            )


jwt_manager = JWTManager()
