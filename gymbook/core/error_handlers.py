"""
Централизованные обработчики ошибок FastAPI.

Все ответы об ошибках имеют форму {error, message, details, path}.
"""

import json
import logging
import re
import traceback

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError,
)
from asyncpg.exceptions import (
    ConnectionDoesNotExistError,
    ConnectionFailureError,
    PostgresError,
    TooManyConnectionsError,
)

from gymbook.core.config import DEBUG
from gymbook.core.exceptions import (
    AlreadyExistsError,
    BaseAppException,
    DatabaseConnectionError,
    DatabaseError,
    DatabaseIntegrityError,
    DatabaseTimeoutError,
)
from gymbook.core.limits import rate_limit_handler
from gymbook.core.logging_utils import error_tracker

logger = logging.getLogger(__name__)

# Уникальные ограничения, нарушение которых - ожидаемая гонка дубликатов
_DUPLICATE_CONSTRAINTS = {
    "uq_bookings_session_student_active": ("Booking", "session_id, student_id"),
    "uq_waitlist_session_student": ("Waitlist entry", "session_id, student_id"),
    "uq_token_wallet_user_gym": ("Token wallet", "user_id, gym_id"),
    "uq_gym_membership_user_gym": ("Gym membership", "user_id, gym_id"),
    "uq_room_location_name": ("Room", "location_id, name"),
}


def _error_body(request: Request, error: str, message: str, details=None) -> dict:
    return {
        "error": error,
        "message": message,
        "details": details or {},
        "path": request.url.path,
    }


async def app_exception_handler(request: Request, exc: BaseAppException) -> JSONResponse:
    """Обработчик исключений приложения (доменные ошибки)"""
    log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        log_level,
        f"App exception: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "details": exc.details,
            "path": request.url.path,
            "method": request.method,
        },
    )
    if exc.status_code >= 500:
        error_tracker.track_error(exc.error_code, exc.message, {"path": request.url.path})

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.error_code, exc.message, exc.details),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    logger.warning(
        f"HTTP exception: {exc.status_code} - {exc.detail}",
        extra={
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, "HTTP_ERROR", str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


def _safe_input(value):
    if value is None:
        return None
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Ошибки валидации запроса (pydantic)"""
    errors = exc.errors() if isinstance(exc, (RequestValidationError, PydanticValidationError)) else []

    fields = [
        {
            "field": " -> ".join(str(loc) for loc in error.get("loc", [])),
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error"),
            "input": _safe_input(error.get("input")),
        }
        for error in errors
    ]

    logger.warning(
        f"Validation error: {len(fields)} field(s)",
        extra={"errors": fields, "path": request.url.path, "method": request.method},
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(
            request,
            "VALIDATION_ERROR",
            f"Validation failed for {len(fields)} field(s)",
            {"fields": fields},
        ),
    )


def _constraint_name(exc: IntegrityError) -> str:
    orig = exc.orig
    name = getattr(orig, "constraint_name", None)
    if name:
        return name

    message = str(orig)
    match = re.search(r'constraint "([^"]+)"', message)
    if match:
        return match.group(1)
    # SQLite не сообщает имя индекса, только колонки
    if "bookings.session_id, bookings.student_id" in message:
        return "uq_bookings_session_student_active"
    if "waitlist_entries.session_id, waitlist_entries.student_id" in message:
        return "uq_waitlist_session_student"
    return "unknown"


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Ошибки SQLAlchemy"""
    if isinstance(exc, IntegrityError):
        constraint = _constraint_name(exc)
        if constraint in _DUPLICATE_CONSTRAINTS:
            resource, field = _DUPLICATE_CONSTRAINTS[constraint]
            return await app_exception_handler(
                request, AlreadyExistsError(resource, field, "duplicate")
            )
        app_exc = DatabaseIntegrityError(constraint, {"original_error": str(exc.orig)})

    elif isinstance(exc, (OperationalError, DisconnectionError)):
        app_exc = DatabaseConnectionError("Database connection lost")

    elif isinstance(exc, TimeoutError):
        app_exc = DatabaseTimeoutError("database_operation", 30)

    else:
        app_exc = DatabaseError(f"Database operation failed: {type(exc).__name__}")

    logger.error(
        f"Database exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exception_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return await app_exception_handler(request, app_exc)


async def postgres_exception_handler(request: Request, exc: PostgresError) -> JSONResponse:
    """Ошибки asyncpg, не обернутые SQLAlchemy"""
    if isinstance(exc, (ConnectionFailureError, ConnectionDoesNotExistError)):
        app_exc = DatabaseConnectionError("PostgreSQL connection failed")
    elif isinstance(exc, TooManyConnectionsError):
        app_exc = DatabaseConnectionError("Too many database connections")
    else:
        app_exc = DatabaseError(
            "PostgreSQL error", details={"postgres_code": getattr(exc, "sqlstate", "unknown")}
        )

    logger.error(
        f"PostgreSQL exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exception_type": type(exc).__name__,
            "postgres_code": getattr(exc, "sqlstate", None),
            "path": request.url.path,
        },
    )
    return await app_exception_handler(request, app_exc)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Все остальные исключения: 500, детали только в development"""
    trace = traceback.format_exc()
    logger.error(
        f"Unhandled exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exception_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
            "traceback": trace,
        },
    )
    error_tracker.track_error(
        "UNHANDLED_EXCEPTION", str(exc), {"path": request.url.path, "type": type(exc).__name__}
    )

    details = {"exception_type": type(exc).__name__, "traceback": trace} if DEBUG else {}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            request, "INTERNAL_SERVER_ERROR", "An unexpected error occurred", details
        ),
    )


def setup_exception_handlers(app):
    """Регистрация всех обработчиков исключений"""
    app.add_exception_handler(BaseAppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(PostgresError, postgres_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    logger.info("Exception handlers registered successfully")
