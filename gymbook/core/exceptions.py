"""
Пользовательские исключения для централизованной обработки ошибок
"""

from typing import Optional, Dict, Any


class BaseAppException(Exception):
    """Базовое исключение приложения"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


# === Ошибки валидации ===
class ValidationError(BaseAppException):
    """Ошибка валидации данных"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 400, "VALIDATION_ERROR", details)


class AlreadyExistsError(BaseAppException):
    """Ресурс уже существует (повторное бронирование, повторная запись в лист ожидания)"""

    def __init__(self, resource: str, field: str, value: str):
        message = f"{resource} with {field} '{value}' already exists"
        details = {"resource": resource, "field": field, "value": value}
        super().__init__(message, 409, "ALREADY_EXISTS", details)


# === Ошибки ресурсов ===
class NotFoundError(BaseAppException):
    """Ресурс не найден"""

    def __init__(self, resource: str, identifier: str = None):
        if identifier:
            message = f"{resource} with identifier '{identifier}' not found"
            details = {"resource": resource, "identifier": identifier}
        else:
            message = f"{resource} not found"
            details = {"resource": resource}
        super().__init__(message, 404, "NOT_FOUND", details)


# === Бизнес-логика ===
class InvalidStateError(BaseAppException):
    """Операция недопустима для текущего статуса сущности"""

    def __init__(
        self,
        resource: str,
        current_state: str,
        message: str = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        message = message or f"{resource} is in state '{current_state}'"
        error_details = {"resource": resource, "current_state": current_state}
        if details:
            error_details.update(details)
        super().__init__(message, 409, "INVALID_STATE", error_details)


class ScheduleConflictError(BaseAppException):
    """Пересечение сессий в одном зале"""

    def __init__(self, room_id: int, conflicting_session_id: int):
        message = (
            f"Room {room_id} is already booked by session {conflicting_session_id} "
            "in this time window"
        )
        details = {
            "room_id": room_id,
            "conflicting_session_id": conflicting_session_id,
        }
        super().__init__(message, 409, "SCHEDULE_CONFLICT", details)


class InsufficientBalanceError(BaseAppException):
    """Недостаточно токенов в кошельке"""

    def __init__(self, wallet_id: Optional[int], balance: int, required: int):
        message = f"Insufficient token balance: {balance} available, {required} required"
        details = {"wallet_id": wallet_id, "balance": balance, "required": required}
        super().__init__(message, 402, "INSUFFICIENT_BALANCE", details)


class PermissionDeniedError(BaseAppException):
    """Отказано в доступе к ресурсу"""

    def __init__(self, action: str, resource: str, reason: str = None):
        message = f"Permission denied: cannot {action} {resource}"
        if reason:
            message += f" - {reason}"
        details = {"action": action, "resource": resource, "reason": reason}
        super().__init__(message, 403, "PERMISSION_DENIED", details)


# === Ошибки базы данных ===
class DatabaseError(BaseAppException):
    """Ошибка базы данных"""

    def __init__(
        self,
        message: str = "Database operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, 500, "DATABASE_ERROR", details)


class DatabaseConnectionError(BaseAppException):
    """Ошибка подключения к базе данных"""

    def __init__(self, message: str = "Database connection failed"):
        super().__init__(message, 503, "DATABASE_CONNECTION_ERROR")


class DatabaseTimeoutError(BaseAppException):
    """Таймаут операции с базой данных"""

    def __init__(self, operation: str, timeout: int):
        message = f"Database operation '{operation}' timed out after {timeout}s"
        details = {"operation": operation, "timeout": timeout}
        super().__init__(message, 504, "DATABASE_TIMEOUT", details)


class DatabaseIntegrityError(BaseAppException):
    """Ошибка целостности данных"""

    def __init__(self, constraint: str, details: Optional[Dict[str, Any]] = None):
        message = f"Database integrity constraint violated: {constraint}"
        error_details = {"constraint": constraint}
        if details:
            error_details.update(details)
        super().__init__(message, 409, "DATABASE_INTEGRITY_ERROR", error_details)


# === Ошибки конфигурации ===
class ConfigurationError(BaseAppException):
    """Ошибка конфигурации"""

    def __init__(self, parameter: str, message: str = None):
        message = (
            message or f"Configuration parameter '{parameter}' is invalid or missing"
        )
        details = {"parameter": parameter}
        super().__init__(message, 500, "CONFIGURATION_ERROR", details)
