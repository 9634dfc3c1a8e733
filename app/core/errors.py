# app/core/errors.py
from typing import Optional


class AppError(Exception):
    """Base for business errors; translated to HTTP at the app boundary."""

    status_code = 400
    default_code = "BAD_REQUEST"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(AppError):
    status_code = 400
    default_code = "VALIDATION_FAILED"


class ConflictError(AppError):
    status_code = 400
    default_code = "CONFLICT"


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class PermissionDenied(AppError):
    status_code = 403
    default_code = "PERMISSION_DENIED"


class ExternalUnavailable(AppError):
    """An external plugin database (AuthMe, LuckPerms) could not be reached."""

    status_code = 503
    default_code = "EXTERNAL_UNAVAILABLE"

    def __init__(self, dep: str, stage: str, message: str, cause: Optional[str] = None):
        super().__init__(f"{dep} is temporarily unavailable, please try again later")
        self.dep = dep
        self.stage = stage  # DNS, CONNECT, AUTH, QUERY
        self.detail = message
        self.cause = cause
