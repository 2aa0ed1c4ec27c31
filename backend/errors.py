"""Error taxonomy and the FastAPI handlers that render it.

Every application error is an ``HTTPException`` subclass carrying a stable
``code`` so clients can tell, for example, a rate limit apart from a bad
credential without parsing the message.
"""
import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import config

logger = logging.getLogger(__name__)


class AppError(HTTPException):
    status_code = 500
    code = "INTERNAL"
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None, headers: Optional[dict] = None):
        super().__init__(status_code=type(self).status_code, detail=detail or self.default_detail, headers=headers)


class AuthenticationFailure(AppError):
    status_code = 401
    code = "AUTHENTICATION_FAILED"
    default_detail = "Authentication failed"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class AuthorizationFailure(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_detail = "Forbidden"


class ValidationFailure(AppError):
    status_code = 422
    code = "VALIDATION_FAILED"
    default_detail = "Validation failed"

    def __init__(self, errors: list[dict], detail: Optional[str] = None):
        super().__init__(detail)
        self.errors = errors

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailure":
        return cls([{"field": field, "message": message, "type": "value_error"}])


class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_detail = "Resource not found"


class StateConflict(AppError):
    status_code = 409
    code = "STATE_CONFLICT"
    default_detail = "Request conflicts with the current state"


class RateLimited(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    default_detail = "Too many requests from this IP, please try again later."

    def __init__(self, retry_after: int):
        super().__init__(headers={"Retry-After": str(retry_after)})


def _field_path(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts)


def _error_status(exc: Exception) -> int:
    # producers are inconsistent about where the status lives
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 400 <= value < 600:
            return value
    return 500


async def app_error_handler(request: Request, exc: AppError):
    body: dict[str, Any] = {"detail": exc.detail, "code": exc.code}
    if isinstance(exc, ValidationFailure):
        body["errors"] = exc.errors
    return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": _field_path(tuple(e.get("loc", ()))), "message": e.get("msg", "Invalid input"), "type": e.get("type", "")}
        for e in exc.errors()
    ]
    return JSONResponse(
        {"detail": ValidationFailure.default_detail, "code": ValidationFailure.code, "errors": errors},
        status_code=ValidationFailure.status_code,
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    status_code = _error_status(exc)
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)

    if config.is_production():
        message = "Internal server error" if status_code == 500 else str(exc)
        return JSONResponse({"detail": message, "code": AppError.code}, status_code=status_code)

    body = {"detail": str(exc) or "Internal server error", "code": AppError.code}
    if config.is_development():
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(body, status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
