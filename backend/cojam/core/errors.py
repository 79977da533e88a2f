"""Application error taxonomy and the FastAPI handlers that render it.

Every business failure carries a machine-readable ``code`` next to the
human-readable ``message`` so clients can render a precise explanation
instead of a generic conflict.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = logging.getLogger("cojam.errors")


class AppError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidState(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT


def _user_id(request: Request) -> Optional[int]:
    return getattr(request.state, "user_id", None)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log.info(
        "%s %s -> %s %s user_id=%s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.code,
        _user_id(request),
    )
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "code": "VALIDATION_ERROR", "errors": errors},
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception(
        "unhandled error on %s %s user_id=%s path_params=%s",
        request.method,
        request.url.path,
        _user_id(request),
        dict(request.path_params),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "INTERNAL_ERROR"},
    )
