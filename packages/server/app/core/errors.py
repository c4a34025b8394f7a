"""
Domain error taxonomy and its HTTP rendering.

Services raise these instead of bare booleans so the API layer can map each
failure to a status code and a user-facing message without re-deriving the
reason. Every error renders as::

    {"error": {"code": "...", "message": "...", "status": 4xx}}
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse

log = structlog.get_logger()


class CCPMError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class AuthenticationError(CCPMError):
    """Authentication required."""

    status_code = 401
    code = "AUTHENTICATION_FAILED"


class PermissionDenied(CCPMError):
    """Insufficient permissions."""

    status_code = 403
    code = "PERMISSION_DENIED"


class NotFound(CCPMError):
    """Resource not found."""

    status_code = 404
    code = "NOT_FOUND"


class InvalidOperation(CCPMError):
    """Operation violates a domain rule."""

    status_code = 400
    code = "INVALID_OPERATION"


class Conflict(CCPMError):
    """Resource already exists."""

    status_code = 409
    code = "CONFLICT"


class InfrastructureError(CCPMError):
    """Storage temporarily unavailable."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    retryable = True


def _error_body(code: str, message: str, status: int) -> dict:
    return {"error": {"code": code, "message": message, "status": status}}


async def ccpm_error_handler(request: Request, exc: CCPMError) -> JSONResponse:
    if exc.retryable:
        log.warning("request.infrastructure_error", path=request.url.path, error=exc.message)
    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.code, exc.message, exc.status_code),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body("HTTP_ERROR", str(exc.detail), exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    body = _error_body("VALIDATION_FAILED", "Request validation failed", 422)
    body["details"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=422, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CCPMError, ccpm_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
