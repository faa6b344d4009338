"""Domain errors and the handlers that render every failure as one JSON shape:

    {"error": {"code", "message", "request_id", "details"?}, "detail": message}
"""

import logging
from typing import Any, List, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from streakline.core.logging import get_request_id

logger = logging.getLogger("streakline.errors")

_HTTP_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
}


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[List[dict]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class StreakUpdateError(AppError):
    """A streak row could not be advanced within the retry budget."""
    code = "streak_update_failed"
    status_code = 500


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _respond(request: Request, status: int, code: str, message: str, details: Optional[Any] = None) -> JSONResponse:
    rid = _request_id(request)
    error = {"code": code, "message": message, "request_id": rid}
    if details:
        error["details"] = details
    logger.log(
        logging.ERROR if status >= 500 else logging.WARNING,
        "request.failed",
        extra={"request_id": rid, "error_code": code, "status": status, "path": request.url.path},
    )
    return JSONResponse(
        status_code=status,
        content={"error": error, "detail": message},
        headers={"x-request-id": rid},
    )


def _field_path(loc) -> str:
    return ".".join(str(part) for part in loc if part not in ("body", "query", "path"))


async def app_error_handler(request: Request, exc: AppError):
    return _respond(request, exc.status_code, exc.code, exc.message, exc.details)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": _field_path(err.get("loc", ())), "message": err.get("msg", "invalid value")}
        for err in exc.errors()
    ]
    return _respond(request, 400, "validation_error", "Validation failed", details)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    return _respond(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", exc_info=exc, extra={"request_id": _request_id(request)})
    return _respond(request, 500, "internal_error", "Unexpected error")
