from __future__ import annotations

import logging
import traceback
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import get_settings
from app.metrics import resolve_http_path_label


logger = logging.getLogger("app.errors")


class AppError(Exception):
    """Base class for failures that map onto an HTTP status."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailedError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthenticatedError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


class InvalidTransitionError(ConflictError):
    """Raised when a lifecycle field is moved along an edge its state machine does not have."""


_VALIDATION_MESSAGES = {
    "body": "Validation failed",
    "path": "Invalid parameters",
    "query": "Invalid query parameters",
}


def error_response(
    request: Request,
    *,
    status_code: int,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {"error": message, "status": status_code}
    if details is not None:
        payload["details"] = jsonable_encoder(details)

    metrics = getattr(request.app.state, "metrics", None)
    if metrics is not None:
        metrics.observe_http_error(
            status=status_code,
            method=request.method,
            route=resolve_http_path_label(request),
        )
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.failed", exc_info=exc, extra={"path": request.url.path, "error": exc.message})
    return error_response(request, status_code=exc.status_code, message=exc.message, details=exc.details)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    location = errors[0]["loc"][0] if errors and errors[0].get("loc") else "body"
    message = _VALIDATION_MESSAGES.get(str(location), "Validation failed")
    return error_response(request, status_code=status.HTTP_400_BAD_REQUEST, message=message, details=errors)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND and request.scope.get("route") is None:
        message = f"Route {request.url.path} not found"
    else:
        message = str(exc.detail)
    return error_response(
        request,
        status_code=exc.status_code,
        message=message,
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request.unhandled",
        exc_info=exc,
        extra={"method": request.method, "path": request.url.path, "status_code": 500, "error": str(exc)},
    )
    settings = getattr(request.app.state, "settings", None) or get_settings()
    details = None
    if settings.is_development:
        details = {"stack": traceback.format_exception(type(exc), exc, exc.__traceback__)}
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="Internal Server Error",
        details=details,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)
