"""Global exception handlers for consistent error responses.

This module provides FastAPI exception handlers that intercept all errors
(domain and unexpected) and return consistent JSON responses with proper
HTTP status codes and traceability.

Error body shape::

    {"success": false, "message": ..., "error": CODE, "details": {...}, "request_id": ...}

Design:
- AppError subclasses → appropriate HTTP status (400, 403, 404, 429, 500, 503)
- Unexpected Exception → generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import (
    AppError,
    AuthenticationAppError,
    ConfigurationAppError,
    RateLimitExceededError,
    StoreUnavailableError,
    VersionHandlerNotFoundError,
)
from app.core.logging import get_request_id

logger = logging.getLogger(__name__)


def status_for(exc: AppError) -> int:
    """Map a domain error to its HTTP status code."""
    if isinstance(exc, AuthenticationAppError):
        return 403
    if isinstance(exc, RateLimitExceededError):
        return 429
    if isinstance(exc, StoreUnavailableError):
        return 503
    if isinstance(exc, VersionHandlerNotFoundError):
        return 404
    if isinstance(exc, ConfigurationAppError):
        return 500
    return 400


def error_response(exc: AppError, *, status_code: int | None = None) -> JSONResponse:
    """Build the JSON error response for a domain error.

    Used both by the registered handler and by middleware that short-circuits
    before routing (where app exception handlers do not apply).
    """
    content: dict = {
        "success": False,
        "message": exc.message,
        "error": exc.code,
        "request_id": get_request_id(),
    }
    if exc.details:
        content["details"] = exc.details

    headers = None
    if isinstance(exc, RateLimitExceededError) and exc.details:
        headers = {"Retry-After": str(exc.details["retryAfter"])}

    return JSONResponse(status_code=status_code or status_for(exc), content=content, headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    return error_response(exc, status_code=status_code)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic
    message. No stack traces or exception text reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "An unexpected error occurred. Please try again later.",
            "error": "INTERNAL_SERVER_ERROR",
            "request_id": get_request_id(),
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with FastAPI app.

    Order matters: specific handlers registered before general fallback.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
