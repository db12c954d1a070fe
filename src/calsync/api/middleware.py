"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``EventNotFoundError`` → 404 Not Found
- ``RequestValidationError`` / ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error

Sync endpoints report partial failures inside a 200 ``SyncResult``; only
request-level problems reach these handlers.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.sync.errors import EventNotFoundError

logger = logging.getLogger(__name__)


async def _handle_event_not_found(
    request: Request,
    exc: EventNotFoundError,
) -> JSONResponse:
    """Return 404 when the requested calendar event does not exist."""
    logger.info("Event not found: %s", exc.event_id)
    body = ErrorResponse(
        error=ErrorDetail(
            code="EVENT_NOT_FOUND",
            message=str(exc),
            details={"eventId": exc.event_id},
        )
    )
    return JSONResponse(status_code=404, content=body.model_dump())


async def _handle_request_validation(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 400 for malformed request bodies, headers or query params."""
    logger.info("Request validation error on %s: %s", request.url.path, exc.errors())
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message="Invalid request",
            details={"errors": _error_list(exc)},
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


def _error_list(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": str(err.get("msg", ""))}
        for err in exc.errors()
    ]


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(EventNotFoundError, _handle_event_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(
        RequestValidationError,
        _handle_request_validation,  # type: ignore[arg-type]
    )
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
