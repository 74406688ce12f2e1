"""API error handling: consistent JSON error envelopes.

Status code mapping:
- ``CredentialNotFoundError`` → 404 Not Found
- ``UnauthorizedError`` → 401 Unauthorized
- ``TransientError`` → 503 Service Unavailable
- ``CalwatchError`` (protocol, store) → 502 Bad Gateway
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calwatch.api.models import ErrorDetail, ErrorResponse
from calwatch.errors import (
    CalwatchError,
    CredentialNotFoundError,
    TransientError,
    UnauthorizedError,
    sanitize_error,
)

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, user_id: str | None = None):
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, user_id=user_id))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_not_connected(request: Request, exc: CredentialNotFoundError) -> JSONResponse:
    logger.info("User not connected: %s", exc.user_id)
    return _error_response(
        404, "NOT_CONNECTED", "Google Calendar is not connected.", user_id=exc.user_id
    )


async def _handle_unauthorized(request: Request, exc: UnauthorizedError) -> JSONResponse:
    logger.warning("Provider rejected credential: %s", sanitize_error(exc))
    return _error_response(
        401, "UNAUTHORIZED", "Google Calendar access was rejected. Please reconnect."
    )


async def _handle_transient(request: Request, exc: TransientError) -> JSONResponse:
    logger.info("Transient failure on %s: %s", request.url.path, sanitize_error(exc))
    return _error_response(503, "TEMPORARILY_UNAVAILABLE", "Please try again shortly.")


async def _handle_calwatch_error(request: Request, exc: CalwatchError) -> JSONResponse:
    logger.error("%s on %s: %s", type(exc).__name__, request.url.path, sanitize_error(exc))
    return _error_response(502, "UPSTREAM_ERROR", "Calendar service error.")


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any unhandled exception into the standard 500 envelope."""

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
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CredentialNotFoundError, _handle_not_connected)  # type: ignore[arg-type]
    app.add_exception_handler(UnauthorizedError, _handle_unauthorized)  # type: ignore[arg-type]
    app.add_exception_handler(TransientError, _handle_transient)  # type: ignore[arg-type]
    app.add_exception_handler(CalwatchError, _handle_calwatch_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
