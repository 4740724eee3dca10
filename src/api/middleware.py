"""API middleware -- CORS, request logging, and error handling.

Provides helper functions and middleware classes to configure cross-origin
resource sharing, structured request logging (via structlog), and
automatic conversion of ``SetlistSyncError`` subclasses into JSON
``ErrorResponse`` bodies with a status code chosen by error type.

# ─── MIDDLEWARE EXECUTION ORDER ───────────────────────────────────────
#
# Starlette middleware is a stack (LIFO -- last added, first executed):
#
#   In main.py:
#     app.add_middleware(ErrorHandlingMiddleware)   # added 1st → inner
#     app.add_middleware(RequestLoggingMiddleware)   # added 2nd → outermost
#
#   Request flow:
#     Client → RequestLogging → ErrorHandling → route handler
#
# So RequestLoggingMiddleware sees the *final* response status code
# (after ErrorHandling replaced an exception with a structured error).
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import time

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.api.schemas import ErrorResponse
from src.utils.errors import (
    CycleInProgressError,
    NotFoundError,
    PermanentSourceError,
    RateLimitedError,
    SetlistLockedError,
    SetlistSyncError,
    TransientSourceError,
    UnauthorizedError,
    ValidationError,
)
from src.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

# First match wins; CircuitOpenError is covered by TransientSourceError.
_STATUS_BY_ERROR: list[tuple[type[SetlistSyncError], int]] = [
    (NotFoundError, 404),
    (SetlistLockedError, 409),
    (CycleInProgressError, 409),
    (UnauthorizedError, 401),
    (RateLimitedError, 429),
    (ValidationError, 400),
    (PermanentSourceError, 502),
    (TransientSourceError, 503),
]

# Caller-input errors are expected traffic, not server faults.
_CLIENT_ERROR_MAX = 499


def status_for_error(exc: SetlistSyncError) -> int:
    """Return the HTTP status code an application error maps to."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


def configure_cors(app: FastAPI, *, allowed_origins: list[str] | None = None) -> None:
    """Add CORS middleware to the FastAPI application.

    Parameters
    ----------
    app:
        The FastAPI application instance.
    allowed_origins:
        Explicit list of allowed origins.  Defaults to ``["*"]`` for
        development; override with specific origins in production.
    """
    origins = allowed_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ---------------------------------------------------------------------------
# Request Logging
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        response: Response | None = None

        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = response.status_code if response else 500
            _logger.info(
                "http_request",
                method=request.method,
                path=str(request.url.path),
                status=status_code,
                duration_ms=duration_ms,
            )


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch ``SetlistSyncError`` subclasses and return structured JSON errors.

    The client sees the exception class name and its message; stack traces
    stay in the server log.  Vote-path errors are reported as-is and never
    retried here.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)
        except SetlistSyncError as exc:
            status_code = status_for_error(exc)
            log = _logger.info if status_code <= _CLIENT_ERROR_MAX else _logger.error
            log(
                "application_error",
                error_type=type(exc).__name__,
                message=exc.message,
                provider=exc.provider_name,
                path=str(request.url.path),
                status=status_code,
            )
            body = ErrorResponse(
                error=type(exc).__name__,
                detail=exc.message,
            )
            headers = {"Retry-After": "1"} if status_code == 429 else None
            return JSONResponse(
                status_code=status_code,
                content=body.model_dump(),
                headers=headers,
            )
