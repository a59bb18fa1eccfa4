"""
Shared API Middleware
======================

Middleware and exception handlers installed on the FastAPI application.
"""

import time
from datetime import datetime, timezone
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from approvalflow.core import (
    AlreadyDecided,
    ApplicationException,
    ConcurrencyConflict,
    ExternalServiceException,
    InvalidTransition,
    PermissionDeniedException,
    ResourceNotFoundException,
    ValidationException,
)
from approvalflow.shared.infrastructure.logging import bind_correlation_id, current_correlation_id, get_logger

logger = get_logger(__name__)


def _correlation_id_of(request: Request) -> str:
    # the 500 handler runs outside the middleware stack, where only request.state survives
    return current_correlation_id() or getattr(request.state, "correlation_id", "unknown")


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Propagates or generates an X-Correlation-ID per request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = bind_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with method, path, status and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = _correlation_id_of(request)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={
                    "correlation_id": correlation_id,
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "response_time_ms": int((time.perf_counter() - start_time) * 1000)
                }
            )
            raise

        logger.info(
            "Request completed",
            extra={
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "response_time_ms": int((time.perf_counter() - start_time) * 1000)
            }
        )
        return response


# ========== Exception handlers ==========

# Most specific first.
_STATUS_BY_EXCEPTION = (
    (ResourceNotFoundException, status.HTTP_404_NOT_FOUND),
    (ValidationException, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PermissionDeniedException, status.HTTP_403_FORBIDDEN),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (ExternalServiceException, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_code_for(exc: ApplicationException) -> int:
    for exc_type, code in _STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Translate domain errors into HTTP responses."""
    correlation_id = _correlation_id_of(request)

    if isinstance(exc, AlreadyDecided):
        # Losing a race on an already-decided level is a confirmation, not a failure
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status": "already_decided",
                "detail": exc.message,
                "instance_id": exc.instance_id,
                "level": exc.level,
            }
        )

    code = status_code_for(exc)
    logger.info(
        "Request rejected",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "status_code": code,
        }
    )
    return JSONResponse(
        status_code=code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details,
            "correlation_id": correlation_id,
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.

    Returns consistent error responses for all exceptions.
    """
    correlation_id = _correlation_id_of(request)

    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        }
    )

    settings = getattr(request.app.state, "settings", None)
    is_dev = getattr(settings, "environment", None) == "development"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None
        }
    )


def install_middleware(app: FastAPI) -> None:
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
