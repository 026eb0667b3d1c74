"""Middleware for FastAPI services."""

import time
import uuid
from typing import Callable, List

import structlog
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import MuryaException
from .monitoring import get_metrics

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _record_request(request: Request, status_code: int, duration: float) -> None:
    metrics = get_metrics()
    if metrics:
        metrics.record_http_request(request.method, request.url.path, status_code, duration)
        if status_code >= 500:
            metrics.record_error("request_failed", "http")


def _error_body(code: str, message: str, details: dict, path: str) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "path": path,
        "timestamp": time.time(),
    }


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request under a request id bound into the structlog context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and log details."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start_time = time.time()
        logger.info("request_started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error("request_failed", path=request.url.path, error=str(e), duration=duration)
            _record_request(request, getattr(e, "status_code", 500), duration)
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            path=request.url.path,
            status_code=response.status_code,
            duration=duration,
        )
        _record_request(request, response.status_code, duration)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware for consistent error handling."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Handle errors and return consistent responses."""
        try:
            return await call_next(request)

        except MuryaException as e:
            logger.error(
                "murya_error",
                error_code=e.error_code,
                message=e.message,
                details=e.details,
                path=request.url.path,
            )
            return JSONResponse(
                status_code=e.status_code,
                content=_error_body(e.error_code, e.message, e.details, request.url.path),
            )

        except HTTPException as e:
            logger.error(
                "http_error",
                status_code=e.status_code,
                detail=e.detail,
                path=request.url.path,
            )
            return JSONResponse(
                status_code=e.status_code,
                content=_error_body("HTTP_ERROR", e.detail, {}, request.url.path),
            )

        except Exception as e:
            logger.error(
                "unexpected_error",
                error=str(e),
                path=request.url.path,
                exc_info=True,
            )
            metrics = get_metrics()
            if metrics:
                metrics.record_error("unexpected_error", "middleware")
            return JSONResponse(
                status_code=500,
                content=_error_body(
                    "INTERNAL_SERVER_ERROR",
                    "An unexpected error occurred",
                    {},
                    request.url.path,
                ),
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Security headers middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Add security headers to all responses."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"

        return response


def setup_middleware(
    app: FastAPI,
    service_name: str,
    cors_origins: List[str],
    cors_allow_credentials: bool = True,
) -> None:
    """Install the standard middleware stack on an app.

    Starlette runs middleware in reverse order of registration, so the
    error handler is added last to wrap everything else.
    """
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)

    logger.info("Middleware configured", service=service_name)
