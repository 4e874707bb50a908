"""Application middleware: CORS, rate limiting, request logging and error mapping."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from gar.config import Settings
from gar.errors import (
    GARError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    PreconditionError,
    PublishError,
    ValidationError,
)

logger = structlog.get_logger()


# Most specific first
ERROR_STATUS_CODES: list[tuple[type[GARError], int]] = [
    (PreconditionError, 409),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (ValidationError, 422),
    (InvalidTransitionError, 400),
    (PublishError, 502),
    (PersistenceError, 502),
]


def status_code_for(exc: GARError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def get_limiter(settings: Settings) -> Limiter:
    """Create a rate limiter instance."""
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_default],
    )


def configure_cors(app: FastAPI, settings: Settings) -> None:
    """Add CORS middleware to the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-RateLimit-Remaining"],
    )


def configure_rate_limiting(app: FastAPI, settings: Settings) -> None:
    """Add rate limiting to the application."""
    limiter = get_limiter(settings)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


async def gar_error_handler(request: Request, exc: GARError) -> JSONResponse:
    """Return the plain-text user message, never the raw exception."""
    status_code = status_code_for(exc)
    logger.info(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=status_code,
    )
    content: dict[str, Any] = {"detail": exc.user_message, "error": type(exc).__name__}
    draft_id = getattr(exc, "draft_id", None)
    if draft_id:
        content["draft_id"] = draft_id
    return JSONResponse(status_code=status_code, content=content)


def configure_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GARError, gar_error_handler)


async def logging_middleware(request: Request, call_next) -> Response:
    """Structured logging middleware, logs every request."""
    start_time = time.monotonic()
    response = await call_next(request)
    duration_ms = round((time.monotonic() - start_time) * 1000, 2)

    logger.info(
        "http_request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
        client_ip=request.client.host if request.client else "unknown",
    )

    return response


def configure_request_logging(app: FastAPI) -> None:
    app.middleware("http")(logging_middleware)


def configure_structured_logging(settings: Settings) -> None:
    """Configure structlog for JSON or console output."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown handlers."""
    settings = app.state.settings
    configure_structured_logging(settings)

    logger.info(
        "application_starting",
        version=settings.app_version,
        environment=settings.environment,
        risk_label_scheme=settings.risk_label_scheme,
        edit_policy=settings.edit_policy,
    )
    if settings.weather_dev_mode and settings.environment == "production":
        logger.warning("weather_dev_mode_in_production")

    yield

    logger.info("application_shutting_down")
