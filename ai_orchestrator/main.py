"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize database engine and session factory (when persisting usage)
4. Build the orchestrator and store it on app.state
5. Register middleware, routers and exception handlers

Shutdown order:
1. Close DB connection pool
"""

from __future__ import annotations

import math
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ai_orchestrator.api.router import api_v1_router, public_router
from ai_orchestrator.config import Settings, get_settings
from ai_orchestrator.database import close_db, create_tables, get_session_factory, init_db
from ai_orchestrator.errors import (
    OrchestratorError,
    QuotaExceededError,
    ServiceError,
    ServiceUnavailableError,
    ValidationError,
)
from ai_orchestrator.model_router.orchestrator import AIOrchestrator
from ai_orchestrator.service import build_orchestrator
from ai_orchestrator.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[OrchestratorError], int], ...] = (
    (ValidationError, 422),
    (QuotaExceededError, 429),
    (ServiceError, 502),
    (ServiceUnavailableError, 503),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )
    log.info(
        "app.starting",
        environment=settings.environment,
        persist_usage=settings.persist_usage,
    )

    if settings.persist_usage:
        init_db(settings)
        if not settings.is_prod:
            await create_tables()

    if getattr(app.state, "orchestrator", None) is None:
        session_factory = get_session_factory() if settings.persist_usage else None
        app.state.orchestrator = build_orchestrator(settings, session_factory=session_factory)

    log.info("app.ready")
    yield

    await close_db()
    log.info("app.shutdown")


def _error_response(request: Request, exc: OrchestratorError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)),
        500,
    )
    headers: dict[str, str] = {}
    if isinstance(exc, QuotaExceededError):
        seconds = (exc.reset_at - datetime.now(UTC)).total_seconds()
        headers["Retry-After"] = str(max(1, math.ceil(seconds)))

    log.info(
        "app.orchestrator_error",
        path=request.url.path,
        kind=exc.kind,
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


def create_app(
    settings: Settings | None = None,
    *,
    orchestrator: AIOrchestrator | None = None,
) -> FastAPI:
    """Application factory.

    Args:
        settings: Settings override (default: get_settings())
        orchestrator: Pre-built orchestrator (tests); built at startup otherwise
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="AI Request Orchestrator",
        description=(
            "Routes AI-assisted feature requests across model backends with "
            "per-user quotas, budgets, response caching and fallback."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    # Unique request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    app.include_router(public_router)
    app.include_router(api_v1_router)

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
        return _error_response(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app
