"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure logging
3. Initialize database engine and session factory
4. Initialize rate limiters
5. Start the background worker pool and register compliance jobs
6. Re-enqueue deletions/exports a previous process left unfinished

Shutdown order:
1. Drain the worker pool
2. Wait for in-flight notifications
3. Close DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from imobibase.api.router import api_router, public_router
from imobibase.compliance.jobs import ComplianceJobs
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import get_settings
from imobibase.core.errors import ComplianceError, WebhookConfigurationError
from imobibase.core.rate_limit import init_rate_limiter
from imobibase.database import close_db, get_session_factory, init_db
from imobibase.infra.background_worker import BackgroundWorkerPool
from imobibase.telemetry import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )
    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
    )

    init_db(settings)
    init_rate_limiter(settings)

    storage = ArtifactStorage(settings.upload_dir)
    notifier = ComplianceNotifier.from_settings(settings)

    worker_pool = BackgroundWorkerPool(
        max_workers=settings.background_worker_concurrency,
        max_retries=settings.background_worker_max_retries,
    )
    jobs = ComplianceJobs(
        worker_pool,
        get_session_factory(),
        settings,
        storage=storage,
        notifier=notifier,
    )
    jobs.register()
    await worker_pool.start()

    app.state.storage = storage
    app.state.notifier = notifier
    app.state.worker_pool = worker_pool
    app.state.compliance_jobs = jobs

    await jobs.recover_inflight()

    log.info("app.ready")
    yield

    await worker_pool.shutdown(drain=True)
    await notifier.drain()
    await close_db()
    log.info("app.shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="ImobiBase Compliance",
        description=(
            "LGPD/GDPR data-subject rights, consent management, DPO tooling "
            "and e-signature audit trail for the ImobiBase CRM."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_router)

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(ComplianceError)
    async def compliance_error_handler(request: Request, exc: ComplianceError) -> JSONResponse:
        if isinstance(exc, WebhookConfigurationError):
            log.critical("app.webhook_not_configured", path=request.url.path)
        elif exc.status_code >= 500:
            log.error("app.compliance_error", path=request.url.path, code=exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
        )

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
            content={"detail": "Erro interno do servidor", "code": "internal_error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
