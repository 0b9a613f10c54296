from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException
from sqlalchemy import text

import datapipe.models  # noqa: F401  (registers all models)

from datapipe.core.config import settings
from datapipe.core.database import async_session_factory
from datapipe.core.errors import (
    AppError,
    app_error_handler,
    global_exception_handler,
    http_exception_handler,
)
from datapipe.core.sentry import init_sentry
from datapipe.modules.datasets.router import router as datasets_router
from datapipe.modules.jobs.events import JobLogBuffer, ProgressNotifier
from datapipe.modules.jobs.router import router as jobs_router
from datapipe.modules.jobs.scheduler import ProcessingScheduler
from datapipe.services.storage import S3BlobStorage

# ── Sentry: initialise before the app is created ─────────────────────────────
init_sentry(settings.SENTRY_DSN, settings.SENTRY_ENVIRONMENT, settings.APP_VERSION)

logger = structlog.get_logger()


def build_scheduler(storage: S3BlobStorage) -> ProcessingScheduler:
    """The one scheduler per process, configured explicitly from settings."""
    return ProcessingScheduler(
        async_session_factory,
        storage,
        concurrency=settings.PROCESSING_CONCURRENCY,
        batch_size=settings.PROCESSING_BATCH_SIZE,
        poll_interval=settings.PROCESSING_POLL_INTERVAL,
        dataset_retention_days=settings.DATASET_RETENTION_DAYS,
        notifier=ProgressNotifier(),
        logs=JobLogBuffer(settings.JOB_LOG_LIMIT, settings.JOB_LOG_MAX_JOBS),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    logger.info("Starting datapipe API", env=settings.APP_ENV)
    storage = S3BlobStorage()
    scheduler = build_scheduler(storage)
    app.state.storage = storage
    app.state.scheduler = scheduler
    scheduler.start()

    yield

    logger.info("Shutting down datapipe API")
    await scheduler.stop()


def create_app(*, with_lifespan: bool = True) -> FastAPI:
    is_prod = settings.APP_ENV == "production"
    app = FastAPI(
        title="datapipe API",
        description="Batch record processing: mapping, filtering and PII redaction into datasets.",
        version=settings.APP_VERSION or "0.1.0",
        # No interactive docs in production
        docs_url=None if is_prod else "/docs",
        redoc_url=None if is_prod else "/redoc",
        openapi_url=None if is_prod else "/openapi.json",
        lifespan=lifespan if with_lifespan else None,
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # ── Health check ─────────────────────────────────────────────────────────

    @app.get("/health")
    async def health_check() -> dict:
        """Probes the database and reports whether the scheduler loop is alive."""
        checks: dict[str, dict] = {}
        try:
            async with async_session_factory() as db:
                await db.execute(text("SELECT 1"))
            checks["database"] = {"status": "healthy"}
        except Exception as exc:
            checks["database"] = {"status": "unhealthy", "error": str(exc)}

        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None and scheduler.running:
            checks["scheduler"] = {
                "status": "healthy",
                "active_jobs": len(scheduler.active_job_ids),
            }
        else:
            checks["scheduler"] = {"status": "unhealthy", "error": "not running"}

        overall = (
            "healthy"
            if all(c["status"] == "healthy" for c in checks.values())
            else "degraded"
        )
        return {"status": overall, "service": "datapipe-api", "checks": checks}

    app.include_router(jobs_router)
    app.include_router(datasets_router)
    return app


app = create_app()
