from typing import Optional

import sentry_sdk
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from tenant_scheduler import __version__
from tenant_scheduler.api.v1 import scheduled_jobs
from tenant_scheduler.core.config import settings
from tenant_scheduler.db.session import init_db
from tenant_scheduler.services.scheduling import (
    ScheduledJobService,
    TargetFunctionRegistry,
)
from tenant_scheduler.utils.logger import configure_logging, get_logger

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


def create_app(
    service: Optional[ScheduledJobService] = None,
    targets: Optional[TargetFunctionRegistry] = None,
    auto_start: Optional[bool] = None,
) -> FastAPI:
    """
    Build the HTTP host around a scheduled job service.

    Without an injected ``service`` one is built on the configured database,
    and its tables are created on startup.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        description="Tenant-scoped cron job scheduler",
        version=__version__,
    )

    # Initialize Sentry if DSN is provided
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.APP_ENV,
            traces_sample_rate=0.1,
        )
        app.add_middleware(SentryAsgiMiddleware)
        logger.info("Sentry initialized", environment=settings.APP_ENV)
    else:
        logger.info("Sentry not configured (SENTRY_DSN not set)")

    create_tables = service is None
    if service is None:
        service = ScheduledJobService(targets=targets)
    if auto_start is None:
        auto_start = settings.AUTO_START_SCHEDULER

    app.state.scheduled_job_service = service
    app.include_router(scheduled_jobs.router, prefix="/api/v1")

    # Initialize Prometheus metrics
    instrumentator = Instrumentator(
        should_group_status_codes=False,
        excluded_handlers=["/metrics"],
    )
    instrumentator.instrument(app).expose(app)

    @app.on_event("startup")
    async def startup_event():
        """Application startup event"""
        logger.info(
            "Scheduler starting up",
            app_name=settings.APP_NAME,
            environment=settings.APP_ENV,
            auto_start=auto_start,
        )
        if create_tables:
            init_db()
        if auto_start:
            armed = await service.start()
            logger.info("Scheduler started", armed_jobs=armed)

    @app.on_event("shutdown")
    async def shutdown_event():
        await service.stop()
        logger.info("Scheduler shut down")

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint"""
        health = service.registry.get_health_status()
        return {
            "status": "ok" if health["overall_healthy"] else "degraded",
            "scheduler": health,
        }

    return app


app = create_app()
