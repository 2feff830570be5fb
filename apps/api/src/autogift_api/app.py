from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from autogift_api.core.settings import settings
from autogift_api.db.session import async_session
from .api.routes import api_router
from .api.v1.endpoints import health
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import PipelineJobScheduler


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    schedule_path = Path(settings.pipeline_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    schedule_path = _schedule_path()
    scheduler = PipelineJobScheduler(session_factory=_session_factory, config_path=schedule_path)
    app.state.pipeline_scheduler = scheduler

    scheduler_enabled = settings.pipeline_scheduler_enabled
    if scheduler_enabled:
        try:
            scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Pipeline scheduler failed to start", error=str(exc))
        else:
            logger.info("Pipeline scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info(
            "Pipeline scheduler disabled",
            reason="pipeline_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if scheduler.is_running:
            await scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the auto-gift pipeline service."""
    configure_logging(
        service_name="autogift-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Auto-Gift Pipeline API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="autogift-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)
    app.include_router(health.router, tags=["Health"], include_in_schema=False)

    return app
