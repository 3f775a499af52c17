"""FastAPI application entry point for the A/B testing engine."""

import asyncio
import contextlib
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.middleware.error_handler import global_exception_handler
from src.api.middleware.logging import StructuredLoggingMiddleware
from src.api.routes.abtests import router as abtests_router
from src.api.routes.assignments import router as assignments_router
from src.api.routes.events import router as events_router
from src.api.routes.health import router as health_router
from src.config import settings
from src.domains.experiments.config import ExperimentConfig
from src.domains.experiments.errors import ExperimentEngineError
from src.shared.cache import close_redis, get_redis
from src.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown logic."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level)

    logger.info(
        "abtest_engine_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
    )

    from src.db.database import async_session_factory, init_db

    await init_db()

    app.state.kafka_producer = None
    if settings.kafka_alerts_enabled:
        try:
            from src.shared.kafka_utils import create_producer

            app.state.kafka_producer = await create_producer(settings.kafka_bootstrap_servers)
        except Exception:
            logger.warning("kafka_producer_failed_to_start", exc_info=True)

    scheduler = None
    scheduler_task: asyncio.Task | None = None
    if settings.scheduler_enabled:
        from src.pipeline.scheduler import PipelineScheduler

        scheduler = PipelineScheduler(
            async_session_factory,
            redis=get_redis(),
            producer=app.state.kafka_producer,
            interval_seconds=settings.aggregation_interval_seconds,
            concurrency=settings.pipeline_concurrency,
            config=ExperimentConfig.from_env(),
        )
        scheduler_task = asyncio.create_task(scheduler.start())

    yield

    if scheduler is not None:
        scheduler.stop()
    if scheduler_task is not None:
        scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler_task
    if app.state.kafka_producer is not None:
        with contextlib.suppress(Exception):
            await app.state.kafka_producer.stop()
    await close_redis()
    logger.info("abtest_engine_shutting_down")


app = FastAPI(
    title="A/B Testing Engine",
    description="Assignment, event ingestion and statistical analysis for storefront experiments",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Structured logging middleware
app.add_middleware(StructuredLoggingMiddleware)

# Engine errors map to 4xx/5xx; anything else is a 500
app.add_exception_handler(ExperimentEngineError, global_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Register routers
app.include_router(health_router)
app.include_router(assignments_router)
app.include_router(events_router)
app.include_router(abtests_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
