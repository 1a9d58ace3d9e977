"""
FastAPI application entry point for the HVAC telemetry core.

Serves the ingest, unit, telemetry, alert and rule routers plus the health
endpoints. Settings are loaded and validated at startup; the session
factory, PartitionManager and IngestionService are built once and stored
on app.state for route handlers. With SCHEDULER_ENABLED the background
jobs also run inside this process.

Run with::

    uvicorn hvac_telemetry.api.main:app

CHANGELOG:
- 2026-10-12: Register alert and rule routers
- 2026-10-11: Optional in-process scheduler
- 2026-10-10: Build IngestionService at startup
- 2026-10-05: Initial creation
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hvac_telemetry.api.alerts import router as alerts_router
from hvac_telemetry.api.health import router as health_router
from hvac_telemetry.api.ingest import router as ingest_router
from hvac_telemetry.api.rules import router as rules_router
from hvac_telemetry.api.telemetry import router as telemetry_router
from hvac_telemetry.api.units import router as units_router
from hvac_telemetry.config import get_settings
from hvac_telemetry.db.session import dispose_engine, get_session_factory
from hvac_telemetry.logging_config import configure_logging
from hvac_telemetry.workers.scheduler import JobContext, Scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wiring at startup, cleanup at shutdown.

    Startup:
        - Loads and validates Settings (fails fast on bad config).
        - Builds the session factory and the long-lived services.
        - Starts the in-process scheduler when enabled.

    Shutdown:
        - Stops the scheduler and disposes the engine.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    ctx = JobContext.build(settings, get_session_factory())
    app.state.settings = settings
    app.state.partitions = ctx.partitions
    app.state.ingestion = ctx.ingestion

    scheduler = Scheduler(ctx) if settings.scheduler_enabled else None
    app.state.scheduler = scheduler
    if scheduler is not None:
        scheduler.start()
        logger.info("In-process scheduler started")

    logger.info("Settings validated, HVAC telemetry API ready")
    yield
    logger.info("HVAC telemetry API shutting down")

    if scheduler is not None:
        await scheduler.stop()
    await dispose_engine()


app = FastAPI(
    title="HVAC Telemetry Core",
    description="Telemetry storage and alerting API for field HVAC units.",
    version="0.1.0",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(health_router)
app.include_router(ingest_router)
app.include_router(units_router)
app.include_router(telemetry_router)
app.include_router(alerts_router)
app.include_router(rules_router)


@app.get("/")
async def root() -> dict:
    """Root health check endpoint.

    Returns:
        dict: JSON object with application status.
    """
    return {"status": "ok"}
