"""
Background job scheduler.

Runs the periodic maintenance jobs as independent asyncio loops:

- partitions: create this month's partition and the look-ahead months.
- rollup_hourly / rollup_daily: advance the rollup tiers.
- retention: delete expired hourly rollups, then drop raw partitions that
  are past the retention window and fully rolled up.
- repair: re-apply side effects queued by failed ingest transactions.

Every loop is resilient: an exception in one run is logged and the job
simply runs again at its next tick, without affecting the other jobs.
Shutdown sets a shared asyncio.Event; loops finish their current run and
exit. The same jobs can be run one-shot via run_job().

CHANGELOG:
- 2026-10-14: Add repair job
- 2026-10-11: Initial creation

TODO:
- None
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hvac_telemetry.config import Settings
from hvac_telemetry.services import rollup
from hvac_telemetry.services.ingestion import IngestionService
from hvac_telemetry.services.partitions import PartitionManager
from hvac_telemetry.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Everything a job needs to run.

    Attributes:
        settings: Service configuration.
        session_factory: Database session factory.
        partitions: Partition manager shared with the ingest path.
        ingestion: Ingestion service (used by the repair job).
    """

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    partitions: PartitionManager
    ingestion: IngestionService

    @classmethod
    def build(
        cls, settings: Settings, session_factory: async_sessionmaker[AsyncSession]
    ) -> "JobContext":
        """Wire a context from settings and a session factory."""
        partitions = PartitionManager(session_factory)
        ingestion = IngestionService(
            session_factory,
            partitions,
            concurrency=settings.ingest_concurrency,
            retry_attempts=settings.ingest_retry_attempts,
            retry_base_s=settings.ingest_retry_base_s,
            retry_max_s=settings.ingest_retry_max_s,
            raw_retention_days=settings.raw_retention_days,
        )
        return cls(settings, session_factory, partitions, ingestion)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


async def partitions_job(ctx: JobContext) -> Any:
    return await ctx.partitions.ensure_upcoming(
        utcnow(), ctx.settings.partition_months_ahead
    )


async def rollup_hourly_job(ctx: JobContext) -> Any:
    return await rollup.rollup_hourly(
        ctx.session_factory, lookback_hours=ctx.settings.hourly_lookback_hours
    )


async def rollup_daily_job(ctx: JobContext) -> Any:
    return await rollup.rollup_daily(
        ctx.session_factory, lookback_days=ctx.settings.daily_lookback_days
    )


async def retention_job(ctx: JobContext) -> Any:
    """Hourly-tier retention, then raw partition retention."""
    now = utcnow()
    deleted = await rollup.enforce_hourly_retention(
        ctx.session_factory, now, retention_days=ctx.settings.hourly_retention_days
    )
    async with ctx.session_factory() as db:
        watermark = await rollup.rolled_up_until(db)
    dropped = await ctx.partitions.drop_expired(
        now, ctx.settings.raw_retention_days, watermark
    )
    return {"hourly_rows_deleted": deleted, "partitions_dropped": dropped}


async def repair_job(ctx: JobContext) -> Any:
    return await ctx.ingestion.repair_pending()


JOBS: dict[str, Callable[[JobContext], Awaitable[Any]]] = {
    "partitions": partitions_job,
    "rollup_hourly": rollup_hourly_job,
    "rollup_daily": rollup_daily_job,
    "retention": retention_job,
    "repair": repair_job,
}


def job_intervals(settings: Settings) -> dict[str, float]:
    """Return the period in seconds of each job."""
    return {
        "partitions": settings.partition_interval_s,
        "rollup_hourly": settings.rollup_hourly_interval_s,
        "rollup_daily": settings.rollup_daily_interval_s,
        "retention": settings.retention_interval_s,
        "repair": settings.repair_interval_s,
    }


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


async def run_job(name: str, ctx: JobContext) -> Any:
    """Run one job once and return its result.

    Raises:
        KeyError: If *name* is not a known job.
    """
    job = JOBS[name]
    logger.info("Job %s started", name)
    result = await job(ctx)
    logger.info("Job %s finished: %s", name, result)
    return result


async def _run_once_safely(name: str, ctx: JobContext) -> bool:
    """Run a job, logging instead of raising on failure.

    Returns:
        True if the job succeeded, False otherwise.
    """
    try:
        await run_job(name, ctx)
        return True
    except Exception:
        logger.error("Job %s failed", name, exc_info=True)
        return False


async def _job_loop(
    name: str,
    ctx: JobContext,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run one job every *interval_s* seconds until shutdown_event is set."""
    logger.info("Job loop %s started (interval=%ss)", name, interval_s)
    while not shutdown_event.is_set():
        await _run_once_safely(name, ctx)
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
    logger.info("Job loop %s stopped", name)


async def run_scheduler(ctx: JobContext, shutdown_event: asyncio.Event) -> None:
    """Run every job loop concurrently until shutdown."""
    intervals = job_intervals(ctx.settings)
    logger.info("Starting %d job loop(s)", len(JOBS))
    await asyncio.gather(
        *(_job_loop(name, ctx, intervals[name], shutdown_event) for name in JOBS)
    )
    logger.info("Scheduler stopped")


class Scheduler:
    """Runs the job loops as a background task of another event loop user.

    Used by the API process when SCHEDULER_ENABLED is set.

    Args:
        ctx: Job context shared with the API.
    """

    def __init__(self, ctx: JobContext) -> None:
        self._ctx = ctx
        self._shutdown_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the job loops in the background."""
        if self.running:
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(run_scheduler(self._ctx, self._shutdown_event))

    async def stop(self) -> None:
        """Signal the loops to stop and wait for the current runs to finish."""
        if self._task is None:
            return
        self._shutdown_event.set()
        await self._task
        self._task = None
