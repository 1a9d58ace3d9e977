"""
Background worker entrypoint.

Runs the partition, rollup, retention and repair jobs on their configured
intervals until SIGTERM/SIGINT, or runs a single job once and exits::

    python -m hvac_telemetry.workers.main
    python -m hvac_telemetry.workers.main --once rollup_hourly

Graceful shutdown on SIGTERM/SIGINT sets a shared asyncio.Event so that
every job loop finishes its current run before the process exits.

CHANGELOG:
- 2026-10-12: Add --once for cron-driven deployments
- 2026-10-11: Initial creation

TODO:
- None
"""

import argparse
import asyncio
import logging
import signal
import sys

from hvac_telemetry.config import Settings, get_settings
from hvac_telemetry.db.session import create_engine, create_session_factory
from hvac_telemetry.logging_config import configure_logging
from hvac_telemetry.workers.scheduler import (
    JOBS,
    JobContext,
    job_intervals,
    run_job,
    run_scheduler,
)

logger = logging.getLogger(__name__)


def log_config_summary(settings: Settings) -> None:
    """Log the job configuration at startup, excluding connection URLs."""
    logger.info(
        "Worker starting with config: intervals=%s, raw_retention_days=%s, "
        "hourly_retention_days=%s, hourly_lookback_hours=%s, "
        "daily_lookback_days=%s, partition_months_ahead=%s",
        job_intervals(settings),
        settings.raw_retention_days,
        settings.hourly_retention_days,
        settings.hourly_lookback_hours,
        settings.daily_lookback_days,
        settings.partition_months_ahead,
    )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


async def async_main(once: str | None = None) -> int:
    """Async entrypoint: load config, build components, run jobs.

    Args:
        once: Name of a single job to run once, or None to run the loops.

    Returns:
        int: Process exit code.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    engine = create_engine(settings.database_url)
    ctx = JobContext.build(settings, create_session_factory(engine))
    try:
        if once is not None:
            try:
                await run_job(once, ctx)
            except Exception:
                logger.error("Job %s failed", once, exc_info=True)
                return 1
            return 0

        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

        await run_scheduler(ctx, shutdown_event)
        return 0
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hvac-telemetry-worker",
        description="Run HVAC telemetry maintenance jobs.",
    )
    parser.add_argument(
        "--once",
        choices=sorted(JOBS),
        metavar="JOB",
        help=f"run a single job once and exit ({', '.join(sorted(JOBS))})",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Synchronous entrypoint for the worker."""
    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(async_main(args.once)))


if __name__ == "__main__":
    main()
