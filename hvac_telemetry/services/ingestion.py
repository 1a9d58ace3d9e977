"""
Ingestion service: the per-reading unit of work.

For every reading: validate the unit against the registry, make sure the
month's partition exists, insert the raw row (ON CONFLICT DO NOTHING), then
materialize current state and evaluate alert rules in the same transaction.
Writes for one unit are serialized through a per-unit lock (plus a row lock
on PostgreSQL); different units never wait on each other.

The side effects run inside a SAVEPOINT. If they fail, only the savepoint
is rolled back: the raw reading is still committed and a
pending_side_effects row is recorded in the same transaction, for the
repair pass to re-apply later. Telemetry is never lost because a derived
write failed.

Readings that land in an already rolled-up bucket are flagged in the same
transaction so the next rollup run re-rolls that bucket. Readings older than
the raw retention window are rejected: their partition may already be
retired, and recreating it would feed a fragment of the month back into the
rollups. If another process retired a partition this process still had
memoized, the partition is recreated and the insert retried once.

Batch ingestion bounds concurrency with a semaphore and retries readings
whose partition could not be materialized with exponential backoff
(base -> 2x base -> ... capped at max).

CHANGELOG:
- 2026-10-20: Flag late readings, reject expired ones, recover dropped partitions
- 2026-10-14: Savepoint side effects and repair pass
- 2026-10-10: Batch ingest with bounded concurrency and backoff
- 2026-10-08: Initial creation

TODO:
- None
"""

import asyncio
import datetime
import enum
import logging
import weakref
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hvac_telemetry.cache.redis_client import invalidate_unit_cache
from hvac_telemetry.db.models import PendingSideEffect
from hvac_telemetry.db.partitions import partition_name
from hvac_telemetry.db.upsert import insert_for
from hvac_telemetry.errors import (
    DuplicateReading,
    PartitionUnavailable,
    ReadingExpired,
    UnknownUnit,
)
from hvac_telemetry.services.alerts import TriggeredAlert, evaluate_reading
from hvac_telemetry.services.current_state import apply_reading
from hvac_telemetry.services.partitions import PartitionManager
from hvac_telemetry.services.rollup import mark_late_reading
from hvac_telemetry.services.registry import UnitInfo, get_unit, require_active_unit
from hvac_telemetry.services.telemetry_store import get_reading, insert_reading
from hvac_telemetry.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class IngestStatus(str, enum.Enum):
    """Per-reading outcome reported to the caller."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    UNKNOWN_UNIT = "unknown_unit"
    PARTITION_UNAVAILABLE = "partition_unavailable"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass(frozen=True)
class AppendResult:
    """Result of ingesting one reading.

    Attributes:
        serial_number: Unit serial number.
        ts: Reading timestamp.
        status: Outcome.
        alerts_created: Number of new alerts raised by this reading.
        deferred: True if current-state/alerts were queued for repair.
        detail: Human-readable reason for non-inserted outcomes.
    """

    serial_number: str
    ts: datetime.datetime
    status: IngestStatus
    alerts_created: int = 0
    deferred: bool = False
    detail: str | None = None


class UnitLocks:
    """Registry of per-unit asyncio locks.

    Locks are held weakly: a lock disappears once no coroutine holds or
    waits on it, so memory does not grow with the number of units seen.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def for_unit(self, serial_number: str) -> asyncio.Lock:
        """Return the lock serializing writes for *serial_number*."""
        lock = self._locks.get(serial_number)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[serial_number] = lock
        return lock


async def _record_pending(
    db: AsyncSession, serial_number: str, ts: datetime.datetime, error: str
) -> None:
    """Queue a reading for the repair pass (upsert, bumps attempts)."""
    stmt = insert_for(db, PendingSideEffect).values(
        serial_number=serial_number, ts=ts, attempts=1, last_error=error[:2000]
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["serial_number", "ts"],
        set_={
            "attempts": PendingSideEffect.attempts + 1,
            "last_error": stmt.excluded.last_error,
        },
    )
    await db.execute(stmt)


async def _apply_side_effects(
    db: AsyncSession,
    unit: UnitInfo,
    ts: datetime.datetime,
    fields: dict[str, Any],
) -> list[TriggeredAlert]:
    """Run current-state materialization and alert evaluation in a savepoint."""
    async with db.begin_nested():
        await apply_reading(db, unit.serial_number, ts, fields)
        return await evaluate_reading(db, unit, ts, fields)


class IngestionService:
    """Accepts readings and runs their unit of work.

    Args:
        session_factory: Factory for database sessions.
        partitions: Partition manager used to materialize monthly tables.
        concurrency: Max readings processed concurrently by ingest_batch.
        retry_attempts: Attempts per reading on PartitionUnavailable.
        retry_base_s: Initial backoff delay.
        retry_max_s: Backoff cap.
        raw_retention_days: Readings older than this are rejected; None
            accepts readings of any age.

    Usage::

        service = IngestionService(factory, PartitionManager(factory))
        result = await service.append("SN-1", ts, {"ambient_temp": 31.5})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        partitions: PartitionManager,
        *,
        concurrency: int = 16,
        retry_attempts: int = 3,
        retry_base_s: float = 0.5,
        retry_max_s: float = 8.0,
        raw_retention_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._partitions = partitions
        self._locks = UnitLocks()
        self._concurrency = concurrency
        self._retry_attempts = retry_attempts
        self._retry_base_s = retry_base_s
        self._retry_max_s = retry_max_s
        self._raw_retention_days = raw_retention_days

    # ------------------------------------------------------------------
    # Single reading
    # ------------------------------------------------------------------

    async def append(
        self,
        serial_number: str,
        ts: datetime.datetime,
        fields: dict[str, Any],
    ) -> AppendResult:
        """Store one reading and run its side effects.

        A reading that is already stored is an idempotent no-op and
        reported as DUPLICATE; its side effects are not re-run.

        Raises:
            UnknownUnit: If the unit is absent or inactive.
            ReadingExpired: If the reading is older than the raw retention
                window.
            PartitionUnavailable: If the month's partition cannot be created.
        """
        ts = ensure_utc(ts)
        self._check_retention(serial_number, ts)
        async with self._locks.for_unit(serial_number):
            await self._ensure_partition_for(serial_number, ts)
            try:
                result = await self._store(serial_number, ts, fields)
            except (OperationalError, ProgrammingError):
                if await self._partitions.refresh(ts):
                    raise
                logger.warning(
                    "Partition %s was retired by another process, recreating",
                    partition_name(ts),
                )
                await self._ensure_partition_for(serial_number, ts)
                result = await self._store(serial_number, ts, fields)

        if result.status is IngestStatus.INSERTED:
            await invalidate_unit_cache(serial_number, ts)
        return result

    def _check_retention(self, serial_number: str, ts: datetime.datetime) -> None:
        if self._raw_retention_days is None:
            return
        cutoff = utcnow() - datetime.timedelta(days=self._raw_retention_days)
        if ts < cutoff:
            raise ReadingExpired(serial_number, ts, cutoff)

    async def _ensure_partition_for(
        self, serial_number: str, ts: datetime.datetime
    ) -> None:
        if self._partitions.is_ready(ts):
            return
        # Validate before touching DDL so unknown units leave no trace.
        async with self._session_factory() as db:
            await require_active_unit(db, serial_number)
        await self._partitions.ensure_partition(ts)

    async def _store(
        self,
        serial_number: str,
        ts: datetime.datetime,
        fields: dict[str, Any],
    ) -> AppendResult:
        """Insert the raw row, flag late buckets, run side effects, commit."""
        async with self._session_factory() as db:
            unit = await require_active_unit(db, serial_number, lock=True)
            info = UnitInfo.from_unit(unit)
            try:
                await insert_reading(db, serial_number, ts, fields)
            except DuplicateReading as exc:
                await db.rollback()
                logger.info("Duplicate reading ignored: %s", exc)
                return AppendResult(
                    serial_number, ts, IngestStatus.DUPLICATE, detail=str(exc)
                )
            late_tiers = await mark_late_reading(db, ts)
            if late_tiers:
                logger.info(
                    "Late reading for unit %s at %s flagged for %s rollup",
                    serial_number,
                    ts.isoformat(),
                    "/".join(late_tiers),
                )

            deferred = False
            try:
                triggered = await _apply_side_effects(db, info, ts, fields)
            except Exception as exc:
                logger.error(
                    "Side effects failed for unit %s at %s, queued for repair",
                    serial_number,
                    ts.isoformat(),
                    exc_info=True,
                )
                await _record_pending(db, serial_number, ts, repr(exc))
                triggered = []
                deferred = True
            await db.commit()

        return AppendResult(
            serial_number,
            ts,
            IngestStatus.INSERTED,
            alerts_created=sum(1 for t in triggered if t.created),
            deferred=deferred,
        )

    async def append_with_retry(
        self,
        serial_number: str,
        ts: datetime.datetime,
        fields: dict[str, Any],
    ) -> AppendResult:
        """append() with exponential backoff on PartitionUnavailable."""
        delay = self._retry_base_s
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return await self.append(serial_number, ts, fields)
            except PartitionUnavailable as exc:
                if attempt == self._retry_attempts:
                    raise
                logger.warning(
                    "%s (attempt %d/%d), retrying in %.1fs",
                    exc,
                    attempt,
                    self._retry_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._retry_max_s)
        raise PartitionUnavailable(partition_name(ts))

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def ingest_batch(
        self,
        readings: Iterable[tuple[str, datetime.datetime, dict[str, Any]]],
    ) -> list[AppendResult]:
        """Ingest many readings concurrently, one result per reading.

        Results are returned in input order. Failures are reported per
        reading and never abort the rest of the batch.
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(
            serial_number: str, ts: datetime.datetime, fields: dict[str, Any]
        ) -> AppendResult:
            ts = ensure_utc(ts)
            async with semaphore:
                try:
                    return await self.append_with_retry(serial_number, ts, fields)
                except UnknownUnit as exc:
                    logger.warning("Rejected reading: %s", exc)
                    return AppendResult(
                        serial_number, ts, IngestStatus.UNKNOWN_UNIT, detail=str(exc)
                    )
                except ReadingExpired as exc:
                    logger.warning("Rejected reading: %s", exc)
                    return AppendResult(
                        serial_number, ts, IngestStatus.EXPIRED, detail=str(exc)
                    )
                except PartitionUnavailable as exc:
                    logger.error("Rejected reading after retries: %s", exc)
                    return AppendResult(
                        serial_number,
                        ts,
                        IngestStatus.PARTITION_UNAVAILABLE,
                        detail=str(exc),
                    )
                except SQLAlchemyError as exc:
                    logger.error(
                        "Storage failure ingesting unit %s at %s",
                        serial_number,
                        ts.isoformat(),
                        exc_info=True,
                    )
                    return AppendResult(
                        serial_number, ts, IngestStatus.FAILED, detail=type(exc).__name__
                    )

        results = await asyncio.gather(*(_one(*reading) for reading in readings))
        inserted = sum(1 for r in results if r.status is IngestStatus.INSERTED)
        logger.info("Ingested %d/%d readings", inserted, len(results))
        return list(results)

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    async def repair_pending(self, limit: int = 100) -> int:
        """Re-apply side effects for readings queued by failed appends.

        Current state is CAS-guarded and alerts are deduplicated, so
        re-applying is safe. Entries whose reading has been pruned or whose
        unit is gone are discarded. Failures stay queued.

        Returns:
            int: Number of readings repaired.
        """
        async with self._session_factory() as db:
            pending = (
                await db.execute(
                    select(PendingSideEffect.serial_number, PendingSideEffect.ts)
                    .order_by(PendingSideEffect.recorded_at.asc())
                    .limit(limit)
                )
            ).all()

        repaired = 0
        for serial_number, ts in pending:
            async with self._locks.for_unit(serial_number):
                if await self._repair_one(serial_number, ts):
                    repaired += 1
            await invalidate_unit_cache(serial_number, ts)

        if pending:
            logger.info("Repair pass: %d/%d readings repaired", repaired, len(pending))
        return repaired

    async def _repair_one(self, serial_number: str, ts: datetime.datetime) -> bool:
        marker = delete(PendingSideEffect).where(
            PendingSideEffect.serial_number == serial_number,
            PendingSideEffect.ts == ts,
        )
        async with self._session_factory() as db:
            reading = await get_reading(db, serial_number, ts)
            try:
                unit = await get_unit(db, serial_number)
            except UnknownUnit:
                unit = None
            if reading is None or unit is None:
                logger.warning(
                    "Discarding repair for unit %s at %s: reading or unit gone",
                    serial_number,
                    ts.isoformat(),
                )
                await db.execute(marker)
                await db.commit()
                return False

            try:
                await _apply_side_effects(db, unit, ts, reading.fields)
            except Exception as exc:
                logger.error(
                    "Repair failed for unit %s at %s",
                    serial_number,
                    ts.isoformat(),
                    exc_info=True,
                )
                await _record_pending(db, serial_number, ts, repr(exc))
                await db.commit()
                return False

            await db.execute(marker)
            await db.commit()
        return True
