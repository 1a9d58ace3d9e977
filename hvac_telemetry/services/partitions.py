"""
Partition manager for the monthly raw-telemetry tables.

Creates partition tables ahead of need (and on demand from the ingest
path), keeps the ``telemetry_partitions`` catalog in sync, and retires whole
partitions once they are past the raw retention window and fully rolled up.
Dropping a table is used instead of row deletes so that retention cost does
not grow with ingest volume.

Operations:
- ensure_partition(month): idempotent create; PartitionUnavailable on failure.
- ensure_upcoming(now, months_ahead): scheduled look-ahead creation.
- partitions_for_range(db, start, end): catalog rows overlapping a range.
- drop_expired(now, retention_days, rolled_up_until): retention; keeps
  partitions that still hold buckets flagged by late readings.
- refresh(ts): re-check a memoized partition against the catalog.

CHANGELOG:
- 2026-10-20: Keep partitions with flagged rollup buckets; catalog refresh
- 2026-10-13: Never drop partitions beyond the rollup watermark
- 2026-10-07: Initial creation

TODO:
- None
"""

import asyncio
import datetime
import logging

from sqlalchemy import delete, exists, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.schema import CreateIndex, CreateTable, DropTable

from hvac_telemetry.db.models import RollupDirtyBucket, TelemetryPartition
from hvac_telemetry.db.partitions import partition_name, partition_table
from hvac_telemetry.db.upsert import insert_for
from hvac_telemetry.errors import PartitionUnavailable
from hvac_telemetry.timeutils import add_months, ensure_utc, month_start

logger = logging.getLogger(__name__)


async def partitions_for_range(
    db: AsyncSession,
    start: datetime.datetime | None,
    end: datetime.datetime | None,
) -> list[TelemetryPartition]:
    """Return catalogued partitions overlapping ``[start, end)``, oldest first."""
    stmt = select(TelemetryPartition).order_by(TelemetryPartition.range_start.asc())
    if start is not None:
        stmt = stmt.where(TelemetryPartition.range_end > ensure_utc(start))
    if end is not None:
        stmt = stmt.where(TelemetryPartition.range_start < ensure_utc(end))
    result = await db.execute(stmt)
    return list(result.scalars().all())


class PartitionManager:
    """Creates and retires monthly partition tables.

    Remembers which partitions it has already materialized so that the hot
    ingest path only touches the catalog once per month per process.

    Args:
        session_factory: Factory for the sessions used to run DDL.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._known: set[str] = set()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def is_ready(self, ts: datetime.datetime) -> bool:
        """Return True if this process already materialized *ts*'s partition."""
        return partition_name(ts) in self._known

    async def refresh(self, ts: datetime.datetime) -> bool:
        """Re-check *ts*'s partition against the catalog.

        Another process may have retired a partition this one still has
        memoized; in that case the memo entry is dropped so that the next
        ensure_partition recreates the table.

        Returns:
            bool: True if the partition is still catalogued.
        """
        name = partition_name(ts)
        async with self._session_factory() as db:
            entry = await db.get(TelemetryPartition, name)
        if entry is None:
            self._known.discard(name)
            return False
        return True

    async def ensure_partition(self, month: datetime.datetime) -> str:
        """Make sure the partition covering *month* exists.

        Creating an existing partition is a no-op.

        Args:
            month: Any timestamp inside the target month.

        Returns:
            str: The partition table name.

        Raises:
            PartitionUnavailable: If the table or its catalog entry cannot
                be written.
        """
        name = partition_name(month)
        if name in self._known:
            return name

        async with self._lock:
            if name in self._known:
                return name
            start = month_start(month)
            table = partition_table(start)
            try:
                async with self._session_factory() as db:
                    await db.execute(CreateTable(table, if_not_exists=True))
                    for index in table.indexes:
                        await db.execute(CreateIndex(index, if_not_exists=True))
                    stmt = insert_for(db, TelemetryPartition).values(
                        table_name=name,
                        range_start=start,
                        range_end=add_months(start, 1),
                    )
                    await db.execute(stmt.on_conflict_do_nothing())
                    await db.commit()
            except SQLAlchemyError as exc:
                logger.error("Failed to materialize partition %s", name, exc_info=True)
                raise PartitionUnavailable(name) from exc
            self._known.add(name)

        logger.info("Partition %s ready", name)
        return name

    async def ensure_upcoming(
        self, now: datetime.datetime, months_ahead: int
    ) -> list[str]:
        """Create the current month's partition and *months_ahead* after it."""
        current = month_start(now)
        return [
            await self.ensure_partition(add_months(current, offset))
            for offset in range(months_ahead + 1)
        ]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def drop_partition(self, name: str) -> None:
        """Drop a partition table and remove it from the catalog."""
        async with self._lock:
            async with self._session_factory() as db:
                entry = await db.get(TelemetryPartition, name)
                if entry is None:
                    return
                await db.execute(DropTable(partition_table(entry.range_start), if_exists=True))
                await db.execute(
                    delete(TelemetryPartition).where(TelemetryPartition.table_name == name)
                )
                await db.commit()
            self._known.discard(name)
        logger.info("Dropped partition %s", name)

    async def drop_expired(
        self,
        now: datetime.datetime,
        retention_days: int,
        rolled_up_until: datetime.datetime | None,
    ) -> list[str]:
        """Drop partitions entirely older than the retention window.

        A partition is only dropped when every reading in it has already
        been rolled up: its end is at or before *rolled_up_until* and no
        rollup bucket inside it is still flagged by a late reading.

        Args:
            now: Reference time.
            retention_days: Raw retention window in days.
            rolled_up_until: End of the last bucket covered by both rollup
                tiers, or None if nothing has been rolled up yet.

        Returns:
            list[str]: Names of the dropped partitions.
        """
        if rolled_up_until is None:
            logger.info("No rollup watermark yet, skipping partition retention")
            return []

        cutoff = min(ensure_utc(now) - datetime.timedelta(days=retention_days), rolled_up_until)
        async with self._session_factory() as db:
            flagged = exists().where(
                RollupDirtyBucket.bucket >= TelemetryPartition.range_start,
                RollupDirtyBucket.bucket < TelemetryPartition.range_end,
            )
            rows = (
                await db.execute(
                    select(TelemetryPartition.table_name, flagged.label("flagged"))
                    .where(TelemetryPartition.range_end <= cutoff)
                    .order_by(TelemetryPartition.range_start.asc())
                )
            ).all()

        expired = []
        for name, is_flagged in rows:
            if is_flagged:
                logger.warning(
                    "Keeping partition %s: late readings not rolled up yet", name
                )
                continue
            expired.append(name)

        dropped: list[str] = []
        for name in expired:
            await self.drop_partition(name)
            dropped.append(name)
        if dropped:
            logger.info("Retention dropped %d partition(s): %s", len(dropped), dropped)
        return dropped
