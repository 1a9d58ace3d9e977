"""
Rollup engine: hourly and daily statistical summaries of raw telemetry.

Compresses raw readings into per-(unit, hour) and per-(unit, day) rows
holding min/max/avg per field plus the sample count, and enforces the
retention of the hourly tier. Each tier keeps a watermark (end of the last
fully rolled-up bucket); every run re-rolls a short lookback before it to
absorb late readings, and works bucket by bucket with one commit per bucket
so that an aborted run never leaves a half-written bucket behind.

Readings that arrive after their bucket was rolled up (older than the
lookback, or during a run) are flagged by the ingest path in
rollup_dirty_buckets. Every run also re-rolls the flagged buckets of its
tier and clears the flags it has covered; raw retention keeps any partition
that still has flagged buckets.

Rows are upserted, never appended: re-running a bucket produces the same
row. Averages use math.fsum so results do not depend on row order.

Daily rows prefer raw readings. Once raw data for a day has been pruned, a
missing daily row is derived from that day's hourly rows (count-weighted
averages); an existing daily row is never overwritten from hourly data.

CHANGELOG:
- 2026-10-20: Re-roll buckets flagged by late readings
- 2026-10-13: Detect unfinished runs via running_from marker
- 2026-10-11: Daily tier with hourly fallback after raw pruning
- 2026-10-09: Replace continuous-aggregate queries with explicit rollups

TODO:
- None
"""

import datetime
import logging
import math
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hvac_telemetry.db.models import (
    ROLLUP_FIELDS,
    DailyRollup,
    HourlyRollup,
    RollupDirtyBucket,
    RollupWatermark,
)
from hvac_telemetry.db.upsert import insert_for
from hvac_telemetry.errors import RollupInconsistency
from hvac_telemetry.services.telemetry_store import (
    Reading,
    earliest_reading_ts,
    readings_in_window,
)
from hvac_telemetry.timeutils import (
    day_bounds,
    ensure_utc,
    floor_day,
    floor_hour,
    utcnow,
)

logger = logging.getLogger(__name__)

HOURLY = "hourly"
DAILY = "daily"


@dataclass(frozen=True)
class TierConfig:
    """Configuration for a rollup tier.

    Attributes:
        model: ORM class holding the tier's rows.
        bucket_column: Name of the bucket key column.
        bucket: Bucket width.
        floor: Maps a timestamp to the start of its bucket.
    """

    model: type
    bucket_column: str
    bucket: datetime.timedelta
    floor: Callable[[datetime.datetime], datetime.datetime]


TIER_CONFIG: dict[str, TierConfig] = {
    HOURLY: TierConfig(
        model=HourlyRollup,
        bucket_column="hour",
        bucket=datetime.timedelta(hours=1),
        floor=floor_hour,
    ),
    DAILY: TierConfig(
        model=DailyRollup,
        bucket_column="day",
        bucket=datetime.timedelta(days=1),
        floor=floor_day,
    ),
}


@dataclass(frozen=True)
class RollupReport:
    """Summary of one rollup run."""

    tier: str
    start: datetime.datetime | None
    end: datetime.datetime | None
    buckets: int = 0
    rows_written: int = 0
    late_buckets: int = 0


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def summarize(readings: Iterable[Reading]) -> tuple[dict[str, dict[str, float]], int]:
    """Compute min/max/avg per field over raw readings.

    Fields absent from every reading are left out of the metrics.

    Returns:
        tuple: ``(metrics, sample_count)``.
    """
    readings = list(readings)
    values: dict[str, list[float]] = defaultdict(list)
    for reading in readings:
        for name in ROLLUP_FIELDS:
            value = reading.fields.get(name)
            if value is not None:
                values[name].append(float(value))

    metrics = {
        name: {
            "min": min(series),
            "max": max(series),
            "avg": math.fsum(series) / len(series),
        }
        for name, series in values.items()
    }
    return metrics, len(readings)


def combine_hourly(
    rows: Iterable[HourlyRollup],
) -> tuple[dict[str, dict[str, float]], int]:
    """Merge hourly rows into one summary (count-weighted averages).

    Approximate when a field is missing from some readings of an hour; only
    used once the underlying raw data is gone.
    """
    rows = list(rows)
    mins: dict[str, list[float]] = defaultdict(list)
    maxs: dict[str, list[float]] = defaultdict(list)
    weighted: dict[str, list[float]] = defaultdict(list)
    weights: dict[str, list[int]] = defaultdict(list)
    for row in rows:
        for name, stats in row.metrics.items():
            mins[name].append(stats["min"])
            maxs[name].append(stats["max"])
            weighted[name].append(stats["avg"] * row.sample_count)
            weights[name].append(row.sample_count)

    metrics = {
        name: {
            "min": min(mins[name]),
            "max": max(maxs[name]),
            "avg": math.fsum(weighted[name]) / sum(weights[name]),
        }
        for name in mins
        if sum(weights[name]) > 0
    }
    return metrics, sum(row.sample_count for row in rows)


def _group_by_unit(readings: list[Reading]) -> dict[str, list[Reading]]:
    grouped: dict[str, list[Reading]] = defaultdict(list)
    for reading in readings:
        grouped[reading.serial_number].append(reading)
    return grouped


# ---------------------------------------------------------------------------
# Watermarks
# ---------------------------------------------------------------------------


def _check_previous_run(watermark: RollupWatermark | None) -> None:
    """Raise RollupInconsistency if the last run never completed."""
    if watermark is not None and watermark.running_from is not None:
        raise RollupInconsistency(watermark.tier, watermark.running_from)


async def get_watermark(db: AsyncSession, tier: str) -> datetime.datetime | None:
    """Return the end of the last fully rolled-up bucket of *tier*."""
    watermark = await db.get(RollupWatermark, tier, populate_existing=True)
    return watermark.completed_until if watermark is not None else None


async def rolled_up_until(db: AsyncSession) -> datetime.datetime | None:
    """Return the point up to which both tiers are complete."""
    hourly = await get_watermark(db, HOURLY)
    daily = await get_watermark(db, DAILY)
    if hourly is None or daily is None:
        return None
    return min(hourly, daily)


async def _save_watermark(
    db: AsyncSession,
    tier: str,
    *,
    completed_until: datetime.datetime | None,
    running_from: datetime.datetime | None,
) -> None:
    stmt = insert_for(db, RollupWatermark).values(
        tier=tier,
        completed_until=completed_until,
        running_from=running_from,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tier"],
        set_={
            "completed_until": stmt.excluded.completed_until,
            "running_from": stmt.excluded.running_from,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)
    await db.commit()


async def _plan_run(
    session_factory: async_sessionmaker[AsyncSession],
    tier: str,
    end: datetime.datetime,
    lookback: datetime.timedelta,
    floor,
) -> datetime.datetime | None:
    """Work out where a run starts and mark it as in progress.

    Returns None when there is nothing to roll up.
    """
    async with session_factory() as db:
        watermark = await db.get(RollupWatermark, tier)
        completed = watermark.completed_until if watermark is not None else None

        if completed is not None:
            start = floor(completed - lookback)
        else:
            oldest = await earliest_reading_ts(db)
            if tier == DAILY:
                hourly_oldest = (
                    await db.execute(select(func.min(HourlyRollup.hour)))
                ).scalar_one_or_none()
                candidates = [t for t in (oldest, hourly_oldest) if t is not None]
                oldest = min(candidates) if candidates else None
            start = floor(oldest) if oldest is not None else None

        try:
            _check_previous_run(watermark)
        except RollupInconsistency as exc:
            logger.warning("%s; recomputing instead of trusting partial output", exc)
            since = floor(exc.since)
            start = since if start is None else min(start, since)

        if start is None or start >= end:
            return None

        await _save_watermark(db, tier, completed_until=completed, running_from=start)
    return start


async def _finish_run(
    session_factory: async_sessionmaker[AsyncSession], tier: str, end: datetime.datetime
) -> None:
    async with session_factory() as db:
        completed = await get_watermark(db, tier)
        if completed is not None and completed > end:
            end = completed
        await _save_watermark(db, tier, completed_until=end, running_from=None)


# ---------------------------------------------------------------------------
# Late readings
# ---------------------------------------------------------------------------


async def mark_late_reading(db: AsyncSession, ts: datetime.datetime) -> list[str]:
    """Flag the buckets of *ts* that a rollup run has already passed.

    Runs inside the ingest transaction, after the raw insert, so the flag
    commits together with the reading. A bucket is flagged when it lies
    before the tier's watermark or while a run of the tier is in flight.
    The watermark rows are read FOR SHARE on PostgreSQL: a run cannot be
    marked as started between this check and the commit, so every reading
    is either flagged or visible to the next run. SQLite gets the same
    ordering from its single writer.

    Returns:
        list[str]: Tiers whose bucket was flagged.
    """
    ts = ensure_utc(ts)
    watermarks = (
        await db.execute(
            select(
                RollupWatermark.tier,
                RollupWatermark.completed_until,
                RollupWatermark.running_from,
            ).with_for_update(read=True)
        )
    ).all()

    marked: list[str] = []
    for tier, completed, running_from in watermarks:
        config = TIER_CONFIG.get(tier)
        if config is None:
            continue
        if running_from is None and (completed is None or ts >= completed):
            continue
        stmt = insert_for(db, RollupDirtyBucket).values(
            tier=tier, bucket=config.floor(ts), marks=1, marked_at=utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tier", "bucket"],
            set_={
                "marks": RollupDirtyBucket.marks + 1,
                "marked_at": stmt.excluded.marked_at,
            },
        )
        await db.execute(stmt)
        marked.append(tier)
    return marked


async def _dirty_buckets(
    session_factory: async_sessionmaker[AsyncSession],
    tier: str,
    end: datetime.datetime,
) -> dict[datetime.datetime, int]:
    """Return ``{bucket: marks}`` for the flagged buckets of *tier* before *end*."""
    async with session_factory() as db:
        rows = (
            await db.execute(
                select(RollupDirtyBucket.bucket, RollupDirtyBucket.marks).where(
                    RollupDirtyBucket.tier == tier, RollupDirtyBucket.bucket < end
                )
            )
        ).all()
    return {bucket: marks for bucket, marks in rows}


async def _clear_dirty(
    session_factory: async_sessionmaker[AsyncSession],
    tier: str,
    bucket: datetime.datetime,
    marks: int,
) -> None:
    # A reading flagged during the recompute bumped marks; keep its flag.
    async with session_factory() as db:
        await db.execute(
            delete(RollupDirtyBucket).where(
                RollupDirtyBucket.tier == tier,
                RollupDirtyBucket.bucket == bucket,
                RollupDirtyBucket.marks == marks,
            )
        )
        await db.commit()


async def _roll_buckets(
    session_factory: async_sessionmaker[AsyncSession],
    tier: str,
    start: datetime.datetime | None,
    end: datetime.datetime,
    roll_one: Callable[[datetime.datetime], Awaitable[int]],
) -> tuple[int, int, int]:
    """Roll every bucket of ``[start, end)`` plus the tier's flagged buckets.

    Returns:
        tuple: ``(buckets, rows_written, late_buckets)``.
    """
    config = TIER_CONFIG[tier]
    dirty = await _dirty_buckets(session_factory, tier, end)
    buckets = set(dirty)
    if start is not None:
        current = start
        while current < end:
            buckets.add(current)
            current += config.bucket

    rows = 0
    for bucket in sorted(buckets):
        rows += await roll_one(bucket)
        if bucket in dirty:
            await _clear_dirty(session_factory, tier, bucket, dirty[bucket])
    return len(buckets), rows, len(dirty)


# ---------------------------------------------------------------------------
# Hourly tier
# ---------------------------------------------------------------------------


async def rollup_hour(
    session_factory: async_sessionmaker[AsyncSession], hour: datetime.datetime
) -> int:
    """Recompute every unit's row for one hour from raw data and commit.

    Returns:
        int: Number of rows written.
    """
    hour = floor_hour(hour)
    async with session_factory() as db:
        readings = await readings_in_window(
            db, hour, hour + datetime.timedelta(hours=1)
        )
        grouped = _group_by_unit(readings)
        for serial_number, unit_readings in grouped.items():
            metrics, count = summarize(unit_readings)
            stmt = insert_for(db, HourlyRollup).values(
                serial_number=serial_number,
                hour=hour,
                metrics=metrics,
                sample_count=count,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["serial_number", "hour"],
                set_={
                    "metrics": stmt.excluded.metrics,
                    "sample_count": stmt.excluded.sample_count,
                },
            )
            await db.execute(stmt)
        await db.commit()
    return len(grouped)


async def rollup_hourly(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime.datetime | None = None,
    *,
    lookback_hours: int = 3,
) -> RollupReport:
    """Roll up every completed hour since the hourly watermark.

    Hours flagged by late readings are re-rolled in the same run.
    """
    end = floor_hour(now or utcnow())
    start = await _plan_run(
        session_factory, HOURLY, end, datetime.timedelta(hours=lookback_hours), floor_hour
    )

    async def _roll(bucket: datetime.datetime) -> int:
        return await rollup_hour(session_factory, bucket)

    buckets, rows, late = await _roll_buckets(session_factory, HOURLY, start, end, _roll)
    if start is not None:
        await _finish_run(session_factory, HOURLY, end)
    if buckets:
        logger.info(
            "Hourly rollup %s -> %s: %d bucket(s) (%d late), %d row(s)",
            start.isoformat() if start else "-",
            end.isoformat(),
            buckets,
            late,
            rows,
        )
    return RollupReport(
        tier=HOURLY,
        start=start,
        end=end,
        buckets=buckets,
        rows_written=rows,
        late_buckets=late,
    )


# ---------------------------------------------------------------------------
# Daily tier
# ---------------------------------------------------------------------------


async def rollup_day(
    session_factory: async_sessionmaker[AsyncSession], day: datetime.date
) -> int:
    """Recompute every unit's row for one day and commit.

    Returns:
        int: Number of rows written.
    """
    day_start, day_end = day_bounds(day)
    written = 0
    async with session_factory() as db:
        grouped = _group_by_unit(await readings_in_window(db, day_start, day_end))
        for serial_number, unit_readings in grouped.items():
            metrics, count = summarize(unit_readings)
            stmt = insert_for(db, DailyRollup).values(
                serial_number=serial_number, day=day, metrics=metrics, sample_count=count
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["serial_number", "day"],
                set_={
                    "metrics": stmt.excluded.metrics,
                    "sample_count": stmt.excluded.sample_count,
                },
            )
            await db.execute(stmt)
            written += 1

        # Raw data gone: derive missing daily rows from the hourly tier.
        hourly_rows = (
            await db.execute(
                select(HourlyRollup)
                .where(HourlyRollup.hour >= day_start, HourlyRollup.hour < day_end)
                .order_by(HourlyRollup.serial_number.asc(), HourlyRollup.hour.asc())
            )
        ).scalars().all()
        by_unit: dict[str, list[HourlyRollup]] = defaultdict(list)
        for row in hourly_rows:
            if row.serial_number not in grouped:
                by_unit[row.serial_number].append(row)
        for serial_number, rows in by_unit.items():
            metrics, count = combine_hourly(rows)
            stmt = (
                insert_for(db, DailyRollup)
                .values(
                    serial_number=serial_number, day=day, metrics=metrics, sample_count=count
                )
                .on_conflict_do_nothing(index_elements=["serial_number", "day"])
            )
            result = await db.execute(stmt)
            written += result.rowcount
        await db.commit()
    return written


async def rollup_daily(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime.datetime | None = None,
    *,
    lookback_days: int = 3,
) -> RollupReport:
    """Roll up every completed day since the daily watermark.

    Days flagged by late readings are re-rolled in the same run.
    """
    end = floor_day(now or utcnow())
    start = await _plan_run(
        session_factory, DAILY, end, datetime.timedelta(days=lookback_days), floor_day
    )

    async def _roll(bucket: datetime.datetime) -> int:
        return await rollup_day(session_factory, bucket.date())

    buckets, rows, late = await _roll_buckets(session_factory, DAILY, start, end, _roll)
    if start is not None:
        await _finish_run(session_factory, DAILY, end)
    if buckets:
        logger.info(
            "Daily rollup %s -> %s: %d bucket(s) (%d late), %d row(s)",
            start.date().isoformat() if start else "-",
            end.date().isoformat(),
            buckets,
            late,
            rows,
        )
    return RollupReport(
        tier=DAILY,
        start=start,
        end=end,
        buckets=buckets,
        rows_written=rows,
        late_buckets=late,
    )


# ---------------------------------------------------------------------------
# Retention and queries
# ---------------------------------------------------------------------------


async def enforce_hourly_retention(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime.datetime | None = None,
    *,
    retention_days: int = 90,
) -> int:
    """Delete hourly rows older than the retention window. Daily rows stay.

    Returns:
        int: Number of hourly rows deleted.
    """
    cutoff = ensure_utc(now or utcnow()) - datetime.timedelta(days=retention_days)
    async with session_factory() as db:
        result = await db.execute(
            delete(HourlyRollup).where(HourlyRollup.hour < cutoff)
        )
        await db.commit()
    if result.rowcount:
        logger.info("Hourly retention deleted %d row(s) before %s", result.rowcount, cutoff)
    return result.rowcount


async def query_rollups(
    db: AsyncSession,
    serial_number: str,
    tier: str,
    start: datetime.datetime,
    end: datetime.datetime,
) -> list[dict[str, Any]]:
    """Return a unit's rollup rows of *tier* in ``[start, end)``, oldest first.

    Raises:
        KeyError: If tier is not a valid TIER_CONFIG key.
    """
    config = TIER_CONFIG[tier]
    model = config.model
    column = getattr(model, config.bucket_column)
    lower: Any = ensure_utc(start)
    upper: Any = ensure_utc(end)
    if tier == DAILY:
        lower, upper = lower.date(), upper.date()

    stmt = (
        select(model)
        .where(model.serial_number == serial_number, column >= lower, column < upper)
        .order_by(column.asc())
    )
    rows = (await db.execute(stmt)).scalars().all()
    return [
        {
            "bucket": getattr(row, config.bucket_column),
            "metrics": row.metrics,
            "sample_count": row.sample_count,
        }
        for row in rows
    ]
