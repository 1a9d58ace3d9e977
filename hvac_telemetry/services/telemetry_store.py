"""
Raw telemetry store.

Append-only storage of individual readings in monthly partition tables,
keyed by (serial_number, ts). Inserts use ``ON CONFLICT DO NOTHING`` so a
repeated reading never produces a second row; the caller learns about it
through DuplicateReading. Range reads walk the partitions overlapping the
requested window in order and resume from an opaque cursor.

CHANGELOG:
- 2026-10-09: Keyset cursor for restartable range reads
- 2026-10-07: Initial creation

TODO:
- None
"""

import base64
import datetime
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hvac_telemetry.db.models import READING_FIELDS
from hvac_telemetry.db.partitions import partition_table
from hvac_telemetry.db.upsert import insert_for
from hvac_telemetry.errors import DuplicateReading
from hvac_telemetry.services.partitions import partitions_for_range
from hvac_telemetry.timeutils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reading:
    """One stored telemetry reading.

    Attributes:
        serial_number: Unit serial number.
        ts: Reading timestamp (UTC).
        fields: Non-null field values keyed by field name.
    """

    serial_number: str
    ts: datetime.datetime
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> "Reading":
        """Build a Reading from a partition-table row mapping."""
        values = {
            name: row[name] for name in READING_FIELDS if row.get(name) is not None
        }
        return cls(serial_number=row["serial_number"], ts=row["ts"], fields=values)


@dataclass(frozen=True)
class ReadingPage:
    """A page of readings plus the cursor to resume after it."""

    readings: list[Reading]
    next_cursor: str | None


def encode_cursor(ts: datetime.datetime) -> str:
    """Encode the last returned timestamp as an opaque cursor."""
    return base64.urlsafe_b64encode(ensure_utc(ts).isoformat().encode()).decode()


def decode_cursor(cursor: str) -> datetime.datetime:
    """Decode a cursor produced by :func:`encode_cursor`.

    Raises:
        ValueError: If the cursor is malformed.
    """
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        return ensure_utc(datetime.datetime.fromisoformat(raw))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"Invalid cursor: {cursor!r}") from exc


async def insert_reading(
    db: AsyncSession,
    serial_number: str,
    ts: datetime.datetime,
    fields: dict[str, Any],
) -> None:
    """Insert one reading into its month's partition.

    The partition must already exist. Does not commit.

    Raises:
        DuplicateReading: If (serial_number, ts) is already stored.
    """
    ts = ensure_utc(ts)
    table = partition_table(ts)
    values = {name: fields.get(name) for name in READING_FIELDS}
    stmt = (
        insert_for(db, table)
        .values(serial_number=serial_number, ts=ts, **values)
        .on_conflict_do_nothing(index_elements=["serial_number", "ts"])
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        raise DuplicateReading(serial_number, ts)


async def get_reading(
    db: AsyncSession, serial_number: str, ts: datetime.datetime
) -> Reading | None:
    """Fetch a single reading, or None if absent (or its partition is gone)."""
    ts = ensure_utc(ts)
    partitions = await partitions_for_range(db, ts, ts + datetime.timedelta(microseconds=1))
    if not partitions:
        return None
    table = partition_table(partitions[0].range_start)
    row = (
        await db.execute(
            select(table).where(table.c.serial_number == serial_number, table.c.ts == ts)
        )
    ).mappings().first()
    return Reading.from_row(row) if row is not None else None


async def query_readings(
    db: AsyncSession,
    serial_number: str,
    start: datetime.datetime,
    end: datetime.datetime,
    *,
    cursor: str | None = None,
    limit: int = 1000,
) -> ReadingPage:
    """Return readings for a unit in ``[start, end)``, oldest first.

    Args:
        db: Async database session.
        serial_number: Unit serial number.
        start: Inclusive lower bound.
        end: Exclusive upper bound.
        cursor: Resume after the reading this cursor points at.
        limit: Page size.

    Returns:
        ReadingPage: Up to *limit* readings and the cursor for the next
        page (None when the range is exhausted).
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    after = decode_cursor(cursor) if cursor else None

    readings: list[Reading] = []
    for partition in await partitions_for_range(db, start, end):
        if after is not None and partition.range_end <= after:
            continue
        table = partition_table(partition.range_start)
        stmt = (
            select(table)
            .where(
                table.c.serial_number == serial_number,
                table.c.ts >= start,
                table.c.ts < end,
            )
            .order_by(table.c.ts.asc())
            .limit(limit - len(readings) + 1)
        )
        if after is not None:
            stmt = stmt.where(table.c.ts > after)
        rows = (await db.execute(stmt)).mappings().all()
        readings.extend(Reading.from_row(row) for row in rows)
        if len(readings) > limit:
            break

    if len(readings) > limit:
        page = readings[:limit]
        return ReadingPage(readings=page, next_cursor=encode_cursor(page[-1].ts))
    return ReadingPage(readings=readings, next_cursor=None)


async def readings_in_window(
    db: AsyncSession,
    start: datetime.datetime,
    end: datetime.datetime,
) -> list[Reading]:
    """Return every reading of every unit in ``[start, end)``.

    Ordered by (serial_number, ts) so aggregation over the result is
    deterministic. Used by the background rollup engine only.
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    readings: list[Reading] = []
    for partition in await partitions_for_range(db, start, end):
        table = partition_table(partition.range_start)
        stmt = (
            select(table)
            .where(table.c.ts >= start, table.c.ts < end)
            .order_by(table.c.serial_number.asc(), table.c.ts.asc())
        )
        rows = (await db.execute(stmt)).mappings().all()
        readings.extend(Reading.from_row(row) for row in rows)
    readings.sort(key=lambda r: (r.serial_number, r.ts))
    return readings


async def earliest_reading_ts(db: AsyncSession) -> datetime.datetime | None:
    """Return the timestamp of the oldest retained reading, if any."""
    for partition in await partitions_for_range(db, None, None):
        table = partition_table(partition.range_start)
        oldest = (await db.execute(select(func.min(table.c.ts)))).scalar_one_or_none()
        if oldest is not None:
            return ensure_utc(oldest)
    return None
