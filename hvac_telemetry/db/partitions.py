"""
Monthly raw-telemetry partition tables.

Raw readings are segmented by calendar month into physical tables named
``hvac_telemetry_YYYY_MM`` that all share the column layout below. Table
objects are built on demand and registered on a dedicated MetaData so that
``Base.metadata.create_all`` and Alembic never try to manage them; the
partition manager service creates and drops them at runtime.

CHANGELOG:
- 2026-10-07: Initial creation
"""

import datetime
import re

from sqlalchemy import (
    Column,
    Double,
    Index,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
)

from hvac_telemetry.db.models import COUNTER, FLAG, READING_FIELDS, UTCDateTime
from hvac_telemetry.timeutils import month_start

PARTITION_PREFIX = "hvac_telemetry_"
_PARTITION_RE = re.compile(rf"^{PARTITION_PREFIX}\d{{4}}_\d{{2}}$")

partition_metadata = MetaData()


def partition_name(ts: datetime.datetime) -> str:
    """Return the partition table name covering *ts*."""
    start = month_start(ts)
    return f"{PARTITION_PREFIX}{start.year:04d}_{start.month:02d}"


def _reading_columns() -> list[Column]:
    columns: list[Column] = [
        Column("serial_number", String(100), primary_key=True, nullable=False),
        Column("ts", UTCDateTime, primary_key=True, nullable=False),
    ]
    for name, kind in READING_FIELDS.items():
        if kind == FLAG:
            col_type = SmallInteger
        elif kind == COUNTER:
            col_type = Integer
        else:
            col_type = Double
        columns.append(Column(name, col_type, nullable=True))
    return columns


def partition_table(ts: datetime.datetime) -> Table:
    """Return the Table object for the month containing *ts*.

    The table is not created in the database; see
    :meth:`hvac_telemetry.services.partitions.PartitionManager.ensure_partition`.
    """
    name = partition_name(ts)
    existing = partition_metadata.tables.get(name)
    if existing is not None:
        return existing
    return Table(
        name,
        partition_metadata,
        *_reading_columns(),
        Index(f"{name}_ts_idx", "ts"),
    )


def is_partition_name(name: str) -> bool:
    """Return True if *name* is a monthly partition table name."""
    return _PARTITION_RE.match(name) is not None
