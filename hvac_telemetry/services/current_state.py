"""
Current-state materializer.

Keeps each unit's latest-known snapshot, last-telemetry timestamp and
uptime counter in step with accepted readings. The update is a
compare-and-set guarded on ``last_telemetry_at < ts``: a reading that is
older than the snapshot already stored never overwrites it, whatever order
concurrent writers finish in.

CHANGELOG:
- 2026-10-08: Initial creation
"""

import datetime
import logging
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from hvac_telemetry.db.models import READING_FIELDS, HvacUnit
from hvac_telemetry.errors import UnknownUnit
from hvac_telemetry.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def build_snapshot(fields: dict[str, Any]) -> dict[str, Any]:
    """Return the snapshot for a reading: every catalog field, identity excluded."""
    return {name: fields.get(name) for name in READING_FIELDS}


async def apply_reading(
    db: AsyncSession,
    serial_number: str,
    ts: datetime.datetime,
    fields: dict[str, Any],
) -> bool:
    """Materialize a reading into its unit's current state. Does not commit.

    Args:
        db: Async database session (the ingest unit of work).
        serial_number: Unit serial number.
        ts: Reading timestamp.
        fields: Validated reading fields.

    Returns:
        bool: True if the snapshot was replaced, False if a reading with a
        later (or equal) timestamp is already materialized.
    """
    ts = ensure_utc(ts)
    uptime = fields.get("uptime_days")
    stmt = (
        update(HvacUnit)
        .where(
            HvacUnit.serial_number == serial_number,
            or_(HvacUnit.last_telemetry_at.is_(None), HvacUnit.last_telemetry_at < ts),
        )
        .values(
            current_state=build_snapshot(fields),
            last_telemetry_at=ts,
            uptime_days=uptime if uptime is not None else HvacUnit.uptime_days,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    applied = result.rowcount == 1
    if not applied:
        logger.debug(
            "Skipped stale current-state update for unit %s at %s",
            serial_number,
            ts.isoformat(),
        )
    return applied


async def load_current_state(db: AsyncSession, serial_number: str) -> dict[str, Any]:
    """Return a JSON-serialisable view of a unit's current state.

    Raises:
        UnknownUnit: If the unit is not registered.
    """
    unit = await db.get(HvacUnit, serial_number, populate_existing=True)
    if unit is None:
        raise UnknownUnit(serial_number)
    return {
        "serial_number": unit.serial_number,
        "last_telemetry_at": (
            unit.last_telemetry_at.isoformat() if unit.last_telemetry_at else None
        ),
        "uptime_days": unit.uptime_days,
        "is_active": unit.is_active,
        "current_state": unit.current_state or {},
    }
