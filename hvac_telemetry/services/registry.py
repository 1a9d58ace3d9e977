"""
Unit registry service.

Bookkeeping for monitored units: lookup for validation and alert scoping,
installation (registration), decommissioning (deactivation, never delete)
and fast-scan window management. Current-state columns are owned by the
current-state materializer and are never written here.

CHANGELOG:
- 2026-10-11: Add fast-scan window management
- 2026-10-05: Initial creation

TODO:
- None
"""

import datetime
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hvac_telemetry.db.models import HvacUnit, Refrigerant
from hvac_telemetry.errors import UnknownUnit
from hvac_telemetry.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitInfo:
    """Registry view of a unit used for validation and alert scoping.

    Attributes:
        serial_number: Unit serial number.
        provider_id: Owning service provider reference.
        location_id: Owning location reference.
        is_active: False once the unit has been decommissioned.
        fast_scan_until: End of the fast-scan window, if one is set.
    """

    serial_number: str
    provider_id: str
    location_id: str
    is_active: bool
    fast_scan_until: datetime.datetime | None

    def fast_scan_active(self, now: datetime.datetime | None = None) -> bool:
        """Return True while the unit's fast-scan window is open."""
        if self.fast_scan_until is None:
            return False
        return ensure_utc(now or utcnow()) < self.fast_scan_until

    @classmethod
    def from_unit(cls, unit: HvacUnit) -> "UnitInfo":
        """Build a UnitInfo from an ORM row."""
        return cls(
            serial_number=unit.serial_number,
            provider_id=unit.provider_id,
            location_id=unit.location_id,
            is_active=unit.is_active,
            fast_scan_until=unit.fast_scan_until if unit.fast_scan_enabled else None,
        )


async def _load_unit(
    db: AsyncSession, serial_number: str, *, for_update: bool = False
) -> HvacUnit:
    stmt = select(HvacUnit).where(HvacUnit.serial_number == serial_number)
    if for_update:
        stmt = stmt.with_for_update()
    unit = (await db.execute(stmt)).scalar_one_or_none()
    if unit is None:
        raise UnknownUnit(serial_number)
    return unit


async def get_unit(db: AsyncSession, serial_number: str) -> UnitInfo:
    """Look up a unit regardless of its active flag.

    Raises:
        UnknownUnit: If no unit with this serial number is registered.
    """
    return UnitInfo.from_unit(await _load_unit(db, serial_number))


async def require_active_unit(
    db: AsyncSession, serial_number: str, *, lock: bool = False
) -> HvacUnit:
    """Return the unit row for ingestion, rejecting unknown/inactive units.

    Args:
        db: Async database session.
        serial_number: Unit serial number.
        lock: Take a row lock (SELECT ... FOR UPDATE) so that writers for
            the same unit serialize across processes. No-op on SQLite.

    Raises:
        UnknownUnit: If the unit is absent or deactivated.
    """
    unit = await _load_unit(db, serial_number, for_update=lock)
    if not unit.is_active:
        raise UnknownUnit(serial_number, reason="inactive")
    return unit


async def register_unit(
    db: AsyncSession,
    *,
    serial_number: str,
    location_id: str,
    provider_id: str,
    refrigerant_type: Refrigerant = Refrigerant.R410A,
    air_handler_id: str | None = None,
    compressor_id: str | None = None,
    installed_by: str | None = None,
    installation_date: datetime.date | None = None,
    installation_notes: str | None = None,
) -> HvacUnit:
    """Register a newly installed unit.

    Raises:
        ValueError: If the serial number is already registered.
    """
    existing = await db.get(HvacUnit, serial_number)
    if existing is not None:
        raise ValueError(f"Unit '{serial_number}' is already registered")

    unit = HvacUnit(
        serial_number=serial_number,
        location_id=location_id,
        provider_id=provider_id,
        refrigerant_type=refrigerant_type,
        air_handler_id=air_handler_id,
        compressor_id=compressor_id,
        installed_by=installed_by,
        installation_date=installation_date,
        installation_notes=installation_notes,
        is_active=True,
        uptime_days=0,
    )
    db.add(unit)
    await db.commit()
    logger.info("Registered unit %s (provider=%s)", serial_number, provider_id)
    return unit


async def deactivate_unit(db: AsyncSession, serial_number: str) -> HvacUnit:
    """Mark a unit as decommissioned. Its history is kept."""
    unit = await _load_unit(db, serial_number)
    if unit.is_active:
        unit.is_active = False
        unit.updated_at = utcnow()
        await db.commit()
        logger.info("Deactivated unit %s", serial_number)
    return unit


async def set_fast_scan(
    db: AsyncSession, serial_number: str, until: datetime.datetime | None
) -> HvacUnit:
    """Open a fast-scan window ending at *until*, or close it with None."""
    unit = await _load_unit(db, serial_number)
    unit.fast_scan_enabled = until is not None
    unit.fast_scan_until = ensure_utc(until) if until is not None else None
    unit.updated_at = utcnow()
    await db.commit()
    logger.info("Fast-scan for unit %s set until %s", serial_number, until)
    return unit
