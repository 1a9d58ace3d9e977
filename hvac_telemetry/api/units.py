"""
Unit endpoints: registry lookup and the current-state snapshot.

GET /v1/units/{serial} returns the registry view used for validation and
alert scoping. GET /v1/units/{serial}/current returns the materialized
current state, read through a Redis cache (key ``current:{serial}``) with
configurable TTL to keep dashboard polling off the database. The cache is
invalidated by the ingest path whenever a new reading is accepted, and a
repopulating write is dropped if a newer reading was committed meanwhile.

CHANGELOG:
- 2026-10-20: Version-guarded cache repopulation
- 2026-10-10: Serve current state from hvac_units instead of the raw table
- 2026-10-08: Initial creation

TODO:
- None
"""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from hvac_telemetry.api.deps import DbSession, get_app_settings
from hvac_telemetry.cache.redis_client import read_cached_state, write_cached_state
from hvac_telemetry.config import Settings
from hvac_telemetry.errors import UnknownUnit
from hvac_telemetry.services.current_state import load_current_state
from hvac_telemetry.services.registry import get_unit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/units", tags=["units"])


class UnitOut(BaseModel):
    """Registry view of a unit."""

    serial_number: str
    provider_id: str
    location_id: str
    is_active: bool
    fast_scan_until: datetime | None
    fast_scan_active: bool


class CurrentStateOut(BaseModel):
    """Latest materialized state of a unit."""

    serial_number: str
    last_telemetry_at: datetime | None
    uptime_days: int
    is_active: bool
    current_state: dict[str, Any]


@router.get("/{serial_number}", response_model=UnitOut)
async def unit_lookup(serial_number: str, db: DbSession) -> UnitOut:
    """Return the registry view of a unit.

    Raises:
        HTTPException: 404 if the unit is not registered.
    """
    try:
        unit = await get_unit(db, serial_number)
    except UnknownUnit as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    return UnitOut(
        serial_number=unit.serial_number,
        provider_id=unit.provider_id,
        location_id=unit.location_id,
        is_active=unit.is_active,
        fast_scan_until=unit.fast_scan_until,
        fast_scan_active=unit.fast_scan_active(),
    )


@router.get("/{serial_number}/current", response_model=CurrentStateOut)
async def current_state(
    serial_number: str,
    db: DbSession,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> dict:
    """Return the current-state snapshot for a unit.

    Falls back to the database on cache miss or Redis failure, then
    repopulates the cache (best-effort).

    Raises:
        HTTPException: 404 if the unit is not registered.
    """
    cached = await read_cached_state(serial_number)
    if cached is not None:
        return cached

    try:
        state = await load_current_state(db, serial_number)
    except UnknownUnit as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None

    await write_cached_state(serial_number, state, settings.cache_ttl_s)
    return state
