"""
Historical telemetry endpoints: raw range reads and rollup series.

GET /v1/units/{serial}/readings pages through raw readings in ``[start,
end)`` with an opaque cursor. GET /v1/units/{serial}/rollups returns the
hourly or daily summary rows of a unit over a range.

CHANGELOG:
- 2026-10-11: Rollup series from the hourly/daily tiers
- 2026-10-09: Initial creation (raw range reads)

TODO:
- None
"""

import logging
from datetime import date, datetime
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from hvac_telemetry.api.deps import DbSession
from hvac_telemetry.errors import UnknownUnit
from hvac_telemetry.services.registry import get_unit
from hvac_telemetry.services.rollup import TIER_CONFIG, query_rollups
from hvac_telemetry.services.telemetry_store import query_readings
from hvac_telemetry.timeutils import ensure_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/units", tags=["telemetry"])

VALID_TIERS = frozenset(TIER_CONFIG.keys())


# ---------------------------------------------------------------------------
# Pydantic response models
# ---------------------------------------------------------------------------


class ReadingOut(BaseModel):
    """One raw reading; absent fields are omitted."""

    ts: datetime
    fields: dict[str, Any]


class ReadingsResponse(BaseModel):
    """A page of raw readings.

    Attributes:
        serial_number: Queried unit.
        readings: Readings, oldest first.
        next_cursor: Pass back as ``cursor`` to fetch the next page; None
            when the range is exhausted.
    """

    serial_number: str
    readings: list[ReadingOut]
    next_cursor: str | None


class RollupOut(BaseModel):
    """One rollup bucket.

    Attributes:
        bucket: Hour start (hourly) or calendar date (daily), UTC.
        metrics: ``{field: {"min", "max", "avg"}}``.
        sample_count: Number of raw readings summarised.
    """

    bucket: datetime | date
    metrics: dict[str, dict[str, float]]
    sample_count: int


class RollupsResponse(BaseModel):
    """Response model for the rollups endpoint."""

    serial_number: str
    tier: str
    rollups: list[RollupOut]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


async def _require_unit(db: DbSession, serial_number: str) -> None:
    try:
        await get_unit(db, serial_number)
    except UnknownUnit as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None


def _check_range(start: datetime, end: datetime) -> None:
    if ensure_utc(end) <= ensure_utc(start):
        raise HTTPException(status_code=422, detail="'end' must be after 'start'.")


@router.get("/{serial_number}/readings", response_model=ReadingsResponse)
async def get_readings(
    serial_number: str,
    db: DbSession,
    start: Annotated[datetime, Query(description="Inclusive lower bound (UTC).")],
    end: Annotated[datetime, Query(description="Exclusive upper bound (UTC).")],
    cursor: Annotated[str | None, Query(description="Resume cursor.")] = None,
    limit: Annotated[int, Query(ge=1, le=10000)] = 1000,
) -> ReadingsResponse:
    """Return raw readings of a unit in ``[start, end)``.

    Raises:
        HTTPException: 404 if the unit is unknown, 422 on an invalid range
            or cursor.
    """
    _check_range(start, end)
    await _require_unit(db, serial_number)
    try:
        page = await query_readings(
            db, serial_number, start, end, cursor=cursor, limit=limit
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None

    logger.debug(
        "Readings query: unit=%s start=%s end=%s rows=%d",
        serial_number,
        start.isoformat(),
        end.isoformat(),
        len(page.readings),
    )
    return ReadingsResponse(
        serial_number=serial_number,
        readings=[ReadingOut(ts=r.ts, fields=r.fields) for r in page.readings],
        next_cursor=page.next_cursor,
    )


@router.get("/{serial_number}/rollups", response_model=RollupsResponse)
async def get_rollups(
    serial_number: str,
    db: DbSession,
    tier: Annotated[str, Query(description="Rollup tier: hourly or daily.")],
    start: Annotated[datetime, Query(description="Inclusive lower bound (UTC).")],
    end: Annotated[datetime, Query(description="Exclusive upper bound (UTC).")],
) -> RollupsResponse:
    """Return rollup rows of a unit for the requested tier.

    Raises:
        HTTPException: 422 if tier is not a valid value or the range is
            empty, 404 if the unit is unknown.
    """
    if tier not in VALID_TIERS:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid tier '{tier}'. Must be one of: {sorted(VALID_TIERS)}.",
        )
    _check_range(start, end)
    await _require_unit(db, serial_number)

    rows = await query_rollups(db, serial_number, tier, start, end)

    logger.debug("Rollups query: unit=%s tier=%s rows=%d", serial_number, tier, len(rows))
    return RollupsResponse(
        serial_number=serial_number,
        tier=tier,
        rollups=[RollupOut(**row) for row in rows],
    )
