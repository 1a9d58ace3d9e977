"""
POST /v1/ingest endpoint for batch ingestion of HVAC unit readings.

Accepts a JSON payload with a list of readings, enforces batch size and
request body limits, validates every reading at the boundary (known fields
only, flags 0/1, finite numbers, non-negative uptime) and hands the batch
to the IngestionService. The response carries one status per reading in
input order plus the count of actually inserted rows.

CHANGELOG:
- 2026-10-10: Per-reading statuses instead of a single inserted count
- 2026-10-08: Initial creation

TODO:
- None
"""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hvac_telemetry.api.deps import get_app_settings, get_ingestion
from hvac_telemetry.config import Settings
from hvac_telemetry.services.ingestion import IngestionService, IngestStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["ingest"])

Numeric = Annotated[float | None, Field(allow_inf_nan=False)]
Flag = Annotated[int | None, Field(ge=0, le=1)]


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ReadingIn(BaseModel):
    """Single telemetry reading from an HVAC unit.

    Every measurement is optional; absent fields are stored as NULL and
    left out of rollups and rule checks.
    """

    model_config = ConfigDict(extra="forbid")

    serial_number: str = Field(min_length=1, max_length=100)
    ts: datetime

    # Compressor
    pressure_suction: Numeric = None
    pressure_liquid: Numeric = None
    pressure_heat: Numeric = None
    compressor_amps: Numeric = None
    fan_amps: Numeric = None
    reversing_temp: Numeric = None
    liquid_temp: Numeric = None
    suction_temp: Numeric = None
    compressor_temp: Numeric = None
    fan_temp: Numeric = None
    ambient_temp: Numeric = None

    # Air handler
    supply_air: Numeric = None
    return_air: Numeric = None
    final_rms_voltage: Numeric = None
    blower_amps: Numeric = None
    peak_pressure: Numeric = None

    # Status flags
    fuse_ok: Flag = None
    float_sw_ok: Flag = None
    call_4_cool: Flag = None
    call_4_fan: Flag = None
    call_4_heat: Flag = None
    pan_wet: Flag = None
    heartbeat_ok: Flag = None
    a2l_detected: Flag = None

    uptime_days: int | None = Field(default=None, ge=0)

    def measurements(self) -> dict[str, float | int]:
        """Return the measurements that are present."""
        return self.model_dump(exclude={"serial_number", "ts"}, exclude_none=True)


class IngestPayload(BaseModel):
    """Batch payload for the ingest endpoint."""

    readings: list[ReadingIn]


class ReadingResult(BaseModel):
    """Outcome for one reading of the batch."""

    serial_number: str
    ts: datetime
    status: IngestStatus
    alerts_created: int = 0
    deferred: bool = False
    detail: str | None = None


class IngestResponse(BaseModel):
    """Response from the ingest endpoint."""

    inserted: int
    results: list[ReadingResult]


# ---------------------------------------------------------------------------
# Route
# ---------------------------------------------------------------------------


@router.post("/ingest", response_model=IngestResponse)
async def ingest(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
    service: Annotated[IngestionService, Depends(get_ingestion)],
) -> IngestResponse:
    """Ingest a batch of HVAC readings.

    Args:
        request: The incoming FastAPI request.
        settings: Service configuration.
        service: Ingestion service.

    Returns:
        IngestResponse: Per-reading results and the inserted count.

    Raises:
        HTTPException: 400 on an invalid Content-Length header.
        HTTPException: 413 if the body exceeds MAX_REQUEST_BYTES or the
            batch exceeds MAX_READINGS_PER_REQUEST.
    """
    max_request_bytes = settings.max_request_bytes
    # Pre-check Content-Length before buffering
    content_length = request.headers.get("content-length")
    if content_length is not None:
        try:
            content_length_int = int(content_length)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail="Invalid Content-Length header.",
            ) from None
        if content_length_int > max_request_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request body exceeds limit of {max_request_bytes} bytes.",
            )

    body = await request.body()
    if len(body) > max_request_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Request body exceeds limit of {max_request_bytes} bytes.",
        )

    # Parse payload, converting Pydantic ValidationError to 422
    try:
        payload = IngestPayload.model_validate_json(body)
    except ValidationError as exc:
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors(include_url=False, include_context=False)},
        )

    if not payload.readings:
        return IngestResponse(inserted=0, results=[])

    max_readings = settings.max_readings_per_request
    if len(payload.readings) > max_readings:
        raise HTTPException(
            status_code=413,
            detail=f"Batch size {len(payload.readings)} exceeds limit of "
            f"{max_readings}. Split into smaller batches.",
        )

    results = await service.ingest_batch(
        (r.serial_number, r.ts, r.measurements()) for r in payload.readings
    )
    inserted = sum(1 for r in results if r.status is IngestStatus.INSERTED)
    logger.info("Ingest request: %d reading(s), %d inserted", len(results), inserted)

    return IngestResponse(
        inserted=inserted,
        results=[
            ReadingResult(
                serial_number=r.serial_number,
                ts=r.ts,
                status=r.status,
                alerts_created=r.alerts_created,
                deferred=r.deferred,
                detail=r.detail,
            )
            for r in results
        ],
    )
