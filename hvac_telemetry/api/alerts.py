"""
Alert endpoints for the operator dashboard.

GET /v1/alerts lists alerts newest first, filterable by unit and
acknowledgement state. POST /v1/alerts/{id}/acknowledge marks one alert
acknowledged; acknowledging an already-acknowledged alert keeps the first
acknowledgement.

CHANGELOG:
- 2026-10-12: Initial creation

TODO:
- None
"""

import logging
import uuid
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from hvac_telemetry.api.deps import DbSession
from hvac_telemetry.services.alerts import acknowledge_alert, list_alerts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/alerts", tags=["alerts"])


class AlertOut(BaseModel):
    """Alert as shown to operators."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    rule_id: uuid.UUID
    serial_number: str
    triggered_at: datetime
    triggered_value: float
    severity: str
    message: str | None
    is_acknowledged: bool
    acknowledged_at: datetime | None
    acknowledged_by: str | None


class AcknowledgeIn(BaseModel):
    """Acknowledgement request body."""

    acknowledged_by: str | None = Field(default=None, max_length=255)


@router.get("", response_model=list[AlertOut])
async def get_alerts(
    db: DbSession,
    serial: Annotated[str | None, Query(description="Filter by unit serial.")] = None,
    acknowledged: Annotated[bool | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[AlertOut]:
    """List alerts, newest first."""
    alerts = await list_alerts(
        db, serial_number=serial, acknowledged=acknowledged, limit=limit
    )
    return [AlertOut.model_validate(alert) for alert in alerts]


@router.post("/{alert_id}/acknowledge", response_model=AlertOut)
async def post_acknowledge(
    alert_id: uuid.UUID,
    db: DbSession,
    body: AcknowledgeIn | None = None,
) -> AlertOut:
    """Acknowledge an alert.

    Raises:
        HTTPException: 404 if the alert does not exist.
    """
    acknowledged_by = body.acknowledged_by if body is not None else None
    alert = await acknowledge_alert(db, alert_id, acknowledged_by)
    if alert is None:
        raise HTTPException(status_code=404, detail=f"Alert '{alert_id}' not found.")
    return AlertOut.model_validate(alert)
