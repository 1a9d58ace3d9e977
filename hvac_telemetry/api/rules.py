"""
Alert rule management endpoints.

GET/POST /v1/rules, PATCH /v1/rules/{id} and POST /v1/rules/{id}/deactivate.
Definitions are validated by the rules service: an unknown field, operator
or severity is a 422; a unit scope naming an unregistered unit is a 404.

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
from hvac_telemetry.db.models import AlertRule
from hvac_telemetry.errors import UnknownUnit
from hvac_telemetry.services.rules import (
    create_rule,
    deactivate_rule,
    list_rules,
    update_rule,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/rules", tags=["rules"])


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class RuleIn(BaseModel):
    """New rule definition. No scope means global."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    field_name: str
    operator: str
    threshold_value: float = Field(allow_inf_nan=False)
    severity: str = "warning"
    provider_id: str | None = None
    serial_number: str | None = None


class RulePatch(BaseModel):
    """Partial rule update; only the fields sent are changed."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    field_name: str | None = None
    operator: str | None = None
    threshold_value: float | None = Field(default=None, allow_inf_nan=False)
    severity: str | None = None
    provider_id: str | None = None
    serial_number: str | None = None
    is_active: bool | None = None


class RuleOut(BaseModel):
    """Rule as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    field_name: str
    operator: str
    threshold_value: float
    severity: str
    provider_id: str | None
    serial_number: str | None
    scope: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _found(rule: AlertRule | None, rule_id: uuid.UUID) -> RuleOut:
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Rule '{rule_id}' not found.")
    return RuleOut.model_validate(rule)


@router.get("", response_model=list[RuleOut])
async def get_rules(
    db: DbSession,
    active_only: Annotated[bool, Query()] = False,
) -> list[RuleOut]:
    """List rules in creation order."""
    rules = await list_rules(db, active_only=active_only)
    return [RuleOut.model_validate(rule) for rule in rules]


@router.post("", response_model=RuleOut, status_code=201)
async def post_rule(body: RuleIn, db: DbSession) -> RuleOut:
    """Create a rule.

    Raises:
        HTTPException: 422 on an invalid definition, 404 if the unit scope
            names an unregistered unit.
    """
    try:
        rule = await create_rule(db, **body.model_dump())
    except UnknownUnit as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    return RuleOut.model_validate(rule)


@router.patch("/{rule_id}", response_model=RuleOut)
async def patch_rule(rule_id: uuid.UUID, body: RulePatch, db: DbSession) -> RuleOut:
    """Update a rule. Alerts already raised by it are not touched.

    Raises:
        HTTPException: 404 if the rule (or a unit scope) does not exist,
            422 on an invalid change.
    """
    try:
        rule = await update_rule(db, rule_id, **body.model_dump(exclude_unset=True))
    except UnknownUnit as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    return _found(rule, rule_id)


@router.post("/{rule_id}/deactivate", response_model=RuleOut)
async def post_deactivate(rule_id: uuid.UUID, db: DbSession) -> RuleOut:
    """Deactivate a rule so it is no longer evaluated.

    Raises:
        HTTPException: 404 if the rule does not exist.
    """
    return _found(await deactivate_rule(db, rule_id), rule_id)
