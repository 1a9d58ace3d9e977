"""
Alert rule management for the admin layer.

Create, update, deactivate and list threshold rules. Definitions are
validated against the reading field catalog and the operator/severity sets
so that rules reaching the alert engine are well-formed.

CHANGELOG:
- 2026-10-12: Initial creation
"""

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hvac_telemetry.db.models import (
    ALERT_OPERATORS,
    ALERT_SEVERITIES,
    READING_FIELDS,
    AlertRule,
    HvacUnit,
)
from hvac_telemetry.errors import UnknownUnit
from hvac_telemetry.timeutils import utcnow

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset(
    {
        "name",
        "description",
        "field_name",
        "operator",
        "threshold_value",
        "severity",
        "provider_id",
        "serial_number",
        "is_active",
    }
)
_NOT_NULL = frozenset(
    {"name", "field_name", "operator", "threshold_value", "severity", "is_active"}
)


async def _validate(db: AsyncSession, values: dict[str, Any]) -> None:
    """Reject definitions the alert engine could not evaluate.

    Raises:
        ValueError: Unknown field, operator or severity.
        UnknownUnit: Unit scope referencing an unregistered unit.
    """
    if "field_name" in values and values["field_name"] not in READING_FIELDS:
        raise ValueError(f"Unknown reading field '{values['field_name']}'")
    if "operator" in values and values["operator"] not in ALERT_OPERATORS:
        raise ValueError(f"Operator must be one of {list(ALERT_OPERATORS)}")
    if "severity" in values and values["severity"] not in ALERT_SEVERITIES:
        raise ValueError(f"Severity must be one of {list(ALERT_SEVERITIES)}")
    serial_number = values.get("serial_number")
    if serial_number is not None and await db.get(HvacUnit, serial_number) is None:
        raise UnknownUnit(serial_number)


async def create_rule(
    db: AsyncSession,
    *,
    name: str,
    field_name: str,
    operator: str,
    threshold_value: float,
    severity: str = "warning",
    description: str | None = None,
    provider_id: str | None = None,
    serial_number: str | None = None,
) -> AlertRule:
    """Create an active rule. No scope means global."""
    values = {
        "name": name,
        "description": description,
        "field_name": field_name,
        "operator": operator,
        "threshold_value": float(threshold_value),
        "severity": severity,
        "provider_id": provider_id,
        "serial_number": serial_number,
    }
    await _validate(db, values)
    rule = AlertRule(id=uuid.uuid4(), is_active=True, **values)
    db.add(rule)
    await db.commit()
    logger.info(
        "Created rule %s (%s %s %s, scope=%s)",
        rule.id,
        field_name,
        operator,
        threshold_value,
        rule.scope,
    )
    return rule


async def update_rule(
    db: AsyncSession, rule_id: uuid.UUID, **changes: Any
) -> AlertRule | None:
    """Apply changes to a rule. Existing alerts are not touched.

    Returns:
        AlertRule | None: The updated rule, or None if it does not exist.

    Raises:
        ValueError: For unknown attributes or invalid values.
    """
    unknown = set(changes) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update rule attributes: {sorted(unknown)}")
    nulled = sorted(key for key in _NOT_NULL & set(changes) if changes[key] is None)
    if nulled:
        raise ValueError(f"Rule attributes cannot be null: {nulled}")
    rule = await db.get(AlertRule, rule_id)
    if rule is None:
        return None
    await _validate(db, changes)
    for key, value in changes.items():
        setattr(rule, key, value)
    rule.updated_at = utcnow()
    await db.commit()
    logger.info("Updated rule %s: %s", rule_id, sorted(changes))
    return rule


async def deactivate_rule(db: AsyncSession, rule_id: uuid.UUID) -> AlertRule | None:
    """Deactivate a rule so it is no longer evaluated."""
    return await update_rule(db, rule_id, is_active=False)


async def list_rules(db: AsyncSession, *, active_only: bool = False) -> list[AlertRule]:
    """Return rules ordered by creation time."""
    stmt = select(AlertRule).order_by(AlertRule.created_at.asc(), AlertRule.name.asc())
    if active_only:
        stmt = stmt.where(AlertRule.is_active.is_(True))
    return list((await db.execute(stmt)).scalars().all())
