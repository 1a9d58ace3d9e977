"""
Alert engine: rule evaluation and the operator-facing alert surface.

For each accepted reading, loads the active rules whose scope covers the
unit (unit-specific, the unit's provider, or global), evaluates
``value <operator> threshold`` for every rule whose field is present, and
inserts one alert per (rule, unit, reading timestamp). The unique key on
alerts plus ``ON CONFLICT DO NOTHING`` is the deduplication: a repeated
trigger for the same key is skipped, not an error. Severity and value are
copied at trigger time.

A malformed rule (unknown field or operator) raises RuleEvaluationError
internally; it is logged and skipped so the reading is still ingested.

CHANGELOG:
- 2026-10-12: Add list/acknowledge for the dashboard surface
- 2026-10-09: Initial creation

TODO:
- None
"""

import datetime
import logging
import operator
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hvac_telemetry.db.models import READING_FIELDS, Alert, AlertRule
from hvac_telemetry.db.upsert import insert_for
from hvac_telemetry.errors import RuleEvaluationError
from hvac_telemetry.services.registry import UnitInfo
from hvac_telemetry.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

COMPARATORS = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "=": operator.eq,
    "!=": operator.ne,
}

# Evaluation order: unit-scoped rules first, then provider, then global.
_SCOPE_ORDER = {"unit": 0, "provider": 1, "global": 2}


@dataclass(frozen=True)
class TriggeredAlert:
    """Outcome of one rule firing for a reading.

    Attributes:
        rule_id: Rule that fired.
        value: Field value that triggered it.
        severity: Severity copied from the rule.
        created: False when an alert for the same key already existed.
    """

    rule_id: uuid.UUID
    value: float
    severity: str
    created: bool


async def active_rules_for(db: AsyncSession, unit: UnitInfo) -> list[AlertRule]:
    """Return active rules whose scope covers *unit*, most specific first."""
    stmt = select(AlertRule).where(
        AlertRule.is_active.is_(True),
        or_(
            AlertRule.serial_number == unit.serial_number,
            and_(
                AlertRule.serial_number.is_(None),
                AlertRule.provider_id == unit.provider_id,
            ),
            and_(AlertRule.serial_number.is_(None), AlertRule.provider_id.is_(None)),
        ),
    )
    rules = list((await db.execute(stmt)).scalars().all())
    rules.sort(key=lambda r: (_SCOPE_ORDER[r.scope], r.field_name, str(r.id)))
    return rules


def check_rule(rule: AlertRule, fields: dict[str, Any]) -> float | None:
    """Evaluate one rule against a reading.

    Returns:
        float | None: The triggering value, or None if the field is absent
        from the reading or the condition is false.

    Raises:
        RuleEvaluationError: If the rule names an unknown field or operator.
    """
    if rule.field_name not in READING_FIELDS:
        raise RuleEvaluationError(rule.id, f"unknown field '{rule.field_name}'")
    compare = COMPARATORS.get(rule.operator)
    if compare is None:
        raise RuleEvaluationError(rule.id, f"unknown operator '{rule.operator}'")

    raw = fields.get(rule.field_name)
    if raw is None:
        return None
    value = float(raw)
    return value if compare(value, float(rule.threshold_value)) else None


def _format_message(rule: AlertRule, value: float) -> str:
    return (
        f"{rule.name}: {rule.field_name}={value:g} "
        f"{rule.operator} {rule.threshold_value:g}"
    )


async def evaluate_reading(
    db: AsyncSession,
    unit: UnitInfo,
    ts: datetime.datetime,
    fields: dict[str, Any],
) -> list[TriggeredAlert]:
    """Evaluate all applicable rules for one reading. Does not commit.

    Only ever inserts into the alert table; rules and units are read-only.

    Args:
        db: Async database session (the ingest unit of work).
        unit: Registry view of the reading's unit.
        ts: Reading timestamp (becomes the alert's triggered_at).
        fields: Validated reading fields.

    Returns:
        list[TriggeredAlert]: One entry per rule whose condition held.
    """
    ts = ensure_utc(ts)
    triggered: list[TriggeredAlert] = []
    for rule in await active_rules_for(db, unit):
        try:
            value = check_rule(rule, fields)
        except RuleEvaluationError as exc:
            logger.warning("Skipping rule: %s", exc)
            continue
        if value is None:
            continue

        stmt = (
            insert_for(db, Alert)
            .values(
                id=uuid.uuid4(),
                rule_id=rule.id,
                serial_number=unit.serial_number,
                triggered_at=ts,
                triggered_value=value,
                severity=rule.severity,
                message=_format_message(rule, value),
                is_acknowledged=False,
            )
            .on_conflict_do_nothing(
                index_elements=["rule_id", "serial_number", "triggered_at"]
            )
        )
        result = await db.execute(stmt)
        created = result.rowcount == 1
        triggered.append(
            TriggeredAlert(rule_id=rule.id, value=value, severity=rule.severity, created=created)
        )
        if created:
            logger.info(
                "Alert raised: rule=%s unit=%s %s=%s severity=%s",
                rule.id,
                unit.serial_number,
                rule.field_name,
                value,
                rule.severity,
            )
    return triggered


async def list_alerts(
    db: AsyncSession,
    *,
    serial_number: str | None = None,
    acknowledged: bool | None = None,
    limit: int = 100,
) -> list[Alert]:
    """Return alerts, newest first, optionally filtered."""
    stmt = select(Alert).order_by(Alert.triggered_at.desc(), Alert.id.asc()).limit(limit)
    if serial_number is not None:
        stmt = stmt.where(Alert.serial_number == serial_number)
    if acknowledged is not None:
        stmt = stmt.where(Alert.is_acknowledged.is_(acknowledged))
    return list((await db.execute(stmt)).scalars().all())


async def acknowledge_alert(
    db: AsyncSession, alert_id: uuid.UUID, acknowledged_by: str | None = None
) -> Alert | None:
    """Mark an alert acknowledged. Acknowledging twice keeps the first ack.

    Returns:
        Alert | None: The alert, or None if it does not exist.
    """
    alert = await db.get(Alert, alert_id)
    if alert is None:
        return None
    if not alert.is_acknowledged:
        alert.is_acknowledged = True
        alert.acknowledged_at = utcnow()
        alert.acknowledged_by = acknowledged_by
        await db.commit()
        logger.info("Alert %s acknowledged by %s", alert_id, acknowledged_by)
    return alert
