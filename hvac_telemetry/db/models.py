"""
SQLAlchemy ORM models for the telemetry core database.

Defines the unit registry, alert rules and alerts, the hourly/daily rollup
tiers and the bookkeeping tables used by partitioning, rollups and the
side-effect repair pass, plus the dirty-bucket ledger that sends late readings
back through the rollups. Raw readings live in monthly partition tables built
at runtime (see hvac_telemetry.db.partitions); their column set is declared
here in READING_FIELDS so that validation, the current-state snapshot,
rollups and rule checks all share one catalog.

CHANGELOG:
- 2026-10-20: Add rollup_dirty_buckets for late readings
- 2026-10-14: Add pending_side_effects for the repair pass
- 2026-10-09: Add rollup_watermarks and telemetry_partitions
- 2026-10-05: Initial creation (units, rules, alerts, rollups)

TODO:
- None
"""

import datetime
import enum
import uuid
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Double,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from hvac_telemetry.timeutils import ensure_utc, utcnow


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC datetime.

    PostgreSQL stores TIMESTAMPTZ natively; SQLite has no timezone support,
    so values are stored as naive UTC there and re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all telemetry core ORM models."""

    pass


# ---------------------------------------------------------------------------
# Reading field catalog
# ---------------------------------------------------------------------------

NUMERIC = "numeric"
FLAG = "flag"
COUNTER = "counter"

READING_FIELDS: dict[str, str] = {
    # Compressor readings
    "pressure_suction": NUMERIC,
    "pressure_liquid": NUMERIC,
    "pressure_heat": NUMERIC,
    "compressor_amps": NUMERIC,
    "fan_amps": NUMERIC,
    "reversing_temp": NUMERIC,
    "liquid_temp": NUMERIC,
    "suction_temp": NUMERIC,
    "compressor_temp": NUMERIC,
    "fan_temp": NUMERIC,
    "ambient_temp": NUMERIC,
    # Air handler readings
    "supply_air": NUMERIC,
    "return_air": NUMERIC,
    "final_rms_voltage": NUMERIC,
    "blower_amps": NUMERIC,
    "peak_pressure": NUMERIC,
    # Status flags
    "fuse_ok": FLAG,
    "float_sw_ok": FLAG,
    "call_4_cool": FLAG,
    "call_4_fan": FLAG,
    "call_4_heat": FLAG,
    "pan_wet": FLAG,
    "heartbeat_ok": FLAG,
    "a2l_detected": FLAG,
    "uptime_days": COUNTER,
}

# Fields summarised by the rollup engine (everything except the counter).
ROLLUP_FIELDS: tuple[str, ...] = tuple(
    name for name, kind in READING_FIELDS.items() if kind != COUNTER
)


class Refrigerant(str, enum.Enum):
    """Refrigerant types a unit can be charged with."""

    R134A = "R134A"
    R410A = "R410A"
    R32 = "R32"
    R454B = "R454B"
    R22 = "R22"
    R427A = "R427A"
    R407C = "R407C"
    R422B = "R422B"
    R438A = "R438A"
    R404A = "R404A"
    R448A = "R448A"
    R449A = "R449A"
    R454C = "R454C"
    R513A = "R513A"


ALERT_OPERATORS = (">", "<", ">=", "<=", "=", "!=")
ALERT_SEVERITIES = ("info", "warning", "critical")


# ---------------------------------------------------------------------------
# Unit registry
# ---------------------------------------------------------------------------


class HvacUnit(Base):
    """A monitored HVAC unit, keyed by its serial number.

    Provider, location and equipment identifiers are opaque references owned
    by external services. ``current_state``, ``last_telemetry_at`` and
    ``uptime_days`` are written only by the current-state materializer.
    """

    __tablename__ = "hvac_units"

    serial_number: Mapped[str] = mapped_column(String(100), primary_key=True)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    air_handler_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    compressor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    current_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    last_telemetry_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    installed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    installation_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    installation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    refrigerant_type: Mapped[Refrigerant] = mapped_column(
        Enum(Refrigerant, name="refrigerant_enum", native_enum=False, length=10),
        nullable=False,
        default=Refrigerant.R410A,
    )
    fast_scan_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fast_scan_until: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    uptime_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        """Return string representation of the HvacUnit."""
        return (
            f"HvacUnit(serial_number={self.serial_number!r}, "
            f"provider_id={self.provider_id!r}, is_active={self.is_active!r})"
        )


# ---------------------------------------------------------------------------
# Rollup tiers
# ---------------------------------------------------------------------------


class HourlyRollup(Base):
    """Per-hour min/max/avg summary of a unit's readings (kept 90 days).

    ``metrics`` format: ``{field_name: {"min": x, "max": y, "avg": z}}``.
    """

    __tablename__ = "hvac_telemetry_hourly"

    serial_number: Mapped[str] = mapped_column(
        String(100), ForeignKey("hvac_units.serial_number"), primary_key=True
    )
    hour: Mapped[datetime.datetime] = mapped_column(UTCDateTime, primary_key=True)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("idx_telemetry_hourly_time", "hour"),)


class DailyRollup(Base):
    """Per-day summary of a unit's readings (kept indefinitely)."""

    __tablename__ = "hvac_telemetry_daily"

    serial_number: Mapped[str] = mapped_column(
        String(100), ForeignKey("hvac_units.serial_number"), primary_key=True
    )
    day: Mapped[datetime.date] = mapped_column(Date, primary_key=True)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("idx_telemetry_daily_date", "day"),)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertRule(Base):
    """Threshold rule evaluated against incoming readings.

    A rule with neither ``provider_id`` nor ``serial_number`` is global.
    """

    __tablename__ = "alert_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    operator: Mapped[str] = mapped_column(String(10), nullable=False)
    threshold_value: Mapped[float] = mapped_column(Double, nullable=False)

    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    serial_number: Mapped[str | None] = mapped_column(
        String(100), ForeignKey("hvac_units.serial_number"), nullable=True
    )

    severity: Mapped[str] = mapped_column(
        String(20), nullable=False, default="warning", server_default=text("'warning'")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "operator IN ('>', '<', '>=', '<=', '=', '!=')", name="ck_alert_rules_operator"
        ),
        CheckConstraint(
            "severity IN ('info', 'warning', 'critical')", name="ck_alert_rules_severity"
        ),
        Index("idx_rules_active", "is_active"),
    )

    @property
    def scope(self) -> str:
        """Return ``unit``, ``provider`` or ``global``."""
        if self.serial_number is not None:
            return "unit"
        if self.provider_id is not None:
            return "provider"
        return "global"


class Alert(Base):
    """Alert raised by a rule for one reading.

    Only the acknowledgement columns change after insertion.
    """

    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("alert_rules.id"), nullable=False
    )
    serial_number: Mapped[str] = mapped_column(
        String(100), ForeignKey("hvac_units.serial_number"), nullable=False
    )
    triggered_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    triggered_value: Mapped[float] = mapped_column(Double, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "rule_id", "serial_number", "triggered_at", name="uq_alerts_rule_unit_ts"
        ),
        Index("idx_alerts_serial", "serial_number", "triggered_at"),
        Index("idx_alerts_unack", "is_acknowledged"),
    )


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


class TelemetryPartition(Base):
    """Catalog entry for one monthly raw-telemetry partition table."""

    __tablename__ = "telemetry_partitions"

    table_name: Mapped[str] = mapped_column(String(63), primary_key=True)
    range_start: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, unique=True
    )
    range_end: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )


class RollupWatermark(Base):
    """Progress of a rollup tier.

    ``completed_until`` is the end of the last bucket fully rolled up.
    ``running_from`` is set while a run is in flight and cleared when it
    finishes; finding it set at startup means the last run died midway.
    """

    __tablename__ = "rollup_watermarks"

    tier: Mapped[str] = mapped_column(String(16), primary_key=True)
    completed_until: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    running_from: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    updated_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)


class PendingSideEffect(Base):
    """Reading whose current-state/alert step failed after the raw write."""

    __tablename__ = "pending_side_effects"

    serial_number: Mapped[str] = mapped_column(String(100), primary_key=True)
    ts: Mapped[datetime.datetime] = mapped_column(UTCDateTime, primary_key=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )


class RollupDirtyBucket(Base):
    """Rollup bucket that received a reading after it was rolled up.

    Written in the ingest transaction. ``marks`` grows on every new mark so
    that a rollup run only clears the entry if no reading arrived while it
    was recomputing the bucket.
    """

    __tablename__ = "rollup_dirty_buckets"

    tier: Mapped[str] = mapped_column(String(16), primary_key=True)
    bucket: Mapped[datetime.datetime] = mapped_column(UTCDateTime, primary_key=True)
    marks: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    marked_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
