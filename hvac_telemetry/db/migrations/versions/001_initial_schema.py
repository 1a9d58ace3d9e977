"""
Initial schema: unit registry, rollup tiers, alerting and bookkeeping.

Creates hvac_units, hvac_telemetry_hourly, hvac_telemetry_daily,
alert_rules, alerts, telemetry_partitions, rollup_watermarks and
pending_side_effects. The monthly raw partitions (hvac_telemetry_YYYY_MM)
are not created here; the partition manager materializes them at runtime.

Revision ID: 001
Revises: None
Create Date: 2026-10-05

CHANGELOG:
- 2026-10-14: Add pending_side_effects
- 2026-10-09: Add telemetry_partitions and rollup_watermarks
- 2026-10-05: Initial creation

TODO:
- None
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

from hvac_telemetry.db.models import JSONType, Refrigerant, UTCDateTime

# Revision identifiers used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", UTCDateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", UTCDateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create the static tables.

    Steps:
        1. hvac_units (registry and materialized current state).
        2. Rollup tiers keyed by (serial_number, bucket).
        3. alert_rules and alerts (unique per rule, unit and timestamp).
        4. Bookkeeping for partitions, watermarks and the repair pass.
    """
    op.create_table(
        "hvac_units",
        sa.Column("serial_number", sa.String(100), primary_key=True),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("air_handler_id", sa.String(64), nullable=True),
        sa.Column("compressor_id", sa.String(64), nullable=True),
        sa.Column("current_state", JSONType, nullable=True),
        sa.Column("last_telemetry_at", UTCDateTime(), nullable=True),
        sa.Column("installed_by", sa.String(255), nullable=True),
        sa.Column("installation_date", sa.Date(), nullable=True),
        sa.Column("installation_notes", sa.Text(), nullable=True),
        sa.Column(
            "refrigerant_type",
            sa.Enum(Refrigerant, name="refrigerant_enum", native_enum=False, length=10),
            nullable=False,
        ),
        sa.Column("fast_scan_enabled", sa.Boolean(), nullable=False),
        sa.Column("fast_scan_until", UTCDateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("uptime_days", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_hvac_units_location_id", "hvac_units", ["location_id"])
    op.create_index("ix_hvac_units_provider_id", "hvac_units", ["provider_id"])

    op.create_table(
        "hvac_telemetry_hourly",
        sa.Column(
            "serial_number",
            sa.String(100),
            sa.ForeignKey("hvac_units.serial_number"),
            primary_key=True,
        ),
        sa.Column("hour", UTCDateTime(), primary_key=True),
        sa.Column("metrics", JSONType, nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=False),
    )
    op.create_index("idx_telemetry_hourly_time", "hvac_telemetry_hourly", ["hour"])

    op.create_table(
        "hvac_telemetry_daily",
        sa.Column(
            "serial_number",
            sa.String(100),
            sa.ForeignKey("hvac_units.serial_number"),
            primary_key=True,
        ),
        sa.Column("day", sa.Date(), primary_key=True),
        sa.Column("metrics", JSONType, nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=False),
    )
    op.create_index("idx_telemetry_daily_date", "hvac_telemetry_daily", ["day"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("field_name", sa.String(100), nullable=False),
        sa.Column("operator", sa.String(10), nullable=False),
        sa.Column("threshold_value", sa.Double(), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=True),
        sa.Column(
            "serial_number",
            sa.String(100),
            sa.ForeignKey("hvac_units.serial_number"),
            nullable=True,
        ),
        sa.Column(
            "severity", sa.String(20), nullable=False, server_default=sa.text("'warning'")
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "operator IN ('>', '<', '>=', '<=', '=', '!=')", name="ck_alert_rules_operator"
        ),
        sa.CheckConstraint(
            "severity IN ('info', 'warning', 'critical')", name="ck_alert_rules_severity"
        ),
    )
    op.create_index("idx_rules_active", "alert_rules", ["is_active"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("rule_id", sa.Uuid(), sa.ForeignKey("alert_rules.id"), nullable=False),
        sa.Column(
            "serial_number",
            sa.String(100),
            sa.ForeignKey("hvac_units.serial_number"),
            nullable=False,
        ),
        sa.Column("triggered_at", UTCDateTime(), nullable=False),
        sa.Column("triggered_value", sa.Double(), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("is_acknowledged", sa.Boolean(), nullable=False),
        sa.Column("acknowledged_at", UTCDateTime(), nullable=True),
        sa.Column("acknowledged_by", sa.String(255), nullable=True),
        sa.UniqueConstraint(
            "rule_id", "serial_number", "triggered_at", name="uq_alerts_rule_unit_ts"
        ),
    )
    op.create_index("idx_alerts_serial", "alerts", ["serial_number", "triggered_at"])
    op.create_index("idx_alerts_unack", "alerts", ["is_acknowledged"])

    op.create_table(
        "telemetry_partitions",
        sa.Column("table_name", sa.String(63), primary_key=True),
        sa.Column("range_start", UTCDateTime(), nullable=False, unique=True),
        sa.Column("range_end", UTCDateTime(), nullable=False),
        sa.Column("created_at", UTCDateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "rollup_watermarks",
        sa.Column("tier", sa.String(16), primary_key=True),
        sa.Column("completed_until", UTCDateTime(), nullable=True),
        sa.Column("running_from", UTCDateTime(), nullable=True),
        sa.Column("updated_at", UTCDateTime(), nullable=True),
    )

    op.create_table(
        "pending_side_effects",
        sa.Column("serial_number", sa.String(100), primary_key=True),
        sa.Column("ts", UTCDateTime(), primary_key=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("recorded_at", UTCDateTime(), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    """Drop the static tables in dependency order.

    Runtime partition tables are left alone; drop them through the
    partition manager first.
    """
    op.drop_table("pending_side_effects")
    op.drop_table("rollup_watermarks")
    op.drop_table("telemetry_partitions")
    op.drop_index("idx_alerts_unack", table_name="alerts")
    op.drop_index("idx_alerts_serial", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("idx_rules_active", table_name="alert_rules")
    op.drop_table("alert_rules")
    op.drop_index("idx_telemetry_daily_date", table_name="hvac_telemetry_daily")
    op.drop_table("hvac_telemetry_daily")
    op.drop_index("idx_telemetry_hourly_time", table_name="hvac_telemetry_hourly")
    op.drop_table("hvac_telemetry_hourly")
    op.drop_index("ix_hvac_units_provider_id", table_name="hvac_units")
    op.drop_index("ix_hvac_units_location_id", table_name="hvac_units")
    op.drop_table("hvac_units")
