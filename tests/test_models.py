"""
Tests for the ORM models, the reading field catalog and partition tables.

Validates table names, primary keys, the alert dedup unique key, rule
scope resolution, the UTC datetime type and the runtime partition table
layout.

CHANGELOG:
- 2026-10-09: Partition table layout tests
- 2026-10-05: Initial creation

TODO:
- None
"""

import datetime
from datetime import UTC

import pytest
from sqlalchemy import Double, Integer, SmallInteger, inspect
from sqlalchemy.dialects import postgresql, sqlite

from hvac_telemetry.db.models import (
    COUNTER,
    FLAG,
    READING_FIELDS,
    ROLLUP_FIELDS,
    Alert,
    AlertRule,
    Base,
    HvacUnit,
    Refrigerant,
    UTCDateTime,
)
from hvac_telemetry.db.partitions import (
    is_partition_name,
    partition_metadata,
    partition_name,
    partition_table,
)


class TestFieldCatalog:
    """The reading field catalog shared by validation, rollups and rules."""

    def test_catalog_has_all_reading_fields(self) -> None:
        assert len(READING_FIELDS) == 25
        assert sum(1 for kind in READING_FIELDS.values() if kind == FLAG) == 8
        assert READING_FIELDS["uptime_days"] == COUNTER

    def test_rollup_fields_exclude_the_counter(self) -> None:
        assert "uptime_days" not in ROLLUP_FIELDS
        assert len(ROLLUP_FIELDS) == 24

    def test_refrigerant_enum_has_fourteen_values(self) -> None:
        assert len(Refrigerant) == 14
        assert Refrigerant("R454B") is Refrigerant.R454B


class TestTables:
    """Static tables managed by Base.metadata."""

    def test_static_tables_registered(self) -> None:
        assert set(Base.metadata.tables) == {
            "hvac_units",
            "hvac_telemetry_hourly",
            "hvac_telemetry_daily",
            "alert_rules",
            "alerts",
            "telemetry_partitions",
            "rollup_watermarks",
            "pending_side_effects",
            "rollup_dirty_buckets",
        }

    def test_unit_primary_key_is_serial_number(self) -> None:
        pk = [col.name for col in inspect(HvacUnit).primary_key]
        assert pk == ["serial_number"]

    def test_alert_unique_on_rule_unit_timestamp(self) -> None:
        constraints = [
            c for c in Alert.__table__.constraints if c.name == "uq_alerts_rule_unit_ts"
        ]
        assert len(constraints) == 1
        assert [col.name for col in constraints[0].columns] == [
            "rule_id",
            "serial_number",
            "triggered_at",
        ]

    def test_partition_tables_not_in_static_metadata(self) -> None:
        partition_table(datetime.datetime(2026, 3, 5, tzinfo=UTC))
        assert "hvac_telemetry_2026_03" not in Base.metadata.tables


class TestRuleScope:
    """AlertRule.scope resolution."""

    @pytest.mark.parametrize(
        ("provider_id", "serial_number", "expected"),
        [
            (None, None, "global"),
            ("prov-1", None, "provider"),
            (None, "SN-1", "unit"),
            ("prov-1", "SN-1", "unit"),
        ],
    )
    def test_scope(
        self, provider_id: str | None, serial_number: str | None, expected: str
    ) -> None:
        rule = AlertRule(provider_id=provider_id, serial_number=serial_number)
        assert rule.scope == expected


class TestUTCDateTime:
    """UTCDateTime stores naive UTC on SQLite and always loads aware UTC."""

    def test_sqlite_bind_strips_tz_after_conversion(self) -> None:
        value = datetime.datetime(2026, 1, 1, 12, tzinfo=datetime.timezone(datetime.timedelta(hours=2)))
        bound = UTCDateTime().process_bind_param(value, sqlite.dialect())
        assert bound == datetime.datetime(2026, 1, 1, 10)
        assert bound.tzinfo is None

    def test_postgres_bind_keeps_tz(self) -> None:
        value = datetime.datetime(2026, 1, 1, 12, tzinfo=UTC)
        bound = UTCDateTime().process_bind_param(value, postgresql.dialect())
        assert bound.tzinfo is not None

    def test_result_is_aware(self) -> None:
        loaded = UTCDateTime().process_result_value(
            datetime.datetime(2026, 1, 1, 10), sqlite.dialect()
        )
        assert loaded == datetime.datetime(2026, 1, 1, 10, tzinfo=UTC)


class TestPartitionTables:
    """Monthly partition naming and column layout."""

    def test_partition_name_uses_utc_month(self) -> None:
        ts = datetime.datetime(2026, 2, 1, 0, 30, tzinfo=datetime.timezone(datetime.timedelta(hours=1)))
        assert partition_name(ts) == "hvac_telemetry_2026_01"

    def test_is_partition_name(self) -> None:
        assert is_partition_name("hvac_telemetry_2026_01")
        assert not is_partition_name("hvac_telemetry_hourly")
        assert not is_partition_name("hvac_telemetry_daily")

    def test_partition_table_is_memoized(self) -> None:
        ts = datetime.datetime(2026, 4, 2, tzinfo=UTC)
        assert partition_table(ts) is partition_table(ts)
        assert "hvac_telemetry_2026_04" in partition_metadata.tables

    def test_partition_columns(self) -> None:
        table = partition_table(datetime.datetime(2026, 5, 1, tzinfo=UTC))
        assert [col.name for col in table.primary_key.columns] == ["serial_number", "ts"]
        assert isinstance(table.c.ambient_temp.type, Double)
        assert isinstance(table.c.pan_wet.type, SmallInteger)
        assert isinstance(table.c.uptime_days.type, Integer)
        assert set(READING_FIELDS) <= set(table.c.keys())
