"""
Tests for the rollup engine.

Tests verify:
- min/max/avg summaries, including count-weighted merging of hourly rows.
- Hourly and daily rollups are idempotent (re-running yields identical rows).
- Late readings inside the lookback are picked up by the next run; older
  late readings are flagged at ingest and re-rolled, and retention keeps
  their partition until that has happened.
- An unfinished previous run is detected and its range recomputed.
- Dropping a raw partition after rollup leaves both tiers unchanged, also
  when rollups are re-run; missing daily rows are derived from hourly rows.
- Hourly retention and rollup range queries.

CHANGELOG:
- 2026-10-20: Late readings beyond the lookback
- 2026-10-13: Unfinished-run recovery and retention-after-rollup tests
- 2026-10-11: Daily tier tests
- 2026-10-09: Initial creation

TODO:
- None
"""

import datetime
from datetime import UTC
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy import select

from hvac_telemetry.db.models import (
    DailyRollup,
    HourlyRollup,
    RollupDirtyBucket,
    RollupWatermark,
)
from hvac_telemetry.db.partitions import partition_name
from hvac_telemetry.services.ingestion import IngestionService, IngestStatus
from hvac_telemetry.services.rollup import (
    DAILY,
    HOURLY,
    combine_hourly,
    enforce_hourly_retention,
    get_watermark,
    query_rollups,
    rolled_up_until,
    rollup_daily,
    rollup_day,
    rollup_hour,
    rollup_hourly,
    summarize,
)
from hvac_telemetry.services.telemetry_store import Reading, insert_reading

DAY = datetime.date(2026, 3, 10)
NOW = datetime.datetime(2026, 3, 11, 2, 0, tzinfo=UTC)


def _at(hour: int, minute: int = 0, day: int = 10) -> datetime.datetime:
    return datetime.datetime(2026, 3, day, hour, minute, tzinfo=UTC)


async def _insert(session_factory, partitions, serial, ts, **fields) -> None:
    await partitions.ensure_partition(ts)
    async with session_factory() as db:
        await insert_reading(db, serial, ts, fields)
        await db.commit()


@pytest_asyncio.fixture()
async def seeded(session_factory, partitions, make_unit):
    """Two units with readings spread over two hours of DAY."""
    await make_unit("SN-A")
    await make_unit("SN-B")
    for ts, temp in [(_at(10, 5), 10.0), (_at(10, 20), 20.0), (_at(10, 50), 30.0)]:
        await _insert(session_factory, partitions, "SN-A", ts, ambient_temp=temp, pan_wet=0)
    await _insert(session_factory, partitions, "SN-A", _at(11, 15), ambient_temp=40.0)
    await _insert(session_factory, partitions, "SN-B", _at(10, 30), ambient_temp=5.0)


async def _snapshot(session_factory) -> tuple[list, list]:
    async with session_factory() as db:
        hourly = (
            await db.execute(
                select(HourlyRollup).order_by(HourlyRollup.serial_number, HourlyRollup.hour)
            )
        ).scalars().all()
        daily = (
            await db.execute(
                select(DailyRollup).order_by(DailyRollup.serial_number, DailyRollup.day)
            )
        ).scalars().all()
    return (
        [(r.serial_number, r.hour, r.metrics, r.sample_count) for r in hourly],
        [(r.serial_number, r.day, r.metrics, r.sample_count) for r in daily],
    )


class TestSummaries:
    """Pure aggregation helpers."""

    def test_summarize(self) -> None:
        readings = [
            Reading("SN-A", _at(10), {"ambient_temp": 1.0, "pan_wet": 1}),
            Reading("SN-A", _at(10, 1), {"ambient_temp": 3.0, "uptime_days": 9}),
        ]
        metrics, count = summarize(readings)

        assert count == 2
        assert metrics["ambient_temp"] == {"min": 1.0, "max": 3.0, "avg": 2.0}
        assert metrics["pan_wet"] == {"min": 1.0, "max": 1.0, "avg": 1.0}
        assert "uptime_days" not in metrics
        assert "supply_air" not in metrics

    def test_combine_hourly_weights_by_sample_count(self) -> None:
        rows = [
            HourlyRollup(
                metrics={"ambient_temp": {"min": 10.0, "max": 30.0, "avg": 20.0}},
                sample_count=3,
            ),
            HourlyRollup(
                metrics={"ambient_temp": {"min": 40.0, "max": 40.0, "avg": 40.0}},
                sample_count=1,
            ),
        ]
        metrics, count = combine_hourly(rows)

        assert count == 4
        assert metrics["ambient_temp"] == {"min": 10.0, "max": 40.0, "avg": 25.0}


class TestHourly:
    """Hourly tier."""

    @pytest.mark.asyncio
    async def test_first_run_rolls_up_from_earliest_reading(self, session_factory, seeded) -> None:
        report = await rollup_hourly(session_factory, NOW)

        assert report.start == _at(10)
        assert report.end == NOW
        assert report.buckets == 16
        assert report.rows_written == 3
        hourly, _ = await _snapshot(session_factory)
        assert hourly[0] == (
            "SN-A",
            _at(10),
            {
                "ambient_temp": {"min": 10.0, "max": 30.0, "avg": 20.0},
                "pan_wet": {"min": 0.0, "max": 0.0, "avg": 0.0},
            },
            3,
        )
        assert [(r[0], r[1]) for r in hourly] == [
            ("SN-A", _at(10)),
            ("SN-A", _at(11)),
            ("SN-B", _at(10)),
        ]
        async with session_factory() as db:
            assert await get_watermark(db, HOURLY) == NOW

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, session_factory, seeded) -> None:
        await rollup_hourly(session_factory, NOW)
        before = await _snapshot(session_factory)

        await rollup_hour(session_factory, _at(10))
        await rollup_hourly(session_factory, NOW)

        assert await _snapshot(session_factory) == before

    @pytest.mark.asyncio
    async def test_nothing_to_do_without_readings(self, session_factory) -> None:
        report = await rollup_hourly(session_factory, NOW)
        assert report.start is None
        assert report.buckets == 0

    @pytest.mark.asyncio
    async def test_late_reading_within_lookback(self, session_factory, partitions, seeded) -> None:
        await rollup_hourly(session_factory, NOW)
        # Arrives after the watermark has passed its hour.
        late = datetime.datetime(2026, 3, 11, 0, 30, tzinfo=UTC)
        await _insert(session_factory, partitions, "SN-B", late, ambient_temp=7.0)

        report = await rollup_hourly(session_factory, NOW + datetime.timedelta(hours=1))

        assert report.start == NOW - datetime.timedelta(hours=3)
        async with session_factory() as db:
            rows = await query_rollups(
                db, "SN-B", HOURLY, late.replace(minute=0), NOW
            )
        assert [(r["bucket"], r["sample_count"]) for r in rows] == [(late.replace(minute=0), 1)]

    @pytest.mark.asyncio
    async def test_unfinished_run_is_recomputed(self, session_factory, seeded) -> None:
        await rollup_hourly(session_factory, NOW)
        async with session_factory() as db:
            watermark = await db.get(RollupWatermark, HOURLY)
            watermark.running_from = _at(10)
            await db.commit()

        report = await rollup_hourly(session_factory, NOW)

        assert report.start == _at(10)
        async with session_factory() as db:
            watermark = await db.get(RollupWatermark, HOURLY, populate_existing=True)
        assert watermark.running_from is None
        assert watermark.completed_until == NOW


async def _flags(session_factory) -> list[tuple[str, datetime.datetime]]:
    async with session_factory() as db:
        rows = (
            await db.execute(
                select(RollupDirtyBucket).order_by(
                    RollupDirtyBucket.tier, RollupDirtyBucket.bucket
                )
            )
        ).scalars().all()
    return [(r.tier, r.bucket) for r in rows]


class TestLateReadings:
    """Readings that arrive after their bucket was rolled up."""

    @pytest.fixture()
    def ingestion(self, session_factory, partitions) -> IngestionService:
        return IngestionService(session_factory, partitions)

    @pytest.mark.asyncio
    async def test_hourly_reading_beyond_lookback_is_rolled_up(
        self, session_factory, seeded, ingestion
    ) -> None:
        await rollup_hourly(session_factory, NOW)
        # 16 hours after its hour closed, well past the 3 hour lookback.
        result = await ingestion.append("SN-A", _at(10, 40), {"ambient_temp": 50.0})
        assert result.status is IngestStatus.INSERTED
        assert await _flags(session_factory) == [(HOURLY, _at(10))]

        report = await rollup_hourly(session_factory, NOW + datetime.timedelta(hours=1))

        assert report.late_buckets == 1
        async with session_factory() as db:
            rows = await query_rollups(db, "SN-A", HOURLY, _at(10), _at(11))
        assert rows[0]["sample_count"] == 4
        assert rows[0]["metrics"]["ambient_temp"]["max"] == 50.0
        assert await _flags(session_factory) == []

    @pytest.mark.asyncio
    async def test_flag_raised_during_rerun_is_kept(
        self, session_factory, seeded, ingestion
    ) -> None:
        await rollup_hourly(session_factory, NOW)
        await ingestion.append("SN-A", _at(10, 40), {"ambient_temp": 50.0})
        real_rollup_hour = rollup_hour

        async def _rollup_hour_racing_ingest(factory, hour):
            written = await real_rollup_hour(factory, hour)
            if hour == _at(10):
                await ingestion.append("SN-A", _at(10, 41), {"ambient_temp": 51.0})
            return written

        later = NOW + datetime.timedelta(hours=1)
        with patch(
            "hvac_telemetry.services.rollup.rollup_hour", new=_rollup_hour_racing_ingest
        ):
            await rollup_hourly(session_factory, later)
        assert await _flags(session_factory) == [(HOURLY, _at(10))]

        await rollup_hourly(session_factory, later)

        async with session_factory() as db:
            rows = await query_rollups(db, "SN-A", HOURLY, _at(10), _at(11))
        assert rows[0]["sample_count"] == 5
        assert await _flags(session_factory) == []

    @pytest.mark.asyncio
    async def test_daily_late_reading_blocks_retention_until_rolled_up(
        self, session_factory, partitions, seeded, ingestion
    ) -> None:
        april = datetime.datetime(2026, 4, 2, tzinfo=UTC)
        may = datetime.datetime(2026, 5, 2, tzinfo=UTC)
        march = partition_name(_at(0))
        for now in (NOW, april):
            await rollup_hourly(session_factory, now)
            await rollup_daily(session_factory, now)

        # Ten days older than the day it belongs to was rolled up.
        ten_days_late = _at(12, day=1)
        await ingestion.append("SN-A", ten_days_late, {"ambient_temp": 60.0})
        assert await _flags(session_factory) == [
            (DAILY, _at(0, day=1)),
            (HOURLY, _at(12, day=1)),
        ]

        async with session_factory() as db:
            watermark = await rolled_up_until(db)
        assert watermark == april
        assert await partitions.drop_expired(may, 30, watermark) == []

        await rollup_hourly(session_factory, april)
        await rollup_daily(session_factory, april)
        assert await _flags(session_factory) == []
        assert await partitions.drop_expired(may, 30, watermark) == [march]

        async with session_factory() as db:
            daily = await query_rollups(db, "SN-A", DAILY, _at(0, day=1), _at(0, day=2))
            hourly = await query_rollups(db, "SN-A", HOURLY, _at(12, day=1), _at(13, day=1))
        assert [(r["bucket"], r["sample_count"]) for r in daily] == [
            (datetime.date(2026, 3, 1), 1)
        ]
        assert daily[0]["metrics"]["ambient_temp"]["avg"] == 60.0
        assert hourly[0]["sample_count"] == 1


class TestDaily:
    """Daily tier."""

    @pytest.mark.asyncio
    async def test_daily_from_raw(self, session_factory, seeded) -> None:
        report = await rollup_daily(session_factory, NOW)

        assert report.buckets == 1
        assert report.rows_written == 2
        _, daily = await _snapshot(session_factory)
        serial, day, metrics, count = daily[0]
        assert (serial, day, count) == ("SN-A", DAY, 4)
        assert metrics["ambient_temp"] == {"min": 10.0, "max": 40.0, "avg": 25.0}

    @pytest.mark.asyncio
    async def test_daily_rerun_is_idempotent(self, session_factory, seeded) -> None:
        await rollup_daily(session_factory, NOW)
        before = await _snapshot(session_factory)

        await rollup_day(session_factory, DAY)
        await rollup_daily(session_factory, NOW + datetime.timedelta(days=1))

        assert await _snapshot(session_factory) == before

    @pytest.mark.asyncio
    async def test_missing_daily_row_derived_from_hourly(
        self, session_factory, partitions, seeded
    ) -> None:
        await rollup_hourly(session_factory, NOW)
        await partitions.drop_partition(partition_name(_at(10)))

        written = await rollup_day(session_factory, DAY)

        assert written == 2
        _, daily = await _snapshot(session_factory)
        assert daily[0][3] == 4
        assert daily[0][2]["ambient_temp"] == {"min": 10.0, "max": 40.0, "avg": 25.0}


class TestRetention:
    """Raw and hourly retention never change what rollups already hold."""

    @pytest.mark.asyncio
    async def test_dropping_raw_partition_keeps_rollups(
        self, session_factory, partitions, seeded
    ) -> None:
        await rollup_hourly(session_factory, NOW)
        await rollup_daily(session_factory, NOW)
        before = await _snapshot(session_factory)

        await partitions.drop_partition(partition_name(_at(10)))
        await rollup_hour(session_factory, _at(10))
        await rollup_day(session_factory, DAY)
        later = NOW + datetime.timedelta(days=1)
        await rollup_hourly(session_factory, later)
        await rollup_daily(session_factory, later)

        assert await _snapshot(session_factory) == before

    @pytest.mark.asyncio
    async def test_rolled_up_until_is_min_of_tiers(self, session_factory, seeded) -> None:
        async with session_factory() as db:
            assert await rolled_up_until(db) is None

        await rollup_hourly(session_factory, NOW)
        await rollup_daily(session_factory, NOW)

        async with session_factory() as db:
            assert await rolled_up_until(db) == _at(0, day=11)

    @pytest.mark.asyncio
    async def test_hourly_retention_keeps_daily(self, session_factory, seeded) -> None:
        await rollup_hourly(session_factory, NOW)
        await rollup_daily(session_factory, NOW)

        deleted = await enforce_hourly_retention(
            session_factory, NOW + datetime.timedelta(days=91), retention_days=90
        )

        assert deleted == 3
        hourly, daily = await _snapshot(session_factory)
        assert hourly == []
        assert len(daily) == 2


class TestQueryRollups:
    """Range reads over a tier."""

    @pytest.mark.asyncio
    async def test_hourly_range_is_end_exclusive(self, session_factory, seeded) -> None:
        await rollup_hourly(session_factory, NOW)
        async with session_factory() as db:
            rows = await query_rollups(db, "SN-A", HOURLY, _at(10), _at(11))
        assert [r["bucket"] for r in rows] == [_at(10)]

    @pytest.mark.asyncio
    async def test_daily_range_uses_dates(self, session_factory, seeded) -> None:
        await rollup_daily(session_factory, NOW)
        async with session_factory() as db:
            rows = await query_rollups(db, "SN-B", DAILY, _at(0), _at(0, day=11))
        assert [(r["bucket"], r["sample_count"]) for r in rows] == [(DAY, 1)]

    @pytest.mark.asyncio
    async def test_unknown_tier_raises(self, session_factory) -> None:
        async with session_factory() as db:
            with pytest.raises(KeyError):
                await query_rollups(db, "SN-A", "weekly", _at(0), _at(1))
