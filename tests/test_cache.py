"""
Tests for the Redis current-state cache helpers.

Tests verify:
- With no REDIS_URL every helper is a no-op.
- Reads use the current:{serial} key; writes and invalidations go through
  the version-guarded scripts with the snapshot and version keys.
- A snapshot loaded before an ingest committed cannot be written back
  after the ingest invalidated the key.
- Redis failures are logged, never raised.

CHANGELOG:
- 2026-10-20: Version-guarded writes and the stale read-through race
- 2026-10-10: Initial creation
"""

import datetime
import json
from datetime import UTC
from unittest.mock import AsyncMock, patch

import pytest

from hvac_telemetry.cache import redis_client
from hvac_telemetry.cache.redis_client import (
    VERSION_TTL_S,
    current_state_key,
    current_version_key,
    invalidate_unit_cache,
    read_cached_state,
    state_version,
    write_cached_state,
)

GET_REDIS = "hvac_telemetry.cache.redis_client.get_redis"

T0 = datetime.datetime(2026, 7, 1, 12, 0, tzinfo=UTC)
T1 = T0 + datetime.timedelta(minutes=1)


class FakeScriptRedis:
    """In-memory stand-in running the cache scripts' logic in Python."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str):
        return self.data.get(key)

    async def eval(self, script: str, numkeys: int, *args):
        keys, argv = args[:numkeys], args[numkeys:]
        current = int(self.data.get(keys[1], -1))
        if script == redis_client._WRITE_IF_CURRENT:
            if current > int(argv[1]):
                return 0
            self.data[keys[0]] = argv[0]
            return 1
        if script == redis_client._BUMP_AND_DELETE:
            self.data[keys[1]] = str(max(current, int(argv[0])))
            self.data.pop(keys[0], None)
            return int(self.data[keys[1]])
        raise AssertionError("unexpected script")

    async def aclose(self) -> None:
        return None


@pytest.fixture()
def redis_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")


class TestDisabled:
    """No REDIS_URL: the cache is bypassed."""

    @pytest.mark.asyncio
    async def test_helpers_do_not_connect(self) -> None:
        with patch(GET_REDIS, new=AsyncMock()) as get_redis:
            assert await read_cached_state("SN-1") is None
            assert await write_cached_state("SN-1", {"a": 1}, 5) is False
            await invalidate_unit_cache("SN-1", T0)
        get_redis.assert_not_awaited()


class TestVersions:
    """Snapshot versions follow reading timestamps."""

    def test_key_format(self) -> None:
        assert current_state_key("SN-1") == "current:SN-1"
        assert current_version_key("SN-1") == "current:SN-1:version"

    def test_version_orders_timestamps(self) -> None:
        assert state_version(None) == 0
        assert 0 < state_version(T0) < state_version(T1)
        assert state_version(T0.isoformat()) == state_version(T0)
        assert state_version(T0 + datetime.timedelta(microseconds=1)) == state_version(T0) + 1


class TestEnabled:
    """Cache round trips through a mocked client."""

    @pytest.mark.asyncio
    async def test_read_hit(self, redis_enabled, mock_redis) -> None:
        mock_redis.get.return_value = json.dumps({"uptime_days": 3}).encode()
        with patch(GET_REDIS, new=AsyncMock(return_value=mock_redis)):
            assert await read_cached_state("SN-1") == {"uptime_days": 3}
        mock_redis.get.assert_awaited_once_with("current:SN-1")
        mock_redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_read_miss(self, redis_enabled, mock_redis) -> None:
        with patch(GET_REDIS, new=AsyncMock(return_value=mock_redis)):
            assert await read_cached_state("SN-1") is None

    @pytest.mark.asyncio
    async def test_write_passes_snapshot_version_and_ttl(
        self, redis_enabled, mock_redis
    ) -> None:
        snapshot = {"uptime_days": 3, "last_telemetry_at": T0.isoformat()}
        with patch(GET_REDIS, new=AsyncMock(return_value=mock_redis)):
            assert await write_cached_state("SN-1", snapshot, 7) is True
        mock_redis.eval.assert_awaited_once_with(
            redis_client._WRITE_IF_CURRENT,
            2,
            "current:SN-1",
            "current:SN-1:version",
            json.dumps(snapshot),
            state_version(T0),
            7,
        )

    @pytest.mark.asyncio
    async def test_rejected_write_reported(self, redis_enabled, mock_redis) -> None:
        mock_redis.eval.return_value = 0
        with patch(GET_REDIS, new=AsyncMock(return_value=mock_redis)):
            assert await write_cached_state("SN-1", {"last_telemetry_at": None}, 7) is False

    @pytest.mark.asyncio
    async def test_invalidate_bumps_version(self, redis_enabled, mock_redis) -> None:
        with patch(GET_REDIS, new=AsyncMock(return_value=mock_redis)):
            await invalidate_unit_cache("SN-1", T1)
        mock_redis.eval.assert_awaited_once_with(
            redis_client._BUMP_AND_DELETE,
            2,
            "current:SN-1",
            "current:SN-1:version",
            state_version(T1),
            VERSION_TTL_S,
        )


class TestReadThroughRace:
    """Stale read-through snapshots never outlive an invalidation."""

    @pytest.mark.asyncio
    async def test_stale_snapshot_written_after_invalidation_is_dropped(
        self, redis_enabled
    ) -> None:
        fake = FakeScriptRedis()
        stale = {"last_telemetry_at": T0.isoformat(), "uptime_days": 1}
        fresh = {"last_telemetry_at": T1.isoformat(), "uptime_days": 2}
        with patch(GET_REDIS, new=AsyncMock(return_value=fake)):
            # Reader loaded T0 from the database; ingest then commits T1.
            await invalidate_unit_cache("SN-1", T1)
            assert await write_cached_state("SN-1", stale, 5) is False
            assert await read_cached_state("SN-1") is None

            assert await write_cached_state("SN-1", fresh, 5) is True
            assert await read_cached_state("SN-1") == fresh

    @pytest.mark.asyncio
    async def test_older_reading_does_not_lower_version(self, redis_enabled) -> None:
        fake = FakeScriptRedis()
        with patch(GET_REDIS, new=AsyncMock(return_value=fake)):
            await invalidate_unit_cache("SN-1", T1)
            await invalidate_unit_cache("SN-1", T0)
        assert fake.data["current:SN-1:version"] == str(state_version(T1))


class TestFailures:
    """Redis outages never propagate."""

    @pytest.mark.asyncio
    async def test_connection_failure_is_swallowed(self, redis_enabled) -> None:
        with patch(GET_REDIS, new=AsyncMock(side_effect=ConnectionError("down"))):
            assert await read_cached_state("SN-1") is None
            assert await write_cached_state("SN-1", {}, 5) is False
            await invalidate_unit_cache("SN-1", T0)

    @pytest.mark.asyncio
    async def test_command_failure_still_closes_client(
        self, redis_enabled, mock_redis
    ) -> None:
        mock_redis.get.side_effect = TimeoutError("slow")
        with patch(GET_REDIS, new=AsyncMock(return_value=mock_redis)):
            assert await read_cached_state("SN-1") is None
        mock_redis.aclose.assert_awaited_once()
