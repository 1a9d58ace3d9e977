"""
Redis client for the current-state cache.

Provides helpers for creating Redis connections and reading, writing and
invalidating per-unit current-state snapshots. All cache operations are
best-effort: connection failures are logged but never propagate, so that
ingestion and reads keep working when Redis is down.

Each unit also has a version key (``current:{serial}:version``) holding the
timestamp, in epoch microseconds, of the newest reading the ingest path has
committed. Invalidation raises the version before deleting the snapshot, and
a read-through write only lands if its snapshot is at least that new. A
reader that loaded the database before an ingest committed can therefore
not put its stale snapshot back after the invalidation.

CHANGELOG:
- 2026-10-20: Version-guarded snapshot writes
- 2026-10-10: Cache current-state snapshots per unit serial
- 2026-10-05: Read REDIS_URL from Settings
"""

import datetime
import json
import logging

import redis.asyncio as redis

from hvac_telemetry.config import get_settings
from hvac_telemetry.timeutils import ensure_utc

logger = logging.getLogger(__name__)

# Outlives any in-flight read-through request by a wide margin.
VERSION_TTL_S = 3600

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.UTC)

# KEYS: snapshot, version. ARGV: payload, snapshot version, ttl.
_WRITE_IF_CURRENT = """
local current = tonumber(redis.call('GET', KEYS[2]) or '-1')
if current > tonumber(ARGV[2]) then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
return 1
"""

# KEYS: snapshot, version. ARGV: reading version, version ttl.
_BUMP_AND_DELETE = """
local current = tonumber(redis.call('GET', KEYS[2]) or '-1')
if tonumber(ARGV[1]) > current then
    current = tonumber(ARGV[1])
end
redis.call('SET', KEYS[2], string.format('%d', current), 'EX', ARGV[2])
redis.call('DEL', KEYS[1])
return current
"""


def current_state_key(serial_number: str) -> str:
    """Return the cache key holding a unit's current-state snapshot."""
    return f"current:{serial_number}"


def current_version_key(serial_number: str) -> str:
    """Return the cache key holding a unit's snapshot version."""
    return f"current:{serial_number}:version"


def state_version(ts: datetime.datetime | str | None) -> int:
    """Return the version of a snapshot whose newest reading is at *ts*.

    Accepts a datetime or an ISO 8601 string. A unit that never reported
    has version 0.
    """
    if ts is None:
        return 0
    if isinstance(ts, str):
        ts = datetime.datetime.fromisoformat(ts)
    return (ensure_utc(ts) - _EPOCH) // datetime.timedelta(microseconds=1)


def _get_redis_url() -> str:
    """Read REDIS_URL from settings.

    Returns:
        str: The Redis connection URL.

    Raises:
        RuntimeError: If REDIS_URL is not set.
    """
    url = get_settings().redis_url
    if not url:
        raise RuntimeError("REDIS_URL environment variable is required")
    return url


async def get_redis() -> redis.Redis:
    """Create and return an async Redis client from settings.

    Returns:
        redis.Redis: Async Redis client.
    """
    return redis.from_url(_get_redis_url())


async def read_cached_state(serial_number: str) -> dict | None:
    """Return the cached snapshot for a unit, or None on miss/failure."""
    if not get_settings().redis_url:
        return None
    key = current_state_key(serial_number)
    try:
        client = await get_redis()
        try:
            cached = await client.get(key)
        finally:
            await client.aclose()
    except Exception:
        logger.warning("Redis read failed for key %s", key, exc_info=True)
        return None
    if cached is None:
        return None
    return json.loads(cached)


async def write_cached_state(serial_number: str, snapshot: dict, ttl_s: int) -> bool:
    """Store a unit snapshot with a TTL unless a newer reading was committed.

    The snapshot's version comes from its ``last_telemetry_at``.

    Returns:
        bool: True if the snapshot was stored.
    """
    if not get_settings().redis_url:
        return False
    key = current_state_key(serial_number)
    try:
        client = await get_redis()
        try:
            stored = await client.eval(
                _WRITE_IF_CURRENT,
                2,
                key,
                current_version_key(serial_number),
                json.dumps(snapshot),
                state_version(snapshot.get("last_telemetry_at")),
                ttl_s,
            )
        finally:
            await client.aclose()
    except Exception:
        logger.warning("Redis write failed for key %s", key, exc_info=True)
        return False
    if not stored:
        logger.debug("Skipped stale snapshot for unit %s", serial_number)
    return bool(stored)


async def invalidate_unit_cache(
    serial_number: str, ts: datetime.datetime | None = None
) -> None:
    """Raise the unit's snapshot version to *ts* and delete its snapshot.

    Best-effort operation: if Redis is unavailable or the delete fails,
    the error is logged but not raised. This ensures that ingest operations
    are not blocked by cache infrastructure issues.

    Args:
        serial_number: The unit whose cache should be cleared.
        ts: Timestamp of the reading just committed, if any.
    """
    if not get_settings().redis_url:
        return
    try:
        client = await get_redis()
        try:
            await client.eval(
                _BUMP_AND_DELETE,
                2,
                current_state_key(serial_number),
                current_version_key(serial_number),
                state_version(ts),
                VERSION_TTL_S,
            )
        finally:
            await client.aclose()
    except Exception:
        logger.warning(
            "Failed to invalidate cache for unit %s",
            serial_number,
            exc_info=True,
        )
