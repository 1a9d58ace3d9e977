"""
Shared test fixtures for the telemetry core tests.

Provides:
- Environment isolation: every test gets a throwaway SQLite DATABASE_URL,
  no REDIS_URL (cache disabled) and a fresh Settings cache.
- A real temporary aiosqlite database with the static schema created, for
  service-level tests.
- A configured TestClient for FastAPI integration testing, plus mocked
  database session and Redis client for route tests.

CHANGELOG:
- 2026-10-08: Temporary aiosqlite database fixture for service tests
- 2026-10-05: Initial creation with app fixture and mocked DB/Redis
"""

from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hvac_telemetry.config import get_settings
from hvac_telemetry.db.models import Base, HvacUnit
from hvac_telemetry.db.session import create_engine, create_session_factory
from hvac_telemetry.services.partitions import PartitionManager
from hvac_telemetry.services.registry import register_unit

# All Settings environment variable names, used for cleanup.
_ALL_ENV_VARS = (
    "DATABASE_URL",
    "REDIS_URL",
    "CACHE_TTL_S",
    "MAX_READINGS_PER_REQUEST",
    "MAX_REQUEST_BYTES",
    "RAW_RETENTION_DAYS",
    "HOURLY_RETENTION_DAYS",
    "HOURLY_LOOKBACK_HOURS",
    "DAILY_LOOKBACK_DAYS",
    "PARTITION_MONTHS_AHEAD",
    "INGEST_CONCURRENCY",
    "INGEST_RETRY_ATTEMPTS",
    "INGEST_RETRY_BASE_S",
    "INGEST_RETRY_MAX_S",
    "SCHEDULER_ENABLED",
    "PARTITION_INTERVAL_S",
    "ROLLUP_HOURLY_INTERVAL_S",
    "ROLLUP_DAILY_INTERVAL_S",
    "RETENTION_INTERVAL_S",
    "REPAIR_INTERVAL_S",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _set_test_env(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Generator[None, None, None]:
    """Isolate every test from the host environment and .env files.

    Sets a throwaway SQLite DATABASE_URL so the FastAPI app can start
    without a real database server, and clears the cached Settings before
    and after the test.
    """
    for var in _ALL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'app.db'}")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Real database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(
    tmp_path: Path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create a temporary aiosqlite database with the static schema.

    Yields:
        async_sessionmaker: Factory bound to the temporary database.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'telemetry.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def partitions(session_factory: async_sessionmaker[AsyncSession]) -> PartitionManager:
    """Partition manager bound to the temporary database."""
    return PartitionManager(session_factory)


@pytest.fixture()
def make_unit(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[HvacUnit]]:
    """Return an async helper that registers a unit.

    Usage::

        await make_unit("SN-1", provider_id="prov-a")
    """

    async def _make(
        serial_number: str,
        provider_id: str = "prov-1",
        location_id: str = "loc-1",
    ) -> HvacUnit:
        async with session_factory() as db:
            return await register_unit(
                db,
                serial_number=serial_number,
                location_id=location_id,
                provider_id=provider_id,
            )

    return _make


# ---------------------------------------------------------------------------
# HTTP layer
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_db_session() -> AsyncMock:
    """Create a mock async database session.

    Returns:
        AsyncMock: A mock that behaves like an SQLAlchemy AsyncSession.
    """
    session = AsyncMock()
    session.execute = AsyncMock(return_value=MagicMock())
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture()
def mock_redis() -> AsyncMock:
    """Create a mock async Redis client.

    Returns:
        AsyncMock: A mock that behaves like a redis.asyncio.Redis client.
    """
    client = AsyncMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock()
    client.delete = AsyncMock()
    client.eval = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient for integration testing.

    Uses a context manager to ensure the application lifespan events
    (startup/shutdown) are properly triggered. Dependency overrides are
    cleared afterwards.

    Yields:
        TestClient: Configured test client for the FastAPI app.
    """
    from hvac_telemetry.api.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def api_client(client: TestClient, mock_db_session: AsyncMock) -> TestClient:
    """TestClient whose routes receive mock_db_session as their DB session.

    Route tests patch the service functions in the router module and
    assert on what the route does with their results.
    """
    from hvac_telemetry.api.deps import get_db
    from hvac_telemetry.api.main import app

    async def _override_db():
        yield mock_db_session

    app.dependency_overrides[get_db] = _override_db
    return client
