"""
Async database engine and session factory.

Uses SQLAlchemy 2.x async engine with the asyncpg driver for PostgreSQL and
aiosqlite for local/test databases. Provides module-level engine and session
factory singletons, plus an async generator for FastAPI dependency injection.

SQLite connections are switched to WAL mode with a busy timeout, and every
transaction is opened with ``BEGIN IMMEDIATE`` so that concurrent writers
queue on the write lock instead of failing on lock upgrade. Taking control
of BEGIN also makes SAVEPOINT work with pysqlite.

CHANGELOG:
- 2026-10-08: SQLite WAL + immediate transactions for local runs
- 2026-10-05: Read DATABASE_URL from Settings
"""

from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from hvac_telemetry.config import get_settings

# Module-level singletons, initialized lazily via init_engine().
async_engine: AsyncEngine | None = None
async_session_factory: async_sessionmaker[AsyncSession] | None = None

_SQLITE_BUSY_TIMEOUT_S = 30


def _get_database_url() -> str:
    """Read DATABASE_URL from settings.

    Returns:
        str: The database connection URL.

    Raises:
        RuntimeError: If DATABASE_URL is empty.
    """
    url = get_settings().database_url
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    return url


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Install WAL mode and immediate transactions on a SQLite engine."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        # Let SQLAlchemy emit BEGIN itself (see _on_begin).
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(url: str | None = None) -> AsyncEngine:
    """Create an async SQLAlchemy engine from configuration.

    Args:
        url: Optional database URL. Defaults to DATABASE_URL.

    Returns:
        AsyncEngine: Configured async engine.
    """
    url = url or _get_database_url()
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=False,
            connect_args={"timeout": _SQLITE_BUSY_TIMEOUT_S},
        )
        _configure_sqlite(engine)
        return engine
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def create_session_factory(
    engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory.

    Args:
        engine: Optional async engine. If not provided, creates one from config.

    Returns:
        async_sessionmaker: Factory for creating AsyncSession instances.
    """
    if engine is None:
        engine = create_engine()
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def init_engine() -> None:
    """Initialize the module-level async engine and session factory.

    Call this at application startup (e.g., in a FastAPI lifespan event).
    Safe to call multiple times; subsequent calls are no-ops.
    """
    global async_engine, async_session_factory  # noqa: PLW0603
    if async_engine is None:
        async_engine = create_engine()
        async_session_factory = create_session_factory(async_engine)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the module-level session factory, initializing it if needed."""
    init_engine()
    assert async_session_factory is not None, "Session factory not initialized"
    return async_session_factory


async def dispose_engine() -> None:
    """Dispose the module-level engine (application shutdown)."""
    global async_engine, async_session_factory  # noqa: PLW0603
    if async_engine is not None:
        await async_engine.dispose()
    async_engine = None
    async_session_factory = None


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for FastAPI dependency injection.

    Initializes the engine on first call if not already done.
    The session is automatically closed after the request completes.

    Yields:
        AsyncSession: An async SQLAlchemy session.
    """
    async with get_session_factory()() as session:
        yield session
