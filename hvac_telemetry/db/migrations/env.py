"""
Alembic environment configuration for async migrations.

Configures Alembic to use the async SQLAlchemy engine and imports the Base
metadata for autogenerate support. Reads DATABASE_URL from Settings (same
source as hvac_telemetry/db/session.py).

Only the static schema is migrated here. The monthly raw-telemetry
partition tables are created at runtime by the PartitionManager and are
excluded from autogenerate.

CHANGELOG:
- 2026-10-09: Exclude runtime partition tables from autogenerate
- 2026-10-05: Initial creation
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from hvac_telemetry.config import get_settings
from hvac_telemetry.db.models import Base
from hvac_telemetry.db.partitions import is_partition_name

# Alembic Config object for access to .ini values.
config = context.config

# Set up Python logging from the config file.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# SQLAlchemy MetaData for autogenerate support.
target_metadata = Base.metadata


def get_url() -> str:
    """Get the database URL from Settings.

    Raises:
        RuntimeError: If DATABASE_URL is empty.
    """
    url = get_settings().database_url
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    return url


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    """Skip partition tables (and their indexes) managed at runtime."""
    table = obj if type_ == "table" else getattr(obj, "table", None)
    return not is_partition_name(getattr(table, "name", None) or "")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Configures the context with just a URL and not an Engine.
    Calls to context.execute() emit the given string to the script output.
    """
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        include_object=include_object,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    """Run migrations with a given connection.

    Args:
        connection: A synchronous database connection.
    """
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        include_object=include_object,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations in 'online' mode with an async engine."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    Delegates to async runner for asyncpg/aiosqlite compatibility.
    """
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
