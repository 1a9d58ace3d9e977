"""
Dialect-aware INSERT constructs.

PostgreSQL and SQLite both support ``INSERT ... ON CONFLICT``, but through
separate SQLAlchemy constructs. insert_for() picks the right one for the
session's bind so services can write idempotent inserts and upserts once.

CHANGELOG:
- 2026-10-07: Initial creation
"""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, target):
    """Return a dialect-specific INSERT for *target* (ORM class or Table).

    Raises:
        NotImplementedError: For dialects without ON CONFLICT support.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(target)
    if dialect == "sqlite":
        return sqlite_insert(target)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")
