"""
FastAPI dependency injection providers.

Provides database sessions, settings and the long-lived services built at
startup (stored on app.state) for use with FastAPI's Depends() mechanism.

CHANGELOG:
- 2026-10-10: Expose IngestionService and Settings from app.state
- 2026-10-05: Initial creation
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hvac_telemetry.config import Settings
from hvac_telemetry.db.session import get_async_session
from hvac_telemetry.services.ingestion import IngestionService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session.

    Route handlers depend on this (through DbSession) rather than on
    get_async_session directly, so tests can override a single provider.

    Yields:
        AsyncSession: An async SQLAlchemy session.
    """
    async for session in get_async_session():
        yield session


# Type alias for injecting an async DB session via FastAPI Depends().
# Usage in route handlers:
#   async def my_route(db: DbSession):
#       result = await db.execute(...)
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_app_settings(request: Request) -> Settings:
    """Return the Settings loaded by the application lifespan."""
    return request.app.state.settings


def get_ingestion(request: Request) -> IngestionService:
    """Return the IngestionService built by the application lifespan."""
    return request.app.state.ingestion
