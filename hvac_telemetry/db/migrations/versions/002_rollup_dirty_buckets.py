"""
Track rollup buckets that received late readings.

Creates rollup_dirty_buckets: one row per (tier, bucket) written by the
ingest path when a reading lands in an already rolled-up bucket. Rollup runs
drain it and raw retention keeps partitions that still have entries.

Revision ID: 002
Revises: 001
Create Date: 2026-10-20

CHANGELOG:
- 2026-10-20: Initial creation

TODO:
- None
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

from hvac_telemetry.db.models import UTCDateTime

# Revision identifiers used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create rollup_dirty_buckets."""
    op.create_table(
        "rollup_dirty_buckets",
        sa.Column("tier", sa.String(16), primary_key=True),
        sa.Column("bucket", UTCDateTime(), primary_key=True),
        sa.Column("marks", sa.Integer(), nullable=False),
        sa.Column("marked_at", UTCDateTime(), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    """Drop rollup_dirty_buckets."""
    op.drop_table("rollup_dirty_buckets")
