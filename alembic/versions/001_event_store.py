"""Event store schema: streams, event records, snapshots.

Revision ID: 001_event_store
Revises: None
Create Date: 2024-01-01 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_event_store"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One row per aggregate; version is the optimistic concurrency token
    op.create_table(
        "event_streams",
        sa.Column("aggregate_id", sa.String(128), primary_key=True),
        sa.Column("aggregate_type", sa.String(64), nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_modified", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_event_streams_aggregate_type", "event_streams", ["aggregate_type"])

    op.create_table(
        "event_records",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("sequence", sa.BigInteger, nullable=False, unique=True),
        sa.Column("aggregate_id", sa.String(128), nullable=False),
        sa.Column("aggregate_type", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("data", JSONB, nullable=False),
        sa.Column("metadata", JSONB, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("aggregate_id", "version", name="uq_event_records_stream_version"),
    )
    op.create_index("ix_event_records_event_type", "event_records", ["event_type"])

    op.create_table(
        "event_snapshots",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("aggregate_id", sa.String(128), nullable=False),
        sa.Column("aggregate_type", sa.String(64), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("data", JSONB, nullable=False),
        sa.Column("metadata", JSONB, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_event_snapshots_aggregate_version", "event_snapshots", ["aggregate_id", "version"],
    )


def downgrade() -> None:
    op.drop_table("event_snapshots")
    op.drop_table("event_records")
    op.drop_table("event_streams")
