"""SQLAlchemy ORM models for the event store.

Tables:
    event_streams    one row per aggregate; ``version`` is the optimistic
                     concurrency token
    event_records    one row per event, unique on (aggregate_id, version)
                     and on sequence
    event_snapshots  retained snapshots per aggregate

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


class EventStreamRecord(Base):
    __tablename__ = "event_streams"

    aggregate_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (Index("ix_event_streams_aggregate_type", "aggregate_type"),)


class EventRecord(Base):
    """One stored ``DomainEvent``."""

    __tablename__ = "event_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    aggregate_id: Mapped[str] = mapped_column(String(128), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    metadata_json: Mapped[dict] = mapped_column(
        "metadata", JsonType, nullable=False, default=dict,
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("aggregate_id", "version", name="uq_event_records_stream_version"),
        Index("ix_event_records_event_type", "event_type"),
    )


class SnapshotRecord(Base):
    __tablename__ = "event_snapshots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    aggregate_id: Mapped[str] = mapped_column(String(128), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    metadata_json: Mapped[dict] = mapped_column(
        "metadata", JsonType, nullable=False, default=dict,
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_event_snapshots_aggregate_version", "aggregate_id", "version"),
    )
