"""``EventRepository`` backed by SQLAlchemy async (PostgreSQL via asyncpg).

The optimistic check is done in the database: the stream row's
``version`` is moved forward with ``UPDATE ... WHERE version = :expected``
(or inserted when the stream is new) in the same transaction as the event
rows.  A zero-row update or a unique-key violation means another writer
got there first and is reported as ``ConcurrencyConflict``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eventcore.core.errors import ConcurrencyConflict, RepositoryError
from eventcore.domain.events import DomainEvent, EventSnapshot, EventStream
from eventcore.infrastructure.serialization import (
    dumps,
    metadata_from_dict,
    metadata_to_dict,
)

from .connection import create_all, create_engine, create_session_factory, session_scope
from .models import EventRecord, EventStreamRecord, SnapshotRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _json_safe(payload: dict[str, Any]) -> dict[str, Any]:
    return json.loads(dumps(payload))


def _event_to_record(event: DomainEvent) -> EventRecord:
    return EventRecord(
        id=event.id,
        sequence=event.sequence,
        aggregate_id=event.aggregate_id,
        aggregate_type=event.aggregate_type,
        event_type=event.type,
        version=event.version,
        data=_json_safe(event.data),
        metadata_json=metadata_to_dict(event.metadata),
        timestamp=event.metadata.timestamp,
    )


def _record_to_event(record: EventRecord) -> DomainEvent:
    return DomainEvent(
        id=record.id,
        type=record.event_type,
        aggregate_id=record.aggregate_id,
        aggregate_type=record.aggregate_type,
        version=record.version,
        sequence=record.sequence,
        data=record.data or {},
        metadata=metadata_from_dict(record.metadata_json),
    )


def _record_to_snapshot(record: SnapshotRecord) -> EventSnapshot:
    return EventSnapshot(
        id=record.id,
        aggregate_id=record.aggregate_id,
        aggregate_type=record.aggregate_type,
        version=record.version,
        data=record.data or {},
        timestamp=record.timestamp,
        metadata=record.metadata_json or {},
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class SqlAlchemyEventRepository:
    """Durable event repository over an async SQLAlchemy engine."""

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        owns_engine: bool = False,
    ) -> None:
        self._engine = engine
        self._sessions = session_factory or create_session_factory(engine)
        self._owns_engine = owns_engine

    @classmethod
    async def connect(
        cls, url: str, *, create_tables: bool = False, **engine_kwargs: Any,
    ) -> SqlAlchemyEventRepository:
        """Create an engine for *url* and a repository that owns it."""
        engine = create_engine(url, **engine_kwargs)
        if create_tables:
            await create_all(engine)
        return cls(engine, owns_engine=True)

    async def load_streams(self) -> list[EventStream]:
        try:
            async with session_scope(self._sessions) as session:
                stream_rows = (await session.execute(select(EventStreamRecord))).scalars().all()
                event_rows = (
                    await session.execute(
                        select(EventRecord).order_by(
                            EventRecord.aggregate_id, EventRecord.version,
                        )
                    )
                ).scalars().all()
                snapshot_rows = (
                    await session.execute(
                        select(SnapshotRecord).order_by(
                            SnapshotRecord.aggregate_id, SnapshotRecord.version,
                        )
                    )
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise RepositoryError(f"Loading streams failed: {exc}") from exc

        streams = {
            row.aggregate_id: EventStream(
                aggregate_id=row.aggregate_id,
                aggregate_type=row.aggregate_type,
                version=row.version,
                last_modified=row.last_modified,
            )
            for row in stream_rows
        }
        for row in event_rows:
            stream = streams.get(row.aggregate_id)
            if stream is not None:
                stream.events.append(_record_to_event(row))
        for row in snapshot_rows:
            stream = streams.get(row.aggregate_id)
            if stream is not None:
                stream.snapshots.append(_record_to_snapshot(row))
        return list(streams.values())

    async def _current_version(self, aggregate_id: str) -> int:
        async with session_scope(self._sessions) as session:
            version = await session.scalar(
                select(EventStreamRecord.version).where(
                    EventStreamRecord.aggregate_id == aggregate_id,
                )
            )
        return int(version or 0)

    async def append(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: list[DomainEvent],
        *,
        expected_version: int,
    ) -> None:
        if not events:
            return
        last = events[-1]
        try:
            async with session_scope(self._sessions) as session:
                if expected_version == 0:
                    session.add(
                        EventStreamRecord(
                            aggregate_id=aggregate_id,
                            aggregate_type=aggregate_type,
                            version=last.version,
                            last_modified=last.metadata.timestamp,
                        )
                    )
                    await session.flush()
                else:
                    result = await session.execute(
                        update(EventStreamRecord)
                        .where(
                            EventStreamRecord.aggregate_id == aggregate_id,
                            EventStreamRecord.version == expected_version,
                        )
                        .values(
                            version=last.version,
                            last_modified=last.metadata.timestamp,
                        )
                    )
                    if result.rowcount != 1:
                        raise ConcurrencyConflict(
                            aggregate_id,
                            expected_version,
                            await self._current_version(aggregate_id),
                        )
                session.add_all([_event_to_record(e) for e in events])
        except IntegrityError as exc:
            actual = await self._current_version(aggregate_id)
            logger.info("Append to %s lost the race: %s", aggregate_id, exc.orig)
            raise ConcurrencyConflict(aggregate_id, expected_version, actual) from exc
        except SQLAlchemyError as exc:
            raise RepositoryError(f"Append to {aggregate_id} failed: {exc}") from exc

    async def save_snapshot(self, snapshot: EventSnapshot, *, keep: int) -> None:
        try:
            async with session_scope(self._sessions) as session:
                session.add(
                    SnapshotRecord(
                        id=snapshot.id,
                        aggregate_id=snapshot.aggregate_id,
                        aggregate_type=snapshot.aggregate_type,
                        version=snapshot.version,
                        data=_json_safe(snapshot.data),
                        metadata_json=_json_safe(snapshot.metadata),
                        timestamp=snapshot.timestamp,
                    )
                )
                await session.flush()
                stale = (
                    await session.execute(
                        select(SnapshotRecord.id)
                        .where(SnapshotRecord.aggregate_id == snapshot.aggregate_id)
                        .order_by(SnapshotRecord.version.desc())
                        .offset(keep)
                    )
                ).scalars().all()
                if stale:
                    await session.execute(
                        delete(SnapshotRecord).where(SnapshotRecord.id.in_(stale))
                    )
        except SQLAlchemyError as exc:
            raise RepositoryError(
                f"Saving snapshot of {snapshot.aggregate_id} failed: {exc}"
            ) from exc

    async def prune(self, aggregate_id: str, up_to_version: int) -> int:
        try:
            async with session_scope(self._sessions) as session:
                result = await session.execute(
                    delete(EventRecord).where(
                        EventRecord.aggregate_id == aggregate_id,
                        EventRecord.version <= up_to_version,
                    )
                )
        except SQLAlchemyError as exc:
            raise RepositoryError(f"Pruning {aggregate_id} failed: {exc}") from exc
        return int(result.rowcount or 0)

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()
