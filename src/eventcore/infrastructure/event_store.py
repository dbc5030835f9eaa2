"""Append-only, versioned event store with snapshotting.

Design invariants
-----------------
1.  Appends to one aggregate are **serialized** by a per-aggregate
    ``asyncio.Lock``; appends to different aggregates run in parallel.
    There is no store-wide lock.
2.  Within a stream ``version`` increases by exactly 1 per event.  The
    global ``sequence`` is unique and monotonic across streams; a failed
    append may leave a gap but never a duplicate.
3.  A batch is **all-or-nothing**: the in-memory stream changes only
    after the repository has accepted the whole batch.
4.  After a successful append every event is handed to the dispatcher in
    append order, while the lock is still held, so no other append to the
    same aggregate can interleave.  Delivery itself happens off the lock.
5.  Snapshotting and pruning take the same per-aggregate lock as appends.
    Pruning never drops the newest event of a stream.
6.  A threshold snapshot never fails the append that triggered it.

The store keeps a write-through copy of every stream in memory and
delegates durability to an :class:`EventRepository`.
"""

from __future__ import annotations

import asyncio
import copy
import heapq
import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Protocol

from eventcore.core.clock import IClock, WallClock
from eventcore.core.config import EventStoreConfig
from eventcore.core.errors import (
    AggregateTypeMismatch,
    ConcurrencyConflict,
    EngineError,
    RepositoryError,
    StreamNotFound,
)
from eventcore.core.ids import new_id
from eventcore.domain.events import (
    DomainEvent,
    EventMetadata,
    EventSnapshot,
    EventStream,
    NewEvent,
)
from eventcore.infrastructure.repository import (
    EventRepository,
    InMemoryEventRepository,
)
from eventcore.observability import metrics

logger = logging.getLogger(__name__)

# (state, event) -> new state.  Must not mutate *state*.
Reducer = Callable[[dict[str, Any], DomainEvent], dict[str, Any]]


class EventSink(Protocol):
    def enqueue(self, event: DomainEvent) -> None: ...


def default_reducer(state: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
    """Merge the event payload into the aggregate state."""
    new_state = dict(state)
    new_state.update(event.data)
    new_state["id"] = event.aggregate_id
    new_state["version"] = event.version
    new_state["last_event_type"] = event.type
    return new_state


def fold_events(
    events: Iterable[DomainEvent],
    reducer: Reducer = default_reducer,
    initial: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Replay *events* through *reducer* starting from *initial*."""
    state = copy.deepcopy(initial) if initial else {}
    for event in events:
        state = reducer(state, event)
    return state


class EventStore:
    """Versioned event streams over a pluggable repository.

    Parameters
    ----------
    repository
        Durable backend.  Defaults to ``InMemoryEventRepository``.
    dispatcher
        Receives every appended event via ``enqueue()``.  May be attached
        later with :meth:`attach_dispatcher`.
    snapshot_threshold
        Events after the latest snapshot that trigger an automatic one.
    max_snapshots
        Snapshots retained per stream.
    retention_window
        Versions kept behind the latest snapshot when pruning.  The newest
        event of a stream is never pruned.
    prune_after_snapshot
        Whether snapshotting drops old events from memory and the backend.
    """

    def __init__(
        self,
        repository: EventRepository | None = None,
        *,
        dispatcher: EventSink | None = None,
        clock: IClock | None = None,
        snapshot_threshold: int = 100,
        max_snapshots: int = 5,
        retention_window: int = 50,
        prune_after_snapshot: bool = True,
        source: str = "eventcore",
    ) -> None:
        self._repository = repository if repository is not None else InMemoryEventRepository()
        self._dispatcher = dispatcher
        self._clock = clock or WallClock()
        self._snapshot_threshold = snapshot_threshold
        self._max_snapshots = max_snapshots
        self._retention_window = retention_window
        self._prune = prune_after_snapshot
        self._source = source

        self._streams: dict[str, EventStream] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._reducers: dict[str, Reducer] = {}
        self._sequence = 0
        self._opened = False

    @classmethod
    def from_config(
        cls,
        config: EventStoreConfig,
        repository: EventRepository,
        *,
        dispatcher: EventSink | None = None,
        clock: IClock | None = None,
        source: str = "eventcore",
    ) -> EventStore:
        return cls(
            repository,
            dispatcher=dispatcher,
            clock=clock,
            snapshot_threshold=config.snapshot_threshold,
            max_snapshots=config.max_snapshots,
            retention_window=config.retention_window,
            prune_after_snapshot=config.prune_after_snapshot,
            source=source,
        )

    # -- Wiring ------------------------------------------------------------

    def attach_dispatcher(self, dispatcher: EventSink) -> None:
        self._dispatcher = dispatcher

    def register_reducer(self, aggregate_type: str, reducer: Reducer) -> None:
        """Use *reducer* to build snapshot state for *aggregate_type*."""
        self._reducers[aggregate_type] = reducer

    def reducer_for(self, aggregate_type: str) -> Reducer:
        return self._reducers.get(aggregate_type, default_reducer)

    @property
    def repository(self) -> EventRepository:
        return self._repository

    # -- Lifecycle ---------------------------------------------------------

    async def open(self) -> None:
        """Load stored streams and resume the global sequence."""
        if self._opened:
            return
        for stream in await self._repository.load_streams():
            del stream.snapshots[: -self._max_snapshots]
            self._streams[stream.aggregate_id] = stream
            if stream.events:
                self._sequence = max(self._sequence, stream.events[-1].sequence)
        self._opened = True
        metrics.STREAMS.set(len(self._streams))
        metrics.LAST_SEQUENCE.set(self._sequence)
        logger.info(
            "Event store opened: %d streams, last sequence %d",
            len(self._streams), self._sequence,
        )

    async def close(self) -> None:
        await self._repository.close()
        self._opened = False

    def _lock_for(self, aggregate_id: str) -> asyncio.Lock:
        lock = self._locks.get(aggregate_id)
        if lock is None:
            lock = self._locks[aggregate_id] = asyncio.Lock()
        return lock

    # -- Write -------------------------------------------------------------

    async def append_events(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: Sequence[NewEvent],
        *,
        expected_version: int | None = None,
    ) -> list[DomainEvent]:
        """Append *events* to the aggregate's stream as one atomic batch.

        Raises
        ------
        ConcurrencyConflict
            If *expected_version* is given and the stream is elsewhere.
        AggregateTypeMismatch
            If the stream already exists under another aggregate type.
        RepositoryError
            If the backend failed; nothing was appended.
        """
        if not events:
            return []

        async with self._lock_for(aggregate_id):
            stream = self._streams.get(aggregate_id)
            current = stream.version if stream is not None else 0

            if stream is not None and stream.aggregate_type != aggregate_type:
                raise AggregateTypeMismatch(
                    f"Stream {aggregate_id} is {stream.aggregate_type!r}, "
                    f"not {aggregate_type!r}"
                )
            if expected_version is not None and expected_version != current:
                metrics.CONCURRENCY_CONFLICTS.labels(
                    aggregate_type=aggregate_type,
                ).inc()
                raise ConcurrencyConflict(aggregate_id, expected_version, current)

            now = self._clock.now()
            batch_correlation = new_id()
            first_sequence = self._sequence + 1
            # Reserve the sequence range before awaiting the backend so
            # concurrent appends to other aggregates never reuse it.
            self._sequence += len(events)

            built = [
                DomainEvent(
                    id=item.id or new_id(),
                    type=item.type,
                    aggregate_id=aggregate_id,
                    aggregate_type=aggregate_type,
                    version=current + offset + 1,
                    sequence=first_sequence + offset,
                    data=copy.deepcopy(item.data),
                    metadata=EventMetadata(
                        timestamp=now,
                        correlation_id=item.correlation_id or batch_correlation,
                        causation_id=item.causation_id,
                        user_id=item.user_id,
                        session_id=item.session_id,
                        source=item.source or self._source,
                    ),
                )
                for offset, item in enumerate(events)
            ]

            try:
                await self._repository.append(
                    aggregate_id, aggregate_type, built, expected_version=current,
                )
            except ConcurrencyConflict:
                metrics.CONCURRENCY_CONFLICTS.labels(
                    aggregate_type=aggregate_type,
                ).inc()
                raise
            except EngineError:
                raise
            except Exception as exc:
                raise RepositoryError(
                    f"Append to {aggregate_id} failed: {exc}"
                ) from exc

            if stream is None:
                stream = EventStream(aggregate_id, aggregate_type)
                self._streams[aggregate_id] = stream
                metrics.STREAMS.set(len(self._streams))
            stream.events.extend(built)
            stream.version = built[-1].version
            stream.last_modified = now
            metrics.LAST_SEQUENCE.set(self._sequence)

            for event in built:
                metrics.EVENTS_APPENDED.labels(
                    aggregate_type=aggregate_type, event_type=event.type,
                ).inc()
                if self._dispatcher is not None:
                    self._dispatcher.enqueue(event)

            if stream.uncompacted_count >= self._snapshot_threshold:
                await self._try_snapshot_locked(stream)

        logger.debug(
            "Appended %d events to %s (v%d, seq %d-%d)",
            len(built), aggregate_id, stream.version,
            built[0].sequence, built[-1].sequence,
        )
        return built

    # -- Read --------------------------------------------------------------

    async def get_events(
        self,
        aggregate_id: str,
        from_version: int | None = None,
        to_version: int | None = None,
    ) -> list[DomainEvent]:
        """Retained events of a stream, optionally limited to a version range."""
        stream = self._streams.get(aggregate_id)
        if stream is None:
            return []
        return [
            e for e in stream.events
            if (from_version is None or e.version >= from_version)
            and (to_version is None or e.version <= to_version)
        ]

    async def get_event_stream(self, aggregate_id: str) -> EventStream | None:
        stream = self._streams.get(aggregate_id)
        return stream.copy() if stream is not None else None

    async def get_latest_snapshot(self, aggregate_id: str) -> EventSnapshot | None:
        stream = self._streams.get(aggregate_id)
        return stream.latest_snapshot if stream is not None else None

    async def load_aggregate(self, aggregate_id: str) -> dict[str, Any] | None:
        """Current aggregate state: latest snapshot plus the events after it."""
        stream = self._streams.get(aggregate_id)
        if stream is None:
            return None
        snap = stream.latest_snapshot
        start = snap.version if snap is not None else 0
        return fold_events(
            (e for e in stream.events if e.version > start),
            self.reducer_for(stream.aggregate_type),
            snap.data if snap is not None else None,
        )

    async def read_all(self, after_sequence: int = 0) -> list[DomainEvent]:
        """Every retained event of every stream in ascending sequence."""
        merged = heapq.merge(
            *(list(s.events) for s in self._streams.values()),
            key=lambda e: e.sequence,
        )
        return [e for e in merged if e.sequence > after_sequence]

    def stream_ids(self) -> list[str]:
        return list(self._streams)

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def __len__(self) -> int:
        """Number of retained events across all streams."""
        return sum(len(s.events) for s in self._streams.values())

    # -- Snapshots ---------------------------------------------------------

    async def create_snapshot(self, aggregate_id: str) -> EventSnapshot:
        """Snapshot the aggregate at its current version, then prune."""
        async with self._lock_for(aggregate_id):
            stream = self._streams.get(aggregate_id)
            if stream is None:
                raise StreamNotFound(f"No event stream for {aggregate_id}")
            return await self._snapshot_locked(stream)

    async def _snapshot_locked(self, stream: EventStream) -> EventSnapshot:
        latest = stream.latest_snapshot
        if latest is not None and latest.version == stream.version:
            return latest

        start = latest.version if latest is not None else 0
        state = fold_events(
            (e for e in stream.events if e.version > start),
            self.reducer_for(stream.aggregate_type),
            latest.data if latest is not None else None,
        )
        snapshot = EventSnapshot(
            aggregate_id=stream.aggregate_id,
            aggregate_type=stream.aggregate_type,
            version=stream.version,
            data=state,
            timestamp=self._clock.now(),
            metadata={"event_count": len(stream.events), "source": self._source},
        )
        await self._repository.save_snapshot(snapshot, keep=self._max_snapshots)
        stream.snapshots.append(snapshot)
        del stream.snapshots[: -self._max_snapshots]
        metrics.SNAPSHOTS_CREATED.labels(
            aggregate_type=stream.aggregate_type,
        ).inc()

        if self._prune:
            # Keep the newest event so open() can resume the global sequence.
            cutoff = min(snapshot.version - self._retention_window, stream.version - 1)
            if stream.events and stream.events[0].version <= cutoff:
                await self._repository.prune(stream.aggregate_id, cutoff)
                before = len(stream.events)
                stream.events = [e for e in stream.events if e.version > cutoff]
                metrics.EVENTS_PRUNED.inc(before - len(stream.events))

        logger.info(
            "Snapshot of %s at v%d (%d events retained)",
            stream.aggregate_id, snapshot.version, len(stream.events),
        )
        return snapshot

    async def _try_snapshot_locked(self, stream: EventStream) -> bool:
        """Threshold snapshot that never fails the caller.

        The events are already committed when this runs; a failure is logged
        and left for the next :meth:`compact` pass.
        """
        try:
            await self._snapshot_locked(stream)
        except Exception:
            metrics.SNAPSHOT_FAILURES.labels(
                aggregate_type=stream.aggregate_type,
            ).inc()
            logger.exception(
                "Automatic snapshot of %s at v%d failed", stream.aggregate_id, stream.version,
            )
            return False
        return True

    async def compact(self) -> int:
        """Snapshot every stream whose uncompacted tail reached the threshold.

        Intended to run as a periodic background job.  Returns the number
        of snapshots taken.
        """
        taken = 0
        for aggregate_id in list(self._streams):
            stream = self._streams[aggregate_id]
            if stream.uncompacted_count < self._snapshot_threshold:
                continue
            async with self._lock_for(aggregate_id):
                if stream.uncompacted_count >= self._snapshot_threshold:
                    if await self._try_snapshot_locked(stream):
                        taken += 1
        return taken
