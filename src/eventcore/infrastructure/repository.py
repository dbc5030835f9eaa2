"""Persistence backends for the event store.

Design invariants
-----------------
1.  ``append()`` is **all-or-nothing** per batch: either every event of
    the batch is durable or none is.
2.  ``append()`` re-checks the stream version it is given
    (``expected_version``) and raises ``ConcurrencyConflict`` on mismatch,
    so several processes sharing one backend still get optimistic
    concurrency.
3.  Records are never rewritten.  Snapshots and pruning are recorded as
    additional entries.

This module provides:

*  ``EventRepository``: the protocol.
*  ``InMemoryEventRepository``: dict-backed implementation for tests and
   local development.
*  ``JsonFileEventRepository``: append-to-JSONL-file implementation for
   durable single-node persistence.

The SQLAlchemy/PostgreSQL backend lives in
:mod:`eventcore.storage.postgres.repository`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from eventcore.core.errors import ConcurrencyConflict, RepositoryError
from eventcore.domain.events import DomainEvent, EventSnapshot, EventStream
from eventcore.infrastructure.serialization import (
    dumps,
    event_from_dict,
    event_to_dict,
    snapshot_from_dict,
    snapshot_to_dict,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class EventRepository(Protocol):
    """Durable, ordered, append-only storage of event records."""

    async def load_streams(self) -> list[EventStream]:
        """Return every stored stream with its retained events and snapshots."""
        ...

    async def append(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: list[DomainEvent],
        *,
        expected_version: int,
    ) -> None:
        """Persist *events* atomically if the stream is at *expected_version*."""
        ...

    async def save_snapshot(self, snapshot: EventSnapshot, *, keep: int) -> None:
        """Persist *snapshot*, retaining only the newest *keep* per stream."""
        ...

    async def prune(self, aggregate_id: str, up_to_version: int) -> int:
        """Drop events with ``version <= up_to_version``.  Returns count."""
        ...

    async def close(self) -> None: ...


def _apply_prune(stream: EventStream, up_to_version: int) -> int:
    before = len(stream.events)
    stream.events = [e for e in stream.events if e.version > up_to_version]
    return before - len(stream.events)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryEventRepository:
    """Dict-backed repository.  No persistence across restarts.

    Good for: unit tests and local development.  A single instance can be
    handed to a second ``EventStore`` to simulate a restart.
    """

    def __init__(self) -> None:
        self._streams: dict[str, EventStream] = {}

    async def load_streams(self) -> list[EventStream]:
        return [s.copy() for s in self._streams.values()]

    async def append(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: list[DomainEvent],
        *,
        expected_version: int,
    ) -> None:
        stream = self._streams.get(aggregate_id)
        actual = stream.version if stream is not None else 0
        if actual != expected_version:
            raise ConcurrencyConflict(aggregate_id, expected_version, actual)
        if not events:
            return
        if stream is None:
            stream = EventStream(aggregate_id, aggregate_type)
            self._streams[aggregate_id] = stream
        stream.events.extend(events)
        stream.version = events[-1].version
        stream.last_modified = events[-1].metadata.timestamp

    async def save_snapshot(self, snapshot: EventSnapshot, *, keep: int) -> None:
        stream = self._streams.get(snapshot.aggregate_id)
        if stream is None:
            raise RepositoryError(f"Unknown stream {snapshot.aggregate_id}")
        stream.snapshots.append(snapshot)
        del stream.snapshots[:-keep]

    async def prune(self, aggregate_id: str, up_to_version: int) -> int:
        stream = self._streams.get(aggregate_id)
        if stream is None:
            return 0
        return _apply_prune(stream, up_to_version)

    async def close(self) -> None:
        return None

    # -- Testing helpers ---------------------------------------------------

    def clear(self) -> None:
        """Remove all streams.  Testing only."""
        self._streams.clear()

    def __len__(self) -> int:
        return sum(len(s.events) for s in self._streams.values())


# ---------------------------------------------------------------------------
# JSON-Lines file implementation
# ---------------------------------------------------------------------------

class JsonFileEventRepository:
    """Append-only JSONL file repository.  Durable across restarts.

    Each line is one record with a ``kind`` discriminator:

    ``batch``     every event of one append (one line, so a torn write
                  loses the whole batch rather than part of it)
    ``snapshot``  a snapshot plus the retention count in force
    ``prune``     events up to ``up_to_version`` were dropped
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._versions: dict[str, int] = {}
        if self._path.exists():
            self._scan_versions()

    @property
    def path(self) -> Path:
        return self._path

    def _scan_versions(self) -> None:
        """Populate the version index used for the optimistic check."""
        for record in self._records():
            if record.get("kind") == "batch" and record.get("events"):
                self._versions[record["aggregate_id"]] = int(
                    record["events"][-1]["version"]
                )

    def _records(self):
        if not self._path.exists():
            return
        with self._path.open() as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(
                        "Skipping unreadable record at %s:%d", self._path, lineno,
                    )

    def _write(self, record: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a") as f:
                f.write(dumps(record) + "\n")
        except OSError as exc:
            raise RepositoryError(f"Cannot write {self._path}: {exc}") from exc

    async def load_streams(self) -> list[EventStream]:
        streams: dict[str, EventStream] = {}
        for record in self._records():
            kind = record.get("kind")
            if kind == "batch":
                events = [event_from_dict(d) for d in record.get("events", [])]
                if not events:
                    continue
                stream = streams.get(record["aggregate_id"])
                if stream is None:
                    stream = EventStream(
                        record["aggregate_id"], record["aggregate_type"],
                    )
                    streams[stream.aggregate_id] = stream
                stream.events.extend(events)
                stream.version = events[-1].version
                stream.last_modified = events[-1].metadata.timestamp
            elif kind == "snapshot":
                snapshot = snapshot_from_dict(record["snapshot"])
                stream = streams.get(snapshot.aggregate_id)
                if stream is None:
                    continue
                stream.snapshots.append(snapshot)
                del stream.snapshots[: -int(record.get("keep", 5))]
            elif kind == "prune":
                stream = streams.get(record["aggregate_id"])
                if stream is not None:
                    _apply_prune(stream, int(record["up_to_version"]))
        return list(streams.values())

    async def append(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: list[DomainEvent],
        *,
        expected_version: int,
    ) -> None:
        actual = self._versions.get(aggregate_id, 0)
        if actual != expected_version:
            raise ConcurrencyConflict(aggregate_id, expected_version, actual)
        if not events:
            return
        self._write({
            "kind": "batch",
            "aggregate_id": aggregate_id,
            "aggregate_type": aggregate_type,
            "events": [event_to_dict(e) for e in events],
        })
        self._versions[aggregate_id] = events[-1].version

    async def save_snapshot(self, snapshot: EventSnapshot, *, keep: int) -> None:
        self._write({
            "kind": "snapshot",
            "keep": keep,
            "snapshot": snapshot_to_dict(snapshot),
        })

    async def prune(self, aggregate_id: str, up_to_version: int) -> int:
        self._write({
            "kind": "prune",
            "aggregate_id": aggregate_id,
            "up_to_version": up_to_version,
        })
        return 0

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return sum(self._versions.values())
