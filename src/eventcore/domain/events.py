"""Event-sourcing value types: events, streams, snapshots.

Design invariants
-----------------
1.  Every ``DomainEvent`` is **immutable** (``frozen=True``) once the
    store has assigned its ``version`` and ``sequence``.
2.  Within one aggregate stream ``version`` increases by exactly 1 per
    event and is never reused.
3.  ``sequence`` is unique and monotonic across *all* streams; it gives
    the total order used for audit and projection replay.
4.  ``EventStream.version`` always equals the version of the last
    appended event, or the last snapshot's version if the events were
    pruned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from eventcore.core.ids import new_id as _uuid
from eventcore.core.ids import utc_now as _now


@dataclass(frozen=True)
class EventMetadata:
    """Provenance attached to every stored event.

    timestamp       UTC time the store accepted the event.
    correlation_id  Groups events from the same causal chain.
    causation_id    Id of the command or event that directly caused this one.
    source          Component that produced the event.
    """

    timestamp: datetime = field(default_factory=_now)
    correlation_id: str = ""
    causation_id: str = ""
    user_id: str = ""
    session_id: str = ""
    source: str = "eventcore"


@dataclass(frozen=True)
class DomainEvent:
    """A fact recorded in an aggregate's stream."""

    type: str
    aggregate_id: str
    aggregate_type: str
    version: int
    sequence: int
    data: dict[str, Any] = field(default_factory=dict)
    metadata: EventMetadata = field(default_factory=EventMetadata)
    id: str = field(default_factory=_uuid)


@dataclass(frozen=True)
class NewEvent:
    """An event a caller wants appended.

    The store fills in ``version``, ``sequence`` and the metadata
    timestamp; everything else is taken from here.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    correlation_id: str = ""
    causation_id: str = ""
    user_id: str = ""
    session_id: str = ""
    source: str = ""
    id: str = ""


@dataclass
class EventSnapshot:
    """Materialized aggregate state at ``version``."""

    aggregate_id: str
    aggregate_type: str
    version: int
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=_now)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_uuid)


@dataclass
class EventStream:
    """All retained events and snapshots of one aggregate instance."""

    aggregate_id: str
    aggregate_type: str
    version: int = 0
    events: list[DomainEvent] = field(default_factory=list)
    snapshots: list[EventSnapshot] = field(default_factory=list)
    last_modified: datetime = field(default_factory=_now)

    @property
    def latest_snapshot(self) -> EventSnapshot | None:
        return self.snapshots[-1] if self.snapshots else None

    @property
    def uncompacted_count(self) -> int:
        """Number of retained events newer than the latest snapshot."""
        snap = self.latest_snapshot
        if snap is None:
            return len(self.events)
        return sum(1 for e in self.events if e.version > snap.version)

    def copy(self) -> EventStream:
        """Shallow copy safe to hand out to readers."""
        return EventStream(
            aggregate_id=self.aggregate_id,
            aggregate_type=self.aggregate_type,
            version=self.version,
            events=list(self.events),
            snapshots=list(self.snapshots),
            last_modified=self.last_modified,
        )
