"""Read-model record owned by the projection engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from eventcore.core.enums import ProjectionStatus
from eventcore.core.ids import utc_now as _now


@dataclass
class Projection:
    """A named read model folded from events.

    ``last_event_sequence`` is the global watermark; ``stream_positions``
    holds the highest version applied per aggregate so redelivered events
    are recognised even when streams are delivered out of global order.
    """

    id: str
    name: str
    type: str
    event_types: tuple[str, ...] = ()
    version: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    last_event_id: str = ""
    last_event_sequence: int = 0
    stream_positions: dict[str, int] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=_now)
    status: ProjectionStatus = ProjectionStatus.ACTIVE
    error: str | None = None

    def has_applied(self, aggregate_id: str, version: int) -> bool:
        return version <= self.stream_positions.get(aggregate_id, 0)
