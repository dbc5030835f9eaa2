"""JSON helpers for events and snapshots (datetime / Decimal / Enum safe)."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from eventcore.domain.events import DomainEvent, EventMetadata, EventSnapshot


class EventEncoder(json.JSONEncoder):
    """Handles Decimal, datetime and Enum serialization."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def dumps(payload: Any) -> str:
    return json.dumps(payload, cls=EventEncoder, separators=(",", ":"))


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def metadata_to_dict(metadata: EventMetadata) -> dict[str, Any]:
    d = asdict(metadata)
    d["timestamp"] = metadata.timestamp.isoformat()
    return d


def metadata_from_dict(d: dict[str, Any]) -> EventMetadata:
    return EventMetadata(
        timestamp=_parse_ts(d["timestamp"]),
        correlation_id=d.get("correlation_id", ""),
        causation_id=d.get("causation_id", ""),
        user_id=d.get("user_id", ""),
        session_id=d.get("session_id", ""),
        source=d.get("source", ""),
    )


def event_to_dict(event: DomainEvent) -> dict[str, Any]:
    """Serialize an event to a JSON-safe dict."""
    return {
        "id": event.id,
        "type": event.type,
        "aggregate_id": event.aggregate_id,
        "aggregate_type": event.aggregate_type,
        "version": event.version,
        "sequence": event.sequence,
        "data": event.data,
        "metadata": metadata_to_dict(event.metadata),
    }


def event_from_dict(d: dict[str, Any]) -> DomainEvent:
    return DomainEvent(
        id=d["id"],
        type=d["type"],
        aggregate_id=d["aggregate_id"],
        aggregate_type=d["aggregate_type"],
        version=int(d["version"]),
        sequence=int(d["sequence"]),
        data=d.get("data") or {},
        metadata=metadata_from_dict(d["metadata"]),
    )


def snapshot_to_dict(snapshot: EventSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "aggregate_id": snapshot.aggregate_id,
        "aggregate_type": snapshot.aggregate_type,
        "version": snapshot.version,
        "data": snapshot.data,
        "timestamp": snapshot.timestamp.isoformat(),
        "metadata": snapshot.metadata,
    }


def snapshot_from_dict(d: dict[str, Any]) -> EventSnapshot:
    return EventSnapshot(
        id=d["id"],
        aggregate_id=d["aggregate_id"],
        aggregate_type=d["aggregate_type"],
        version=int(d["version"]),
        data=d.get("data") or {},
        timestamp=_parse_ts(d["timestamp"]),
        metadata=d.get("metadata") or {},
    )
