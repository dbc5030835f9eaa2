"""Test event/snapshot JSON helpers and the storage row converters."""

import json
from datetime import datetime, timezone
from decimal import Decimal

from eventcore.core.enums import SagaStatus
from eventcore.domain.events import DomainEvent, EventMetadata, EventSnapshot
from eventcore.infrastructure.serialization import (
    dumps,
    event_from_dict,
    event_to_dict,
    snapshot_from_dict,
    snapshot_to_dict,
)
from eventcore.storage.postgres.repository import (
    _event_to_record,
    _record_to_event,
    _record_to_snapshot,
)
from eventcore.storage.postgres.models import SnapshotRecord

TS = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


def _event() -> DomainEvent:
    return DomainEvent(
        type="PaymentCharged",
        aggregate_id="payment-1",
        aggregate_type="Payment",
        version=3,
        sequence=17,
        data={"amount": 12.5, "currency": "EUR"},
        metadata=EventMetadata(timestamp=TS, correlation_id="c-1", causation_id="cmd-1"),
    )


class TestDumps:
    def test_special_types(self):
        raw = dumps({"d": Decimal("1.10"), "t": TS, "s": SagaStatus.COMPLETED})
        assert json.loads(raw) == {
            "d": "1.10", "t": "2024-03-01T12:30:00+00:00", "s": "completed",
        }

    def test_compact_separators(self):
        assert dumps({"a": 1, "b": 2}) == '{"a":1,"b":2}'


class TestEventDicts:
    def test_event_round_trip(self):
        event = _event()
        restored = event_from_dict(json.loads(dumps(event_to_dict(event))))
        assert restored == event

    def test_missing_optional_metadata_fields(self):
        d = event_to_dict(_event())
        d["metadata"] = {"timestamp": TS.isoformat()}
        d["data"] = None
        restored = event_from_dict(d)
        assert restored.metadata.correlation_id == ""
        assert restored.data == {}

    def test_snapshot_round_trip(self):
        snapshot = EventSnapshot(
            aggregate_id="a", aggregate_type="A", version=5,
            data={"n": 5}, timestamp=TS, metadata={"events_folded": 5},
        )
        restored = snapshot_from_dict(json.loads(dumps(snapshot_to_dict(snapshot))))
        assert restored == snapshot


class TestPostgresRows:
    def test_event_record_conversion(self):
        event = _event()
        record = _event_to_record(event)
        assert record.event_type == "PaymentCharged"
        assert record.metadata_json["correlation_id"] == "c-1"
        assert record.timestamp == TS
        assert _record_to_event(record) == event

    def test_decimal_data_stored_as_string(self):
        event = DomainEvent(
            type="T", aggregate_id="a", aggregate_type="A", version=1, sequence=1,
            data={"price": Decimal("9.99")}, metadata=EventMetadata(timestamp=TS),
        )
        assert _event_to_record(event).data == {"price": "9.99"}

    def test_snapshot_record_conversion(self):
        record = SnapshotRecord(
            id="snap-1", aggregate_id="a", aggregate_type="A", version=2,
            data={"x": 1}, metadata_json=None, timestamp=TS,
        )
        snapshot = _record_to_snapshot(record)
        assert snapshot.metadata == {}
        assert snapshot.data == {"x": 1}

