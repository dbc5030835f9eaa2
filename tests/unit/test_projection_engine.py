"""Tests for the projection engine (``projections/engine.py``)."""

from __future__ import annotations

import pytest

from eventcore.core.enums import ProjectionStatus
from eventcore.core.errors import ProjectionError, ProjectionNotFound
from eventcore.domain.events import DomainEvent, NewEvent
from eventcore.projections.engine import ProjectionEngine


def count_deposits(data, event):
    data["count"] = data.get("count", 0) + 1
    data["total"] = data.get("total", 0) + event.data["amount"]
    return data


def count_in_place(data, event):
    data["count"] = data.get("count", 0) + 1


@pytest.fixture
def projections(store, dispatcher, manual_clock) -> ProjectionEngine:
    return ProjectionEngine(store, dispatcher, clock=manual_clock)


async def _deposit(store, aggregate_id: str, amount: int) -> list[DomainEvent]:
    return await store.append_events(
        aggregate_id, "Account", [NewEvent("Deposited", {"amount": amount})],
    )


class TestCreate:
    async def test_create_registers_live_handler(self, projections, dispatcher):
        projection = await projections.create_projection(
            "deposits", "Deposits", "summary", ["Deposited"],
            folds={"Deposited": count_deposits},
        )
        assert projection.status == ProjectionStatus.ACTIVE
        assert projection.version == 0
        [reg] = dispatcher.handlers_for("Deposited")
        assert reg.name == "projection:deposits"
        assert "deposits" in projections
        assert len(projections) == 1

    async def test_duplicate_id_rejected(self, projections):
        await projections.create_projection("p", "P", "t", ["X"])
        with pytest.raises(ProjectionError):
            await projections.create_projection("p", "P", "t", ["X"])

    async def test_created_after_events_catches_up(self, projections, store, dispatcher):
        await _deposit(store, "a-1", 5)
        await _deposit(store, "a-2", 7)
        await dispatcher.drain()

        projection = await projections.create_projection(
            "deposits", "Deposits", "summary", ["Deposited"],
            folds={"Deposited": count_deposits},
        )
        assert projection.data == {"count": 2, "total": 12}
        assert projection.last_event_sequence == 2

    async def test_unknown_projection(self, projections):
        with pytest.raises(ProjectionNotFound):
            projections.get_projection("nope")
        with pytest.raises(ProjectionNotFound):
            projections.register_fold("nope", "X", count_in_place)


class TestLiveFolding:
    async def test_live_events_are_folded(self, projections, store, dispatcher):
        await projections.create_projection(
            "deposits", "Deposits", "summary", ["Deposited"],
            folds={"Deposited": count_deposits},
        )
        await _deposit(store, "a-1", 5)
        [event] = await _deposit(store, "a-1", 10)
        await dispatcher.drain()

        projection = projections.get_projection("deposits")
        assert projection.data == {"count": 2, "total": 15}
        assert projection.version == 2
        assert projection.last_event_id == event.id
        assert projection.stream_positions == {"a-1": 2}

    async def test_fold_may_mutate_and_return_none(self, projections, store, dispatcher):
        await projections.create_projection(
            "p", "P", "t", ["Deposited"], folds={"Deposited": count_in_place},
        )
        await _deposit(store, "a-1", 1)
        await dispatcher.drain()
        assert projections.get_projection("p").data == {"count": 1}

    async def test_redelivery_is_noop(self, projections, store, dispatcher):
        await projections.create_projection(
            "deposits", "Deposits", "summary", ["Deposited"],
            folds={"Deposited": count_deposits},
        )
        [event] = await _deposit(store, "a-1", 5)
        await dispatcher.drain()
        assert await projections.apply_event("deposits", event) is False
        assert projections.get_projection("deposits").data["count"] == 1

    async def test_unlisted_type_ignored(self, projections):
        await projections.create_projection("p", "P", "t", ["Deposited"])
        event = DomainEvent(type="Other", aggregate_id="a", aggregate_type="A",
                            version=1, sequence=1)
        assert await projections.apply_event("p", event) is False

    async def test_raising_fold_leaves_projection_unchanged(
        self, projections, store, dispatcher,
    ):
        def half_broken(data, event):
            data["touched"] = True
            raise RuntimeError("bad fold")

        await projections.create_projection(
            "p", "P", "t", ["Deposited"], folds={"Deposited": half_broken},
        )
        await _deposit(store, "a-1", 1)
        await dispatcher.drain()

        projection = projections.get_projection("p")
        assert projection.data == {}
        assert projection.version == 0
        assert projection.stream_positions == {}
        assert len(dispatcher.dead_letters) == 1

    async def test_returned_copy_is_detached(self, projections, store, dispatcher):
        await projections.create_projection(
            "p", "P", "t", ["Deposited"], folds={"Deposited": count_in_place},
        )
        snapshot = projections.get_projection("p")
        await _deposit(store, "a-1", 1)
        await dispatcher.drain()
        assert snapshot.data == {}

    async def test_listener_notified(self, projections, store, dispatcher):
        seen: list[str] = []
        projections.add_listener(seen.append)
        await projections.create_projection("p", "P", "t", ["Deposited"])
        await _deposit(store, "a-1", 1)
        await dispatcher.drain()
        assert seen == ["p"]


class TestRebuild:
    async def test_rebuild_matches_live_state(self, projections, store, dispatcher):
        await projections.create_projection(
            "deposits", "Deposits", "summary", ["Deposited"],
            folds={"Deposited": count_deposits},
        )
        for i, agg in enumerate(["a-1", "a-2", "a-1", "a-3"]):
            await _deposit(store, agg, i + 1)
        await dispatcher.drain()
        live = projections.get_projection("deposits")

        rebuilt = await projections.rebuild_projection("deposits")
        assert rebuilt.data == live.data
        assert rebuilt.version == live.version
        assert rebuilt.stream_positions == live.stream_positions
        assert rebuilt.last_event_sequence == live.last_event_sequence

    async def test_failed_rebuild_marks_projection_failed(self, projections, store, dispatcher):
        await _deposit(store, "a-1", 1)
        await dispatcher.drain()
        await projections.create_projection("p", "P", "t", ["Deposited"])

        def broken(data, event):
            raise ValueError("corrupt")

        projections.register_fold("p", "Deposited", broken)
        with pytest.raises(ProjectionError):
            await projections.rebuild_projection("p")
        projection = projections.get_projection("p")
        assert projection.status == ProjectionStatus.FAILED
        assert "corrupt" in projection.error

    async def test_rebuild_unknown(self, projections):
        with pytest.raises(ProjectionNotFound):
            await projections.rebuild_projection("nope")


class TestPauseResume:
    async def test_paused_projection_ignores_live_events(self, projections, store, dispatcher):
        await projections.create_projection(
            "p", "P", "t", ["Deposited"], folds={"Deposited": count_in_place},
        )
        await projections.pause_projection("p")
        await _deposit(store, "a-1", 1)
        await dispatcher.drain()
        projection = projections.get_projection("p")
        assert projection.status == ProjectionStatus.PAUSED
        assert projection.data == {}

        resumed = await projections.resume_projection("p")
        assert resumed.status == ProjectionStatus.ACTIVE
        assert resumed.data == {"count": 1}


class TestNotifications:
    async def test_created_and_rebuilt(self, store, dispatcher, manual_clock, publisher, memory_bus):
        await publisher.start()
        projections = ProjectionEngine(store, dispatcher, publisher=publisher, clock=manual_clock)
        await _deposit(store, "a-1", 1)
        await dispatcher.drain()
        await projections.create_projection("p", "P", "t", ["Deposited"])
        await publisher.flush()

        [(_, created)] = memory_bus.get_history("projection_created")
        assert created.event_types == ["Deposited"]
        [(_, rebuilt)] = memory_bus.get_history("projection_rebuilt")
        assert rebuilt.events_replayed == 1
