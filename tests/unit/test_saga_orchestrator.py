"""Tests for the saga orchestrator (``sagas/orchestrator.py``).

Covers:
- Straight-through completion.
- Failure -> reverse compensation of succeeded steps only.
- Best-effort compensation when an inverse command fails.
- Duplicate ids, compensation padding, trigger idempotence.
"""

from __future__ import annotations

import pytest

from eventcore.core.enums import CompensationStatus, SagaStatus, StepStatus
from eventcore.core.errors import SagaAlreadyExists, SagaNotFound
from eventcore.cqrs.commands import CommandDispatcher
from eventcore.domain.events import NewEvent
from eventcore.domain.messages import Command, CommandResult
from eventcore.domain.sagas import SagaPlan
from eventcore.sagas.orchestrator import SagaOrchestrator


class Ledger:
    """Records every command type executed, in order."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.executed: list[str] = []
        self.failing = failing or set()

    async def __call__(self, command, store):
        self.executed.append(command.type)
        if command.type in self.failing:
            return CommandResult(
                success=False, aggregate_id=command.aggregate_id, error=f"{command.type} refused",
            )
        return None


@pytest.fixture
def ledger() -> Ledger:
    return Ledger()


@pytest.fixture
def commands(store, ledger) -> CommandDispatcher:
    dispatcher = CommandDispatcher(store, default_timeout=None)
    for command_type in ("A", "B", "C", "UndoA", "UndoB", "UndoC"):
        dispatcher.register_command_handler(command_type, ledger)
    return dispatcher


@pytest.fixture
def sagas(commands, dispatcher, manual_clock) -> SagaOrchestrator:
    return SagaOrchestrator(commands, dispatcher=dispatcher, clock=manual_clock)


def _cmd(command_type: str) -> Command:
    return Command(type=command_type, aggregate_id="x")


def _three_steps():
    return (
        [_cmd("A"), _cmd("B"), _cmd("C")],
        [_cmd("UndoA"), _cmd("UndoB"), _cmd("UndoC")],
    )


class TestHappyPath:
    async def test_all_steps_complete(self, sagas, ledger):
        steps, compensations = _three_steps()
        saga = await sagas.create_saga("s-1", "demo", steps, compensations)

        assert saga.status == SagaStatus.COMPLETED
        assert saga.error is None
        assert saga.succeeded
        assert saga.current_step == 3
        assert [s.status for s in saga.history] == [StepStatus.COMPLETED] * 3
        assert saga.compensations == []
        assert ledger.executed == ["A", "B", "C"]

    async def test_lookup(self, sagas):
        await sagas.create_saga("s-1", "demo", [_cmd("A")])
        assert sagas.get_saga("s-1").type == "demo"
        assert len(sagas) == 1
        assert [s.id for s in sagas.list_sagas(SagaStatus.COMPLETED)] == ["s-1"]
        assert sagas.list_sagas(SagaStatus.ACTIVE) == []
        with pytest.raises(SagaNotFound):
            sagas.get_saga("nope")


class TestCompensation:
    async def test_failed_step_compensates_in_reverse(self, sagas, ledger):
        ledger.failing = {"C"}
        steps, compensations = _three_steps()
        saga = await sagas.create_saga("s-1", "demo", steps, compensations)

        assert saga.status == SagaStatus.COMPLETED
        assert saga.error is not None
        assert "C refused" in saga.error
        assert saga.succeeded is False
        assert ledger.executed == ["A", "B", "C", "UndoB", "UndoA"]
        assert [c.step_number for c in saga.compensations] == [1, 0]
        assert [s.status for s in saga.history] == [
            StepStatus.COMPENSATED, StepStatus.COMPENSATED, StepStatus.FAILED,
        ]

    async def test_first_step_failure_needs_no_compensation(self, sagas, ledger):
        ledger.failing = {"A"}
        steps, compensations = _three_steps()
        saga = await sagas.create_saga("s-1", "demo", steps, compensations)
        assert saga.compensations == []
        assert ledger.executed == ["A"]
        assert saga.error

    async def test_failed_compensation_is_recorded_and_walk_continues(self, sagas, ledger):
        ledger.failing = {"C", "UndoB"}
        steps, compensations = _three_steps()
        saga = await sagas.create_saga("s-1", "demo", steps, compensations)

        assert ledger.executed == ["A", "B", "C", "UndoB", "UndoA"]
        undo_b, undo_a = saga.compensations
        assert undo_b.status == CompensationStatus.FAILED
        assert undo_b.error == "UndoB refused"
        assert undo_a.status == CompensationStatus.COMPLETED
        assert saga.history[1].status == StepStatus.COMPLETED
        assert saga.history[0].status == StepStatus.COMPENSATED
        assert saga.status == SagaStatus.COMPLETED

    async def test_missing_compensations_are_skipped(self, sagas, ledger):
        ledger.failing = {"C"}
        saga = await sagas.create_saga(
            "s-1", "demo", [_cmd("A"), _cmd("B"), _cmd("C")], [_cmd("UndoA")],
        )
        assert saga.compensation_commands[1:] == [None, None]
        assert ledger.executed == ["A", "B", "C", "UndoA"]

    async def test_unknown_step_command_fails_saga(self, sagas, ledger):
        saga = await sagas.create_saga(
            "s-1", "demo", [_cmd("A"), _cmd("Unknown")], [_cmd("UndoA")],
        )
        assert "No handler" in saga.error
        assert ledger.executed == ["A", "UndoA"]


class TestValidation:
    async def test_duplicate_id(self, sagas):
        await sagas.create_saga("s-1", "demo", [_cmd("A")])
        with pytest.raises(SagaAlreadyExists):
            await sagas.create_saga("s-1", "demo", [_cmd("A")])

    async def test_too_many_compensations(self, sagas):
        with pytest.raises(ValueError):
            await sagas.create_saga("s-1", "demo", [_cmd("A")], [_cmd("UndoA"), _cmd("UndoB")])
        assert len(sagas) == 0


class TestTriggers:
    async def test_trigger_starts_saga_once_per_event(self, sagas, store, dispatcher, ledger):
        def plan(event):
            return SagaPlan(
                saga_type="demo",
                steps=(_cmd("A"), _cmd("B")),
                context=(("account", event.aggregate_id),),
            )

        sagas.register_trigger("Opened", plan)
        [event] = await store.append_events("acc-1", "Account", [NewEvent("Opened")])
        await dispatcher.drain()

        saga = sagas.get_saga(f"demo:{event.id}")
        assert saga.status == SagaStatus.COMPLETED
        assert saga.context == {"account": "acc-1", "trigger_event_id": event.id}

        # Redelivery of the same event does not start a second saga.
        await dispatcher.dispatch(event)
        assert len(sagas) == 1
        assert ledger.executed == ["A", "B"]

    async def test_planner_may_decline(self, sagas, store, dispatcher):
        sagas.register_trigger("Opened", lambda event: None)
        await store.append_events("acc-1", "Account", [NewEvent("Opened")])
        await dispatcher.drain()
        assert len(sagas) == 0

    async def test_trigger_needs_dispatcher(self, commands):
        with pytest.raises(RuntimeError):
            SagaOrchestrator(commands).register_trigger("Opened", lambda e: None)


class TestNotifications:
    async def test_created_and_compensated(self, commands, ledger, publisher, memory_bus, manual_clock):
        await publisher.start()
        sagas = SagaOrchestrator(commands, publisher=publisher, clock=manual_clock)
        ledger.failing = {"B"}
        await sagas.create_saga("s-1", "demo", [_cmd("A"), _cmd("B")], [_cmd("UndoA")])
        await sagas.create_saga("s-2", "demo", [_cmd("A")])
        await publisher.flush()

        assert len(memory_bus.get_history("saga_created")) == 2
        [(_, compensated)] = memory_bus.get_history("saga_compensated")
        assert compensated.failed_step == 1
        assert compensated.compensations_failed == 0
        [(_, completed)] = memory_bus.get_history("saga_completed")
        assert completed.saga_id == "s-2"
