"""Tests for the command dispatcher (``cqrs/commands.py``).

Covers:
- Lookup failures (unknown type, disabled handler).
- Validation and authorization short-circuit before the handler.
- Mapping of raised exceptions to error codes.
- Timeouts: caller gets TIMEOUT, handler finishes in the background.
- Result shapes returned by handlers and the notifications emitted.
"""

from __future__ import annotations

import asyncio

import pytest

from eventcore.core.enums import ErrorCode
from eventcore.core.errors import NotFound
from eventcore.cqrs.commands import CommandDispatcher
from eventcore.domain.events import NewEvent
from eventcore.domain.messages import Command, CommandMetadata, CommandResult


@pytest.fixture
def commands(store) -> CommandDispatcher:
    return CommandDispatcher(store, default_timeout=None)


async def open_account(command, store):
    return await store.append_events(
        command.aggregate_id, "Account",
        [NewEvent("AccountOpened", dict(command.data), causation_id=command.id)],
        expected_version=command.metadata.expected_version,
    )


def _open(aggregate_id: str = "acc-1", **metadata) -> Command:
    return Command(
        type="OpenAccount",
        aggregate_id=aggregate_id,
        data={"owner": "ann"},
        metadata=CommandMetadata(**metadata),
    )


class TestLookup:
    async def test_unknown_type_is_not_found(self, commands):
        result = await commands.execute_command(_open())
        assert result.success is False
        assert result.error_code == ErrorCode.NOT_FOUND

    async def test_disabled_handler(self, commands):
        commands.register_command_handler("OpenAccount", open_account)
        commands.set_enabled("OpenAccount", False)
        result = await commands.execute_command(_open())
        assert result.error_code == ErrorCode.DISABLED

    async def test_set_enabled_unknown_raises(self, commands):
        with pytest.raises(KeyError):
            commands.set_enabled("Nope", True)

    async def test_registration_lookup(self, commands):
        reg = commands.register_command_handler("OpenAccount", open_account, name="open")
        assert commands.get_registration("OpenAccount") is reg
        assert commands.command_types == ["OpenAccount"]


class TestChecks:
    async def test_validation_failure_skips_handler(self, commands):
        called = False

        async def handler(command, store):
            nonlocal called
            called = True

        commands.register_command_handler(
            "OpenAccount", handler, validate=lambda c: "owner" not in c.data,
        )
        result = await commands.execute_command(_open())
        assert result.error_code == ErrorCode.VALIDATION_FAILED
        assert called is False

    async def test_async_authorizer(self, commands):
        async def deny(command):
            return command.metadata.user_id == "admin"

        commands.register_command_handler("OpenAccount", open_account, authorize=deny)
        result = await commands.execute_command(_open(user_id="guest"))
        assert result.error_code == ErrorCode.AUTHORIZATION_FAILED
        ok = await commands.execute_command(_open(user_id="admin"))
        assert ok.success

    async def test_raising_validator_counts_as_failure(self, commands):
        def explode(command):
            raise ValueError("bad owner")

        commands.register_command_handler("OpenAccount", open_account, validate=explode)
        result = await commands.execute_command(_open())
        assert result.error_code == ErrorCode.VALIDATION_FAILED
        assert result.error == "bad owner"


class TestExecution:
    async def test_success_wraps_appended_events(self, commands, store):
        commands.register_command_handler("OpenAccount", open_account)
        result = await commands.execute_command(_open())
        assert result.success
        assert result.version == 1
        assert [e.type for e in result.events] == ["AccountOpened"]
        assert result.events[0].metadata.causation_id
        assert "duration_ms" in result.metadata
        assert (await store.get_event_stream("acc-1")).version == 1

    async def test_stale_expected_version_is_conflict(self, commands):
        commands.register_command_handler("OpenAccount", open_account)
        await commands.execute_command(_open(expected_version=0))
        result = await commands.execute_command(_open(expected_version=0))
        assert result.success is False
        assert result.error_code == ErrorCode.CONCURRENCY_CONFLICT

    async def test_engine_error_keeps_its_code(self, commands):
        async def handler(command, store):
            raise NotFound("missing account")

        commands.register_command_handler("OpenAccount", handler)
        result = await commands.execute_command(_open())
        assert result.error_code == ErrorCode.NOT_FOUND
        assert result.error == "missing account"

    async def test_unexpected_exception_is_handler_error(self, commands):
        async def handler(command, store):
            raise ZeroDivisionError("oops")

        commands.register_command_handler("OpenAccount", handler)
        result = await commands.execute_command(_open())
        assert result.error_code == ErrorCode.HANDLER_ERROR
        assert result.error == "oops"

    async def test_handler_returning_none(self, commands):
        async def handler(command, store):
            return None

        commands.register_command_handler("OpenAccount", handler)
        result = await commands.execute_command(_open())
        assert result.success
        assert result.events == []
        assert result.version == 0

    async def test_handler_failure_result_gets_code(self, commands):
        async def handler(command, store):
            return CommandResult(success=False, aggregate_id=command.aggregate_id, error="no")

        commands.register_command_handler("OpenAccount", handler)
        result = await commands.execute_command(_open())
        assert result.error_code == ErrorCode.HANDLER_ERROR


class TestTimeout:
    async def test_timeout_returns_and_handler_completes(self, commands, store):
        release = asyncio.Event()

        async def slow(command, store):
            await release.wait()
            return await open_account(command, store)

        commands.register_command_handler("OpenAccount", slow)
        result = await commands.execute_command(_open(), timeout=0.01)
        assert result.error_code == ErrorCode.TIMEOUT
        assert commands.get_metrics()["in_background"] == 1

        release.set()
        assert await commands.wait_for_background() == 0
        assert commands.get_metrics()["in_background"] == 0
        assert (await store.get_event_stream("acc-1")).version == 1

    async def test_wait_for_background_cancels_stragglers(self, commands, store):
        async def hung(command, store):
            await asyncio.Event().wait()

        commands.register_command_handler("OpenAccount", hung)
        result = await commands.execute_command(_open(), timeout=0.01)
        assert result.error_code == ErrorCode.TIMEOUT

        assert await commands.wait_for_background(timeout=0.01) == 1
        assert commands.get_metrics()["in_background"] == 0
        assert await store.get_event_stream("acc-1") is None


class TestNotifications:
    async def test_executed_and_failed_notifications(self, store, publisher, memory_bus):
        await publisher.start()
        commands = CommandDispatcher(store, publisher=publisher)
        commands.register_command_handler("OpenAccount", open_account, name="open")

        await commands.execute_command(_open())
        await commands.execute_command(_open(expected_version=0))
        await publisher.flush()

        [(_, registered)] = memory_bus.get_history("handler_registered")
        assert registered.kind == "command"
        [(_, executed)] = memory_bus.get_history("command_executed")
        assert executed.version == 1
        assert executed.event_count == 1
        [(_, failed)] = memory_bus.get_history("command_failed")
        assert failed.error_code == "concurrency_conflict"
        assert commands.get_metrics()["executed"] == 1
        assert commands.get_metrics()["failed"] == 1
