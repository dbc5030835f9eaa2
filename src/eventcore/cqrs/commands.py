"""Write side: command routing, checks and failure mapping.

A command handler is an async callable ``(command, store)`` that performs
the domain logic and appends events through the store.  It may return:

*  the list of appended ``DomainEvent``s (wrapped into a successful
   ``CommandResult``),
*  a ``CommandResult`` built by the handler itself, or
*  ``None`` (success with no events).

Nothing raised past this module: every failure becomes a
``CommandResult`` with ``success=False`` and an ``ErrorCode``.

Timeouts
--------
The deadline is enforced with ``asyncio.wait_for`` over a *shielded*
task.  On expiry the caller gets ``ErrorCode.TIMEOUT`` while the handler
keeps running to completion in the background, so an append that the
store already acknowledged is never rolled back.  Callers must treat a
timeout as an unknown outcome and reconcile by resubmitting with
``expected_version``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from eventcore.bus.schemas import CommandExecuted, CommandFailed, HandlerRegistered
from eventcore.core.config import CommandConfig
from eventcore.core.enums import ErrorCode
from eventcore.core.errors import ConcurrencyConflict, EngineError
from eventcore.domain.messages import Command, CommandResult
from eventcore.observability import metrics
from eventcore.observability.logger import correlation_scope

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Command, Any], Awaitable[Any]]
# Sync or async predicate over the command.
CommandCheck = Callable[[Command], "bool | Awaitable[bool]"]


@dataclass
class CommandHandlerRegistration:
    name: str
    command_type: str
    handler: CommandHandler
    validate: CommandCheck | None = None
    authorize: CommandCheck | None = None
    enabled: bool = True


async def _check(check: CommandCheck | None, command: Command) -> tuple[bool, str]:
    """Run a validator/authorizer.  A check that raises counts as failed."""
    if check is None:
        return True, ""
    try:
        outcome = check(command)
        if inspect.isawaitable(outcome):
            outcome = await outcome
    except Exception as exc:
        return False, str(exc)
    return bool(outcome), ""


class CommandDispatcher:
    """Routes commands to their registered handler.

    Parameters
    ----------
    store
        Passed to every handler as its second argument.
    max_concurrency
        Commands executing at once; further calls wait for a slot.
    default_timeout
        Deadline in seconds when ``execute_command`` gets none.
        ``None`` disables it.
    """

    def __init__(
        self,
        store: Any,
        *,
        publisher: Any | None = None,
        max_concurrency: int = 64,
        default_timeout: float | None = 30.0,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._default_timeout = default_timeout
        self._handlers: dict[str, CommandHandlerRegistration] = {}
        self._orphans: set[asyncio.Task] = set()
        self._executed = 0
        self._failed = 0

    @classmethod
    def from_config(
        cls, config: CommandConfig, store: Any, *, publisher: Any | None = None,
    ) -> CommandDispatcher:
        return cls(
            store,
            publisher=publisher,
            max_concurrency=config.max_concurrency,
            default_timeout=config.default_timeout,
        )

    # -- Registration ------------------------------------------------------

    def register_command_handler(
        self,
        command_type: str,
        handler: CommandHandler,
        *,
        name: str | None = None,
        validate: CommandCheck | None = None,
        authorize: CommandCheck | None = None,
        enabled: bool = True,
    ) -> CommandHandlerRegistration:
        """Register *handler* for *command_type*.  One handler per type."""
        reg = CommandHandlerRegistration(
            name=name or getattr(handler, "__qualname__", command_type),
            command_type=command_type,
            handler=handler,
            validate=validate,
            authorize=authorize,
            enabled=enabled,
        )
        if command_type in self._handlers:
            logger.info("Replacing command handler for %s", command_type)
        self._handlers[command_type] = reg
        if self._publisher is not None:
            self._publisher.emit(
                HandlerRegistered(
                    kind="command", handler_type=command_type, handler_name=reg.name,
                )
            )
        return reg

    def set_enabled(self, command_type: str, enabled: bool) -> None:
        reg = self._handlers.get(command_type)
        if reg is None:
            raise KeyError(f"No command handler for {command_type!r}")
        reg.enabled = enabled

    def get_registration(self, command_type: str) -> CommandHandlerRegistration | None:
        return self._handlers.get(command_type)

    @property
    def command_types(self) -> list[str]:
        return sorted(self._handlers)

    # -- Execution ---------------------------------------------------------

    async def execute_command(
        self, command: Command, *, timeout: float | None = None,
    ) -> CommandResult:
        """Run *command* through lookup, checks and its handler."""
        started = time.perf_counter()
        with correlation_scope(command.metadata.correlation_id or command.id):
            reg = self._handlers.get(command.type)
            if reg is None:
                result = CommandResult.failure(
                    command.aggregate_id,
                    ErrorCode.NOT_FOUND,
                    f"No handler registered for command {command.type!r}",
                )
            elif not reg.enabled:
                result = CommandResult.failure(
                    command.aggregate_id,
                    ErrorCode.DISABLED,
                    f"Handler for command {command.type!r} is disabled",
                )
            else:
                result = await self._execute_with_deadline(
                    reg, command, timeout if timeout is not None else self._default_timeout,
                )
            self._record(command, result, time.perf_counter() - started)
        return result

    async def _execute_with_deadline(
        self,
        reg: CommandHandlerRegistration,
        command: Command,
        deadline: float | None,
    ) -> CommandResult:
        task = asyncio.ensure_future(self._run(reg, command))
        if deadline is None:
            return await task
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=deadline)
        except asyncio.TimeoutError:
            self._orphans.add(task)
            task.add_done_callback(self._orphan_done(command))
            logger.warning(
                "Command %s %s timed out after %.3fs; outcome unknown",
                command.type, command.id, deadline,
            )
            return CommandResult.failure(
                command.aggregate_id,
                ErrorCode.TIMEOUT,
                f"Command {command.type} timed out after {deadline}s",
            )

    def _orphan_done(self, command: Command) -> Callable[[asyncio.Task], None]:
        def _done(task: asyncio.Task) -> None:
            self._orphans.discard(task)
            if task.cancelled():
                return
            late = task.result()
            logger.info(
                "Timed-out command %s %s finished in background: success=%s version=%d",
                command.type, command.id, late.success, late.version,
            )
        return _done

    async def _run(
        self, reg: CommandHandlerRegistration, command: Command,
    ) -> CommandResult:
        async with self._semaphore:
            ok, detail = await _check(reg.validate, command)
            if not ok:
                return CommandResult.failure(
                    command.aggregate_id,
                    ErrorCode.VALIDATION_FAILED,
                    detail or f"Command {command.type} failed validation",
                )
            ok, detail = await _check(reg.authorize, command)
            if not ok:
                return CommandResult.failure(
                    command.aggregate_id,
                    ErrorCode.AUTHORIZATION_FAILED,
                    detail or f"Command {command.type} is not authorized",
                )

            try:
                outcome = await reg.handler(command, self._store)
            except ConcurrencyConflict as exc:
                return CommandResult.failure(
                    command.aggregate_id, ErrorCode.CONCURRENCY_CONFLICT, str(exc),
                )
            except EngineError as exc:
                return CommandResult.failure(command.aggregate_id, exc.code, str(exc))
            except Exception as exc:
                logger.exception(
                    "Command handler %s failed on %s", reg.name, command.id,
                )
                return CommandResult.failure(
                    command.aggregate_id, ErrorCode.HANDLER_ERROR, str(exc),
                )

        if isinstance(outcome, CommandResult):
            if not outcome.success and outcome.error_code is None:
                outcome.error_code = ErrorCode.HANDLER_ERROR
            return outcome
        return CommandResult.ok(
            command.aggregate_id, list(outcome or []), handler=reg.name,
        )

    def _record(self, command: Command, result: CommandResult, elapsed: float) -> None:
        duration_ms = round(elapsed * 1000, 3)
        result.metadata.setdefault("duration_ms", duration_ms)
        metrics.COMMAND_LATENCY.labels(command_type=command.type).observe(elapsed)

        if result.success:
            self._executed += 1
            metrics.COMMANDS_TOTAL.labels(
                command_type=command.type, outcome="success",
            ).inc()
            logger.debug(
                "Command %s on %s -> v%d (%d events)",
                command.type, command.aggregate_id, result.version, len(result.events),
            )
            if self._publisher is not None:
                self._publisher.emit(
                    CommandExecuted(
                        command_id=command.id,
                        command_type=command.type,
                        aggregate_id=result.aggregate_id,
                        version=result.version,
                        event_count=len(result.events),
                        duration_ms=duration_ms,
                    )
                )
            return

        self._failed += 1
        code = result.error_code.value if result.error_code else ""
        metrics.COMMANDS_TOTAL.labels(command_type=command.type, outcome=code).inc()
        logger.info(
            "Command %s on %s failed [%s]: %s",
            command.type, command.aggregate_id, code, result.error,
        )
        if self._publisher is not None:
            self._publisher.emit(
                CommandFailed(
                    command_id=command.id,
                    command_type=command.type,
                    aggregate_id=command.aggregate_id,
                    error=result.error or "",
                    error_code=code,
                )
            )

    async def wait_for_background(self, timeout: float | None = None) -> int:
        """Wait for handlers still running after their caller timed out.

        Handlers still running after *timeout* seconds are cancelled.
        Returns the number of handlers cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._orphans:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(list(self._orphans), timeout=remaining)

        leftover = list(self._orphans)
        for task in leftover:
            task.cancel()
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)
            logger.warning(
                "Cancelled %d background command handlers at shutdown", len(leftover),
            )
        return len(leftover)

    def get_metrics(self) -> dict[str, int]:
        return {
            "executed": self._executed,
            "failed": self._failed,
            "in_background": len(self._orphans),
            "handlers": len(self._handlers),
        }
