"""Event dispatcher: fan-out of appended events with retry and dead-lettering.

Design goals
------------
1.  **Type-routed delivery**: handlers register for an event ``type``
    string and are looked up by exact match at delivery time.
2.  **Named fan-out**: several handlers may subscribe to one type, each
    under its own name with its own retry policy and dead-letter setting.
    Registering an existing name for the same type replaces it.
3.  **Per-aggregate FIFO**: ``enqueue()`` never blocks the append path.
    Every aggregate gets one queue and one worker task, so events of the
    same aggregate reach each handler in append order while different
    aggregates progress independently.
4.  **Retry, then dead-letter**: a failing handler is retried up to
    ``max_retries`` times with fixed or exponential delay.  When retries
    are exhausted the event goes to the dead-letter sink (if enabled for
    that handler) or is logged and dropped.  The stored event is never
    affected.

This module provides:

*  ``RetryPolicy`` / ``EventHandlerRegistration``: registration records.
*  ``DeadLetter`` / ``DeadLetterQueue`` / ``InMemoryDeadLetterQueue``:
   the dead-letter sink.
*  ``EventDispatcher``: the dispatcher itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from eventcore.bus.schemas import EventDeadLettered, HandlerRegistered
from eventcore.core.config import RetryConfig
from eventcore.core.enums import BackoffStrategy
from eventcore.core.ids import utc_now
from eventcore.domain.events import DomainEvent
from eventcore.observability import metrics

logger = logging.getLogger(__name__)

# Type alias for async event handlers.
EventHandler = Callable[[DomainEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Registration records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    delay: float = 1.0  # seconds
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        if self.backoff == BackoffStrategy.EXPONENTIAL:
            return self.delay * (2 ** (attempt - 1))
        return self.delay

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            delay=config.delay,
            backoff=config.backoff,
        )


@dataclass
class EventHandlerRegistration:
    name: str
    event_type: str
    handler: EventHandler
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    dead_letter_queue: bool = True
    enabled: bool = True


# ---------------------------------------------------------------------------
# Dead-letter sink
# ---------------------------------------------------------------------------

@dataclass
class DeadLetter:
    """An event a handler could not process within its retry budget."""

    event: DomainEvent
    handler_name: str
    error: str
    attempts: int
    timestamp: datetime = field(default_factory=utc_now)


@runtime_checkable
class DeadLetterQueue(Protocol):
    async def put(self, dead_letter: DeadLetter) -> None: ...


class InMemoryDeadLetterQueue:
    """List-backed dead-letter sink for manual inspection."""

    def __init__(self) -> None:
        self._entries: list[DeadLetter] = []

    async def put(self, dead_letter: DeadLetter) -> None:
        self._entries.append(dead_letter)

    @property
    def entries(self) -> list[DeadLetter]:
        return list(self._entries)

    def drain(self) -> list[DeadLetter]:
        """Remove and return all entries."""
        drained = self._entries[:]
        self._entries.clear()
        return drained

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class EventDispatcher:
    """Delivers stored events to registered handlers.

    Parameters
    ----------
    default_retry
        Policy used when a registration does not specify one.
    dead_letters
        Sink for exhausted deliveries.  Defaults to an in-memory queue.
    publisher
        Optional ``NotificationPublisher`` for registration and
        dead-letter notifications.
    on_handler_error
        Optional callback ``(handler_name, event, exc)`` invoked on every
        failed attempt.  Useful for external alerting.
    sleep
        Coroutine used between retries; injectable for tests.
    """

    def __init__(
        self,
        *,
        default_retry: RetryPolicy | None = None,
        dead_letters: DeadLetterQueue | None = None,
        publisher: Any | None = None,
        on_handler_error: Callable[
            [str, DomainEvent, Exception], None
        ] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._default_retry = default_retry or RetryPolicy()
        self._dead_letters = dead_letters if dead_letters is not None else InMemoryDeadLetterQueue()
        self._publisher = publisher
        self._on_handler_error = on_handler_error
        self._sleep = sleep

        self._handlers: dict[str, dict[str, EventHandlerRegistration]] = (
            defaultdict(dict)
        )
        self._queues: dict[str, deque[DomainEvent]] = {}
        self._workers: dict[str, asyncio.Task] = {}

        self._error_counts: dict[str, int] = defaultdict(int)
        self._messages_processed = 0
        self._dead_lettered = 0
        self._dropped = 0
        self._backlog = 0

    # -- Registration ------------------------------------------------------

    def register_event_handler(
        self,
        event_type: str,
        handler: EventHandler,
        *,
        name: str | None = None,
        retry_policy: RetryPolicy | None = None,
        dead_letter_queue: bool = True,
        enabled: bool = True,
    ) -> EventHandlerRegistration:
        """Subscribe *handler* to events of *event_type*."""
        reg = EventHandlerRegistration(
            name=name or getattr(handler, "__qualname__", repr(handler)),
            event_type=event_type,
            handler=handler,
            retry_policy=retry_policy or self._default_retry,
            dead_letter_queue=dead_letter_queue,
            enabled=enabled,
        )
        if reg.name in self._handlers[event_type]:
            logger.info(
                "Replacing event handler %s for %s", reg.name, event_type,
            )
        self._handlers[event_type][reg.name] = reg
        if self._publisher is not None:
            self._publisher.emit(
                HandlerRegistered(
                    kind="event",
                    handler_type=event_type,
                    handler_name=reg.name,
                )
            )
        return reg

    def unregister_event_handler(self, event_type: str, name: str) -> bool:
        return self._handlers.get(event_type, {}).pop(name, None) is not None

    def set_enabled(self, event_type: str, name: str, enabled: bool) -> None:
        reg = self._handlers.get(event_type, {}).get(name)
        if reg is None:
            raise KeyError(f"No handler {name!r} for {event_type!r}")
        reg.enabled = enabled

    def handlers_for(self, event_type: str) -> list[EventHandlerRegistration]:
        return list(self._handlers.get(event_type, {}).values())

    def all_handlers(self) -> list[EventHandlerRegistration]:
        return [r for regs in self._handlers.values() for r in regs.values()]

    # -- Delivery ----------------------------------------------------------

    def enqueue(self, event: DomainEvent) -> None:
        """Queue *event* for background delivery.  Never blocks.

        Must be called from a running event loop.
        """
        if not self._handlers.get(event.type):
            return
        queue = self._queues.setdefault(event.aggregate_id, deque())
        queue.append(event)
        self._backlog += 1
        metrics.DISPATCH_BACKLOG.set(self._backlog)
        if event.aggregate_id not in self._workers:
            self._workers[event.aggregate_id] = asyncio.get_running_loop().create_task(
                self._drain_stream(event.aggregate_id),
                name=f"dispatch-{event.aggregate_id}",
            )

    async def _drain_stream(self, aggregate_id: str) -> None:
        queue = self._queues[aggregate_id]
        try:
            while queue:
                event = queue.popleft()
                self._backlog -= 1
                metrics.DISPATCH_BACKLOG.set(self._backlog)
                await self.dispatch(event)
        finally:
            # No await since the last emptiness check, so no enqueue can
            # have slipped in unseen.
            self._workers.pop(aggregate_id, None)
            if not queue:
                self._queues.pop(aggregate_id, None)

    async def dispatch(self, event: DomainEvent) -> None:
        """Deliver *event* to every enabled handler of its type, in order."""
        for reg in self.handlers_for(event.type):
            if not reg.enabled:
                continue
            await self._deliver(reg, event)

    async def _deliver(
        self, reg: EventHandlerRegistration, event: DomainEvent,
    ) -> bool:
        policy = reg.retry_policy
        attempts = 0
        last_error: Exception | None = None

        while attempts <= policy.max_retries:
            attempts += 1
            try:
                await reg.handler(event)
                self._messages_processed += 1
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                self._error_counts[reg.name] += 1
                metrics.HANDLER_FAILURES.labels(
                    handler=reg.name, event_type=event.type,
                ).inc()
                if self._on_handler_error is not None:
                    try:
                        self._on_handler_error(reg.name, event, exc)
                    except Exception:
                        logger.warning(
                            "on_handler_error callback failed", exc_info=True,
                        )

                if attempts > policy.max_retries:
                    break
                delay = policy.delay_for(attempts)
                logger.warning(
                    "Handler %s failed on %s %s (attempt %d/%d), retrying in %.3fs: %s",
                    reg.name, event.type, event.id,
                    attempts, policy.max_retries + 1, delay, exc,
                )
                metrics.HANDLER_RETRIES.labels(handler=reg.name).inc()
                if delay > 0:
                    await self._sleep(delay)

        error = str(last_error) if last_error is not None else "unknown error"
        if reg.dead_letter_queue:
            await self._dead_letters.put(
                DeadLetter(
                    event=event,
                    handler_name=reg.name,
                    error=error,
                    attempts=attempts,
                )
            )
            self._dead_lettered += 1
            metrics.DEAD_LETTERS.labels(
                handler=reg.name, event_type=event.type,
            ).inc()
            logger.error(
                "Dead-lettered %s %s for handler %s after %d attempts: %s",
                event.type, event.id, reg.name, attempts, error,
            )
            if self._publisher is not None:
                self._publisher.emit(
                    EventDeadLettered(
                        event_id=event.id,
                        event_type=event.type,
                        aggregate_id=event.aggregate_id,
                        handler_name=reg.name,
                        error=error,
                        attempts=attempts,
                    )
                )
        else:
            self._dropped += 1
            logger.error(
                "Handler %s gave up on %s %s after %d attempts: %s",
                reg.name, event.type, event.id, attempts, error,
            )
        return False

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        while self._workers:
            await asyncio.gather(
                *list(self._workers.values()), return_exceptions=True,
            )

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        logger.info("Event dispatcher started")

    async def stop(self, *, drain_timeout: float | None = 5.0) -> None:
        """Finish queued deliveries (bounded by *drain_timeout*), then cancel."""
        if self._workers:
            try:
                await asyncio.wait_for(self.drain(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Dispatcher stop timed out with %d events queued",
                    self._backlog,
                )
        for task in list(self._workers.values()):
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        logger.info("Event dispatcher stopped")

    # -- Observability -----------------------------------------------------

    @property
    def dead_letters(self) -> DeadLetterQueue:
        return self._dead_letters

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    @property
    def backlog(self) -> int:
        return self._backlog

    def get_error_counts(self) -> dict[str, int]:
        """Return ``{handler_name: failed_attempts}``."""
        return dict(self._error_counts)

    def get_metrics(self) -> dict[str, int]:
        return {
            "messages_processed": self._messages_processed,
            "dead_lettered": self._dead_lettered,
            "dropped": self._dropped,
            "backlog": self._backlog,
            "active_streams": len(self._workers),
        }
