"""In-memory notification bus for tests and single-process deployments.

No external dependencies. Handlers are called in publish order.
Supports consumer groups for compatibility with the Redis Streams bus.
Handler failures are counted and dead-lettered, never raised to the
publisher.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from .schemas import Notification

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Notification], Coroutine[Any, Any, None]]


@dataclass
class MemoryDeadLetter:
    """Record of a subscriber failure in the memory bus."""

    topic: str
    group: str
    notification_type: str
    error: str
    timestamp: float = field(default_factory=time.monotonic)


class MemoryNotificationBus:
    """In-memory topic bus. Safe within a single asyncio event loop."""

    def __init__(
        self,
        on_handler_error: Callable[
            [str, str, str, Exception], None
        ] | None = None,
        history_limit: int = 10_000,
    ) -> None:
        # topic → list of (group, handler)
        self._handlers: dict[str, list[tuple[str, NotificationHandler]]] = (
            defaultdict(list)
        )
        self._history: list[tuple[str, Notification]] = []
        self._history_limit = history_limit
        self._running = False
        self._on_handler_error = on_handler_error

        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[MemoryDeadLetter] = []
        self._messages_processed: int = 0

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def publish(self, topic: str, notification: Notification) -> None:
        """Deliver *notification* to every handler subscribed to *topic*."""
        self._history.append((topic, notification))
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        for group, handler in self._handlers.get(topic, []):
            try:
                await handler(notification)
                self._messages_processed += 1
            except Exception as exc:
                error_key = f"{topic}/{group}"
                self._error_counts[error_key] += 1
                self._dead_letters.append(
                    MemoryDeadLetter(
                        topic=topic,
                        group=group,
                        notification_type=type(notification).__name__,
                        error=str(exc),
                    )
                )
                logger.exception(
                    "Subscriber error on topic=%s group=%s notification=%s",
                    topic,
                    group,
                    type(notification).__name__,
                )

                if self._on_handler_error is not None:
                    try:
                        self._on_handler_error(
                            topic, group, notification.notification_id, exc,
                        )
                    except Exception:
                        logger.warning(
                            "on_handler_error callback failed",
                            exc_info=True,
                        )

    async def subscribe(
        self,
        topic: str,
        group: str,
        handler: NotificationHandler,
    ) -> None:
        """Subscribe a handler to a topic with a consumer group name."""
        self._handlers[topic].append((group, handler))

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Return per-topic/group error counts."""
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[MemoryDeadLetter]:
        return list(self._dead_letters)

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    def get_history(
        self, topic: str | None = None,
    ) -> list[tuple[str, Notification]]:
        """Published notifications, optionally filtered by topic."""
        if topic is None:
            return list(self._history)
        return [(t, n) for t, n in self._history if t == topic]

    def clear_history(self) -> None:
        self._history.clear()
