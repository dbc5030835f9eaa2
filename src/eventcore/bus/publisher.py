"""Fire-and-forget notification publisher.

The engine components call :meth:`NotificationPublisher.emit` from both
sync and async code paths.  Emission never blocks the caller and never
raises: publishing happens in a background task, and publish failures are
logged and counted.

Usage::

    publisher = NotificationPublisher(create_notification_bus(config))
    await publisher.start()

    publisher.emit(CommandExecuted(command_id=..., ...))

    await publisher.flush()   # wait for in-flight publishes
    await publisher.stop()

Notifications emitted before ``start()`` (e.g. handler registrations at
wiring time) are buffered and published on start.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .schemas import Notification

logger = logging.getLogger(__name__)


class NotificationPublisher:
    """Owns the notification bus lifecycle and in-flight publish tasks."""

    def __init__(self, bus: Any, *, backlog_limit: int = 1_000) -> None:
        self._bus = bus
        self._backlog: list[Notification] = []
        self._backlog_limit = backlog_limit
        self._pending: set[asyncio.Task] = set()
        self._running = False
        self._publish_errors = 0
        self._published = 0

    @property
    def bus(self) -> Any:
        return self._bus

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._bus.start()
        self._running = True
        backlog, self._backlog = self._backlog, []
        for notification in backlog:
            await self._publish(notification)
        logger.info("Notification publisher started")

    async def stop(self) -> None:
        await self.flush()
        self._running = False
        await self._bus.stop()
        logger.info("Notification publisher stopped")

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    def emit(self, notification: Notification) -> None:
        """Schedule *notification* for publication."""
        if not self._running:
            if len(self._backlog) < self._backlog_limit:
                self._backlog.append(notification)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._backlog.append(notification)
            return
        task = loop.create_task(
            self._publish(notification),
            name=f"notify-{notification.topic}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for every in-flight publish to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _publish(self, notification: Notification) -> None:
        try:
            await self._bus.publish(notification.topic, notification)
            self._published += 1
        except Exception:
            self._publish_errors += 1
            logger.warning(
                "Failed to publish %s notification",
                notification.topic,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_metrics(self) -> dict[str, int]:
        return {
            "published": self._published,
            "publish_errors": self._publish_errors,
            "backlog": len(self._backlog),
            "in_flight": len(self._pending),
        }
