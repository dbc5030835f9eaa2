"""Notification fabric: topic-routed buses for external observers.

The engine publishes ``command_executed``, ``projection_rebuilt``,
``saga_completed`` and friends here.  These are fire-and-forget and sit
outside the consistency model.
"""

from eventcore.bus.publisher import NotificationPublisher

__all__ = ["NotificationPublisher"]
