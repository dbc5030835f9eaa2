"""Notification bus factory.

Creates the bus implementation selected by ``NotifierConfig.backend``.
"""

from __future__ import annotations

from collections.abc import Callable

from eventcore.core.config import NotifierConfig
from eventcore.core.enums import NotifierBackend

from .memory_bus import MemoryNotificationBus
from .redis_streams import RedisStreamsBus


def create_notification_bus(
    config: NotifierConfig | None = None,
    on_handler_error: Callable[
        [str, str, str, Exception], None
    ] | None = None,
) -> MemoryNotificationBus | RedisStreamsBus:
    """Create a notification bus.

    - MEMORY: MemoryNotificationBus (no external deps, in-process)
    - REDIS: RedisStreamsBus (cross-process observers)
    """
    config = config or NotifierConfig()
    if config.backend == NotifierBackend.MEMORY:
        return MemoryNotificationBus(on_handler_error=on_handler_error)
    return RedisStreamsBus(
        redis_url=config.redis_url,
        stream_prefix=config.stream_prefix,
        max_stream_length=config.max_stream_length,
    )
