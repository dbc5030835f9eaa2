"""Redis Streams notification bus.

Publishes notifications to one Redis Stream per topic so observers in
other processes (dashboards, audit collectors) can read them with their
own consumer groups.  The engine only writes; streams are capped at
``max_stream_length`` entries (approximate trimming).

Each entry carries two fields: ``_type`` (the notification class name)
and ``_data`` (its JSON body).
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from .schemas import Notification

logger = logging.getLogger(__name__)


class RedisStreamsBus:
    """Publish-only notification bus backed by Redis Streams."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        stream_prefix: str = "eventcore.",
        max_stream_length: int = 10_000,
    ) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = None
        self._prefix = stream_prefix
        self._max_len = max_stream_length
        self._published = 0

    def stream_name(self, topic: str) -> str:
        return f"{self._prefix}{topic}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect to Redis."""
        self._redis = aioredis.from_url(
            self._redis_url, decode_responses=True
        )
        logger.info("Redis notification bus connected to %s", self._redis_url)

    async def stop(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, topic: str, notification: Notification) -> None:
        if not self._redis:
            raise RuntimeError("RedisStreamsBus not started")

        payload = {
            "_type": type(notification).__name__,
            "_data": notification.model_dump_json(),
        }
        await self._redis.xadd(
            self.stream_name(topic),
            payload,
            maxlen=self._max_len,
            approximate=True,
        )
        self._published += 1

    @property
    def messages_published(self) -> int:
        return self._published
