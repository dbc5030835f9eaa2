"""Test the publish-only Redis Streams notification bus against a fake client."""

import json

import pytest

from eventcore.bus import NotificationPublisher
from eventcore.bus import redis_streams
from eventcore.bus.bus import create_notification_bus
from eventcore.bus.memory_bus import MemoryNotificationBus
from eventcore.bus.redis_streams import RedisStreamsBus
from eventcore.bus.schemas import CommandExecuted, SagaCompleted
from eventcore.core.config import NotifierConfig
from eventcore.core.enums import NotifierBackend


class FakeRedis:
    def __init__(self) -> None:
        self.entries: list[tuple[str, dict, int, bool]] = []
        self.closed = False

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        self.entries.append((name, dict(fields), maxlen, approximate))
        return f"{len(self.entries)}-0"

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    client = FakeRedis()
    urls: list[str] = []

    def from_url(url, **kwargs):
        urls.append(url)
        assert kwargs.get("decode_responses") is True
        return client

    monkeypatch.setattr(redis_streams.aioredis, "from_url", from_url)
    client.urls = urls
    return client


class TestRedisStreamsBus:
    def test_stream_name_uses_prefix(self):
        assert RedisStreamsBus(stream_prefix="ec.").stream_name("saga_completed") == (
            "ec.saga_completed"
        )

    async def test_publish_before_start_raises(self):
        bus = RedisStreamsBus()
        with pytest.raises(RuntimeError):
            await bus.publish("saga_completed", SagaCompleted(saga_id="s", saga_type="t"))

    async def test_publish_writes_type_and_json_body(self, fake_redis):
        bus = RedisStreamsBus("redis://cache:6379/1", stream_prefix="ec.", max_stream_length=500)
        await bus.start()
        notification = CommandExecuted(command_id="c-1", command_type="CreateUser", aggregate_id="u-1")
        await bus.publish(notification.topic, notification)

        assert fake_redis.urls == ["redis://cache:6379/1"]
        [(stream, fields, maxlen, approximate)] = fake_redis.entries
        assert stream == "ec.command_executed"
        assert fields["_type"] == "CommandExecuted"
        body = json.loads(fields["_data"])
        assert body["command_id"] == "c-1"
        assert body["aggregate_id"] == "u-1"
        assert (maxlen, approximate) == (500, True)
        assert bus.messages_published == 1

    async def test_stop_closes_connection(self, fake_redis):
        bus = RedisStreamsBus()
        await bus.start()
        await bus.stop()
        assert fake_redis.closed
        with pytest.raises(RuntimeError):
            await bus.publish("saga_completed", SagaCompleted(saga_id="s", saga_type="t"))

    async def test_publisher_drives_redis_bus(self, fake_redis):
        publisher = NotificationPublisher(RedisStreamsBus(stream_prefix="eventcore."))
        publisher.emit(SagaCompleted(saga_id="early", saga_type="demo"))
        await publisher.start()
        publisher.emit(SagaCompleted(saga_id="late", saga_type="demo"))
        await publisher.flush()
        await publisher.stop()

        streams = [name for name, *_ in fake_redis.entries]
        assert streams == ["eventcore.saga_completed", "eventcore.saga_completed"]
        ids = [json.loads(fields["_data"])["saga_id"] for _, fields, *_ in fake_redis.entries]
        assert ids == ["early", "late"]
        assert fake_redis.closed


class TestBusFactory:
    def test_memory_backend_by_default(self):
        assert isinstance(create_notification_bus(), MemoryNotificationBus)

    def test_redis_backend(self):
        bus = create_notification_bus(
            NotifierConfig(backend=NotifierBackend.REDIS, stream_prefix="x.")
        )
        assert isinstance(bus, RedisStreamsBus)
        assert bus.stream_name("t") == "x.t"
