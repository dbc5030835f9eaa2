"""Shared fixtures for the eventcore test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from eventcore.bus import NotificationPublisher
from eventcore.bus.memory_bus import MemoryNotificationBus
from eventcore.core.clock import ManualClock
from eventcore.core.config import (
    DispatchConfig,
    RetryConfig,
    SchedulerConfig,
    Settings,
)
from eventcore.core.enums import BackoffStrategy
from eventcore.engine import EventEngine
from eventcore.infrastructure.event_bus import EventDispatcher, RetryPolicy
from eventcore.infrastructure.event_store import EventStore
from eventcore.infrastructure.repository import InMemoryEventRepository


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Clock / bus
# ---------------------------------------------------------------------------

@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock(datetime(2024, 6, 1, tzinfo=timezone.utc))


@pytest.fixture
def memory_bus() -> MemoryNotificationBus:
    return MemoryNotificationBus()


@pytest.fixture
def publisher(memory_bus) -> NotificationPublisher:
    return NotificationPublisher(memory_bus)


# ---------------------------------------------------------------------------
# Store / dispatcher
# ---------------------------------------------------------------------------

@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def dispatcher(recording_sleep) -> EventDispatcher:
    return EventDispatcher(
        default_retry=RetryPolicy(max_retries=3, delay=0.01),
        sleep=recording_sleep,
    )


@pytest.fixture
def repository() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def store(repository, dispatcher, manual_clock) -> EventStore:
    return EventStore(
        repository,
        dispatcher=dispatcher,
        clock=manual_clock,
        snapshot_threshold=10,
        max_snapshots=3,
        retention_window=2,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    """Fast settings: no retry delay, no background jobs."""
    return Settings(
        dispatch=DispatchConfig(
            retry=RetryConfig(max_retries=2, delay=0.0, backoff=BackoffStrategy.FIXED),
        ),
        scheduler=SchedulerConfig(
            compaction_interval=0, cache_eviction_interval=0, metrics_interval=0,
        ),
    )


@pytest.fixture
async def engine(settings, manual_clock, memory_bus):
    eng = EventEngine(settings, clock=manual_clock, bus=memory_bus)
    await eng.start()
    yield eng
    await eng.stop()


@pytest.fixture
async def catalog_engine(engine):
    """Engine with the built-in user/order catalog, without auto-fulfillment."""
    from eventcore.handlers import register_default_handlers

    await register_default_handlers(engine, auto_fulfill=False)
    return engine
