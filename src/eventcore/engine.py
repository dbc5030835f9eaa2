"""Engine facade: builds, wires and runs every component.

``EventEngine`` is explicitly constructed and passed around; there is no
process-wide instance, so tests can run several isolated engines side by
side.

Wiring
------
::

    EventStore ──enqueue──► EventDispatcher ──► ProjectionEngine ──► QueryDispatcher
        ▲                         │                     (cache invalidation)
        │                         └──► saga triggers ──► SagaOrchestrator
    CommandDispatcher ◄───────────────────────────────────────┘

All components emit fire-and-forget notifications through one
``NotificationPublisher``.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from eventcore.bus import NotificationPublisher
from eventcore.bus.bus import create_notification_bus
from eventcore.core.clock import IClock, WallClock
from eventcore.core.config import Settings
from eventcore.core.enums import StoreBackend
from eventcore.cqrs.commands import CommandDispatcher, CommandHandlerRegistration
from eventcore.cqrs.queries import CachePolicy, QueryDispatcher, QueryHandlerRegistration
from eventcore.domain.events import DomainEvent, EventSnapshot, EventStream, NewEvent
from eventcore.domain.messages import Command, CommandResult, Query, QueryResult
from eventcore.domain.projections import Projection
from eventcore.domain.sagas import Saga
from eventcore.infrastructure.event_bus import (
    EventDispatcher,
    EventHandlerRegistration,
    RetryPolicy,
)
from eventcore.infrastructure.event_store import EventStore, Reducer
from eventcore.infrastructure.repository import (
    EventRepository,
    InMemoryEventRepository,
    JsonFileEventRepository,
)
from eventcore.infrastructure.scheduler import Scheduler
from eventcore.observability import metrics
from eventcore.projections.engine import Fold, ProjectionEngine
from eventcore.sagas.orchestrator import SagaOrchestrator, SagaPlanner

logger = logging.getLogger(__name__)

RECENT_EVENTS = 10


@dataclass
class EventStatistics:
    total_events: int
    total_streams: int
    total_projections: int
    total_sagas: int
    events_by_type: dict[str, int] = field(default_factory=dict)
    recent_events: list[DomainEvent] = field(default_factory=list)
    last_sequence: int = 0


def create_repository(settings: Settings) -> EventRepository:
    """Build the repository selected by ``settings.store.backend``."""
    backend = settings.store.backend
    if backend == StoreBackend.JSONL:
        return JsonFileEventRepository(settings.store.path)
    if backend == StoreBackend.POSTGRES:
        from eventcore.storage.postgres.connection import create_engine
        from eventcore.storage.postgres.repository import SqlAlchemyEventRepository

        return SqlAlchemyEventRepository(
            create_engine(settings.store.postgres_url), owns_engine=True,
        )
    return InMemoryEventRepository()


class EventEngine:
    """Event store, CQRS dispatch, projections and sagas behind one object.

    Use as an async context manager, or call :meth:`start` / :meth:`stop`::

        async with EventEngine.from_settings(load_settings("eventcore.toml")) as engine:
            result = await engine.execute_command(Command("CreateUser", "user-1", ...))
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        repository: EventRepository | None = None,
        clock: IClock | None = None,
        bus: Any | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.clock = clock or WallClock()
        source = self.settings.engine.service_name

        self.publisher = NotificationPublisher(
            bus if bus is not None else create_notification_bus(self.settings.notifier)
        )
        self.dispatcher = EventDispatcher(
            default_retry=RetryPolicy.from_config(self.settings.dispatch.retry),
            publisher=self.publisher,
        )
        self.store = EventStore.from_config(
            self.settings.store,
            repository if repository is not None else InMemoryEventRepository(),
            dispatcher=self.dispatcher,
            clock=self.clock,
            source=source,
        )
        self.commands = CommandDispatcher.from_config(
            self.settings.commands, self.store, publisher=self.publisher,
        )
        self.projections = ProjectionEngine(
            self.store, self.dispatcher, publisher=self.publisher, clock=self.clock,
        )
        self.queries = QueryDispatcher.from_config(
            self.settings.queries, self.projections,
            publisher=self.publisher, clock=self.clock,
        )
        self.projections.add_listener(self.queries.invalidate)
        self.sagas = SagaOrchestrator(
            self.commands,
            dispatcher=self.dispatcher,
            publisher=self.publisher,
            clock=self.clock,
            step_timeout=self.settings.sagas.step_timeout,
        )

        self.scheduler = Scheduler(clock=self.clock)
        sched = self.settings.scheduler
        self.scheduler.add_job("compaction", sched.compaction_interval, self.store.compact)
        self.scheduler.add_job("cache-eviction", sched.cache_eviction_interval, self._evict_cache)
        self.scheduler.add_job("metrics", sched.metrics_interval, self._refresh_metrics)

        self._defaults_registered = False
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: IClock | None = None,
        bus: Any | None = None,
    ) -> EventEngine:
        return cls(settings, repository=create_repository(settings), clock=clock, bus=bus)

    # -- Lifecycle ---------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Engine is already running")
            return
        await self.store.open()
        await self.publisher.start()
        await self.dispatcher.start()
        if self.settings.engine.register_defaults and not self._defaults_registered:
            await self.register_defaults()
        await self.scheduler.start()

        obs = self.settings.observability
        if obs.metrics_enabled:
            try:
                metrics.start_metrics_server(obs.metrics_port)
                logger.info("Prometheus metrics server started on port %d", obs.metrics_port)
            except Exception:
                logger.warning("Failed to start metrics server", exc_info=True)
        metrics.set_system_info({
            "service": self.settings.engine.service_name,
            "store_backend": self.settings.store.backend.value,
            "notifier_backend": self.settings.notifier.backend.value,
        })

        self._running = True
        logger.info(
            "Engine %s started (store=%s, streams=%d)",
            self.settings.engine.service_name,
            self.settings.store.backend.value,
            len(self.store.stream_ids()),
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        # Timed-out handlers may still append; settle them before closing.
        await self.commands.wait_for_background(
            timeout=self.settings.commands.shutdown_timeout,
        )
        await self.dispatcher.stop()
        await self.publisher.stop()
        await self.store.close()
        self._running = False
        logger.info("Engine %s stopped", self.settings.engine.service_name)

    async def __aenter__(self) -> EventEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def register_defaults(self) -> None:
        """Install the built-in user / order catalog."""
        from eventcore.handlers import register_default_handlers

        await register_default_handlers(self)
        self._defaults_registered = True

    async def drain(self) -> None:
        """Wait until every appended event has reached its handlers."""
        await self.dispatcher.drain()

    # -- Event store -------------------------------------------------------

    async def append_events(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: Sequence[NewEvent],
        *,
        expected_version: int | None = None,
    ) -> list[DomainEvent]:
        return await self.store.append_events(
            aggregate_id, aggregate_type, events, expected_version=expected_version,
        )

    async def get_events(
        self,
        aggregate_id: str,
        from_version: int | None = None,
        to_version: int | None = None,
    ) -> list[DomainEvent]:
        return await self.store.get_events(aggregate_id, from_version, to_version)

    async def get_event_stream(self, aggregate_id: str) -> EventStream | None:
        return await self.store.get_event_stream(aggregate_id)

    async def create_snapshot(self, aggregate_id: str) -> EventSnapshot:
        return await self.store.create_snapshot(aggregate_id)

    async def load_aggregate(self, aggregate_id: str) -> dict[str, Any] | None:
        return await self.store.load_aggregate(aggregate_id)

    def register_reducer(self, aggregate_type: str, reducer: Reducer) -> None:
        self.store.register_reducer(aggregate_type, reducer)

    # -- Commands / queries ------------------------------------------------

    def register_command_handler(
        self, command_type: str, handler: Any, **kwargs: Any,
    ) -> CommandHandlerRegistration:
        return self.commands.register_command_handler(command_type, handler, **kwargs)

    async def execute_command(
        self, command: Command, *, timeout: float | None = None,
    ) -> CommandResult:
        return await self.commands.execute_command(command, timeout=timeout)

    def register_query_handler(
        self,
        query_type: str,
        handler: Any,
        *,
        name: str | None = None,
        caching: CachePolicy | bool | None = None,
        enabled: bool = True,
    ) -> QueryHandlerRegistration:
        return self.queries.register_query_handler(
            query_type, handler, name=name, caching=caching, enabled=enabled,
        )

    async def execute_query(
        self, query: Query, *, timeout: float | None = None,
    ) -> QueryResult:
        return await self.queries.execute_query(query, timeout=timeout)

    # -- Event handlers ----------------------------------------------------

    def register_event_handler(
        self,
        event_type: str,
        handler: Any,
        *,
        name: str | None = None,
        retry_policy: RetryPolicy | None = None,
        dead_letter_queue: bool | None = None,
        enabled: bool = True,
    ) -> EventHandlerRegistration:
        if dead_letter_queue is None:
            dead_letter_queue = self.settings.dispatch.dead_letter_queue
        return self.dispatcher.register_event_handler(
            event_type,
            handler,
            name=name,
            retry_policy=retry_policy,
            dead_letter_queue=dead_letter_queue,
            enabled=enabled,
        )

    # -- Projections -------------------------------------------------------

    async def create_projection(
        self,
        projection_id: str,
        name: str,
        projection_type: str,
        event_types: Sequence[str],
        folds: dict[str, Fold] | None = None,
    ) -> Projection:
        return await self.projections.create_projection(
            projection_id, name, projection_type, event_types, folds,
        )

    def get_projection(self, projection_id: str) -> Projection:
        return self.projections.get_projection(projection_id)

    async def rebuild_projection(self, projection_id: str) -> Projection:
        return await self.projections.rebuild_projection(projection_id)

    # -- Sagas -------------------------------------------------------------

    async def create_saga(
        self,
        saga_id: str,
        saga_type: str,
        steps: Sequence[Command],
        compensations: Sequence[Command | None] = (),
        context: dict[str, Any] | None = None,
    ) -> Saga:
        return await self.sagas.create_saga(saga_id, saga_type, steps, compensations, context)

    def get_saga(self, saga_id: str) -> Saga:
        return self.sagas.get_saga(saga_id)

    def register_trigger(self, event_type: str, planner: SagaPlanner) -> None:
        self.sagas.register_trigger(event_type, planner)

    # -- Observability -----------------------------------------------------

    async def get_event_statistics(self) -> EventStatistics:
        """Counts over retained events plus the most recent ones."""
        events = await self.store.read_all()
        by_type = Counter(e.type for e in events)
        return EventStatistics(
            total_events=len(events),
            total_streams=len(self.store.stream_ids()),
            total_projections=len(self.projections),
            total_sagas=len(self.sagas),
            events_by_type=dict(by_type),
            recent_events=list(reversed(events[-RECENT_EVENTS:])),
            last_sequence=self.store.last_sequence,
        )

    async def _evict_cache(self) -> None:
        evicted = self.queries.evict_expired()
        if evicted:
            logger.debug("Evicted %d expired query results", evicted)

    async def _refresh_metrics(self) -> None:
        metrics.STREAMS.set(len(self.store.stream_ids()))
        metrics.LAST_SEQUENCE.set(self.store.last_sequence)
        metrics.DISPATCH_BACKLOG.set(self.dispatcher.backlog)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "dispatcher": self.dispatcher.get_metrics(),
            "commands": self.commands.get_metrics(),
            "queries": self.queries.get_metrics(),
            "publisher": self.publisher.get_metrics(),
        }
