"""Projection engine: folds stored events into queryable read models.

Design invariants
-----------------
1.  A fold is a pure function ``(data, event) -> data`` registered per
    (projection, event type).  The engine hands it a deep copy of the
    current data and commits the returned data together with the
    watermark, so a raising fold leaves the projection untouched.
2.  **Exactly once per event.**  ``stream_positions`` holds the highest
    version applied per aggregate; an event at or below it is a no-op.
    Redelivery after a retry, and live events racing a rebuild, therefore
    never double-count.  Watermarks only move forward.
3.  Rebuild holds the projection's lock for its whole duration, so live
    folds wait and then find their events already applied.
4.  A paused (or failed) projection ignores live events.  Resuming
    rebuilds it so it catches up.

Update listeners are called with the projection id after every change;
the query dispatcher uses this to invalidate cached results.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Iterable
from typing import Any

from eventcore.bus.schemas import ProjectionCreated, ProjectionRebuilt
from eventcore.core.clock import IClock, WallClock
from eventcore.core.enums import ProjectionStatus
from eventcore.core.errors import ProjectionError, ProjectionNotFound
from eventcore.domain.events import DomainEvent
from eventcore.domain.projections import Projection
from eventcore.observability import metrics

logger = logging.getLogger(__name__)

# (data, event) -> new data.  May mutate and return its (copied) input.
Fold = Callable[[dict[str, Any], DomainEvent], "dict[str, Any] | None"]
UpdateListener = Callable[[str], None]


class ProjectionEngine:
    """Owns every projection and the folds that maintain them.

    Parameters
    ----------
    store
        Event store used for rebuild replays (``read_all``).
    dispatcher
        Event dispatcher that delivers live events.
    """

    def __init__(
        self,
        store: Any,
        dispatcher: Any,
        *,
        publisher: Any | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._publisher = publisher
        self._clock = clock or WallClock()
        self._projections: dict[str, Projection] = {}
        self._folds: dict[str, dict[str, Fold]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[UpdateListener] = []

    # -- Definition --------------------------------------------------------

    async def create_projection(
        self,
        projection_id: str,
        name: str,
        projection_type: str,
        event_types: Iterable[str],
        folds: dict[str, Fold] | None = None,
    ) -> Projection:
        """Define a projection and subscribe it to *event_types*.

        Events already in the store are replayed so the projection starts
        caught up.
        """
        if projection_id in self._projections:
            raise ProjectionError(f"Projection {projection_id} already exists")

        projection = Projection(
            id=projection_id,
            name=name,
            type=projection_type,
            event_types=tuple(event_types),
            last_updated=self._clock.now(),
        )
        self._projections[projection_id] = projection
        self._folds[projection_id] = dict(folds or {})
        self._locks[projection_id] = asyncio.Lock()

        for event_type in projection.event_types:
            self._dispatcher.register_event_handler(
                event_type,
                self._live_handler(projection_id),
                name=f"projection:{projection_id}",
            )

        logger.info(
            "Projection %s created for %s", projection_id, ", ".join(projection.event_types),
        )
        if self._publisher is not None:
            self._publisher.emit(
                ProjectionCreated(
                    projection_id=projection_id,
                    name=name,
                    projection_type=projection_type,
                    event_types=list(projection.event_types),
                )
            )

        if self._store.last_sequence > 0:
            await self.rebuild_projection(projection_id)
        return self.get_projection(projection_id)

    def register_fold(self, projection_id: str, event_type: str, fold: Fold) -> None:
        if projection_id not in self._projections:
            raise ProjectionNotFound(f"No projection {projection_id}")
        self._folds[projection_id][event_type] = fold

    def add_listener(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    # -- Reads -------------------------------------------------------------

    def _get(self, projection_id: str) -> Projection:
        projection = self._projections.get(projection_id)
        if projection is None:
            raise ProjectionNotFound(f"No projection {projection_id}")
        return projection

    def get_projection(self, projection_id: str) -> Projection:
        """Copy of the projection; later folds do not affect it."""
        return copy.deepcopy(self._get(projection_id))

    def list_projections(self) -> list[Projection]:
        return [copy.deepcopy(p) for p in self._projections.values()]

    def __contains__(self, projection_id: str) -> bool:
        return projection_id in self._projections

    def __len__(self) -> int:
        return len(self._projections)

    # -- Folding -----------------------------------------------------------

    def _live_handler(self, projection_id: str) -> Callable[[DomainEvent], Any]:
        async def handle(event: DomainEvent) -> None:
            await self.apply_event(projection_id, event)
        handle.__qualname__ = f"projection:{projection_id}"
        return handle

    async def apply_event(self, projection_id: str, event: DomainEvent) -> bool:
        """Fold one live event.  Returns False when it was skipped.

        A raising fold propagates so the dispatcher can retry it.
        """
        projection = self._get(projection_id)
        if projection.status in (ProjectionStatus.PAUSED, ProjectionStatus.FAILED):
            return False
        async with self._locks[projection_id]:
            if projection.status != ProjectionStatus.ACTIVE:
                return False
            applied = self._fold(projection, event)
        if applied:
            self._notify(projection_id)
        return applied

    def _fold(self, projection: Projection, event: DomainEvent) -> bool:
        if event.type not in projection.event_types:
            return False
        if projection.has_applied(event.aggregate_id, event.version):
            return False

        fold = self._folds[projection.id].get(event.type)
        if fold is not None:
            draft = copy.deepcopy(projection.data)
            result = fold(draft, event)
            projection.data = draft if result is None else result

        projection.stream_positions[event.aggregate_id] = event.version
        if event.sequence > projection.last_event_sequence:
            projection.last_event_sequence = event.sequence
            projection.last_event_id = event.id
        projection.version += 1
        projection.last_updated = self._clock.now()
        metrics.PROJECTION_FOLDS.labels(projection=projection.id).inc()
        return True

    def _notify(self, projection_id: str) -> None:
        for listener in self._listeners:
            try:
                listener(projection_id)
            except Exception:
                logger.warning(
                    "Projection listener failed for %s", projection_id, exc_info=True,
                )

    # -- Rebuild / pause ---------------------------------------------------

    async def rebuild_projection(self, projection_id: str) -> Projection:
        """Clear the projection and replay every stored event in sequence order.

        Raises
        ------
        ProjectionNotFound
            Unknown id.
        ProjectionError
            A fold raised; the projection is left ``failed``.
        """
        projection = self._get(projection_id)
        async with self._locks[projection_id]:
            projection.status = ProjectionStatus.REBUILDING
            projection.error = None
            projection.data = {}
            projection.version = 0
            projection.last_event_id = ""
            projection.last_event_sequence = 0
            projection.stream_positions = {}

            replayed = 0
            events = await self._store.read_all()
            try:
                for event in events:
                    if self._fold(projection, event):
                        replayed += 1
            except Exception as exc:
                projection.status = ProjectionStatus.FAILED
                projection.error = f"{type(exc).__name__}: {exc}"
                metrics.PROJECTION_REBUILDS.labels(
                    projection=projection_id, outcome="failed",
                ).inc()
                logger.exception("Rebuild of projection %s failed", projection_id)
                raise ProjectionError(
                    f"Rebuild of {projection_id} failed: {exc}"
                ) from exc

            projection.status = ProjectionStatus.ACTIVE
            projection.last_updated = self._clock.now()

        metrics.PROJECTION_REBUILDS.labels(
            projection=projection_id, outcome="ok",
        ).inc()
        logger.info("Projection %s rebuilt from %d events", projection_id, replayed)
        self._notify(projection_id)
        if self._publisher is not None:
            self._publisher.emit(
                ProjectionRebuilt(projection_id=projection_id, events_replayed=replayed)
            )
        return self.get_projection(projection_id)

    async def pause_projection(self, projection_id: str) -> None:
        projection = self._get(projection_id)
        async with self._locks[projection_id]:
            projection.status = ProjectionStatus.PAUSED
        logger.info("Projection %s paused", projection_id)

    async def resume_projection(self, projection_id: str) -> Projection:
        """Reactivate a paused or failed projection by rebuilding it."""
        self._get(projection_id)
        return await self.rebuild_projection(projection_id)
