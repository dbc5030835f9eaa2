"""Saga orchestrator: multi-step workflows with reverse compensation.

State machine
-------------
::

    active ──(all steps ok)──────────────────────────────► completed
      │
      └──(step fails)──► failed ──► compensating ──► completed (error set)

Steps run strictly in order through the command dispatcher and are never
retried: a failed step may have had partial effects, so the orchestrator
compensates instead.  Compensation walks the succeeded steps backwards
(``current_step - 1`` down to ``0``) and runs each paired inverse command
best-effort: a failed compensation is recorded with its error and the
walk continues.

Different sagas run concurrently with each other; nothing here holds an
aggregate lock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from eventcore.bus.schemas import SagaCompensated, SagaCompleted, SagaCreated
from eventcore.core.clock import IClock, WallClock
from eventcore.core.enums import CompensationStatus, SagaStatus, StepStatus
from eventcore.core.errors import SagaAlreadyExists, SagaNotFound
from eventcore.core.ids import derived_id
from eventcore.domain.events import DomainEvent
from eventcore.domain.messages import Command
from eventcore.domain.sagas import Saga, SagaCompensation, SagaPlan, SagaStep
from eventcore.observability import metrics
from eventcore.observability.logger import correlation_scope

logger = logging.getLogger(__name__)

# Maps a trigger event to the saga it should start, or None to ignore it.
SagaPlanner = Callable[[DomainEvent], "SagaPlan | None"]


class SagaOrchestrator:
    """Runs sagas over a command dispatcher.

    Parameters
    ----------
    commands
        ``CommandDispatcher`` used for every step and compensation.
    dispatcher
        Event dispatcher used by :meth:`register_trigger`.
    step_timeout
        Deadline per step / compensation command.  ``None`` uses the
        command dispatcher's default.
    """

    def __init__(
        self,
        commands: Any,
        *,
        dispatcher: Any | None = None,
        publisher: Any | None = None,
        clock: IClock | None = None,
        step_timeout: float | None = None,
    ) -> None:
        self._commands = commands
        self._dispatcher = dispatcher
        self._publisher = publisher
        self._clock = clock or WallClock()
        self._step_timeout = step_timeout
        self._sagas: dict[str, Saga] = {}

    # -- Public API --------------------------------------------------------

    async def create_saga(
        self,
        saga_id: str,
        saga_type: str,
        steps: Sequence[Command],
        compensations: Sequence[Command | None] = (),
        context: dict[str, Any] | None = None,
    ) -> Saga:
        """Start a saga and run it to a terminal state.

        ``compensations[i]`` undoes ``steps[i]``; missing or ``None``
        entries mean the step needs no compensation.
        """
        if saga_id in self._sagas:
            raise SagaAlreadyExists(f"Saga {saga_id} already exists")
        if len(compensations) > len(steps):
            raise ValueError("More compensations than steps")

        padded = list(compensations) + [None] * (len(steps) - len(compensations))
        saga = Saga(
            id=saga_id,
            type=saga_type,
            steps=list(steps),
            compensation_commands=padded,
            context=dict(context or {}),
            started_at=self._clock.now(),
        )
        self._sagas[saga_id] = saga
        metrics.ACTIVE_SAGAS.inc()
        logger.info("Saga %s (%s) started with %d steps", saga_id, saga_type, saga.total_steps)
        if self._publisher is not None:
            self._publisher.emit(
                SagaCreated(saga_id=saga_id, saga_type=saga_type, total_steps=saga.total_steps)
            )

        with correlation_scope(saga_id):
            try:
                await self._run(saga)
            finally:
                metrics.ACTIVE_SAGAS.dec()
        return saga

    def get_saga(self, saga_id: str) -> Saga:
        saga = self._sagas.get(saga_id)
        if saga is None:
            raise SagaNotFound(f"No saga {saga_id}")
        return saga

    def list_sagas(self, status: SagaStatus | None = None) -> list[Saga]:
        return [
            s for s in self._sagas.values() if status is None or s.status == status
        ]

    def __len__(self) -> int:
        return len(self._sagas)

    def register_trigger(self, event_type: str, planner: SagaPlanner) -> None:
        """Start a saga whenever an event of *event_type* is delivered.

        The saga id is ``<saga_type>:<event id>``, so a redelivered
        trigger event never starts a second saga.
        """
        if self._dispatcher is None:
            raise RuntimeError("register_trigger needs an event dispatcher")

        async def on_trigger(event: DomainEvent) -> None:
            plan = planner(event)
            if plan is None:
                return
            saga_id = derived_id(plan.saga_type, event.id)
            if saga_id in self._sagas:
                return
            await self.create_saga(
                saga_id,
                plan.saga_type,
                list(plan.steps),
                list(plan.compensations),
                dict(plan.context) | {"trigger_event_id": event.id},
            )

        name = f"saga-trigger:{event_type}:{getattr(planner, '__name__', 'planner')}"
        self._dispatcher.register_event_handler(event_type, on_trigger, name=name)

    # -- Execution ---------------------------------------------------------

    async def _run(self, saga: Saga) -> None:
        while saga.current_step < saga.total_steps:
            index = saga.current_step
            command = saga.steps[index]
            step = SagaStep(
                saga_id=saga.id,
                step_number=index,
                command=command,
                started_at=self._clock.now(),
            )
            saga.history.append(step)

            result = await self._commands.execute_command(
                command, timeout=self._step_timeout,
            )
            step.result = result
            step.completed_at = self._clock.now()

            if result.success:
                step.status = StepStatus.COMPLETED
                saga.current_step += 1
                continue

            step.status = StepStatus.FAILED
            step.error = result.error
            saga.status = SagaStatus.FAILED
            saga.error = f"Step {index} ({command.type}) failed: {result.error}"
            logger.warning("Saga %s: %s", saga.id, saga.error)
            await self._compensate(saga, failed_step=index)
            return

        saga.status = SagaStatus.COMPLETED
        saga.completed_at = self._clock.now()
        metrics.SAGAS_TOTAL.labels(saga_type=saga.type, outcome="completed").inc()
        logger.info("Saga %s completed", saga.id)
        if self._publisher is not None:
            self._publisher.emit(SagaCompleted(saga_id=saga.id, saga_type=saga.type))

    async def _compensate(self, saga: Saga, *, failed_step: int) -> None:
        saga.status = SagaStatus.COMPENSATING
        failures = 0

        for index in range(saga.current_step - 1, -1, -1):
            command = saga.compensation_commands[index]
            if command is None:
                continue
            record = SagaCompensation(
                saga_id=saga.id,
                step_number=index,
                command=command,
                started_at=self._clock.now(),
            )
            saga.compensations.append(record)

            result = await self._commands.execute_command(
                command, timeout=self._step_timeout,
            )
            record.result = result
            record.completed_at = self._clock.now()
            if result.success:
                record.status = CompensationStatus.COMPLETED
                saga.history[index].status = StepStatus.COMPENSATED
            else:
                failures += 1
                record.status = CompensationStatus.FAILED
                record.error = result.error
                logger.error(
                    "Saga %s: compensation %s for step %d failed, needs operator attention: %s",
                    saga.id, command.type, index, result.error,
                )

        saga.status = SagaStatus.COMPLETED
        saga.completed_at = self._clock.now()
        metrics.SAGAS_TOTAL.labels(saga_type=saga.type, outcome="compensated").inc()
        logger.info(
            "Saga %s compensated %d steps (%d failed)",
            saga.id, len(saga.compensations), failures,
        )
        if self._publisher is not None:
            self._publisher.emit(
                SagaCompensated(
                    saga_id=saga.id,
                    saga_type=saga.type,
                    error=saga.error or "",
                    failed_step=failed_step,
                    compensations_failed=failures,
                )
            )
