"""Saga workflow records.

A ``Saga`` sequences commands across aggregates.  ``history`` records
every forward step attempted; ``compensations`` records every inverse
command attempted after a failure, in the order they ran.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from eventcore.core.enums import CompensationStatus, SagaStatus, StepStatus
from eventcore.core.ids import new_id as _uuid
from eventcore.core.ids import utc_now as _now
from eventcore.domain.messages import Command, CommandResult


@dataclass
class SagaStep:
    saga_id: str
    step_number: int
    command: Command
    status: StepStatus = StepStatus.PENDING
    result: CommandResult | None = None
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    error: str | None = None
    id: str = field(default_factory=_uuid)


@dataclass
class SagaCompensation:
    saga_id: str
    step_number: int
    command: Command
    status: CompensationStatus = CompensationStatus.PENDING
    result: CommandResult | None = None
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    error: str | None = None
    id: str = field(default_factory=_uuid)


@dataclass
class Saga:
    id: str
    type: str
    steps: list[Command]
    compensation_commands: list[Command | None]
    status: SagaStatus = SagaStatus.ACTIVE
    current_step: int = 0
    history: list[SagaStep] = field(default_factory=list)
    compensations: list[SagaCompensation] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def succeeded(self) -> bool:
        """True when every step ran and nothing was compensated."""
        return self.status == SagaStatus.COMPLETED and self.error is None


@dataclass(frozen=True)
class SagaPlan:
    """What a trigger wants started: the commands and their inverses."""

    saga_type: str
    steps: tuple[Command, ...]
    compensations: tuple[Command | None, ...] = ()
    context: tuple[tuple[str, Any], ...] = ()
