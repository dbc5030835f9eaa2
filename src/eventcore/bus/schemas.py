"""Notification models, each bound to the topic it is published on.

Notifications are fire-and-forget messages for external observers
(dashboards, audit log, metrics collectors).  They are not part of the
consistency model: losing one never affects stored events or read models.
"""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, Field

from eventcore.core.ids import new_id, utc_now


class Notification(BaseModel):
    """Base for all notifications. Provides identity, time and origin."""

    topic: ClassVar[str] = ""

    notification_id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    source_module: str = "eventcore"


# ===========================================================================
# Registration
# ===========================================================================

class HandlerRegistered(Notification):
    topic: ClassVar[str] = "handler_registered"
    kind: str  # command | query | event
    handler_type: str
    handler_name: str


# ===========================================================================
# Write side
# ===========================================================================

class CommandExecuted(Notification):
    topic: ClassVar[str] = "command_executed"
    command_id: str
    command_type: str
    aggregate_id: str
    version: int = 0
    event_count: int = 0
    duration_ms: float = 0.0


class CommandFailed(Notification):
    topic: ClassVar[str] = "command_failed"
    command_id: str
    command_type: str
    aggregate_id: str
    error: str = ""
    error_code: str = ""


class EventDeadLettered(Notification):
    topic: ClassVar[str] = "event_dead_lettered"
    event_id: str
    event_type: str
    aggregate_id: str
    handler_name: str
    error: str
    attempts: int


# ===========================================================================
# Read side
# ===========================================================================

class QueryExecuted(Notification):
    topic: ClassVar[str] = "query_executed"
    query_id: str
    query_type: str
    cache_status: str = ""
    duration_ms: float = 0.0


class QueryFailed(Notification):
    topic: ClassVar[str] = "query_failed"
    query_id: str
    query_type: str
    error: str = ""
    error_code: str = ""


class ProjectionCreated(Notification):
    topic: ClassVar[str] = "projection_created"
    projection_id: str
    name: str
    projection_type: str
    event_types: list[str] = Field(default_factory=list)


class ProjectionRebuilt(Notification):
    topic: ClassVar[str] = "projection_rebuilt"
    projection_id: str
    events_replayed: int = 0


# ===========================================================================
# Sagas
# ===========================================================================

class SagaCreated(Notification):
    topic: ClassVar[str] = "saga_created"
    saga_id: str
    saga_type: str
    total_steps: int


class SagaCompleted(Notification):
    topic: ClassVar[str] = "saga_completed"
    saga_id: str
    saga_type: str


class SagaCompensated(Notification):
    topic: ClassVar[str] = "saga_compensated"
    saga_id: str
    saga_type: str
    error: str = ""
    failed_step: int = 0
    compensations_failed: int = 0

