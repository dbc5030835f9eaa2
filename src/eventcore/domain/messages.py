"""Commands, queries and their results.

A command is consumed exactly once by its handler and is never persisted
on its own; its effect is the events it produces.  Queries are
side-effect free and read projections only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from eventcore.core.enums import CacheStatus, ErrorCode
from eventcore.core.ids import new_id as _uuid
from eventcore.core.ids import utc_now as _now
from eventcore.domain.events import DomainEvent


# ---------------------------------------------------------------------------
# Write side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandMetadata:
    timestamp: datetime = field(default_factory=_now)
    user_id: str = ""
    session_id: str = ""
    correlation_id: str = ""
    expected_version: int | None = None  # Optimistic concurrency check
    source: str = ""


@dataclass(frozen=True)
class Command:
    type: str
    aggregate_id: str
    aggregate_type: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    metadata: CommandMetadata = field(default_factory=CommandMetadata)
    id: str = field(default_factory=_uuid)


@dataclass
class CommandResult:
    success: bool
    aggregate_id: str
    version: int = 0
    events: list[DomainEvent] = field(default_factory=list)
    error: str | None = None
    error_code: ErrorCode | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        aggregate_id: str,
        events: list[DomainEvent],
        **metadata: Any,
    ) -> CommandResult:
        """Successful result; version is taken from the last event."""
        version = events[-1].version if events else 0
        return cls(
            success=True,
            aggregate_id=aggregate_id,
            version=version,
            events=list(events),
            metadata=dict(metadata),
        )

    @classmethod
    def failure(
        cls,
        aggregate_id: str,
        code: ErrorCode,
        error: str,
    ) -> CommandResult:
        return cls(
            success=False,
            aggregate_id=aggregate_id,
            error=error,
            error_code=code,
        )


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueryMetadata:
    timestamp: datetime = field(default_factory=_now)
    user_id: str = ""
    session_id: str = ""
    correlation_id: str = ""
    source: str = ""


@dataclass(frozen=True)
class Query:
    type: str
    parameters: dict[str, Any] = field(default_factory=dict)
    metadata: QueryMetadata = field(default_factory=QueryMetadata)
    id: str = field(default_factory=_uuid)


@dataclass
class QueryResultMetadata:
    timestamp: datetime = field(default_factory=_now)
    version: int | None = None
    last_modified: datetime | None = None
    cache_status: CacheStatus | None = None


@dataclass
class QueryResult:
    success: bool
    data: Any = None
    metadata: QueryResultMetadata = field(default_factory=QueryResultMetadata)
    error: str | None = None
    error_code: ErrorCode | None = None

    @classmethod
    def ok(
        cls,
        data: Any,
        *,
        version: int | None = None,
        last_modified: datetime | None = None,
    ) -> QueryResult:
        return cls(
            success=True,
            data=data,
            metadata=QueryResultMetadata(
                version=version, last_modified=last_modified,
            ),
        )

    @classmethod
    def failure(cls, code: ErrorCode, error: str) -> QueryResult:
        return cls(success=False, error=error, error_code=code)
