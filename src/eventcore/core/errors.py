"""Custom exception hierarchy for the engine.

Every error carries an :class:`ErrorCode` so the dispatch boundaries can
turn a raised exception into a typed, structured result.
"""

from __future__ import annotations

from .enums import ErrorCode


class EngineError(Exception):
    """Base exception for all engine errors."""

    code: ErrorCode = ErrorCode.HANDLER_ERROR


# --- Configuration ---
class ConfigError(EngineError):
    """Invalid or missing configuration."""


# --- Event store ---
class ConcurrencyConflict(EngineError):
    """Optimistic version check failed on append.

    Callers must reload the aggregate and retry the command from fresh
    state.
    """

    code = ErrorCode.CONCURRENCY_CONFLICT

    def __init__(self, aggregate_id: str, expected: int, actual: int):
        self.aggregate_id = aggregate_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Concurrency conflict on {aggregate_id}: "
            f"expected version {expected}, stream is at {actual}"
        )


class AggregateTypeMismatch(EngineError):
    """Events appended to a stream under a different aggregate type."""

    code = ErrorCode.VALIDATION_FAILED


class RepositoryError(EngineError):
    """The persistence backend failed to read or write."""


# --- Lookups ---
class NotFound(EngineError):
    """A stream, projection, saga or handler does not exist."""

    code = ErrorCode.NOT_FOUND


class StreamNotFound(NotFound):
    """No event stream for the aggregate."""


class ProjectionNotFound(NotFound):
    """No projection with the given id."""


class SagaNotFound(NotFound):
    """No saga with the given id."""


# --- Read side ---
class ProjectionError(EngineError):
    """A projection fold failed during rebuild."""


# --- Sagas ---
class SagaAlreadyExists(EngineError):
    """A saga with the same id has already been started."""

    code = ErrorCode.VALIDATION_FAILED
