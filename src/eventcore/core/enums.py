"""Enumerations used across the engine."""

from enum import Enum


class ErrorCode(str, Enum):
    """Typed failure codes carried by command and query results."""

    VALIDATION_FAILED = "validation_failed"
    AUTHORIZATION_FAILED = "authorization_failed"
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    HANDLER_ERROR = "handler_error"
    TIMEOUT = "timeout"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ProjectionStatus(str, Enum):
    ACTIVE = "active"
    REBUILDING = "rebuilding"
    FAILED = "failed"
    PAUSED = "paused"


class SagaStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATING = "compensating"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"


class CompensationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    JSONL = "jsonl"
    POSTGRES = "postgres"


class NotifierBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
