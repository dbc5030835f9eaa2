"""Prometheus metrics endpoint.

Exposes engine metrics for monitoring via Grafana.
"""

from __future__ import annotations

import threading
from typing import Any

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("eventcore_system", "Event engine information")

# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------

EVENTS_APPENDED = Counter(
    "eventcore_events_appended_total",
    "Events durably appended",
    ["aggregate_type", "event_type"],
)

CONCURRENCY_CONFLICTS = Counter(
    "eventcore_concurrency_conflicts_total",
    "Appends rejected by the optimistic version check",
    ["aggregate_type"],
)

SNAPSHOTS_CREATED = Counter(
    "eventcore_snapshots_created_total",
    "Snapshots taken",
    ["aggregate_type"],
)

SNAPSHOT_FAILURES = Counter(
    "eventcore_snapshot_failures_total",
    "Automatic snapshots that failed and were left for compaction",
    ["aggregate_type"],
)

EVENTS_PRUNED = Counter(
    "eventcore_events_pruned_total",
    "Events dropped from memory after snapshotting",
)

STREAMS = Gauge(
    "eventcore_streams",
    "Number of aggregate streams",
)

LAST_SEQUENCE = Gauge(
    "eventcore_last_sequence",
    "Highest global sequence assigned",
)

# ---------------------------------------------------------------------------
# Commands / queries
# ---------------------------------------------------------------------------

COMMANDS_TOTAL = Counter(
    "eventcore_commands_total",
    "Commands executed by outcome",
    ["command_type", "outcome"],
)

COMMAND_LATENCY = Histogram(
    "eventcore_command_latency_seconds",
    "Command execution latency",
    ["command_type"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

QUERIES_TOTAL = Counter(
    "eventcore_queries_total",
    "Queries executed by outcome",
    ["query_type", "outcome"],
)

QUERY_CACHE = Counter(
    "eventcore_query_cache_total",
    "Query cache lookups",
    ["query_type", "status"],
)

# ---------------------------------------------------------------------------
# Event dispatch
# ---------------------------------------------------------------------------

HANDLER_FAILURES = Counter(
    "eventcore_handler_failures_total",
    "Event handler invocations that raised",
    ["handler", "event_type"],
)

HANDLER_RETRIES = Counter(
    "eventcore_handler_retries_total",
    "Event handler retry attempts",
    ["handler"],
)

DEAD_LETTERS = Counter(
    "eventcore_dead_letters_total",
    "Events dead-lettered after exhausting retries",
    ["handler", "event_type"],
)

DISPATCH_BACKLOG = Gauge(
    "eventcore_dispatch_backlog",
    "Events queued but not yet delivered",
)

# ---------------------------------------------------------------------------
# Projections / sagas
# ---------------------------------------------------------------------------

PROJECTION_FOLDS = Counter(
    "eventcore_projection_folds_total",
    "Events folded into projections",
    ["projection"],
)

PROJECTION_REBUILDS = Counter(
    "eventcore_projection_rebuilds_total",
    "Projection rebuilds by outcome",
    ["projection", "outcome"],
)

SAGAS_TOTAL = Counter(
    "eventcore_sagas_total",
    "Sagas finished by outcome",
    ["saga_type", "outcome"],
)

ACTIVE_SAGAS = Gauge(
    "eventcore_active_sagas",
    "Sagas not yet in a terminal state",
)


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

_server_started = False
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9090) -> None:
    """Start Prometheus metrics HTTP server (idempotent)."""
    global _server_started
    with _server_lock:
        if _server_started:
            return
        start_http_server(port)
        _server_started = True


def set_system_info(info: dict[str, Any]) -> None:
    SYSTEM_INFO.info({k: str(v) for k, v in info.items()})
