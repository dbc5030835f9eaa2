"""Read side: query routing with an optional TTL result cache.

A query handler is an async callable ``(query, projections)`` that reads
from the projection engine and returns either plain data or a
``QueryResult``.  Handlers must be side-effect free.

Cache keys are ``(query type, hash of parameters)``.  Entries expire
after the handler's ``ttl`` (measured on the injected clock) and are
dropped early when a projection whose id matches the handler's
``invalidation_pattern`` is updated.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import fnmatch
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from eventcore.bus.schemas import HandlerRegistered, QueryExecuted, QueryFailed
from eventcore.core.clock import IClock, WallClock
from eventcore.core.config import QueryConfig
from eventcore.core.enums import CacheStatus, ErrorCode
from eventcore.core.errors import EngineError
from eventcore.core.ids import payload_hash
from eventcore.domain.messages import Query, QueryResult
from eventcore.observability import metrics
from eventcore.observability.logger import correlation_scope

logger = logging.getLogger(__name__)

QueryHandler = Callable[[Query, Any], Awaitable[Any]]


@dataclass(frozen=True)
class CachePolicy:
    enabled: bool = True
    ttl: float = 60.0  # seconds
    invalidation_pattern: str | None = None  # fnmatch glob over projection ids


@dataclass
class QueryHandlerRegistration:
    name: str
    query_type: str
    handler: QueryHandler
    caching: CachePolicy = field(default_factory=lambda: CachePolicy(enabled=False))
    enabled: bool = True


@dataclass
class _CacheEntry:
    result: QueryResult
    expires_at: float


class QueryDispatcher:
    """Routes queries to handlers and caches their successful results."""

    def __init__(
        self,
        projections: Any,
        *,
        publisher: Any | None = None,
        clock: IClock | None = None,
        max_concurrency: int = 128,
        default_timeout: float | None = 10.0,
        default_ttl: float = 60.0,
    ) -> None:
        self._projections = projections
        self._publisher = publisher
        self._clock = clock or WallClock()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._default_timeout = default_timeout
        self._default_ttl = default_ttl
        self._handlers: dict[str, QueryHandlerRegistration] = {}
        self._cache: dict[tuple[str, str], _CacheEntry] = {}
        # Bumped on every invalidation of a query type.
        self._generations: dict[str, int] = {}
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_config(
        cls,
        config: QueryConfig,
        projections: Any,
        *,
        publisher: Any | None = None,
        clock: IClock | None = None,
    ) -> QueryDispatcher:
        return cls(
            projections,
            publisher=publisher,
            clock=clock,
            max_concurrency=config.max_concurrency,
            default_timeout=config.default_timeout,
            default_ttl=config.cache_ttl,
        )

    # -- Registration ------------------------------------------------------

    def register_query_handler(
        self,
        query_type: str,
        handler: QueryHandler,
        *,
        name: str | None = None,
        caching: CachePolicy | bool | None = None,
        enabled: bool = True,
    ) -> QueryHandlerRegistration:
        """Register *handler* for *query_type*.

        ``caching=True`` enables the cache with the configured default ttl
        and no invalidation pattern.
        """
        if caching is True:
            policy = CachePolicy(enabled=True, ttl=self._default_ttl)
        elif isinstance(caching, CachePolicy):
            policy = caching
        else:
            policy = CachePolicy(enabled=False)

        reg = QueryHandlerRegistration(
            name=name or getattr(handler, "__qualname__", query_type),
            query_type=query_type,
            handler=handler,
            caching=policy,
            enabled=enabled,
        )
        if query_type in self._handlers:
            logger.info("Replacing query handler for %s", query_type)
            self._drop_type(query_type)
        self._handlers[query_type] = reg
        if self._publisher is not None:
            self._publisher.emit(
                HandlerRegistered(
                    kind="query", handler_type=query_type, handler_name=reg.name,
                )
            )
        return reg

    def set_enabled(self, query_type: str, enabled: bool) -> None:
        reg = self._handlers.get(query_type)
        if reg is None:
            raise KeyError(f"No query handler for {query_type!r}")
        reg.enabled = enabled

    @property
    def query_types(self) -> list[str]:
        return sorted(self._handlers)

    # -- Execution ---------------------------------------------------------

    async def execute_query(
        self, query: Query, *, timeout: float | None = None,
    ) -> QueryResult:
        started = time.perf_counter()
        with correlation_scope(query.metadata.correlation_id or query.id):
            reg = self._handlers.get(query.type)
            if reg is None:
                result = QueryResult.failure(
                    ErrorCode.NOT_FOUND,
                    f"No handler registered for query {query.type!r}",
                )
            elif not reg.enabled:
                result = QueryResult.failure(
                    ErrorCode.DISABLED,
                    f"Handler for query {query.type!r} is disabled",
                )
            else:
                result = self._cached(reg, query)
                if result is None:
                    generation = self._generations.get(query.type, 0)
                    deadline = timeout if timeout is not None else self._default_timeout
                    result = await self._invoke(reg, query, deadline)
                    if result.success and reg.caching.enabled:
                        result.metadata.cache_status = CacheStatus.MISS
                        # Invalidated while the handler ran: the result may be stale.
                        if self._generations.get(query.type, 0) == generation:
                            self._store(reg, query, result)
            self._record(query, result, time.perf_counter() - started)
        return result

    async def _invoke(
        self,
        reg: QueryHandlerRegistration,
        query: Query,
        deadline: float | None,
    ) -> QueryResult:
        try:
            async with self._semaphore:
                outcome = await asyncio.wait_for(
                    reg.handler(query, self._projections), timeout=deadline,
                )
        except asyncio.TimeoutError:
            return QueryResult.failure(
                ErrorCode.TIMEOUT, f"Query {query.type} timed out after {deadline}s",
            )
        except EngineError as exc:
            return QueryResult.failure(exc.code, str(exc))
        except Exception as exc:
            logger.exception("Query handler %s failed on %s", reg.name, query.id)
            return QueryResult.failure(ErrorCode.HANDLER_ERROR, str(exc))

        if isinstance(outcome, QueryResult):
            if not outcome.success and outcome.error_code is None:
                outcome.error_code = ErrorCode.HANDLER_ERROR
            return outcome
        return QueryResult.ok(outcome)

    # -- Cache -------------------------------------------------------------

    def _cached(
        self, reg: QueryHandlerRegistration, query: Query,
    ) -> QueryResult | None:
        if not reg.caching.enabled:
            return None
        key = (query.type, payload_hash(query.parameters))
        entry = self._cache.get(key)
        if entry is None or entry.expires_at <= self._clock.monotonic():
            self._misses += 1
            metrics.QUERY_CACHE.labels(query_type=query.type, status="miss").inc()
            return None
        self._hits += 1
        metrics.QUERY_CACHE.labels(query_type=query.type, status="hit").inc()
        cached = entry.result
        return dataclasses.replace(
            cached,
            data=copy.deepcopy(cached.data),
            metadata=dataclasses.replace(
                cached.metadata, cache_status=CacheStatus.HIT,
            ),
        )

    def _store(
        self, reg: QueryHandlerRegistration, query: Query, result: QueryResult,
    ) -> None:
        key = (query.type, payload_hash(query.parameters))
        self._cache[key] = _CacheEntry(
            result=dataclasses.replace(
                result,
                data=copy.deepcopy(result.data),
                metadata=dataclasses.replace(result.metadata),
            ),
            expires_at=self._clock.monotonic() + reg.caching.ttl,
        )

    def _drop_type(self, query_type: str) -> int:
        self._generations[query_type] = self._generations.get(query_type, 0) + 1
        stale = [k for k in self._cache if k[0] == query_type]
        for key in stale:
            del self._cache[key]
        return len(stale)

    def invalidate(self, projection_id: str) -> int:
        """Drop cache entries of handlers whose pattern matches *projection_id*."""
        dropped = 0
        for reg in self._handlers.values():
            pattern = reg.caching.invalidation_pattern
            if not reg.caching.enabled or not pattern:
                continue
            if fnmatch.fnmatchcase(projection_id, pattern):
                dropped += self._drop_type(reg.query_type)
        if dropped:
            logger.debug(
                "Invalidated %d cached results after %s changed", dropped, projection_id,
            )
        return dropped

    def evict_expired(self) -> int:
        """Remove expired entries.  Run periodically by the scheduler."""
        now = self._clock.monotonic()
        expired = [k for k, e in self._cache.items() if e.expires_at <= now]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def clear_cache(self) -> None:
        for query_type in self._handlers:
            self._generations[query_type] = self._generations.get(query_type, 0) + 1
        self._cache.clear()

    # -- Observability -----------------------------------------------------

    def _record(self, query: Query, result: QueryResult, elapsed: float) -> None:
        duration_ms = round(elapsed * 1000, 3)
        if result.success:
            metrics.QUERIES_TOTAL.labels(query_type=query.type, outcome="success").inc()
            if self._publisher is not None:
                status = result.metadata.cache_status
                self._publisher.emit(
                    QueryExecuted(
                        query_id=query.id,
                        query_type=query.type,
                        cache_status=status.value if status else "",
                        duration_ms=duration_ms,
                    )
                )
            return

        code = result.error_code.value if result.error_code else ""
        metrics.QUERIES_TOTAL.labels(query_type=query.type, outcome=code).inc()
        logger.info("Query %s failed [%s]: %s", query.type, code, result.error)
        if self._publisher is not None:
            self._publisher.emit(
                QueryFailed(
                    query_id=query.id,
                    query_type=query.type,
                    error=result.error or "",
                    error_code=code,
                )
            )

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def get_metrics(self) -> dict[str, int]:
        return {
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "cache_size": len(self._cache),
            "handlers": len(self._handlers),
        }
