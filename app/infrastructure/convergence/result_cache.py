"""
In-memory result cache and request deduplicator.

Implements ResultCachePort:
- TTL memoization of pipeline results by fingerprint (shorter TTL for
  degraded results, so an AI outage is not remembered for long)
- Single-flight execution: concurrent requests with the same fingerprint
  share one computation
- Bounded size, oldest entries evicted first

The entry map and the in-flight map are the only cross-request state in
the process. Both are touched only from the event loop, and no await
separates an in-flight lookup from its insert, so check-then-insert is
atomic.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from app.domain.convergence.entities import PipelineResult
from app.domain.convergence.ports import CacheLookup, ResultCachePort, ResultFactory

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    result: PipelineResult
    stored_at: float
    ttl: float


@dataclass
class _Flight:
    task: "asyncio.Task[PipelineResult]"
    waiters: int = 0


class InMemoryResultCache(ResultCachePort):
    """Process-local TTL cache with per-fingerprint single-flight.

    Args:
        ttl_seconds: Lifetime of a normal result.
        degraded_ttl_seconds: Lifetime of a degraded result.
        max_entries: Maximum number of stored results.
        clock: Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 1800.0,
        degraded_ttl_seconds: float = 60.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._degraded_ttl = degraded_ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._in_flight: dict[str, _Flight] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "joined": 0,
            "evictions": 0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def stats(self) -> dict:
        return {**self._stats, "entries": len(self._entries), "in_flight": self.in_flight}

    async def get_or_compute(
        self,
        fingerprint: str,
        compute: ResultFactory,
        refresh: bool = False,
    ) -> CacheLookup:
        """Return a fresh cached result or share one computation of it.

        Args:
            fingerprint: Cache and deduplication key.
            compute: Coroutine factory producing the result on a miss.
            refresh: Skip the lookup; still joins an in-flight run.

        Returns:
            The result and whether it was served from the cache.

        Raises:
            Whatever ``compute`` raises. Failures are never cached.
        """
        if not refresh:
            entry = self._lookup(fingerprint)
            if entry is not None:
                self._stats["hits"] += 1
                return CacheLookup(
                    result=entry.result,
                    cache_hit=True,
                    age_seconds=round(self._clock() - entry.stored_at, 3),
                )

        flight = self._in_flight.get(fingerprint)
        if flight is None:
            self._stats["misses"] += 1
            logger.debug("Cache miss for %s; starting computation", fingerprint[:12])
            flight = _Flight(
                task=asyncio.ensure_future(self._compute_and_store(fingerprint, compute))
            )
            self._in_flight[fingerprint] = flight
            flight.task.add_done_callback(
                lambda task, key=fingerprint, owner=flight: self._finish(key, owner)
            )
        else:
            self._stats["joined"] += 1
            logger.debug("Joining in-flight computation for %s", fingerprint[:12])

        flight.waiters += 1
        cancelled = False
        try:
            result = await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            flight.waiters -= 1
            if cancelled and flight.waiters == 0 and not flight.task.done():
                logger.info(
                    "Last waiter left %s; cancelling computation", fingerprint[:12]
                )
                if self._in_flight.get(fingerprint) is flight:
                    del self._in_flight[fingerprint]
                flight.task.cancel()
        return CacheLookup(result=result, cache_hit=False)

    def invalidate(self, fingerprint: Optional[str] = None) -> int:
        """Drop one cached result, or every result when no key is given.

        Returns:
            Number of entries removed.
        """
        if fingerprint is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed
        return 1 if self._entries.pop(fingerprint, None) is not None else 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, fingerprint: str) -> Optional[_CacheEntry]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= entry.ttl:
            del self._entries[fingerprint]
            return None
        return entry

    async def _compute_and_store(
        self, fingerprint: str, compute: ResultFactory
    ) -> PipelineResult:
        result = await compute()
        ttl = self._degraded_ttl if result.degraded else self._ttl
        self._entries[fingerprint] = _CacheEntry(
            result=result, stored_at=self._clock(), ttl=ttl
        )
        self._entries.move_to_end(fingerprint)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._stats["evictions"] += 1
        return result

    def _finish(self, fingerprint: str, flight: _Flight) -> None:
        if self._in_flight.get(fingerprint) is flight:
            del self._in_flight[fingerprint]
        task = flight.task
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Computation for %s failed: %s", fingerprint[:12], exc)
