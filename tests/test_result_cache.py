"""
Tests for the in-memory result cache and request deduplicator.

Covers TTL expiry on a fake clock, single-flight sharing, failure and
cancellation semantics, and bounded size.
"""

import asyncio

import pytest

from app.infrastructure.convergence.result_cache import InMemoryResultCache
from tests.fakes import FakeClock, pipeline_result


class CountingCompute:
    """Compute factory that counts calls and can be held open."""

    def __init__(self, result=None, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.result = result or pipeline_result()
        self.error = error
        self.gate = gate
        self.calls = 0
        self.cancelled = False

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return self.result


class TestCaching:
    """Tests for TTL memoization."""

    @pytest.mark.asyncio
    async def test_second_lookup_is_a_hit(self) -> None:
        clock = FakeClock()
        cache = InMemoryResultCache(clock=clock)
        compute = CountingCompute()

        first = await cache.get_or_compute("fp-1", compute)
        clock.advance(42)
        second = await cache.get_or_compute("fp-1", compute)

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.age_seconds == pytest.approx(42)
        assert second.result is first.result
        assert compute.calls == 1
        assert cache.stats["hits"] == 1
        assert cache.stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self) -> None:
        clock = FakeClock()
        cache = InMemoryResultCache(ttl_seconds=1800, clock=clock)
        compute = CountingCompute()

        await cache.get_or_compute("fp-1", compute)
        clock.advance(1799)
        assert (await cache.get_or_compute("fp-1", compute)).cache_hit is True
        clock.advance(1)
        assert (await cache.get_or_compute("fp-1", compute)).cache_hit is False
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_degraded_result_uses_short_ttl(self) -> None:
        clock = FakeClock()
        cache = InMemoryResultCache(ttl_seconds=1800, degraded_ttl_seconds=60, clock=clock)
        compute = CountingCompute(result=pipeline_result(degraded=True))

        await cache.get_or_compute("fp-1", compute)
        clock.advance(61)
        await cache.get_or_compute("fp-1", compute)
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_refresh_bypasses_lookup_and_replaces_entry(self) -> None:
        cache = InMemoryResultCache()
        await cache.get_or_compute("fp-1", CountingCompute(result=pipeline_result("P-500")))
        fresh = await cache.get_or_compute(
            "fp-1", CountingCompute(result=pipeline_result("P-600")), refresh=True
        )
        assert fresh.cache_hit is False
        hit = await cache.get_or_compute("fp-1", CountingCompute())
        assert hit.result.final_label == "P-600"

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self) -> None:
        cache = InMemoryResultCache()
        with pytest.raises(RuntimeError):
            await cache.get_or_compute("fp-1", CountingCompute(error=RuntimeError("boom")))
        assert len(cache) == 0
        assert cache.in_flight == 0

        ok = await cache.get_or_compute("fp-1", CountingCompute())
        assert ok.cache_hit is False

    @pytest.mark.asyncio
    async def test_oldest_entries_evicted_beyond_max(self) -> None:
        cache = InMemoryResultCache(max_entries=2)
        for key in ("fp-1", "fp-2", "fp-3"):
            await cache.get_or_compute(key, CountingCompute())
        assert len(cache) == 2
        assert cache.stats["evictions"] == 1
        compute = CountingCompute()
        await cache.get_or_compute("fp-1", compute)
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate(self) -> None:
        cache = InMemoryResultCache()
        for key in ("fp-1", "fp-2", "fp-3"):
            await cache.get_or_compute(key, CountingCompute())
        assert cache.invalidate("fp-1") == 1
        assert cache.invalidate("fp-1") == 0
        assert cache.invalidate() == 2
        assert len(cache) == 0


class TestSingleFlight:
    """Tests for per-fingerprint deduplication."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self) -> None:
        cache = InMemoryResultCache()
        gate = asyncio.Event()
        compute = CountingCompute(gate=gate)

        waiters = [asyncio.ensure_future(cache.get_or_compute("fp-1", compute)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.in_flight == 1
        gate.set()
        lookups = await asyncio.gather(*waiters)

        assert compute.calls == 1
        assert all(lookup.result is lookups[0].result for lookup in lookups)
        assert cache.stats["joined"] == 4
        assert cache.in_flight == 0

    @pytest.mark.asyncio
    async def test_distinct_fingerprints_run_independently(self) -> None:
        cache = InMemoryResultCache()
        compute = CountingCompute()
        await asyncio.gather(
            cache.get_or_compute("fp-1", compute),
            cache.get_or_compute("fp-2", compute),
        )
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_waiter(self) -> None:
        cache = InMemoryResultCache()
        gate = asyncio.Event()
        compute = CountingCompute(error=ValueError("bad input"), gate=gate)

        waiters = [asyncio.ensure_future(cache.get_or_compute("fp-1", compute)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        outcomes = await asyncio.gather(*waiters, return_exceptions=True)

        assert compute.calls == 1
        assert all(isinstance(outcome, ValueError) for outcome in outcomes)
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_work(self) -> None:
        cache = InMemoryResultCache()
        gate = asyncio.Event()
        compute = CountingCompute(gate=gate)

        first = asyncio.ensure_future(cache.get_or_compute("fp-1", compute))
        second = asyncio.ensure_future(cache.get_or_compute("fp-1", compute))
        await asyncio.sleep(0)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        gate.set()
        lookup = await second
        assert lookup.result is compute.result
        assert compute.cancelled is False
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_last_waiter_leaving_cancels_computation(self) -> None:
        cache = InMemoryResultCache()
        gate = asyncio.Event()
        compute = CountingCompute(gate=gate)

        waiter = asyncio.ensure_future(cache.get_or_compute("fp-1", compute))
        while compute.calls == 0:
            await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0.01)

        assert compute.cancelled is True
        assert cache.in_flight == 0
        assert len(cache) == 0

        again = await cache.get_or_compute("fp-1", CountingCompute())
        assert again.cache_hit is False
