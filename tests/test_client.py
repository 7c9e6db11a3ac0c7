import asyncio
from datetime import timedelta

import pytest

from fetchguard.services.cache import CacheConfig, CacheStore
from fetchguard.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from fetchguard.services.client import ResilientFetcher
from fetchguard.services.deduplicator import RequestDeduplicator
from fetchguard.services.errors import CircuitOpenError, UpstreamError
from fetchguard.services.retry import RetryConfig


def run_async(coro):
    return asyncio.run(coro)


def make_fetcher(clock, sleeper, circuit_breaker=None, **cache_config):
    return ResilientFetcher(
        cache=CacheStore(CacheConfig(**cache_config), clock=clock),
        deduplicator=RequestDeduplicator(),
        retry_config=RetryConfig(max_retries=3, jitter_factor=0),
        circuit_breaker=circuit_breaker,
        sleep=sleeper,
    )


class CountingFetch:
    def __init__(self, result=None, errors=()):
        self.result = result if result is not None else {"id": "p1"}
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def test_rate_limited_fetch_honors_retry_after_and_caches(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper)
    fetch_p1 = CountingFetch(
        errors=[UpstreamError("rate limited", status=429, retry_after=2)] * 2
    )

    result = run_async(fetcher.fetch("page", "p1", fetch_p1))

    assert result == {"id": "p1"}
    assert sleeper.calls == [2.0, 2.0]
    assert fetch_p1.calls == 3
    assert fetcher.cache.get("page", "p1") == {"id": "p1"}

    # page entries live for the page TTL (60s by default)
    clock.advance(seconds=59)
    assert fetcher.cache.get("page", "p1") == {"id": "p1"}
    clock.advance(seconds=1)
    assert fetcher.cache.get("page", "p1") is None


def test_cache_hit_skips_upstream(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper)
    fetch = CountingFetch()

    first = run_async(fetcher.fetch("page", "p1", fetch))
    second = run_async(fetcher.fetch("page", "p1", fetch))

    assert first is second
    assert fetch.calls == 1
    assert fetcher.cache.get_stats().hits == 1


def test_concurrent_fetches_share_one_upstream_call(clock, sleeper):
    async def scenario():
        fetcher = make_fetcher(clock, sleeper)
        gate = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await gate.wait()
            return {"id": "p1"}

        tasks = [
            asyncio.create_task(fetcher.fetch("page", "p1", fetch)) for _ in range(10)
        ]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert all(result is results[0] for result in results)

    run_async(scenario())


def test_concurrent_fetches_share_one_error(clock, sleeper):
    async def scenario():
        fetcher = make_fetcher(clock, sleeper)
        error = UpstreamError("forbidden", status=403)
        gate = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await gate.wait()
            raise error

        tasks = [
            asyncio.create_task(fetcher.fetch("page", "p1", fetch)) for _ in range(10)
        ]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert calls == 1
        assert all(result is error for result in results)
        assert fetcher.cache.get("page", "p1") is None

    run_async(scenario())


def test_errors_propagate_unwrapped_and_are_not_cached(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper)
    error = UpstreamError("not found", status=404, code="object_not_found")
    fetch = CountingFetch(errors=[error])

    with pytest.raises(UpstreamError) as exc_info:
        run_async(fetcher.fetch("page", "p1", fetch))

    assert exc_info.value is error
    assert fetch.calls == 1
    assert run_async(fetcher.fetch("page", "p1", fetch)) == {"id": "p1"}
    assert fetch.calls == 2


def test_skip_cache_bypasses_read_and_write(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper)
    fetcher.cache.set("page", {"id": "stale"}, "p1")
    fetch = CountingFetch(result={"id": "fresh"})

    result = run_async(fetcher.fetch("page", "p1", fetch, skip_cache=True))

    assert result == {"id": "fresh"}
    assert fetcher.cache.get("page", "p1") == {"id": "stale"}


def test_disabled_cache_always_fetches(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper, enabled=False)
    fetch = CountingFetch()

    run_async(fetcher.fetch("page", "p1", fetch))
    run_async(fetcher.fetch("page", "p1", fetch))

    assert fetch.calls == 2
    assert len(fetcher.cache) == 0


def test_per_call_retry_config_and_ttl(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper)
    fetch = CountingFetch(errors=[UpstreamError("boom", status=500)])

    with pytest.raises(UpstreamError):
        run_async(fetcher.fetch("user", "u1", fetch, retry_config={"max_retries": 0}))
    assert fetch.calls == 1

    run_async(fetcher.fetch("user", "u1", fetch, cache_ttl=timedelta(seconds=10)))
    clock.advance(seconds=10)
    assert fetcher.cache.get("user", "u1") is None


def test_invalidate_after_write(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper)
    fetch = CountingFetch()
    run_async(fetcher.fetch("block", "b1", fetch))
    run_async(fetcher.fetch("block", "b2", fetch))
    run_async(fetcher.fetch("page", "p1", fetch))

    assert fetcher.invalidate("block", "b1") == 1
    assert fetcher.invalidate("block") == 1
    assert fetcher.cache.get("page", "p1") == {"id": "p1"}

    run_async(fetcher.fetch("block", "b1", fetch))
    assert fetch.calls == 4


def test_invalidate_during_in_flight_fetch_keeps_later_result(clock, sleeper):
    async def scenario():
        fetcher = make_fetcher(clock, sleeper)
        fetcher.cache.set("block", "old", "b2")
        gate = asyncio.Event()

        async def fetch():
            await gate.wait()
            return "new"

        task = asyncio.create_task(fetcher.fetch("block", "b1", fetch))
        await asyncio.sleep(0)

        fetcher.invalidate("block")
        assert fetcher.cache.get("block", "b2") is None

        gate.set()
        assert await task == "new"
        assert fetcher.cache.get("block", "b1") == "new"
        assert fetcher.cache.get("block", "b2") is None

    run_async(scenario())


def test_open_circuit_fails_fast(clock, sleeper):
    breaker = CircuitBreaker(
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=timedelta(seconds=60)),
        clock=clock,
    )
    fetcher = make_fetcher(clock, sleeper, circuit_breaker=breaker)
    fetch = CountingFetch(errors=[UpstreamError("bad", status=400)])

    with pytest.raises(UpstreamError):
        run_async(fetcher.fetch("page", "p1", fetch))
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        run_async(fetcher.fetch("page", "p1", fetch))
    assert fetch.calls == 1


def test_joining_in_flight_request_while_circuit_opens(clock, sleeper):
    async def scenario():
        breaker = CircuitBreaker(
            config=CircuitBreakerConfig(failure_threshold=1),
            clock=clock,
        )
        fetcher = make_fetcher(clock, sleeper, circuit_breaker=breaker)
        gate = asyncio.Event()

        async def slow_fetch():
            await gate.wait()
            return "in-flight result"

        async def failing_fetch():
            raise UpstreamError("bad", status=400)

        leader = asyncio.create_task(fetcher.fetch("page", "p1", slow_fetch))
        await asyncio.sleep(0)

        with pytest.raises(UpstreamError):
            await fetcher.fetch("page", "p2", failing_fetch)
        assert breaker.state == CircuitState.OPEN

        joiner = asyncio.create_task(fetcher.fetch("page", "p1", slow_fetch))
        await asyncio.sleep(0)
        gate.set()

        assert await leader == "in-flight result"
        assert await joiner == "in-flight result"

        with pytest.raises(CircuitOpenError):
            await fetcher.fetch("page", "p3", slow_fetch)

    run_async(scenario())


def test_health_status_reports_components(clock, sleeper):
    fetcher = make_fetcher(clock, sleeper)
    run_async(fetcher.fetch("page", "p1", CountingFetch()))

    status = fetcher.get_health_status()

    assert status["cache"]["enabled"] is True
    assert status["cache"]["stats"]["sets"] == 1
    assert status["cache"]["ttls_ms"]["block"] == 30000
    assert status["retry"]["max_retries"] == 3
    assert status["deduplicator"]["total_requests"] == 1
    assert status["circuit_breaker"] is None


def test_close_cancels_in_flight_requests(clock, sleeper):
    async def scenario():
        fetcher = make_fetcher(clock, sleeper)
        gate = asyncio.Event()

        async def fetch():
            await gate.wait()
            return "never"

        task = asyncio.create_task(fetcher.fetch("page", "p1", fetch))
        await asyncio.sleep(0)

        async with fetcher:
            pass

        with pytest.raises(asyncio.CancelledError):
            await task
        assert fetcher.deduplicator.get_in_flight_count() == 0

    run_async(scenario())


def test_injected_collaborators_are_used_even_when_empty(clock, sleeper):
    cache = CacheStore(CacheConfig(max_size=2), clock=clock)
    deduplicator = RequestDeduplicator(enabled=False)
    retry_config = RetryConfig(max_retries=0)

    fetcher = ResilientFetcher(cache, deduplicator, retry_config, sleep=sleeper)

    assert len(cache) == 0
    assert fetcher.cache is cache
    assert fetcher.deduplicator is deduplicator
    assert fetcher.retry_config is retry_config
    assert fetcher.cache.get_config().max_size == 2


def test_coalesced_fetches_populate_cache_once(clock, sleeper):
    async def scenario():
        fetcher = make_fetcher(clock, sleeper)
        gate = asyncio.Event()

        async def fetch():
            await gate.wait()
            return {"id": "p1"}

        tasks = [
            asyncio.create_task(fetcher.fetch("page", "p1", fetch)) for _ in range(10)
        ]
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(*tasks)

        return fetcher.cache.get_stats()

    stats = run_async(scenario())

    assert stats.sets == 1
    assert stats.size == 1


def test_cancelled_first_caller_still_caches_shared_result(clock, sleeper):
    async def scenario():
        fetcher = make_fetcher(clock, sleeper)
        gate = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await gate.wait()
            return {"id": "p1"}

        first = asyncio.create_task(fetcher.fetch("page", "p1", fetch))
        await asyncio.sleep(0)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        gate.set()
        while fetcher.deduplicator.get_in_flight_count():
            await asyncio.sleep(0)

        assert fetcher.cache.get("page", "p1") == {"id": "p1"}
        assert await fetcher.fetch("page", "p1", fetch) == {"id": "p1"}
        assert calls == 1

    run_async(scenario())
