"""
ResilientFetcher - Read-through access to a rate-limited upstream API.

Combines:
- CacheStore for per-resource-type response caching
- RequestDeduplicator for single-flight concurrent requests
- Retry engine with backoff, jitter and Retry-After support
- Optional CircuitBreaker in front of the retry engine
"""

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar

from loguru import logger

from fetchguard.services.cache import (
    MISSING,
    CacheStore,
    resource_type_name,
)
from fetchguard.services.circuit_breaker import CircuitBreaker
from fetchguard.services.deduplicator import RequestDeduplicator
from fetchguard.services.retry import (
    DEFAULT_RETRY_CONFIG,
    RetryConfig,
    RetryObserver,
    execute_with_retry,
)

if TYPE_CHECKING:
    from fetchguard.settings import Settings

T = TypeVar("T")


class ResilientFetcher:
    """
    Fetch-and-cache entry point used by the command layer.

    The cache, deduplicator and breaker are passed in so that each process
    builds them once and tests can build isolated ones.

    Usage:
        fetcher = ResilientFetcher(CacheStore(), RequestDeduplicator())

        page = await fetcher.fetch("page", page_id, lambda: api.get_page(page_id))

        # After a successful write
        await api.update_page(page_id, props)
        fetcher.invalidate("page", page_id)
    """

    def __init__(
        self,
        cache: CacheStore | None = None,
        deduplicator: RequestDeduplicator | None = None,
        retry_config: RetryConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        on_retry: RetryObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        debug: bool = False,
    ):
        self.cache = cache if cache is not None else CacheStore(debug=debug)
        self.deduplicator = (
            deduplicator if deduplicator is not None else RequestDeduplicator(debug=debug)
        )
        self.retry_config = retry_config if retry_config is not None else DEFAULT_RETRY_CONFIG
        self.circuit_breaker = circuit_breaker
        self._on_retry = on_retry
        self._sleep = sleep
        self._debug = debug

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "ResilientFetcher":
        """Build the fetcher and its collaborators from a Settings object."""
        retry_config = settings.retry_config()
        circuit_breaker = None
        if settings.circuit_breaker_enabled:
            circuit_breaker = CircuitBreaker(
                "upstream",
                config=settings.circuit_breaker_config(),
                retry_config=retry_config,
            )
        return cls(
            cache=CacheStore(settings.cache_config(), debug=settings.debug),
            deduplicator=RequestDeduplicator(
                enabled=settings.dedup_enabled, debug=settings.debug
            ),
            retry_config=retry_config,
            circuit_breaker=circuit_breaker,
            debug=settings.debug,
            **kwargs,
        )

    async def fetch(
        self,
        resource_type: str,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        *,
        skip_cache: bool = False,
        skip_dedup: bool = False,
        retry_config: RetryConfig | Mapping[str, Any] | None = None,
        cache_ttl: timedelta | None = None,
    ) -> T:
        """
        Return the data for (resource_type, key), calling fetch_fn on a miss.

        Args:
            resource_type: Resource type; selects the cache TTL
            key: Identifier within the resource type
            fetch_fn: Zero-argument coroutine factory calling the upstream
            skip_cache: Neither read nor populate the cache
            skip_dedup: Do not join or lead a shared in-flight request
            retry_config: Overrides applied on top of the fetcher's retry config
            cache_ttl: Explicit TTL for the stored result

        Returns:
            Cached or freshly fetched data

        Raises:
            CircuitOpenError: If the circuit breaker is open
            Exception: Whatever fetch_fn raised on its last attempt
        """
        use_cache = not skip_cache and self.cache.enabled

        if use_cache:
            cached = self.cache.get(resource_type, key, default=MISSING)
            if cached is not MISSING:
                return cached

        config = self.retry_config.merged(retry_config)
        context = f"{resource_type_name(resource_type)}:{key}"

        async def call_upstream() -> T:
            if self.circuit_breaker is not None:
                data = await self.circuit_breaker.execute(
                    fetch_fn,
                    config,
                    self._on_retry,
                    context=context,
                    sleep=self._sleep,
                )
            else:
                data = await execute_with_retry(
                    fetch_fn,
                    config,
                    self._on_retry,
                    context=context,
                    sleep=self._sleep,
                )

            # Written once by the shared task, even if its first caller is gone
            if use_cache:
                self.cache.set(resource_type, data, key, ttl=cache_ttl)
            return data

        if skip_dedup:
            return await call_upstream()
        return await self.deduplicator.coalesce(resource_type, key, call_upstream)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_config: RetryConfig | Mapping[str, Any] | None = None,
        context: str | None = None,
    ) -> T:
        """Run an uncached upstream call (e.g. a write) with retries."""
        return await execute_with_retry(
            operation,
            self.retry_config.merged(retry_config),
            self._on_retry,
            context=context,
            sleep=self._sleep,
        )

    def invalidate(self, resource_type: str, key: str | None = None) -> int:
        """
        Drop cached data after a successful write.

        Call only once the upstream write has succeeded. Omitting key drops
        every entry of the resource type (e.g. a collection listing).
        """
        removed = self.cache.invalidate(resource_type, key)
        if self._debug:
            target = f"{resource_type_name(resource_type)}:{key if key is not None else '*'}"
            logger.debug(f"Invalidated {removed} cache entries for {target}")
        return removed

    async def close(self) -> None:
        """Cancel in-flight requests and release resources."""
        cancelled = self.deduplicator.cancel_all()
        logger.debug(f"ResilientFetcher closed ({cancelled} in-flight requests cancelled)")

    async def __aenter__(self) -> "ResilientFetcher":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Health and status methods

    def get_health_status(self) -> dict[str, Any]:
        """Get cache, deduplication and circuit breaker status."""
        cache_config = self.cache.get_config()
        return {
            "cache": {
                "enabled": cache_config.enabled,
                "stats": self.cache.get_stats().to_dict(),
                "default_ttl_ms": _ms(cache_config.default_ttl),
                "ttls_ms": {
                    name: _ms(ttl) for name, ttl in cache_config.ttl_by_type.items()
                },
            },
            "retry": {
                "max_retries": self.retry_config.max_retries,
                "base_delay_ms": self.retry_config.base_delay,
                "max_delay_ms": self.retry_config.max_delay,
                "exponential_base": self.retry_config.exponential_base,
                "jitter_factor": self.retry_config.jitter_factor,
            },
            "deduplicator": {
                "enabled": self.deduplicator.enabled,
                **self.deduplicator.get_stats().to_dict(),
            },
            "circuit_breaker": (
                self.circuit_breaker.get_status() if self.circuit_breaker else None
            ),
        }


def _ms(value: timedelta) -> int:
    return int(value.total_seconds() * 1000)
