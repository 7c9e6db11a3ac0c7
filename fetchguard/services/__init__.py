"""
Service layer infrastructure - resilience patterns for upstream API calls.

Provides:
- CacheStore: In-memory TTL cache with LRU eviction
- Retry engine: Exponential backoff with jitter and Retry-After support
- CircuitBreaker: Stops calls to a failing upstream
- RequestDeduplicator: Single-flight for concurrent identical requests
- ResilientFetcher: Fetch-and-cache entry point combining all patterns
- ApiClient: httpx client on top of ResilientFetcher
"""

from fetchguard.services.errors import (
    ServiceError,
    UpstreamError,
    NetworkError,
    RequestTimeoutError,
    RateLimitError,
    CircuitOpenError,
)
from fetchguard.services.cache import (
    CacheConfig,
    CacheEntry,
    CacheStats,
    CacheStore,
    ResourceType,
    cache_key,
)
from fetchguard.services.retry import (
    BatchResult,
    RetryAttemptContext,
    RetryConfig,
    calculate_delay,
    execute_batch,
    execute_with_retry,
    is_retryable_error,
)
from fetchguard.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
)
from fetchguard.services.deduplicator import RequestDeduplicator
from fetchguard.services.client import ResilientFetcher
from fetchguard.services.api import ApiClient

__all__ = [
    # Errors
    "ServiceError",
    "UpstreamError",
    "NetworkError",
    "RequestTimeoutError",
    "RateLimitError",
    "CircuitOpenError",
    # Cache
    "CacheConfig",
    "CacheEntry",
    "CacheStats",
    "CacheStore",
    "ResourceType",
    "cache_key",
    # Retry
    "BatchResult",
    "RetryAttemptContext",
    "RetryConfig",
    "calculate_delay",
    "execute_batch",
    "execute_with_retry",
    "is_retryable_error",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitState",
    # Deduplicator
    "RequestDeduplicator",
    # Client
    "ResilientFetcher",
    "ApiClient",
]
