"""
Retry engine - Exponential backoff with jitter for upstream API calls.

Errors are classified as:
- retryable: network errors without an HTTP status, retryable status codes
  (408, 429, 5xx by default) and named upstream error codes
- terminal: every other error, including all remaining 4xx responses

A Retry-After hint on the error takes precedence over the backoff formula.
The last error is re-raised unchanged once attempts are exhausted.
"""

import asyncio
import random
import socket
from dataclasses import dataclass, fields, replace
from typing import Any, Awaitable, Callable, Generic, Mapping, Sequence, TypeVar

import httpx
from loguru import logger

from fetchguard.services.errors import NetworkError

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_RETRYABLE_ERROR_CODES = frozenset(
    {
        "rate_limited",
        "service_unavailable",
        "internal_server_error",
        "conflict_error",
    }
)

# Socket-level failure codes that never carry an HTTP status
NETWORK_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN"})

_NETWORK_EXCEPTIONS = (
    NetworkError,
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    socket.gaierror,
)


@dataclass(frozen=True)
class RetryConfig:
    """Retry tuning. Delays are in milliseconds."""

    max_retries: int = 3
    base_delay: int = 1000
    max_delay: int = 30000
    exponential_base: float = 2.0
    jitter_factor: float = 0.1
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES
    retryable_error_codes: frozenset[str] = DEFAULT_RETRYABLE_ERROR_CODES

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.exponential_base <= 1:
            raise ValueError("exponential_base must be > 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be within [0, 1]")
        object.__setattr__(
            self, "retryable_status_codes", frozenset(self.retryable_status_codes)
        )
        object.__setattr__(
            self, "retryable_error_codes", frozenset(self.retryable_error_codes)
        )

    def merged(
        self, overrides: "RetryConfig | Mapping[str, Any] | None"
    ) -> "RetryConfig":
        """Return a copy with the given fields replaced."""
        if overrides is None:
            return self
        if isinstance(overrides, RetryConfig):
            return overrides

        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown retry options: {', '.join(sorted(unknown))}")
        return replace(self, **overrides)


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass(frozen=True)
class RetryAttemptContext:
    """Snapshot handed to the retry observer before each backoff sleep."""

    attempt: int
    max_retries: int
    last_error: BaseException
    delay: int  # ms until the next attempt
    total_delay: int  # ms slept so far, including `delay`
    context: str | None = None


RetryObserver = Callable[[RetryAttemptContext], None]


@dataclass
class BatchResult(Generic[T]):
    """Outcome of one operation in a batch."""

    success: bool
    data: T | None = None
    error: BaseException | None = None


def error_status(error: BaseException) -> int | None:
    """HTTP status carried by an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code

    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def error_code(error: BaseException) -> str | None:
    """Upstream or socket error code carried by an error, if any."""
    code = getattr(error, "code", None)
    return code if isinstance(code, str) else None


def retry_after_hint(error: BaseException) -> float | None:
    """Retry-After hint in seconds, from the error or its response headers."""
    value = getattr(error, "retry_after", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return max(0.0, float(value))

    headers = getattr(error, "headers", None)
    if headers is None and isinstance(error, httpx.HTTPStatusError):
        headers = error.response.headers
    if not headers:
        return None

    return parse_retry_after(headers.get("retry-after") or headers.get("Retry-After"))


def parse_retry_after(raw: Any) -> float | None:
    """Parse a Retry-After header value given in seconds."""
    if raw is None:
        return None
    try:
        return max(0.0, float(str(raw).strip()))
    except ValueError:
        # HTTP-date form is not supported; fall back to backoff
        return None


def is_network_error(error: BaseException) -> bool:
    if error_status(error) is not None:
        return False
    if isinstance(error, _NETWORK_EXCEPTIONS):
        return True
    return error_code(error) in NETWORK_ERROR_CODES


def is_retryable_error(
    error: BaseException, config: RetryConfig = DEFAULT_RETRY_CONFIG
) -> bool:
    """Decide whether another attempt can succeed where this one failed."""
    if is_network_error(error):
        return True

    status = error_status(error)
    if status is not None and status in config.retryable_status_codes:
        return True

    code = error_code(error)
    if code is not None and code in config.retryable_error_codes:
        return True

    # Client errors (4xx other than 408/429) and unknown errors are terminal
    return False


def calculate_delay(
    attempt: int,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    retry_after: float | None = None,
    uniform: Callable[[float, float], float] = random.uniform,
) -> int:
    """
    Milliseconds to wait after failed attempt number `attempt` (1-based).

    Args:
        attempt: Attempt that just failed
        config: Retry configuration
        retry_after: Server hint in seconds; used as-is (capped at max_delay)
        uniform: Random source for jitter, called as uniform(-1, 1)
    """
    if retry_after is not None:
        return round(min(retry_after * 1000, config.max_delay))

    exponential_delay = config.base_delay * config.exponential_base ** (attempt - 1)
    capped_delay = min(exponential_delay, config.max_delay)

    jitter = capped_delay * config.jitter_factor * uniform(-1, 1)
    return round(max(0.0, capped_delay + jitter))


def log_retry(ctx: RetryAttemptContext) -> None:
    """Default observer: one warning line per upcoming retry."""
    error = ctx.last_error
    status = error_status(error)
    if status == 429:
        error_type = "Rate limited"
    elif status is not None:
        error_type = f"HTTP {status}"
    else:
        error_type = error_code(error) or type(error).__name__

    context_str = f" [{ctx.context}]" if ctx.context else ""
    logger.warning(
        f"{error_type}{context_str}. Retrying in {ctx.delay}ms... "
        f"(attempt {ctx.attempt}/{ctx.max_retries}, total delay: {ctx.total_delay}ms)"
    )


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    on_retry: RetryObserver | None = None,
    *,
    context: str | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    uniform: Callable[[float, float], float] = random.uniform,
) -> T:
    """
    Run `operation`, retrying transient failures with backoff.

    Attempts run 1..max_retries + 1. Non-retryable errors are raised after
    the first failure; retryable ones after the last attempt. The error
    object raised is always the one the operation raised.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        config: Retry configuration (defaults to DEFAULT_RETRY_CONFIG)
        on_retry: Observer called before each backoff sleep
        context: Label included in the default retry log line
        sleep: Awaitable sleep taking seconds
        uniform: Random source for jitter

    Returns:
        Result of the first successful attempt
    """
    config = config if config is not None else DEFAULT_RETRY_CONFIG
    observer = on_retry or log_retry
    total_delay = 0

    for attempt in range(1, config.max_retries + 2):
        try:
            return await operation()
        except Exception as error:
            if attempt > config.max_retries or not is_retryable_error(error, config):
                raise

            delay = calculate_delay(
                attempt, config, retry_after_hint(error), uniform=uniform
            )
            total_delay += delay
            observer(
                RetryAttemptContext(
                    attempt=attempt,
                    max_retries=config.max_retries,
                    last_error=error,
                    delay=delay,
                    total_delay=total_delay,
                    context=context,
                )
            )
            await sleep(delay / 1000)

    raise RuntimeError("Retry loop exhausted")


async def execute_batch(
    operations: Sequence[Callable[[], Awaitable[T]]],
    concurrency: int = 5,
    config: RetryConfig | None = None,
    on_retry: RetryObserver | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    uniform: Callable[[float, float], float] = random.uniform,
) -> list[BatchResult[T]]:
    """
    Run operations with retry in groups of `concurrency`.

    Each group runs concurrently and finishes before the next one starts.
    Failures are reported per operation instead of being raised.

    Returns:
        One BatchResult per operation, in input order
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    total = len(operations)

    async def run_one(index: int, op: Callable[[], Awaitable[T]]) -> BatchResult[T]:
        try:
            data = await execute_with_retry(
                op,
                config,
                on_retry,
                context=f"Operation {index + 1}/{total}",
                sleep=sleep,
                uniform=uniform,
            )
            return BatchResult(success=True, data=data)
        except Exception as error:
            return BatchResult(success=False, error=error)

    results: list[BatchResult[T]] = []
    for start in range(0, total, concurrency):
        group = operations[start : start + concurrency]
        results.extend(
            await asyncio.gather(
                *(run_one(start + offset, op) for offset, op in enumerate(group))
            )
        )
    return results
