"""
CircuitBreaker - Stops calling an upstream that keeps failing.

States:
- closed: Normal operation, calls pass through
- open: Upstream is failing, calls are rejected locally
- half-open: Probing whether the upstream has recovered

Transitions:
- closed → open: failure_threshold consecutive failures
- open → half-open: first call at or after reset_timeout has elapsed
- half-open → closed: success_threshold consecutive successes
- half-open → open: any failure

Each call runs through the retry engine; a call that exhausts its retries
counts as a single failure.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from loguru import logger

from fetchguard.services.errors import CircuitOpenError
from fetchguard.services.retry import (
    DEFAULT_RETRY_CONFIG,
    RetryConfig,
    RetryObserver,
    execute_with_retry,
)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 2  # Successes needed to close from half-open
    reset_timeout: timedelta = timedelta(seconds=60)  # Time before half-open

    def __post_init__(self) -> None:
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("thresholds must be >= 1")
        if self.reset_timeout < timedelta(0):
            raise ValueError("reset_timeout must not be negative")


@dataclass(frozen=True)
class CircuitBreakerState:
    """Read-only snapshot of a breaker."""

    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    reopen_at: datetime | None


class CircuitBreaker:
    """
    Circuit breaker around the retry engine for a single upstream.

    Usage:
        breaker = CircuitBreaker("notion")

        try:
            page = await breaker.execute(lambda: api.get_page(page_id))
        except CircuitOpenError:
            # Upstream is down, nothing was sent
            ...
    """

    def __init__(
        self,
        service_id: str = "upstream",
        config: CircuitBreakerConfig | None = None,
        retry_config: RetryConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service_id = service_id
        self.config = config if config is not None else CircuitBreakerConfig()
        self.retry_config = retry_config if retry_config is not None else DEFAULT_RETRY_CONFIG
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._reopen_at: datetime | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_config: RetryConfig | Mapping[str, Any] | None = None,
        on_retry: RetryObserver | None = None,
        *,
        context: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """
        Run `operation` with retries unless the circuit is open.

        Raises:
            CircuitOpenError: The circuit is open and reset_timeout has not
                elapsed; `operation` is not called.
        """
        self._before_call()

        try:
            result = await execute_with_retry(
                operation,
                self.retry_config.merged(retry_config),
                on_retry,
                context=context,
                sleep=sleep,
            )
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def _before_call(self) -> None:
        if self._state != CircuitState.OPEN:
            return

        now = self._clock()
        if self._reopen_at is not None and now < self._reopen_at:
            raise CircuitOpenError(
                self.service_id, (self._reopen_at - now).total_seconds()
            )

        self._state = CircuitState.HALF_OPEN
        self._success_count = 0
        logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")

    def record_success(self) -> None:
        """Record a successful call."""
        self._failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._close()

    def record_failure(self) -> None:
        """Record a failed call."""
        self._failure_count += 1
        self._success_count = 0
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._open()
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._open()

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._reopen_at = self._opened_at + self.config.reset_timeout
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._reopen_at = None
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._reopen_at = None
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self._state,
            consecutive_failures=self._failure_count,
            consecutive_successes=self._success_count,
            reopen_at=self._reopen_at,
        )

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or not self._reopen_at:
            return None

        remaining = (self._reopen_at - self._clock()).total_seconds()
        return max(0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }
