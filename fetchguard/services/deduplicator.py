"""
RequestDeduplicator - Coalesces concurrent identical requests.

While a request for (resource type, key) is in flight, later callers for
the same key await the same task instead of calling the upstream again.
The entry is removed as soon as the request settles, success or failure.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from fetchguard.services.cache import resource_type_name

T = TypeVar("T")


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    Every caller awaits the shared task through asyncio.shield, so a caller
    that gets cancelled leaves the request running for the others.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch_page(page_id: str):
            return await dedup.coalesce(
                "page", page_id, lambda: api.get_page(page_id)
            )
    """

    def __init__(self, enabled: bool = True, debug: bool = False):
        self.enabled = enabled
        self._in_flight: dict[tuple[str, str], asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def coalesce(
        self,
        resource_type: str,
        key: str,
        producer: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with deduplication.

        If a request with the same key is already in flight, wait for and
        return its result instead of calling `producer`. A failure is
        raised to every caller waiting on the request.

        Args:
            resource_type: Resource type of the request
            key: Identifier within the resource type
            producer: Async function to execute if no request is in flight

        Returns:
            Result from producer (either fresh or from the in-flight request)
        """
        if not self.enabled:
            self._stats.total += 1
            return await producer()

        flight_key = (resource_type_name(resource_type), str(key))
        task = self._in_flight.get(flight_key)

        if task is not None:
            self._stats.deduplicated += 1
            self._log(f"JOIN: Waiting for in-flight request: {self._label(flight_key)}")
        else:
            self._stats.total += 1
            self._log(f"NEW: Starting request: {self._label(flight_key)}")
            task = asyncio.create_task(self._execute_and_cleanup(flight_key, producer))
            task.add_done_callback(_mark_retrieved)
            self._in_flight[flight_key] = task

        return await asyncio.shield(task)

    async def _execute_and_cleanup(
        self,
        flight_key: tuple[str, str],
        producer: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute request and clean up when done."""
        try:
            return await producer()
        finally:
            if self._in_flight.get(flight_key) is asyncio.current_task():
                del self._in_flight[flight_key]
            self._log(f"DONE: Request completed: {self._label(flight_key)}")

    def cancel_all(self) -> int:
        """Cancel all in-flight requests (shutdown only)."""
        count = len(self._in_flight)
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()
        if count:
            self._log(f"CANCEL_ALL: {count} requests cancelled")
        return count

    def is_in_flight(self, resource_type: str, key: str) -> bool:
        return (resource_type_name(resource_type), str(key)) in self._in_flight

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[tuple[str, str]]:
        """Get keys of all in-flight requests."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    @staticmethod
    def _label(flight_key: tuple[str, str]) -> str:
        return f"{flight_key[0]}:{flight_key[1][:50]}"

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


def _mark_retrieved(task: asyncio.Task[Any]) -> None:
    # Waiters may all have been cancelled; keep asyncio from reporting
    # the shared failure as never retrieved.
    if not task.cancelled():
        task.exception()


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Requests that reached the producer
        self.deduplicated: int = 0  # Requests that joined an in-flight one
        self.in_flight: int = 0  # Current in-flight requests

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
