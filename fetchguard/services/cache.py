"""
CacheStore - In-memory read-through cache keyed by (resource type, identifier).

Features:
- Per-resource-type TTLs (volatile resources expire sooner than stable ones)
- LRU eviction bounded by max_size
- Runtime enable/disable toggle that keeps stored entries
- Hit/miss/set/eviction counters
"""

import hashlib
import json
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Generic, Mapping, TypeVar

from loguru import logger

T = TypeVar("T")

# Marker for "no entry", so that a cached None is still a hit
MISSING: Any = object()


class ResourceType(str, Enum):
    """Built-in resource types of the upstream API."""

    DATA_SOURCE = "data_source"
    DATABASE = "database"
    USER = "user"
    PAGE = "page"
    BLOCK = "block"
    SEARCH = "search"


DEFAULT_TTL_BY_TYPE: dict[str, timedelta] = {
    ResourceType.DATA_SOURCE.value: timedelta(minutes=10),
    ResourceType.DATABASE.value: timedelta(minutes=10),
    ResourceType.USER.value: timedelta(hours=1),
    ResourceType.PAGE.value: timedelta(minutes=1),
    ResourceType.BLOCK.value: timedelta(seconds=30),
}


def resource_type_name(resource_type: str) -> str:
    """Plain string name for a resource type (enum members included)."""
    if isinstance(resource_type, Enum):
        return str(resource_type.value)
    return str(resource_type)


def cache_key(*parts: Any) -> str:
    """
    Build a stable identifier from path segments and parameters.

    Dicts and lists are JSON-encoded with sorted keys so that equal
    parameters give equal keys. Long keys are hashed.
    """
    encoded = []
    for part in parts:
        if isinstance(part, (dict, list, tuple)):
            encoded.append(json.dumps(part, sort_keys=True, default=str))
        else:
            encoded.append(str(part))
    full_key = ":".join(encoded)

    if len(full_key) > 200:
        return hashlib.md5(full_key.encode()).hexdigest()[:16]

    return full_key


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: tuple[str, str]
    value: T
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.created_at


@dataclass(frozen=True)
class CacheConfig:
    """Cache tuning. Only `enabled` can change after the store is built."""

    enabled: bool = True
    max_size: int = 1000
    default_ttl: timedelta = timedelta(minutes=5)
    ttl_by_type: Mapping[str, timedelta] = field(
        default_factory=lambda: dict(DEFAULT_TTL_BY_TYPE)
    )

    def __post_init__(self) -> None:
        if self.default_ttl <= timedelta(0):
            raise ValueError("default_ttl must be positive")
        ttl_by_type = {
            resource_type_name(name): ttl for name, ttl in self.ttl_by_type.items()
        }
        for name, ttl in ttl_by_type.items():
            if ttl <= timedelta(0):
                raise ValueError(f"TTL for resource type '{name}' must be positive")
        object.__setattr__(self, "ttl_by_type", MappingProxyType(ttl_by_type))

    def ttl_for(self, resource_type: str) -> timedelta:
        return self.ttl_by_type.get(resource_type_name(resource_type), self.default_ttl)


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheStore:
    """
    Bounded TTL cache with LRU eviction.

    Values are returned as stored, without copying. Callers must treat
    cached values as read-only; mutating one changes what the next hit
    returns.

    Usage:
        cache = CacheStore(CacheConfig(max_size=500))

        page = cache.get("page", page_id)
        if page is None:
            page = await fetch_page(page_id)
            cache.set("page", page, page_id)

        # After a write succeeds
        cache.invalidate("page", page_id)
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._config = config if config is not None else CacheConfig()
        self._enabled = self._config.enabled
        self._clock = clock
        self._debug = debug
        self._entries: OrderedDict[tuple[str, str], CacheEntry[Any]] = OrderedDict()
        self._stats = CacheStats()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = bool(value)
        self._log(f"ENABLED: {self._enabled}")

    def get(self, resource_type: str, key: str, default: Any = None) -> Any:
        """
        Get a value from the cache.

        Returns `default` (and counts a miss) if the entry is missing,
        expired, or caching is disabled.
        """
        entry_key = self._entry_key(resource_type, key)

        if not self._enabled:
            self._stats.misses += 1
            return default

        entry = self._entries.get(entry_key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {self._label(entry_key)}")
            return default

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[entry_key]
            self._stats.misses += 1
            self._stats.evictions += 1
            self._log(f"EXPIRED: {self._label(entry_key)}")
            return default

        self._entries.move_to_end(entry_key)
        self._stats.hits += 1
        self._log(
            f"HIT: {self._label(entry_key)} "
            f"(age: {(now - entry.created_at).total_seconds():.1f}s)"
        )
        return entry.value

    def set(
        self,
        resource_type: str,
        value: Any,
        key: str,
        ttl: timedelta | None = None,
    ) -> None:
        """
        Store a value.

        Args:
            resource_type: Resource type; selects the default TTL
            value: Value to cache (stored by reference)
            key: Identifier, unique within the resource type
            ttl: Explicit TTL, overrides the per-type and default TTLs
        """
        if not self._enabled:
            return

        if ttl is None:
            ttl = self._config.ttl_for(resource_type)
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        entry_key = self._entry_key(resource_type, key)
        now = self._clock()
        self._entries[entry_key] = CacheEntry(
            key=entry_key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
        )
        self._entries.move_to_end(entry_key)
        self._stats.sets += 1
        self._log(f"SET: {self._label(entry_key)} (TTL: {ttl.total_seconds()}s)")

        max_size = self._config.max_size
        if max_size > 0 and len(self._entries) > max_size:
            self._evict_lru()

    def invalidate(self, resource_type: str, key: str | None = None) -> int:
        """
        Drop one entry, or every entry of a resource type when key is None.

        Returns:
            Number of entries removed
        """
        type_name = resource_type_name(resource_type)

        if key is not None:
            removed = self._entries.pop(self._entry_key(type_name, key), None)
            if removed is None:
                return 0
            self._log(f"INVALIDATE: {type_name}:{key}")
            return 1

        stale_keys = [k for k in self._entries if k[0] == type_name]
        for entry_key in stale_keys:
            del self._entries[entry_key]

        if stale_keys:
            self._log(f"INVALIDATE: {len(stale_keys)} '{type_name}' entries")

        return len(stale_keys)

    def clear(self) -> None:
        """Remove all entries and reset statistics."""
        count = len(self._entries)
        self._entries.clear()
        self._stats = CacheStats()
        self._log(f"CLEAR: {count} entries removed")

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        expired_keys = [k for k, v in self._entries.items() if v.is_expired(now)]
        for entry_key in expired_keys:
            del self._entries[entry_key]

        self._stats.evictions += len(expired_keys)
        if expired_keys:
            self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

        return len(expired_keys)

    def _evict_lru(self) -> None:
        """Evict the least recently used entry."""
        evicted_key, _ = self._entries.popitem(last=False)
        self._stats.evictions += 1
        self._log(f"EVICT: {self._label(evicted_key)}")

    def get_stats(self) -> CacheStats:
        """Get a snapshot of cache statistics."""
        return replace(
            self._stats,
            size=len(self._entries),
            max_size=self._config.max_size,
        )

    def get_hit_rate(self) -> float:
        return self._stats.hit_rate

    def get_config(self) -> CacheConfig:
        """Get the configuration, reflecting the current enabled flag."""
        return replace(self._config, enabled=self._enabled)

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _entry_key(resource_type: str, key: str) -> tuple[str, str]:
        return (resource_type_name(resource_type), str(key))

    @staticmethod
    def _label(entry_key: tuple[str, str]) -> str:
        return f"{entry_key[0]}:{entry_key[1][:50]}"

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")
