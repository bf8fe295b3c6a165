"""
Adaptive in-memory cache.

TTLs stretch for frequently read keys and shrink for cold ones. Entries
expire lazily on read and are also swept on a fixed interval.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from stateset_gateway.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from stateset_gateway.telemetry.metrics import MetricsCollector

T = TypeVar("T")

logger = get_logger("stateset_gateway.cache")

HOT_KEY_COUNT = 10


@dataclass
class CacheEntry:
    """A cache entry with metadata.

    Attributes:
        value: Cached value
        created_at: Creation time (monotonic seconds)
        last_accessed_at: Time of the last hit
        access_count: Number of reads including the initial set
        ttl: Time-to-live in seconds
        tags: Labels for bulk invalidation
    """

    value: Any
    created_at: float
    last_accessed_at: float
    ttl: float
    access_count: int = 1
    tags: frozenset[str] = frozenset()

    def is_expired(self, now: float) -> bool:
        """Check if the entry has reached its TTL."""
        return now - self.created_at >= self.ttl

    def age(self, now: float) -> float:
        """Get age in seconds."""
        return now - self.created_at


@dataclass
class AccessPattern:
    """Read history of one key, used for adaptive TTLs."""

    key: str
    first_seen: float
    last_access: float
    access_count: int = 1
    average_interval: float = 0.0

    def accesses_per_minute(self, now: float) -> float:
        """Get the access rate since the key was first seen.

        Elapsed time is floored at one minute.
        """
        minutes = max(1.0, (now - self.first_seen) / 60.0)
        return self.access_count / minutes


@dataclass
class WarmingKey:
    """A key to pre-populate.

    Attributes:
        key: Cache key
        fetcher: Async function producing the value
        ttl: Explicit TTL in seconds (adaptive when None)
        tags: Tags for the entry
        priority: Higher priority keys are warmed first
    """

    key: str
    fetcher: Callable[[], Awaitable[Any]]
    ttl: float | None = None
    tags: Iterable[str] | None = None
    priority: int = 0


@dataclass
class CacheConfig:
    """Adaptive cache configuration (times in seconds).

    Attributes:
        base_ttl: TTL for keys with an ordinary access rate
        min_ttl: Lower bound for cold keys
        max_ttl: Upper bound for hot keys
        max_size: Maximum number of entries
        adaptive_ttl: Derive TTLs from access rate when none is given
        cleanup_interval: Seconds between expiry sweeps
        warm_batch_size: Keys fetched in parallel while warming
        pattern_max_age: Access patterns idle longer than this are pruned
    """

    base_ttl: float = 300.0
    min_ttl: float = 30.0
    max_ttl: float = 3600.0
    max_size: int = 1000
    adaptive_ttl: bool = True
    cleanup_interval: float = 60.0
    warm_batch_size: int = 5
    pattern_max_age: float = 3600.0

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError("max_size must be >= 1")
        if not self.min_ttl <= self.base_ttl <= self.max_ttl:
            raise ValueError("expected min_ttl <= base_ttl <= max_ttl")
        if self.warm_batch_size < 1:
            raise ValueError("warm_batch_size must be >= 1")

    @classmethod
    def short_ttl(cls, ttl: float = 60.0) -> CacheConfig:
        """Create config for volatile data."""
        return cls(base_ttl=ttl, min_ttl=min(30.0, ttl), max_ttl=max(ttl, 300.0))

    @classmethod
    def fixed_ttl(cls, ttl: float = 300.0) -> CacheConfig:
        """Create config that never adapts TTLs."""
        return cls(base_ttl=ttl, min_ttl=min(30.0, ttl), max_ttl=max(ttl, 3600.0), adaptive_ttl=False)


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0
    average_ttl: float = 0.0
    hot_keys: list[str] = field(default_factory=list)

    @property
    def total_requests(self) -> int:
        """Get total number of reads."""
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Get cache hit rate (0.0 to 1.0)."""
        total = self.total_requests
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
            "expirations": self.expirations,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": self.hit_rate,
            "average_ttl": self.average_ttl,
            "hot_keys": list(self.hot_keys),
        }


class AdaptiveCache(Generic[T]):
    """In-memory cache with adaptive TTLs, tags and LRU eviction.

    ``get`` and ``set`` are the only mutators of entries; ``get_or_set``
    composes them without locking, so two concurrent misses on the same key
    may both call the fetcher and the last write wins.

    Example:
        >>> cache = AdaptiveCache(CacheConfig(max_size=500))
        >>> cache.set("orders:open", orders, tags=["orders"])
        >>> cache.get("orders:open")
        >>> cache.invalidate_by_tag("orders")
        1
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "adaptive",
    ) -> None:
        """Initialize cache.

        Args:
            config: Cache configuration
            metrics: Optional metrics collector
            clock: Monotonic time source in seconds
            name: Value of the ``cache`` metric label
        """
        self._config = config or CacheConfig()
        self._metrics = metrics
        self._clock = clock
        self._name = name

        self._entries: dict[str, CacheEntry] = {}
        self._patterns: dict[str, AccessPattern] = {}
        self._stats = CacheStats()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._warming_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> CacheConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def _count(self, name: str, value: float = 1, **labels: Any) -> None:
        if self._metrics is not None:
            self._metrics.increment(name, value, cache=self._name, **labels)

    def _update_size(self) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge("cache_size", len(self._entries), cache=self._name)

    def get(self, key: str) -> T | None:
        """Get a value.

        Args:
            key: Cache key

        Returns:
            The cached value, or None when absent or expired
        """
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            self._count("cache_miss_total")
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._stats.misses += 1
            self._stats.expirations += 1
            self._count("cache_expired_total")
            self._count("cache_miss_total")
            self._update_size()
            return None

        entry.last_accessed_at = now
        entry.access_count += 1
        self._track_access(key, now)

        self._stats.hits += 1
        self._count("cache_hit_total")
        return entry.value

    def set(
        self,
        key: str,
        value: T,
        *,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
    ) -> None:
        """Store a value.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time-to-live in seconds (adaptive when None)
            tags: Labels for bulk invalidation
        """
        if key not in self._entries and len(self._entries) >= self._config.max_size:
            self._evict_lru()

        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value,
            created_at=now,
            last_accessed_at=now,
            ttl=ttl if ttl is not None else self.compute_ttl(key),
            tags=frozenset(tags or ()),
        )
        self._stats.sets += 1
        self._count("cache_set_total")
        self._update_size()

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
    ) -> T:
        """Return the cached value or fetch, store and return it.

        Fetcher errors propagate and nothing is stored.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await fetcher()
        self.set(key, value, ttl=ttl, tags=tags)
        return value

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it was present."""
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._update_size()
        return removed

    def invalidate_by_tag(self, tag: str) -> int:
        """Delete every entry carrying ``tag``.

        Returns:
            Number of entries deleted
        """
        keys = [k for k, e in self._entries.items() if tag in e.tags]
        for key in keys:
            del self._entries[key]
        logger.debug("Invalidated cache entries by tag", tag=tag, count=len(keys))
        self._update_size()
        return len(keys)

    def invalidate_by_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Delete every entry whose key matches ``pattern`` (search semantics).

        Returns:
            Number of entries deleted
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        keys = [k for k in self._entries if regex.search(k)]
        for key in keys:
            del self._entries[key]
        logger.debug("Invalidated cache entries by pattern", pattern=regex.pattern, count=len(keys))
        self._update_size()
        return len(keys)

    def clear(self) -> None:
        """Remove all entries and access history."""
        self._entries.clear()
        self._patterns.clear()
        self._update_size()

    def compute_ttl(self, key: str) -> float:
        """Compute the TTL a new entry for ``key`` would receive."""
        cfg = self._config
        if not cfg.adaptive_ttl:
            return cfg.base_ttl

        pattern = self._patterns.get(key)
        if pattern is None:
            return cfg.base_ttl

        rate = pattern.accesses_per_minute(self._clock())
        if rate > 10:
            return cfg.max_ttl
        if rate > 5:
            return min(cfg.base_ttl * 4, cfg.max_ttl)
        if rate > 1:
            return min(cfg.base_ttl * 2, cfg.max_ttl)
        if rate < 0.1:
            return max(cfg.base_ttl / 2, cfg.min_ttl)
        return cfg.base_ttl

    def _track_access(self, key: str, now: float) -> None:
        pattern = self._patterns.get(key)
        if pattern is None:
            self._patterns[key] = AccessPattern(key=key, first_seen=now, last_access=now)
        else:
            interval = now - pattern.last_access
            pattern.average_interval = (pattern.average_interval + interval) / 2
            pattern.access_count += 1
            pattern.last_access = now

        if len(self._patterns) > self._config.max_size * 2:
            self._prune_patterns(now)

    def _prune_patterns(self, now: float) -> int:
        stale = [
            k for k, p in self._patterns.items()
            if now - p.last_access > self._config.pattern_max_age
        ]
        for key in stale:
            del self._patterns[key]
        return len(stale)

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        del self._entries[oldest]
        self._stats.evictions += 1
        self._count("cache_eviction_total", reason="lru")
        logger.debug("Evicted least recently used entry", key=oldest)

    def cleanup(self) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if len(self._patterns) > self._config.max_size * 2:
            self._prune_patterns(now)

        if expired:
            self._stats.expirations += len(expired)
            self._count("cache_cleanup_total", len(expired))
            self._update_size()
            logger.debug("Cache cleanup completed", expired=len(expired), remaining=len(self._entries))
        return len(expired)

    async def warm(self, keys: Iterable[WarmingKey]) -> int:
        """Pre-populate keys, highest priority first.

        Keys are fetched in parallel batches of ``warm_batch_size``. A failed
        fetch is logged and skipped.

        Returns:
            Number of keys stored
        """
        ordered = sorted(keys, key=lambda k: k.priority, reverse=True)
        started = self._clock()
        stored = 0
        logger.info("Starting cache warming", key_count=len(ordered))

        size = self._config.warm_batch_size
        for i in range(0, len(ordered), size):
            batch = ordered[i : i + size]
            results = await asyncio.gather(
                *(self._fetch(k) for k in batch), return_exceptions=True
            )
            for warming_key, result in zip(batch, results):
                if isinstance(result, BaseException):
                    if isinstance(result, asyncio.CancelledError):
                        raise result
                    logger.warning(
                        "Failed to warm cache key",
                        key=warming_key.key,
                        error=str(result),
                    )
                    self._count("cache_warming_failed_total")
                    continue
                self.set(warming_key.key, result, ttl=warming_key.ttl, tags=warming_key.tags)
                stored += 1

        duration_ms = (self._clock() - started) * 1000
        if self._metrics is not None:
            self._metrics.observe("cache_warming_duration_ms", duration_ms, cache=self._name)
        logger.info(
            "Cache warming completed",
            key_count=len(ordered),
            stored=stored,
            duration_ms=duration_ms,
        )
        return stored

    @staticmethod
    async def _fetch(warming_key: WarmingKey) -> Any:
        return await warming_key.fetcher()

    def start_periodic_warming(self, keys: list[WarmingKey], interval: float) -> None:
        """Warm ``keys`` now and then every ``interval`` seconds."""
        self.stop_periodic_warming()
        self._warming_task = asyncio.get_running_loop().create_task(
            self._warm_periodically(list(keys), interval)
        )
        logger.info("Started periodic cache warming", interval=interval, key_count=len(keys))

    async def _warm_periodically(self, keys: list[WarmingKey], interval: float) -> None:
        while True:
            await self.warm(keys)
            await asyncio.sleep(interval)

    def stop_periodic_warming(self) -> None:
        """Stop periodic warming if running."""
        if self._warming_task is not None:
            self._warming_task.cancel()
            self._warming_task = None

    def start(self) -> None:
        """Start the periodic expiry sweep."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval)
            self.cleanup()

    def get_stats(self) -> CacheStats:
        """Get a snapshot of cache statistics."""
        ttls = [e.ttl for e in self._entries.values()]
        hot = sorted(self._patterns.values(), key=lambda p: p.access_count, reverse=True)
        s = self._stats
        return CacheStats(
            hits=s.hits,
            misses=s.misses,
            sets=s.sets,
            evictions=s.evictions,
            expirations=s.expirations,
            size=len(self._entries),
            max_size=self._config.max_size,
            average_ttl=sum(ttls) / len(ttls) if ttls else 0.0,
            hot_keys=[p.key for p in hot[:HOT_KEY_COUNT]],
        )

    async def close(self) -> None:
        """Stop background tasks and clear the cache."""
        tasks = [t for t in (self._cleanup_task, self._warming_task) if t is not None]
        self._cleanup_task = None
        self._warming_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.clear()
