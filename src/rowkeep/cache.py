"""
Read-through entity cache with TTL expiry and a size bound.

``EntityCache`` holds entities of one type keyed by primary key.
``CacheManager`` owns one ``EntityCache`` per cacheable entity type and is
what the :class:`~rowkeep.database.Database` facade talks to.

Manifesto:
    Hot entities (player profiles, settings rows) are read far more often
    than they change. A small bounded cache in front of ``find`` removes
    most of those round trips, as long as staleness is bounded (TTL) and
    memory is bounded (``max_size``).

    - **Copies:** the cache stores a shallow copy and hands out copies,
      so callers mutating a returned entity cannot corrupt cached state
    - **Lazy expiry:** expired entries vanish on read; ``sweep()`` (or the
      background sweeper) reclaims the rest
    - **Oldest-first eviction:** an insert that overflows ``max_size``
      evicts exactly one entry, the one inserted (or re-put) longest ago
    - **Striped writes:** writers lock only the key's stripe; reads take
      no lock

Architecture:
    ::

        CacheManager
        ├── Player  → EntityCache(ttl=60s, max=500)
        │              stripes[0..15]: {key: CacheEntry(value, expires_at, order)}
        └── Setting → EntityCache(ttl=300s, max=100)

        put(k, v) ─► stripe(k).lock ─► insert ─► size > max? ─► evict oldest

Guardrails:
    ❌ DON'T: Expect the cache to see raw SQL, query-builder deletes or batches
    ✅ DO: ``invalidate()`` or ``clear()`` after writing around the facade

Tags:
    cache, ttl, eviction, concurrency, rowkeep
"""

from __future__ import annotations

import copy
import itertools
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from rowkeep.logging import get_logger

if TYPE_CHECKING:
    from rowkeep.metadata import MetadataCache

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float
    insertion_order: int


@dataclass(frozen=True)
class CacheStats:
    """Counters for one cache. Hit/miss counts are best-effort under contention."""

    size: int
    max_size: int
    ttl_seconds: float
    hits: int
    misses: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total * 100.0 if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 2),
        }


class _Stripe:
    __slots__ = ("entries", "lock")

    def __init__(self) -> None:
        # Insertion-ordered: the first entry always has the stripe's lowest order.
        self.entries: dict[Hashable, CacheEntry] = {}
        self.lock = threading.Lock()


class EntityCache:
    """Bounded TTL cache for one entity type.

    Args:
        ttl_seconds: Default lifetime of an entry.
        max_size: Maximum number of entries (>= 1).
        clock: Monotonic time source in seconds; injectable for tests.
        stripes: Number of independently locked partitions.

    Example:
        >>> cache = EntityCache(ttl_seconds=60, max_size=2)
        >>> cache.put("a", 1); cache.put("b", 2); cache.put("c", 3)
        >>> cache.contains("a"), cache.size()
        (False, 2)
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int,
        *,
        clock: Clock = time.monotonic,
        stripes: int = 16,
    ):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds!r}")
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size!r}")
        if stripes < 1:
            raise ValueError(f"stripes must be >= 1, got {stripes!r}")

        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._stripes = [_Stripe() for _ in range(stripes)]
        self._order = itertools.count()
        self._evict_lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def _stripe(self, key: Hashable) -> _Stripe:
        return self._stripes[hash(key) % len(self._stripes)]

    # -- Reads (lock-free) -------------------------------------------------

    def _live_entry(self, key: Hashable) -> CacheEntry | None:
        stripe = self._stripe(key)
        entry = stripe.entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._drop_if_same(stripe, key, entry)
            return None
        return entry

    def get(self, key: Hashable) -> Any | None:
        """Copy of the cached value, or ``None`` if absent or expired."""
        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return copy.copy(entry.value)

    def contains(self, key: Hashable) -> bool:
        return self._live_entry(key) is not None

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet swept."""
        return sum(len(s.entries) for s in self._stripes)

    def __len__(self) -> int:
        return self.size()

    # -- Writes (stripe-locked) --------------------------------------------

    def put(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        """Store a copy of ``value``. Re-putting refreshes value, expiry and order."""
        lifetime = self.ttl_seconds if ttl is None else ttl
        stripe = self._stripe(key)
        with stripe.lock:
            entry = CacheEntry(
                value=copy.copy(value),
                expires_at=self._clock() + lifetime,
                insertion_order=next(self._order),
            )
            # Re-insert so dict order tracks insertion order.
            stripe.entries.pop(key, None)
            stripe.entries[key] = entry

        if self.size() > self.max_size:
            self._evict_one()

    def invalidate(self, key: Hashable) -> bool:
        stripe = self._stripe(key)
        with stripe.lock:
            return stripe.entries.pop(key, None) is not None

    def clear(self) -> None:
        for stripe in self._stripes:
            with stripe.lock:
                stripe.entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        now = self._clock()
        removed = 0
        for stripe in self._stripes:
            with stripe.lock:
                expired = [k for k, e in stripe.entries.items() if now >= e.expires_at]
                for key in expired:
                    del stripe.entries[key]
            removed += len(expired)
        self._expirations += removed
        return removed

    def _drop_if_same(self, stripe: _Stripe, key: Hashable, entry: CacheEntry) -> None:
        with stripe.lock:
            if stripe.entries.get(key) is entry:
                del stripe.entries[key]
                self._expirations += 1

    def _evict_one(self) -> None:
        with self._evict_lock:
            if self.size() <= self.max_size:
                return
            while True:
                oldest: tuple[int, _Stripe, Hashable] | None = None
                for stripe in self._stripes:
                    with stripe.lock:
                        first = next(iter(stripe.entries.items()), None)
                    if first is not None and (
                        oldest is None or first[1].insertion_order < oldest[0]
                    ):
                        oldest = (first[1].insertion_order, stripe, first[0])
                if oldest is None:
                    return
                order, stripe, key = oldest
                with stripe.lock:
                    entry = stripe.entries.get(key)
                    # Retry if the key was re-put or removed since the scan.
                    if entry is None or entry.insertion_order != order:
                        continue
                    del stripe.entries[key]
                self._evictions += 1
                logger.debug("cache.evicted", key=str(key))
                return

    def stats(self) -> CacheStats:
        return CacheStats(
            size=self.size(),
            max_size=self.max_size,
            ttl_seconds=self.ttl_seconds,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
        )

    def __repr__(self) -> str:
        return f"EntityCache(size={self.size()}, max_size={self.max_size}, ttl={self.ttl_seconds}s)"


class CacheManager:
    """One :class:`EntityCache` per entity type that declares a cache policy.

    Types without a policy are not cached: ``get`` returns ``None`` and
    ``put`` does nothing.
    """

    def __init__(self, metadata: MetadataCache, *, clock: Clock = time.monotonic):
        self._metadata = metadata
        self._clock = clock
        self._caches: dict[type, EntityCache] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def cache_for(self, entity_type: type) -> EntityCache | None:
        """The cache of ``entity_type``, created on first use; ``None`` if uncached."""
        cache = self._caches.get(entity_type)
        if cache is not None:
            return cache
        policy = self._metadata.describe(entity_type).cache_policy
        if policy is None:
            return None
        with self._lock:
            cache = self._caches.get(entity_type)
            if cache is None:
                cache = EntityCache(policy.ttl_seconds, policy.max_size, clock=self._clock)
                self._caches[entity_type] = cache
                logger.debug(
                    "cache.created",
                    entity=entity_type.__name__,
                    ttl=policy.ttl_seconds,
                    max_size=policy.max_size,
                )
        return cache

    def is_cached(self, entity_type: type) -> bool:
        return self._metadata.describe(entity_type).cache_policy is not None

    def refresh_on_write(self, entity_type: type) -> bool:
        policy = self._metadata.describe(entity_type).cache_policy
        return policy is not None and policy.refresh_on_write

    def get(self, entity_type: type, key: Hashable) -> Any | None:
        cache = self.cache_for(entity_type)
        return cache.get(key) if cache is not None else None

    def put(self, entity_type: type, key: Hashable, entity: Any, ttl: float | None = None) -> None:
        cache = self.cache_for(entity_type)
        if cache is not None and key is not None:
            cache.put(key, entity, ttl)

    def invalidate(self, entity_type: type, key: Hashable) -> bool:
        cache = self._caches.get(entity_type)
        return cache.invalidate(key) if cache is not None else False

    def clear(self, entity_type: type) -> None:
        cache = self._caches.get(entity_type)
        if cache is not None:
            cache.clear()

    def clear_all(self) -> None:
        for cache in list(self._caches.values()):
            cache.clear()

    def sweep(self) -> int:
        return sum(cache.sweep() for cache in list(self._caches.values()))

    def stats(self, entity_type: type) -> CacheStats | None:
        cache = self._caches.get(entity_type)
        return cache.stats() if cache is not None else None

    # -- Background sweeper --------------------------------------------------

    def start_sweeper(self, interval_seconds: float = 60.0) -> None:
        """Sweep expired entries every ``interval_seconds`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("cache.sweeper_already_running")
            return

        self._stop_event.clear()

        def _loop() -> None:
            while not self._stop_event.wait(interval_seconds):
                try:
                    removed = self.sweep()
                except Exception as e:
                    logger.exception("cache.sweep_failed", error=str(e))
                    continue
                if removed:
                    logger.debug("cache.swept", removed=removed)

        self._thread = threading.Thread(target=_loop, daemon=True, name="rowkeep-cache-sweeper")
        self._thread.start()
        logger.info("cache.sweeper_started", interval=interval_seconds)

    def stop(self) -> None:
        """Stop the sweeper thread, waiting up to 5 seconds."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=5.0)
        if self._thread.is_alive():
            logger.warning("cache.sweeper_did_not_stop")
        self._thread = None

    @property
    def sweeper_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["CacheEntry", "CacheManager", "CacheStats", "EntityCache"]
