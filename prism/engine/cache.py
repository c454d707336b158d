"""
Two-tier analysis cache with request collapsing.

L1 is a bounded in-process map with FIFO eviction; L2 is a persistent store
queried only on L1 miss. Identical concurrent lookups share one in-flight
computation.
"""

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from prism.core.config import CacheConfig
from prism.core.exceptions import CacheBackendError
from prism.core.models import AnalysisRequest, CacheEntry
from prism.engine.persistence import InMemoryPersistentStore, PersistentStore

logger = structlog.get_logger(__name__)

# compute() returns the payload and the TTL to cache it under (None: don't cache)
ComputeFn = Callable[[], Awaitable[Tuple[Dict[str, Any], Optional[int]]]]


def make_cache_key(request: AnalysisRequest) -> str:
    """
    Deterministic key for a request.

    Built from the normalized subject, domain, sorted capability set, depth and
    timeframe. The requester id is not part of the key.
    """
    key_data = {
        "subject": request.subject,
        "domain": request.domain,
        "capabilities": list(request.sorted_capabilities),
        "depth": request.depth.value,
        "timeframe": request.timeframe,
    }
    key_json = json.dumps(key_data, sort_keys=True)
    return f"analysis:{hashlib.sha256(key_json.encode()).hexdigest()[:32]}"


@dataclass(frozen=True)
class CacheLookup:
    """What a cache read produced and where it came from."""

    payload: Dict[str, Any]
    tier: Optional[str] = None
    collapsed: bool = False

    @property
    def hit(self) -> bool:
        return self.tier is not None


class CacheStats:
    """Track cache performance metrics."""

    def __init__(self):
        self.l1_hits = 0
        self.l2_hits = 0
        self.misses = 0
        self.collapsed = 0
        self.evictions = 0
        self.expirations = 0
        self.backend_errors = 0

    @property
    def hit_rate(self) -> float:
        hits = self.l1_hits + self.l2_hits
        total = hits + self.misses
        return hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Export stats as dictionary."""
        return {
            "l1_hits": self.l1_hits,
            "l2_hits": self.l2_hits,
            "misses": self.misses,
            "collapsed": self.collapsed,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "backend_errors": self.backend_errors,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheManager:
    """
    Read-through / write-through cache in front of provider fanout.

    Read path: L1 (not expired) -> L2 (not expired, repopulates L1) -> compute,
    then write-through to both tiers. Entries are never returned once
    ``now > expires_at``.
    """

    def __init__(
        self,
        config: CacheConfig,
        store: Optional[PersistentStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store if store is not None else InMemoryPersistentStore()
        self.stats = CacheStats()
        self._clock = clock
        self._l1: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

        logger.debug(
            "Cache initialized",
            l1_max_entries=config.l1_max_entries,
            store=type(self.store).__name__,
        )

    # L1

    def _get_l1(self, key: str) -> Optional[CacheEntry]:
        entry = self._l1.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._l1[key]
            self.stats.expirations += 1
            logger.debug("Cache entry expired", key=key, tier="l1")
            return None
        return entry

    def _put_l1(self, entry: CacheEntry):
        if entry.key in self._l1:
            del self._l1[entry.key]
        while len(self._l1) >= self.config.l1_max_entries:
            evicted, _ = self._l1.popitem(last=False)
            self.stats.evictions += 1
            logger.debug("Cache entry evicted", key=evicted)
        self._l1[entry.key] = entry.model_copy(update={"tier": "l1"})

    # L2

    async def _get_l2(self, key: str) -> Optional[CacheEntry]:
        try:
            entry = await self.store.get(key)
        except CacheBackendError as e:
            self.stats.backend_errors += 1
            logger.warning("Persistent cache read failed, treating as miss", key=key, error=str(e))
            return None
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self.stats.expirations += 1
            logger.debug("Cache entry expired", key=key, tier="l2")
            await self._delete_l2(key)
            return None
        return entry

    async def _put_l2(self, entry: CacheEntry, ttl: int):
        try:
            await self.store.put(entry.key, entry, ttl)
        except CacheBackendError as e:
            self.stats.backend_errors += 1
            logger.warning("Persistent cache write failed", key=entry.key, error=str(e))

    async def _delete_l2(self, key: str):
        try:
            await self.store.delete(key)
        except CacheBackendError as e:
            self.stats.backend_errors += 1
            logger.warning("Persistent cache delete failed", key=key, error=str(e))

    # Locking

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    # Public API

    async def get_or_compute(self, key: str, compute: ComputeFn) -> CacheLookup:
        """
        Return the cached payload for ``key`` or compute it once.

        Concurrent callers for the same key while a computation is in flight
        await that computation instead of starting their own. Cancelling one
        caller does not cancel the shared computation.

        Args:
            key: Cache key from ``make_cache_key``
            compute: Coroutine factory returning ``(payload, ttl)``; a ``None``
                ttl means the payload is delivered but not cached

        Returns:
            CacheLookup with the payload, the tier it came from (None when
            computed) and whether it was collapsed onto another caller's work
        """
        entry = self._get_l1(key)
        if entry is not None:
            self.stats.l1_hits += 1
            logger.debug("Cache hit", key=key, tier="l1")
            return CacheLookup(payload=entry.payload, tier="l1")

        task = self._inflight.get(key)
        if task is not None:
            self.stats.collapsed += 1
            logger.debug("Collapsing onto in-flight request", key=key)
            lookup = await asyncio.shield(task)
            return replace(lookup, collapsed=True)

        task = asyncio.get_running_loop().create_task(self._load(key, compute))
        self._inflight[key] = task

        def _done(finished: asyncio.Task, key: str = key):
            if self._inflight.get(key) is finished:
                del self._inflight[key]

        task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _load(self, key: str, compute: ComputeFn) -> CacheLookup:
        async with self._lock_for(key):
            entry = self._get_l1(key)
            if entry is not None:
                self.stats.l1_hits += 1
                return CacheLookup(payload=entry.payload, tier="l1")

            entry = await self._get_l2(key)
            if entry is not None:
                self.stats.l2_hits += 1
                self._put_l1(entry)
                logger.debug("Cache hit", key=key, tier="l2")
                return CacheLookup(payload=entry.payload, tier="l2")

            self.stats.misses += 1
            payload, ttl = await compute()
            if ttl:
                await self.put(key, payload, ttl)
            else:
                logger.debug("Result not cached", key=key)
            return CacheLookup(payload=payload)

    async def put(self, key: str, payload: Dict[str, Any], ttl: int):
        """Write a payload through both tiers."""
        now = self._clock()
        entry = CacheEntry(key=key, payload=payload, created_at=now, expires_at=now + ttl)
        self._put_l1(entry)
        await self._put_l2(entry, ttl)
        logger.debug("Cache set", key=key, ttl=ttl)

    async def sweep(self) -> int:
        """
        Drop expired entries from both tiers; returns how many were removed.

        Each L1 removal happens under that key's lock so it never races a
        repopulate of the same key.
        """
        now = self._clock()
        expired = [key for key, entry in self._l1.items() if entry.is_expired(now)]
        removed = 0
        for key in expired:
            async with self._lock_for(key):
                entry = self._l1.get(key)
                if entry is not None and entry.is_expired(self._clock()):
                    del self._l1[key]
                    removed += 1

        for key in list(self._key_locks):
            if key not in self._l1 and key not in self._inflight and not self._key_locks[key].locked():
                del self._key_locks[key]

        try:
            purged = await self.store.purge_expired(now)
        except CacheBackendError as e:
            self.stats.backend_errors += 1
            logger.warning("Persistent cache purge failed", error=str(e))
            purged = 0

        if removed or purged:
            self.stats.expirations += removed + purged
            logger.debug("Cache sweep removed expired entries", l1=removed, l2=purged)
        return removed + purged

    async def run_sweeper(self, interval: float):
        """Sweep forever every ``interval`` seconds. Cancel the task to stop."""
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    @property
    def l1_size(self) -> int:
        return len(self._l1)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def clear(self):
        self._l1.clear()
        logger.info("Cache cleared")
