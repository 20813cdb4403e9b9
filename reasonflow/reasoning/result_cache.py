"""Result cache for inference output.

Entries are keyed by a semantic fingerprint of the intent, the context
fragments (id and content digest) and the approach set. TTL adapts to the
hit rate over a rolling window of lookups.
"""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import orjson
from loguru import logger

from reasonflow.config import CacheConfig
from reasonflow.reasoning.reasoning_types import (
    ApproachType,
    InferenceChain,
    ReasoningContext,
    ReasoningSolution,
    SemanticIntent,
)
from reasonflow.utils.errors import CacheCorruption
from reasonflow.utils.rwlock import AsyncRWLock


def fingerprint(
    intent: SemanticIntent,
    context: ReasoningContext,
    approaches: Iterable[ApproachType],
) -> str:
    """SHA-256 over normalized intent, fragment contents, constraints and approaches.

    Fragments are keyed by id and a digest of their text: the project-state and
    user-model fragments keep a fixed id while their content changes.
    """
    payload = {
        "intent": intent.normalized(),
        "fragments": sorted(
            [f.id, hashlib.sha256(f.content.encode()).hexdigest()[:16]]
            for f in context.fragments
        ),
        "constraints": sorted(c.name for c in context.constraints),
        "user": [context.user_expertise, context.preferred_style],
        "approaches": sorted(a.value for a in approaches),
    }
    return hashlib.sha256(orjson.dumps(payload, option=orjson.OPT_SORT_KEYS)).hexdigest()


@dataclass(frozen=True)
class CachedResult:
    """Immutable inference output served from the cache."""

    chains: tuple[InferenceChain, ...]
    solutions: tuple[ReasoningSolution, ...]
    failures: tuple[tuple[str, str], ...] = ()

    def checksum(self) -> str:
        return hashlib.sha256(orjson.dumps(self)).hexdigest()


@dataclass
class _Entry:
    result: CachedResult
    checksum: str
    stored_at: float
    ttl: float
    hits: int = 0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    expired: int = 0
    evictions: int = 0
    corrupted: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expired": self.expired,
            "evictions": self.evictions,
            "corrupted": self.corrupted,
        }


class ResultCache:
    """LRU cache with adaptive TTL and checksummed entries.

    TTL for new entries grows by 25% while the windowed hit rate is at or
    above ``high_hit_rate`` and shrinks by 20% while it is at or below
    ``low_hit_rate``, always within ``[min_ttl, max_ttl]``.

    Args:
        config: Capacity, TTL bounds and hit-rate thresholds.
        clock: Monotonic time source in seconds, injectable for tests.

    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._window: deque[bool] = deque(maxlen=max(1, self.config.window))
        self._lock = AsyncRWLock()
        self.ttl = self.config.base_ttl_seconds
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(self._window) / len(self._window)

    async def get(self, key: str) -> CachedResult | None:
        """Cached result for ``key`` if present, intact and within its TTL.

        The lookup and checksum verification run under the read lock, so
        concurrent sessions validate entries in parallel. Reordering the LRU,
        counting, and dropping a stale or corrupted entry happen afterwards
        under the write lock.
        """
        if not self.config.enabled:
            return None
        async with self._lock.read():
            entry = self._entries.get(key)
            status = self._inspect(key, entry)

        async with self._lock.write():
            if entry is None:
                return self._miss()
            if status != "ok":
                if self._entries.get(key) is entry:
                    del self._entries[key]
                if status == "expired":
                    self.stats.expired += 1
                else:
                    self.stats.corrupted += 1
                return self._miss()
            if self._entries.get(key) is entry:
                self._entries.move_to_end(key)
            entry.hits += 1
            self.stats.hits += 1
            self._window.append(True)
            return entry.result

    async def put(self, key: str, result: CachedResult) -> float:
        """Store ``result`` under ``key``.

        Returns:
            The TTL assigned to the entry, in seconds.

        """
        if not self.config.enabled:
            return 0.0
        async with self._lock.write():
            self._adapt_ttl()
            self._entries[key] = _Entry(
                result=result,
                checksum=result.checksum(),
                stored_at=self._clock(),
                ttl=self.ttl,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self.config.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.stats.evictions += 1
                logger.debug(f"Evicted cache entry {evicted[:12]}")
            return self.ttl

    async def invalidate(self, key: str) -> bool:
        async with self._lock.write():
            return self._entries.pop(key, None) is not None

    async def clear(self) -> int:
        async with self._lock.write():
            count = len(self._entries)
            self._entries.clear()
            return count

    def _miss(self) -> None:
        self.stats.misses += 1
        self._window.append(False)
        return None

    def _inspect(self, key: str, entry: _Entry | None) -> str:
        if entry is None:
            return "missing"
        if self._clock() - entry.stored_at > entry.ttl:
            return "expired"
        try:
            self._verify(key, entry)
        except CacheCorruption as e:
            logger.warning(f"{e}; dropping entry")
            return "corrupted"
        return "ok"

    @staticmethod
    def _verify(key: str, entry: _Entry) -> None:
        if entry.result.checksum() != entry.checksum:
            raise CacheCorruption(key)

    def _adapt_ttl(self) -> None:
        if len(self._window) < min(5, self._window.maxlen or 5):
            return
        rate = self.hit_rate
        previous = self.ttl
        if rate >= self.config.high_hit_rate:
            self.ttl *= 1.25
        elif rate <= self.config.low_hit_rate:
            self.ttl *= 0.8
        self.ttl = max(self.config.min_ttl_seconds, min(self.config.max_ttl_seconds, self.ttl))
        if self.ttl != previous:
            logger.debug(f"Cache TTL {previous:.1f}s -> {self.ttl:.1f}s (hit rate {rate:.2f})")

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.stats.to_dict(),
            "size": len(self._entries),
            "capacity": self.config.capacity,
            "ttl_seconds": round(self.ttl, 2),
            "hit_rate": round(self.hit_rate, 3),
        }
