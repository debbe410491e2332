"""
Adaptive response cache.

An in-process LRU of :class:`~pathwise._types.Response` objects whose TTL
is picked from a frequency staircase: the more often an endpoint is
requested, the longer its responses live.  Expired entries count as
misses and are removed lazily on lookup or in bulk by ``sweep()``.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .._types import RequestContext, Response

logger = logging.getLogger("pathwise.serving.cache")

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(slots=True)
class CacheEntry:
    """Single cached response."""
    key: str
    value: Response
    created_at: float
    ttl_ms: int
    hits: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_ms / 1000.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def __repr__(self) -> str:
        return f"<CacheEntry key={self.key!r} ttl={self.ttl_ms}ms hits={self.hits}>"


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "cache_sets": self.sets,
            "cache_evictions": self.evictions,
            "cache_expirations": self.expirations,
            "cache_size": self.size,
            "cache_hit_ratio": self.hit_rate,
        }


def cache_key(request: RequestContext) -> str:
    """
    ``METHOD:path?k1=v1&k2=v2`` with query parameters sorted.

    Non-idempotent methods also fold in a digest of the body so distinct
    payloads never share an entry.
    """
    method = request.method.upper()
    key = f"{method}:{request.path}"
    if request.query_params:
        query = "&".join(f"{k}={v}" for k, v in sorted(request.query_params.items()))
        key = f"{key}?{query}"
    if method not in IDEMPOTENT_METHODS and request.body:
        key = f"{key}#{hashlib.sha256(request.body).hexdigest()}"
    return key


class AdaptiveCache:
    """
    Frequency-adaptive TTL cache with an LRU bound.

    Args:
        default_ttl_ms: TTL below the lowest staircase threshold
        staircase: ``(min_frequency, ttl_ms)`` steps, thresholds descending
        max_entries: LRU capacity
        cacheable_methods: request methods whose responses may be stored
        cacheable_statuses: response statuses that may be stored
        clock: seconds clock (injectable for tests)
    """

    def __init__(
        self,
        default_ttl_ms: int = 60_000,
        staircase: Sequence[Tuple[int, int]] = ((100, 3_600_000), (50, 1_800_000), (10, 300_000)),
        max_entries: int = 10_000,
        cacheable_methods: Iterable[str] = ("GET",),
        cacheable_statuses: Iterable[int] = (200, 304),
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_ms = default_ttl_ms
        self.staircase: List[Tuple[int, int]] = sorted(
            (tuple(step) for step in staircase), key=lambda s: s[0], reverse=True
        )
        self.max_entries = max_entries
        self.cacheable_methods = frozenset(m.upper() for m in cacheable_methods)
        self.cacheable_statuses = frozenset(cacheable_statuses)
        self._clock = clock
        self._data: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._stats = CacheStats(max_size=max_entries)
        self._lock = threading.Lock()

    def ttl_for(self, frequency: int) -> int:
        """TTL (ms) for an endpoint requested ``frequency`` times."""
        for threshold, ttl_ms in self.staircase:
            if frequency >= threshold:
                return ttl_ms
        return self.default_ttl_ms

    def is_cacheable(self, method: str, response: Response) -> bool:
        return (
            method.upper() in self.cacheable_methods
            and response.status in self.cacheable_statuses
        )

    def get(self, key: str) -> Optional[Response]:
        """Copy of the cached response, or ``None`` on miss / expiry."""
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.is_expired(now):
                del self._data[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                return None
            entry.hits += 1
            self._data.move_to_end(key)
            self._stats.hits += 1
            return entry.value.copy()

    def set(self, key: str, response: Response, frequency: int = 0) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            value=response.copy(),
            created_at=self._clock(),
            ttl_ms=self.ttl_for(frequency),
        )
        with self._lock:
            self._data[key] = entry
            self._data.move_to_end(key)
            self._stats.sets += 1
            while len(self._data) > self.max_entries:
                evicted, _ = self._data.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Evicted %s (LRU)", evicted)
        return entry

    def ttl_of(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._data.get(key)
            return entry.ttl_ms if entry else None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove every expired entry; returns how many were dropped."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [k for k, e in self._data.items() if e.is_expired(now)]
            for key in expired:
                del self._data[key]
            self._stats.expirations += len(expired)
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
        return count

    def stats(self) -> CacheStats:
        with self._lock:
            self._stats.size = len(self._data)
            s = self._stats
            return CacheStats(s.hits, s.misses, s.sets, s.evictions, s.expirations, s.size, s.max_size)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data
