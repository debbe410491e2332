"""
Request pattern table.

One :class:`~pathwise._types.RequestPattern` per (method, path): a total
request count, an EWMA of latency and the last time the endpoint was
seen.  The total count drives the cache TTL staircase (so TTLs never
shrink while an endpoint stays active); a short per-endpoint window of
arrival times drives batching eligibility.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional

from .._structures import ExponentialDecay
from .._types import RequestPattern, endpoint_key

logger = logging.getLogger("pathwise.observe.patterns")

_RECENT_CAP = 1024


class _Entry:
    __slots__ = ("pattern", "ema", "arrivals")

    def __init__(self, pattern: RequestPattern, alpha: float):
        self.pattern = pattern
        self.ema = ExponentialDecay(alpha)
        self.arrivals: Deque[float] = deque(maxlen=_RECENT_CAP)


class PatternTable:
    """Per-endpoint request statistics, pruned after inactivity."""

    def __init__(
        self,
        alpha: float = 0.5,
        ttl_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.alpha = alpha
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def observe(
        self,
        method: str,
        path: str,
        duration_ms: float,
        now: Optional[float] = None,
    ) -> RequestPattern:
        """Record one completed request and return a copy of its pattern."""
        now = self._clock() if now is None else now
        key = endpoint_key(method, path)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(
                    RequestPattern(path=path, method=method.upper(), frequency=0,
                                   avg_duration_ema=0.0, last_seen=now),
                    self.alpha,
                )
                self._entries[key] = entry
            pattern = entry.pattern
            pattern.frequency += 1
            pattern.avg_duration_ema = entry.ema.update(duration_ms)
            pattern.last_seen = now
            entry.arrivals.append(now)
            return replace(pattern)

    def get(self, method: str, path: str) -> Optional[RequestPattern]:
        with self._lock:
            entry = self._entries.get(endpoint_key(method, path))
            return replace(entry.pattern) if entry else None

    def frequency(self, method: str, path: str) -> int:
        with self._lock:
            entry = self._entries.get(endpoint_key(method, path))
            return entry.pattern.frequency if entry else 0

    def recent_count(
        self,
        method: str,
        path: str,
        window_seconds: float = 60.0,
        now: Optional[float] = None,
    ) -> int:
        """Arrivals for the endpoint within the trailing window."""
        cutoff = (self._clock() if now is None else now) - window_seconds
        with self._lock:
            entry = self._entries.get(endpoint_key(method, path))
            if entry is None:
                return 0
            count = 0
            for ts in reversed(entry.arrivals):
                if ts < cutoff:
                    break
                count += 1
            return count

    def snapshot(self) -> List[RequestPattern]:
        with self._lock:
            return [replace(e.pattern) for e in self._entries.values()]

    def hot_paths(self, min_frequency: int = 50) -> List[RequestPattern]:
        return sorted(
            (p for p in self.snapshot() if p.frequency > min_frequency),
            key=lambda p: p.frequency,
            reverse=True,
        )

    def slow_paths(self, min_avg_ms: float = 100.0) -> List[RequestPattern]:
        return sorted(
            (p for p in self.snapshot() if p.avg_duration_ema > min_avg_ms),
            key=lambda p: p.avg_duration_ema,
            reverse=True,
        )

    def related(self, path: str, limit: int = 3) -> List[RequestPattern]:
        """Most frequent sibling paths under the same parent segment."""
        parent = path.rstrip("/").rsplit("/", 1)[0]
        if not parent:
            return []
        prefix = parent + "/"
        candidates = [
            p for p in self.snapshot()
            if p.path != path and p.path.startswith(prefix)
        ]
        candidates.sort(key=lambda p: p.frequency, reverse=True)
        return candidates[:limit]

    def prune(self, now: Optional[float] = None) -> int:
        """Forget endpoints not seen within ``ttl_seconds``."""
        cutoff = (self._clock() if now is None else now) - self.ttl_seconds
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.pattern.last_seen < cutoff]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Pruned %d inactive request patterns", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
