"""
Time-series metrics store.

Holds completed-request samples and error records in memory, bounded both
by a retention horizon and by a hard sample cap.  Samples are appended in
completion order and stamped by the same clock, so timestamps are
non-decreasing from oldest to newest.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional

from .._types import ErrorRecord, MetricSample

logger = logging.getLogger("pathwise.observe.store")

LOAD_WINDOW_SECONDS = 60.0


class TimeSeriesStore:
    """
    In-memory, thread-safe sample store.

    Usage::

        store = TimeSeriesStore(retention_hours=24)
        store.add(sample)
        window = store.recent_metrics(1000)
    """

    def __init__(
        self,
        retention_hours: float = 24.0,
        max_samples: int = 100_000,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.retention_seconds = retention_hours * 3600.0
        self.max_samples = max_samples
        self._clock = clock
        self._samples: Deque[MetricSample] = deque(maxlen=max_samples)
        self._errors: Deque[ErrorRecord] = deque(maxlen=max_samples)
        self._lock = threading.Lock()

    # ── writes ───────────────────────────────────────────────────────

    def add(self, sample: MetricSample) -> None:
        with self._lock:
            self._samples.append(sample)

    def add_error(self, error: ErrorRecord) -> None:
        with self._lock:
            self._errors.append(error)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop samples and errors older than the retention horizon.

        Returns the number of records removed.
        """
        cutoff = (self._clock() if now is None else now) - self.retention_seconds
        removed = 0
        with self._lock:
            while self._samples and self._samples[0].timestamp < cutoff:
                self._samples.popleft()
                removed += 1
            while self._errors and self._errors[0].timestamp < cutoff:
                self._errors.popleft()
                removed += 1
        if removed:
            logger.debug("Pruned %d records older than %.0fs", removed, self.retention_seconds)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
            self._errors.clear()

    # ── reads ────────────────────────────────────────────────────────

    def recent_metrics(self, n: int) -> List[MetricSample]:
        """Last ``n`` samples, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            size = len(self._samples)
            start = max(0, size - n)
            return [self._samples[i] for i in range(start, size)]

    def recent_errors(self, n: int) -> List[ErrorRecord]:
        if n <= 0:
            return []
        with self._lock:
            return list(self._errors)[-n:]

    def snapshot(self, limit: int = 10_000) -> List[MetricSample]:
        """Bounded copy of the newest samples, for training off the request path."""
        return self.recent_metrics(limit)

    def current_load(self, now: Optional[float] = None) -> int:
        """Number of samples completed in the trailing minute."""
        cutoff = (self._clock() if now is None else now) - LOAD_WINDOW_SECONDS
        count = 0
        with self._lock:
            for sample in reversed(self._samples):
                if sample.timestamp < cutoff:
                    break
                count += 1
        return count

    @property
    def error_count(self) -> int:
        return len(self._errors)

    def __len__(self) -> int:
        return len(self._samples)
