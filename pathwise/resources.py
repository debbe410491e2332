"""
Host resource probing via psutil.

Two concerns live here: a snapshot of what the machine can currently give
(free memory, cpu headroom, worker slots) for the resource allocator, and
per-request process deltas (RSS and cpu time) recorded on each
:class:`~pathwise._types.MetricSample`.

Process-level deltas are approximate under concurrency: overlapping
requests share one process, so a delta includes whatever else ran in the
meantime.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

import psutil

from ._types import SystemResources

logger = logging.getLogger("pathwise.resources")

_MB = 1024 * 1024


def system_resources(workers: Optional[int] = None) -> SystemResources:
    """Current available memory (MB), cpu headroom (%) and worker slots."""
    mem = psutil.virtual_memory()
    busy = psutil.cpu_percent(interval=None)
    return SystemResources(
        memory_mb=mem.available / _MB,
        cpu=max(0.0, 100.0 - busy),
        available_workers=workers or os.cpu_count() or 1,
    )


@dataclass(frozen=True, slots=True)
class ProcessSnapshot:
    rss_bytes: int
    cpu_seconds: float


class ResourceProbe:
    """
    Measures RSS and cpu-time deltas of the current process.

    Usage::

        probe = ResourceProbe()
        before = probe.begin()
        ...  # handle the request
        memory_delta, cpu_micros = probe.end(before)
    """

    def __init__(self, process: Optional[psutil.Process] = None):
        self._process = process or psutil.Process()

    def begin(self) -> ProcessSnapshot:
        return self._snapshot()

    def end(self, before: ProcessSnapshot) -> Tuple[int, float]:
        after = self._snapshot()
        memory_delta = after.rss_bytes - before.rss_bytes
        cpu_micros = max(0.0, (after.cpu_seconds - before.cpu_seconds) * 1_000_000)
        return memory_delta, cpu_micros

    def rss_mb(self) -> float:
        return self._process.memory_info().rss / _MB

    def _snapshot(self) -> ProcessSnapshot:
        with self._process.oneshot():
            rss = self._process.memory_info().rss
            times = self._process.cpu_times()
        return ProcessSnapshot(rss_bytes=rss, cpu_seconds=times.user + times.system)
