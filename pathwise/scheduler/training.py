"""
Training scheduler - periodic retraining and maintenance.

Two background loops run on the host's event loop:

* training, every ``interval_minutes``: snapshot the store, retrain the
  predictor and the neural detector, refresh statistical baselines.  The
  work runs in the default executor so the event loop is never blocked.
* maintenance, every ``cleanup_interval_seconds``: prune the store,
  sweep expired cache entries, prune idle request patterns and log hot
  and slow paths.

``tick()`` and ``sweep()`` are the same steps as plain synchronous calls
for deterministic tests and manual triggers.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from ..faults import SchedulerFault

if TYPE_CHECKING:
    from ..detect.neural import NeuralDetector
    from ..detect.statistical import StatisticalDetector
    from ..observe.patterns import PatternTable
    from ..observe.store import TimeSeriesStore
    from ..predict import PerformancePredictor
    from ..serving.cache import AdaptiveCache

logger = logging.getLogger("pathwise.scheduler.training")


@dataclass
class TrainingReport:
    samples: int = 0
    endpoints: int = 0
    baselines: int = 0
    neural_losses: List[float] = field(default_factory=list)
    duration_ms: float = 0.0


class ScheduleHandle:
    """Cancellation handle for the background loops started by ``start()``."""

    def __init__(self, scheduler: "TrainingScheduler", tasks: List[asyncio.Task]):
        self._scheduler = scheduler
        self._tasks = tasks

    @property
    def cancelled(self) -> bool:
        return all(t.cancelled() or t.done() for t in self._tasks)

    def cancel(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._scheduler._handle = None

    async def wait(self) -> None:
        """Wait for the loops to finish after ``cancel()``."""
        await asyncio.gather(*self._tasks, return_exceptions=True)


class TrainingScheduler:
    """Owns retraining and housekeeping for one engine."""

    def __init__(
        self,
        store: "TimeSeriesStore",
        predictor: Optional["PerformancePredictor"] = None,
        detector: Optional["StatisticalDetector"] = None,
        neural: Optional["NeuralDetector"] = None,
        *,
        patterns: Optional["PatternTable"] = None,
        cache: Optional["AdaptiveCache"] = None,
        interval_minutes: float = 30.0,
        cleanup_interval_seconds: float = 60.0,
        epochs: int = 10,
        snapshot_limit: int = 10_000,
    ):
        if interval_minutes <= 0 or cleanup_interval_seconds <= 0:
            raise SchedulerFault("intervals must be > 0")
        self.store = store
        self.predictor = predictor
        self.detector = detector
        self.neural = neural
        self.patterns = patterns
        self.cache = cache
        self.interval_seconds = interval_minutes * 60.0
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.epochs = epochs
        self.snapshot_limit = snapshot_limit
        self._tick_lock = threading.Lock()
        self._handle: Optional[ScheduleHandle] = None
        self._runs = 0
        self.last_report: Optional[TrainingReport] = None

    @property
    def runs(self) -> int:
        return self._runs

    def tick(self) -> TrainingReport:
        """Run one full retraining pass synchronously."""
        with self._tick_lock:
            started = time.perf_counter()
            data = self.store.snapshot(self.snapshot_limit)
            report = TrainingReport(samples=len(data))
            logger.info("Starting scheduled training on %d samples", len(data))

            if self.predictor is not None:
                report.endpoints = self.predictor.train(data)
            if self.detector is not None:
                report.baselines = self.detector.refresh(data)
            if self.neural is not None:
                report.neural_losses = self.neural.train(data, epochs=self.epochs)

            report.duration_ms = (time.perf_counter() - started) * 1000.0
            self._runs += 1
            self.last_report = report
            logger.info(
                "Training completed in %.1fms: %d endpoints, %d baselines, %d epochs",
                report.duration_ms, report.endpoints, report.baselines,
                len(report.neural_losses),
            )
            return report

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        """Housekeeping pass: prune, sweep, analyse patterns."""
        result = {"samples_pruned": self.store.prune(now)}
        if self.cache is not None:
            result["cache_expired"] = self.cache.sweep()
        if self.patterns is not None:
            result["patterns_pruned"] = self.patterns.prune(now)
            hot = self.patterns.hot_paths()
            slow = self.patterns.slow_paths()
            if hot:
                logger.info("Hot paths: %s", ", ".join(p.key for p in hot[:10]))
            if slow:
                logger.info(
                    "Slow paths: %s",
                    ", ".join(f"{p.key} ({p.avg_duration_ema:.0f}ms)" for p in slow[:10]),
                )
            result["hot_paths"] = len(hot)
            result["slow_paths"] = len(slow)
        return result

    def start(self) -> ScheduleHandle:
        """Start both loops on the running event loop."""
        if self._handle is not None:
            raise SchedulerFault("already started")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise SchedulerFault("start() requires a running event loop") from exc

        tasks = [
            loop.create_task(self._training_loop(), name="pathwise-training"),
            loop.create_task(self._maintenance_loop(), name="pathwise-maintenance"),
        ]
        self._handle = ScheduleHandle(self, tasks)
        logger.info(
            "Training scheduler started (training every %.0fs, maintenance every %.0fs)",
            self.interval_seconds, self.cleanup_interval_seconds,
        )
        return self._handle

    async def _training_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await loop.run_in_executor(None, self.tick)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled training failed")

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Maintenance sweep failed")
