"""
Statistical anomaly detector.

Per-endpoint latency baselines (mean, standard deviation, p95, p99) are
recomputed from the recent window on every detection; a sample is
compared against its endpoint's baseline by z-score.  Memory deltas and
bursts of server errors are checked against fixed thresholds.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .._structures import percentile
from .._types import (
    AlertSeverity,
    AlertType,
    AnomalyAlert,
    Baseline,
    MetricSample,
    endpoint_key,
)

logger = logging.getLogger("pathwise.detect.statistical")

SUGGEST_LATENCY = "Consider enabling caching or optimizing database queries"
SUGGEST_MEMORY = "Check for memory leaks or increase heap size"
SUGGEST_ERRORS = "Check application logs and external dependencies"

_MB = 1024 * 1024


@dataclass(frozen=True)
class Thresholds:
    max_memory_mb: Optional[float] = None
    z_high: float = 3.0
    z_critical: float = 5.0
    error_burst: int = 10
    error_window_seconds: float = 60.0


def compute_baseline(durations: Sequence[float]) -> Optional[Baseline]:
    """Population statistics over a latency series (``None`` when empty)."""
    if not durations:
        return None
    n = len(durations)
    mean = sum(durations) / n
    variance = sum((d - mean) ** 2 for d in durations) / n
    ordered = sorted(durations)
    return Baseline(
        mean=mean,
        stddev=math.sqrt(variance),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
        count=n,
    )


def z_score(value: float, baseline: Baseline) -> float:
    if baseline.stddev <= 0.0:
        return 0.0
    return abs(value - baseline.mean) / baseline.stddev


class StatisticalDetector:
    """
    Z-score latency, memory and error-burst detection.

    Baselines are held in a dict that is replaced, never mutated, so
    ``score()`` can read it without locking.
    """

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self.thresholds = thresholds or Thresholds()
        self._baselines: Dict[str, Baseline] = {}
        self._lock = threading.Lock()

    def detect(
        self,
        sample: MetricSample,
        history: Sequence[MetricSample],
        thresholds: Optional[Thresholds] = None,
    ) -> List[AnomalyAlert]:
        thresholds = thresholds or self.thresholds
        key = sample.key
        alerts: List[AnomalyAlert] = []

        same_endpoint = [h for h in history if h is not sample and h.key == key]
        baseline = compute_baseline([h.duration_ms for h in same_endpoint])
        if baseline is not None:
            self._store(key, baseline)
            z = z_score(sample.duration_ms, baseline)
            if z > thresholds.z_high:
                alerts.append(AnomalyAlert(
                    severity=AlertSeverity.CRITICAL if z > thresholds.z_critical else AlertSeverity.HIGH,
                    type=AlertType.LATENCY,
                    message=(
                        f"Abnormal latency detected: {sample.duration_ms:.2f}ms "
                        f"(expected: {baseline.mean:.2f}ms)"
                    ),
                    metrics={"current": sample.duration_ms, "baseline": baseline.mean, "z_score": z},
                    suggestion=SUGGEST_LATENCY,
                    timestamp=sample.timestamp,
                    endpoint=key,
                ))

        if thresholds.max_memory_mb and sample.memory_delta_bytes > thresholds.max_memory_mb * _MB:
            alerts.append(AnomalyAlert(
                severity=AlertSeverity.HIGH,
                type=AlertType.MEMORY,
                message=f"High memory usage: {sample.memory_delta_bytes / _MB:.2f}MB",
                metrics={
                    "current": float(sample.memory_delta_bytes),
                    "threshold": float(thresholds.max_memory_mb),
                },
                suggestion=SUGGEST_MEMORY,
                timestamp=sample.timestamp,
                endpoint=key,
            ))

        if sample.is_server_error:
            cutoff = sample.timestamp - thresholds.error_window_seconds
            # The current sample counts toward the burst.
            errors = 1 + sum(
                1 for h in same_endpoint
                if h.is_server_error and h.timestamp >= cutoff
            )
            if errors > thresholds.error_burst:
                alerts.append(AnomalyAlert(
                    severity=AlertSeverity.CRITICAL,
                    type=AlertType.ERROR_RATE,
                    message=f"High error rate: {errors} errors in last minute",
                    metrics={
                        "error_count": float(errors),
                        "error_rate": errors / thresholds.error_window_seconds,
                    },
                    suggestion=SUGGEST_ERRORS,
                    timestamp=sample.timestamp,
                    endpoint=key,
                ))

        return alerts

    def score(self, sample: MetricSample) -> float:
        """Latency anomaly score in [0, 1] against the stored baseline."""
        baseline = self._baselines.get(sample.key)
        if baseline is None:
            return 0.0
        return min(z_score(sample.duration_ms, baseline) / self.thresholds.z_critical, 1.0)

    def refresh(self, history: Iterable[MetricSample]) -> int:
        """Recompute every endpoint's baseline and swap them in at once."""
        grouped: Dict[str, List[float]] = {}
        for sample in history:
            grouped.setdefault(sample.key, []).append(sample.duration_ms)
        fresh = {}
        for key, durations in grouped.items():
            baseline = compute_baseline(durations)
            if baseline is not None:
                fresh[key] = baseline
        self._baselines = fresh
        logger.debug("Refreshed %d latency baselines", len(fresh))
        return len(fresh)

    def baseline(self, method: str, path: str) -> Optional[Baseline]:
        return self._baselines.get(endpoint_key(method, path))

    def _store(self, key: str, baseline: Baseline) -> None:
        with self._lock:
            updated = dict(self._baselines)
            updated[key] = baseline
            self._baselines = updated
