"""
Performance predictor.

Forecasts an endpoint's next latency by exponential smoothing over its
recent samples and recommends one :class:`~pathwise._types.OptimizationAction`.
Endpoints with fewer than ``min_samples`` observations get a fixed
low-confidence default.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

from ._structures import smooth
from ._types import (
    MetricSample,
    OptimizationAction,
    Prediction,
    PredictionRequest,
    ResourceEstimate,
)

logger = logging.getLogger("pathwise.predict")

DEFAULT_PREDICTION = Prediction(
    expected_duration_ms=50.0,
    confidence=0.3,
    recommended_action=OptimizationAction.CACHE,
    resource_estimate=ResourceEstimate(memory_mb=10.0, cpu_ms=5.0, io=5.0),
)

_MB = 1024 * 1024


class PerformancePredictor:
    """
    Exponential-smoothing latency forecaster.

    ``predict`` prefers the live history handed in by the caller; when that
    holds too few samples for the endpoint it falls back to the series
    captured by the last ``train()``.
    """

    def __init__(
        self,
        alpha: float = 0.3,
        min_samples: int = 10,
        variance_scale: float = 1000.0,
        series_limit: int = 500,
    ):
        self.alpha = alpha
        self.min_samples = min_samples
        self.variance_scale = variance_scale
        self.series_limit = series_limit
        self._series: Dict[str, Tuple[MetricSample, ...]] = {}

    def predict(
        self,
        request: PredictionRequest,
        history: Iterable[MetricSample] = (),
    ) -> Prediction:
        key = request.key
        samples: Sequence[MetricSample] = [s for s in history if s.key == key]
        if len(samples) < self.min_samples:
            samples = self._series.get(key, ())
        if len(samples) < self.min_samples:
            return DEFAULT_PREDICTION

        durations = [s.duration_ms for s in samples]
        n = len(durations)
        forecast = smooth(durations, self.alpha)
        mean = sum(durations) / n
        variance = sum((d - mean) ** 2 for d in durations) / n
        confidence = min(max(0.0, 1.0 - variance / self.variance_scale), 1.0)

        action = self._recommend(forecast, mean, samples, request.hour)
        estimate = ResourceEstimate(
            memory_mb=sum(s.memory_delta_bytes for s in samples) / n / _MB,
            cpu_ms=sum(s.cpu_micros for s in samples) / n / 1000.0,
            io=forecast / 10.0,
        )
        return Prediction(
            expected_duration_ms=forecast,
            confidence=confidence,
            recommended_action=action,
            resource_estimate=estimate,
        )

    def _recommend(
        self,
        forecast: float,
        mean: float,
        samples: Sequence[MetricSample],
        hour: int,
    ) -> OptimizationAction:
        hit_rate = sum(1 for s in samples if s.cache_hit) / len(samples)

        if forecast > mean * 2:
            return OptimizationAction.THROTTLE
        if forecast > 100 and hit_rate < 0.3:
            return OptimizationAction.CACHE
        if 9 <= hour <= 17:
            return OptimizationAction.PREFETCH
        if len(samples) > 50 and forecast > 50:
            return OptimizationAction.OPTIMIZE
        return OptimizationAction.BATCH

    def train(self, data: Iterable[MetricSample]) -> int:
        """Group ``data`` by endpoint and swap in the new series.

        Returns the number of endpoints learned.
        """
        grouped: Dict[str, List[MetricSample]] = {}
        for sample in data:
            grouped.setdefault(sample.key, []).append(sample)
        self._series = {
            key: tuple(samples[-self.series_limit:])
            for key, samples in grouped.items()
        }
        logger.info("Predictor trained on %d endpoints", len(self._series))
        return len(self._series)

    @property
    def endpoints(self) -> List[str]:
        return sorted(self._series)
