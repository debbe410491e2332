"""
Endpoint health scoring for load-balancing decisions.

Health blends the success ratio with a response-time factor::

    score = 0.7 * success_rate + 0.3 * max(0, 1 - avg_ms / 1000)

Unseen endpoints score a neutral 0.5.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List

from .._structures import ExponentialDecay

NEUTRAL_SCORE = 0.5
SUCCESS_WEIGHT = 0.7
LATENCY_WEIGHT = 0.3
LATENCY_CEILING_MS = 1000.0


@dataclass
class EndpointHealth:
    total_requests: int
    successful_requests: int
    avg_response_time: float
    last_updated: float

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.total_requests if self.total_requests else 0.0


class HealthScorer:
    """Tracks per-endpoint success ratio and smoothed response time."""

    def __init__(self, alpha: float = 0.2, *, clock: Callable[[], float] = time.time):
        self.alpha = alpha
        self._clock = clock
        self._health: Dict[str, EndpointHealth] = {}
        self._ema: Dict[str, ExponentialDecay] = {}
        self._lock = threading.Lock()

    def update_metrics(self, endpoint: str, response_time_ms: float, success: bool) -> None:
        with self._lock:
            health = self._health.get(endpoint)
            if health is None:
                health = self._health[endpoint] = EndpointHealth(0, 0, 0.0, self._clock())
                self._ema[endpoint] = ExponentialDecay(self.alpha)
            health.total_requests += 1
            if success:
                health.successful_requests += 1
            health.avg_response_time = self._ema[endpoint].update(response_time_ms)
            health.last_updated = self._clock()

    def get_health_score(self, endpoint: str) -> float:
        with self._lock:
            health = self._health.get(endpoint)
            if health is None or health.total_requests == 0:
                return NEUTRAL_SCORE
            response_factor = max(0.0, 1.0 - health.avg_response_time / LATENCY_CEILING_MS)
            return SUCCESS_WEIGHT * health.success_rate + LATENCY_WEIGHT * response_factor

    def rank(self, endpoints: Iterable[str]) -> List[str]:
        """Candidates ordered healthiest first (stable for equal scores)."""
        return sorted(endpoints, key=self.get_health_score, reverse=True)

    def penalize(self, endpoint: str) -> None:
        """Count one extra failure against ``endpoint``."""
        with self._lock:
            health = self._health.get(endpoint)
            if health is not None:
                health.total_requests += 1

    def snapshot(self) -> Dict[str, EndpointHealth]:
        with self._lock:
            return {
                k: EndpointHealth(h.total_requests, h.successful_requests,
                                  h.avg_response_time, h.last_updated)
                for k, h in self._health.items()
            }
