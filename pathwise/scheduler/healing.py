"""
Auto-healing - mitigations triggered by severe anomaly alerts.

Each alert type maps to one remedy:

* latency    - the endpoint is boosted into the adaptive cache
* memory     - the response cache is purged and a GC cycle forced
* error_rate - the endpoint's health score is penalised

Other alert types are logged and left alone.
"""

from __future__ import annotations

import gc
import logging
import threading
from typing import TYPE_CHECKING, Callable, Dict, Optional, Set

from .._types import AlertSeverity, AlertType, AnomalyAlert

if TYPE_CHECKING:
    from ..serving.cache import AdaptiveCache
    from .balancer import HealthScorer

logger = logging.getLogger("pathwise.scheduler.healing")

_SEVERITY_ORDER = [
    AlertSeverity.LOW,
    AlertSeverity.MEDIUM,
    AlertSeverity.HIGH,
    AlertSeverity.CRITICAL,
]


class AutoHealer:
    """Applies a mitigation for alerts at or above ``min_severity``."""

    def __init__(
        self,
        cache: Optional["AdaptiveCache"] = None,
        health: Optional["HealthScorer"] = None,
        min_severity: AlertSeverity = AlertSeverity.CRITICAL,
    ):
        self.cache = cache
        self.health = health
        self.min_severity = min_severity
        self._boosted: Set[str] = set()
        self._applied: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._remedies: Dict[AlertType, Callable[[AnomalyAlert], None]] = {
            AlertType.LATENCY: self._mitigate_latency,
            AlertType.MEMORY: self._mitigate_memory,
            AlertType.ERROR_RATE: self._mitigate_errors,
        }

    def should_heal(self, alert: AnomalyAlert) -> bool:
        return _SEVERITY_ORDER.index(alert.severity) >= _SEVERITY_ORDER.index(self.min_severity)

    def heal(self, alert: AnomalyAlert) -> bool:
        """Apply the remedy for ``alert``; returns True when one ran."""
        if not self.should_heal(alert):
            return False
        remedy = self._remedies.get(alert.type)
        if remedy is None:
            logger.info("No auto-healing remedy for %s alerts", alert.type.value)
            return False
        remedy(alert)
        with self._lock:
            self._applied[alert.type.value] = self._applied.get(alert.type.value, 0) + 1
        return True

    def is_boosted(self, endpoint: str) -> bool:
        return endpoint in self._boosted

    @property
    def applied(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._applied)

    def _mitigate_latency(self, alert: AnomalyAlert) -> None:
        with self._lock:
            self._boosted.add(alert.endpoint)
        logger.warning("[auto-heal] Latency mitigation: caching enabled for %s", alert.endpoint)

    def _mitigate_memory(self, alert: AnomalyAlert) -> None:
        purged = self.cache.clear() if self.cache is not None else 0
        collected = gc.collect()
        logger.warning(
            "[auto-heal] Memory mitigation: purged %d cache entries, collected %d objects",
            purged, collected,
        )

    def _mitigate_errors(self, alert: AnomalyAlert) -> None:
        if self.health is not None:
            self.health.penalize(alert.endpoint)
        logger.warning("[auto-heal] Error burst on %s: health score penalised", alert.endpoint)
