"""
Monitor - engine statistics and Prometheus export.

Summarises the recent request window (volume, latency, error rate),
alert and optimization counts, and the current load.  ``to_prometheus()``
renders the same numbers in text exposition format.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .._structures import percentile
from .._types import OptimizationDecision
from .alerts import AlertLog
from .store import TimeSeriesStore

STATS_WINDOW = 1000


class Monitor:
    """
    Read-side view over the store, the alert log and the decision history.

    Extra gauges (cache, allocator, ...) can be attached with
    ``add_collector``; each collector returns a flat ``{name: number}``.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        alerts: AlertLog,
        max_decisions: int = 1000,
    ):
        self.store = store
        self.alerts = alerts
        self._decisions: Deque[OptimizationDecision] = deque(maxlen=max_decisions)
        self._applied_total = 0
        self._collectors: List[Callable[[], Dict[str, float]]] = []
        self._lock = threading.Lock()

    def record_decision(self, decision: OptimizationDecision) -> None:
        with self._lock:
            self._decisions.append(decision)
            self._applied_total += 1

    def decisions(self, n: int = 50) -> List[OptimizationDecision]:
        with self._lock:
            return list(self._decisions)[-n:] if n > 0 else []

    def add_collector(self, collector: Callable[[], Dict[str, float]]) -> None:
        self._collectors.append(collector)

    def stats(self) -> Dict[str, Any]:
        window = self.store.recent_metrics(STATS_WINDOW)
        count = len(window)
        durations = sorted(s.duration_ms for s in window)
        errors = sum(1 for s in window if s.status_code >= 400)
        with self._lock:
            applied = self._applied_total
            by_action: Dict[str, int] = {}
            for d in self._decisions:
                by_action[d.action.value] = by_action.get(d.action.value, 0) + 1

        stats: Dict[str, Any] = {
            "total_requests": count,
            "avg_response_time": (sum(durations) / count) if count else 0.0,
            "p95_response_time": percentile(durations, 95),
            "error_rate": (errors / count) if count else 0.0,
            "cache_hit_rate": (sum(1 for s in window if s.cache_hit) / count) if count else 0.0,
            "anomalies_detected": self.alerts.total,
            "optimizations_applied": applied,
            "optimizations_by_action": by_action,
            "current_load": self.store.current_load(),
        }
        for collector in self._collectors:
            stats.update(collector())
        return stats

    def to_prometheus(self, prefix: str = "pathwise") -> str:
        """Export numeric stats in Prometheus text exposition format."""
        lines: List[str] = []
        for name, value in sorted(self.stats().items()):
            if isinstance(value, dict):
                metric = f"{prefix}_{name}_total"
                lines.append(f"# TYPE {metric} counter")
                for label, sub in sorted(value.items()):
                    lines.append(f'{metric}{{action="{label}"}} {sub}')
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            metric = f"{prefix}_{name}"
            kind = "counter" if name in _COUNTERS else "gauge"
            lines.append(f"# TYPE {metric} {kind}")
            lines.append(f"{metric} {value}")
        return "\n".join(lines) + "\n"


_COUNTERS = frozenset({"anomalies_detected", "optimizations_applied"})


def summary_lines(stats: Dict[str, Any], keys: Optional[List[str]] = None) -> List[str]:
    """Human-readable ``key: value`` lines (used by the CLI)."""
    out = []
    for key in keys or sorted(stats):
        value = stats.get(key)
        if isinstance(value, float):
            out.append(f"{key}: {value:.3f}")
        else:
            out.append(f"{key}: {value}")
    return out
