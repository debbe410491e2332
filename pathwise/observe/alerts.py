"""
Alert log and sinks.

Every :class:`~pathwise._types.AnomalyAlert` the engine raises passes
through an :class:`AlertLog`: it is logged, kept in a bounded history for
the monitor, and handed to each registered sink.  The default file sink
writes one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import Counter, deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from .._types import AlertSeverity, AnomalyAlert

logger = logging.getLogger("pathwise.observe.alerts")

AlertSink = Callable[[AnomalyAlert], None]

_LOG_LEVELS = {
    AlertSeverity.LOW: logging.INFO,
    AlertSeverity.MEDIUM: logging.WARNING,
    AlertSeverity.HIGH: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


class AlertLog:
    """Bounded alert history with pluggable sinks."""

    def __init__(self, max_alerts: int = 1000, sinks: Optional[List[AlertSink]] = None):
        self._alerts: Deque[AnomalyAlert] = deque(maxlen=max_alerts)
        self._sinks: List[AlertSink] = list(sinks or [])
        self._total = 0
        self._lock = threading.Lock()

    def add_sink(self, sink: AlertSink) -> None:
        self._sinks.append(sink)

    def emit(self, alert: AnomalyAlert) -> None:
        with self._lock:
            self._alerts.append(alert)
            self._total += 1

        logger.log(
            _LOG_LEVELS.get(alert.severity, logging.WARNING),
            "[%s] %s anomaly on %s: %s (%s)",
            alert.severity.value, alert.type.value, alert.endpoint or "-",
            alert.message, alert.suggestion,
        )

        for sink in self._sinks:
            try:
                sink(alert)
            except Exception:
                logger.exception("Alert sink %r failed", sink)

    def recent(self, n: int = 50) -> List[AnomalyAlert]:
        with self._lock:
            return list(self._alerts)[-n:] if n > 0 else []

    def counts_by_severity(self) -> Dict[str, int]:
        with self._lock:
            counts = Counter(a.severity.value for a in self._alerts)
        return dict(counts)

    @property
    def total(self) -> int:
        return self._total

    def __len__(self) -> int:
        return len(self._alerts)


class JsonlAlertSink:
    """
    Appends alerts to a dated JSONL file.

    Usage::

        alerts.add_sink(JsonlAlertSink("alert_logs"))
    """

    def __init__(self, log_dir: str = "alert_logs"):
        self.log_dir = log_dir
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        self._written = 0

    def __call__(self, alert: AnomalyAlert) -> None:
        date_str = time.strftime("%Y-%m-%d")
        log_path = Path(self.log_dir) / f"alerts_{date_str}.jsonl"
        with open(log_path, "a") as f:
            f.write(json.dumps(alert.to_dict(), default=str) + "\n")
        self._written += 1

    @property
    def written(self) -> int:
        return self._written


def read_alerts(path: str) -> List[Dict[str, Any]]:
    """Load alerts previously written by :class:`JsonlAlertSink`."""
    with open(path) as f:
        return [json.loads(line) for line in f if line.strip()]
