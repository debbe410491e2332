"""
Observability - metrics store, request patterns, query learner, alerts
and the monitor.
"""

from .alerts import AlertLog, AlertSink, JsonlAlertSink
from .monitor import Monitor
from .patterns import PatternTable
from .queries import IndexSuggestion, QueryOptimizer, extract_pattern
from .store import TimeSeriesStore

__all__ = [
    "AlertLog",
    "AlertSink",
    "JsonlAlertSink",
    "Monitor",
    "PatternTable",
    "IndexSuggestion",
    "QueryOptimizer",
    "extract_pattern",
    "TimeSeriesStore",
]
