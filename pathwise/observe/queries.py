"""
Query-pattern learner.

Handlers may report the database queries they ran by appending to
``request.state["query_executions"]`` (each item a mapping with ``query``
and ``duration`` in ms, or a ``(query, duration)`` pair).  Queries are
normalised into patterns; slow, frequent patterns yield index
suggestions for the columns in their WHERE / JOIN clauses.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple

logger = logging.getLogger("pathwise.observe.queries")

_QUOTES = re.compile(r"['\"]")
_DIGITS = re.compile(r"\d+")
_SPACE = re.compile(r"\s+")
_WHERE = re.compile(r"WHERE\s+(\w+)", re.IGNORECASE)
_JOIN = re.compile(r"JOIN\s+\w+\s+ON\s+(\w+)", re.IGNORECASE)


def extract_pattern(query: str) -> str:
    """Normalise a query: literals stripped, numbers folded to ``N``."""
    pattern = _QUOTES.sub("", query)
    pattern = _DIGITS.sub("N", pattern)
    pattern = _SPACE.sub(" ", pattern)
    return pattern.strip().lower()


@dataclass
class QueryStats:
    count: int = 0
    total_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


@dataclass(frozen=True)
class IndexSuggestion:
    pattern: str
    columns: Tuple[str, ...]
    avg_duration_ms: float
    count: int


class QueryOptimizer:
    """Learns query patterns and suggests index columns."""

    def __init__(self, slow_ms: float = 100.0, min_count: int = 10, max_patterns: int = 5000):
        self.slow_ms = slow_ms
        self.min_count = min_count
        self.max_patterns = max_patterns
        self._stats: Dict[str, QueryStats] = {}
        self._suggestions: Dict[str, Tuple[str, ...]] = {}
        self._lock = threading.Lock()

    def learn(self, executions: Iterable[Any]) -> int:
        """Record query executions; returns how many were understood."""
        learned = 0
        for item in executions:
            parsed = _parse_execution(item)
            if parsed is None:
                continue
            self.record(*parsed)
            learned += 1
        return learned

    def record(self, query: str, duration_ms: float) -> None:
        pattern = extract_pattern(query)
        with self._lock:
            stats = self._stats.get(pattern)
            if stats is None:
                if len(self._stats) >= self.max_patterns:
                    return
                stats = self._stats[pattern] = QueryStats()
            stats.count += 1
            stats.total_ms += float(duration_ms)
            if stats.avg_ms > self.slow_ms and stats.count > self.min_count:
                columns = _index_columns(query)
                if columns and pattern not in self._suggestions:
                    logger.info(
                        "Slow query pattern (avg %.1fms over %d runs), index candidates: %s",
                        stats.avg_ms, stats.count, ", ".join(columns),
                    )
                if columns:
                    self._suggestions[pattern] = columns

    def suggestions(self) -> List[IndexSuggestion]:
        with self._lock:
            return [
                IndexSuggestion(
                    pattern=pattern,
                    columns=columns,
                    avg_duration_ms=self._stats[pattern].avg_ms,
                    count=self._stats[pattern].count,
                )
                for pattern, columns in self._suggestions.items()
            ]

    def stats(self, query: str) -> QueryStats:
        with self._lock:
            found = self._stats.get(extract_pattern(query))
            return QueryStats(found.count, found.total_ms) if found else QueryStats()

    def __len__(self) -> int:
        return len(self._stats)


def _index_columns(query: str) -> Tuple[str, ...]:
    columns: List[str] = []
    for regex in (_WHERE, _JOIN):
        match = regex.search(query)
        if match:
            columns.append(match.group(1))
    return tuple(columns)


def _parse_execution(item: Any):
    if isinstance(item, dict):
        query = item.get("query")
        duration = item.get("duration", item.get("duration_ms"))
    elif isinstance(item, (tuple, list)) and len(item) == 2:
        query, duration = item
    else:
        return None
    if not isinstance(query, str) or not isinstance(duration, (int, float)):
        return None
    return query, float(duration)
