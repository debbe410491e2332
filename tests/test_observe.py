"""
Tests for observability: metrics store, pattern table, query learner,
alert log and monitor.
"""

import json
import logging

import pytest

from pathwise._types import (
    AlertSeverity,
    AlertType,
    AnomalyAlert,
    ErrorRecord,
    OptimizationAction,
    OptimizationDecision,
)
from pathwise.observe.alerts import AlertLog, JsonlAlertSink, read_alerts
from pathwise.observe.monitor import Monitor, summary_lines
from pathwise.observe.patterns import PatternTable
from pathwise.observe.queries import QueryOptimizer, extract_pattern
from pathwise.observe.store import TimeSeriesStore

from tests.conftest import T0, make_sample


# ═══════════════════════════════════════════════════════════════════════════
# Time-series store
# ═══════════════════════════════════════════════════════════════════════════


class TestTimeSeriesStore:
    def test_recent_metrics_oldest_first(self, clock):
        store = TimeSeriesStore(clock=clock)
        for i in range(5):
            store.add(make_sample(duration=float(i), timestamp=T0 + i))
        recent = store.recent_metrics(3)
        assert [s.duration_ms for s in recent] == [2.0, 3.0, 4.0]

    def test_recent_metrics_non_positive(self, clock):
        store = TimeSeriesStore(clock=clock)
        store.add(make_sample())
        assert store.recent_metrics(0) == []
        assert store.recent_metrics(-3) == []

    def test_recent_metrics_more_than_stored(self, clock):
        store = TimeSeriesStore(clock=clock)
        store.add(make_sample())
        assert len(store.recent_metrics(100)) == 1

    def test_current_load_counts_last_minute(self, clock):
        store = TimeSeriesStore(clock=clock)
        store.add(make_sample(timestamp=T0 - 120))
        store.add(make_sample(timestamp=T0 - 30))
        store.add(make_sample(timestamp=T0 - 1))
        assert store.current_load() == 2

    def test_prune_drops_expired(self, clock):
        store = TimeSeriesStore(retention_hours=1, clock=clock)
        store.add(make_sample(timestamp=T0 - 7200))
        store.add(make_sample(timestamp=T0 - 10))
        store.add_error(ErrorRecord(T0 - 7200, "GET", "/x", "boom"))
        removed = store.prune()
        assert removed == 2
        assert len(store) == 1
        assert store.error_count == 0

    def test_hard_cap(self, clock):
        store = TimeSeriesStore(max_samples=3, clock=clock)
        for i in range(10):
            store.add(make_sample(duration=float(i)))
        assert len(store) == 3
        assert store.recent_metrics(3)[0].duration_ms == 7.0

    def test_errors_kept_beside_samples(self, clock):
        store = TimeSeriesStore(clock=clock)
        store.add_error(ErrorRecord(T0, "GET", "/x", "boom", "ValueError"))
        assert store.recent_errors(5)[0].error_type == "ValueError"

    def test_negative_duration_clamped(self):
        assert make_sample(duration=-5.0).duration_ms == 0.0


# ═══════════════════════════════════════════════════════════════════════════
# Pattern table
# ═══════════════════════════════════════════════════════════════════════════


class TestPatternTable:
    def test_frequency_and_ema(self, clock):
        table = PatternTable(alpha=0.5, clock=clock)
        table.observe("GET", "/a", 100.0)
        pattern = table.observe("GET", "/a", 200.0)
        assert pattern.frequency == 2
        assert pattern.avg_duration_ema == pytest.approx(150.0)
        assert pattern.last_seen == clock.now

    def test_method_is_part_of_key(self, clock):
        table = PatternTable(clock=clock)
        table.observe("GET", "/a", 1.0)
        table.observe("post", "/a", 1.0)
        assert table.frequency("GET", "/a") == 1
        assert table.frequency("POST", "/a") == 1

    def test_recent_count_window(self, clock):
        table = PatternTable(clock=clock)
        table.observe("GET", "/a", 1.0, now=T0 - 120)
        for _ in range(3):
            table.observe("GET", "/a", 1.0)
        assert table.recent_count("GET", "/a", 60.0) == 3
        assert table.frequency("GET", "/a") == 4

    def test_related_paths_under_parent(self, clock):
        table = PatternTable(clock=clock)
        for path, hits in [("/api/users/1", 5), ("/api/users/2", 9), ("/api/users/3", 2),
                           ("/api/users/4", 7), ("/api/orders/1", 50)]:
            for _ in range(hits):
                table.observe("GET", path, 1.0)
        related = table.related("/api/users/1")
        assert [p.path for p in related] == ["/api/users/2", "/api/users/4", "/api/users/3"]

    def test_related_at_root(self, clock):
        table = PatternTable(clock=clock)
        table.observe("GET", "/a", 1.0)
        assert table.related("/b") == []

    def test_hot_and_slow_paths(self, clock):
        table = PatternTable(clock=clock)
        for _ in range(51):
            table.observe("GET", "/hot", 5.0)
        table.observe("GET", "/slow", 250.0)
        assert [p.path for p in table.hot_paths()] == ["/hot"]
        assert [p.path for p in table.slow_paths()] == ["/slow"]

    def test_prune_inactive(self, clock):
        table = PatternTable(ttl_seconds=60, clock=clock)
        table.observe("GET", "/old", 1.0)
        clock.advance(120)
        table.observe("GET", "/new", 1.0)
        assert table.prune() == 1
        assert table.get("GET", "/old") is None
        assert table.get("GET", "/new") is not None


# ═══════════════════════════════════════════════════════════════════════════
# Query learner
# ═══════════════════════════════════════════════════════════════════════════


class TestQueryOptimizer:
    def test_extract_pattern(self):
        raw = "SELECT *  FROM users\n WHERE id = 42 AND name = 'bob'"
        assert extract_pattern(raw) == "select * from users where id = n and name = bob"

    def test_suggests_index_for_slow_frequent_pattern(self):
        learner = QueryOptimizer()
        for i in range(11):
            learner.record(f"SELECT * FROM users WHERE email = 'u{i}@x.io'", 150.0)
        suggestions = learner.suggestions()
        assert len(suggestions) == 1
        assert suggestions[0].columns == ("email",)
        assert suggestions[0].count == 11

    def test_no_suggestion_when_fast(self):
        learner = QueryOptimizer()
        for _ in range(20):
            learner.record("SELECT * FROM users WHERE id = 1", 5.0)
        assert learner.suggestions() == []

    def test_join_column(self):
        learner = QueryOptimizer(min_count=0)
        learner.record("SELECT * FROM a JOIN b ON a_id = b.id WHERE kind = 1", 500.0)
        assert learner.suggestions()[0].columns == ("kind", "a_id")

    def test_learn_accepts_mappings_and_pairs(self):
        learner = QueryOptimizer()
        learned = learner.learn([
            {"query": "SELECT 1", "duration": 2},
            ("SELECT 2", 3.0),
            "garbage",
            {"query": None, "duration": 1},
        ])
        assert learned == 2
        assert learner.stats("SELECT 7").count == 2


# ═══════════════════════════════════════════════════════════════════════════
# Alerts and monitor
# ═══════════════════════════════════════════════════════════════════════════


def _alert(severity=AlertSeverity.HIGH, type=AlertType.LATENCY):
    return AnomalyAlert(
        severity=severity,
        type=type,
        message="slow",
        metrics={"current": 500.0},
        suggestion="cache it",
        timestamp=T0,
        endpoint="GET:/a",
    )


class TestAlertLog:
    def test_emit_to_sinks(self):
        received = []
        log = AlertLog(sinks=[received.append])
        log.emit(_alert())
        assert len(received) == 1
        assert log.total == 1
        assert log.counts_by_severity() == {"high": 1}

    def test_bounded_history(self):
        log = AlertLog(max_alerts=2)
        for _ in range(5):
            log.emit(_alert())
        assert len(log) == 2
        assert log.total == 5

    def test_failing_sink_is_logged(self, caplog):
        def broken(alert):
            raise RuntimeError("sink down")

        seen = []
        log = AlertLog(sinks=[broken, seen.append])
        with caplog.at_level(logging.ERROR, logger="pathwise.observe.alerts"):
            log.emit(_alert())
        assert seen
        assert "Alert sink" in caplog.text

    def test_jsonl_sink(self, tmp_path):
        sink = JsonlAlertSink(str(tmp_path))
        sink(_alert(AlertSeverity.CRITICAL))
        files = list(tmp_path.glob("alerts_*.jsonl"))
        assert len(files) == 1
        rows = read_alerts(str(files[0]))
        assert rows[0]["severity"] == "critical"
        assert rows[0]["endpoint"] == "GET:/a"
        assert sink.written == 1


class TestMonitor:
    def test_stats(self, clock):
        store = TimeSeriesStore(clock=clock)
        store.add(make_sample(duration=10.0))
        store.add(make_sample(duration=30.0, status=503))
        store.add(make_sample(duration=20.0, cache_hit=True))
        alerts = AlertLog()
        alerts.emit(_alert())
        monitor = Monitor(store, alerts)
        monitor.record_decision(OptimizationDecision(OptimizationAction.CACHE, 0.9, "/a", T0))

        stats = monitor.stats()
        assert stats["total_requests"] == 3
        assert stats["avg_response_time"] == pytest.approx(20.0)
        assert stats["error_rate"] == pytest.approx(1 / 3)
        assert stats["cache_hit_rate"] == pytest.approx(1 / 3)
        assert stats["anomalies_detected"] == 1
        assert stats["optimizations_applied"] == 1
        assert stats["optimizations_by_action"] == {"cache": 1}
        assert stats["current_load"] == 3

    def test_empty_stats(self, clock):
        monitor = Monitor(TimeSeriesStore(clock=clock), AlertLog())
        stats = monitor.stats()
        assert stats["total_requests"] == 0
        assert stats["avg_response_time"] == 0.0

    def test_collectors_and_prometheus(self, clock):
        monitor = Monitor(TimeSeriesStore(clock=clock), AlertLog())
        monitor.add_collector(lambda: {"cache_hits": 4})
        monitor.record_decision(OptimizationDecision(OptimizationAction.BATCH, 0.8, "/a", T0))
        text = monitor.to_prometheus()
        assert "# TYPE pathwise_optimizations_applied counter" in text
        assert "pathwise_cache_hits 4" in text
        assert 'pathwise_optimizations_by_action_total{action="batch"} 1' in text
        assert text.endswith("\n")

    def test_summary_lines(self):
        lines = summary_lines({"a": 1, "b": 0.5}, ["b", "a"])
        assert lines == ["b: 0.500", "a: 1"]
