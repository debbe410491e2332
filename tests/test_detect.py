"""
Tests for the statistical and neural anomaly detectors.
"""

import random
from dataclasses import replace

import numpy as np
import pytest

from pathwise._types import AlertSeverity, AlertType
from pathwise.detect.neural import NeuralDetector, feature_span
from pathwise.detect.statistical import (
    StatisticalDetector,
    Thresholds,
    compute_baseline,
    z_score,
)
from pathwise.faults import TrainingFault

from tests.conftest import T0, make_sample, samples_for


# ═══════════════════════════════════════════════════════════════════════════
# Statistical detector
# ═══════════════════════════════════════════════════════════════════════════


class TestBaseline:
    def test_population_statistics(self):
        baseline = compute_baseline([90.0, 110.0] * 10)
        assert baseline.mean == pytest.approx(100.0)
        assert baseline.stddev == pytest.approx(10.0)
        assert baseline.count == 20

    def test_empty(self):
        assert compute_baseline([]) is None

    def test_zero_variance_z_is_zero(self):
        baseline = compute_baseline([50.0] * 5)
        assert z_score(500.0, baseline) == 0.0


class TestStatisticalDetector:
    def test_zero_variance_history_never_alerts(self):
        detector = StatisticalDetector()
        history = samples_for("/a", [50.0] * 30)
        spike = make_sample("/a", 5000.0)
        assert detector.detect(spike, history + [spike]) == []
        assert detector.score(spike) == 0.0

    def test_ten_sigma_spike_is_critical(self):
        detector = StatisticalDetector()
        history = samples_for("/a", [90.0, 110.0] * 15)
        spike = make_sample("/a", 200.0)
        alerts = detector.detect(spike, history + [spike])
        assert len(alerts) == 1
        assert alerts[0].type is AlertType.LATENCY
        assert alerts[0].severity is AlertSeverity.CRITICAL
        assert alerts[0].metrics["z_score"] == pytest.approx(10.0)
        assert alerts[0].suggestion
        assert alerts[0].endpoint == "GET:/a"

    def test_four_sigma_is_high(self):
        detector = StatisticalDetector()
        history = samples_for("/a", [90.0, 110.0] * 15)
        spike = make_sample("/a", 140.0)
        alerts = detector.detect(spike, history)
        assert [a.severity for a in alerts] == [AlertSeverity.HIGH]

    def test_within_three_sigma_is_quiet(self):
        detector = StatisticalDetector()
        history = samples_for("/a", [90.0, 110.0] * 15)
        assert detector.detect(make_sample("/a", 125.0), history) == []

    def test_baseline_is_per_endpoint(self):
        detector = StatisticalDetector()
        history = samples_for("/slow", [1000.0, 1010.0] * 10) + samples_for("/fast", [9.0, 11.0] * 10)
        assert detector.detect(make_sample("/slow", 1005.0), history) == []
        assert detector.baseline("GET", "/fast") is None

    def test_memory_alert(self):
        detector = StatisticalDetector(Thresholds(max_memory_mb=10))
        sample = make_sample("/a", memory_delta_bytes=20 * 1024 * 1024)
        alerts = detector.detect(sample, [])
        assert [a.type for a in alerts] == [AlertType.MEMORY]
        assert alerts[0].severity is AlertSeverity.HIGH

    def test_error_burst_is_critical(self):
        detector = StatisticalDetector()
        history = samples_for("/a", [10.0] * 10, status=500, start=T0 - 30, step=1.0)
        current = make_sample("/a", 10.0, status=500, timestamp=T0)
        alerts = detector.detect(current, history + [current])
        assert [a.type for a in alerts] == [AlertType.ERROR_RATE]
        assert alerts[0].severity is AlertSeverity.CRITICAL
        assert alerts[0].metrics["error_count"] == 11

    def test_error_burst_ignores_old_and_other_endpoints(self):
        detector = StatisticalDetector()
        old = samples_for("/a", [10.0] * 10, status=500, start=T0 - 600)
        other = samples_for("/b", [10.0] * 10, status=500, start=T0 - 10)
        current = make_sample("/a", 10.0, status=500, timestamp=T0)
        alerts = detector.detect(current, old + other)
        assert all(a.type is not AlertType.ERROR_RATE for a in alerts)

    def test_score_uses_stored_baseline(self):
        detector = StatisticalDetector()
        assert detector.score(make_sample("/a", 500.0)) == 0.0
        detector.refresh(samples_for("/a", [90.0, 110.0] * 10))
        assert detector.score(make_sample("/a", 120.0)) == pytest.approx(0.4)
        assert detector.score(make_sample("/a", 1000.0)) == 1.0

    def test_refresh_swaps_all_baselines(self):
        detector = StatisticalDetector()
        detector.refresh(samples_for("/a", [10.0, 20.0]))
        assert detector.baseline("GET", "/a") is not None
        detector.refresh(samples_for("/b", [10.0, 20.0]))
        assert detector.baseline("GET", "/a") is None
        assert detector.baseline("GET", "/b").mean == pytest.approx(15.0)


# ═══════════════════════════════════════════════════════════════════════════
# Neural detector
# ═══════════════════════════════════════════════════════════════════════════


def _normal_traffic(n=200, seed=3):
    rng = random.Random(seed)
    return [
        make_sample(
            "/a",
            rng.uniform(40.0, 60.0),
            memory_delta_bytes=rng.randint(1000, 2000),
            cpu_micros=rng.uniform(100.0, 200.0),
            response_size_bytes=rng.randint(500, 600),
            query_count=rng.randint(1, 3),
        )
        for _ in range(n)
    ]


class TestNeuralDetector:
    def test_untrained_verdict(self):
        detector = NeuralDetector(seed=1)
        verdict = detector.detect_anomaly(make_sample())
        assert (verdict.is_anomaly, verdict.confidence, verdict.score) == (False, 0.0, 0.0)

    def test_skips_with_too_little_data(self):
        detector = NeuralDetector(min_training_samples=20, seed=1)
        assert detector.train(_normal_traffic(5), epochs=3) == []
        assert not detector.trained

    def test_rejects_zero_epochs(self):
        detector = NeuralDetector(seed=1)
        with pytest.raises(TrainingFault) as excinfo:
            detector.train(_normal_traffic(), epochs=0)
        assert excinfo.value.code == "TRAINING_FAILED"

    def test_training_returns_epoch_losses_and_swaps_state(self):
        detector = NeuralDetector(seed=1)
        before = detector.state
        losses = detector.train(_normal_traffic(), epochs=15)
        assert len(losses) == 15
        assert all(np.isfinite(losses))
        assert detector.state is not before
        assert detector.trained
        assert not before.trained

    def test_detects_outlier_not_typical(self):
        detector = NeuralDetector(seed=1)
        detector.train(_normal_traffic(), epochs=20)

        typical = make_sample(
            "/a", 50.0, memory_delta_bytes=1500, cpu_micros=150.0,
            response_size_bytes=550, query_count=2,
        )
        outlier = make_sample(
            "/a", 5000.0, memory_delta_bytes=1500, cpu_micros=150.0,
            response_size_bytes=550, query_count=2,
        )
        normal = detector.detect_anomaly(typical)
        odd = detector.detect_anomaly(outlier)

        assert not normal.is_anomaly
        assert odd.is_anomaly
        assert odd.confidence == 1.0
        assert odd.score > normal.score

    def test_constant_feature_tolerates_small_drift(self):
        detector = NeuralDetector(seed=1)
        detector.train([replace(s, response_size_bytes=1000) for s in _normal_traffic()], epochs=20)

        base = make_sample(
            "/a", 50.0, memory_delta_bytes=1500, cpu_micros=150.0,
            response_size_bytes=1000, query_count=2,
        )
        drifted = detector.detect_anomaly(replace(base, response_size_bytes=1003))
        assert not drifted.is_anomaly
        assert drifted.score < detector.threshold
        assert drifted.score == pytest.approx(detector.detect_anomaly(base).score, abs=0.02)

        huge = detector.detect_anomaly(replace(base, response_size_bytes=50_000))
        assert huge.is_anomaly

    def test_seeded_training_is_reproducible(self):
        data = _normal_traffic()
        a = NeuralDetector(seed=11).train(data, epochs=3)
        b = NeuralDetector(seed=11).train(data, epochs=3)
        assert a == pytest.approx(b)

    def test_training_capped_to_recent_samples(self):
        detector = NeuralDetector(max_training_samples=50, seed=1)
        data = _normal_traffic(100)
        detector.train(data, epochs=1)
        cpu = [s.cpu_micros for s in data[-50:]]
        assert detector.state.feature_min[2] == pytest.approx(min(cpu))


class TestFeatureSpan:
    def test_varied_feature_uses_trained_range(self):
        span = feature_span(np.array([40.0]), np.array([60.0]))
        assert span[0] == pytest.approx(20.0)

    def test_constant_feature_floored_by_magnitude(self):
        span = feature_span(np.array([1000.0, -500.0]), np.array([1000.0, -500.0]))
        assert span == pytest.approx([100.0, 50.0])

    def test_zero_feature_floored_to_one(self):
        assert feature_span(np.array([0.0]), np.array([0.0]))[0] == 1.0
