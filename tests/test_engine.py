"""
End-to-end tests for the optimization engine pipeline.
"""

import asyncio
import gzip

import pytest

from pathwise._types import (
    AlertType,
    ErrorRecord,
    OptimizationAction,
    Prediction,
    ResourceEstimate,
    Response,
)
from pathwise.config import FeatureFlags, MLConfig, OptimizerConfig
from pathwise.engine import (
    HEADER_ANOMALY,
    HEADER_APPLIED,
    HEADER_CACHE,
    HEADER_CONFIDENCE,
    OptimizationEngine,
)
from pathwise.observe.store import TimeSeriesStore
from pathwise.predict import PerformancePredictor
from pathwise.scheduler.training import TrainingReport

from tests.conftest import (
    CountingHandler,
    fixed_resources,
    make_engine,
    make_request,
    samples_for,
)


class FixedPredictor(PerformancePredictor):
    """Always recommends the same action with the same confidence."""

    def __init__(self, action, confidence=0.9):
        super().__init__()
        self.action = action
        self.confidence = confidence

    def predict(self, request, history=()):
        return Prediction(
            expected_duration_ms=20.0,
            confidence=self.confidence,
            recommended_action=self.action,
            resource_estimate=ResourceEstimate(1.0, 1.0, 1.0),
        )


def _predicting_engine(clock, action, **options):
    config = OptimizerConfig(ml=MLConfig(enabled=True, seed=7), **options)
    return OptimizationEngine(
        config,
        predictor=FixedPredictor(action),
        clock=clock,
        resources=fixed_resources,
    )


class TestPassThrough:
    @pytest.mark.asyncio
    async def test_headers_stamped_with_everything_off(self, clock):
        engine = make_engine(clock)
        handler = CountingHandler()
        response = await engine.optimize(make_request(), handler)
        assert handler.calls == 1
        assert response.status == 200
        assert response.headers[HEADER_CACHE] == "MISS"
        assert response.headers[HEADER_CONFIDENCE] == "0"
        assert response.headers[HEADER_APPLIED] == "none"
        assert response.headers[HEADER_ANOMALY] == "0.000"
        assert len(engine.store) == 1

    @pytest.mark.asyncio
    async def test_sync_downstream(self, clock):
        engine = make_engine(clock)
        response = await engine.optimize(make_request(), lambda: Response(status=204))
        assert response.status == 204

    @pytest.mark.asyncio
    async def test_wrap_is_optimize(self, clock):
        engine = make_engine(clock)
        response = await engine.wrap(make_request(), CountingHandler())
        assert response.headers[HEADER_CACHE] == "MISS"


class TestCaching:
    @pytest.mark.asyncio
    async def test_miss_hit_then_expiry(self, clock):
        engine = make_engine(clock, enable_caching=True)
        handler = CountingHandler()

        first = await engine.optimize(make_request("/items"), handler)
        second = await engine.optimize(make_request("/items"), handler)
        assert first.headers[HEADER_CACHE] == "MISS"
        assert second.headers[HEADER_CACHE] == "HIT"
        assert second.body == first.body
        assert handler.calls == 1

        clock.advance(61)
        third = await engine.optimize(make_request("/items"), handler)
        assert third.headers[HEADER_CACHE] == "MISS"
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_hit_recorded_as_sample(self, clock):
        engine = make_engine(clock, enable_caching=True)
        handler = CountingHandler()
        await engine.optimize(make_request("/items"), handler)
        await engine.optimize(make_request("/items"), handler)
        hits = [s for s in engine.store.recent_metrics(10) if s.cache_hit]
        assert len(hits) == 1
        assert engine.patterns.frequency("GET", "/items") == 2

    @pytest.mark.asyncio
    async def test_post_not_cached(self, clock):
        engine = make_engine(clock, enable_caching=True)
        handler = CountingHandler()
        await engine.optimize(make_request("/items", method="POST", body=b"x"), handler)
        await engine.optimize(make_request("/items", method="POST", body=b"x"), handler)
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_error_status_not_cached(self, clock):
        engine = make_engine(clock, enable_caching=True)
        handler = CountingHandler(status=503)
        await engine.optimize(make_request(), handler)
        await engine.optimize(make_request(), handler)
        assert handler.calls == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_exception_reraised_and_recorded(self, clock):
        engine = make_engine(clock)
        error = LookupError("missing row")

        async def broken():
            raise error

        with pytest.raises(LookupError) as excinfo:
            await engine.optimize(make_request("/x"), broken)
        assert excinfo.value is error

        sample = engine.store.recent_metrics(1)[0]
        assert sample.status_code == 500
        recorded = engine.store.recent_errors(1)[0]
        assert isinstance(recorded, ErrorRecord)
        assert recorded.error_type == "LookupError"
        assert recorded.error == "missing row"

    @pytest.mark.asyncio
    async def test_cancellation_records_499_and_caches_nothing(self, clock):
        engine = make_engine(clock, enable_caching=True)

        async def slow():
            await asyncio.sleep(10)

        task = asyncio.ensure_future(engine.optimize(make_request("/slow"), slow))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.store.recent_metrics(1)[0].status_code == 499
        assert len(engine.cache) == 0

    @pytest.mark.asyncio
    async def test_error_burst_raises_alert(self, clock):
        engine = make_engine(
            clock, ml=True,
            features=FeatureFlags(performance_prediction=False),
        )

        async def broken():
            raise RuntimeError("db down")

        for _ in range(11):
            with pytest.raises(RuntimeError):
                await engine.optimize(make_request("/x"), broken)

        types = {a.type for a in engine.alerts.recent(50)}
        assert AlertType.ERROR_RATE in types
        assert engine.allocator.stats()["updates"] == 11


class TestRouteGate:
    @pytest.mark.asyncio
    async def test_unknown_route_rejected_without_downstream(self, clock):
        engine = make_engine(clock)
        engine.register_routes(["/known", "/users/*"])
        handler = CountingHandler()

        rejected = await engine.optimize(make_request("/unknown/path"), handler)
        assert rejected.status == 404
        assert handler.calls == 0
        assert engine.store.recent_metrics(1)[0].status_code == 404

        ok = await engine.optimize(make_request("/users/7"), handler)
        assert ok.status == 200
        assert handler.calls == 1


class TestAnomalies:
    @pytest.mark.asyncio
    async def test_latency_spike_scores_and_heals(self, clock):
        store = TimeSeriesStore(clock=clock)
        for sample in samples_for("/spiky", [10.0, 12.0] * 15):
            store.add(sample)
        config = OptimizerConfig(
            ml=MLConfig(enabled=True, seed=7),
            features=FeatureFlags(performance_prediction=False),
        )
        engine = OptimizationEngine(config, store=store, clock=clock, resources=fixed_resources)

        async def spike():
            await asyncio.sleep(0.05)
            return await CountingHandler()()

        response = await engine.optimize(make_request("/spiky"), spike)
        assert response.headers[HEADER_ANOMALY] == "1.000"
        latency = [a for a in engine.alerts.recent(10) if a.type is AlertType.LATENCY]
        assert latency and latency[0].endpoint == "GET:/spiky"
        assert engine.healer.is_boosted("GET:/spiky")

        handler = CountingHandler()
        second = await engine.optimize(make_request("/spiky"), handler)
        third = await engine.optimize(make_request("/spiky"), handler)
        assert second.headers[HEADER_CACHE] == "MISS"
        assert third.headers[HEADER_CACHE] == "HIT"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_allocator_rewarded_once_per_request(self, clock):
        engine = make_engine(clock, ml=True, features=FeatureFlags(performance_prediction=False))
        await engine.optimize(make_request(), CountingHandler())
        assert engine.allocator.stats()["updates"] == 1

    @pytest.mark.asyncio
    async def test_cache_hits_take_no_allocation(self, clock):
        engine = make_engine(
            clock, ml=True, enable_caching=True,
            features=FeatureFlags(performance_prediction=False),
        )
        handler = CountingHandler()
        await engine.optimize(make_request(), handler)
        hit_request = make_request()
        response = await engine.optimize(hit_request, handler)
        assert response.headers[HEADER_CACHE] == "HIT"
        assert "pathwise.allocation" not in hit_request.state
        stats = engine.allocator.stats()
        assert stats["selections"] == 1
        assert stats["updates"] == 1

    @pytest.mark.asyncio
    async def test_priority_header_sets_workers(self, clock):
        engine = make_engine(clock, ml=True, features=FeatureFlags(performance_prediction=False))
        request = make_request(headers={"x-priority": "high"})
        await engine.optimize(request, CountingHandler())
        assert request.state["pathwise.allocation"].workers == 2


class TestPredictiveActions:
    def test_every_action_has_an_effect(self, clock):
        engine = make_engine(clock)
        assert set(engine._effects) == set(OptimizationAction)

    @pytest.mark.asyncio
    async def test_throttle_lowers_priority(self, clock):
        engine = _predicting_engine(clock, OptimizationAction.THROTTLE)
        request = make_request()
        response = await engine.optimize(request, CountingHandler())
        assert response.headers[HEADER_APPLIED] == "throttle"
        assert response.headers[HEADER_CONFIDENCE] == "90"
        assert request.state["pathwise.allocation"].workers == 1
        assert engine.stats()["optimizations_by_action"] == {"throttle": 1}

    @pytest.mark.asyncio
    async def test_low_confidence_not_applied(self, clock):
        engine = _predicting_engine(clock, OptimizationAction.THROTTLE)
        engine.predictor.confidence = 0.5
        response = await engine.optimize(make_request(), CountingHandler())
        assert response.headers[HEADER_APPLIED] == "none"
        assert response.headers[HEADER_CONFIDENCE] == "50"

    @pytest.mark.asyncio
    async def test_cache_action_forces_caching(self, clock):
        engine = _predicting_engine(clock, OptimizationAction.CACHE)
        handler = CountingHandler()
        await engine.optimize(make_request("/c"), handler)
        response = await engine.optimize(make_request("/c"), handler)
        assert response.headers[HEADER_CACHE] == "HIT"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_optimize_action_flags_request(self, clock):
        engine = _predicting_engine(clock, OptimizationAction.OPTIMIZE)
        request = make_request()
        await engine.optimize(request, CountingHandler())
        assert request.state["pathwise.optimize_queries"] is True

    @pytest.mark.asyncio
    async def test_prefetch_hook_receives_related_paths(self, clock):
        requested = []

        async def hook(paths):
            requested.append(paths)

        config = OptimizerConfig(ml=MLConfig(enabled=True, seed=7), enable_prefetching=True)
        engine = OptimizationEngine(
            config,
            predictor=FixedPredictor(OptimizationAction.PREFETCH),
            prefetch_hook=hook,
            clock=clock,
            resources=fixed_resources,
        )
        for _ in range(3):
            engine.patterns.observe("GET", "/api/users/2", 5.0)
        engine.patterns.observe("GET", "/api/users/3", 5.0)

        request = make_request("/api/users/1")
        await engine.optimize(request, CountingHandler())
        await asyncio.sleep(0)
        assert request.state["pathwise.prefetch"] == ["/api/users/2", "/api/users/3"]
        assert requested == [["/api/users/2", "/api/users/3"]]

    @pytest.mark.asyncio
    async def test_prefetch_needs_flag(self, clock):
        engine = _predicting_engine(clock, OptimizationAction.PREFETCH)
        engine.patterns.observe("GET", "/api/users/2", 5.0)
        request = make_request("/api/users/1")
        await engine.optimize(request, CountingHandler())
        assert "pathwise.prefetch" not in request.state

    @pytest.mark.asyncio
    async def test_query_executions_learned(self, clock):
        engine = _predicting_engine(clock, OptimizationAction.BATCH)

        async def handler_with_queries(request):
            request.state["query_executions"] = [
                {"query": "SELECT * FROM t WHERE id = 1", "duration": 3.0},
            ]
            return await CountingHandler()()

        request = make_request()
        await engine.optimize(request, lambda: handler_with_queries(request))
        assert engine.queries.stats("SELECT * FROM t WHERE id = 9").count == 1
        assert engine.store.recent_metrics(1)[0].query_count == 1


class TestBatching:
    @pytest.mark.asyncio
    async def test_hot_endpoint_coalesced(self, clock):
        engine = make_engine(clock, enable_batching=True)
        for _ in range(11):
            engine.patterns.observe("GET", "/hot", 5.0)

        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return await CountingHandler()()

        responses = await asyncio.gather(
            *[engine.optimize(make_request("/hot"), slow) for _ in range(5)]
        )
        assert calls == 1
        assert all(r.status == 200 for r in responses)
        assert all(r.headers[HEADER_CACHE] == "MISS" for r in responses)
        assert engine.stats()["batch_coalesced"] == 4

    @pytest.mark.asyncio
    async def test_cold_endpoint_not_coalesced(self, clock):
        engine = make_engine(clock, enable_batching=True)
        handler = CountingHandler()
        await asyncio.gather(*[engine.optimize(make_request("/cold"), handler) for _ in range(3)])
        assert handler.calls == 3


class TestCompression:
    @pytest.mark.asyncio
    async def test_gzip_when_accepted(self, clock):
        engine = make_engine(clock, enable_compression=True)
        handler = CountingHandler(body=b"x" * 5000, headers={"content-type": "text/plain"})
        response = await engine.optimize(
            make_request(headers={"accept-encoding": "gzip"}), handler,
        )
        assert response.headers["content-encoding"] == "gzip"
        assert gzip.decompress(response.body) == b"x" * 5000

    @pytest.mark.asyncio
    async def test_cache_holds_uncompressed_body(self, clock):
        engine = make_engine(clock, enable_compression=True, enable_caching=True)
        handler = CountingHandler(body=b"x" * 5000, headers={"content-type": "text/plain"})
        await engine.optimize(make_request(headers={"accept-encoding": "gzip"}), handler)
        plain = await engine.optimize(make_request(), handler)
        assert plain.headers[HEADER_CACHE] == "HIT"
        assert plain.body == b"x" * 5000
        assert "content-encoding" not in plain.headers

    @pytest.mark.asyncio
    async def test_shared_handler_response_never_mutated(self, clock):
        engine = make_engine(clock, enable_compression=True)
        shared = Response(status=200, headers={"content-type": "text/plain"}, body=b"y" * 4096)

        def handler():
            return shared

        zipped = await engine.optimize(make_request(headers={"accept-encoding": "gzip"}), handler)
        plain = await engine.optimize(make_request(), handler)
        assert zipped.headers["content-encoding"] == "gzip"
        assert plain.body == b"y" * 4096
        assert "content-encoding" not in plain.headers
        assert shared.body == b"y" * 4096
        assert shared.headers == {"content-type": "text/plain"}


class TestStatsAndTraining:
    @pytest.mark.asyncio
    async def test_stats(self, clock):
        engine = make_engine(clock, enable_caching=True)
        handler = CountingHandler()
        for _ in range(3):
            await engine.optimize(make_request("/s"), handler)
        stats = engine.stats()
        assert stats["total_requests"] == 3
        assert stats["cache_hits"] == 2
        assert stats["cache_hit_rate"] == pytest.approx(2 / 3)
        assert "pathwise_total_requests 3" in engine.to_prometheus()

    @pytest.mark.asyncio
    async def test_train_now(self, clock):
        engine = make_engine(clock, ml=True, features=FeatureFlags(performance_prediction=False))
        for sample in samples_for("/t", [20.0, 30.0] * 15):
            engine.store.add(sample)
        report = engine.train()
        assert isinstance(report, TrainingReport)
        assert report.endpoints == 1
        assert engine.neural.trained
