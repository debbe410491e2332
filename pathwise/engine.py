"""
Optimization engine - the per-request orchestrator.

One engine instance owns every learned component and runs each request
through the same pipeline::

    predict ─► cache lookup ──(hit)───────────────────────► stamp
                    │
                  (miss)
                    ▼
               allocate ─► coalesce? ─► route gate ─► downstream (once)
                               │
                               ▼
          record ─► detect (statistical + neural) ─► heal
                               │
                               ▼
        patterns / health / allocator reward / queries ─► cache ─► compress ─► stamp

Downstream exceptions are recorded and re-raised unchanged.  Nothing in
the pipeline holds a lock across an ``await``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from ._types import (
    AlertSeverity,
    AlertType,
    Allocation,
    AnomalyAlert,
    Downstream,
    ErrorRecord,
    MetricSample,
    OptimizationAction,
    OptimizationDecision,
    Prediction,
    PredictionRequest,
    Priority,
    RequestContext,
    Response,
    SystemResources,
    endpoint_key,
)
from .config import OptimizerConfig
from .detect.neural import NeuralDetector
from .detect.statistical import StatisticalDetector, Thresholds
from .observe.alerts import AlertLog
from .observe.monitor import Monitor
from .observe.patterns import PatternTable
from .observe.queries import QueryOptimizer
from .observe.store import TimeSeriesStore
from .predict import DEFAULT_PREDICTION, PerformancePredictor
from .resources import ResourceProbe, system_resources
from .scheduler.allocator import ResourceAllocator, latency_reward
from .scheduler.balancer import HealthScorer
from .scheduler.healing import AutoHealer
from .scheduler.training import ScheduleHandle, TrainingScheduler
from .serving.batching import RequestCoalescer
from .serving.cache import AdaptiveCache, cache_key
from .serving.compression import compress_response
from .serving.routes import RouteFilter

logger = logging.getLogger("pathwise.engine")

CLIENT_CLOSED_REQUEST = 499

HEADER_CACHE = "x-cache"
HEADER_CONFIDENCE = "x-ml-prediction-confidence"
HEADER_APPLIED = "x-optimization-applied"
HEADER_ANOMALY = "x-anomaly-score"
HEADER_PRIORITY = "x-priority"

SUGGEST_RECONSTRUCTION = "Request profile deviates from learned traffic; inspect payload size and query count"

_LOWER_PRIORITY = {
    Priority.HIGH: Priority.NORMAL,
    Priority.NORMAL: Priority.LOW,
    Priority.LOW: Priority.LOW,
}

RESOURCE_REFRESH_SECONDS = 1.0


class _RequestPlan:
    """Per-request decisions made before downstream runs."""

    __slots__ = ("prediction", "applied", "priority", "allocation",
                 "force_cache", "force_batch", "cache_key")

    def __init__(self, priority: Priority):
        self.prediction: Optional[Prediction] = None
        self.applied: Optional[OptimizationAction] = None
        self.priority = priority
        self.allocation: Optional[Allocation] = None
        self.force_cache = False
        self.force_batch = False
        self.cache_key: Optional[str] = None


class OptimizationEngine:
    """
    Request-path optimizer.

    Components default to instances built from ``config``; any of them
    can be passed in to share or replace it.

    Usage::

        engine = OptimizationEngine(OptimizerConfig(enable_caching=True))
        response = await engine.optimize(request, lambda: handler(request))
    """

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        *,
        store: Optional[TimeSeriesStore] = None,
        patterns: Optional[PatternTable] = None,
        predictor: Optional[PerformancePredictor] = None,
        detector: Optional[StatisticalDetector] = None,
        neural: Optional[NeuralDetector] = None,
        allocator: Optional[ResourceAllocator] = None,
        health: Optional[HealthScorer] = None,
        cache: Optional[AdaptiveCache] = None,
        coalescer: Optional[RequestCoalescer] = None,
        routes: Optional[RouteFilter] = None,
        queries: Optional[QueryOptimizer] = None,
        alerts: Optional[AlertLog] = None,
        resources: Optional[Callable[[], SystemResources]] = None,
        probe: Optional[ResourceProbe] = None,
        prefetch_hook: Optional[Callable[[List[str]], Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = cfg = config or OptimizerConfig()
        self._clock = clock

        self.store = store if store is not None else TimeSeriesStore(
            cfg.metrics.retention_hours, cfg.metrics.max_samples, clock=clock,
        )
        self.patterns = patterns if patterns is not None else PatternTable(
            cfg.metrics.pattern_alpha, cfg.metrics.pattern_ttl_seconds, clock=clock,
        )
        self.predictor = predictor if predictor is not None else PerformancePredictor()
        self.thresholds = Thresholds(max_memory_mb=cfg.performance.max_memory_mb)
        self.detector = detector if detector is not None else StatisticalDetector(self.thresholds)
        self.neural = neural if neural is not None else NeuralDetector(
            hidden_size=cfg.neural.hidden_size,
            learning_rate=cfg.neural.learning_rate,
            threshold=cfg.neural.threshold,
            min_training_samples=cfg.neural.min_training_samples,
            max_training_samples=cfg.ml.max_training_samples,
            seed=cfg.ml.seed,
        )
        self.allocator = allocator if allocator is not None else ResourceAllocator(
            epsilon=cfg.allocator.epsilon,
            learning_rate=cfg.allocator.learning_rate,
            discount=cfg.allocator.discount,
            seed=cfg.ml.seed,
        )
        self.health = health if health is not None else HealthScorer(clock=clock)
        self.cache = cache if cache is not None else AdaptiveCache(
            default_ttl_ms=cfg.cache.default_ttl_ms,
            staircase=cfg.cache.ttl_staircase,
            max_entries=cfg.cache.max_entries,
            cacheable_methods=cfg.cache.cacheable_methods,
            cacheable_statuses=cfg.cache.cacheable_statuses,
            clock=clock,
        )
        self.coalescer = coalescer if coalescer is not None else RequestCoalescer(
            window_ms=cfg.batching.window_ms,
            min_frequency=cfg.batching.min_frequency,
            recency_seconds=cfg.batching.recency_seconds,
        )
        self.routes = routes if routes is not None else RouteFilter(
            cfg.routes.known, capacity=cfg.routes.capacity, fp_rate=cfg.routes.fp_rate,
        )
        self.queries = queries if queries is not None else QueryOptimizer()
        self.alerts = alerts if alerts is not None else AlertLog(max_alerts=cfg.metrics.alert_history)
        self.healer = AutoHealer(cache=self.cache, health=self.health)
        self.monitor = Monitor(self.store, self.alerts)
        self.monitor.add_collector(lambda: self.cache.stats().to_dict())
        self.monitor.add_collector(self.coalescer.stats)
        self.monitor.add_collector(self._allocator_counters)

        self.scheduler = TrainingScheduler(
            self.store,
            self.predictor,
            self.detector,
            self.neural,
            patterns=self.patterns,
            cache=self.cache,
            interval_minutes=cfg.ml.training_interval_minutes,
            cleanup_interval_seconds=cfg.metrics.cleanup_interval_seconds,
            epochs=cfg.ml.training_epochs,
        )

        self._resources_provider = resources if resources is not None else system_resources
        self._resources: Optional[SystemResources] = None
        self._resources_at = 0.0
        self._probe = probe if probe is not None else (ResourceProbe() if cfg.ml.enabled else None)
        self._prefetch_hook = prefetch_hook
        self._background: Set[asyncio.Future] = set()

        self._effects: Dict[OptimizationAction, Callable[[RequestContext, _RequestPlan], None]] = {
            OptimizationAction.CACHE: self._effect_cache,
            OptimizationAction.PREFETCH: self._effect_prefetch,
            OptimizationAction.BATCH: self._effect_batch,
            OptimizationAction.OPTIMIZE: self._effect_optimize,
            OptimizationAction.THROTTLE: self._effect_throttle,
        }

    # ── public API ───────────────────────────────────────────────────

    async def optimize(self, request: RequestContext, downstream: Downstream) -> Response:
        """Run ``request`` through the pipeline; ``downstream`` runs at most once."""
        cfg = self.config
        features = cfg.features
        method = request.method.upper()
        key = endpoint_key(method, request.path)
        plan = _RequestPlan(Priority.parse(request.header(HEADER_PRIORITY)))

        if cfg.ml.enabled and features.performance_prediction:
            self._plan_prediction(request, plan)
        caching = cfg.enable_caching or plan.force_cache or self.healer.is_boosted(key)
        if caching:
            plan.cache_key = cache_key(request)
            cached = self.cache.get(plan.cache_key)
            if cached is not None:
                return self._serve_hit(request, cached, plan)

        # Hits never reach downstream and take no allocation.
        if cfg.ml.enabled and features.resource_allocation:
            plan.allocation = self._allocate(plan.priority)
            request.state["pathwise.allocation"] = plan.allocation

        started = time.perf_counter()
        snapshot = self._probe.begin() if self._probe is not None else None
        try:
            response = await self._execute(request, downstream, plan)
        except asyncio.CancelledError:
            self._record_cancelled(request, started)
            raise
        except Exception as exc:
            self._record_failure(request, exc, started, plan)
            raise

        duration_ms = (time.perf_counter() - started) * 1000.0
        memory_delta, cpu_micros = self._probe.end(snapshot) if snapshot is not None else (0, 0.0)
        sample = MetricSample(
            timestamp=self._clock(),
            method=method,
            path=request.path,
            duration_ms=duration_ms,
            status_code=response.status,
            memory_delta_bytes=memory_delta,
            cpu_micros=cpu_micros,
            response_size_bytes=response.size,
            query_count=len(request.state.get("query_executions", ()) or ()),
        )
        self.store.add(sample)
        anomaly_score = self._detect(sample)
        pattern = self._learn(request, sample, plan)

        if caching and self.cache.is_cacheable(method, response):
            entry = self.cache.set(plan.cache_key, response, pattern.frequency)
            logger.debug("Cached %s for %dms", plan.cache_key, entry.ttl_ms)

        # The handler may hand back a shared Response; never mutate it.
        response = self._finish(request, response.copy())
        self._stamp(response, plan, hit=False, anomaly_score=anomaly_score)
        return response

    wrap = optimize

    def stats(self) -> Dict[str, Any]:
        return self.monitor.stats()

    def to_prometheus(self) -> str:
        return self.monitor.to_prometheus()

    def train(self):
        """Retrain every model now (synchronous)."""
        return self.scheduler.tick()

    def start(self) -> ScheduleHandle:
        """Start background training and maintenance on the running loop."""
        return self.scheduler.start()

    def register_routes(self, routes: List[str]) -> None:
        self.routes.rebuild(list(self.routes.routes) + list(routes))

    # ── pipeline stages ──────────────────────────────────────────────

    def _plan_prediction(self, request: RequestContext, plan: _RequestPlan) -> None:
        now = time.localtime(self._clock())
        query = PredictionRequest(
            method=request.method.upper(),
            path=request.path,
            hour=now.tm_hour,
            weekday=now.tm_wday,
            headers=request.headers,
        )
        try:
            prediction = self.predictor.predict(
                query, self.store.recent_metrics(self.config.metrics.prediction_window),
            )
        except Exception:
            logger.exception("Prediction failed for %s; using default", query.key)
            prediction = DEFAULT_PREDICTION
        plan.prediction = prediction

        if prediction.confidence > self.config.ml.prediction_threshold:
            action = prediction.recommended_action
            plan.applied = action
            self._effects[action](request, plan)
            self.monitor.record_decision(OptimizationDecision(
                action=action,
                confidence=prediction.confidence,
                path=request.path,
                applied_at=self._clock(),
            ))
            logger.debug("Applied %s to %s (confidence %.2f)", action.value, query.key, prediction.confidence)

    def _allocate(self, priority: Priority) -> Allocation:
        return self.allocator.allocate(self.store.current_load(), self._system_resources(), priority)

    async def _execute(self, request: RequestContext, downstream: Downstream, plan: _RequestPlan) -> Response:
        async def call() -> Response:
            if not self.routes.allows(request.path):
                return self.routes.reject(request.path)
            result = downstream()
            if inspect.isawaitable(result):
                result = await result
            return result

        if self._should_coalesce(request, plan):
            return await self.coalescer.run(plan.cache_key or cache_key(request), call)
        return await call()

    def _should_coalesce(self, request: RequestContext, plan: _RequestPlan) -> bool:
        if not self.config.enable_batching:
            return False
        if plan.force_batch:
            return request.method.upper() in self.coalescer.safe_methods
        recent = self.patterns.recent_count(
            request.method, request.path, self.coalescer.recency_seconds,
        )
        return self.coalescer.eligible(request.method, recent)

    def _serve_hit(self, request: RequestContext, cached: Response, plan: _RequestPlan) -> Response:
        sample = MetricSample(
            timestamp=self._clock(),
            method=request.method.upper(),
            path=request.path,
            duration_ms=0.0,
            status_code=cached.status,
            response_size_bytes=cached.size,
            cache_hit=True,
        )
        self.store.add(sample)
        self.patterns.observe(sample.method, sample.path, sample.duration_ms)
        response = self._finish(request, cached)
        self._stamp(response, plan, hit=True, anomaly_score=0.0)
        return response

    def _detect(self, sample: MetricSample) -> float:
        """Run both detectors; emit and heal alerts; return the anomaly score."""
        cfg = self.config
        if not (cfg.ml.enabled and cfg.features.anomaly_detection):
            return 0.0
        history = self.store.recent_metrics(cfg.metrics.detection_window)
        try:
            alerts = self.detector.detect(sample, history, self.thresholds)
            statistical = self.detector.score(sample)
            verdict = self.neural.detect_anomaly(sample)
        except Exception:
            logger.exception("Anomaly detection failed for %s", sample.key)
            return 0.0

        if verdict.is_anomaly:
            alerts.append(AnomalyAlert(
                severity=AlertSeverity.HIGH if verdict.confidence >= 1.0 else AlertSeverity.MEDIUM,
                type=AlertType.RECONSTRUCTION,
                message=f"Unusual request profile (reconstruction error {verdict.score:.3f})",
                metrics={"error": verdict.score, "threshold": self.neural.threshold},
                suggestion=SUGGEST_RECONSTRUCTION,
                timestamp=sample.timestamp,
                endpoint=sample.key,
            ))

        for alert in alerts:
            self.alerts.emit(alert)
            if cfg.features.auto_healing:
                self.healer.heal(alert)
        return max(statistical, min(verdict.score, 1.0))

    def _learn(self, request: RequestContext, sample: MetricSample, plan: _RequestPlan):
        cfg = self.config
        pattern = self.patterns.observe(sample.method, sample.path, sample.duration_ms)
        if cfg.ml.enabled and cfg.features.load_balancing:
            self.health.update_metrics(sample.key, sample.duration_ms, not sample.is_server_error)
        if plan.allocation is not None:
            reward = latency_reward(sample.duration_ms, cfg.performance.target_latency_ms)
            self.allocator.update_q_value(plan.allocation.state, plan.allocation.strategy, reward)
        if cfg.ml.enabled and cfg.features.query_optimization:
            executions = request.state.get("query_executions")
            if executions:
                self.queries.learn(executions)
        return pattern

    def _record_failure(
        self,
        request: RequestContext,
        exc: BaseException,
        started: float,
        plan: _RequestPlan,
    ) -> None:
        now = self._clock()
        method = request.method.upper()
        sample = MetricSample(
            timestamp=now,
            method=method,
            path=request.path,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            status_code=500,
        )
        self.store.add(sample)
        self.store.add_error(ErrorRecord(
            timestamp=now,
            method=method,
            path=request.path,
            error=str(exc),
            error_type=type(exc).__name__,
        ))
        logger.warning("Downstream failed for %s: %s", sample.key, exc)
        self._detect(sample)
        self.patterns.observe(method, request.path, sample.duration_ms)
        if self.config.ml.enabled and self.config.features.load_balancing:
            self.health.update_metrics(sample.key, sample.duration_ms, False)
        if plan.allocation is not None:
            self.allocator.update_q_value(plan.allocation.state, plan.allocation.strategy, -1.0)

    def _record_cancelled(self, request: RequestContext, started: float) -> None:
        self.store.add(MetricSample(
            timestamp=self._clock(),
            method=request.method.upper(),
            path=request.path,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            status_code=CLIENT_CLOSED_REQUEST,
        ))
        logger.debug("Request %s %s cancelled", request.method, request.path)

    def _finish(self, request: RequestContext, response: Response) -> Response:
        if self.config.enable_compression:
            return compress_response(
                response,
                request.header("accept-encoding"),
                minimum_size=self.config.compression.minimum_size,
                level=self.config.compression.level,
            )
        return response

    def _stamp(self, response: Response, plan: _RequestPlan, *, hit: bool, anomaly_score: float) -> None:
        confidence = plan.prediction.confidence if plan.prediction is not None else 0.0
        response.headers[HEADER_CACHE] = "HIT" if hit else "MISS"
        response.headers[HEADER_CONFIDENCE] = str(int(round(confidence * 100)))
        response.headers[HEADER_APPLIED] = plan.applied.value if plan.applied is not None else "none"
        response.headers[HEADER_ANOMALY] = f"{anomaly_score:.3f}"

    # ── action effects ───────────────────────────────────────────────

    def _effect_cache(self, request: RequestContext, plan: _RequestPlan) -> None:
        plan.force_cache = True

    def _effect_prefetch(self, request: RequestContext, plan: _RequestPlan) -> None:
        if not self.config.enable_prefetching:
            return
        related = [p.path for p in self.patterns.related(request.path)]
        request.state["pathwise.prefetch"] = related
        if related and self._prefetch_hook is not None:
            try:
                result = self._prefetch_hook(related)
            except Exception:
                logger.exception("Prefetch hook failed for %s", request.path)
                return
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._prefetch_done)

    def _prefetch_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Prefetch hook failed", exc_info=task.exception())

    def _effect_batch(self, request: RequestContext, plan: _RequestPlan) -> None:
        plan.force_batch = True

    def _effect_optimize(self, request: RequestContext, plan: _RequestPlan) -> None:
        request.state["pathwise.optimize_queries"] = True

    def _effect_throttle(self, request: RequestContext, plan: _RequestPlan) -> None:
        plan.priority = _LOWER_PRIORITY[plan.priority]

    # ── helpers ──────────────────────────────────────────────────────

    def _system_resources(self) -> SystemResources:
        now = time.monotonic()
        if self._resources is None or now - self._resources_at > RESOURCE_REFRESH_SECONDS:
            self._resources = self._resources_provider()
            self._resources_at = now
        return self._resources

    def _allocator_counters(self) -> Dict[str, float]:
        stats = self.allocator.stats()
        return {
            "allocator_selections": stats["selections"],
            "allocator_explorations": stats["explorations"],
        }
