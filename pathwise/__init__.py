"""
Pathwise - Request-path optimization engine.

A single middleware stage that observes request/response behaviour,
forecasts per-endpoint latency, detects anomalies (z-score baselines and
a small reconstruction network), and adapts caching, request coalescing,
prefetching and resource allocation on the fly.

Quick start::

    from pathwise import OptimizationEngine, OptimizerConfig, RequestContext

    engine = OptimizationEngine(OptimizerConfig(enable_caching=True))
    response = await engine.optimize(RequestContext("GET", "/users"), handler)

Or as ASGI middleware::

    from pathwise.asgi import PathwiseMiddleware
    app = PathwiseMiddleware(app, config=OptimizerConfig(enable_caching=True))
"""

__version__ = "0.1.0"

from ._structures import BloomFilter, ExponentialDecay
from ._types import (
    Allocation,
    AllocationAction,
    AlertSeverity,
    AlertType,
    AnomalyAlert,
    Baseline,
    ErrorRecord,
    Level,
    MetricSample,
    NeuralVerdict,
    OptimizationAction,
    OptimizationDecision,
    Prediction,
    PredictionRequest,
    Priority,
    RequestContext,
    RequestPattern,
    ResourceEstimate,
    Response,
    SystemResources,
)
from .config import ConfigLoader, OptimizerConfig
from .engine import OptimizationEngine
from .faults import (
    AllocationFault,
    ConfigFault,
    Fault,
    PathwiseFault,
    SchedulerFault,
    TrainingFault,
)

__all__ = [
    "__version__",
    # Structures
    "BloomFilter",
    "ExponentialDecay",
    # Types
    "Allocation",
    "AllocationAction",
    "AlertSeverity",
    "AlertType",
    "AnomalyAlert",
    "Baseline",
    "ErrorRecord",
    "Level",
    "MetricSample",
    "NeuralVerdict",
    "OptimizationAction",
    "OptimizationDecision",
    "Prediction",
    "PredictionRequest",
    "Priority",
    "RequestContext",
    "RequestPattern",
    "ResourceEstimate",
    "Response",
    "SystemResources",
    # Config
    "ConfigLoader",
    "OptimizerConfig",
    # Engine
    "OptimizationEngine",
    # Faults
    "AllocationFault",
    "ConfigFault",
    "Fault",
    "PathwiseFault",
    "SchedulerFault",
    "TrainingFault",
]
