"""
Pathwise shared type definitions.

Enums, dataclasses and host-facing contracts shared across sub-packages
live here to avoid circular imports.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


# ── Enums ──────────────────────────────────────────────────────────────────

class OptimizationAction(str, Enum):
    """Action recommended by the performance predictor."""
    CACHE = "cache"
    PREFETCH = "prefetch"
    BATCH = "batch"
    OPTIMIZE = "optimize"
    THROTTLE = "throttle"


class AllocationAction(str, Enum):
    """Resource allocator action set (closed)."""
    INCREASE = "increase"
    DECREASE = "decrease"
    MAINTAIN = "maintain"
    ADAPTIVE = "adaptive"


class Level(str, Enum):
    """Discretised bucket used for allocator state."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Priority":
        if not value:
            return cls.NORMAL
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.NORMAL


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    LATENCY = "latency"
    MEMORY = "memory"
    CPU = "cpu"
    ERROR_RATE = "error_rate"
    THROUGHPUT = "throughput"
    RECONSTRUCTION = "reconstruction"


# ── Metrics ────────────────────────────────────────────────────────────────

def endpoint_key(method: str, path: str) -> str:
    """Canonical ``METHOD:path`` key for per-endpoint state."""
    return f"{method.upper()}:{path}"


@dataclass(frozen=True, slots=True)
class MetricSample:
    """One completed request.  Immutable once recorded."""
    timestamp: float
    method: str
    path: str
    duration_ms: float
    status_code: int
    memory_delta_bytes: int = 0
    cpu_micros: float = 0.0
    response_size_bytes: int = 0
    query_count: int = 0
    cache_hit: bool = False

    def __post_init__(self) -> None:
        if self.duration_ms < 0:
            object.__setattr__(self, "duration_ms", 0.0)

    @property
    def key(self) -> str:
        return endpoint_key(self.method, self.path)

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def features(self) -> List[float]:
        """Feature vector for the neural detector."""
        return [
            float(self.duration_ms),
            float(self.memory_delta_bytes),
            float(self.cpu_micros),
            float(self.response_size_bytes),
            float(self.query_count),
        ]


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    timestamp: float
    method: str
    path: str
    error: str
    error_type: str = "Exception"


@dataclass(frozen=True, slots=True)
class Baseline:
    """Per-endpoint latency baseline, recomputed each detection cycle."""
    mean: float
    stddev: float
    p95: float
    p99: float
    count: int = 0


@dataclass
class AnomalyAlert:
    severity: AlertSeverity
    type: AlertType
    message: str
    metrics: Dict[str, float]
    suggestion: str
    timestamp: float = field(default_factory=time.time)
    endpoint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "type": self.type.value,
            "message": self.message,
            "metrics": dict(self.metrics),
            "suggestion": self.suggestion,
            "timestamp": self.timestamp,
            "endpoint": self.endpoint,
        }


# ── Model outputs ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceEstimate:
    memory_mb: float
    cpu_ms: float
    io: float


@dataclass(frozen=True)
class Prediction:
    expected_duration_ms: float
    confidence: float
    recommended_action: OptimizationAction
    resource_estimate: ResourceEstimate


@dataclass(frozen=True)
class PredictionRequest:
    """What the predictor needs to know about an inbound request."""
    method: str
    path: str
    hour: int = 12
    weekday: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return endpoint_key(self.method, self.path)


@dataclass(frozen=True)
class NeuralVerdict:
    is_anomaly: bool
    confidence: float
    score: float


@dataclass(frozen=True)
class SystemResources:
    memory_mb: float
    cpu: float = 100.0
    available_workers: int = 4


@dataclass(frozen=True)
class AllocationState:
    load: Level
    headroom: Level

    @property
    def key(self) -> str:
        return f"{self.load.value}_{self.headroom.value}"


@dataclass(frozen=True)
class Allocation:
    memory_mb: int
    cpu: int
    workers: int
    strategy: AllocationAction
    state: AllocationState


@dataclass
class RequestPattern:
    path: str
    method: str
    frequency: int
    avg_duration_ema: float
    last_seen: float

    @property
    def key(self) -> str:
        return endpoint_key(self.method, self.path)


@dataclass(frozen=True)
class OptimizationDecision:
    action: OptimizationAction
    confidence: float
    path: str
    applied_at: float = field(default_factory=time.time)


# ── Host contract ──────────────────────────────────────────────────────────

@dataclass
class RequestContext:
    """
    What the engine needs from the host for one request.

    ``headers`` keys are expected lower-case.  ``state`` is a free-form
    dict shared with the downstream handler (e.g. ``query_executions``).
    """
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    state: Dict[str, Any] = field(default_factory=dict)

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)


@dataclass
class Response:
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def copy(self) -> "Response":
        return replace(self, headers=dict(self.headers))

    @property
    def size(self) -> int:
        return len(self.body)


Downstream = Callable[[], Union[Awaitable[Response], Response]]
