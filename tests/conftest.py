"""
Shared test fixtures and helpers for the Pathwise test suite.
"""

from typing import Any, Dict, List, Optional

import pytest

from pathwise._types import MetricSample, RequestContext, Response, SystemResources
from pathwise.config import MLConfig, OptimizerConfig
from pathwise.engine import OptimizationEngine

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced seconds clock."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Builders
# ============================================================================


def make_sample(
    path: str = "/api/users",
    duration: float = 50.0,
    *,
    method: str = "GET",
    status: int = 200,
    timestamp: float = T0,
    **extra: Any,
) -> MetricSample:
    return MetricSample(
        timestamp=timestamp,
        method=method,
        path=path,
        duration_ms=duration,
        status_code=status,
        **extra,
    )


def make_request(
    path: str = "/api/users",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    query: Optional[Dict[str, str]] = None,
    body: bytes = b"",
) -> RequestContext:
    return RequestContext(
        method=method,
        path=path,
        headers=headers or {},
        query_params=query or {},
        body=body,
    )


class CountingHandler:
    """Async downstream that counts invocations."""

    def __init__(self, body: bytes = b'{"ok": true}', status: int = 200, headers=None):
        self.calls = 0
        self.body = body
        self.status = status
        self.headers = headers or {"content-type": "application/json"}

    async def __call__(self) -> Response:
        self.calls += 1
        return Response(status=self.status, headers=dict(self.headers), body=self.body)


def fixed_resources() -> SystemResources:
    return SystemResources(memory_mb=8000.0, cpu=100.0, available_workers=4)


def make_engine(clock: FakeClock, *, ml: bool = False, **options: Any) -> OptimizationEngine:
    """Engine with deterministic clock and resources; ML off unless asked."""
    ml_config = options.pop("ml_config", None) or MLConfig(enabled=ml, seed=7)
    config = OptimizerConfig(ml=ml_config, **options)
    return OptimizationEngine(config, clock=clock, resources=fixed_resources)


def samples_for(path: str, durations: List[float], *, start: float = T0, step: float = 1.0, **extra: Any):
    return [
        make_sample(path, d, timestamp=start + i * step, **extra)
        for i, d in enumerate(durations)
    ]
