"""
Simulate command - drive a synthetic workload through an engine.

Each simulated endpoint has a base latency; a fraction of requests are
slowed down tenfold or fail outright.  Halfway through the run the models
are retrained, so the second half exercises trained predictions and
detectors.
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Dict, List, Optional

import click

from ..._types import RequestContext, Response
from ...config import OptimizerConfig
from ...engine import OptimizationEngine
from ...observe.monitor import summary_lines

ENDPOINTS: Dict[str, float] = {
    "/api/users": 2.0,
    "/api/users/1": 1.0,
    "/api/orders": 4.0,
    "/api/search": 6.0,
}

SUMMARY_KEYS = [
    "total_requests",
    "avg_response_time",
    "p95_response_time",
    "error_rate",
    "cache_hit_rate",
    "anomalies_detected",
    "optimizations_applied",
    "batch_coalesced",
    "allocator_explorations",
]


class SimulatedFailure(RuntimeError):
    pass


@dataclass
class SimulationResult:
    requests: int = 0
    failures: int = 0
    trained: bool = False


async def run_simulation(
    engine: OptimizationEngine,
    requests: int,
    concurrency: int = 8,
    slow_rate: float = 0.02,
    error_rate: float = 0.01,
    seed: Optional[int] = None,
    train: bool = True,
) -> SimulationResult:
    rng = random.Random(seed)
    paths = list(ENDPOINTS)
    result = SimulationResult()

    async def one(path: str) -> None:
        base = ENDPOINTS[path]
        roll = rng.random()

        async def handler() -> Response:
            latency = base * (10.0 if roll < slow_rate else 1.0)
            await asyncio.sleep(latency / 1000.0)
            if slow_rate <= roll < slow_rate + error_rate:
                raise SimulatedFailure(f"synthetic failure on {path}")
            return Response(
                status=200,
                headers={"content-type": "application/json"},
                body=json.dumps({"path": path, "items": list(range(20))}).encode(),
            )

        request = RequestContext(method="GET", path=path, headers={"accept-encoding": "gzip"})
        try:
            await engine.optimize(request, handler)
        except SimulatedFailure:
            result.failures += 1
        result.requests += 1

    half = requests // 2
    sent = 0
    while sent < requests:
        size = min(concurrency, requests - sent)
        await asyncio.gather(*(one(rng.choice(paths)) for _ in range(size)))
        sent += size
        if train and not result.trained and sent >= half:
            await asyncio.get_running_loop().run_in_executor(None, engine.train)
            result.trained = True
    return result


def cmd_simulate(
    config: OptimizerConfig,
    requests: int = 400,
    concurrency: int = 8,
    slow_rate: float = 0.02,
    error_rate: float = 0.01,
    seed: Optional[int] = None,
    fmt: str = "text",
) -> int:
    engine = OptimizationEngine(config)
    result = asyncio.run(run_simulation(
        engine,
        requests=requests,
        concurrency=concurrency,
        slow_rate=slow_rate,
        error_rate=error_rate,
        seed=seed,
    ))
    stats = engine.stats()

    if fmt == "json":
        click.echo(json.dumps(stats, indent=2, sort_keys=True, default=str))
        return 0
    if fmt == "prometheus":
        click.echo(engine.to_prometheus(), nl=False)
        return 0

    click.echo(click.style("Simulation Summary", fg="cyan", bold=True))
    click.echo("─" * 40)
    click.echo(f"  requests sent: {result.requests} ({result.failures} failed)")
    click.echo(f"  retrained mid-run: {result.trained}")
    for line in summary_lines(stats, SUMMARY_KEYS):
        click.echo(f"  {line}")

    severities = engine.alerts.counts_by_severity()
    if severities:
        click.echo("  alerts: " + ", ".join(f"{k}={v}" for k, v in sorted(severities.items())))
    suggestions: List[str] = [
        f"{s.pattern} -> index({', '.join(s.columns)})" for s in engine.queries.suggestions()
    ]
    for suggestion in suggestions:
        click.echo(f"  suggestion: {suggestion}")
    return 0
