"""
Config commands - ``pathwise config`` group.

Commands:
    check   Validate configuration files and environment.
    show    Print the effective configuration (defaults merged in).
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml

from ...config import ConfigLoader, OptimizerConfig
from ...faults import ConfigFault


def load_config(
    paths: List[str],
    env_file: Optional[str] = None,
) -> Tuple[ConfigLoader, OptimizerConfig]:
    loader = ConfigLoader.load(paths=paths, env_file=env_file)
    return loader, loader.build()


def config_as_dict(config: OptimizerConfig) -> Dict[str, Any]:
    data = asdict(config)
    data["cache"]["ttl_staircase"] = [list(step) for step in config.cache.ttl_staircase]
    data["cache"]["cacheable_methods"] = list(config.cache.cacheable_methods)
    data["cache"]["cacheable_statuses"] = list(config.cache.cacheable_statuses)
    return data


def cmd_config_check(paths: List[str], env_file: Optional[str] = None, verbose: bool = False) -> int:
    """Validate configuration; returns the process exit code."""
    click.echo(click.style("Configuration Check", fg="cyan", bold=True))
    click.echo("─" * 40)
    try:
        loader, config = load_config(paths, env_file)
    except ConfigFault as fault:
        click.echo(click.style(f"  ✗ {fault.message}", fg="red"))
        if verbose:
            click.echo(
                f"    code: {fault.code}  key: {fault.key}  "
                f"severity: {fault.severity.value}  domain: {fault.domain.value}"
            )
        return 1

    for path in paths:
        click.echo(f"  Source:           {path}")
    click.echo(f"  Caching:          {config.enable_caching}")
    click.echo(f"  Batching:         {config.enable_batching}")
    click.echo(f"  Prefetching:      {config.enable_prefetching}")
    click.echo(f"  Compression:      {config.enable_compression}")
    click.echo(f"  ML pipeline:      {config.ml.enabled}")
    click.echo(f"  Training every:   {config.ml.training_interval_minutes:g} min")
    click.echo(f"  Target latency:   {config.performance.target_latency_ms:g} ms")
    click.echo(f"  Known routes:     {len(config.routes.known)}")
    if verbose:
        click.echo(f"  Raw overrides:    {json.dumps(loader.to_dict(), sort_keys=True)}")
    if not config.optimizations_enabled:
        click.echo(click.style("  ! Every stage is disabled; the engine only stamps headers.", fg="yellow"))
    click.echo(click.style("  ✓ Configuration is valid", fg="green"))
    return 0


def cmd_config_show(paths: List[str], env_file: Optional[str] = None, fmt: str = "yaml") -> int:
    try:
        _, config = load_config(paths, env_file)
    except ConfigFault as fault:
        click.echo(click.style(f"✗ {fault.message}", fg="red"), err=True)
        return 1

    data = config_as_dict(config)
    if fmt == "json":
        click.echo(json.dumps(data, indent=2, sort_keys=True))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=True), nl=False)
    return 0
