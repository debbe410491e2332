"""Pathwise CLI - Main Entry Point.

The ``pathwise`` command validates configuration and runs synthetic
workloads against an engine.

Commands:
    config check  - Validate configuration sources
    config show   - Print the effective configuration
    simulate      - Drive a synthetic workload and print engine stats
"""

import logging
import sys
from typing import Optional, Tuple

import click

from .. import __version__
from . import __cli_name__


@click.group()
@click.version_option(version=__version__, prog_name=__cli_name__)
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.option('--quiet', '-q', is_flag=True, help='Minimal output')
@click.pass_context
def cli(ctx, verbose: bool, quiet: bool):
    """Pathwise - request-path optimization engine."""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet

    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


# ============================================================================
# Config
# ============================================================================

@cli.group()
def config():
    """Configuration commands."""


@config.command('check')
@click.option('--config', '-c', 'paths', multiple=True, help='Config file (YAML/JSON, repeatable)')
@click.option('--env-file', type=click.Path(), default=None, help='.env file with PATHWISE_* variables')
@click.pass_context
def config_check(ctx, paths: Tuple[str, ...], env_file: Optional[str]):
    """
    Validate configuration without starting anything.

    Examples:
      pathwise config check
      pathwise config check -c pathwise.yaml
    """
    from .commands.config import cmd_config_check

    sys.exit(cmd_config_check(list(paths), env_file, verbose=ctx.obj['verbose']))


@config.command('show')
@click.option('--config', '-c', 'paths', multiple=True, help='Config file (YAML/JSON, repeatable)')
@click.option('--env-file', type=click.Path(), default=None, help='.env file with PATHWISE_* variables')
@click.option('--format', 'fmt', type=click.Choice(['yaml', 'json']), default='yaml', help='Output format')
def config_show(paths: Tuple[str, ...], env_file: Optional[str], fmt: str):
    """Print the effective configuration, defaults included."""
    from .commands.config import cmd_config_show

    sys.exit(cmd_config_show(list(paths), env_file, fmt))


# ============================================================================
# Simulate
# ============================================================================

@cli.command('simulate')
@click.option('--config', '-c', 'paths', multiple=True, help='Config file (YAML/JSON, repeatable)')
@click.option('--requests', '-n', default=400, show_default=True, help='Number of requests')
@click.option('--concurrency', default=8, show_default=True, help='Requests in flight at once')
@click.option('--slow-rate', default=0.02, show_default=True, help='Fraction of requests slowed 10x')
@click.option('--error-rate', default=0.01, show_default=True, help='Fraction of requests that fail')
@click.option('--seed', type=int, default=None, help='Random seed for a reproducible run')
@click.option('--cache/--no-cache', default=True, help='Enable the adaptive cache')
@click.option('--batching/--no-batching', default=True, help='Enable request coalescing')
@click.option('--format', 'fmt', type=click.Choice(['text', 'json', 'prometheus']), default='text')
def simulate(
    paths: Tuple[str, ...],
    requests: int,
    concurrency: int,
    slow_rate: float,
    error_rate: float,
    seed: Optional[int],
    cache: bool,
    batching: bool,
    fmt: str,
):
    """
    Run a synthetic workload through an engine and print its stats.

    Examples:
      pathwise simulate
      pathwise simulate -n 2000 --seed 7 --format json
    """
    from ..config import ConfigLoader
    from ..faults import ConfigFault
    from .commands.simulate import cmd_simulate

    overrides = {"enable_caching": cache, "enable_batching": batching}
    try:
        built = ConfigLoader.load(paths=list(paths), overrides=overrides).build()
    except ConfigFault as fault:
        click.echo(click.style(f"✗ {fault.message}", fg="red"), err=True)
        sys.exit(1)

    if seed is not None:
        built.ml.seed = seed
    sys.exit(cmd_simulate(
        built,
        requests=requests,
        concurrency=concurrency,
        slow_rate=slow_rate,
        error_rate=error_rate,
        seed=seed,
        fmt=fmt,
    ))


def main():
    """Entry point for `pathwise` command."""
    cli(obj={})


if __name__ == '__main__':
    main()
