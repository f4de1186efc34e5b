"""Health service commands.

`nodeprov health serve` is what the systemd unit (or the daemon fallback)
runs; `nodeprov health check` takes a single snapshot from the shell.
"""

from __future__ import annotations

import asyncio
import sys

import click

from ..config import load_config
from ..errors import ConfigError
from ..formatters import print_snapshot
from ..health.service import build_aggregator, serve_health


def _load(config_path: str | None):
    try:
        return load_config(config_path)
    except ConfigError as e:
        raise click.UsageError(str(e)) from e


@click.group()
def health() -> None:
    """Workload health aggregation."""


@health.command()
@click.option(
    "--config", "config_path", type=click.Path(dir_okay=False), help="Provisioning profile"
)
@click.option("--port", type=int, default=None, help="Port to bind (default: from the profile)")
@click.option("--supervise", is_flag=True, help="Restart the server if it crashes")
def serve(config_path: str | None, port: int | None, supervise: bool) -> None:
    """Serve aggregate workload health over HTTP."""
    config = _load(config_path)
    serve_health(config, port=port, supervise=supervise)


@health.command()
@click.option(
    "--config", "config_path", type=click.Path(dir_okay=False), help="Provisioning profile"
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "table"]),
    default="json",
    help="Output format",
)
def check(config_path: str | None, output_format: str) -> None:
    """Probe every workload once and print the result."""
    config = _load(config_path)
    snapshot = asyncio.run(build_aggregator(config).snapshot())
    print_snapshot(snapshot.to_dict(), json_output=output_format == "json")
    sys.exit(0 if snapshot.ready else 1)
