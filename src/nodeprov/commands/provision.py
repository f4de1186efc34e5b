"""Provision command.

This module provides the `nodeprov provision` command, which runs the
server or agent pipeline on the current host and reports its outcome.
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timezone

import click
import structlog

from ..config import ROLES, load_config
from ..errors import ConfigError, PipelineDefinitionError
from ..formatters import print_failure, print_run_report
from ..health.service import make_launcher
from ..provision import Orchestrator, build_plan
from ..shared.logging import configure_logging
from ..shared.paths import LOG_DIR, PROVISION_LOG_FILE, get_ready_marker

logger = structlog.get_logger(__name__)


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Provisioning profile (default: /etc/nodeprov/config.yaml)",
)
@click.option("--role", type=click.Choice(ROLES), help="Override the role from the profile")
@click.option("--report", type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.option("--no-health-service", is_flag=True, help="Do not launch the health service")
@click.pass_context
def provision(
    ctx: click.Context,
    config_path: str | None,
    role: str | None,
    report: str | None,
    no_health_service: bool,
) -> None:
    """Provision this node as a K3s server or agent."""
    obj = ctx.obj or {}
    if obj.get("log_file") is None and os.access(LOG_DIR, os.W_OK):
        configure_logging(
            level=obj.get("log_level", "info"),
            log_file=PROVISION_LOG_FILE,
            json_output=obj.get("json_logs", False),
        )

    try:
        config = load_config(config_path, role=role)
        config.validate()
        stages = build_plan(config)
    except ConfigError as e:
        raise click.UsageError(str(e)) from e

    launcher = None
    if config.role == "server" and not no_health_service:
        launcher = make_launcher(config)

    click.echo(f"Provisioning {config.node_name} as {config.role} ({len(stages)} stages)\n")
    try:
        run = Orchestrator(launcher=launcher).execute(stages)
    except PipelineDefinitionError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    result = run.to_dict()
    print_run_report(result)

    if report:
        _write_report(report, result)

    if not run.ready:
        print_failure(result)
        sys.exit(1)

    _mark_ready(config.role)


def _mark_ready(role: str) -> None:
    marker = get_ready_marker(role)
    try:
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(datetime.now(timezone.utc).isoformat() + "\n")
    except OSError as e:
        logger.warning("could not write ready marker", path=str(marker), error=str(e))


def _write_report(path: str, result: dict) -> None:
    try:
        with open(path, "w") as f:
            json.dump(result, f, indent=2)
    except OSError as e:
        logger.error("could not write run report", path=path, error=str(e))
        click.echo(f"⚠ Could not write report to {path}: {e}", err=True)
        return
    logger.info("run report written", path=path)
