"""CLI output formatting helpers.

All formatters work with the to_dict() form of run and snapshot objects,
the same shape that is written to report files and served over HTTP.
"""

import json
from typing import Any

import click

STATUS_SYMBOLS = {
    "succeeded": "✓",
    "failed": "✗",
    "timed_out": "⏱",
}


def print_run_report(report: dict[str, Any]) -> None:
    """Print one line per stage, then warnings and the overall status.

    Args:
        report: PipelineRun.to_dict() output
    """
    for stage in report["stages"]:
        symbol = STATUS_SYMBOLS.get(stage["status"], "?")
        line = f"  {symbol} {stage['stage']} ({stage['elapsed_seconds']:.1f}s)"
        if stage["status"] != "succeeded":
            line += f": {stage['detail']}"
            if not stage["fatal"]:
                line += " [non-fatal]"
        click.echo(line)

    if report["warnings"]:
        click.echo("\nWarnings:")
        for warning in report["warnings"]:
            click.echo(f"  ⚠ {warning}")

    if report["health_service_launched"]:
        click.echo("\nHealth service launched")

    click.echo(f"\nStatus: {report['status']}")


def print_failure(report: dict[str, Any]) -> None:
    """Print the failing stage and its detail to stderr."""
    failed = report.get("failed_stage")
    if not failed:
        return
    detail = next((s["detail"] for s in report["stages"] if s["stage"] == failed), "")
    click.echo(f"✗ Stage '{failed}' failed: {detail}", err=True)


def print_snapshot(snapshot: dict[str, Any], json_output: bool = True) -> None:
    """Print a health snapshot.

    Args:
        snapshot: HealthSnapshot.to_dict() output
        json_output: Print the JSON document instead of a table
    """
    if json_output:
        click.echo(json.dumps(snapshot, indent=2))
        return

    click.echo(f"Status: {snapshot['status']}  ({snapshot['timestamp']})")
    for name, status in snapshot["services"].items():
        symbol = "✓" if status == "ready" else "✗"
        click.echo(f"  {symbol} {name}: {status}")
