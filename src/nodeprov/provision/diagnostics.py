"""Diagnostics gathered when a readiness gate times out.

Each factory returns a callable for ReadinessCheck.diagnostics. The callable
runs a fixed list of commands and joins their output under section headers,
so a failed stage's detail shows service state, recent logs and the
describe output for the objects that never became ready.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence

from .predicates import Kubectl

JOURNAL_LINES = 50
NOT_RUNNING = "--field-selector=status.phase!=Running,status.phase!=Succeeded"


def command_output(argv: Sequence[str], timeout: float = 30.0) -> str:
    """Combined stdout/stderr of argv. Never raises for a failing command."""
    try:
        result = subprocess.run(list(argv), capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        return f"{argv[0]} not found"
    except subprocess.TimeoutExpired:
        return f"{' '.join(argv)} timed out after {timeout:g}s"
    return (result.stdout + result.stderr).strip()


def gather(
    sections: Sequence[tuple[str, Sequence[str]]], timeout: float = 30.0
) -> Callable[[], str]:
    """Diagnostics callable running each (title, argv) section in order."""

    def diagnostics() -> str:
        return "\n".join(
            f"--- {title} ---\n{command_output(argv, timeout)}" for title, argv in sections
        )

    return diagnostics


def _journal(unit: str) -> tuple[str, list[str]]:
    return (
        f"journalctl -u {unit}",
        ["journalctl", "-u", unit, "-n", str(JOURNAL_LINES), "--no-pager"],
    )


def service_diagnostics(unit: str) -> Callable[[], str]:
    """Unit status and recent journal for a systemd service."""
    return gather(
        [
            (f"systemctl status {unit}", ["systemctl", "status", unit, "--no-pager"]),
            _journal(unit),
        ]
    )


def api_server_diagnostics(kubectl: Kubectl, unit: str = "k3s") -> Callable[[], str]:
    """cluster-info plus the journal of the unit hosting the API server."""
    return gather([("kubectl cluster-info", kubectl.command("cluster-info")), _journal(unit)])


def node_diagnostics(kubectl: Kubectl, node_name: str) -> Callable[[], str]:
    """Node list, node description and kube-system pods."""
    return gather(
        [
            ("nodes", kubectl.command("get", "nodes", "-o", "wide")),
            (f"node {node_name}", kubectl.command("describe", "node", node_name)),
            ("kube-system pods", kubectl.command("get", "pods", "-n", "kube-system", "-o", "wide")),
            ("pods not running", kubectl.command("get", "pods", "--all-namespaces", NOT_RUNNING)),
        ]
    )


def pod_diagnostics(kubectl: Kubectl, selector: str, namespace: str) -> Callable[[], str]:
    """Description of the pods matching selector."""
    return gather(
        [
            (
                f"pods {selector} in {namespace}",
                kubectl.command("describe", "pod", "-n", namespace, "-l", selector),
            )
        ]
    )
