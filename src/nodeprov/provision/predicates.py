"""Readiness predicates observed from the host and the control-plane.

Every predicate is a side-effect-free observation: it returns True when
the condition holds and False (or raises) while it does not.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable

import httpx


class Kubectl:
    """Thin kubectl wrapper used by the readiness predicates."""

    def __init__(self, kubeconfig: str | None = None, timeout: float = 15.0):
        """Initialize kubectl wrapper.

        Args:
            kubeconfig: Path to kubeconfig file.
            timeout: Seconds to allow each kubectl call.
        """
        self.kubeconfig = kubeconfig
        self.timeout = timeout

    def _kubectl_cmd(self) -> list[str]:
        """Build base kubectl command."""
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        return cmd

    def command(self, *args: str) -> list[str]:
        """Full kubectl argv for args."""
        return self._kubectl_cmd() + list(args)

    def get_json(self, *args: str) -> dict:
        """Run `kubectl get ... -o json` and parse the output.

        Raises:
            RuntimeError: kubectl exited non-zero.
        """
        result = subprocess.run(
            self._kubectl_cmd() + ["get", *args, "-o", "json"],
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise RuntimeError(result.stderr.strip() or f"kubectl exited {result.returncode}")
        return json.loads(result.stdout)

    def node_listed(self, node_name: str) -> Callable[[], bool]:
        """API server answers and lists the node."""

        def predicate() -> bool:
            nodes = self.get_json("nodes").get("items", [])
            return any(n.get("metadata", {}).get("name") == node_name for n in nodes)

        return predicate

    def node_ready(self, node_name: str) -> Callable[[], bool]:
        """Node reports the Ready condition."""

        def predicate() -> bool:
            node = self.get_json("node", node_name)
            return _condition_true(node, "Ready")

        return predicate

    def pods_ready(
        self,
        selector: str,
        namespace: str = "default",
        min_ready: int = 1,
    ) -> Callable[[], bool]:
        """At least min_ready pods match selector and all of them are Ready."""

        def predicate() -> bool:
            pods = self.get_json("pods", "-n", namespace, "-l", selector).get("items", [])
            if len(pods) < min_ready:
                return False
            return all(_condition_true(pod, "Ready") for pod in pods)

        return predicate

    def pods_running(self, name_prefix: str, namespace: str = "kube-system") -> Callable[[], bool]:
        """Some pod whose name starts with name_prefix is in phase Running."""

        def predicate() -> bool:
            pods = self.get_json("pods", "-n", namespace).get("items", [])
            return any(
                pod.get("metadata", {}).get("name", "").startswith(name_prefix)
                and pod.get("status", {}).get("phase") == "Running"
                for pod in pods
            )

        return predicate


def _condition_true(obj: dict, condition_type: str) -> bool:
    for condition in obj.get("status", {}).get("conditions", []):
        if condition.get("type") == condition_type:
            return condition.get("status") == "True"
    return False


def systemd_unit_active(unit: str, timeout: float = 10.0) -> Callable[[], bool]:
    """`systemctl is-active --quiet <unit>` succeeds."""

    def predicate() -> bool:
        result = subprocess.run(
            ["systemctl", "is-active", "--quiet", unit],
            capture_output=True,
            timeout=timeout,
        )
        return result.returncode == 0

    return predicate


def http_reachable(url: str, timeout: float = 5.0, verify: bool = False) -> Callable[[], bool]:
    """Anything answers HTTP at url, whatever the status code.

    Used for the control-plane API, which answers 401 to anonymous requests
    while being perfectly reachable.
    """

    def predicate() -> bool:
        with httpx.Client(timeout=timeout, verify=verify) as client:
            client.get(url)
        return True

    return predicate

