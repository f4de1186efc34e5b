"""Workload Set deployment.

This module submits the declarative Workload Set to the control-plane in
one batch and then waits, concurrently, for every workload to report ready.
"""

from __future__ import annotations

import asyncio
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml

from ..errors import ExecutionError, PipelineDefinitionError, ReadinessTimeout
from .poller import PollOutcome, ReadinessCheck, ReadinessPoller

logger = structlog.get_logger(__name__)

# K3s applies anything written here on its own
K3S_MANIFEST_DIR = Path("/var/lib/rancher/k3s/server/manifests")


@dataclass(frozen=True)
class Workload:
    """One declaratively deployed service."""

    name: str
    selector: str
    readiness_check: ReadinessCheck
    readiness_endpoint: str | None = None
    namespace: str = "default"
    required: bool = True
    manifests: tuple[dict[str, Any], ...] = ()


class ManifestApplier(Protocol):
    """Submits a batch of manifests to the control-plane."""

    def apply(self, workloads: Sequence[Workload]) -> None: ...


class KubectlApplier:
    """Apply the whole Workload Set with a single `kubectl apply`."""

    def __init__(self, kubeconfig: str | None = None, timeout: float = 120.0):
        """Initialize applier.

        Args:
            kubeconfig: Path to kubeconfig file.
            timeout: Seconds to allow kubectl to run.
        """
        self.kubeconfig = kubeconfig
        self.timeout = timeout

    def _kubectl_cmd(self) -> list[str]:
        """Build base kubectl command."""
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        return cmd

    def apply(self, workloads: Sequence[Workload]) -> None:
        documents = [doc for w in workloads for doc in w.manifests]
        if not documents:
            logger.info("no manifests to apply")
            return

        with tempfile.TemporaryDirectory(prefix="nodeprov-") as tmpdir:
            batch = Path(tmpdir) / "workloads.yaml"
            with open(batch, "w") as f:
                yaml.dump_all(documents, f, default_flow_style=False, sort_keys=False)
            try:
                result = subprocess.run(
                    self._kubectl_cmd() + ["apply", "-f", str(batch)],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError:
                raise ExecutionError("kubectl not found. Is kubectl installed?") from None
            except subprocess.TimeoutExpired:
                raise ExecutionError(f"kubectl apply timed out after {self.timeout:g}s") from None

        if result.returncode != 0:
            raise ExecutionError(
                "Failed to apply workload manifests",
                output=result.stderr.strip(),
                returncode=result.returncode,
            )
        logger.info("workload manifests applied", documents=len(documents))


class AutoDeployApplier:
    """Write manifests into the K3s auto-deploy directory."""

    def __init__(self, manifest_dir: Path = K3S_MANIFEST_DIR):
        self.manifest_dir = manifest_dir

    def apply(self, workloads: Sequence[Workload]) -> None:
        try:
            self.manifest_dir.mkdir(parents=True, exist_ok=True)
            for index, workload in enumerate(workloads, start=1):
                if not workload.manifests:
                    continue
                path = self.manifest_dir / f"{index:02d}-{workload.name}.yaml"
                with open(path, "w") as f:
                    yaml.dump_all(
                        list(workload.manifests), f, default_flow_style=False, sort_keys=False
                    )
                logger.info("manifest written", workload=workload.name, path=str(path))
        except OSError as e:
            raise ExecutionError(f"Failed to write manifests to {self.manifest_dir}: {e}") from e


class WorkloadDeployer:
    """Deploy a Workload Set and join on per-workload readiness."""

    def __init__(self, applier: ManifestApplier, poller: ReadinessPoller | None = None):
        self.applier = applier
        self.poller = poller or ReadinessPoller()

    async def deploy(self, workloads: Sequence[Workload]) -> dict[str, PollOutcome]:
        """Submit all workloads, then wait for each on its own clock.

        Returns:
            Mapping of workload name to PollOutcome, once every wait is over.
        """
        _check_unique_names(workloads)
        self.applier.apply(workloads)

        def on_attempt(attempt: int, label: str, error: str | None) -> None:
            logger.info("waiting for workload", workload=label, attempt=attempt, error=error)

        outcomes = await asyncio.gather(
            *(self.poller.wait_until(w.readiness_check, on_attempt) for w in workloads)
        )
        result = {w.name: outcome for w, outcome in zip(workloads, outcomes)}
        for name, outcome in result.items():
            logger.info(
                "workload readiness",
                workload=name,
                status=outcome.status,
                elapsed=round(outcome.elapsed, 1),
            )
        return result

    def deploy_sync(self, workloads: Sequence[Workload]) -> dict[str, PollOutcome]:
        """Synchronous wrapper for deploy."""
        return asyncio.run(self.deploy(workloads))


class WorkloadDeployExecutor:
    """Stage executor that deploys a Workload Set.

    Raises ReadinessTimeout naming every required workload that did not
    become ready. Nothing is rolled back.
    """

    def __init__(self, deployer: WorkloadDeployer, workloads: Sequence[Workload]):
        self.deployer = deployer
        self.workloads = tuple(workloads)
        self.outcomes: dict[str, PollOutcome] = {}

    def run(self) -> None:
        self.outcomes = self.deployer.deploy_sync(self.workloads)

        failed_required = []
        diagnostics = []
        for workload in self.workloads:
            outcome = self.outcomes[workload.name]
            if outcome.satisfied:
                continue
            if workload.required:
                failed_required.append(workload.name)
                diagnostics.append(workload.readiness_check.collect_diagnostics())
            else:
                logger.warning("optional workload not ready", workload=workload.name)

        if failed_required:
            raise ReadinessTimeout(
                f"Workloads not ready: {', '.join(failed_required)}",
                labels=failed_required,
                elapsed=max(self.outcomes[n].elapsed for n in failed_required),
                diagnostics="\n".join(d for d in diagnostics if d),
            )


def _check_unique_names(workloads: Sequence[Workload]) -> None:
    seen: set[str] = set()
    for workload in workloads:
        if workload.name in seen:
            raise PipelineDefinitionError(f"Duplicate workload name: {workload.name}")
        seen.add(workload.name)
