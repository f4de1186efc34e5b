"""Pipeline plans for the server and agent roles.

Builds the ordered Stage list for a node from its ProvisionConfig. Which
stages are fatal is configuration (ProvisionConfig.stage_overrides); the
defaults below only encode which steps are prerequisites for the rest.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from ..config import ProvisionConfig, WorkloadConfig
from ..errors import ConfigError
from .diagnostics import (
    api_server_diagnostics,
    node_diagnostics,
    pod_diagnostics,
    service_diagnostics,
)
from .executors import (
    AgentKubeconfigExecutor,
    ClusterVerifyExecutor,
    KubectlInstallExecutor,
    NullExecutor,
    RemoteScriptExecutor,
    ServerKubeconfigExecutor,
    k3s_agent_installer,
    k3s_server_installer,
)
from .poller import ReadinessCheck, ReadinessPoller
from .predicates import Kubectl, http_reachable, systemd_unit_active
from .stages import Stage
from .workloads import (
    AutoDeployApplier,
    KubectlApplier,
    ManifestApplier,
    Workload,
    WorkloadDeployer,
    WorkloadDeployExecutor,
)

K3S_KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"
COREDNS_SELECTOR = "k8s-app=kube-dns"


def build_plan(config: ProvisionConfig, poller: ReadinessPoller | None = None) -> list[Stage]:
    """Build the stage list for config.role."""
    if config.role == "server":
        return build_server_plan(config, poller)
    if config.role == "agent":
        return build_agent_plan(config)
    raise ConfigError(f"Unknown role: {config.role}")


def _stage(config: ProvisionConfig, name: str, executor, fatal: bool = True, **kwargs) -> Stage:
    return Stage(name, executor, fatal=config.is_fatal(name, fatal), **kwargs)


def _base_stages(config: ProvisionConfig) -> list[Stage]:
    stages = []
    if config.base_init:
        env = {
            "INSTANCE_ID": config.node_id,
            "CLOUD_PROVIDER": config.cloud_provider,
        }
        if config.ca_public_key:
            env["FLUI_CA_PUBLIC_KEY"] = config.ca_public_key
        stages.append(
            _stage(
                config,
                "base-init",
                RemoteScriptExecutor(
                    f"{config.scripts_base_url}/flui-init.sh", env=env, timeout=1800
                ),
                description="Container runtime, host hardening and node monitoring",
            )
        )
    stages.append(
        _stage(config, "install-kubectl", KubectlInstallExecutor(), description="kubectl CLI")
    )
    return stages


def build_server_plan(
    config: ProvisionConfig, poller: ReadinessPoller | None = None
) -> list[Stage]:
    """Stages for the first control-plane node, ending with the Workload Set."""
    t = config.timeouts
    kubectl = Kubectl(K3S_KUBECONFIG)

    stages = _base_stages(config)
    stages.append(
        _stage(
            config,
            "install-control-plane",
            k3s_server_installer(
                config.k3s_version,
                config.join_token,
                config.node_name,
                advertise_ip=config.advertise_ip or None,
            ),
            gates=(
                ReadinessCheck(
                    systemd_unit_active("k3s"),
                    t.poll_interval,
                    t.service_active,
                    "k3s service active",
                    diagnostics=service_diagnostics("k3s"),
                ),
                ReadinessCheck(
                    kubectl.node_listed(config.node_name),
                    t.poll_interval,
                    t.api_ready,
                    "API server lists node",
                    diagnostics=api_server_diagnostics(kubectl),
                ),
                ReadinessCheck(
                    kubectl.node_ready(config.node_name),
                    t.poll_interval,
                    t.node_ready,
                    "node Ready",
                    diagnostics=node_diagnostics(kubectl, config.node_name),
                ),
            ),
            description=f"K3s server {config.k3s_version}",
        )
    )
    stages.append(
        _stage(
            config,
            "configure-kubeconfig",
            ServerKubeconfigExecutor(Path(config.kubeconfig).expanduser(), Path(K3S_KUBECONFIG)),
        )
    )
    stages.append(
        _stage(
            config,
            "system-pods",
            NullExecutor(),
            fatal=False,
            gates=(
                ReadinessCheck(
                    kubectl.pods_running("coredns"),
                    t.poll_interval,
                    t.system_pods,
                    "coredns running",
                    diagnostics=pod_diagnostics(kubectl, COREDNS_SELECTOR, "kube-system"),
                ),
            ),
        )
    )
    stages.append(
        _stage(
            config,
            "verify-cluster",
            ClusterVerifyExecutor(kubectl),
            fatal=False,
            description="API server health and pod phases",
        )
    )

    if config.workloads:
        workloads = build_workloads(config, kubectl)
        applier: ManifestApplier
        if config.manifest_mode == "auto-deploy":
            applier = AutoDeployApplier()
        else:
            applier = KubectlApplier(K3S_KUBECONFIG)
        stages.append(
            _stage(
                config,
                "deploy-workloads",
                WorkloadDeployExecutor(WorkloadDeployer(applier, poller), workloads),
                platform=False,
                description=", ".join(w.name for w in workloads),
            )
        )
    return stages


def build_agent_plan(config: ProvisionConfig) -> list[Stage]:
    """Stages that join a worker node to an existing control-plane."""
    t = config.timeouts
    kubeconfig = Path(config.kubeconfig).expanduser()

    stages = _base_stages(config)
    stages.append(
        _stage(
            config,
            "reach-control-plane",
            NullExecutor(),
            gates=(
                ReadinessCheck(
                    http_reachable(config.control_plane_url),
                    t.reachability_interval,
                    t.control_plane_reachable,
                    f"control-plane reachable at {config.control_plane_url}",
                ),
            ),
        )
    )
    stages.append(
        _stage(
            config,
            "join-cluster",
            k3s_agent_installer(
                config.k3s_version,
                config.control_plane_url,
                config.join_token,
                config.node_name,
            ),
            gates=(
                ReadinessCheck(
                    systemd_unit_active("k3s-agent"),
                    t.poll_interval,
                    t.service_active,
                    "k3s-agent service active",
                    diagnostics=service_diagnostics("k3s-agent"),
                ),
            ),
            description=f"K3s agent joining {config.control_plane_url}",
        )
    )
    stages.append(
        _stage(
            config,
            "configure-kubeconfig",
            AgentKubeconfigExecutor(
                kubeconfig,
                config.control_plane_url,
                config.join_token,
                config.cluster_name or "k3s",
            ),
        )
    )
    stages.append(
        _stage(
            config,
            "verify-kubectl",
            NullExecutor(),
            fatal=False,
            gates=(
                ReadinessCheck(
                    Kubectl(str(kubeconfig)).node_listed(config.node_name),
                    t.poll_interval,
                    t.kubectl_check,
                    "kubectl reaches the cluster",
                ),
            ),
        )
    )
    return stages


def build_workloads(config: ProvisionConfig, kubectl: Kubectl) -> list[Workload]:
    """Turn the configured Workload Set into Workload objects."""
    return [_workload(config, entry, kubectl) for entry in config.workloads]


def _workload(config: ProvisionConfig, entry: WorkloadConfig, kubectl: Kubectl) -> Workload:
    t = config.timeouts
    manifests: tuple = ()
    if entry.manifest:
        path = config.resolve_path(entry.manifest)
        try:
            with open(path) as f:
                manifests = tuple(doc for doc in yaml.safe_load_all(f) if doc)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read manifest for workload '{entry.name}': {e}") from e

    return Workload(
        name=entry.name,
        selector=entry.selector,
        namespace=entry.namespace,
        readiness_endpoint=entry.readiness_endpoint,
        required=entry.required,
        manifests=manifests,
        readiness_check=ReadinessCheck(
            kubectl.pods_ready(entry.selector, entry.namespace),
            entry.interval or t.poll_interval,
            entry.deadline if entry.deadline is not None else t.workload,
            entry.name,
            diagnostics=pod_diagnostics(kubectl, entry.selector, entry.namespace),
        ),
    )
