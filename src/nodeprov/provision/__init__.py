"""Node provisioning pipeline.

Stages run strictly in order; each may be gated on readiness checks that
are polled until satisfied or past their deadline.
"""

from .executors import (
    AgentKubeconfigExecutor,
    ClusterVerifyExecutor,
    CommandExecutor,
    KubectlInstallExecutor,
    NullExecutor,
    RemoteScriptExecutor,
    ServerKubeconfigExecutor,
    k3s_agent_installer,
    k3s_server_installer,
)
from .orchestrator import Orchestrator, ServiceLauncher
from .plans import build_agent_plan, build_plan, build_server_plan
from .poller import PollOutcome, ReadinessCheck, ReadinessPoller
from .stages import (
    PipelineRun,
    RunStatus,
    Stage,
    StageExecutor,
    StageResult,
    StageStatus,
)
from .workloads import (
    AutoDeployApplier,
    KubectlApplier,
    ManifestApplier,
    Workload,
    WorkloadDeployer,
    WorkloadDeployExecutor,
)

__all__ = [
    # Polling
    "ReadinessCheck",
    "ReadinessPoller",
    "PollOutcome",
    # Stages
    "Stage",
    "StageExecutor",
    "StageResult",
    "StageStatus",
    "PipelineRun",
    "RunStatus",
    # Orchestration
    "Orchestrator",
    "ServiceLauncher",
    "build_plan",
    "build_server_plan",
    "build_agent_plan",
    # Executors
    "NullExecutor",
    "CommandExecutor",
    "RemoteScriptExecutor",
    "KubectlInstallExecutor",
    "ServerKubeconfigExecutor",
    "AgentKubeconfigExecutor",
    "ClusterVerifyExecutor",
    "k3s_server_installer",
    "k3s_agent_installer",
    # Workloads
    "Workload",
    "ManifestApplier",
    "KubectlApplier",
    "AutoDeployApplier",
    "WorkloadDeployer",
    "WorkloadDeployExecutor",
]
