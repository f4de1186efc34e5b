"""Error taxonomy for node provisioning.

ExecutionError and ReadinessTimeout are captured into the PipelineRun by the
Orchestrator. ProbeFailure never leaves the Health Aggregator.
"""

from dataclasses import dataclass, field


@dataclass
class NodeprovError(Exception):
    """Base error class for nodeprov errors."""

    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class ExecutionError(NodeprovError):
    """A stage action itself failed (e.g. an installer exited non-zero)."""

    message: str = "Stage execution failed"
    output: str = ""
    returncode: int | None = None


@dataclass
class ReadinessTimeout(NodeprovError):
    """A readiness gate never became true within its deadline."""

    message: str = "Readiness check timed out"
    labels: list[str] = field(default_factory=list)
    elapsed: float = 0.0
    diagnostics: str = ""


@dataclass
class ProbeFailure(NodeprovError):
    """A health probe could not reach a workload endpoint."""

    message: str = "Probe failed"
    target: str = ""


@dataclass
class ConfigError(NodeprovError):
    """Configuration is missing or invalid."""

    message: str = "Invalid configuration"


@dataclass
class PipelineDefinitionError(NodeprovError):
    """A pipeline or workload set is malformed (e.g. duplicate names)."""

    message: str = "Invalid pipeline definition"
