"""Stage model for provisioning pipelines.

A pipeline is an ordered list of Stage objects. Each stage wraps a
StageExecutor and optional readiness gates; running it yields a
StageResult that is appended to the PipelineRun.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .poller import ReadinessCheck


@runtime_checkable
class StageExecutor(Protocol):
    """Uniform contract for one unit of provisioning work.

    run() returns None on success and raises ExecutionError on failure.
    """

    def run(self) -> None: ...


class StageStatus(Enum):
    """Outcome of running one stage."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # Executor raised
    TIMED_OUT = "timed_out"  # Executor succeeded, a gate did not


class RunStatus(Enum):
    """Overall state of a pipeline run."""

    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Stage:
    """A named, ordered unit of provisioning work."""

    name: str
    executor: StageExecutor
    fatal: bool = True
    timeout: float | None = None  # Replaces the deadline of every gate
    gates: tuple[ReadinessCheck, ...] = ()
    platform: bool = True
    description: str = ""

    def effective_gates(self) -> tuple[ReadinessCheck, ...]:
        """Gates with the stage timeout applied."""
        if self.timeout is None:
            return self.gates
        return tuple(gate.with_deadline(self.timeout) for gate in self.gates)


@dataclass(frozen=True)
class StageResult:
    """Outcome of running one Stage."""

    stage_name: str
    status: StageStatus
    detail: str = ""
    elapsed: float = 0.0
    fatal: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage_name,
            "status": self.status.value,
            "detail": self.detail,
            "elapsed_seconds": round(self.elapsed, 3),
            "fatal": self.fatal,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PipelineRun:
    """Aggregate record of one orchestration execution.

    Owned by the Orchestrator while in progress, read-only once finished.
    """

    stage_results: list[StageResult] = field(default_factory=list)
    overall_status: RunStatus = RunStatus.IN_PROGRESS
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None
    warnings: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    health_service_launched: bool = False

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    @property
    def ready(self) -> bool:
        return self.overall_status == RunStatus.READY

    def record(self, result: StageResult) -> None:
        """Append a stage result to the run log."""
        self._ensure_open()
        self.stage_results.append(result)

    def warn(self, message: str) -> None:
        """Record a non-fatal problem."""
        self._ensure_open()
        self.warnings.append(message)

    def finish(self, status: RunStatus, failed_stage: str | None = None) -> None:
        """Move the run into a terminal state."""
        self._ensure_open()
        if status == RunStatus.IN_PROGRESS:
            raise RuntimeError("Cannot finish a run as in_progress")
        self.overall_status = status
        self.failed_stage = failed_stage
        self.finished_at = _utcnow()

    def _ensure_open(self) -> None:
        if self.is_finished:
            raise RuntimeError("PipelineRun is finished and read-only")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON reports."""
        return {
            "status": self.overall_status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failed_stage": self.failed_stage,
            "health_service_launched": self.health_service_launched,
            "warnings": list(self.warnings),
            "stages": [r.to_dict() for r in self.stage_results],
        }
