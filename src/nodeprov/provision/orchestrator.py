"""Pipeline orchestration.

Runs stages strictly in declared order, gates each successful stage behind
its readiness checks, aborts on the first fatal failure and launches the
health service once the platform stages are in place.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Protocol

import structlog

from ..errors import ExecutionError, PipelineDefinitionError, ReadinessTimeout
from .poller import ReadinessPoller
from .stages import PipelineRun, RunStatus, Stage, StageResult, StageStatus

logger = structlog.get_logger(__name__)


class ServiceLauncher(Protocol):
    """Starts the health service. Not monitored after launch."""

    def launch(self) -> None: ...


class Orchestrator:
    """Drive an ordered pipeline of stages to a terminal PipelineRun."""

    def __init__(
        self,
        poller: ReadinessPoller | None = None,
        launcher: ServiceLauncher | None = None,
    ):
        """Initialize orchestrator.

        Args:
            poller: Poller used for stage gates.
            launcher: Optional health service launcher.
        """
        self.poller = poller or ReadinessPoller()
        self.launcher = launcher

    def execute(self, stages: Sequence[Stage]) -> PipelineRun:
        """Run every stage in order and return the finished run.

        Errors raised by executors are captured into the run; only an
        invalid pipeline definition raises.
        """
        _check_unique_names(stages)

        run = PipelineRun()
        pending_platform = {s.name for s in stages if s.platform}
        launch_attempted = False
        logger.info("pipeline started", stages=[s.name for s in stages])

        for stage in stages:
            if not stage.platform and not launch_attempted:
                launch_attempted = self._maybe_launch(run, pending_platform)

            result = self._run_stage(stage)
            run.record(result)
            pending_platform.discard(stage.name)

            if result.succeeded:
                continue

            if stage.fatal:
                logger.error(
                    "fatal stage failed, aborting pipeline",
                    stage=stage.name,
                    status=result.status.value,
                    detail=result.detail,
                )
                run.finish(RunStatus.FAILED, failed_stage=stage.name)
                return run

            message = f"{stage.name}: {result.status.value}: {result.detail}"
            logger.warning(
                "non-fatal stage did not succeed", stage=stage.name, detail=result.detail
            )
            run.warn(message)

        if not launch_attempted:
            self._maybe_launch(run, pending_platform)
        run.finish(RunStatus.READY)
        logger.info("pipeline ready", stages=len(run.stage_results), warnings=len(run.warnings))
        return run

    def _run_stage(self, stage: Stage) -> StageResult:
        log = logger.bind(stage=stage.name)
        log.info("stage started", description=stage.description or None)
        start = time.monotonic()

        try:
            stage.executor.run()
        except ReadinessTimeout as e:
            detail = str(e)
            if e.diagnostics:
                detail = f"{detail}\n{e.diagnostics}"
            return self._result(stage, StageStatus.TIMED_OUT, detail, start)
        except ExecutionError as e:
            detail = str(e)
            if e.output:
                detail = f"{detail}\n{e.output}"
            return self._result(stage, StageStatus.FAILED, detail, start)
        except Exception as e:
            log.exception("stage executor raised unexpectedly")
            return self._result(stage, StageStatus.FAILED, f"{type(e).__name__}: {e}", start)

        for gate in stage.effective_gates():

            def on_attempt(attempt: int, label: str, error: str | None) -> None:
                log.info("waiting for readiness", gate=label, attempt=attempt, error=error)

            outcome = self.poller.wait_until_sync(gate, on_attempt)
            if outcome.timed_out:
                detail = (
                    f"{gate.label} not satisfied within {gate.deadline:g}s"
                    f" (last error: {outcome.last_error})"
                )
                diagnostics = gate.collect_diagnostics()
                if diagnostics:
                    detail = f"{detail}\n{diagnostics}"
                return self._result(stage, StageStatus.TIMED_OUT, detail, start)
            log.info("gate satisfied", gate=gate.label, elapsed=round(outcome.elapsed, 1))

        return self._result(stage, StageStatus.SUCCEEDED, "ok", start)

    def _result(self, stage: Stage, status: StageStatus, detail: str, start: float) -> StageResult:
        elapsed = time.monotonic() - start
        logger.info(
            "stage finished",
            stage=stage.name,
            status=status.value,
            elapsed=round(elapsed, 1),
        )
        return StageResult(stage.name, status, detail, elapsed, stage.fatal)

    def _maybe_launch(self, run: PipelineRun, pending_platform: set[str]) -> bool:
        """Launch the health service once all platform stages are done.

        Returns True if a launch was attempted.
        """
        if self.launcher is None or pending_platform:
            return False
        try:
            self.launcher.launch()
        except Exception as e:
            logger.warning("health service launch failed", error=str(e))
            run.warn(f"health service launch failed: {e}")
            return True
        run.health_service_launched = True
        logger.info("health service launched")
        return True


def _check_unique_names(stages: Sequence[Stage]) -> None:
    seen: set[str] = set()
    for stage in stages:
        if stage.name in seen:
            raise PipelineDefinitionError(f"Duplicate stage name: {stage.name}")
        seen.add(stage.name)
