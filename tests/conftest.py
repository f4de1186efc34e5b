"""Shared test fixtures for nodeprov tests.

This module provides:
- FakeClock: a manual clock whose sleep() advances time instantly
- Recording executors and launchers for pipeline tests
- An environment scrubbed of the variables load_config() reads
"""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from nodeprov.config import ENV_VARS, MASTER_IP_ENV
from nodeprov.errors import ExecutionError, ReadinessTimeout
from nodeprov.provision import ReadinessPoller

# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def poller(clock: FakeClock) -> ReadinessPoller:
    """Poller that never really sleeps."""
    return ReadinessPoller(clock=clock, sleep=clock.sleep)


# =============================================================================
# Executors and launchers
# =============================================================================


@dataclass
class RecordingExecutor:
    """Appends its name to a shared call log, then optionally fails."""

    name: str
    calls: list[str]
    error: Exception | None = None

    def run(self) -> None:
        self.calls.append(self.name)
        if self.error is not None:
            raise self.error


@dataclass
class RecordingLauncher:
    """Records launch() calls into a shared call log."""

    calls: list[str] = field(default_factory=list)
    error: Exception | None = None
    launches: int = 0

    def launch(self) -> None:
        self.launches += 1
        self.calls.append("launch")
        if self.error is not None:
            raise self.error


@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def make_executor(calls):
    def _make(name: str, error: Exception | None = None) -> RecordingExecutor:
        return RecordingExecutor(name, calls, error)

    return _make


@pytest.fixture
def execution_error() -> ExecutionError:
    return ExecutionError("installer exited with status 1", output="boom", returncode=1)


@pytest.fixture
def readiness_timeout() -> ReadinessTimeout:
    return ReadinessTimeout("Workloads not ready: b", labels=["b"], elapsed=2.0)


# =============================================================================
# Environment
# =============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove every variable load_config() would pick up."""
    for name in [*ENV_VARS.values(), MASTER_IP_ENV]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def launcher(calls) -> RecordingLauncher:
    return RecordingLauncher(calls)
