"""Readiness polling.

This module provides the single polling primitive used for every
readiness gate: evaluate a predicate until it holds or a deadline elapses.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace

import structlog

logger = structlog.get_logger(__name__)

Predicate = Callable[[], "bool | Awaitable[bool]"]


@dataclass(frozen=True)
class ReadinessCheck:
    """A predicate plus its polling policy."""

    predicate: Predicate
    interval: float
    deadline: float
    label: str = "readiness"
    # Called once on timeout; its output explains why the gate never held.
    diagnostics: Callable[[], str] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError(f"{self.label}: interval must be > 0, got {self.interval}")
        if self.deadline < 0:
            raise ValueError(f"{self.label}: deadline must be >= 0, got {self.deadline}")

    def with_deadline(self, deadline: float) -> ReadinessCheck:
        """Return a copy of this check with a different deadline."""
        return replace(self, deadline=deadline)

    def collect_diagnostics(self) -> str:
        """Output of the diagnostics hook, or "" when there is none."""
        if self.diagnostics is None:
            return ""
        try:
            return self.diagnostics().strip()
        except Exception as e:
            logger.warning("diagnostics failed", gate=self.label, error=str(e))
            return f"diagnostics unavailable: {type(e).__name__}: {e}"


@dataclass(frozen=True)
class PollOutcome:
    """Result of waiting on a ReadinessCheck."""

    satisfied: bool
    elapsed: float
    attempts: int
    label: str = "readiness"
    last_error: str | None = None

    @property
    def timed_out(self) -> bool:
        return not self.satisfied

    @property
    def status(self) -> str:
        return "satisfied" if self.satisfied else "timed_out"


class ReadinessPoller:
    """Poll a ReadinessCheck until satisfied or its deadline elapses."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize poller.

        Args:
            clock: Monotonic clock returning seconds.
            sleep: Coroutine function used to wait between attempts.
        """
        self._clock = clock
        self._sleep = sleep

    async def wait_until(
        self,
        check: ReadinessCheck,
        on_attempt: Callable[[int, str, str | None], None] | None = None,
    ) -> PollOutcome:
        """Evaluate check.predicate at 0, interval, 2*interval, ... until it holds.

        Attempts are scheduled against the start time, so slow predicates do
        not push later attempts back. Polling stops after the first failed
        evaluation that ends at or past the deadline, and each evaluation is
        cut off at the time left before the deadline. Exceptions raised by
        the predicate count as "not yet satisfied".

        Args:
            check: Predicate and polling policy.
            on_attempt: Optional callback called with (attempt, label, error)
                       after every unsuccessful attempt.

        Returns:
            PollOutcome, satisfied or timed out.
        """
        start = self._clock()
        last_error: str | None = None
        attempt = 0

        while True:
            attempt += 1
            remaining = check.deadline - (self._clock() - start)
            # An evaluation at the deadline itself still gets one interval.
            budget = remaining if remaining > 0 else check.interval
            ok, last_error = await self._evaluate(check, budget)
            elapsed = self._clock() - start
            if ok:
                logger.debug(
                    "readiness satisfied", gate=check.label, attempts=attempt, elapsed=elapsed
                )
                return PollOutcome(True, elapsed, attempt, check.label)

            if on_attempt:
                on_attempt(attempt, check.label, last_error)

            next_offset = attempt * check.interval
            # Tolerate float error: deadline=0.3, interval=0.1 must give 4 attempts.
            if elapsed >= check.deadline or next_offset > check.deadline + 1e-9:
                break
            delay = start + next_offset - self._clock()
            if delay > 0:
                await self._sleep(delay)

        logger.debug(
            "readiness timed out",
            gate=check.label,
            attempts=attempt,
            elapsed=elapsed,
            last_error=last_error,
        )
        return PollOutcome(False, elapsed, attempt, check.label, last_error)

    def wait_until_sync(
        self,
        check: ReadinessCheck,
        on_attempt: Callable[[int, str, str | None], None] | None = None,
    ) -> PollOutcome:
        """Synchronous wrapper for wait_until."""
        return asyncio.run(self.wait_until(check, on_attempt))

    async def _evaluate(self, check: ReadinessCheck, timeout: float) -> tuple[bool, str | None]:
        """Run the predicate once, giving up after timeout seconds."""
        try:
            result = await asyncio.wait_for(self._call(check), timeout)
        except asyncio.TimeoutError:
            logger.debug("readiness predicate timed out", gate=check.label, timeout=timeout)
            return False, f"predicate timed out after {timeout:g}s"
        except Exception as e:
            logger.debug("readiness predicate raised", gate=check.label, error=str(e))
            return False, f"{type(e).__name__}: {e}"
        if result:
            return True, None
        return False, "not ready"

    async def _call(self, check: ReadinessCheck):
        """Sync predicates run in a worker thread."""
        if inspect.iscoroutinefunction(check.predicate):
            return await check.predicate()
        result = await asyncio.to_thread(check.predicate)
        if inspect.isawaitable(result):
            result = await result
        return result
