"""Health aggregation over deployed workloads.

Every snapshot probes each workload's own health endpoint concurrently and
reduces the results to one status. Nothing is cached between snapshots.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from ..errors import ProbeFailure

logger = structlog.get_logger(__name__)

READY = "ready"
INITIALIZING = "initializing"
UNAVAILABLE = "unavailable"

DEFAULT_PROBE_TIMEOUT = 2.0


@dataclass(frozen=True)
class ProbeTarget:
    """A workload health endpoint."""

    name: str
    url: str


@dataclass
class HealthSnapshot:
    """The aggregate answer to one health query."""

    overall: str
    per_workload_status: dict[str, str] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ready(self) -> bool:
        return self.overall == READY

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        timestamp = self.observed_at.astimezone(timezone.utc).replace(tzinfo=None)
        return {
            "status": self.overall,
            "services": dict(self.per_workload_status),
            "timestamp": timestamp.isoformat() + "Z",
        }


class HealthAggregator:
    """Probe every target and reduce the results to a HealthSnapshot."""

    def __init__(
        self,
        targets: Sequence[ProbeTarget],
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize aggregator.

        Args:
            targets: Workload health endpoints to probe.
            probe_timeout: Timeout for each probe, in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.targets = list(targets)
        self.probe_timeout = probe_timeout
        self._transport = transport

    async def snapshot(self) -> HealthSnapshot:
        """Probe all targets concurrently and build a fresh snapshot."""
        async with httpx.AsyncClient(
            timeout=self.probe_timeout,
            transport=self._transport,
        ) as client:
            results = await asyncio.gather(*(self._probe(client, t) for t in self.targets))

        statuses = {target.name: status for target, status in zip(self.targets, results)}
        overall = READY if all(s == READY for s in statuses.values()) else INITIALIZING
        return HealthSnapshot(overall, statuses)

    async def _probe(self, client: httpx.AsyncClient, target: ProbeTarget) -> str:
        try:
            # wait_for bounds the whole probe, not just each socket operation
            response = await asyncio.wait_for(client.get(target.url), self.probe_timeout)
            if not response.is_success:
                raise ProbeFailure(f"HTTP {response.status_code}", target=target.name)
        except ProbeFailure as e:
            logger.debug("probe failed", target=target.name, reason=e.message)
            return UNAVAILABLE
        except httpx.ConnectError:
            logger.debug("probe failed", target=target.name, reason="Connection refused")
            return UNAVAILABLE
        except (httpx.TimeoutException, asyncio.TimeoutError):
            logger.debug("probe failed", target=target.name, reason="Request timeout")
            return UNAVAILABLE
        except Exception as e:
            logger.debug("probe failed", target=target.name, reason=str(e))
            return UNAVAILABLE
        return READY
