"""Health aggregation service.

Probes each deployed workload's health endpoint on request and serves the
aggregate over HTTP.
"""

from .aggregator import (
    INITIALIZING,
    READY,
    UNAVAILABLE,
    HealthAggregator,
    HealthSnapshot,
    ProbeTarget,
)
from .server import HealthServer
from .service import (
    DaemonLauncher,
    SystemdLauncher,
    build_aggregator,
    build_server,
    make_launcher,
    run_supervised,
    serve_health,
)

__all__ = [
    "READY",
    "INITIALIZING",
    "UNAVAILABLE",
    "ProbeTarget",
    "HealthSnapshot",
    "HealthAggregator",
    "HealthServer",
    "SystemdLauncher",
    "DaemonLauncher",
    "build_aggregator",
    "build_server",
    "make_launcher",
    "run_supervised",
    "serve_health",
]
