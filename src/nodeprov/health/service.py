"""Health service lifecycle.

The health service outlives the provisioning run. It is started once by
the Orchestrator and then supervised independently, either by systemd
(Restart=always) or by a detached, self-restarting daemon on hosts
without systemd.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog

from ..config import HealthConfig, ProvisionConfig
from ..errors import ExecutionError
from ..shared.paths import HEALTH_LOG_FILE, HEALTH_PID_FILE, ensure_dirs
from .aggregator import HealthAggregator, ProbeTarget
from .server import HealthServer

logger = structlog.get_logger(__name__)

SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")

UNIT_TEMPLATE = """\
[Unit]
Description=Observability Health HTTP Server
After=network.target

[Service]
Type=simple
ExecStart={exec_start}
Restart=always
RestartSec={restart_sec}

[Install]
WantedBy=multi-user.target
"""


def build_aggregator(config: ProvisionConfig) -> HealthAggregator:
    """Aggregator over every configured workload that exposes an endpoint."""
    targets = [
        ProbeTarget(w.name, w.readiness_endpoint) for w in config.workloads if w.readiness_endpoint
    ]
    return HealthAggregator(targets, probe_timeout=config.health.probe_timeout)


def build_server(config: ProvisionConfig, port: int | None = None) -> HealthServer:
    health = config.health
    return HealthServer(
        build_aggregator(config),
        host=health.host,
        port=health.port if port is None else port,
        path=health.path,
    )


def serve_command(config: ProvisionConfig) -> list[str]:
    """Command line that runs the supervised health server for config."""
    if config.config_path is None:
        raise ExecutionError("The health service needs a config file to read its workloads from")
    return [
        sys.executable,
        "-m",
        "nodeprov",
        "--json-logs",
        "health",
        "serve",
        "--config",
        str(config.config_path),
        "--supervise",
    ]


async def run_supervised(
    factory: Callable[[], Awaitable[None]],
    restart_delay: float = 10.0,
    max_restarts: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Run factory() and start it again whenever it crashes.

    Returns the number of restarts once factory() returns normally or
    max_restarts is exhausted.
    """
    restarts = 0
    while True:
        try:
            await factory()
            return restarts
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("health service crashed", restarts=restarts)
            if max_restarts is not None and restarts >= max_restarts:
                logger.error("giving up on health service", restarts=restarts)
                return restarts
        restarts += 1
        await sleep(restart_delay)
        logger.info("restarting health service", attempt=restarts)


def serve_health(config: ProvisionConfig, port: int | None = None, supervise: bool = False) -> None:
    """Run the health server in the foreground until interrupted."""

    async def _serve() -> None:
        await build_server(config, port).serve_forever()

    async def _main() -> None:
        if supervise:
            await run_supervised(_serve, config.health.restart_delay)
        else:
            await _serve()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("health service interrupted")


class SystemdLauncher:
    """Install and start the health service as a systemd unit."""

    def __init__(
        self,
        exec_args: list[str],
        health: HealthConfig,
        unit_dir: Path = SYSTEMD_UNIT_DIR,
    ):
        """Initialize launcher.

        Args:
            exec_args: Command systemd runs (ExecStart).
            health: Health service settings (unit name, restart delay).
            unit_dir: Directory the unit file is written to.
        """
        self.exec_args = exec_args
        self.unit_name = f"{health.unit_name}.service"
        self.restart_sec = int(health.restart_delay)
        self.unit_dir = unit_dir

    def render_unit(self) -> str:
        return UNIT_TEMPLATE.format(
            exec_start=" ".join(self.exec_args),
            restart_sec=self.restart_sec,
        )

    def launch(self) -> None:
        unit_file = self.unit_dir / self.unit_name
        try:
            unit_file.write_text(self.render_unit())
        except OSError as e:
            raise ExecutionError(f"Failed to write {unit_file}: {e}") from e

        for args in (
            ["daemon-reload"],
            ["enable", self.unit_name],
            ["restart", self.unit_name],
        ):
            self._systemctl(args)
        logger.info("health service unit started", unit=self.unit_name)

    def _systemctl(self, args: list[str]) -> None:
        try:
            result = subprocess.run(
                ["systemctl", *args],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except FileNotFoundError:
            raise ExecutionError("systemctl not found. Is systemd available?") from None
        except subprocess.TimeoutExpired:
            raise ExecutionError(f"systemctl {' '.join(args)} timed out") from None
        if result.returncode != 0:
            raise ExecutionError(
                f"systemctl {' '.join(args)} failed",
                output=result.stderr.strip(),
                returncode=result.returncode,
            )


def is_running(pid_file: Path = HEALTH_PID_FILE) -> tuple[bool, int | None]:
    """Check if the health daemon is running.

    Returns:
        Tuple of (alive, pid). If not running, pid is None.
    """
    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        # Invalid PID file
        pid_file.unlink(missing_ok=True)
        return False, None

    try:
        os.kill(pid, 0)  # Signal 0 = check existence
        return True, pid
    except ProcessLookupError:
        # Stale PID file
        pid_file.unlink(missing_ok=True)
        return False, None
    except PermissionError:
        # Process exists but we can't signal it (different user)
        return True, pid


class DaemonLauncher:
    """Start the supervised health server as a detached process.

    Uses double-fork to fully detach from the provisioning process, which
    keeps running after launch() returns.
    """

    def __init__(
        self,
        config: ProvisionConfig,
        pid_file: Path = HEALTH_PID_FILE,
        log_file: Path = HEALTH_LOG_FILE,
    ):
        self.config = config
        self.pid_file = pid_file
        self.log_file = log_file

    def launch(self) -> None:
        alive, pid = is_running(self.pid_file)
        if alive:
            logger.info("health daemon already running", pid=pid)
            return

        ensure_dirs()
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)

        # First fork - the parent reaps the intermediate child and returns
        pid = os.fork()
        if pid > 0:
            os.waitpid(pid, 0)
            logger.info("health daemon forked", pid_file=str(self.pid_file))
            return

        # Forked processes must never return into the provisioning run
        exit_code = 1
        try:
            # Child: create new session to detach from terminal
            os.setsid()

            # Second fork - prevent zombie processes
            if os.fork() > 0:
                exit_code = 0
            else:
                exit_code = self._run_daemon()
        except Exception:
            logger.exception("health daemon failed to start")
        finally:
            os._exit(exit_code)

    def _run_daemon(self) -> int:
        """Body of the detached grandchild. Returns its exit code."""
        self.pid_file.write_text(str(os.getpid()))

        # Redirect stdout/stderr to log file
        log_fd = open(self.log_file, "a")
        os.dup2(log_fd.fileno(), sys.stdout.fileno())
        os.dup2(log_fd.fileno(), sys.stderr.fileno())

        # Handle signals for graceful shutdown
        def handle_sigterm(signum: int, frame: Any) -> None:
            self.pid_file.unlink(missing_ok=True)
            os._exit(0)

        signal.signal(signal.SIGTERM, handle_sigterm)
        signal.signal(signal.SIGINT, handle_sigterm)

        from ..shared.logging import configure_logging

        configure_logging(level="info", log_file=self.log_file, json_output=True)

        try:
            serve_health(self.config, supervise=True)
        except Exception:
            logger.exception("health daemon exited with an error")
            return 1
        finally:
            self.pid_file.unlink(missing_ok=True)
        return 0


def make_launcher(config: ProvisionConfig) -> SystemdLauncher | DaemonLauncher | None:
    """Launcher for config.health, or None when the service is disabled."""
    if not config.health.enabled:
        return None
    if config.config_path is None:
        logger.warning("health service disabled: no config file lists the workloads to probe")
        return None
    if config.health.launcher == "daemon":
        return DaemonLauncher(config)
    return SystemdLauncher(serve_command(config), config.health)
