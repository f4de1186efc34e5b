"""Concrete stage executors.

Each executor performs one provisioning action and raises ExecutionError
when it fails. How an action is carried out never leaks into the
Orchestrator.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path

import httpx
import structlog
import yaml

from ..errors import ExecutionError
from .predicates import Kubectl

logger = structlog.get_logger(__name__)

K3S_INSTALL_URL = "https://get.k3s.io"
K3S_KUBECONFIG = Path("/etc/rancher/k3s/k3s.yaml")
KUBECTL_STABLE_URL = "https://dl.k8s.io/release/stable.txt"
KUBECTL_BINARY = Path("/usr/local/bin/kubectl")

# Lines of installer output kept in an ExecutionError
OUTPUT_TAIL_LINES = 50


def _tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class NullExecutor:
    """Succeeds immediately. For stages that only wait on their gates."""

    def run(self) -> None:
        return None


class CommandExecutor:
    """Run one command and fail on a non-zero exit status."""

    def __init__(
        self,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        input: str | None = None,
    ):
        """Initialize command executor.

        Args:
            argv: Command and arguments.
            env: Extra environment variables, merged over os.environ.
            timeout: Seconds before the command is killed.
            input: Text fed to the command's stdin.
        """
        self.argv = list(argv)
        self.env = dict(env or {})
        self.timeout = timeout
        self.input = input

    def run(self) -> None:
        logger.info("running command", command=self.argv[0])
        try:
            result = subprocess.run(
                self.argv,
                capture_output=True,
                text=True,
                env={**os.environ, **self.env},
                timeout=self.timeout,
                input=self.input,
            )
        except FileNotFoundError:
            raise ExecutionError(f"{self.argv[0]} not found") from None
        except subprocess.TimeoutExpired:
            raise ExecutionError(f"{self.argv[0]} timed out after {self.timeout:g}s") from None

        if result.returncode != 0:
            raise ExecutionError(
                f"{self.argv[0]} exited with status {result.returncode}",
                output=_tail(result.stderr or result.stdout),
                returncode=result.returncode,
            )


class RemoteScriptExecutor:
    """Download a shell script and run it with sh."""

    def __init__(
        self,
        url: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        download_timeout: float = 60.0,
    ):
        self.url = url
        self.args = list(args)
        self.env = dict(env or {})
        self.timeout = timeout
        self.download_timeout = download_timeout

    def _download(self) -> str:
        try:
            with httpx.Client(timeout=self.download_timeout, follow_redirects=True) as client:
                response = client.get(self.url)
                response.raise_for_status()
                return response.text
        except httpx.HTTPError as e:
            raise ExecutionError(f"Failed to download {self.url}: {e}") from e

    def run(self) -> None:
        script = self._download()
        with tempfile.TemporaryDirectory(prefix="nodeprov-") as tmpdir:
            path = Path(tmpdir) / "script.sh"
            path.write_text(script)
            CommandExecutor(
                ["sh", str(path), *self.args],
                env=self.env,
                timeout=self.timeout,
            ).run()


def k3s_server_installer(
    version: str,
    token: str,
    node_name: str,
    advertise_ip: str | None = None,
    timeout: float | None = 600.0,
) -> RemoteScriptExecutor:
    """Installer for the first control-plane node."""
    args = [
        "server",
        "--token",
        token,
        "--cluster-init",
        "--disable",
        "traefik",
        "--disable",
        "servicelb",
        f"--node-name={node_name}",
        "--flannel-backend=vxlan",
        "--write-kubeconfig-mode=644",
    ]
    if advertise_ip:
        args.append(f"--tls-san={advertise_ip}")
    return RemoteScriptExecutor(
        K3S_INSTALL_URL,
        args=args,
        env={"INSTALL_K3S_VERSION": version},
        timeout=timeout,
    )


def k3s_agent_installer(
    version: str,
    server_url: str,
    token: str,
    node_name: str,
    timeout: float | None = 600.0,
) -> RemoteScriptExecutor:
    """Installer that joins this node to an existing control-plane."""
    return RemoteScriptExecutor(
        K3S_INSTALL_URL,
        args=[
            "agent",
            "--server",
            server_url,
            "--token",
            token,
            f"--node-name={node_name}",
        ],
        env={"INSTALL_K3S_VERSION": version},
        timeout=timeout,
    )


class KubectlInstallExecutor:
    """Make kubectl available: snap first, release binary as fallback."""

    def __init__(self, target: Path = KUBECTL_BINARY, arch: str = "amd64"):
        self.target = target
        self.arch = arch

    def run(self) -> None:
        if shutil.which("kubectl"):
            logger.info("kubectl already installed")
            return

        if shutil.which("snap"):
            try:
                CommandExecutor(["snap", "install", "kubectl", "--classic"], timeout=300).run()
                return
            except ExecutionError as e:
                logger.warning("snap install failed, downloading kubectl", error=str(e))

        self._download_binary()

    def _download_binary(self) -> None:
        try:
            with httpx.Client(timeout=120.0, follow_redirects=True) as client:
                version = client.get(KUBECTL_STABLE_URL).raise_for_status().text.strip()
                url = f"https://dl.k8s.io/release/{version}/bin/linux/{self.arch}/kubectl"
                binary = client.get(url).raise_for_status().content
        except httpx.HTTPError as e:
            raise ExecutionError(f"Failed to download kubectl: {e}") from e

        try:
            self.target.parent.mkdir(parents=True, exist_ok=True)
            self.target.write_bytes(binary)
            self.target.chmod(0o755)
        except OSError as e:
            raise ExecutionError(f"Failed to install kubectl to {self.target}: {e}") from e
        logger.info("kubectl installed", version=version, path=str(self.target))


class ServerKubeconfigExecutor:
    """Point the default kubeconfig at the one K3s wrote."""

    def __init__(self, target: Path, source: Path = K3S_KUBECONFIG):
        self.source = source
        self.target = target

    def run(self) -> None:
        if not self.source.exists():
            raise ExecutionError(f"Kubeconfig not found at {self.source}")
        try:
            self.target.parent.mkdir(parents=True, exist_ok=True)
            if self.target.is_symlink() or self.target.exists():
                self.target.unlink()
            self.target.symlink_to(self.source)
        except OSError as e:
            raise ExecutionError(f"Failed to link kubeconfig: {e}") from e
        logger.info("kubeconfig configured", path=str(self.target))


class AgentKubeconfigExecutor:
    """Write a kubeconfig that talks to the control-plane with the join token."""

    def __init__(self, target: Path, server_url: str, token: str, cluster_name: str = "k3s"):
        self.target = target
        self.server_url = server_url
        self.token = token
        self.cluster_name = cluster_name

    def build(self) -> dict:
        name = self.cluster_name
        return {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [
                {
                    "name": name,
                    "cluster": {"server": self.server_url, "insecure-skip-tls-verify": True},
                }
            ],
            "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
            "current-context": name,
            "users": [{"name": name, "user": {"token": self.token}}],
        }

    def run(self) -> None:
        try:
            self.target.parent.mkdir(parents=True, exist_ok=True)
            # Holds the join token: never readable by anyone but the owner.
            fd = os.open(self.target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                # An existing file keeps its old mode through O_CREAT
                os.fchmod(f.fileno(), 0o600)
                yaml.dump(self.build(), f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise ExecutionError(f"Failed to write kubeconfig: {e}") from e
        logger.info("kubeconfig written", path=str(self.target), server=self.server_url)


class ClusterVerifyExecutor:
    """Check the API server health endpoint and that every pod is running.

    Pods in a phase other than Running or Succeeded fail the stage with
    their names in the error output.
    """

    def __init__(self, kubectl: Kubectl):
        self.kubectl = kubectl

    def run(self) -> None:
        CommandExecutor(
            self.kubectl.command("get", "--raw", "/healthz"), timeout=self.kubectl.timeout
        ).run()

        try:
            pods = self.kubectl.get_json("pods", "--all-namespaces").get("items", [])
        except (RuntimeError, ValueError, subprocess.TimeoutExpired) as e:
            raise ExecutionError(f"Failed to list pods: {e}") from e

        problems = []
        running = 0
        for pod in pods:
            phase = pod.get("status", {}).get("phase", "Unknown")
            if phase == "Running":
                running += 1
            elif phase != "Succeeded":
                meta = pod.get("metadata", {})
                problems.append(f"{meta.get('namespace')}/{meta.get('name')}: {phase}")

        logger.info("cluster pods", running=running, total=len(pods))
        if problems:
            raise ExecutionError(
                f"{len(problems)} of {len(pods)} pods not running", output="\n".join(problems)
            )
