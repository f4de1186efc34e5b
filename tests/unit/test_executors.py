"""Unit tests for stage executors."""

from __future__ import annotations

import json
import os
import stat
import subprocess
from unittest.mock import MagicMock, patch

import httpx
import pytest
import yaml

from nodeprov.errors import ExecutionError
from nodeprov.provision import (
    AgentKubeconfigExecutor,
    ClusterVerifyExecutor,
    CommandExecutor,
    KubectlInstallExecutor,
    RemoteScriptExecutor,
    ServerKubeconfigExecutor,
    StageExecutor,
    k3s_server_installer,
)
from nodeprov.provision.diagnostics import (
    command_output,
    gather,
    node_diagnostics,
    service_diagnostics,
)
from nodeprov.provision.predicates import Kubectl, http_reachable, systemd_unit_active


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestCommandExecutor:
    """Tests for CommandExecutor."""

    def test_is_stage_executor(self):
        assert isinstance(CommandExecutor(["true"]), StageExecutor)

    def test_success(self):
        with patch("nodeprov.provision.executors.subprocess.run", return_value=completed()) as run:
            CommandExecutor(["echo", "hi"], env={"FOO": "bar"}).run()

        args, kwargs = run.call_args
        assert args[0] == ["echo", "hi"]
        assert kwargs["env"]["FOO"] == "bar"
        assert "PATH" in kwargs["env"]

    def test_failure_keeps_output_tail(self):
        stderr = "\n".join(f"line {i}" for i in range(100))
        with patch(
            "nodeprov.provision.executors.subprocess.run",
            return_value=completed(returncode=2, stderr=stderr),
        ):
            with pytest.raises(ExecutionError) as exc_info:
                CommandExecutor(["sh", "install.sh"]).run()

        error = exc_info.value
        assert error.returncode == 2
        assert str(error) == "sh exited with status 2"
        assert error.output.splitlines()[0] == "line 50"
        assert error.output.splitlines()[-1] == "line 99"

    def test_missing_binary(self):
        with patch("nodeprov.provision.executors.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(ExecutionError, match="not found"):
                CommandExecutor(["k3s"]).run()

    def test_timeout(self):
        with patch(
            "nodeprov.provision.executors.subprocess.run",
            side_effect=subprocess.TimeoutExpired("sh", 5),
        ):
            with pytest.raises(ExecutionError, match="timed out after 5s"):
                CommandExecutor(["sh"], timeout=5).run()


class TestRemoteScriptExecutor:
    """Tests for RemoteScriptExecutor."""

    def test_downloads_and_runs(self):
        client = MagicMock()
        client.get.return_value.text = "#!/bin/sh\necho installed\n"
        scripts = []

        def fake_run(cmd, **kwargs):
            with open(cmd[1]) as f:
                scripts.append(f.read())
            return completed()

        with (
            patch("nodeprov.provision.executors.httpx.Client") as client_class,
            patch("nodeprov.provision.executors.subprocess.run", side_effect=fake_run) as run,
        ):
            client_class.return_value.__enter__.return_value = client
            RemoteScriptExecutor("https://get.k3s.io", args=["server"], env={"A": "1"}).run()

        client.get.assert_called_once_with("https://get.k3s.io")
        cmd = run.call_args.args[0]
        assert cmd[0] == "sh"
        assert cmd[2:] == ["server"]
        assert scripts == ["#!/bin/sh\necho installed\n"]
        assert run.call_args.kwargs["env"]["A"] == "1"

    def test_download_failure(self):
        with patch("nodeprov.provision.executors.httpx.Client") as client_class:
            client = client_class.return_value.__enter__.return_value
            client.get.side_effect = httpx.ConnectError("Name or service not known")
            with pytest.raises(ExecutionError, match="Failed to download"):
                RemoteScriptExecutor("https://get.k3s.io").run()


class TestK3sInstallers:
    def test_server_args(self):
        executor = k3s_server_installer("v1.28.4+k3s1", "secret", "cp-1", advertise_ip="1.2.3.4")

        assert executor.args[0] == "server"
        assert "--cluster-init" in executor.args
        assert executor.args[executor.args.index("--token") + 1] == "secret"
        assert "--node-name=cp-1" in executor.args
        assert "--tls-san=1.2.3.4" in executor.args
        assert executor.env == {"INSTALL_K3S_VERSION": "v1.28.4+k3s1"}

    def test_server_without_advertise_ip(self):
        executor = k3s_server_installer("v1.28.4+k3s1", "secret", "cp-1")
        assert not any(a.startswith("--tls-san") for a in executor.args)


class TestKubectlInstallExecutor:
    def test_already_installed(self):
        with (
            patch("nodeprov.provision.executors.shutil.which", return_value="/usr/bin/kubectl"),
            patch("nodeprov.provision.executors.subprocess.run") as run,
        ):
            KubectlInstallExecutor().run()
        run.assert_not_called()

    def test_snap_install(self):
        def which(name):
            return "/usr/bin/snap" if name == "snap" else None

        with (
            patch("nodeprov.provision.executors.shutil.which", side_effect=which),
            patch("nodeprov.provision.executors.subprocess.run", return_value=completed()) as run,
        ):
            KubectlInstallExecutor().run()

        assert run.call_args.args[0] == ["snap", "install", "kubectl", "--classic"]


class TestKubeconfigExecutors:
    def test_server_symlink(self, tmp_path):
        source = tmp_path / "k3s.yaml"
        source.write_text("apiVersion: v1\n")
        target = tmp_path / ".kube" / "config"

        ServerKubeconfigExecutor(target, source).run()

        assert target.is_symlink()
        assert target.resolve() == source.resolve()

    def test_server_missing_source(self, tmp_path):
        with pytest.raises(ExecutionError, match="Kubeconfig not found"):
            ServerKubeconfigExecutor(tmp_path / "config", tmp_path / "k3s.yaml").run()

    def test_agent_kubeconfig(self, tmp_path):
        target = tmp_path / ".kube" / "config"

        AgentKubeconfigExecutor(target, "https://10.0.0.10:6443", "secret", "demo").run()

        data = yaml.safe_load(target.read_text())
        assert data["current-context"] == "demo"
        assert data["clusters"][0]["cluster"]["server"] == "https://10.0.0.10:6443"
        assert data["users"][0]["user"]["token"] == "secret"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_agent_kubeconfig_private_before_token_written(self, tmp_path):
        target = tmp_path / "config"
        target.write_text("stale")
        target.chmod(0o644)
        modes = []

        def dump(data, stream, **kwargs):
            modes.append(stat.S_IMODE(os.fstat(stream.fileno()).st_mode))

        with patch("nodeprov.provision.executors.yaml.dump", side_effect=dump):
            AgentKubeconfigExecutor(target, "https://10.0.0.10:6443", "secret").run()

        assert modes == [0o600]
        assert stat.S_IMODE(target.stat().st_mode) == 0o600


class TestPredicates:
    """Tests for readiness predicates."""

    def test_node_ready(self):
        node = {"status": {"conditions": [{"type": "Ready", "status": "True"}]}}
        with patch(
            "nodeprov.provision.predicates.subprocess.run",
            return_value=completed(stdout=json.dumps(node)),
        ) as run:
            assert Kubectl("/k").node_ready("cp-1")() is True

        assert run.call_args.args[0] == [
            "kubectl", "--kubeconfig", "/k", "get", "node", "cp-1", "-o", "json"
        ]

    def test_node_listed(self):
        nodes = {"items": [{"metadata": {"name": "cp-1"}}]}
        with patch(
            "nodeprov.provision.predicates.subprocess.run",
            return_value=completed(stdout=json.dumps(nodes)),
        ):
            assert Kubectl().node_listed("cp-1")() is True
            assert Kubectl().node_listed("cp-2")() is False

    def test_kubectl_error_raises(self):
        with patch(
            "nodeprov.provision.predicates.subprocess.run",
            return_value=completed(returncode=1, stderr="connection refused"),
        ):
            with pytest.raises(RuntimeError, match="connection refused"):
                Kubectl().node_listed("cp-1")()

    def test_pods_ready(self):
        pods = {
            "items": [
                {"status": {"conditions": [{"type": "Ready", "status": "True"}]}},
                {"status": {"conditions": [{"type": "Ready", "status": "False"}]}},
            ]
        }
        with patch(
            "nodeprov.provision.predicates.subprocess.run",
            return_value=completed(stdout=json.dumps(pods)),
        ):
            assert Kubectl().pods_ready("app=db", "default")() is False

    def test_pods_ready_requires_pods(self):
        with patch(
            "nodeprov.provision.predicates.subprocess.run",
            return_value=completed(stdout=json.dumps({"items": []})),
        ):
            assert Kubectl().pods_ready("app=db")() is False

    def test_pods_running(self):
        pods = {"items": [{"metadata": {"name": "coredns-abc"}, "status": {"phase": "Running"}}]}
        with patch(
            "nodeprov.provision.predicates.subprocess.run",
            return_value=completed(stdout=json.dumps(pods)),
        ):
            assert Kubectl().pods_running("coredns")() is True

    def test_systemd_unit_active(self):
        with patch(
            "nodeprov.provision.predicates.subprocess.run", return_value=completed(returncode=3)
        ) as run:
            assert systemd_unit_active("k3s")() is False
        assert run.call_args.args[0] == ["systemctl", "is-active", "--quiet", "k3s"]

    def test_http_reachable_any_status(self):
        with patch("nodeprov.provision.predicates.httpx.Client") as client_class:
            client = client_class.return_value.__enter__.return_value
            client.get.return_value = MagicMock(status_code=401)
            assert http_reachable("https://10.0.0.10:6443")() is True


def pod(name, phase, namespace="kube-system"):
    return {"metadata": {"name": name, "namespace": namespace}, "status": {"phase": phase}}


class TestClusterVerifyExecutor:
    """Tests for the post-install cluster check."""

    def test_healthy_cluster(self):
        pods = {"items": [pod("coredns-1", "Running"), pod("helm-install-x", "Succeeded")]}
        with patch(
            "nodeprov.provision.executors.subprocess.run",
            side_effect=[completed(stdout="ok"), completed(stdout=json.dumps(pods))],
        ) as run:
            ClusterVerifyExecutor(Kubectl("/k")).run()

        assert run.call_args_list[0].args[0] == [
            "kubectl", "--kubeconfig", "/k", "get", "--raw", "/healthz"
        ]

    def test_unhealthy_api_server(self):
        with patch(
            "nodeprov.provision.executors.subprocess.run",
            return_value=completed(returncode=1, stderr="connection refused"),
        ):
            with pytest.raises(ExecutionError) as exc_info:
                ClusterVerifyExecutor(Kubectl()).run()

        assert exc_info.value.output == "connection refused"

    def test_problem_pods_listed(self):
        pods = {
            "items": [
                pod("coredns-1", "Running"),
                pod("db-0", "Pending", namespace="default"),
                pod("metrics-1", "Failed"),
            ]
        }
        with patch(
            "nodeprov.provision.executors.subprocess.run",
            side_effect=[completed(stdout="ok"), completed(stdout=json.dumps(pods))],
        ):
            with pytest.raises(ExecutionError, match="2 of 3 pods not running") as exc_info:
                ClusterVerifyExecutor(Kubectl()).run()

        assert exc_info.value.output.splitlines() == [
            "default/db-0: Pending",
            "kube-system/metrics-1: Failed",
        ]

    def test_pod_listing_fails(self):
        with patch(
            "nodeprov.provision.executors.subprocess.run",
            side_effect=[completed(stdout="ok"), completed(returncode=1, stderr="forbidden")],
        ):
            with pytest.raises(ExecutionError, match="Failed to list pods: forbidden"):
                ClusterVerifyExecutor(Kubectl()).run()


class TestDiagnostics:
    """Tests for gate timeout diagnostics."""

    def test_command_output_combines_streams(self):
        with patch(
            "nodeprov.provision.diagnostics.subprocess.run",
            return_value=completed(returncode=3, stdout="inactive\n", stderr="failed\n"),
        ):
            assert command_output(["systemctl", "status", "k3s"]) == "inactive\nfailed"

    def test_command_output_never_raises(self):
        with patch("nodeprov.provision.diagnostics.subprocess.run", side_effect=FileNotFoundError):
            assert command_output(["journalctl"]) == "journalctl not found"
        with patch(
            "nodeprov.provision.diagnostics.subprocess.run",
            side_effect=subprocess.TimeoutExpired("kubectl", 30),
        ):
            assert "timed out after 30s" in command_output(["kubectl", "describe"])

    def test_gather_sections(self):
        with patch(
            "nodeprov.provision.diagnostics.subprocess.run",
            side_effect=[completed(stdout="one"), completed(stdout="two")],
        ):
            text = gather([("first", ["a"]), ("second", ["b"])])()

        assert text == "--- first ---\none\n--- second ---\ntwo"

    def test_service_diagnostics(self):
        with patch(
            "nodeprov.provision.diagnostics.subprocess.run", return_value=completed(stdout="x")
        ) as run:
            service_diagnostics("k3s")()

        assert [c.args[0] for c in run.call_args_list] == [
            ["systemctl", "status", "k3s", "--no-pager"],
            ["journalctl", "-u", "k3s", "-n", "50", "--no-pager"],
        ]

    def test_node_diagnostics_describes_node(self):
        with patch(
            "nodeprov.provision.diagnostics.subprocess.run", return_value=completed(stdout="x")
        ) as run:
            node_diagnostics(Kubectl("/k"), "cp-1")()

        commands = [c.args[0] for c in run.call_args_list]
        assert ["kubectl", "--kubeconfig", "/k", "describe", "node", "cp-1"] in commands
        assert len(commands) == 4
