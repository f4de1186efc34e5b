"""Unit tests for provisioning configuration."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from nodeprov.config import ProvisionConfig, WorkloadConfig, load_config
from nodeprov.errors import ConfigError


def write_config(tmp_path: Path, data) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def server_file(tmp_path):
    return write_config(
        tmp_path,
        {
            "role": "server",
            "node_name": "cp-1",
            "join_token": "file-token",
            "base_init": False,
            "timeouts": {"workload": 60, "poll_interval": 2},
            "health": {"port": 9090},
            "stages": {"system-pods": {"fatal": True}},
            "workloads": [
                {"name": "db", "readiness_endpoint": "http://127.0.0.1:5432/health"},
                {"name": "cache", "selector": "app.kubernetes.io/name=redis", "required": False},
            ],
        },
    )


class TestLoadConfig:
    """Tests for load_config precedence and parsing."""

    def test_defaults_without_file(self, tmp_path):
        with patch("nodeprov.config.DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml"):
            config = load_config()

        assert config.role == "server"
        assert config.config_path is None
        assert config.timeouts.poll_interval == 5
        assert config.health.port == 8080
        assert config.get_source("node_name") == "default"

    def test_file_values(self, server_file):
        config = load_config(server_file)

        assert config.node_name == "cp-1"
        assert config.base_init is False
        assert config.timeouts.workload == 60
        assert config.timeouts.service_active == 120
        assert config.health.port == 9090
        assert config.config_path == server_file.resolve()
        assert config.get_source("node_name") == "config file"

    def test_workloads(self, server_file):
        config = load_config(server_file)

        db, cache = config.workloads
        assert db.selector == "app=db"
        assert db.required is True
        assert cache.selector == "app.kubernetes.io/name=redis"
        assert cache.required is False

    def test_environment_overrides_file(self, server_file, monkeypatch):
        monkeypatch.setenv("INSTANCE_NAME", "cp-from-env")
        monkeypatch.setenv("K3S_TOKEN", "env-token")

        config = load_config(server_file)

        assert config.node_name == "cp-from-env"
        assert config.join_token == "env-token"
        assert config.get_source("node_name") == "environment"

    def test_master_ip_sets_control_plane_url(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MASTER_IP", "10.0.0.10")

        config = load_config(write_config(tmp_path, {"role": "agent"}))

        assert config.control_plane_url == "https://10.0.0.10:6443"

    def test_k3s_url_wins_over_master_ip(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MASTER_IP", "10.0.0.10")
        monkeypatch.setenv("K3S_URL", "https://cp.internal:6443")

        config = load_config(write_config(tmp_path, {"role": "agent"}))

        assert config.control_plane_url == "https://cp.internal:6443"

    def test_stage_overrides(self, server_file):
        config = load_config(server_file)

        assert config.is_fatal("system-pods", default=False) is True
        assert config.is_fatal("install-kubectl", default=True) is True
        assert config.is_fatal("verify-kubectl", default=False) is False

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("role: [server\n")

        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="mapping"):
            load_config(write_config(tmp_path, ["server"]))

    def test_unknown_section_key(self, tmp_path):
        with pytest.raises(ConfigError, match="Unknown keys in 'timeouts': workloadz"):
            load_config(write_config(tmp_path, {"timeouts": {"workloadz": 5}}))

    def test_workload_without_name(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write_config(tmp_path, {"workloads": [{"namespace": "x"}]}))

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"timeouts": {"workload": "300"}}, "'timeouts.workload' must be a number"),
            ({"health": {"port": 80.5}}, "'health.port' must be an integer"),
            ({"health": {"enabled": "yes"}}, "'health.enabled' must be true or false"),
            ({"workloads": [{"name": "db", "required": "no"}]}, "'workloads.required'"),
            ({"base_init": "no"}, "'base_init' must be true or false"),
            ({"stages": {"system-pods": {"fatal": "no"}}}, "'stages.system-pods.fatal'"),
            ({"stages": {"system-pods": {"fatl": True}}}, "Unknown keys in 'stages.system-pods'"),
            ({"timeouts": [5]}, "'timeouts' must be a mapping"),
        ],
    )
    def test_mistyped_values_rejected(self, tmp_path, data, message):
        with pytest.raises(ConfigError, match=message):
            load_config(write_config(tmp_path, data))

    def test_integer_accepted_for_seconds(self, tmp_path):
        path = write_config(tmp_path, {"workloads": [{"name": "db", "deadline": 90}]})

        config = load_config(path)

        assert config.workloads[0].deadline == 90

    def test_role_argument_wins(self, server_file, monkeypatch):
        monkeypatch.setenv("NODEPROV_ROLE", "server")

        config = load_config(server_file, role="agent")

        assert config.role == "agent"
        assert config.get_source("role") == "command line"


class TestResolvePath:
    def test_relative_to_config_file(self, tmp_path):
        config = ProvisionConfig(config_path=tmp_path / "config.yaml")
        assert config.resolve_path("manifests/db.yaml") == tmp_path / "manifests" / "db.yaml"

    def test_absolute_path_unchanged(self, tmp_path):
        config = ProvisionConfig(config_path=tmp_path / "config.yaml")
        assert config.resolve_path("/srv/db.yaml") == Path("/srv/db.yaml")


class TestValidate:
    """Tests for ProvisionConfig.validate."""

    def test_valid_server(self):
        ProvisionConfig(node_name="cp-1", join_token="t").validate()

    def test_valid_agent(self):
        ProvisionConfig(
            role="agent",
            node_name="w-1",
            join_token="t",
            control_plane_url="https://10.0.0.10:6443",
        ).validate()

    def test_unknown_role(self):
        with pytest.raises(ConfigError, match="role must be one of"):
            ProvisionConfig(role="worker", node_name="n", join_token="t").validate()

    def test_node_name_required(self):
        with pytest.raises(ConfigError, match="INSTANCE_NAME"):
            ProvisionConfig(join_token="t").validate()

    def test_token_required(self):
        with pytest.raises(ConfigError, match="K3S_TOKEN"):
            ProvisionConfig(node_name="n").validate()

    def test_agent_needs_control_plane(self):
        with pytest.raises(ConfigError, match="MASTER_IP"):
            ProvisionConfig(role="agent", node_name="n", join_token="t").validate()

    def test_invalid_manifest_mode(self):
        config = ProvisionConfig(node_name="n", join_token="t", manifest_mode="helm")
        with pytest.raises(ConfigError, match="manifest_mode"):
            config.validate()

    def test_duplicate_workloads(self):
        config = ProvisionConfig(
            node_name="n",
            join_token="t",
            workloads=[WorkloadConfig("db"), WorkloadConfig("db")],
        )
        with pytest.raises(ConfigError, match="Duplicate workload names: db"):
            config.validate()

    def test_non_positive_poll_interval(self):
        config = ProvisionConfig(node_name="n", join_token="t")
        config.timeouts.poll_interval = 0
        with pytest.raises(ConfigError, match="timeouts.poll_interval must be > 0"):
            config.validate()

    def test_non_positive_workload_deadline(self):
        config = ProvisionConfig(
            node_name="n", join_token="t", workloads=[WorkloadConfig("db", deadline=-1)]
        )
        with pytest.raises(ConfigError, match="workload 'db': deadline"):
            config.validate()
