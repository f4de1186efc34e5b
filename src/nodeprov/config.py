"""Provisioning configuration.

Loaded once from a YAML profile with environment variable overrides, then
handed to the pipeline builders. Nothing re-reads configuration mid-run.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, get_args

import yaml

from .errors import ConfigError

# Default values
DEFAULT_CONFIG_PATH = Path("/etc/nodeprov/config.yaml")
DEFAULT_K3S_VERSION = "v1.28.4+k3s1"
DEFAULT_SCRIPTS_BASE_URL = (
    "https://raw.githubusercontent.com/flui-cloud/bootstrap-scripts/master/scripts"
)
ROLES = ("server", "agent")

# Environment variable mappings (names used by the cloud-init templates)
ENV_VARS = {
    "role": "NODEPROV_ROLE",
    "node_name": "INSTANCE_NAME",
    "node_id": "INSTANCE_ID",
    "cluster_id": "CLUSTER_ID",
    "cluster_name": "CLUSTER_NAME",
    "cloud_provider": "CLOUD_PROVIDER",
    "join_token": "K3S_TOKEN",
    "control_plane_url": "K3S_URL",
    "k3s_version": "K3S_VERSION",
    "scripts_base_url": "SCRIPTS_BASE_URL",
    "ca_public_key": "FLUI_CA_PUBLIC_KEY",
}
MASTER_IP_ENV = "MASTER_IP"

# Keys accepted at the top level of the config file
SCALAR_KEYS = (
    "role",
    "node_name",
    "node_id",
    "cluster_id",
    "cluster_name",
    "cloud_provider",
    "join_token",
    "control_plane_url",
    "k3s_version",
    "scripts_base_url",
    "ca_public_key",
    "advertise_ip",
    "kubeconfig",
    "base_init",
    "manifest_mode",
)
BOOL_KEYS = ("base_init",)
STAGE_KEYS = ("fatal",)


@dataclass
class TimeoutConfig:
    """Readiness deadlines and poll intervals, in seconds."""

    control_plane_reachable: float = 300
    reachability_interval: float = 10
    service_active: float = 120
    api_ready: float = 120
    node_ready: float = 120
    system_pods: float = 180
    kubectl_check: float = 30
    workload: float = 300
    poll_interval: float = 5


@dataclass
class HealthConfig:
    """Health Aggregator service settings."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    path: str = "/health"
    probe_timeout: float = 2.0
    launcher: str = "systemd"  # systemd | daemon
    unit_name: str = "observability-health"
    restart_delay: float = 10.0


@dataclass
class WorkloadConfig:
    """One entry of the Workload Set."""

    name: str
    selector: str = ""
    namespace: str = "default"
    readiness_endpoint: str | None = None
    required: bool = True
    deadline: float | None = None
    interval: float | None = None
    manifest: str | None = None  # Path to a (multi-document) YAML file

    def __post_init__(self) -> None:
        if not self.selector:
            self.selector = f"app={self.name}"


@dataclass
class ProvisionConfig:
    """Everything a provisioning run needs, fixed at construction time."""

    role: str = "server"
    node_name: str = ""
    node_id: str = ""
    cluster_id: str = ""
    cluster_name: str = ""
    cloud_provider: str = ""
    join_token: str = ""
    control_plane_url: str = ""
    k3s_version: str = DEFAULT_K3S_VERSION
    scripts_base_url: str = DEFAULT_SCRIPTS_BASE_URL
    ca_public_key: str = ""
    advertise_ip: str = ""
    kubeconfig: str = str(Path.home() / ".kube" / "config")
    base_init: bool = True
    manifest_mode: str = "kubectl"  # kubectl | auto-deploy
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    workloads: list[WorkloadConfig] = field(default_factory=list)
    stage_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    config_path: Path | None = None

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    def is_fatal(self, stage: str, default: bool = True) -> bool:
        """Fatal classification of a stage, after overrides."""
        return bool(self.stage_overrides.get(stage, {}).get("fatal", default))

    def resolve_path(self, value: str) -> Path:
        """Resolve a path from the config file relative to that file."""
        path = Path(value).expanduser()
        if not path.is_absolute() and self.config_path is not None:
            path = self.config_path.parent / path
        return path

    def validate(self) -> None:
        """Check role-specific required values.

        Raises:
            ConfigError: A value is missing or invalid.
        """
        if self.role not in ROLES:
            raise ConfigError(f"role must be one of {', '.join(ROLES)}, got '{self.role}'")
        if not self.node_name:
            raise ConfigError(
                f"node_name is required (set it in the config or {ENV_VARS['node_name']})"
            )
        if not self.join_token:
            raise ConfigError(
                f"join_token is required (set it in the config or {ENV_VARS['join_token']})"
            )
        if self.role == "agent" and not self.control_plane_url:
            raise ConfigError(
                f"control_plane_url is required for agents "
                f"(set {ENV_VARS['control_plane_url']} or {MASTER_IP_ENV})"
            )
        if self.manifest_mode not in ("kubectl", "auto-deploy"):
            raise ConfigError(
                f"manifest_mode must be kubectl or auto-deploy, got '{self.manifest_mode}'"
            )
        if self.health.launcher not in ("systemd", "daemon"):
            raise ConfigError(
                f"health.launcher must be systemd or daemon, got '{self.health.launcher}'"
            )
        for item in fields(self.timeouts):
            value = getattr(self.timeouts, item.name)
            if value <= 0:
                raise ConfigError(f"timeouts.{item.name} must be > 0, got {value}")
        for workload in self.workloads:
            for key in ("deadline", "interval"):
                value = getattr(workload, key)
                if value is not None and value <= 0:
                    raise ConfigError(f"workload '{workload.name}': {key} must be > 0, got {value}")
        names = [w.name for w in self.workloads]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate workload names: {', '.join(duplicates)}")


TYPE_NAMES = {bool: "true or false", int: "an integer", float: "a number", str: "a string"}


def _check_value(where: str, value: Any, annotation: Any) -> None:
    """Raise ConfigError unless value fits a field annotated as annotation."""
    allowed = get_args(annotation) or (annotation,)
    if value is None and type(None) in allowed:
        return
    if isinstance(value, bool):
        ok = bool in allowed
    elif isinstance(value, int):
        ok = int in allowed or float in allowed
    elif isinstance(value, float):
        ok = float in allowed
    else:
        ok = isinstance(value, str) and str in allowed
    if not ok:
        expected = next(TYPE_NAMES[t] for t in allowed if t in TYPE_NAMES)
        raise ConfigError(f"'{where}' must be {expected}, got {value!r}")


def _section(data: Any, cls: type, name: str) -> Any:
    """Build a section dataclass, rejecting unknown keys and mistyped values."""
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    types = {f.name: f.type for f in fields(cls)}
    unknown = set(data) - set(types)
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {', '.join(sorted(unknown))}")
    for key, value in data.items():
        _check_value(f"{name}.{key}", value, types[key])
    return cls(**data)


def load_config(path: str | Path | None = None, role: str | None = None) -> ProvisionConfig:
    """Load provisioning configuration.

    Precedence (highest to lowest):
    1. The role argument (command line)
    2. Environment variables
    3. Config file (path, or /etc/nodeprov/config.yaml if it exists)
    4. Defaults

    Raises:
        ConfigError: The file is unreadable or malformed.
    """
    config = ProvisionConfig()
    sources: dict[str, str] = {key: "default" for key in SCALAR_KEYS}

    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if path and not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path}: top level must be a mapping")

        config.config_path = config_path.resolve()
        _apply_file(config, file_config, sources)

    # Override with environment variables
    for key, env_name in ENV_VARS.items():
        if os.environ.get(env_name):
            setattr(config, key, os.environ[env_name])
            sources[key] = "environment"
    if not config.control_plane_url and os.environ.get(MASTER_IP_ENV):
        config.control_plane_url = f"https://{os.environ[MASTER_IP_ENV]}:6443"
        sources["control_plane_url"] = "environment"
    if role:
        config.role = role
        sources["role"] = "command line"

    config._sources = sources
    return config


def _apply_file(
    config: ProvisionConfig, file_config: dict[str, Any], sources: dict[str, str]
) -> None:
    for key in SCALAR_KEYS:
        if key in file_config:
            value = file_config[key]
            if key in BOOL_KEYS:
                _check_value(key, value, bool)
            else:
                value = str(value)
            setattr(config, key, value)
            sources[key] = "config file"

    try:
        if "timeouts" in file_config:
            config.timeouts = _section(file_config["timeouts"] or {}, TimeoutConfig, "timeouts")
        if "health" in file_config:
            config.health = _section(file_config["health"] or {}, HealthConfig, "health")
        config.workloads = [
            _section(entry, WorkloadConfig, "workloads")
            for entry in file_config.get("workloads") or []
        ]
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    overrides = file_config.get("stages") or {}
    if not isinstance(overrides, dict):
        raise ConfigError("'stages' must map stage names to settings")
    for stage, settings in overrides.items():
        settings = settings or {}
        if not isinstance(settings, dict):
            raise ConfigError(f"'stages.{stage}' must be a mapping")
        unknown = set(settings) - set(STAGE_KEYS)
        if unknown:
            raise ConfigError(f"Unknown keys in 'stages.{stage}': {', '.join(sorted(unknown))}")
        if "fatal" in settings:
            _check_value(f"stages.{stage}.fatal", settings["fatal"], bool)
        config.stage_overrides[str(stage)] = dict(settings)
