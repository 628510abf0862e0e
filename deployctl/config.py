"""
Deployment configuration: target, settings, environment profiles.

Precedence, lowest first: built-in defaults, environment profile, YAML config
file, environment variables, explicit overrides (CLI flags).
"""

import os
from dataclasses import dataclass, field, replace, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

DEFAULT_PROJECT = "app"
DEFAULT_ENVIRONMENT = "development"

# Per-environment tuning of the health poll and rollback policy
ENVIRONMENT_PROFILES: Dict[str, Dict[str, Any]] = {
    "development": {
        "health_max_attempts": 30,
        "health_interval": 2.0,
        "auto_rollback": False,
    },
    "staging": {
        "health_max_attempts": 30,
        "health_interval": 2.0,
        "auto_rollback": False,
    },
    "production": {
        "health_max_attempts": 12,
        "health_interval": 10.0,
        "auto_rollback": True,
    },
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DeploymentTarget:
    """Where and how to deploy. Immutable per invocation."""
    host: str
    user: str
    path: str
    port: int
    environment: str = DEFAULT_ENVIRONMENT
    scheme: str = "http"
    transport: str = "ssh"
    ssh_options: Tuple[str, ...] = ()

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}"

    @property
    def is_local(self) -> bool:
        return self.transport == "local"

    def url(self, path: str) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{path}"

    @property
    def health_url(self) -> str:
        return self.url("/health")

    @property
    def metrics_url(self) -> str:
        return self.url("/metrics")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "user": self.user,
            "path": self.path,
            "port": self.port,
            "environment": self.environment,
            "transport": self.transport,
        }


@dataclass
class DeploySettings:
    """Everything an engine invocation needs besides collaborators."""
    project: str
    target: DeploymentTarget
    release_dir: str = "release"
    binary_name: Optional[str] = None
    config_files: List[str] = field(default_factory=list)
    keep_backups: int = 5
    connect_timeout: float = 10.0
    command_timeout: float = 600.0
    start_wait: float = 5.0
    health_max_attempts: int = 30
    health_interval: float = 2.0
    health_timeout: float = 5.0
    slow_response_threshold: float = 1.0
    check_security_headers: bool = False
    load_check_requests: int = 0
    auto_rollback: bool = False
    verify_after_rollback: bool = False
    min_free_disk_mb: Optional[int] = None
    slack_webhook_url: Optional[str] = None
    service_user: Optional[str] = None
    service_env: Dict[str, str] = field(default_factory=dict)
    state_home: Optional[str] = None

    @property
    def service_name(self) -> str:
        return self.project

    @property
    def binary(self) -> str:
        return self.binary_name or self.project

    @property
    def remote_binary_path(self) -> str:
        return f"{self.target.path}/bin/{self.binary}"

    def with_overrides(self, **overrides: Any) -> "DeploySettings":
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Load a YAML config file.

    Top-level keys match ``DeploySettings`` fields; a nested ``target`` mapping
    holds ``DeploymentTarget`` fields.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the document is not a mapping
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def _env_values(environ: Mapping[str, str]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split recognised environment variables into target and settings values."""
    target: Dict[str, Any] = {}
    settings: Dict[str, Any] = {}

    if environ.get("DEPLOY_HOST"):
        target["host"] = environ["DEPLOY_HOST"]
    if environ.get("DEPLOY_USER"):
        target["user"] = environ["DEPLOY_USER"]
    if environ.get("DEPLOY_PATH"):
        target["path"] = environ["DEPLOY_PATH"]
    if environ.get("DEPLOY_PORT"):
        try:
            target["port"] = int(environ["DEPLOY_PORT"])
        except ValueError:
            raise ValueError(f"DEPLOY_PORT must be an integer, got {environ['DEPLOY_PORT']!r}")
    if environ.get("DEPLOY_TRANSPORT"):
        target["transport"] = environ["DEPLOY_TRANSPORT"]
    if environ.get("GGEN_ENV"):
        target["environment"] = environ["GGEN_ENV"]

    if environ.get("DEPLOY_PROJECT"):
        settings["project"] = environ["DEPLOY_PROJECT"]
    if environ.get("DEPLOY_RELEASE_DIR"):
        settings["release_dir"] = environ["DEPLOY_RELEASE_DIR"]
    if environ.get("SLACK_WEBHOOK_URL"):
        settings["slack_webhook_url"] = environ["SLACK_WEBHOOK_URL"]
    if environ.get("DEPLOY_AUTO_ROLLBACK"):
        settings["auto_rollback"] = _as_bool(environ["DEPLOY_AUTO_ROLLBACK"])
    if environ.get("DEPLOYCTL_HOME"):
        settings["state_home"] = environ["DEPLOYCTL_HOME"]

    return target, settings


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[str] = None,
    environment: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> DeploySettings:
    """
    Build settings from defaults, profile, config file, environment and overrides.

    Args:
        environ: Environment mapping (defaults to os.environ)
        config_path: Optional YAML config file
        environment: Environment name override (CLI ``--env``)
        overrides: Settings field overrides; None values are ignored

    Returns:
        DeploySettings
    """
    environ = os.environ if environ is None else environ
    file_data = load_config_file(config_path) if config_path else {}

    file_target = dict(file_data.pop("target", None) or {})
    env_target, env_settings = _env_values(environ)

    project = (
        env_settings.get("project")
        or file_data.get("project")
        or DEFAULT_PROJECT
    )

    target_values: Dict[str, Any] = {
        "host": "localhost",
        "user": "deploy",
        "path": f"/opt/{project}",
        "port": 8080,
        "environment": DEFAULT_ENVIRONMENT,
    }
    target_values.update(file_target)
    target_values.update(env_target)
    if environment:
        target_values["environment"] = environment
    if "ssh_options" in target_values:
        target_values["ssh_options"] = tuple(target_values["ssh_options"] or ())
    target_values["port"] = int(target_values["port"])

    known_target = {f.name for f in fields(DeploymentTarget)}
    unknown = set(target_values) - known_target
    if unknown:
        raise ValueError(f"Unknown target settings: {', '.join(sorted(unknown))}")
    target = DeploymentTarget(**target_values)

    settings_values: Dict[str, Any] = {}
    settings_values.update(ENVIRONMENT_PROFILES.get(target.environment, {}))
    settings_values.update(file_data)
    settings_values.update(env_settings)
    settings_values.update({k: v for k, v in (overrides or {}).items() if v is not None})
    settings_values["project"] = project
    settings_values["target"] = target

    known_settings = {f.name for f in fields(DeploySettings)}
    unknown = set(settings_values) - known_settings
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    if "auto_rollback" in settings_values:
        settings_values["auto_rollback"] = _as_bool(settings_values["auto_rollback"])

    return DeploySettings(**settings_values)
