"""config.py — Layered configuration, resolved once into an immutable DeployConfig.

Layers (later wins):
    1. built-in defaults (below)
    2. user-editable config.env (KEY=VALUE, written by the operator)
    3. process environment (TUSK_* variables)
    4. explicit overrides from the CLI

Environment / config.env keys:
    TUSK_IDENTITY               default: opentusk
    TUSK_MANAGED_BY             default: opentusk
    TUSK_REGION                 default: us-west-2
    TUSK_IMAGE_ID               default: Ubuntu 24.04 via SSM public parameter
    TUSK_INSTANCE_TYPE          default: t3.medium
    TUSK_SUBNET_ID / TUSK_SECURITY_GROUP_IDS / TUSK_KEY_NAME
    TUSK_INSTANCE_PROFILE       default: opentusk-ssm
    TUSK_DASHBOARD_REPO         blank disables the dashboard phases
    TUSK_MESH_ENABLED           default: false
    TUSK_WEBHOOK_ENABLED        default: false
    TUSK_CREDENTIALS_FILE       default: ~/.opentusk/remote-credentials
"""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from dotenv import dotenv_values

from .errors import PrerequisiteError

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "DeployConfig",
    "load_config",
    "logger",
]

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("tusk_deploy")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_DIR = Path(os.environ.get("TUSK_CONFIG_DIR", "~/.opentusk")).expanduser()
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.env"

DEFAULT_IMAGE_ID = (
    "resolve:ssm:/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id"
)
_VALID_MESH_MODES = {"serve", "funnel"}

# Mesh overlay rule numbers: HTTPS port the rule exposes on the tailnet.
MESH_GATEWAY_HTTPS_PORT = 8443
MESH_DASHBOARD_HTTPS_PORT = 443
MESH_UDP_PORT = 41641


def _parse_bool(raw: str) -> bool:
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(raw: str) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(token.strip() for token in str(raw).split(",") if token.strip())


def _parse_path(raw: str) -> Path:
    return Path(str(raw)).expanduser()


@dataclass(frozen=True)
class DeployConfig:
    # --- Identity / cloud ---
    identity: str = "opentusk"
    managed_by: str = "opentusk"
    region: str = "us-west-2"
    image_id: str = DEFAULT_IMAGE_ID
    instance_type: str = "t3.medium"
    subnet_id: str = ""
    security_group_ids: Tuple[str, ...] = ()
    key_name: str = ""
    instance_profile: str = "opentusk-ssm"
    user_data_file: Optional[Path] = None
    ssm_document: str = "AWS-RunShellScript"

    # --- Timeouts (seconds) ---
    launch_timeout: int = 300
    connect_timeout: int = 300
    platform_init_timeout: int = 600
    command_timeout: int = 1800
    poll_interval: float = 5.0
    smoke_timeout: int = 120

    # --- Gateway (primary service) ---
    operator_user: str = "openclaw"
    gateway_service: str = "openclaw"
    gateway_home: str = "/home/openclaw"
    gateway_port: int = 18789

    # --- Dashboard (companion service) ---
    dashboard_service: str = "poseidon"
    dashboard_dir: str = "/opt/poseidon"
    dashboard_env_file: str = "/opt/poseidon.env"
    dashboard_port: int = 18791
    dashboard_repo: str = ""
    dashboard_branch: str = "main"
    deploy_key_path: str = "/root/.ssh/do_proxy_ed25519"

    # --- Mesh overlay ---
    mesh_enabled: bool = False
    mesh_auth_key: str = field(default="", repr=False)
    mesh_mode: str = "serve"

    # --- Push-event listener ---
    webhook_enabled: bool = False
    webhook_port: int = 18792
    webhook_dir: str = "/opt/poseidon-webhook"
    webhook_lock_file: str = "/tmp/poseidon-update.lock"

    # --- Local state ---
    credentials_file: Path = DEFAULT_CONFIG_DIR / "remote-credentials"
    config_file: Optional[Path] = None

    @property
    def gateway_config_path(self) -> str:
        return f"{self.gateway_home}/.openclaw/openclaw.json"

    @property
    def dashboard_enabled(self) -> bool:
        return bool(self.dashboard_repo)

    @property
    def dashboard_repo_uses_ssh(self) -> bool:
        repo = self.dashboard_repo
        return repo.startswith("git@") or repo.startswith("ssh://")

    @property
    def webhook_env_file(self) -> str:
        return f"{self.webhook_dir}/webhook.env"

    @property
    def webhook_update_script(self) -> str:
        return f"{self.webhook_dir}/update.sh"

    @property
    def update_previous_file(self) -> str:
        return f"{self.webhook_dir}/previous"

    def validate(self) -> List[str]:
        """Return a list of human-readable configuration problems."""
        problems: List[str] = []
        if not self.identity:
            problems.append("TUSK_IDENTITY must not be empty")
        if not self.instance_profile:
            problems.append("TUSK_INSTANCE_PROFILE is required (the SSM agent needs an instance role)")
        if self.mesh_mode not in _VALID_MESH_MODES:
            problems.append(f"TUSK_MESH_MODE must be one of {sorted(_VALID_MESH_MODES)}, got '{self.mesh_mode}'")
        if self.webhook_enabled and not self.dashboard_enabled:
            problems.append("TUSK_WEBHOOK_ENABLED requires TUSK_DASHBOARD_REPO")
        for name in ("gateway_port", "dashboard_port", "webhook_port"):
            port = getattr(self, name)
            if not 0 < port < 65536:
                problems.append(f"{name} out of range: {port}")
        if self.poll_interval <= 0:
            problems.append("TUSK_POLL_INTERVAL must be positive")
        return problems


# key -> (attribute, parser)
_FIELDS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "TUSK_IDENTITY": ("identity", str),
    "TUSK_MANAGED_BY": ("managed_by", str),
    "TUSK_REGION": ("region", str),
    "TUSK_IMAGE_ID": ("image_id", str),
    "TUSK_INSTANCE_TYPE": ("instance_type", str),
    "TUSK_SUBNET_ID": ("subnet_id", str),
    "TUSK_SECURITY_GROUP_IDS": ("security_group_ids", _parse_csv),
    "TUSK_KEY_NAME": ("key_name", str),
    "TUSK_INSTANCE_PROFILE": ("instance_profile", str),
    "TUSK_USER_DATA_FILE": ("user_data_file", _parse_path),
    "TUSK_SSM_DOCUMENT": ("ssm_document", str),
    "TUSK_LAUNCH_TIMEOUT": ("launch_timeout", int),
    "TUSK_CONNECT_TIMEOUT": ("connect_timeout", int),
    "TUSK_PLATFORM_INIT_TIMEOUT": ("platform_init_timeout", int),
    "TUSK_COMMAND_TIMEOUT": ("command_timeout", int),
    "TUSK_POLL_INTERVAL": ("poll_interval", float),
    "TUSK_SMOKE_TIMEOUT": ("smoke_timeout", int),
    "TUSK_OPERATOR_USER": ("operator_user", str),
    "TUSK_GATEWAY_SERVICE": ("gateway_service", str),
    "TUSK_GATEWAY_HOME": ("gateway_home", str),
    "TUSK_GATEWAY_PORT": ("gateway_port", int),
    "TUSK_DASHBOARD_SERVICE": ("dashboard_service", str),
    "TUSK_DASHBOARD_DIR": ("dashboard_dir", str),
    "TUSK_DASHBOARD_ENV_FILE": ("dashboard_env_file", str),
    "TUSK_DASHBOARD_PORT": ("dashboard_port", int),
    "TUSK_DASHBOARD_REPO": ("dashboard_repo", str),
    "TUSK_DASHBOARD_BRANCH": ("dashboard_branch", str),
    "TUSK_DEPLOY_KEY_PATH": ("deploy_key_path", str),
    "TUSK_MESH_ENABLED": ("mesh_enabled", _parse_bool),
    "TUSK_MESH_AUTH_KEY": ("mesh_auth_key", str),
    "TUSK_MESH_MODE": ("mesh_mode", lambda raw: str(raw).strip().lower()),
    "TUSK_WEBHOOK_ENABLED": ("webhook_enabled", _parse_bool),
    "TUSK_WEBHOOK_PORT": ("webhook_port", int),
    "TUSK_WEBHOOK_DIR": ("webhook_dir", str),
    "TUSK_WEBHOOK_LOCK_FILE": ("webhook_lock_file", str),
    "TUSK_CREDENTIALS_FILE": ("credentials_file", _parse_path),
}


def _apply_layer(values: Dict[str, Any], layer: Mapping[str, Optional[str]], source: str) -> None:
    for key, raw in layer.items():
        if key not in _FIELDS or raw is None:
            continue
        attr, parser = _FIELDS[key]
        try:
            values[attr] = parser(raw)
        except (TypeError, ValueError) as exc:
            raise PrerequisiteError(f"invalid value for {key} in {source}: {raw!r} ({exc})") from exc


def load_config(
    config_file: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> DeployConfig:
    """Resolve all layers into a DeployConfig.

    ``overrides`` is keyed by DeployConfig attribute name; ``None`` values are
    ignored so argparse defaults can be passed straight through.
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    path = config_file
    if path is None and env.get("TUSK_CONFIG_FILE"):
        path = Path(env["TUSK_CONFIG_FILE"])
    if path is None and DEFAULT_CONFIG_FILE.is_file():
        path = DEFAULT_CONFIG_FILE
    if path is not None:
        path = Path(path).expanduser()
        if not path.is_file():
            raise PrerequisiteError(
                f"config file not found: {path}",
                remediation="create it or drop --config to use defaults",
            )
        _apply_layer(values, dotenv_values(path), str(path))
        values["config_file"] = path
        logger.debug("[INFO] Loaded config file %s", path)

    _apply_layer(values, {k: v for k, v in env.items() if k.startswith("TUSK_")}, "environment")

    known = {f.name for f in dataclasses.fields(DeployConfig)}
    for attr, value in (overrides or {}).items():
        if value is None:
            continue
        if attr not in known:
            raise ValueError(f"unknown config override: {attr}")
        values[attr] = value

    config = DeployConfig(**values)
    problems = config.validate()
    if problems:
        raise PrerequisiteError("invalid configuration: " + "; ".join(problems))
    return config
