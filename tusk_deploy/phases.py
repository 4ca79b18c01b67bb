"""phases.py — The fixed, ordered provisioning phases.

A phase names the facts that must hold for it to be skipped and builds the one
script body that brings them about. Order is the list order; later phases
assume earlier ones completed.
"""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Tuple

from .config import DeployConfig
from .facts import FactRegistry, deploy_key_ssh_config_lines
from .models import CredentialRecord
from . import templates as tpl

__all__ = [
    "NOTE_MARKER",
    "Phase",
    "PhaseContext",
    "build_phases",
]

# Lines an apply body prints for the operator (e.g. a public key to register).
NOTE_MARKER = "TUSK_NOTE:"

_q = shlex.quote


@dataclass(frozen=True)
class PhaseContext:
    config: DeployConfig
    registry: FactRegistry
    credentials: Mapping[str, CredentialRecord] = field(default_factory=dict)


BuildApply = Callable[[PhaseContext, Mapping[str, str]], str]


@dataclass(frozen=True)
class Phase:
    name: str
    facts: Tuple[str, ...]
    build_apply: Optional[BuildApply] = None
    description: str = ""
    timeout: Optional[int] = None
    # When set, the phase only waits (re-probing) for its facts instead of applying.
    wait_timeout: Optional[int] = None

    def unsatisfied(self, registry: FactRegistry, snapshot: Mapping[str, str]) -> List[str]:
        verdicts = registry.evaluate(self.facts, snapshot)
        return [name for name in self.facts if not verdicts[name]]

    def is_satisfied(self, registry: FactRegistry, snapshot: Mapping[str, str]) -> bool:
        return not self.unsatisfied(registry, snapshot)


def _body(lines: List[str]) -> str:
    return "\n".join(["set -euo pipefail", "export DEBIAN_FRONTEND=noninteractive", *lines]) + "\n"


# ---------------------------------------------------------------------------
# Apply bodies
# ---------------------------------------------------------------------------

def _operator_account(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    c = ctx.config
    user = _q(c.operator_user)
    state_dir = _q(c.gateway_home + "/.openclaw")
    return _body([
        *tpl.operator_account_lines(c),
        f"mkdir -p {state_dir}",
        f"chmod 700 {state_dir}",
        f"chown -R {user}:{user} {state_dir}",
    ])


def _host_hardening(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    return _body([
        "apt-get update -qq",
        *tpl.firewall_lines(ctx.config),
        "command -v fail2ban-server >/dev/null || apt-get install -y -qq fail2ban",
        "systemctl enable --now fail2ban",
        *tpl.sshd_dropin_lines(),
    ])


def _gateway_config(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    c = ctx.config
    service = _q(c.gateway_service)
    return _body([
        f"if ! systemctl cat {service} >/dev/null 2>&1; then",
        f"  echo {_q(f'gateway unit {c.gateway_service}.service is not installed on this host')} >&2",
        "  exit 3",
        "fi",
        *tpl.gateway_shape_merge_lines(c),
        f"systemctl enable {service} >/dev/null 2>&1",
        *tpl.restart_lines(c.gateway_service, settle=5),
    ])


def _deploy_key(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    c = ctx.config
    key = _q(c.deploy_key_path)
    return _body([
        "mkdir -p /root/.ssh && chmod 700 /root/.ssh",
        f"if [ ! -f {key} ]; then",
        f"  ssh-keygen -t ed25519 -f {key} -N '' -C {_q(c.identity + '-deploy')} >/dev/null",
        f"  echo \"{NOTE_MARKER}add this deploy key (read-only) to the dashboard repository: $(cat {key}.pub)\"",
        "fi",
        *deploy_key_ssh_config_lines(c),
    ])


def _dashboard_deploy(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    c = ctx.config
    repo_dir = _q(c.dashboard_dir)
    git = f"git -c safe.directory={repo_dir} -C {repo_dir}"
    return _body([
        "command -v git >/dev/null || (apt-get update -qq && apt-get install -y -qq git)",
        *tpl.toolchain_lines(),
        f"if [ ! -d {repo_dir}/.git ]; then",
        f"  if [ -e {repo_dir} ] && [ -n \"$(ls -A {repo_dir} 2>/dev/null)\" ]; then",
        f"    echo {_q(f'{c.dashboard_dir} exists but is not a git checkout')} >&2",
        "    exit 3",
        "  fi",
        f"  git clone --branch {_q(c.dashboard_branch)} {_q(c.dashboard_repo)} {repo_dir}",
        "else",
        f"  {git} remote set-url origin {_q(c.dashboard_repo)}",
        f"  {git} fetch origin",
        f"  {git} reset --hard {_q('origin/' + c.dashboard_branch)}",
        "fi",
        f"cd {repo_dir}",
        "pnpm install --frozen-lockfile",
        "pnpm --filter @poseidon/web build",
        f"chown -R {_q(c.operator_user)}:{_q(c.operator_user)} {repo_dir}",
        *tpl.dashboard_env_lines(c),
        *tpl.dashboard_unit_lines(c),
        *tpl.restart_lines(c.dashboard_service, settle=3),
    ])


def _mesh_overlay(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    c = ctx.config
    lines = [
        "command -v tailscale >/dev/null || curl -fsSL https://tailscale.com/install.sh | sh",
        "ONLINE=\"$(tailscale status --self --json 2>/dev/null | python3 -c "
        "\"import json,sys; print(json.load(sys.stdin).get('Self',{}).get('Online',False))\" || true)\"",
        "if [ \"$ONLINE\" != \"True\" ]; then",
    ]
    if c.mesh_auth_key:
        lines.append(f"  tailscale up --auth-key={_q(c.mesh_auth_key)} --hostname={_q(c.identity)}")
    else:
        lines.extend([
            "  echo 'tailnet login required: set TUSK_MESH_AUTH_KEY or run tailscale up on the host' >&2",
            "  exit 3",
        ])
    lines.append("fi")
    lines.append(tpl.mesh_gateway_rule(c))
    if c.dashboard_enabled:
        lines.append(tpl.mesh_dashboard_rule(c))
    return _body(lines)


def _mesh_origins(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    c = ctx.config
    lines = [
        f"TS_FQDN=\"$({tpl.fqdn_probe()} || true)\"",
        "if [ -z \"$TS_FQDN\" ]; then echo 'tailnet DNS name not available yet' >&2; exit 3; fi",
    ]
    if c.dashboard_enabled:
        lines.extend(tpl.cors_update_lines(c))
    lines.extend(tpl.gateway_origins_merge_lines(c))
    return _body(lines)


def listener_source() -> str:
    return Path(__file__).with_name("webhook.py").read_text(encoding="utf-8")


def _webhook_listener(ctx: PhaseContext, _snapshot: Mapping[str, str]) -> str:
    c = ctx.config
    service = tpl.webhook_service(c)
    return _body([
        *tpl.install_file_lines(tpl.webhook_listener_path(c), listener_source(), mode="0644"),
        *tpl.install_file_lines(c.webhook_update_script, tpl.update_script(c), mode="0755"),
        *tpl.webhook_env_lines(c),
        *tpl.webhook_unit_lines(c),
        *tpl.restart_lines(service, settle=2),
    ])


# ---------------------------------------------------------------------------
# Phase list
# ---------------------------------------------------------------------------

def build_phases(config: DeployConfig) -> List[Phase]:
    phases = [
        Phase(
            "platform-init",
            ("platform-initialized",),
            description="wait for first-boot initialisation to finish",
            wait_timeout=config.platform_init_timeout,
        ),
        Phase(
            "operator-account",
            ("operator-account-present",),
            _operator_account,
            "create the service account",
        ),
        Phase(
            "host-hardening",
            ("firewall-active", "intrusion-guard-active", "sshd-hardened"),
            _host_hardening,
            "firewall, fail2ban and sshd drop-in",
        ),
        Phase(
            "gateway-config",
            (
                "gateway-unit-present",
                "gateway-config-shape",
                "gateway-token-digest",
                "gateway-service-active",
                "gateway-http",
            ),
            _gateway_config,
            "merge gateway config and restart the gateway",
        ),
    ]
    if config.dashboard_enabled and config.dashboard_repo_uses_ssh:
        phases.append(
            Phase(
                "deploy-key",
                ("deploy-key-present", "deploy-key-ssh-config"),
                _deploy_key,
                "repository deploy key for the dashboard checkout",
            )
        )
    if config.dashboard_enabled:
        phases.append(
            Phase(
                "dashboard-deploy",
                (
                    "dashboard-checkout",
                    "dashboard-remote",
                    "dashboard-unit-present",
                    "dashboard-gateway-url",
                    "dashboard-gateway-token",
                    "dashboard-service-active",
                    "dashboard-http",
                ),
                _dashboard_deploy,
                "fetch, build and run the dashboard",
            )
        )
    if config.mesh_enabled:
        mesh_facts: Tuple[str, ...] = ("mesh-installed", "mesh-online", "mesh-serve-gateway")
        if config.dashboard_enabled:
            mesh_facts += ("mesh-serve-dashboard",)
        phases.append(Phase("mesh-overlay", mesh_facts, _mesh_overlay, "join the tailnet and expose services"))
        origin_facts: Tuple[str, ...] = ("gateway-allowed-origins",)
        if config.dashboard_enabled:
            origin_facts = ("dashboard-cors-origins",) + origin_facts
        phases.append(Phase("mesh-origins", origin_facts, _mesh_origins, "allow the tailnet origin"))
    if config.webhook_enabled:
        phases.append(
            Phase(
                "webhook-listener",
                ("webhook-unit-present", "webhook-secret-present", "webhook-service-active"),
                _webhook_listener,
                "push-event listener and update script",
            )
        )
    return phases
