"""facts.py — The fact table shared by provisioning phases and the audit.

Each ``Fact`` names one observation, the read-only probe that produces it, how
an observation is judged, and (optionally) the single idempotent command that
repairs it. Phases skip when their facts hold; ``audit`` reports and repairs
the same facts. There is no second copy of any check.
"""
from __future__ import annotations

import hashlib
import shlex
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .config import DeployConfig
from .models import SEVERITY_FAIL, SEVERITY_WARN, CredentialRecord
from .probe import ProbeSpec
from . import templates as tpl

__all__ = [
    "Fact",
    "FactRegistry",
    "MESH_FQDN",
    "build_registry",
]

Matcher = Callable[[str, Mapping[str, str]], bool]
Remedy = Callable[[Mapping[str, str]], Optional[str]]

MESH_FQDN = "mesh-fqdn"

_q = shlex.quote


@dataclass(frozen=True)
class Fact:
    name: str
    probe: str
    expected: str = "yes"
    severity: str = SEVERITY_FAIL
    matcher: Optional[Matcher] = None
    remediation: Optional[Remedy] = None
    context: bool = False
    description: str = ""

    def spec(self) -> ProbeSpec:
        return ProbeSpec(self.name, self.probe)

    def holds(self, observed: Optional[str], snapshot: Mapping[str, str]) -> bool:
        value = "" if observed is None else observed
        if self.matcher is not None:
            return bool(self.matcher(value, snapshot))
        return value == self.expected

    def remediation_body(self, snapshot: Mapping[str, str]) -> Optional[str]:
        if self.remediation is None:
            return None
        return self.remediation(snapshot)


class FactRegistry:
    """Ordered fact table. Context facts are probed but never reported."""

    def __init__(self, facts: Iterable[Fact] = ()) -> None:
        self._facts: "OrderedDict[str, Fact]" = OrderedDict()
        for fact in facts:
            self.add(fact)

    def add(self, fact: Fact) -> None:
        if fact.name in self._facts:
            raise ValueError(f"duplicate fact: {fact.name}")
        self._facts[fact.name] = fact

    def __contains__(self, name: str) -> bool:
        return name in self._facts

    def __len__(self) -> int:
        return len(self._facts)

    def get(self, name: str) -> Fact:
        try:
            return self._facts[name]
        except KeyError:
            raise KeyError(f"unknown fact: {name}") from None

    def reported(self) -> List[Fact]:
        return [f for f in self._facts.values() if not f.context]

    def names(self) -> List[str]:
        return [f.name for f in self.reported()]

    def specs_for(self, names: Optional[Iterable[str]] = None) -> List[ProbeSpec]:
        """Probe specs for ``names`` (all reported facts when None) plus every context fact."""
        wanted = list(self.names() if names is None else names)
        specs = [self.get(name).spec() for name in wanted]
        specs.extend(f.spec() for f in self._facts.values() if f.context and f.name not in wanted)
        return specs

    def evaluate(self, names: Iterable[str], snapshot: Mapping[str, str]) -> Dict[str, bool]:
        return {name: self.get(name).holds(snapshot.get(name), snapshot) for name in names}


# ---------------------------------------------------------------------------
# Probe / remedy helpers
# ---------------------------------------------------------------------------

def _yes_no(condition: str) -> str:
    return f"if {condition}; then echo yes; else echo no; fi"


def _static(*lines: str) -> Remedy:
    body = "\n".join(["set -e", *lines]) + "\n"
    return lambda _snapshot: body


def _script(lines: List[str]) -> str:
    return "\n".join(["set -e", *lines]) + "\n"


def _is_active(service: str) -> str:
    return f"systemctl is-active {_q(service)} 2>/dev/null || true"


def _http_ok(port: int) -> str:
    return f"if curl -sf -o /dev/null -m 5 http://127.0.0.1:{int(port)}/; then echo ok; else echo fail; fi"


def _env_value(env_file: str, key: str) -> str:
    return f"grep '^{key}=' {_q(env_file)} 2>/dev/null | head -n1 | cut -d= -f2-"


def _fqdn_origin(snapshot: Mapping[str, str]) -> str:
    fqdn = (snapshot.get(MESH_FQDN) or "").strip()
    return f"https://{fqdn}" if fqdn else ""


def _cors_matcher(observed: str, snapshot: Mapping[str, str]) -> bool:
    origin = _fqdn_origin(snapshot)
    if not origin:
        return bool(observed)
    return origin in [o.strip() for o in observed.split(",")]


def _gateway_origins_matcher(observed: str, snapshot: Mapping[str, str]) -> bool:
    origin = _fqdn_origin(snapshot)
    if not origin:
        return True
    return origin in [o.strip() for o in observed.split(",")]


def _with_fqdn(build: Callable[[], List[str]]) -> Remedy:
    def _remedy(snapshot: Mapping[str, str]) -> Optional[str]:
        fqdn = (snapshot.get(MESH_FQDN) or "").strip()
        if not fqdn:
            return None
        return _script([f"TS_FQDN={_q(fqdn)}", *build()])

    return _remedy


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

def _host_facts(c: DeployConfig) -> List[Fact]:
    user = _q(c.operator_user)
    return [
        Fact(
            "platform-initialized",
            _yes_no("test -f /var/lib/cloud/instance/boot-finished"),
            remediation=_static("cloud-init status --wait >/dev/null || true", "test -f /var/lib/cloud/instance/boot-finished"),
            description="cloud-init finished first boot",
        ),
        Fact(
            "operator-account-present",
            _yes_no(f"id -u {user} >/dev/null 2>&1 && [ \"$(stat -c %U {_q(c.gateway_home)} 2>/dev/null)\" = {user} ]"),
            remediation=_static(*tpl.operator_account_lines(c)),
            description=f"service account {c.operator_user} exists and owns {c.gateway_home}",
        ),
        Fact(
            "firewall-active",
            "ufw status 2>/dev/null | head -n1 | awk '{print $2}'",
            expected="active",
            remediation=_static(*tpl.firewall_lines(c)),
            description="ufw enabled with default-deny inbound",
        ),
        Fact(
            "intrusion-guard-active",
            _is_active("fail2ban"),
            expected="active",
            severity=SEVERITY_WARN,
            remediation=_static(
                "command -v fail2ban-server >/dev/null || DEBIAN_FRONTEND=noninteractive apt-get install -y fail2ban",
                "systemctl enable --now fail2ban",
            ),
            description="fail2ban running",
        ),
        Fact(
            "sshd-hardened",
            _yes_no(f"grep -qx 'PasswordAuthentication no' {_q(tpl.SSHD_DROPIN_PATH)} 2>/dev/null"),
            severity=SEVERITY_WARN,
            remediation=_static(*tpl.sshd_dropin_lines()),
            description="password logins disabled for sshd",
        ),
    ]


def _gateway_facts(c: DeployConfig, credentials: Optional[Mapping[str, CredentialRecord]]) -> List[Fact]:
    record = (credentials or {}).get("GATEWAY_TOKEN")
    if record is not None:
        digest_fact = Fact(
            "gateway-token-digest",
            tpl.gateway_token_digest_probe(c),
            expected=token_digest(record.value),
            description="gateway token matches the local credential",
        )
    else:
        digest_fact = Fact(
            "gateway-token-digest",
            tpl.gateway_token_digest_probe(c),
            expected="<any>",
            matcher=lambda observed, _snapshot: bool(observed),
            description="gateway token is set",
        )
    return [
        Fact(
            "gateway-unit-present",
            _yes_no(f"systemctl cat {_q(c.gateway_service)} >/dev/null 2>&1"),
            description=f"{c.gateway_service} systemd unit installed",
        ),
        Fact(
            "gateway-config-shape",
            tpl.gateway_shape_probe(c),
            expected="ok",
            remediation=_static(*tpl.gateway_shape_merge_lines(c), *tpl.restart_lines(c.gateway_service)),
            description="gateway config has local mode, loopback bind, token auth",
        ),
        digest_fact,
        Fact(
            "gateway-service-active",
            _is_active(c.gateway_service),
            expected="active",
            remediation=_static(*tpl.restart_lines(c.gateway_service)),
            description=f"{c.gateway_service} service active",
        ),
        Fact(
            "gateway-http",
            _http_ok(c.gateway_port),
            expected="ok",
            remediation=_static(*tpl.restart_lines(c.gateway_service, settle=5)),
            description=f"gateway answering on port {c.gateway_port}",
        ),
    ]


def _deploy_key_facts(c: DeployConfig) -> List[Fact]:
    key = c.deploy_key_path
    key_name = key.rsplit("/", 1)[-1]
    return [
        Fact(
            "deploy-key-present",
            _yes_no(f"test -f {_q(key)}"),
            remediation=_static(
                "mkdir -p /root/.ssh && chmod 700 /root/.ssh",
                f"test -f {_q(key)} || ssh-keygen -t ed25519 -f {_q(key)} -N '' -C {_q(c.identity + '-deploy')} >/dev/null",
            ),
            description="repository deploy key exists on the target",
        ),
        Fact(
            "deploy-key-ssh-config",
            _yes_no(f"grep -q {_q(key_name)} /root/.ssh/config 2>/dev/null"),
            remediation=_static(*deploy_key_ssh_config_lines(c)),
            description="ssh config routes github.com through the deploy key",
        ),
    ]


def deploy_key_ssh_config_lines(c: DeployConfig) -> List[str]:
    key_name = c.deploy_key_path.rsplit("/", 1)[-1]
    return [
        "mkdir -p /root/.ssh && chmod 700 /root/.ssh",
        f"if ! grep -q {_q(key_name)} /root/.ssh/config 2>/dev/null; then",
        "cat >> /root/.ssh/config <<SSHCONF",
        "",
        "Host github.com",
        f"    IdentityFile {c.deploy_key_path}",
        "    StrictHostKeyChecking accept-new",
        "SSHCONF",
        "fi",
        "chmod 600 /root/.ssh/config",
    ]


def _dashboard_facts(c: DeployConfig) -> List[Fact]:
    repo_dir = _q(c.dashboard_dir)
    return [
        Fact(
            "dashboard-checkout",
            _yes_no(f"test -d {repo_dir}/.git"),
            description=f"dashboard checkout at {c.dashboard_dir}",
        ),
        Fact(
            "dashboard-remote",
            f"git -c safe.directory={repo_dir} -C {repo_dir} remote get-url origin 2>/dev/null",
            expected=c.dashboard_repo,
            remediation=_static(f"git -c safe.directory={repo_dir} -C {repo_dir} remote set-url origin {_q(c.dashboard_repo)}"),
            description="dashboard origin remote matches the configured repository",
        ),
        Fact(
            "dashboard-unit-present",
            _yes_no(f"test -f {_q(tpl.unit_path(c.dashboard_service))}"),
            remediation=_static(*tpl.dashboard_unit_lines(c), *tpl.restart_lines(c.dashboard_service)),
            description=f"{c.dashboard_service} systemd unit installed",
        ),
        Fact(
            "dashboard-gateway-url",
            _env_value(c.dashboard_env_file, "GATEWAY_URL"),
            expected=f"ws://127.0.0.1:{c.gateway_port}",
            matcher=lambda observed, _s: observed.startswith("ws://") or observed.startswith("wss://"),
            remediation=_static(
                f"if grep -q '^GATEWAY_URL=' {_q(c.dashboard_env_file)}; then "
                f"sed -i 's|^GATEWAY_URL=http://|GATEWAY_URL=ws://|; s|^GATEWAY_URL=https://|GATEWAY_URL=wss://|' {_q(c.dashboard_env_file)}; "
                f"else echo 'GATEWAY_URL=ws://127.0.0.1:{int(c.gateway_port)}' >> {_q(c.dashboard_env_file)}; fi",
                f"systemctl restart {_q(c.dashboard_service)}",
            ),
            description="dashboard reaches the gateway over a websocket URL",
        ),
        Fact(
            "dashboard-gateway-token",
            tpl.dashboard_token_match_probe(c),
            expected="match",
            remediation=_static(*tpl.dashboard_token_sync_lines(c), f"systemctl restart {_q(c.dashboard_service)}"),
            description="dashboard env carries the gateway token",
        ),
        Fact(
            "dashboard-service-active",
            _is_active(c.dashboard_service),
            expected="active",
            remediation=_static(*tpl.restart_lines(c.dashboard_service, settle=2)),
            description=f"{c.dashboard_service} service active",
        ),
        Fact(
            "dashboard-http",
            _http_ok(c.dashboard_port),
            expected="ok",
            remediation=_static(*tpl.restart_lines(c.dashboard_service, settle=5)),
            description=f"dashboard answering on port {c.dashboard_port}",
        ),
    ]


def _mesh_facts(c: DeployConfig) -> List[Fact]:
    online_remedy: Optional[Remedy] = None
    if c.mesh_auth_key:
        online_remedy = _static(
            f"tailscale up --auth-key={_q(c.mesh_auth_key)} --hostname={_q(c.identity)}"
        )
    facts = [
        Fact(
            MESH_FQDN,
            tpl.fqdn_probe(),
            expected="",
            context=True,
        ),
        Fact(
            "mesh-installed",
            _yes_no("command -v tailscale >/dev/null"),
            remediation=_static("curl -fsSL https://tailscale.com/install.sh | sh"),
            description="tailscale installed",
        ),
        Fact(
            "mesh-online",
            "tailscale status --self --json 2>/dev/null | python3 -c "
            "\"import json,sys; print(json.load(sys.stdin).get('Self',{}).get('Online',False))\"",
            expected="True",
            remediation=online_remedy,
            description="tailnet node online",
        ),
        Fact(
            "mesh-serve-gateway",
            tpl.mesh_rule_probe(c.gateway_port),
            severity=SEVERITY_WARN,
            remediation=_static(tpl.mesh_gateway_rule(c)),
            description=f"gateway exposed on tailnet HTTPS {c.mesh_mode}",
        ),
    ]
    if c.dashboard_enabled:
        facts.append(
            Fact(
                "mesh-serve-dashboard",
                tpl.mesh_rule_probe(c.dashboard_port),
                severity=SEVERITY_WARN,
                remediation=_static(tpl.mesh_dashboard_rule(c)),
                description="dashboard exposed on tailnet HTTPS",
            )
        )
        facts.append(
            Fact(
                "dashboard-cors-origins",
                _env_value(c.dashboard_env_file, "CORS_ORIGINS"),
                expected="https://<mesh-fqdn>",
                severity=SEVERITY_WARN,
                matcher=_cors_matcher,
                remediation=_with_fqdn(lambda: tpl.cors_update_lines(c)),
                description="dashboard CORS allows the tailnet origin",
            )
        )
    facts.append(
        Fact(
            "gateway-allowed-origins",
            tpl.gateway_origins_probe(c),
            expected="https://<mesh-fqdn>",
            severity=SEVERITY_WARN,
            matcher=_gateway_origins_matcher,
            remediation=_with_fqdn(lambda: tpl.gateway_origins_merge_lines(c)),
            description="gateway control UI allows the tailnet origin",
        )
    )
    return facts


def _webhook_facts(c: DeployConfig) -> List[Fact]:
    service = tpl.webhook_service(c)
    return [
        Fact(
            "webhook-unit-present",
            _yes_no(f"test -f {_q(tpl.unit_path(service))} && test -f {_q(tpl.webhook_listener_path(c))}"),
            remediation=_static(*tpl.webhook_unit_lines(c), *tpl.restart_lines(service, settle=2)),
            description="push-event listener installed",
        ),
        Fact(
            "webhook-secret-present",
            _yes_no(f"grep -Eq '^WEBHOOK_SECRET=[0-9a-f]{{64}}$' {_q(c.webhook_env_file)} 2>/dev/null"),
            description="listener has a signing secret",
        ),
        Fact(
            "webhook-service-active",
            _is_active(service),
            expected="active",
            remediation=_static(*tpl.restart_lines(service, settle=2)),
            description=f"{service} service active",
        ),
    ]


def build_registry(
    config: DeployConfig,
    credentials: Optional[Mapping[str, CredentialRecord]] = None,
) -> FactRegistry:
    """Facts for the features enabled in ``config``, in report order."""
    facts: List[Fact] = []
    facts.extend(_host_facts(config))
    facts.extend(_gateway_facts(config, credentials))
    if config.dashboard_enabled:
        if config.dashboard_repo_uses_ssh:
            facts.extend(_deploy_key_facts(config))
        facts.extend(_dashboard_facts(config))
    if config.mesh_enabled:
        facts.extend(_mesh_facts(config))
    if config.webhook_enabled:
        facts.extend(_webhook_facts(config))
    return FactRegistry(facts)
