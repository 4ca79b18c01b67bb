"""Shared fixtures and in-memory stand-ins for the target host, SSM channel, EC2 and the clock.

The fake channel understands the same comments the engine sends (``probe:*``,
``phase:*``, ``remediate:*``, ``credential-*``, ``smoke:*``, ``upgrade*``) and
reads probe names out of the rendered script, so every test goes through the
real probe renderer and parser.
"""
from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pytest

from tusk_deploy.config import DeployConfig
from tusk_deploy.facts import MESH_FQDN
from tusk_deploy.models import LIFECYCLE_REACHABLE, CommandResult, Target
from tusk_deploy.phases import build_phases
_PROBE_NAME_RE = re.compile(r"TUSK_FACT:([a-z0-9][a-z0-9.-]*)=")
_TOKEN_RE = re.compile(r"TUSK_GATEWAY_TOKEN=([0-9a-f]+)")
_SECRET_RE = re.compile(r"echo WEBHOOK_SECRET=([0-9a-f]+)")

# Facts derived from other host state rather than stored directly.
_DERIVED = {"gateway-token-digest", "webhook-secret-present"}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeHost:
    """Observable state of one target, keyed by fact name."""

    def __init__(self, config: DeployConfig, fqdn: str = "tusk-test.tail0000.ts.net") -> None:
        self.config = config
        self.fqdn = fqdn
        # Fresh image: first boot done, gateway unit baked in.
        self.state: Dict[str, str] = {"platform-initialized": "yes", "gateway-unit-present": "yes"}
        self.gateway_token = ""
        self.webhook_secret = ""
        # Dashboard checkout: what is live, what origin has, what a rollback returns to.
        self.dashboard_commit = "1" * 40
        self.origin_commit = "1" * 40
        self.previous_commit = ""

    def good_value(self, name: str) -> str:
        c = self.config
        table = {
            "platform-initialized": "yes",
            "operator-account-present": "yes",
            "firewall-active": "active",
            "intrusion-guard-active": "active",
            "sshd-hardened": "yes",
            "gateway-unit-present": "yes",
            "gateway-config-shape": "ok",
            "gateway-service-active": "active",
            "gateway-http": "ok",
            "deploy-key-present": "yes",
            "deploy-key-ssh-config": "yes",
            "dashboard-checkout": "yes",
            "dashboard-remote": c.dashboard_repo,
            "dashboard-unit-present": "yes",
            "dashboard-gateway-url": f"ws://127.0.0.1:{c.gateway_port}",
            "dashboard-gateway-token": "match",
            "dashboard-service-active": "active",
            "dashboard-http": "ok",
            "mesh-installed": "yes",
            "mesh-online": "True",
            "mesh-serve-gateway": "yes",
            "mesh-serve-dashboard": "yes",
            "dashboard-cors-origins": f"https://{self.fqdn},http://localhost:5173",
            "gateway-allowed-origins": f"https://{self.fqdn},https://{self.fqdn}:8443",
            "webhook-unit-present": "yes",
            "webhook-service-active": "active",
        }
        return table[name]

    def converge(self, names: Iterable[str]) -> None:
        for name in names:
            if name not in _DERIVED:
                self.state[name] = self.good_value(name)

    def value(self, name: str) -> str:
        c = self.config
        if name == "gateway-token":
            return self.gateway_token
        if name == "webhook-secret":
            return self.webhook_secret
        if name == "gateway-token-digest":
            return hashlib.sha256(self.gateway_token.encode()).hexdigest() if self.gateway_token else ""
        if name == "webhook-secret-present":
            return "yes" if len(self.webhook_secret) == 64 else "no"
        if name == MESH_FQDN:
            return self.fqdn if self.state.get("mesh-online") == "True" else ""
        if name == f"unit-{c.gateway_service}":
            return self.state.get("gateway-service-active", "inactive")
        if name == "gateway-port":
            return self.state.get("gateway-http", "fail")
        if name == "dashboard-port":
            return self.state.get("dashboard-http", "fail")
        return self.state.get(name, "")


class FakeChannel:
    """RemoteChannel double driving a FakeHost."""

    def __init__(self, config: DeployConfig, host: Optional[FakeHost] = None) -> None:
        self.config = config
        self.host = host or FakeHost(config)
        self.calls: List[Tuple[str, str]] = []
        self.failing_phases: Set[str] = set()
        self.unfixable: Set[str] = set()
        self.online = True
        self.build_running = False
        self._phase_facts = {p.name: p.facts for p in build_phases(config)}

    @property
    def comments(self) -> List[str]:
        return [comment for comment, _body in self.calls]

    @property
    def mutations(self) -> List[str]:
        prefixes = ("phase:", "remediate:", "credential-write")
        return [c for c in self.comments if c.startswith(prefixes)]

    def exec(
        self,
        target: Target,
        body: str,
        *,
        comment: str = "",
        timeout: Optional[int] = None,
        wait: Optional[float] = None,
    ) -> CommandResult:
        self.calls.append((comment, body))
        host = self.host
        if comment.startswith(("probe", "smoke:", "credential-recover")):
            names = _PROBE_NAME_RE.findall(body)
            stdout = "".join(f"TUSK_FACT:{name}={host.value(name)}\n" for name in names)
            return CommandResult(0, stdout, "")
        if comment == "credential-write":
            token = _TOKEN_RE.search(body)
            if token:
                host.gateway_token = token.group(1)
            secret = _SECRET_RE.search(body)
            if secret:
                host.webhook_secret = secret.group(1)
            return CommandResult(0, "", "")
        if comment.startswith("phase:"):
            phase = comment.split(":", 1)[1]
            if phase in self.failing_phases:
                return CommandResult(1, "", f"{phase} exploded", status="Failed")
            host.converge(self._phase_facts.get(phase, ()))
            return CommandResult(0, "", "")
        if comment.startswith("remediate:"):
            fact = comment.split(":", 1)[1]
            if fact in self.unfixable:
                return CommandResult(1, "", "still broken", status="Failed")
            host.converge([fact])
            if fact == "gateway-service-active":
                host.converge(["gateway-http"])
            return CommandResult(0, "", "")
        if comment.startswith("upgrade"):
            return self._upgrade(rollback=comment == "upgrade:rollback")
        raise AssertionError(f"unexpected exec comment: {comment!r}")

    def _upgrade(self, rollback: bool) -> CommandResult:
        host = self.host
        if self.build_running:
            return CommandResult(1, "ERROR: Another build is already running. Skipping.\n", "", status="Failed")
        if host.state.get("dashboard-checkout") != "yes":
            return CommandResult(3, "ERROR: /opt/poseidon is not a git checkout.\n", "", status="Failed")
        current = host.dashboard_commit
        if rollback:
            if not host.previous_commit:
                return CommandResult(3, "ERROR: No previous version recorded.\n", "", status="Failed")
            new = host.previous_commit
        else:
            new = host.origin_commit
        if new != current:
            host.previous_commit = current
        host.dashboard_commit = new
        return CommandResult(0, f"TUSK_NOTE:previous={current}\nTUSK_NOTE:current={new}\n", "")

    def ping(self, target: Target) -> bool:
        return self.online

    def probe_connectivity(self, target: Target, timeout: float) -> bool:
        return self.online


class _Paginator:
    def __init__(self, ec2: "FakeEC2") -> None:
        self._ec2 = ec2

    def paginate(self, Filters: List[Dict[str, Any]]):
        wanted = {f["Name"]: set(f["Values"]) for f in Filters}
        matches = []
        for instance in self._ec2.instances.values():
            tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
            ok = True
            for name, values in wanted.items():
                if name == "instance-state-name":
                    ok = ok and instance["State"]["Name"] in values
                elif name.startswith("tag:"):
                    ok = ok and tags.get(name[4:]) in values
            if ok:
                matches.append(instance)
        yield {"Reservations": [{"Instances": matches}] if matches else []}


class FakeEC2:
    """Just enough of the EC2 client for the resolver."""

    def __init__(self) -> None:
        self.instances: Dict[str, Dict[str, Any]] = {}
        self.run_calls: List[Dict[str, Any]] = []
        self.started: List[str] = []
        self.terminated: List[str] = []
        self._counter = 0

    def add_instance(self, name: str, managed_by: str = "opentusk", state: str = "running", **extra) -> str:
        self._counter += 1
        instance_id = f"i-{self._counter:017x}"
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "State": {"Name": state},
            "InstanceType": extra.pop("InstanceType", "t3.medium"),
            "PublicIpAddress": f"203.0.113.{self._counter}",
            "PrivateIpAddress": f"10.0.0.{self._counter}",
            "Tags": [{"Key": "Name", "Value": name}, {"Key": "tusk:managed-by", "Value": managed_by}],
            **extra,
        }
        return instance_id

    def get_paginator(self, name: str) -> _Paginator:
        assert name == "describe_instances"
        return _Paginator(self)

    def run_instances(self, **params) -> Dict[str, Any]:
        self.run_calls.append(params)
        tags = params["TagSpecifications"][0]["Tags"]
        values = {t["Key"]: t["Value"] for t in tags}
        instance_id = self.add_instance(values["Name"], values["tusk:managed-by"], state="pending")
        self.instances[instance_id]["Tags"] = list(tags)
        return {"Instances": [dict(self.instances[instance_id])]}

    def describe_instances(self, InstanceIds: List[str]) -> Dict[str, Any]:
        instance = self.instances[InstanceIds[0]]
        state = instance["State"]["Name"]
        # Each describe advances a transitional state by one step.
        instance["State"]["Name"] = {"pending": "running", "stopping": "stopped", "shutting-down": "terminated"}.get(
            state, state
        )
        return {"Reservations": [{"Instances": [dict(instance, State={"Name": state})]}]}

    def start_instances(self, InstanceIds: List[str]) -> Dict[str, Any]:
        self.started.extend(InstanceIds)
        for instance_id in InstanceIds:
            self.instances[instance_id]["State"]["Name"] = "pending"
        return {}

    def terminate_instances(self, InstanceIds: List[str]) -> Dict[str, Any]:
        self.terminated.extend(InstanceIds)
        for instance_id in InstanceIds:
            self.instances[instance_id]["State"]["Name"] = "shutting-down"
        return {}


@pytest.fixture
def config(tmp_path):
    return DeployConfig(
        identity="tusk-test",
        credentials_file=tmp_path / "remote-credentials",
        dashboard_repo="https://github.com/example/poseidon.git",
        mesh_enabled=True,
        mesh_auth_key="tskey-auth-test",
        webhook_enabled=True,
        poll_interval=5.0,
    )


@pytest.fixture
def minimal_config(tmp_path):
    return DeployConfig(identity="tusk-min", credentials_file=tmp_path / "remote-credentials", poll_interval=5.0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel(config):
    return FakeChannel(config)


@pytest.fixture
def ec2():
    return FakeEC2()


@pytest.fixture
def target():
    return Target(identity="tusk-test", instance_id="i-0123456789abcdef0", lifecycle=LIFECYCLE_REACHABLE, existed=True)
