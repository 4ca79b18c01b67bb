"""engine.py — Wires resolver, channel, credentials, phases and smoke checks together.

deploy:  resolve target -> wait for SSM -> credentials (persisted first) ->
         phases -> smoke checks
audit:   find target -> wait for SSM -> one snapshot -> verdicts (+ repairs)
         -> instance shape against config (reported only)
upgrade: find target -> wait for SSM -> run the update script once (or roll back)
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import DeployConfig, logger
from .credentials import CredentialManager, CredentialStore
from .errors import ConnectivityError, PrerequisiteError, ProvisioningError, UpgradeError
from .facts import build_registry
from .models import (
    OUTCOME_PLANNED,
    PROVENANCE_ESCROWED,
    STATUS_PASS,
    STATUS_WARN,
    AuditReport,
    CredentialRecord,
    PhaseResult,
    ReconciliationVerdict,
    Target,
)
from .orchestrator import PhaseOrchestrator
from .phases import NOTE_MARKER, PhaseContext, build_phases
from .reconciler import Reconciler
from .resolver import TargetResolver
from .smoke import ReadyResult, SmokeVerifier, port_signal, unit_signal
from . import templates as tpl

__all__ = [
    "DeployEngine",
    "DeployOutcome",
    "UpgradeOutcome",
]


@dataclass
class DeployOutcome:
    target: Optional[Target]
    credentials: Dict[str, CredentialRecord] = field(default_factory=dict)
    results: List[PhaseResult] = field(default_factory=list)
    smoke: Dict[str, ReadyResult] = field(default_factory=dict)
    plan_only: bool = False

    @property
    def gateway_active(self) -> bool:
        unit = self.smoke.get("gateway-unit")
        return unit is None or unit.ready

    @property
    def warming_up(self) -> List[str]:
        return [name for name, result in self.smoke.items() if name != "gateway-unit" and not result.ready]


@dataclass
class UpgradeOutcome:
    target: Target
    previous: str
    current: str
    rollback: bool = False

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class DeployEngine:
    def __init__(
        self,
        config: DeployConfig,
        channel,
        resolver: Optional[TargetResolver] = None,
        *,
        store: Optional[CredentialStore] = None,
        generator: Optional[Callable[[], str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.channel = channel
        self.resolver = resolver or TargetResolver(config, sleep=sleep, clock=clock)
        self.store = store or CredentialStore(config.credentials_file)
        manager_kwargs = {"generator": generator} if generator is not None else {}
        self.credentials = CredentialManager(config, channel, self.store, **manager_kwargs)
        self.orchestrator = PhaseOrchestrator(config, channel, sleep=sleep, clock=clock)
        self._sleep = sleep
        self._clock = clock

    def deploy(
        self,
        rotate: bool = False,
        plan_only: bool = False,
        smoke: bool = True,
        smoke_timeout: Optional[int] = None,
    ) -> DeployOutcome:
        identity = self.config.identity
        phases = build_phases(self.config)

        if plan_only:
            target = self.resolver.find(identity)
            if target is None:
                logger.info("[INFO] No instance for '%s'; deploy would create one", identity)
                return DeployOutcome(
                    target=None,
                    results=[PhaseResult(p.name, OUTCOME_PLANNED, "new instance") for p in phases],
                    plan_only=True,
                )
            target = self.resolver.wait_reachable(target, self.channel)
            records = self.credentials.resolve(target, rotate=rotate, plan_only=True)
            context = PhaseContext(self.config, build_registry(self.config, records), records)
            results = self.orchestrator.run(target, phases, context, plan_only=True)
            return DeployOutcome(target=target, credentials=records, results=results, plan_only=True)

        target = self.resolver.resolve(identity)
        target = self.resolver.wait_reachable(target, self.channel)
        records = self.credentials.resolve(target, rotate=rotate)
        context = PhaseContext(self.config, build_registry(self.config, records), records)
        results = self.orchestrator.run(target, phases, context)
        target = self.resolver.mark_converged(target)
        outcome = DeployOutcome(target=target, credentials=records, results=results)

        if smoke:
            outcome.smoke = self.smoke_check(target, smoke_timeout)
        return outcome

    def smoke_check(self, target: Target, smoke_timeout: Optional[int] = None) -> Dict[str, ReadyResult]:
        budget = float(smoke_timeout if smoke_timeout is not None else self.config.smoke_timeout)
        verifier = SmokeVerifier(self.config, self.channel, sleep=self._sleep, clock=self._clock)
        started = self._clock()

        def _remaining() -> float:
            return max(0.0, budget - (self._clock() - started))

        checks: Dict[str, ReadyResult] = {}
        checks["gateway-unit"] = verifier.wait_for_ready(target, unit_signal(self.config.gateway_service), budget)
        if not checks["gateway-unit"].ready:
            logger.error("[ERROR] %s is not active after %ds", self.config.gateway_service, int(budget))
            return checks
        checks["gateway-port"] = verifier.wait_for_ready(
            target, port_signal(self.config.gateway_port, "gateway-port"), _remaining()
        )
        if self.config.dashboard_enabled:
            checks["dashboard-port"] = verifier.wait_for_ready(
                target, port_signal(self.config.dashboard_port, "dashboard-port"), _remaining()
            )
        for name, result in checks.items():
            if result.ready:
                logger.info("[SUCCESS] %s ready after %.0fs", name, result.elapsed)
            else:
                logger.warning("[WARNING] %s not responding yet (may still be starting)", name)
        return checks

    def _require_target(self) -> Target:
        target = self.resolver.find(self.config.identity)
        if target is None:
            raise ProvisioningError(
                f"no instance found for identity '{self.config.identity}'",
                remediation="run 'tusk-deploy deploy' first",
            )
        return target

    def audit(self, auto_fix: bool = False) -> AuditReport:
        target = self.resolver.wait_reachable(self._require_target(), self.channel)
        escrow = self.store.load()
        records = {
            name: CredentialRecord(name=name, value=escrow[name], provenance=PROVENANCE_ESCROWED)
            for name in self.credentials.required()
            if escrow.get(name)
        }
        registry = build_registry(self.config, records)
        reconciler = Reconciler(self.config, self.channel, registry, self.store)
        report = reconciler.audit(target, auto_fix=auto_fix)
        report.verdicts.append(self._shape_verdict())
        return report

    def upgrade(self, rollback: bool = False) -> UpgradeOutcome:
        """Pull and rebuild the dashboard, or return it to the commit live before the last update."""
        if not self.config.dashboard_enabled:
            raise PrerequisiteError(
                "no dashboard repository is configured; there is nothing to upgrade",
                remediation="set TUSK_DASHBOARD_REPO and run 'tusk-deploy deploy'",
            )
        target = self.resolver.wait_reachable(self._require_target(), self.channel)
        action = "rollback" if rollback else "upgrade"
        logger.info("[START] Dashboard %s on %s", action, target.instance_id)
        body = "\n".join(["set -e", *tpl.upgrade_lines(self.config, rollback=rollback)]) + "\n"
        comment = "upgrade:rollback" if rollback else "upgrade"
        try:
            result = self.channel.exec(target, body, comment=comment)
        except ConnectivityError as exc:
            raise UpgradeError(f"dashboard {action} on {target.instance_id} was interrupted: {exc.message}") from exc
        if not result.ok:
            raise UpgradeError(f"dashboard {action} exited {result.exit_code}: {result.tail()}")

        notes: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            if line.startswith(NOTE_MARKER):
                key, _, value = line[len(NOTE_MARKER):].partition("=")
                notes[key.strip()] = value.strip()
        outcome = UpgradeOutcome(
            target=target,
            previous=notes.get("previous", ""),
            current=notes.get("current", ""),
            rollback=rollback,
        )
        logger.info("[END] Dashboard %s: %s -> %s", action, outcome.previous[:12], outcome.current[:12])
        return outcome

    def _shape_verdict(self) -> ReconciliationVerdict:
        # Adopted instances are never reshaped; drift is only reported.
        drift = self.resolver.shape_drift(self.config.identity)
        if not drift:
            return ReconciliationVerdict("instance-shape", STATUS_PASS, observed=self.config.instance_type)
        return ReconciliationVerdict(
            "instance-shape",
            STATUS_WARN,
            detail="; ".join(drift) + " (recreate the instance to apply)",
        )

    def status(self) -> Dict[str, object]:
        target = self.resolver.find(self.config.identity)
        if target is None:
            return {"identity": self.config.identity, "lifecycle": "absent"}
        return {
            "identity": target.identity,
            "instance_id": target.instance_id,
            "public_ip": target.public_ip,
            "private_ip": target.private_ip,
            "ssm_online": self.channel.ping(target),
            "credentials_file": str(self.store.path) if self.store.exists() else "",
        }
