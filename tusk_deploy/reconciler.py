"""reconciler.py — Diff observed state against the fact table and repair drift."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .config import DeployConfig, logger
from .credentials import CredentialStore
from .facts import FactRegistry
from .models import (
    SEVERITY_FAIL,
    STATUS_FIXED,
    STATUS_PASS,
    AuditReport,
    ReconciliationVerdict,
    Target,
)
from .probe import StateProbe

__all__ = ["Reconciler"]


def _describe(expected: str, observed: str) -> str:
    return f"expected {expected!r}, observed {observed or '<empty>'!r}"


class Reconciler:
    def __init__(
        self,
        config: DeployConfig,
        channel,
        registry: FactRegistry,
        store: Optional[CredentialStore] = None,
    ) -> None:
        self._config = config
        self._channel = channel
        self._registry = registry
        self._probe = StateProbe(config, channel)
        self._store = store or CredentialStore(config.credentials_file)

    def reconcile(
        self,
        target: Target,
        facts: Optional[Iterable[str]] = None,
        auto_fix: bool = False,
    ) -> AuditReport:
        """One snapshot for every fact; with ``auto_fix`` one repair + re-check per drifted fact.

        A repair's re-check also covers the facts still waiting for repair, so
        drift that shares a cause (a stopped service and its silent port) is
        resolved by the first repair instead of repeated.
        """
        names = list(facts) if facts is not None else self._registry.names()
        snapshot = self._probe.snapshot(target, self._registry.specs_for(names), comment="probe:audit")

        verdicts: Dict[str, ReconciliationVerdict] = {}
        pending: List[str] = []
        for name in names:
            fact = self._registry.get(name)
            observed = snapshot.get(name, "")
            if fact.holds(observed, snapshot):
                verdicts[name] = ReconciliationVerdict(name, STATUS_PASS, observed=observed)
            else:
                pending.append(name)

        for index, name in enumerate(pending):
            if name in verdicts:
                continue
            fact = self._registry.get(name)
            observed = snapshot.get(name, "")
            detail = _describe(fact.expected, observed)

            body = fact.remediation_body(snapshot) if auto_fix else None
            if body is None:
                if auto_fix:
                    detail += "; no automatic repair"
                verdicts[name] = ReconciliationVerdict(name, fact.severity, observed=observed, detail=detail)
                self._log_verdict(verdicts[name])
                continue

            logger.info("[INFO] Repairing %s", name)
            result = self._channel.exec(target, body, comment=f"remediate:{name}")
            waiting = [n for n in pending[index + 1:] if n not in verdicts]
            recheck = self._probe.snapshot(
                target,
                self._registry.specs_for([name] + waiting),
                comment=f"probe:recheck:{name}",
            )
            snapshot = {**snapshot, **recheck}
            now = recheck.get(name, "")
            if fact.holds(now, snapshot):
                verdicts[name] = ReconciliationVerdict(
                    name, STATUS_FIXED, remediation_applied=True, observed=now, detail=f"was {observed or '<empty>'!r}"
                )
            else:
                reason = f"repair exited {result.exit_code}" if not result.ok else "repair did not converge"
                verdicts[name] = ReconciliationVerdict(
                    name,
                    fact.severity,
                    remediation_applied=True,
                    observed=now,
                    detail=f"{_describe(fact.expected, now)}; {reason}",
                )
            self._log_verdict(verdicts[name])

            for other in waiting:
                other_fact = self._registry.get(other)
                if other_fact.holds(recheck.get(other, ""), snapshot):
                    verdicts[other] = ReconciliationVerdict(
                        other, STATUS_PASS, observed=recheck.get(other, ""), detail=f"resolved by repair of {name}"
                    )

        report = AuditReport([verdicts[name] for name in names])
        logger.info("[INFO] Audit counts: %s", report.counts)
        return report

    def local_checks(self, auto_fix: bool = False) -> List[ReconciliationVerdict]:
        """Checks on the operator's machine: the credential escrow file and its mode."""
        path = self._store.path
        if not self._store.exists():
            return [
                ReconciliationVerdict(
                    "local-credentials-present",
                    SEVERITY_FAIL,
                    detail=f"{path} missing; run deploy to recover it from the target",
                )
            ]
        verdicts = [ReconciliationVerdict("local-credentials-present", STATUS_PASS, observed=str(path))]
        mode = self._store.mode()
        observed = oct(mode) if mode is not None else ""
        if self._store.mode_ok():
            verdicts.append(ReconciliationVerdict("local-credentials-mode", STATUS_PASS, observed=observed))
        elif auto_fix:
            self._store.fix_mode()
            verdicts.append(
                ReconciliationVerdict(
                    "local-credentials-mode",
                    STATUS_FIXED if self._store.mode_ok() else SEVERITY_FAIL,
                    remediation_applied=True,
                    observed=oct(self._store.mode() or 0),
                    detail=f"was {observed}",
                )
            )
        else:
            verdicts.append(
                ReconciliationVerdict(
                    "local-credentials-mode", SEVERITY_FAIL, observed=observed, detail="expected 0o600"
                )
            )
        return verdicts

    def audit(self, target: Target, auto_fix: bool = False) -> AuditReport:
        report = self.reconcile(target, auto_fix=auto_fix)
        report.verdicts = self.local_checks(auto_fix=auto_fix) + report.verdicts
        return report

    @staticmethod
    def _log_verdict(verdict: ReconciliationVerdict) -> None:
        if verdict.status == STATUS_FIXED:
            logger.info("[SUCCESS] %s fixed", verdict.fact)
        elif verdict.status == SEVERITY_FAIL:
            logger.error("[ERROR] %s: %s", verdict.fact, verdict.detail)
        else:
            logger.warning("[WARNING] %s: %s", verdict.fact, verdict.detail)
