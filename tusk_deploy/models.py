"""models.py — Value types shared by the resolver, orchestrator and reconciler."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

# Target lifecycle
LIFECYCLE_ABSENT = "absent"
LIFECYCLE_CREATING = "creating"
LIFECYCLE_REACHABLE = "reachable"
LIFECYCLE_CONVERGED = "converged"

# Credential provenance
PROVENANCE_RECOVERED = "recovered"
PROVENANCE_ESCROWED = "escrowed"
PROVENANCE_GENERATED = "generated"

# Phase outcomes
OUTCOME_SKIPPED = "skipped-already-satisfied"
OUTCOME_APPLIED = "applied"
OUTCOME_FAILED = "failed"
OUTCOME_PLANNED = "planned"

# Verdict statuses
STATUS_PASS = "pass"
STATUS_WARN = "warn"
STATUS_FAIL = "fail"
STATUS_FIXED = "fixed"

SEVERITY_FAIL = STATUS_FAIL
SEVERITY_WARN = STATUS_WARN


@dataclass(frozen=True)
class Target:
    identity: str
    instance_id: str
    public_ip: str = ""
    private_ip: str = ""
    lifecycle: str = LIFECYCLE_ABSENT
    existed: bool = False

    @property
    def address(self) -> str:
        return self.instance_id


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    status: str = "Success"

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 5) -> str:
        text = (self.stderr or self.stdout or "").strip()
        return "\n".join(text.splitlines()[-lines:])


@dataclass(frozen=True)
class CredentialRecord:
    name: str
    value: str = field(repr=False)
    provenance: str


@dataclass(frozen=True)
class PhaseResult:
    phase: str
    outcome: str
    detail: str = ""


@dataclass(frozen=True)
class ReconciliationVerdict:
    fact: str
    status: str
    remediation_applied: bool = False
    observed: str = ""
    detail: str = ""


@dataclass
class AuditReport:
    verdicts: List[ReconciliationVerdict] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        counts = {STATUS_PASS: 0, STATUS_WARN: 0, STATUS_FAIL: 0, STATUS_FIXED: 0}
        for verdict in self.verdicts:
            counts[verdict.status] = counts.get(verdict.status, 0) + 1
        return counts

    @property
    def failing(self) -> List[ReconciliationVerdict]:
        return [v for v in self.verdicts if v.status == STATUS_FAIL]

    @property
    def exit_code(self) -> int:
        return 1 if self.failing else 0

    def verdict_for(self, fact: str) -> Optional[ReconciliationVerdict]:
        for verdict in self.verdicts:
            if verdict.fact == fact:
                return verdict
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "counts": self.counts,
            "exit_code": self.exit_code,
            "verdicts": [
                {
                    "fact": v.fact,
                    "status": v.status,
                    "remediation_applied": v.remediation_applied,
                    "observed": v.observed,
                    "detail": v.detail,
                }
                for v in self.verdicts
            ],
        }
