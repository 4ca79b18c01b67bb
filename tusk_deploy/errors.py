"""errors.py — Error taxonomy for deploy / audit runs.

Every fatal error carries an operator-facing remediation. Phases are written to
be re-entered, so the default remediation is simply to run the command again.
"""
from __future__ import annotations

from typing import Any, List, Optional

RERUN_HINT = "re-run the same command; it resumes from here"


class TuskDeployError(Exception):
    """Base class for all engine errors."""

    default_remediation = RERUN_HINT

    def __init__(self, message: str, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation or self.default_remediation


class PrerequisiteError(TuskDeployError):
    """A local tool, credential or setting is missing. Raised pre-flight only."""

    default_remediation = "fix the local setup above, then re-run"


class ConnectivityError(TuskDeployError):
    """The target could not be reached over the remote-shell transport."""

    default_remediation = (
        "check that the instance is running and the SSM agent is online, then " + RERUN_HINT
    )


class ProvisioningError(TuskDeployError):
    """Target creation (or adoption) did not converge to a running instance."""


class CredentialError(TuskDeployError):
    """A credential could not be recovered, generated, or durably persisted."""


class PhaseApplyError(TuskDeployError):
    """A phase mutation failed. Earlier phases are left intact."""

    def __init__(
        self,
        phase: str,
        message: str,
        results: Optional[List[Any]] = None,
        remediation: Optional[str] = None,
    ) -> None:
        super().__init__(f"phase '{phase}' failed: {message}", remediation)
        self.phase = phase
        self.results = list(results or [])


class UpgradeError(TuskDeployError):
    """The dashboard update (or rollback) did not complete on the target."""

    default_remediation = "read /var/log/poseidon-update.log on the target, then " + RERUN_HINT


class ReconciliationFailure(TuskDeployError):
    """One or more facts remain failing after an audit (and optional repair)."""

    default_remediation = "run 'tusk-deploy audit --fix', or re-run 'tusk-deploy deploy'"

    def __init__(self, report: Any, message: Optional[str] = None) -> None:
        failing = getattr(report, "failing", []) or []
        super().__init__(message or f"{len(failing)} check(s) still failing")
        self.report = report
