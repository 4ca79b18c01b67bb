"""credentials.py — Credential recovery, generation and local escrow.

Order of precedence for every secret:
    1. recovered from the target's own configuration (well-formed values only)
    2. escrowed in the local credentials file (re-seeds the target)
    3. newly generated

The local file is written (mode 0600, atomic replace) before anything is
written to the target and before any later phase runs.
"""
from __future__ import annotations

import os
import re
import secrets
import shlex
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from dotenv import dotenv_values

from .config import DeployConfig, logger
from .errors import ConnectivityError, CredentialError
from .models import (
    PROVENANCE_ESCROWED,
    PROVENANCE_GENERATED,
    PROVENANCE_RECOVERED,
    CredentialRecord,
    Target,
)
from .probe import ProbeSpec, StateProbe
from .serialization import _now_z, mask_secret
from . import templates as tpl

__all__ = [
    "GATEWAY_TOKEN",
    "WEBHOOK_SECRET",
    "CredentialManager",
    "CredentialStore",
    "is_well_formed",
]

GATEWAY_TOKEN = "GATEWAY_TOKEN"
WEBHOOK_SECRET = "WEBHOOK_SECRET"
PREVIOUS_SUFFIX = "_PREVIOUS"

_SECRET_RE = re.compile(r"^[0-9a-f]{64}$")
_FILE_MODE = 0o600


def is_well_formed(value: Optional[str]) -> bool:
    return bool(value) and bool(_SECRET_RE.match(value))


def _generate() -> str:
    return secrets.token_hex(32)


class CredentialStore:
    """KEY=VALUE escrow file on the operator's machine."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            values = dotenv_values(self.path)
        except OSError as exc:
            raise CredentialError(f"cannot read {self.path}: {exc}") from exc
        return {k: v for k, v in values.items() if v}

    def mode(self) -> Optional[int]:
        try:
            return self.path.stat().st_mode & 0o777
        except FileNotFoundError:
            return None

    def mode_ok(self) -> bool:
        return self.mode() == _FILE_MODE

    def fix_mode(self) -> None:
        os.chmod(self.path, _FILE_MODE)

    def persist(
        self,
        target: Target,
        records: Mapping[str, CredentialRecord],
        rotate: bool = False,
    ) -> Path:
        """Merge ``records`` into the file. A differing value needs ``rotate``."""
        existing = self.load()
        merged: Dict[str, str] = dict(existing)
        for name, record in records.items():
            old = existing.get(name)
            if old and old != record.value:
                if not rotate:
                    raise CredentialError(
                        f"{name} on {target.identity} differs from the value escrowed in {self.path}",
                        remediation=(
                            f"move {self.path} aside to adopt the target's value, "
                            "or re-run with --rotate-credential to mint a new one"
                        ),
                    )
                merged[f"{name}{PREVIOUS_SUFFIX}"] = old
            merged[name] = record.value

        lines: List[str] = [
            "# tusk-deploy remote credentials",
            f"# Target: {target.identity} ({target.instance_id})",
            f"# Updated: {_now_z()}",
        ]
        for name, record in records.items():
            lines.append(f"# {name} provenance: {record.provenance}")
        for key in sorted(merged):
            lines.append(f"{key}={merged[key]}")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd, tmp_name = tempfile.mkstemp(prefix=".credentials-", dir=str(self.path.parent))
            try:
                os.fchmod(fd, _FILE_MODE)
                with os.fdopen(fd, "w") as fh:
                    fh.write("\n".join(lines) + "\n")
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            os.chmod(self.path, _FILE_MODE)
        except OSError as exc:
            raise CredentialError(f"cannot write {self.path}: {exc}") from exc

        logger.info("[SUCCESS] Credentials saved to %s", self.path)
        return self.path


class CredentialManager:
    """Resolves every secret the target needs, in one read and one write session."""

    def __init__(
        self,
        config: DeployConfig,
        channel,
        store: Optional[CredentialStore] = None,
        generator: Callable[[], str] = _generate,
    ) -> None:
        self._config = config
        self._channel = channel
        self._probe = StateProbe(config, channel)
        self.store = store or CredentialStore(config.credentials_file)
        self._generator = generator

    def required(self) -> List[str]:
        names = [GATEWAY_TOKEN]
        if self._config.webhook_enabled:
            names.append(WEBHOOK_SECRET)
        return names

    def _recovery_specs(self) -> List[ProbeSpec]:
        specs = [ProbeSpec("gateway-token", tpl.gateway_token_read_probe(self._config))]
        if self._config.webhook_enabled:
            specs.append(
                ProbeSpec(
                    "webhook-secret",
                    f"grep '^WEBHOOK_SECRET=' {shlex.quote(self._config.webhook_env_file)} 2>/dev/null | head -n1 | cut -d= -f2-",
                )
            )
        return specs

    def recover(self, target: Target) -> Dict[str, str]:
        try:
            observed = self._probe.snapshot(target, self._recovery_specs(), comment="credential-recover")
        except ConnectivityError as exc:
            raise CredentialError(f"cannot read credentials from {target.instance_id}: {exc.message}") from exc
        return {
            GATEWAY_TOKEN: observed.get("gateway-token", ""),
            WEBHOOK_SECRET: observed.get("webhook-secret", ""),
        }

    def resolve(
        self,
        target: Target,
        rotate: bool = False,
        plan_only: bool = False,
    ) -> Dict[str, CredentialRecord]:
        recovered = self.recover(target)
        escrow = self.store.load()

        records: Dict[str, CredentialRecord] = {}
        to_write: Dict[str, str] = {}
        for name in self.required():
            on_target = recovered.get(name, "")
            if on_target and not is_well_formed(on_target):
                logger.warning("[WARNING] %s on target is malformed; it will be replaced", name)

            if rotate:
                value, provenance = self._generator(), PROVENANCE_GENERATED
            elif is_well_formed(on_target):
                value, provenance = on_target, PROVENANCE_RECOVERED
            elif is_well_formed(escrow.get(name)):
                value, provenance = escrow[name], PROVENANCE_ESCROWED
            else:
                value, provenance = self._generator(), PROVENANCE_GENERATED

            records[name] = CredentialRecord(name=name, value=value, provenance=provenance)
            if provenance != PROVENANCE_RECOVERED:
                to_write[name] = value
            logger.info("[INFO] %s: %s (%s)", name, provenance, mask_secret(value))

        if plan_only:
            return records

        self.store.persist(target, records, rotate=rotate)
        if to_write:
            self._write(target, to_write)
        return records

    def _write(self, target: Target, values: Mapping[str, str]) -> None:
        lines: List[str] = ["set -e"]
        if GATEWAY_TOKEN in values:
            lines.extend(tpl.gateway_token_write_lines(self._config, values[GATEWAY_TOKEN]))
        if WEBHOOK_SECRET in values:
            lines.extend(tpl.webhook_secret_write_lines(self._config, values[WEBHOOK_SECRET]))
        try:
            result = self._channel.exec(target, "\n".join(lines) + "\n", comment="credential-write")
        except ConnectivityError as exc:
            raise CredentialError(f"cannot write credentials to {target.instance_id}: {exc.message}") from exc
        if not result.ok:
            raise CredentialError(
                f"writing credentials to {target.instance_id} exited {result.exit_code}: {result.tail()}"
            )
