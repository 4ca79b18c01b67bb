"""probe.py — Batched, read-only state probes.

All requested probes are rendered into one script and gathered in a single
remote exec. Each probe prints its observation on stdout; the script wraps it
as a ``TUSK_FACT:<name>=<value>`` line so the results can be split back apart.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .config import DeployConfig, logger
from .errors import ConnectivityError
from .models import Target

__all__ = [
    "FACT_MARKER",
    "ProbeSpec",
    "StateProbe",
    "parse_snapshot",
    "render_probe_script",
]

FACT_MARKER = "TUSK_FACT:"
_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9.-]*$")
_VALUE_LIMIT = 1024


@dataclass(frozen=True)
class ProbeSpec:
    name: str
    command: str


def render_probe_script(specs: Iterable[ProbeSpec]) -> str:
    lines: List[str] = ["set +e", "export LC_ALL=C"]
    for index, spec in enumerate(specs):
        if not _NAME_RE.match(spec.name):
            raise ValueError(f"invalid probe name: {spec.name!r}")
        fn = f"__tusk_probe_{index}"
        lines.append(f"{fn}() {{")
        lines.append(spec.command.rstrip())
        lines.append("}")
        lines.append(
            f"printf '{FACT_MARKER}{spec.name}=%s\\n' "
            f"\"$({fn} 2>/dev/null | head -c {_VALUE_LIMIT} | tr -d '\\r' | tr '\\n' ' ')\""
        )
    lines.append("exit 0")
    return "\n".join(lines) + "\n"


def parse_snapshot(stdout: str) -> Dict[str, str]:
    snapshot: Dict[str, str] = {}
    for line in (stdout or "").splitlines():
        if not line.startswith(FACT_MARKER):
            continue
        name, sep, value = line[len(FACT_MARKER):].partition("=")
        if not sep:
            continue
        snapshot[name.strip()] = value.strip()
    return snapshot


class StateProbe:
    """Gathers many observations with one remote command."""

    def __init__(self, config: DeployConfig, channel) -> None:
        self._config = config
        self._channel = channel

    def snapshot(
        self,
        target: Target,
        specs: Iterable[ProbeSpec],
        *,
        comment: str = "probe",
        timeout: Optional[int] = None,
        wait: Optional[float] = None,
    ) -> Dict[str, str]:
        ordered: Dict[str, ProbeSpec] = {}
        for spec in specs:
            ordered.setdefault(spec.name, spec)
        if not ordered:
            return {}

        result = self._channel.exec(
            target,
            render_probe_script(ordered.values()),
            comment=comment,
            timeout=timeout or min(self._config.command_timeout, 300),
            wait=wait,
        )
        if not result.ok:
            raise ConnectivityError(
                f"state probe on {target.instance_id} exited {result.exit_code}: {result.tail()}"
            )
        observed = parse_snapshot(result.stdout)
        if not observed:
            raise ConnectivityError(f"state probe on {target.instance_id} returned no observations")

        missing = [name for name in ordered if name not in observed]
        if missing:
            logger.warning("[WARNING] Probe returned no value for: %s", ", ".join(missing))
        return {name: observed.get(name, "") for name in ordered}
