"""smoke.py — Bounded post-deploy readiness polling.

``wait_for_ready`` never raises on timeout: it returns ``ready=False`` and the
caller decides whether that is a hard failure or a warm-up warning.
"""
from __future__ import annotations

import shlex
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import DeployConfig, logger
from .errors import ConnectivityError
from .models import Target
from .polling import wait_until
from .probe import ProbeSpec, StateProbe

__all__ = [
    "ReadinessSignal",
    "ReadyResult",
    "SmokeVerifier",
    "port_signal",
    "unit_signal",
]


@dataclass(frozen=True)
class ReadinessSignal:
    name: str
    spec: ProbeSpec
    expected: str


@dataclass(frozen=True)
class ReadyResult:
    ready: bool
    elapsed: float
    observed: str = ""


def port_signal(port: int, name: Optional[str] = None) -> ReadinessSignal:
    label = name or f"port-{int(port)}"
    return ReadinessSignal(
        label,
        ProbeSpec(label, f"if curl -sf -o /dev/null -m 5 http://127.0.0.1:{int(port)}/; then echo ok; else echo fail; fi"),
        "ok",
    )


def unit_signal(service: str) -> ReadinessSignal:
    label = f"unit-{service}"
    return ReadinessSignal(
        label,
        ProbeSpec(label, f"systemctl is-active {shlex.quote(service)} 2>/dev/null || true"),
        "active",
    )


class SmokeVerifier:
    def __init__(
        self,
        config: DeployConfig,
        channel,
        *,
        interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = StateProbe(config, channel)
        self._interval = interval if interval is not None else config.poll_interval
        self._sleep = sleep
        self._clock = clock

    def wait_for_ready(self, target: Target, signal: ReadinessSignal, max_wait: float) -> ReadyResult:
        last = {"observed": ""}
        started = self._clock()

        def _check() -> bool:
            # Each poll may only spend what is left of max_wait.
            remaining = max(1.0, max_wait - (self._clock() - started))
            try:
                snapshot = self._probe.snapshot(
                    target, [signal.spec], comment=f"smoke:{signal.name}", timeout=30, wait=remaining
                )
            except ConnectivityError as exc:
                logger.debug("[WAIT] smoke probe %s failed: %s", signal.name, exc)
                return False
            last["observed"] = snapshot.get(signal.name, "")
            return last["observed"] == signal.expected

        waited = wait_until(
            _check,
            interval=self._interval,
            timeout=max_wait,
            label=signal.name,
            sleep=self._sleep,
            clock=self._clock,
        )
        return ReadyResult(ready=waited.ok, elapsed=waited.elapsed, observed=last["observed"])
