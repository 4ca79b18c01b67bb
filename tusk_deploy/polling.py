"""polling.py — Bounded polling shared by every wait site.

Connectivity, platform-initialisation, instance launch and smoke waits all go
through ``wait_until``. The loop is cancellable only by its deadline.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .config import logger


@dataclass(frozen=True)
class WaitResult:
    ok: bool
    elapsed: float
    attempts: int


def wait_until(
    predicate: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    label: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WaitResult:
    """Poll ``predicate`` every ``interval`` seconds until it holds or ``timeout`` elapses.

    The predicate is always evaluated at least once. Sleeps are clipped to the
    remaining budget so the call returns no later than ``timeout`` plus the
    duration of one predicate evaluation.
    """
    started = clock()
    attempts = 0
    while True:
        attempts += 1
        if predicate():
            return WaitResult(ok=True, elapsed=clock() - started, attempts=attempts)
        elapsed = clock() - started
        remaining = timeout - elapsed
        if remaining <= 0:
            logger.debug("[WAIT] %s not met after %.1fs (%d attempts)", label, elapsed, attempts)
            return WaitResult(ok=False, elapsed=elapsed, attempts=attempts)
        logger.debug("[WAIT] %s pending (%.0fs elapsed)", label, elapsed)
        sleep(min(interval, remaining))
