"""orchestrator.py — Runs the ordered phases against one target.

Per phase: one batched probe of the phase's facts; skip when they all hold;
otherwise one exec of the apply body (or a bounded wait for wait-only phases),
then one re-probe to confirm. Nothing is rolled back on failure.
"""
from __future__ import annotations

import time
from typing import Callable, Dict, List, Sequence

from .config import DeployConfig, logger
from .errors import PhaseApplyError
from .models import (
    OUTCOME_APPLIED,
    OUTCOME_FAILED,
    OUTCOME_PLANNED,
    OUTCOME_SKIPPED,
    PhaseResult,
    Target,
)
from .phases import NOTE_MARKER, Phase, PhaseContext
from .polling import wait_until
from .probe import StateProbe

__all__ = ["PhaseOrchestrator"]


class PhaseOrchestrator:
    def __init__(
        self,
        config: DeployConfig,
        channel,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._channel = channel
        self._probe = StateProbe(config, channel)
        self._sleep = sleep
        self._clock = clock

    def _snapshot(self, target: Target, phase: Phase, context: PhaseContext, tag: str) -> Dict[str, str]:
        return self._probe.snapshot(
            target,
            context.registry.specs_for(phase.facts),
            comment=f"probe:{tag}:{phase.name}",
        )

    def run(
        self,
        target: Target,
        phases: Sequence[Phase],
        context: PhaseContext,
        plan_only: bool = False,
    ) -> List[PhaseResult]:
        results: List[PhaseResult] = []
        for phase in phases:
            logger.info("[START] %s: %s", phase.name, phase.description)
            snapshot = self._snapshot(target, phase, context, "check")
            pending = phase.unsatisfied(context.registry, snapshot)
            if not pending:
                logger.info("[SKIP] %s: already satisfied", phase.name)
                results.append(PhaseResult(phase.name, OUTCOME_SKIPPED, "all checks pass"))
                continue

            if plan_only:
                detail = "would apply; drifted: " + ", ".join(pending)
                logger.info("[INFO] %s: %s", phase.name, detail)
                results.append(PhaseResult(phase.name, OUTCOME_PLANNED, detail))
                continue

            if phase.wait_timeout is not None:
                detail = self._wait(target, phase, context, results)
            else:
                detail = self._apply(target, phase, context, snapshot, results)

            after = self._snapshot(target, phase, context, "verify")
            unverified = phase.unsatisfied(context.registry, after)
            if unverified:
                detail = f"{detail}; unverified: {', '.join(unverified)}"
                logger.warning("[WARNING] %s applied but not yet verified: %s", phase.name, ", ".join(unverified))
            logger.info("[END] %s: %s", phase.name, detail)
            results.append(PhaseResult(phase.name, OUTCOME_APPLIED, detail))
        return results

    def _apply(
        self,
        target: Target,
        phase: Phase,
        context: PhaseContext,
        snapshot: Dict[str, str],
        results: List[PhaseResult],
    ) -> str:
        if phase.build_apply is None:
            raise PhaseApplyError(phase.name, "no apply action is defined", results=results)
        body = phase.build_apply(context, snapshot)
        result = self._channel.exec(target, body, comment=f"phase:{phase.name}", timeout=phase.timeout)
        for line in result.stdout.splitlines():
            if line.startswith(NOTE_MARKER):
                logger.info("[INFO] %s: %s", phase.name, line[len(NOTE_MARKER):].strip())
        if not result.ok:
            tail = result.tail()
            results.append(PhaseResult(phase.name, OUTCOME_FAILED, tail))
            raise PhaseApplyError(phase.name, f"exit {result.exit_code}: {tail}", results=results)
        return "applied"

    def _wait(
        self,
        target: Target,
        phase: Phase,
        context: PhaseContext,
        results: List[PhaseResult],
    ) -> str:
        def _ready() -> bool:
            snapshot = self._snapshot(target, phase, context, "wait")
            return phase.is_satisfied(context.registry, snapshot)

        waited = wait_until(
            _ready,
            interval=self._config.poll_interval,
            timeout=float(phase.wait_timeout or 0),
            label=phase.name,
            sleep=self._sleep,
            clock=self._clock,
        )
        if not waited.ok:
            message = f"not satisfied after {int(waited.elapsed)}s"
            results.append(PhaseResult(phase.name, OUTCOME_FAILED, message))
            raise PhaseApplyError(phase.name, message, results=results)
        return f"ready after {int(waited.elapsed)}s"
