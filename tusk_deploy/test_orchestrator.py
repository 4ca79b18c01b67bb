import pytest

from tusk_deploy import orchestrator as mod
from tusk_deploy.errors import PhaseApplyError
from tusk_deploy.facts import build_registry
from tusk_deploy.models import (
    OUTCOME_APPLIED,
    OUTCOME_FAILED,
    OUTCOME_PLANNED,
    OUTCOME_SKIPPED,
    PROVENANCE_GENERATED,
    CredentialRecord,
)
from tusk_deploy.phases import PhaseContext, build_phases

TOKEN = "e" * 64
SECRET = "d" * 64


def _context(config):
    records = {"GATEWAY_TOKEN": CredentialRecord("GATEWAY_TOKEN", TOKEN, PROVENANCE_GENERATED)}
    return PhaseContext(config, build_registry(config, records), records)


def _prime(channel, token=TOKEN):
    channel.host.gateway_token = token
    channel.host.webhook_secret = SECRET


def _run(config, channel, target, clock, plan_only=False):
    orchestrator = mod.PhaseOrchestrator(config, channel, sleep=clock.sleep, clock=clock.monotonic)
    return orchestrator.run(target, build_phases(config), _context(config), plan_only=plan_only)


def test_fresh_host_applies_every_phase_once(config, channel, target, clock):
    _prime(channel)

    results = _run(config, channel, target, clock)

    by_phase = {r.phase: r.outcome for r in results}
    assert by_phase["platform-init"] == OUTCOME_SKIPPED
    assert by_phase["operator-account"] == OUTCOME_APPLIED
    assert by_phase["webhook-listener"] == OUTCOME_APPLIED
    applied = [c for c in channel.comments if c.startswith("phase:")]
    assert len(applied) == len(set(applied))
    assert all(r.detail == "applied" for r in results if r.outcome == OUTCOME_APPLIED)


def test_converged_host_is_not_touched(config, channel, target, clock):
    _prime(channel)
    _run(config, channel, target, clock)
    channel.calls.clear()

    results = _run(config, channel, target, clock)

    assert {r.outcome for r in results} == {OUTCOME_SKIPPED}
    assert channel.mutations == []
    assert all(c.startswith("probe:check:") for c in channel.comments)


def test_plan_only_reports_without_mutating(config, channel, target, clock):
    _prime(channel)

    results = _run(config, channel, target, clock, plan_only=True)

    planned = [r for r in results if r.outcome == OUTCOME_PLANNED]
    assert planned
    assert "operator-account-present" in planned[0].detail
    assert channel.mutations == []


def test_failed_phase_stops_the_run_and_keeps_earlier_results(config, channel, target, clock):
    _prime(channel)
    channel.failing_phases.add("gateway-config")

    with pytest.raises(PhaseApplyError) as exc:
        _run(config, channel, target, clock)

    assert exc.value.phase == "gateway-config"
    outcomes = [(r.phase, r.outcome) for r in exc.value.results]
    assert outcomes[-1] == ("gateway-config", OUTCOME_FAILED)
    assert ("operator-account", OUTCOME_APPLIED) in outcomes
    assert "phase:dashboard-deploy" not in channel.comments
    assert channel.host.state["operator-account-present"] == "yes"


def test_unverified_facts_are_noted(config, channel, target, clock):
    _prime(channel, token="f" * 64)

    results = _run(config, channel, target, clock)

    gateway = next(r for r in results if r.phase == "gateway-config")
    assert gateway.outcome == OUTCOME_APPLIED
    assert "unverified: gateway-token-digest" in gateway.detail


def test_wait_phase_polls_until_platform_ready(config, channel, target, clock):
    _prime(channel)
    channel.host.state["platform-initialized"] = "no"

    def _sleep(seconds):
        clock.sleep(seconds)
        if len(clock.sleeps) == 2:
            channel.host.state["platform-initialized"] = "yes"

    orchestrator = mod.PhaseOrchestrator(config, channel, sleep=_sleep, clock=clock.monotonic)
    results = orchestrator.run(target, build_phases(config)[:1], _context(config))

    assert results[0].outcome == OUTCOME_APPLIED
    assert results[0].detail == "ready after 10s"
    assert "phase:platform-init" not in channel.comments


def test_wait_phase_times_out(config, channel, target, clock):
    channel.host.state["platform-initialized"] = "no"
    started = clock.now

    with pytest.raises(PhaseApplyError) as exc:
        _run(config, channel, target, clock)

    assert exc.value.phase == "platform-init"
    assert clock.now - started == pytest.approx(config.platform_init_timeout)
