import os

from tusk_deploy import reconciler as mod
from tusk_deploy.credentials import CredentialStore
from tusk_deploy.facts import build_registry
from tusk_deploy.models import (
    PROVENANCE_GENERATED,
    STATUS_FAIL,
    STATUS_FIXED,
    STATUS_PASS,
    STATUS_WARN,
    CredentialRecord,
)

TOKEN = "e" * 64


def _converged(config, channel):
    host = channel.host
    host.gateway_token = TOKEN
    host.webhook_secret = "d" * 64
    registry = build_registry(config, {"GATEWAY_TOKEN": CredentialRecord("GATEWAY_TOKEN", TOKEN, PROVENANCE_GENERATED)})
    host.converge(registry.names())
    return registry


def _store(config, target, mode=0o600):
    store = CredentialStore(config.credentials_file)
    store.persist(target, {"GATEWAY_TOKEN": CredentialRecord("GATEWAY_TOKEN", TOKEN, PROVENANCE_GENERATED)})
    os.chmod(config.credentials_file, mode)
    return store


def test_clean_host_is_all_pass_in_one_probe(config, channel, target):
    registry = _converged(config, channel)
    reconciler = mod.Reconciler(config, channel, registry, _store(config, target))

    report = reconciler.audit(target)

    assert report.counts[STATUS_FAIL] == 0
    assert report.counts[STATUS_WARN] == 0
    assert report.exit_code == 0
    assert channel.comments == ["probe:audit"]
    assert report.verdicts[0].fact == "local-credentials-present"


def test_drift_is_reported_without_fix(config, channel, target):
    registry = _converged(config, channel)
    channel.host.state["firewall-active"] = "inactive"
    channel.host.state["sshd-hardened"] = "no"
    reconciler = mod.Reconciler(config, channel, registry, _store(config, target))

    report = reconciler.reconcile(target)

    assert report.verdict_for("firewall-active").status == STATUS_FAIL
    assert report.verdict_for("sshd-hardened").status == STATUS_WARN
    assert "expected 'active'" in report.verdict_for("firewall-active").detail
    assert report.exit_code == 1
    assert channel.mutations == []


def test_shared_cause_is_repaired_once_and_converges(config, channel, target):
    registry = _converged(config, channel)
    channel.host.state["gateway-service-active"] = "inactive"
    channel.host.state["gateway-http"] = "fail"
    reconciler = mod.Reconciler(config, channel, registry, _store(config, target))

    report = reconciler.reconcile(target, auto_fix=True)

    service = report.verdict_for("gateway-service-active")
    port = report.verdict_for("gateway-http")
    assert service.status == STATUS_FIXED and service.remediation_applied
    assert port.status == STATUS_PASS
    assert port.detail == "resolved by repair of gateway-service-active"
    assert channel.mutations == ["remediate:gateway-service-active"]

    again = reconciler.reconcile(target)
    assert again.counts[STATUS_FAIL] == 0
    assert again.counts[STATUS_FIXED] == 0


def test_failed_repair_keeps_severity(config, channel, target):
    registry = _converged(config, channel)
    channel.host.state["intrusion-guard-active"] = "inactive"
    channel.unfixable.add("intrusion-guard-active")
    reconciler = mod.Reconciler(config, channel, registry, _store(config, target))

    report = reconciler.reconcile(target, auto_fix=True)

    verdict = report.verdict_for("intrusion-guard-active")
    assert verdict.status == STATUS_WARN
    assert verdict.remediation_applied
    assert "repair exited 1" in verdict.detail


def test_fact_without_remedy_says_so(config, channel, target):
    registry = _converged(config, channel)
    channel.host.state["gateway-unit-present"] = "no"
    reconciler = mod.Reconciler(config, channel, registry, _store(config, target))

    report = reconciler.reconcile(target, auto_fix=True)

    verdict = report.verdict_for("gateway-unit-present")
    assert verdict.status == STATUS_FAIL
    assert verdict.detail.endswith("no automatic repair")


def test_local_checks_report_and_fix_file_mode(config, channel, target):
    registry = _converged(config, channel)
    reconciler = mod.Reconciler(config, channel, registry, _store(config, target, mode=0o644))

    unfixed = {v.fact: v.status for v in reconciler.local_checks()}
    fixed = {v.fact: v.status for v in reconciler.local_checks(auto_fix=True)}

    assert unfixed == {"local-credentials-present": STATUS_PASS, "local-credentials-mode": STATUS_FAIL}
    assert fixed["local-credentials-mode"] == STATUS_FIXED


def test_missing_local_credentials_fail(config, channel):
    registry = _converged(config, channel)
    reconciler = mod.Reconciler(config, channel, registry, CredentialStore(config.credentials_file))

    verdicts = reconciler.local_checks(auto_fix=True)

    assert [(v.fact, v.status) for v in verdicts] == [("local-credentials-present", STATUS_FAIL)]
