"""cli.py — ``tusk-deploy`` command line.

Exit codes: 0 ok, 1 failure (including unresolved audit failures), 2 usage or
local prerequisite problems.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .aws_clients import ensure_aws_credentials
from .config import DeployConfig, load_config, logger
from .engine import DeployEngine, DeployOutcome
from .errors import RERUN_HINT, PrerequisiteError, ReconciliationFailure, TuskDeployError
from .models import AuditReport
from .remote import RemoteChannel
from .serialization import mask_secret

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tusk-deploy",
        description="Provision, audit and repair the remote gateway host",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="config.env to load (default ~/.opentusk/config.env)")
    parser.add_argument("--identity", default=None, help="instance identity (Name tag)")
    parser.add_argument("--region", default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="create or adopt the instance and converge it")
    deploy.add_argument("--dry-run", action="store_true", help="report what would change; mutate nothing")
    deploy.add_argument("--rotate-credential", action="store_true", help="mint new secrets (keeps one previous)")
    deploy.add_argument("--skip-smoke", action="store_true")
    deploy.add_argument("--smoke-timeout", type=int, default=None)

    audit = sub.add_parser("audit", help="check the instance for drift")
    audit.add_argument("--fix", action="store_true", help="apply repairs for drifted checks")
    audit.add_argument("--json", action="store_true", help="print the report as JSON")

    destroy = sub.add_parser("destroy", help="terminate the instance")
    destroy.add_argument("--force", action="store_true", help="skip the confirmation prompt")

    upgrade = sub.add_parser("upgrade", help="pull and rebuild the dashboard on the instance")
    upgrade.add_argument("--rollback", action="store_true", help="return to the commit live before the last update")

    sub.add_parser("status", help="show the instance and SSM connectivity")
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(stream=sys.stderr, format="%(message)s")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _print_summary(config: DeployConfig, outcome: DeployOutcome) -> None:
    target = outcome.target
    print("")
    for result in outcome.results:
        print(f"  {result.phase:<18} {result.outcome:<26} {result.detail}")
    print("")
    if target is None:
        print(f"  Identity:     {config.identity} (no instance yet)")
        return
    print(f"  Instance:     {target.instance_id} ({'adopted' if target.existed else 'created'})")
    if target.public_ip:
        print(f"  Public IP:    {target.public_ip}")
    print(f"  Shell:        aws ssm start-session --target {target.instance_id} --region {config.region}")
    print(
        f"  Gateway:      aws ssm start-session --target {target.instance_id} "
        f"--document-name AWS-StartPortForwardingSession "
        f"--parameters portNumber={config.gateway_port},localPortNumber={config.gateway_port}"
    )
    for name, record in outcome.credentials.items():
        print(f"  {name + ':':<14}{mask_secret(record.value)} ({record.provenance})")
    if not outcome.plan_only:
        print(f"  Credentials:  {config.credentials_file}")
    print("")


def _print_report(report: AuditReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
        return
    for verdict in report.verdicts:
        suffix = f"  {verdict.detail}" if verdict.detail else ""
        print(f"  [{verdict.status.upper():<5}] {verdict.fact}{suffix}")
    counts = report.counts
    print("")
    print(
        f"  PASS: {counts['pass']}  WARN: {counts['warn']}  FAIL: {counts['fail']}  FIXED: {counts['fixed']}"
    )


def _cmd_deploy(args: argparse.Namespace, engine: DeployEngine) -> int:
    outcome = engine.deploy(
        rotate=args.rotate_credential,
        plan_only=args.dry_run,
        smoke=not args.skip_smoke,
        smoke_timeout=args.smoke_timeout,
    )
    _print_summary(engine.config, outcome)
    if not outcome.gateway_active:
        print(
            f"[ERROR] {engine.config.gateway_service} is not active; run 'tusk-deploy audit' for details",
            file=sys.stderr,
        )
        return EXIT_FAILURE
    for name in outcome.warming_up:
        print(f"[WARNING] {name} not responding yet (may still be starting)", file=sys.stderr)
    return EXIT_OK


def _cmd_audit(args: argparse.Namespace, engine: DeployEngine) -> int:
    report = engine.audit(auto_fix=args.fix)
    _print_report(report, args.json)
    if report.failing:
        failure = ReconciliationFailure(report)
        print(f"[ERROR] {failure.message}", file=sys.stderr)
        print(f"[HINT] {failure.remediation}", file=sys.stderr)
    return report.exit_code


def _cmd_destroy(args: argparse.Namespace, engine: DeployEngine) -> int:
    identity = engine.config.identity
    target = engine.resolver.find(identity)
    if target is None:
        print(f"[SKIP] no instance found for '{identity}'")
        return EXIT_OK
    if not args.force:
        try:
            answer = input(f"Terminate {target.instance_id} ({identity})? This cannot be undone. [y/N] ")
        except EOFError:
            answer = ""
        if answer.strip().lower() not in {"y", "yes"}:
            print("Aborted.")
            return EXIT_FAILURE
    engine.resolver.destroy(identity)
    print(f"[SUCCESS] terminated {target.instance_id}")
    if engine.store.exists():
        print(f"  Local credentials kept at {engine.store.path}")
    return EXIT_OK


def _cmd_upgrade(args: argparse.Namespace, engine: DeployEngine) -> int:
    outcome = engine.upgrade(rollback=args.rollback)
    if not outcome.changed:
        print(f"[SKIP] dashboard already at {outcome.current[:12]}")
    elif outcome.rollback:
        print(f"[SUCCESS] dashboard rolled back {outcome.previous[:12]} -> {outcome.current[:12]}")
    else:
        print(f"[SUCCESS] dashboard upgraded {outcome.previous[:12]} -> {outcome.current[:12]}")
        print("  Undo with: tusk-deploy upgrade --rollback")
    return EXIT_OK


def _cmd_status(_args: argparse.Namespace, engine: DeployEngine) -> int:
    print(json.dumps(engine.status(), indent=2, sort_keys=True))
    return EXIT_OK


_COMMANDS = {
    "deploy": _cmd_deploy,
    "audit": _cmd_audit,
    "destroy": _cmd_destroy,
    "status": _cmd_status,
    "upgrade": _cmd_upgrade,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    try:
        config = load_config(args.config, overrides={"identity": args.identity, "region": args.region})
        ensure_aws_credentials()
        engine = DeployEngine(config, RemoteChannel(config))
        return _COMMANDS[args.command](args, engine)
    except PrerequisiteError as exc:
        print(f"[ERROR] {exc.message}", file=sys.stderr)
        print(f"[HINT] {exc.remediation}", file=sys.stderr)
        return EXIT_USAGE
    except TuskDeployError as exc:
        print(f"[ERROR] {exc.message}", file=sys.stderr)
        print(f"[HINT] {exc.remediation}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("[ERROR] interrupted", file=sys.stderr)
        print(f"[HINT] {RERUN_HINT}", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
