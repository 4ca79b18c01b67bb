"""remote.py — Remote execution over SSM Run Command.

Each ``exec`` is one ``send_command`` carrying a whole script body, so a group
of related checks or mutations costs one round trip and one authorisation. The
body is shipped base64-encoded and run by bash, which keeps quoting out of the
SSM ``commands`` parameter.
"""
from __future__ import annotations

import base64
import math
import time
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from .aws_clients import _get_ssm
from .config import DeployConfig, logger
from .errors import ConnectivityError, PrerequisiteError
from .models import CommandResult, Target
from .polling import wait_until
from .serialization import emit_observability

__all__ = [
    "RemoteChannel",
    "_wrap_script",
]

_PENDING_STATUSES = {"pending", "inprogress", "delayed", "cancelling"}
_TRANSPORT_FAILURE_STATUSES = {
    "deliverytimedout",
    "undeliverable",
    "terminated",
    "invalidplatform",
    "accessdenied",
}
_INVOCATION_POLL_SECONDS = 2.0
_OUTPUT_LIMIT = 24000


def _wrap_script(body: str) -> List[str]:
    """Wrap a bash script body as AWS-RunShellScript command lines."""
    encoded = base64.b64encode(body.encode("utf-8")).decode("ascii")
    return [
        'TUSK_SCRIPT="$(mktemp /tmp/tusk-script.XXXXXX)"',
        f"echo '{encoded}' | base64 -d > \"$TUSK_SCRIPT\"",
        'bash "$TUSK_SCRIPT"',
        "TUSK_RC=$?",
        'rm -f "$TUSK_SCRIPT"',
        "exit $TUSK_RC",
    ]


def _status_key(status: str) -> str:
    return str(status or "").replace(" ", "").replace("_", "").lower()


class RemoteChannel:
    """Runs script bodies on the target and reports exit status + output."""

    def __init__(
        self,
        config: DeployConfig,
        ssm: Any = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._ssm = ssm
        self._sleep = sleep
        self._clock = clock

    @property
    def ssm(self):
        if self._ssm is None:
            self._ssm = _get_ssm(self._config.region)
        return self._ssm

    def exec(
        self,
        target: Target,
        body: str,
        *,
        comment: str = "",
        timeout: Optional[int] = None,
        wait: Optional[float] = None,
    ) -> CommandResult:
        """Run ``body`` and wait for its result.

        ``wait`` caps how long the caller is prepared to block. It bounds the
        invocation polling and the remote execution timeout, so a hung command
        surfaces as a ``ConnectivityError`` within that budget.
        """
        timeout_seconds = int(timeout or self._config.command_timeout)
        budget = float(timeout_seconds + 60)
        if wait is not None:
            budget = max(1.0, float(wait))
            timeout_seconds = min(timeout_seconds, int(math.ceil(budget)))
        started = time.perf_counter()
        try:
            resp = self.ssm.send_command(
                DocumentName=self._config.ssm_document,
                InstanceIds=[target.instance_id],
                Parameters={
                    "commands": _wrap_script(body),
                    "executionTimeout": [str(timeout_seconds)],
                },
                # SSM rejects delivery timeouts under 30s.
                TimeoutSeconds=max(30, timeout_seconds),
                Comment=(comment or "tusk-deploy")[:100],
            )
        except NoCredentialsError as exc:
            raise PrerequisiteError("no AWS credentials found for SSM") from exc
        except (BotoCoreError, ClientError) as exc:
            error_code = "ssm_send_command_failed"
            if isinstance(exc, ClientError):
                error_code = str(exc.response.get("Error", {}).get("Code") or error_code)
            emit_observability(
                component="remote",
                event="send_command",
                target=target.instance_id,
                tool_name="ssm.send_command",
                latency_ms=int((time.perf_counter() - started) * 1000),
                error_code=error_code,
                extra={"comment": comment},
            )
            raise ConnectivityError(f"SSM send_command to {target.instance_id} failed: {exc}") from exc

        command_id = str((resp.get("Command") or {}).get("CommandId") or "")
        if not command_id:
            raise ConnectivityError(f"SSM send_command to {target.instance_id} returned no CommandId")

        invocation = self._await_invocation(target, command_id, budget)
        status = str(invocation.get("Status") or "")
        status_key = _status_key(status)
        emit_observability(
            component="remote",
            event="command_complete",
            target=target.instance_id,
            tool_name="ssm.get_command_invocation",
            latency_ms=int((time.perf_counter() - started) * 1000),
            error_code="" if status_key == "success" else status_key,
            extra={"comment": comment, "command_id": command_id},
        )
        if status_key in _TRANSPORT_FAILURE_STATUSES:
            raise ConnectivityError(
                f"command {command_id} on {target.instance_id} was not delivered ({status})"
            )

        response_code = int(invocation.get("ResponseCode", -1))
        if status_key == "success":
            exit_code = 0 if response_code < 0 else response_code
        else:
            exit_code = response_code if response_code > 0 else 1
        return CommandResult(
            exit_code=exit_code,
            stdout=(invocation.get("StandardOutputContent") or "")[:_OUTPUT_LIMIT],
            stderr=(invocation.get("StandardErrorContent") or "")[:_OUTPUT_LIMIT],
            status=status,
        )

    def _await_invocation(self, target: Target, command_id: str, budget: float) -> Dict[str, Any]:
        latest: Dict[str, Any] = {}

        def _terminal() -> bool:
            try:
                inv = self.ssm.get_command_invocation(CommandId=command_id, InstanceId=target.instance_id)
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                # The invocation record is eventually consistent right after send.
                if code == "InvocationDoesNotExist":
                    return False
                raise ConnectivityError(f"cannot read command {command_id}: {exc}") from exc
            latest.clear()
            latest.update(inv)
            return _status_key(inv.get("Status") or "") not in _PENDING_STATUSES

        result = wait_until(
            _terminal,
            interval=_INVOCATION_POLL_SECONDS,
            timeout=budget,
            label=f"command {command_id}",
            sleep=self._sleep,
            clock=self._clock,
        )
        if not result.ok:
            raise ConnectivityError(
                f"command {command_id} on {target.instance_id} did not finish within {int(budget)}s"
            )
        return latest

    def ping(self, target: Target) -> bool:
        try:
            info = self.ssm.describe_instance_information(
                Filters=[{"Key": "InstanceIds", "Values": [target.instance_id]}],
                MaxResults=5,
            )
        except NoCredentialsError as exc:
            raise PrerequisiteError("no AWS credentials found for SSM") from exc
        except (BotoCoreError, ClientError) as exc:
            logger.debug("[WAIT] describe_instance_information failed: %s", exc)
            return False
        details = info.get("InstanceInformationList") or []
        return bool(details) and str(details[0].get("PingStatus") or "").lower() == "online"

    def probe_connectivity(self, target: Target, timeout: float) -> bool:
        result = wait_until(
            lambda: self.ping(target),
            interval=self._config.poll_interval,
            timeout=timeout,
            label=f"SSM agent on {target.instance_id}",
            sleep=self._sleep,
            clock=self._clock,
        )
        return result.ok
