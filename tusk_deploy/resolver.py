"""resolver.py — Find, adopt or create the one EC2 instance behind an identity.

An instance belongs to an identity when it carries ``Name=<identity>`` and
``tusk:managed-by=<managed_by>`` and has not been terminated. Adoption never
reshapes the instance; creation tags at launch so an interrupted run's instance
is found (and adopted) on the next run.
"""
from __future__ import annotations

import dataclasses
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from .aws_clients import _get_ec2
from .config import DeployConfig, logger
from .errors import ConnectivityError, PrerequisiteError, ProvisioningError
from .models import (
    LIFECYCLE_CONVERGED,
    LIFECYCLE_CREATING,
    LIFECYCLE_REACHABLE,
    Target,
)
from .polling import wait_until
from .serialization import _now_z

__all__ = [
    "MANAGED_BY_TAG",
    "TargetResolver",
]

MANAGED_BY_TAG = "tusk:managed-by"
_LIVE_STATES = ["pending", "running", "stopping", "stopped"]
_AUTH_ERROR_CODES = {"AuthFailure", "UnauthorizedOperation", "InvalidClientTokenId", "ExpiredToken"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _state(instance: Dict[str, Any]) -> str:
    return str((instance.get("State") or {}).get("Name") or "unknown").lower()


class TargetResolver:
    def __init__(
        self,
        config: DeployConfig,
        ec2: Any = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._ec2 = ec2
        self._sleep = sleep
        self._clock = clock

    @property
    def ec2(self):
        if self._ec2 is None:
            self._ec2 = _get_ec2(self._config.region)
        return self._ec2

    def _translate(self, exc: Exception, action: str) -> Exception:
        if isinstance(exc, NoCredentialsError):
            return PrerequisiteError("no AWS credentials found for EC2")
        if isinstance(exc, ClientError) and _error_code(exc) in _AUTH_ERROR_CODES:
            return PrerequisiteError(f"AWS rejected {action}: {_error_code(exc)}")
        return ProvisioningError(f"{action} failed: {exc}")

    def _to_target(self, identity: str, instance: Dict[str, Any], lifecycle: str, existed: bool) -> Target:
        return Target(
            identity=identity,
            instance_id=str(instance.get("InstanceId") or ""),
            public_ip=str(instance.get("PublicIpAddress") or ""),
            private_ip=str(instance.get("PrivateIpAddress") or ""),
            lifecycle=lifecycle,
            existed=existed,
        )

    def _describe(self, identity: str) -> List[Dict[str, Any]]:
        filters = [
            {"Name": "tag:Name", "Values": [identity]},
            {"Name": f"tag:{MANAGED_BY_TAG}", "Values": [self._config.managed_by]},
            {"Name": "instance-state-name", "Values": _LIVE_STATES},
        ]
        found: List[Dict[str, Any]] = []
        try:
            paginator = self.ec2.get_paginator("describe_instances")
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations") or []:
                    found.extend(reservation.get("Instances") or [])
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, "describe_instances") from exc
        return found

    def _find_instance(self, identity: str) -> Optional[Dict[str, Any]]:
        found = self._describe(identity)
        if len(found) > 1:
            ids = ", ".join(str(i.get("InstanceId")) for i in found)
            raise ProvisioningError(
                f"identity '{identity}' matches {len(found)} instances ({ids})",
                remediation="terminate the extras (or retag them), then re-run",
            )
        return found[0] if found else None

    def find(self, identity: str) -> Optional[Target]:
        instance = self._find_instance(identity)
        if instance is None:
            return None
        return self._to_target(identity, instance, LIFECYCLE_REACHABLE, existed=True)

    def resolve(self, identity: str) -> Target:
        instance = self._find_instance(identity)
        if instance is not None:
            instance_id = str(instance.get("InstanceId") or "")
            logger.info("[INFO] Adopting existing instance %s (%s)", instance_id, _state(instance))
            self._warn_on_shape_drift(instance)
            if _state(instance) == "running":
                return self._to_target(identity, instance, LIFECYCLE_REACHABLE, existed=True)
            instance = self._start(instance_id, _state(instance))
            return self._to_target(identity, instance, LIFECYCLE_CREATING, existed=True)

        instance_id = self._launch(identity)
        instance = self._wait_running(instance_id)
        return self._to_target(identity, instance, LIFECYCLE_CREATING, existed=False)

    def shape_drift(self, identity: str) -> List[str]:
        """Differences between the live instance and the requested shape (never acted on)."""
        instance = self._find_instance(identity)
        return self._shape_drift(instance) if instance is not None else []

    def _shape_drift(self, instance: Dict[str, Any]) -> List[str]:
        drift: List[str] = []
        actual_type = str(instance.get("InstanceType") or "")
        if actual_type and actual_type != self._config.instance_type:
            drift.append(f"instance type is {actual_type}, config requests {self._config.instance_type}")
        image = self._config.image_id
        actual_image = str(instance.get("ImageId") or "")
        if actual_image and not image.startswith("resolve:ssm:") and actual_image != image:
            drift.append(f"image is {actual_image}, config requests {image}")
        return drift

    def _warn_on_shape_drift(self, instance: Dict[str, Any]) -> None:
        for item in self._shape_drift(instance):
            logger.warning("[WARNING] Adopted instance %s; not reshaping", item)

    def _launch(self, identity: str) -> str:
        c = self._config
        tags = [
            {"Key": "Name", "Value": identity},
            {"Key": MANAGED_BY_TAG, "Value": c.managed_by},
            {"Key": "tusk:created-at", "Value": _now_z()},
        ]
        params: Dict[str, Any] = {
            "ImageId": c.image_id,
            "InstanceType": c.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            # Makes SDK-level retries of this one call idempotent.
            "ClientToken": f"{identity[:40]}-{uuid.uuid4().hex[:16]}",
            "IamInstanceProfile": {"Name": c.instance_profile},
            "MetadataOptions": {"HttpTokens": "required", "HttpEndpoint": "enabled"},
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": tags},
                {"ResourceType": "volume", "Tags": tags},
            ],
        }
        if c.subnet_id:
            params["SubnetId"] = c.subnet_id
        if c.security_group_ids:
            params["SecurityGroupIds"] = list(c.security_group_ids)
        if c.key_name:
            params["KeyName"] = c.key_name
        if c.user_data_file is not None:
            try:
                params["UserData"] = c.user_data_file.read_text(encoding="utf-8")
            except OSError as exc:
                raise PrerequisiteError(f"cannot read user data file {c.user_data_file}: {exc}") from exc

        logger.info("[START] Launching %s instance for '%s' in %s", c.instance_type, identity, c.region)
        try:
            response = self.ec2.run_instances(**params)
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, "run_instances") from exc
        instances = response.get("Instances") or []
        if not instances or not instances[0].get("InstanceId"):
            raise ProvisioningError("run_instances returned no instance")
        instance_id = str(instances[0]["InstanceId"])
        logger.info("[INFO] Launched %s", instance_id)
        return instance_id

    def _start(self, instance_id: str, state: str) -> Dict[str, Any]:
        if state == "stopping":
            self._wait_state(instance_id, {"stopped"}, "stopped")
        logger.info("[INFO] Starting stopped instance %s", instance_id)
        try:
            self.ec2.start_instances(InstanceIds=[instance_id])
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, "start_instances") from exc
        return self._wait_running(instance_id)

    def _wait_running(self, instance_id: str) -> Dict[str, Any]:
        return self._wait_state(instance_id, {"running"}, "running")

    def _wait_state(self, instance_id: str, wanted: set, label: str) -> Dict[str, Any]:
        latest: Dict[str, Any] = {}

        def _reached() -> bool:
            try:
                response = self.ec2.describe_instances(InstanceIds=[instance_id])
            except ClientError as exc:
                # A fresh instance id can briefly be unknown to describe calls.
                if _error_code(exc) == "InvalidInstanceID.NotFound":
                    return False
                raise self._translate(exc, "describe_instances") from exc
            reservations = response.get("Reservations") or []
            if not reservations or not (reservations[0].get("Instances") or []):
                return False
            instance = reservations[0]["Instances"][0]
            latest.clear()
            latest.update(instance)
            state = _state(instance)
            if state in wanted:
                return True
            if state in {"terminated", "shutting-down"} and "terminated" not in wanted:
                raise ProvisioningError(f"instance {instance_id} entered '{state}' while waiting for {label}")
            return False

        waited = wait_until(
            _reached,
            interval=self._config.poll_interval,
            timeout=self._config.launch_timeout,
            label=f"{instance_id} {label}",
            sleep=self._sleep,
            clock=self._clock,
        )
        if not waited.ok:
            raise ProvisioningError(
                f"instance {instance_id} not {label} after {self._config.launch_timeout}s "
                f"(last state: {_state(latest) if latest else 'unknown'})"
            )
        return latest

    def wait_reachable(self, target: Target, channel, timeout: Optional[float] = None) -> Target:
        budget = float(timeout if timeout is not None else self._config.connect_timeout)
        logger.info("[INFO] Waiting up to %ds for the SSM agent on %s", int(budget), target.instance_id)
        if not channel.probe_connectivity(target, budget):
            raise ConnectivityError(f"{target.instance_id} not reachable over SSM within {int(budget)}s")
        return dataclasses.replace(target, lifecycle=LIFECYCLE_REACHABLE)

    def mark_converged(self, target: Target) -> Target:
        return dataclasses.replace(target, lifecycle=LIFECYCLE_CONVERGED)

    def destroy(self, identity: str, wait: bool = True) -> Optional[str]:
        instance = self._find_instance(identity)
        if instance is None:
            logger.info("[SKIP] No instance found for '%s'", identity)
            return None
        instance_id = str(instance.get("InstanceId") or "")
        logger.info("[START] Terminating %s", instance_id)
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            if _error_code(exc) == "InvalidInstanceID.NotFound":
                return instance_id
            raise self._translate(exc, "terminate_instances") from exc
        except BotoCoreError as exc:
            raise self._translate(exc, "terminate_instances") from exc
        if wait:
            try:
                self._wait_state(instance_id, {"terminated"}, "terminated")
            except ProvisioningError as exc:
                logger.warning("[WARNING] %s", exc.message)
        logger.info("[END] Terminated %s", instance_id)
        return instance_id
