"""aws_clients.py — Cached boto3 clients (EC2, SSM) keyed by region."""
from __future__ import annotations

from typing import Any, Dict, Tuple

import boto3
from botocore.config import Config

from .errors import PrerequisiteError

__all__ = [
    "_get_client",
    "_get_ec2",
    "_get_ssm",
    "ensure_aws_credentials",
]

_clients: Dict[Tuple[str, str], Any] = {}
_RETRY_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})


def _get_client(service: str, region: str):
    key = (service, region)
    if key not in _clients:
        _clients[key] = boto3.client(service, region_name=region, config=_RETRY_CONFIG)
    return _clients[key]


def _get_ec2(region: str):
    return _get_client("ec2", region)


def _get_ssm(region: str):
    return _get_client("ssm", region)


def ensure_aws_credentials() -> None:
    """Fail pre-flight when no AWS credentials can be resolved locally."""
    if boto3.session.Session().get_credentials() is None:
        raise PrerequisiteError(
            "no AWS credentials found",
            remediation="export AWS_PROFILE (or AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY) and re-run",
        )
