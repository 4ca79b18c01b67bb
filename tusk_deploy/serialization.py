"""serialization.py — Timestamp helpers and structured observability lines."""
from __future__ import annotations

import datetime as dt
import json
import time
from typing import Any, Dict, Optional

from .config import logger

__all__ = [
    "_now_z",
    "_unix_now",
    "emit_observability",
    "mask_secret",
]


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _unix_now() -> int:
    return int(time.time())


def mask_secret(value: str, keep: int = 8) -> str:
    if not value:
        return "<unset>"
    return f"{value[:keep]}..."


def emit_observability(
    *,
    component: str,
    event: str,
    target: Optional[str] = None,
    tool_name: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "target": str(target or ""),
        "tool_name": str(tool_name or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.debug("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
