from __future__ import annotations

import socket
import uuid
from dataclasses import dataclass
from typing import Any

from django.conf import settings


LEADER_ELECTION_ID = "135b1886.medik8s.io"


def get_setting(*, key: str, default: Any = None) -> Any:
    return getattr(settings, key, default)


def get_str(*, key: str, default: str = "") -> str:
    v = get_setting(key=key, default=default)
    return str(v) if v is not None else str(default)


def get_int(*, key: str, default: int = 0) -> int:
    v = get_setting(key=key, default=default)
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def get_float(*, key: str, default: float = 0.0) -> float:
    v = get_setting(key=key, default=default)
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def get_bool(*, key: str, default: bool = False) -> bool:
    v = get_setting(key=key, default=default)
    if isinstance(v, bool):
        return bool(v)
    if isinstance(v, (int, float)):
        return bool(int(v))
    if isinstance(v, str):
        return v.strip() not in {"", "0", "false", "False", "no", "No"}
    return bool(v) if v is not None else bool(default)


def get_list(*, key: str, default: list[str] | None = None) -> list[str]:
    v = get_setting(key=key, default=default)
    if v is None:
        return list(default or [])
    if isinstance(v, str):
        return [x.strip() for x in v.split(",") if x.strip()]
    return [str(x) for x in v]


def default_identity() -> str:
    return f"{socket.gethostname()}_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class ManagerOptions:
    metrics_bind_address: str
    health_probe_bind_address: str
    webhook_port: int
    leader_election: bool
    leader_election_id: str
    lease_duration_seconds: float
    renew_deadline_seconds: float
    retry_period_seconds: float
    enable_http2: bool
    identity: str
    redis_url: str
    graceful_shutdown_timeout_seconds: float


def get_manager_options(**overrides: Any) -> ManagerOptions:
    """Build ManagerOptions from settings; non-None keyword overrides (CLI flags) win."""

    values: dict[str, Any] = dict(
        metrics_bind_address=get_str(key="MAINTENANCE_METRICS_BIND_ADDRESS", default=":8080"),
        health_probe_bind_address=get_str(key="MAINTENANCE_HEALTH_PROBE_BIND_ADDRESS", default=":8081"),
        webhook_port=get_int(key="MAINTENANCE_WEBHOOK_PORT", default=9443),
        leader_election=get_bool(key="MAINTENANCE_LEADER_ELECT", default=False),
        leader_election_id=LEADER_ELECTION_ID,
        lease_duration_seconds=get_float(key="MAINTENANCE_LEASE_DURATION_SECONDS", default=15.0),
        renew_deadline_seconds=get_float(key="MAINTENANCE_RENEW_DEADLINE_SECONDS", default=10.0),
        retry_period_seconds=get_float(key="MAINTENANCE_RETRY_PERIOD_SECONDS", default=2.0),
        enable_http2=get_bool(key="MAINTENANCE_ENABLE_HTTP2", default=False),
        identity=get_str(key="MAINTENANCE_IDENTITY"),
        redis_url=get_str(key="MAINTENANCE_REDIS_URL", default="redis://localhost:6379/0"),
        graceful_shutdown_timeout_seconds=get_float(
            key="MAINTENANCE_GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS", default=30.0
        ),
    )
    unknown = set(overrides) - set(values)
    if unknown:
        raise TypeError(f"unknown manager options: {', '.join(sorted(unknown))}")
    values.update({k: v for k, v in overrides.items() if v is not None})

    if not values["identity"]:
        values["identity"] = default_identity()
    if values["renew_deadline_seconds"] >= values["lease_duration_seconds"]:
        raise ValueError("renew deadline must be shorter than the lease duration")
    if values["retry_period_seconds"] <= 0:
        raise ValueError("retry period must be positive")
    return ManagerOptions(**values)
