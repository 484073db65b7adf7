from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import redis

from maintenance.errors import LeaseAlreadyHeldError, LeaseManagerNotReadyError
from maintenance.runnables import RunContext


logger = logging.getLogger(__name__)


def _k_lease(resource: str) -> str:
    return f"maintenance:lease:{resource}"


def lease_resource(kind: str, name: str, namespace: str = "") -> str:
    return f"{kind}/{namespace}/{name}" if namespace else f"{kind}/{name}"


# Owner-checked scripts, shared with the leader record.
LUA_RENEW_IF_OWNER = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('PEXPIRE', KEYS[1], ARGV[2])
else
  return 0
end
"""


LUA_RELEASE_IF_OWNER = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
else
  return 0
end
"""


@dataclass(frozen=True)
class LeaseStatus:
    resource: str
    holder_identity: Optional[str]
    ttl_ms: int


class LeaseManager:
    """Per-resource exclusive leases held under one holder identity."""

    def __init__(self, client: redis.Redis, holder_identity: str):
        self._redis = client
        self._holder_identity = holder_identity
        self._renew = self._redis.register_script(LUA_RENEW_IF_OWNER)
        self._release = self._redis.register_script(LUA_RELEASE_IF_OWNER)

    @property
    def holder_identity(self) -> str:
        return self._holder_identity

    def request_lease(self, resource: str, duration_seconds: float) -> None:
        """Take the lease on resource, or extend it if this holder already owns it."""

        key = _k_lease(resource)
        ttl_ms = str(int(duration_seconds * 1000))
        if self._redis.set(key, self._holder_identity, nx=True, px=int(ttl_ms)):
            logger.info("lease acquired resource=%s holder=%s", resource, self._holder_identity)
            return
        if int(self._renew(keys=[key], args=[self._holder_identity, ttl_ms])) > 0:
            logger.debug("lease renewed resource=%s", resource)
            return
        raise LeaseAlreadyHeldError(resource, self._redis.get(key) or "")

    def invalidate_lease(self, resource: str) -> bool:
        """Release the lease if this holder owns it. Returns False when it was not ours."""

        released = int(self._release(keys=[_k_lease(resource)], args=[self._holder_identity])) > 0
        if released:
            logger.info("lease released resource=%s holder=%s", resource, self._holder_identity)
        return released

    def get_lease(self, resource: str) -> LeaseStatus:
        key = _k_lease(resource)
        holder = self._redis.get(key)
        ttl = self._redis.pttl(key) if holder else 0
        return LeaseStatus(resource=resource, holder_identity=holder, ttl_ms=max(int(ttl or 0), 0))


def new_lease_manager(client: redis.Redis, identity: str) -> LeaseManager:
    if not identity:
        raise ValueError("lease holder identity must not be empty")
    client.ping()
    return LeaseManager(client, identity)


class LeaseManagerInitializer:
    """Runnable that builds the LeaseManager once leadership is held and publishes it.

    Readers must not assume the manager exists: get() raises
    LeaseManagerNotReadyError until start() has completed.
    """

    def __init__(
        self,
        *,
        client: redis.Redis,
        identity: str,
        factory: Callable[[redis.Redis, str], LeaseManager] = new_lease_manager,
        on_ready: Optional[Callable[[], None]] = None,
    ):
        self._client = client
        self._identity = identity
        self._factory = factory
        self._on_ready = on_ready

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._manager: Optional[LeaseManager] = None

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def get(self) -> LeaseManager:
        if not self._ready.is_set():
            raise LeaseManagerNotReadyError("lease manager is not initialized yet")
        return self._manager  # type: ignore[return-value]

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    def start(self, ctx: RunContext) -> None:
        manager = self._factory(self._client, self._identity)
        with self._lock:
            if self._manager is not None:
                raise RuntimeError("lease manager was already initialized")
            self._manager = manager
            self._ready.set()
        logger.info("lease manager initialized holder=%s", self._identity)
        if self._on_ready is not None:
            self._on_ready()
