from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import redis

from maintenance.errors import LeaderElectionLostError
from maintenance.lease import LUA_RELEASE_IF_OWNER, LUA_RENEW_IF_OWNER
from maintenance.runnables import RunContext


logger = logging.getLogger(__name__)


class LeadershipGate(Protocol):
    def wait_for_leadership(self, ctx: RunContext) -> bool:
        """Block until this process leads (True) or ctx is cancelled first (False)."""


class AlwaysLeader:
    """Gate used when leader election is disabled: every replica acts as leader."""

    def wait_for_leadership(self, ctx: RunContext) -> bool:
        return not ctx.cancelled


def _k_leader_lock(election_id: str) -> str:
    return f"maintenance:leader:{election_id}"


def _k_leader_epoch(election_id: str) -> str:
    return f"maintenance:leader:{election_id}:epoch"


@dataclass(frozen=True)
class ElectionSettings:
    lease_duration_seconds: float = 15.0
    renew_deadline_seconds: float = 10.0
    retry_period_seconds: float = 2.0
    release_on_cancel: bool = True


@dataclass(frozen=True)
class LeaderRecord:
    holder_identity: Optional[str]
    leader_epoch: int


def get_leader(client: redis.Redis, election_id: str) -> LeaderRecord:
    holder = client.get(_k_leader_lock(election_id))
    raw_epoch = client.get(_k_leader_epoch(election_id))
    return LeaderRecord(holder_identity=holder, leader_epoch=int(raw_epoch) if raw_epoch else 0)


class RedisLeaderElector:
    """Competes for the leader record in Redis and keeps renewing it while leading.

    Registered as an always-start runnable; it is also the LeadershipGate the
    orchestrator waits on before starting leader-election runnables.
    """

    def __init__(
        self,
        *,
        client: redis.Redis,
        election_id: str,
        identity: str,
        settings: ElectionSettings,
        on_change: Optional[Callable[[bool], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._redis = client
        self._election_id = election_id
        self._identity = identity
        self._settings = settings
        self._on_change = on_change
        self._clock = clock

        self._leading = threading.Event()
        self._leader_epoch: Optional[int] = None

        self._renew_lock = self._redis.register_script(LUA_RENEW_IF_OWNER)
        self._release_lock = self._redis.register_script(LUA_RELEASE_IF_OWNER)

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def is_leader(self) -> bool:
        return self._leading.is_set()

    @property
    def leader_epoch(self) -> Optional[int]:
        return self._leader_epoch

    def wait_for_leadership(self, ctx: RunContext) -> bool:
        while not ctx.cancelled:
            if self._leading.wait(timeout=self._settings.retry_period_seconds):
                return True
        return False

    def try_acquire(self) -> bool:
        lock_key = _k_leader_lock(self._election_id)
        ttl_ms = int(self._settings.lease_duration_seconds * 1000)

        # A restarted process with the same identity may still own the record.
        current = self._redis.get(lock_key)
        if current == self._identity:
            return int(self._renew_lock(keys=[lock_key], args=[self._identity, str(ttl_ms)])) > 0
        if current:
            return False
        return bool(self._redis.set(lock_key, self._identity, nx=True, px=ttl_ms))

    def try_renew(self) -> bool:
        ttl_ms = int(self._settings.lease_duration_seconds * 1000)
        renewed = self._renew_lock(
            keys=[_k_leader_lock(self._election_id)],
            args=[self._identity, str(ttl_ms)],
        )
        return int(renewed) > 0

    def release(self) -> None:
        try:
            self._release_lock(keys=[_k_leader_lock(self._election_id)], args=[self._identity])
        finally:
            self._set_leading(False)
            self._leader_epoch = None

    def start(self, ctx: RunContext) -> None:
        logger.info("attempting to acquire leader lease election_id=%s identity=%s", self._election_id, self._identity)
        try:
            if not self._acquire(ctx):
                return
            self._leader_epoch = int(self._redis.incr(_k_leader_epoch(self._election_id)))
            logger.info(
                "successfully acquired lease election_id=%s identity=%s leader_epoch=%s",
                self._election_id,
                self._identity,
                self._leader_epoch,
            )
            self._set_leading(True)
            self._renew(ctx)
        finally:
            if self.is_leader and self._settings.release_on_cancel:
                logger.info("releasing leader lease election_id=%s", self._election_id)
                try:
                    self.release()
                except redis.RedisError as e:
                    # The record still expires after the lease duration.
                    logger.warning("error releasing leader lease error=%s: %s", type(e).__name__, e)

    def _acquire(self, ctx: RunContext) -> bool:
        last_error_log_at = 0.0
        while not ctx.cancelled:
            try:
                if self.try_acquire():
                    return True
            except redis.RedisError as e:
                now = self._clock()
                # Avoid spamming logs if Redis is temporarily unavailable.
                if now - last_error_log_at >= 5.0:
                    logger.warning("error acquiring leader lease error=%s: %s", type(e).__name__, e)
                    last_error_log_at = now
            ctx.wait(self._settings.retry_period_seconds)
        return False

    def _renew(self, ctx: RunContext) -> None:
        last_renewed_at = self._clock()
        while not ctx.wait(self._settings.retry_period_seconds):
            try:
                renewed = self.try_renew()
            except redis.RedisError as e:
                # Store unreachable: keep trying until the renew deadline passes.
                logger.warning("error renewing leader lease error=%s: %s", type(e).__name__, e)
                if self._clock() - last_renewed_at < self._settings.renew_deadline_seconds:
                    continue
                renewed = False
            if renewed:
                last_renewed_at = self._clock()
                continue
            # Record expired or taken over by another identity.
            self._set_leading(False)
            self._leader_epoch = None
            raise LeaderElectionLostError(f"leader election lost election_id={self._election_id}")

    def _set_leading(self, leading: bool) -> None:
        if leading == self._leading.is_set():
            return
        if leading:
            self._leading.set()
        else:
            self._leading.clear()
        if self._on_change is not None:
            self._on_change(leading)
