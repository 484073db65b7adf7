from __future__ import annotations

import heapq
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import urllib3
from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from maintenance.conf import get_int
from maintenance.errors import LeaseAlreadyHeldError, LeaseManagerNotReadyError
from maintenance.lease import LeaseManager, LeaseManagerInitializer, lease_resource
from maintenance.runnables import RunContext


logger = logging.getLogger(__name__)


GROUP = "nodemaintenance.medik8s.io"
VERSION = "v1beta1"
PLURAL = "nodemaintenances"

CONTROLLER_NAME = "nodemaintenance"


@dataclass(frozen=True)
class Request:
    name: str


Handler = Callable[[dict[str, Any], LeaseManager], None]


class WorkQueue:
    """Deduplicating queue of requests, each due at a point in time."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, Request]] = []
        self._due: dict[Request, float] = {}
        self._seq = 0

    def add(self, request: Request, delay: float = 0.0) -> None:
        due = self._clock() + max(0.0, delay)
        with self._cond:
            # Keep the earliest due time when a request is already queued.
            if request in self._due and self._due[request] <= due:
                return
            self._due[request] = due
            self._seq += 1
            heapq.heappush(self._heap, (due, self._seq, request))
            self._cond.notify()

    def get(self, timeout: float) -> Optional[Request]:
        """Pop the next due request, waiting up to timeout seconds for one."""
        deadline = self._clock() + timeout
        with self._cond:
            while True:
                while self._heap and self._due.get(self._heap[0][2]) != self._heap[0][0]:
                    heapq.heappop(self._heap)  # superseded entry
                now = self._clock()
                if self._heap and self._heap[0][0] <= now:
                    _, _, request = heapq.heappop(self._heap)
                    del self._due[request]
                    return request
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if self._heap:
                    remaining = min(remaining, self._heap[0][0] - now)
                self._cond.wait(remaining)

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)


class NodeMaintenanceReconciler:
    """Watches NodeMaintenance objects and hands each one to the handler.

    The lease manager may not be initialized yet when this starts; such
    requests are requeued with backoff until it is.
    """

    def __init__(
        self,
        *,
        api: client.CustomObjectsApi,
        leases: LeaseManagerInitializer,
        handler: Handler,
        on_result: Optional[Callable[[str], None]] = None,
        watch_timeout_seconds: int = 60,
        base_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
    ):
        self._api = api
        self._leases = leases
        self._handler = handler
        self._on_result = on_result
        self._watch_timeout_seconds = watch_timeout_seconds
        self._base_backoff_seconds = base_backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds

        self.queue = WorkQueue()
        self._not_ready_attempts: dict[Request, int] = {}
        self._watch_lock = threading.Lock()
        self._watch: Optional[watch.Watch] = None

    def start(self, ctx: RunContext) -> None:
        child = ctx.child()
        errors: list[Exception] = []
        child.on_cancel(self._stop_watch)

        def _watch_guarded() -> None:
            try:
                self._watch_loop(child)
            except Exception as e:
                errors.append(e)
                child.cancel()

        watcher = threading.Thread(target=_watch_guarded, name=f"{CONTROLLER_NAME}-watch", daemon=True)
        watcher.start()
        try:
            while not child.cancelled:
                request = self.queue.get(timeout=0.5)
                if request is not None and not child.cancelled:
                    self.reconcile(request)
        finally:
            child.cancel()
            watcher.join(timeout=5.0)
        if errors:
            raise errors[0]

    def reconcile(self, request: Request) -> None:
        try:
            leases = self._leases.get()
        except LeaseManagerNotReadyError:
            delay = self._backoff(request)
            logger.info("lease manager not ready, requeueing name=%s after=%.1fs", request.name, delay)
            self.queue.add(request, delay)
            self._report("requeue")
            return
        self._not_ready_attempts.pop(request, None)

        try:
            obj = self._api.get_cluster_custom_object(GROUP, VERSION, PLURAL, request.name)
        except ApiException as e:
            if e.status == 404:
                logger.debug("nodemaintenance gone name=%s", request.name)
                self._report("not_found")
                return
            logger.error("failed to get nodemaintenance name=%s status=%s", request.name, e.status)
            self._report("error")
            return

        try:
            self._handler(obj, leases)
        except Exception as e:
            logger.error("reconcile failed name=%s error=%s: %s", request.name, type(e).__name__, e)
            self._report("error")
            return
        self._report("success")

    def _backoff(self, request: Request) -> float:
        attempts = self._not_ready_attempts.get(request, 0)
        self._not_ready_attempts[request] = attempts + 1
        return min(self._max_backoff_seconds, self._base_backoff_seconds * (2 ** attempts))

    def _report(self, result: str) -> None:
        if self._on_result is not None:
            self._on_result(result)

    def _watch_loop(self, ctx: RunContext) -> None:
        resource_version = ""
        while not ctx.cancelled:
            w = watch.Watch()
            with self._watch_lock:
                self._watch = w
            if ctx.cancelled:
                return
            try:
                for event in w.stream(
                    self._api.list_cluster_custom_object,
                    GROUP,
                    VERSION,
                    PLURAL,
                    resource_version=resource_version or None,
                    timeout_seconds=self._watch_timeout_seconds,
                ):
                    obj = event.get("object") or {}
                    metadata = obj.get("metadata") or {}
                    resource_version = metadata.get("resourceVersion") or resource_version
                    name = metadata.get("name")
                    if name:
                        self.queue.add(Request(name=name))
            except ApiException as e:
                if e.status == 410:
                    # History compacted: relist from scratch.
                    resource_version = ""
                    continue
                logger.warning("nodemaintenance watch failed status=%s reason=%s", e.status, e.reason)
                ctx.wait(self._base_backoff_seconds)
            except urllib3.exceptions.HTTPError as e:
                logger.warning("nodemaintenance watch connection failed error=%s", e)
                ctx.wait(self._base_backoff_seconds)

    def _stop_watch(self) -> None:
        with self._watch_lock:
            if self._watch is not None:
                self._watch.stop()


def acquire_node_lease(obj: dict[str, Any], leases: LeaseManager) -> None:
    """Default handler: hold a lease on the node for as long as its NodeMaintenance exists."""

    node_name = ((obj.get("spec") or {}).get("nodeName") or "").strip()
    name = (obj.get("metadata") or {}).get("name", "")
    if not node_name:
        logger.warning("nodemaintenance without nodeName name=%s", name)
        return
    resource = lease_resource("Node", node_name)
    if (obj.get("metadata") or {}).get("deletionTimestamp"):
        leases.invalidate_lease(resource)
        return
    duration = get_int(key="MAINTENANCE_NODE_LEASE_DURATION_SECONDS", default=3600)
    try:
        leases.request_lease(resource, duration)
    except LeaseAlreadyHeldError as e:
        logger.warning("node lease held by another holder name=%s node=%s holder=%s", name, node_name, e.holder)


def setup_with_manager(manager) -> None:
    reconciler = NodeMaintenanceReconciler(
        api=client.CustomObjectsApi(manager.api_client),
        leases=manager.lease_manager,
        handler=acquire_node_lease,
        on_result=lambda result: manager.metrics.reconcile_total.labels(
            controller=CONTROLLER_NAME, result=result
        ).inc(),
    )
    manager.add(f"{CONTROLLER_NAME}-controller", reconciler, needs_leader_election=True)
