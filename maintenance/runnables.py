from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from maintenance.errors import AlreadyStartedError

if TYPE_CHECKING:
    from maintenance.leader_election import LeadershipGate


logger = logging.getLogger(__name__)


class RunContext:
    """Cancellation token shared by runnables. Cancelling a context cancels all of its children."""

    def __init__(self, parent: Optional["RunContext"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        if parent is not None:
            parent.on_cancel(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("cancel callback failed callback=%r", cb)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run callback once the context is cancelled (immediately if it already is)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def child(self) -> "RunContext":
        return RunContext(parent=self)


class Runnable(Protocol):
    def start(self, ctx: RunContext) -> None:
        """Block until ctx is cancelled; raise to report a fatal failure."""


@dataclass(frozen=True)
class Task:
    name: str
    runnable: Runnable
    needs_leader_election: bool


class TaskSet:
    def __init__(self) -> None:
        self._tasks: list[Task] = []

    def add(self, name: str, runnable: Runnable, *, needs_leader_election: bool) -> Task:
        if any(t.name == name for t in self._tasks):
            raise ValueError(f"runnable {name!r} is already registered")
        task = Task(name=name, runnable=runnable, needs_leader_election=needs_leader_election)
        self._tasks.append(task)
        return task

    def always(self) -> list[Task]:
        return [t for t in self._tasks if not t.needs_leader_election]

    def leader_election(self) -> list[Task]:
        return [t for t in self._tasks if t.needs_leader_election]

    def names(self) -> list[str]:
        return [t.name for t in self._tasks]

    def __len__(self) -> int:
        return len(self._tasks)


class OrchestratorState(str, enum.Enum):
    CREATED = "created"
    REGISTERING = "registering"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAULTED = "faulted"


class RunnableOrchestrator:
    def __init__(
        self,
        *,
        gate: "LeadershipGate",
        grace_period_seconds: float = 30.0,
        on_failure: Optional[Callable[[str, Exception], None]] = None,
    ):
        self._gate = gate
        self._grace_period_seconds = grace_period_seconds
        self._on_failure = on_failure

        self._tasks = TaskSet()
        self._lock = threading.Lock()
        self._state = OrchestratorState.CREATED
        self._threads: list[threading.Thread] = []
        self._first_error: Optional[Exception] = None
        self._first_error_task = ""

    @property
    def state(self) -> OrchestratorState:
        with self._lock:
            return self._state

    @property
    def task_names(self) -> list[str]:
        return self._tasks.names()

    def register(self, name: str, runnable: Runnable, *, needs_leader_election: bool = True) -> None:
        with self._lock:
            if self._state not in (OrchestratorState.CREATED, OrchestratorState.REGISTERING):
                raise AlreadyStartedError(f"cannot register {name!r}: orchestrator is {self._state.value}")
            self._tasks.add(name, runnable, needs_leader_election=needs_leader_election)
            self._state = OrchestratorState.REGISTERING

    def run(self, parent: RunContext) -> None:
        """Run every registered unit until parent is cancelled or one of them fails.

        Returns None on clean cancellation. Re-raises the first unit failure after
        every unit was asked to stop.
        """
        with self._lock:
            if self._state not in (OrchestratorState.CREATED, OrchestratorState.REGISTERING):
                raise AlreadyStartedError(f"orchestrator is {self._state.value}")
            self._state = OrchestratorState.RUNNING
        ctx = parent.child()

        always = self._tasks.always()
        gated = self._tasks.leader_election()
        logger.info("starting runnables always=%d leader_election=%d", len(always), len(gated))

        for task in always:
            self._launch(ctx, task)
        if gated:
            self._spawn("leader-election-gate", lambda: self._start_when_leader(ctx, gated))

        ctx.wait()

        with self._lock:
            self._state = OrchestratorState.SHUTTING_DOWN
            threads = list(self._threads)
        logger.info("stopping runnables count=%d", len(threads))
        self._join(threads)

        with self._lock:
            err = self._first_error
            self._state = OrchestratorState.FAULTED if err is not None else OrchestratorState.STOPPED
        if err is not None:
            raise err
        logger.info("all runnables stopped")

    def _start_when_leader(self, ctx: RunContext, tasks: list[Task]) -> None:
        try:
            leading = self._gate.wait_for_leadership(ctx)
        except Exception as e:
            self._fail(ctx, "leader-election-gate", e)
            return
        if not leading or ctx.cancelled:
            return
        logger.info("leadership acquired, starting runnables count=%d", len(tasks))
        for task in tasks:
            self._launch(ctx, task)

    def _launch(self, ctx: RunContext, task: Task) -> None:
        def _target() -> None:
            logger.debug("runnable starting name=%s", task.name)
            try:
                task.runnable.start(ctx)
            except Exception as e:
                self._fail(ctx, task.name, e)
            else:
                logger.debug("runnable returned name=%s", task.name)

        self._spawn(task.name, _target)

    def _spawn(self, name: str, target: Callable[[], None]) -> None:
        t = threading.Thread(target=target, name=f"runnable-{name}", daemon=True)
        with self._lock:
            # Nothing new starts once shutdown began.
            if self._state is not OrchestratorState.RUNNING:
                return
            self._threads.append(t)
            t.start()

    def _fail(self, ctx: RunContext, name: str, err: Exception) -> None:
        with self._lock:
            # Errors raised while stopping do not turn a clean shutdown into a failure.
            first = self._first_error is None and not ctx.cancelled
            if first:
                self._first_error = err
                self._first_error_task = name
        if first:
            logger.error("runnable failed name=%s error=%s: %s", name, type(err).__name__, err)
        else:
            logger.warning("runnable failed during shutdown name=%s error=%s: %s", name, type(err).__name__, err)
        if self._on_failure is not None:
            self._on_failure(name, err)
        ctx.cancel()

    def _join(self, threads: list[threading.Thread]) -> None:
        deadline = time.monotonic() + self._grace_period_seconds
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))
        stuck = [t.name for t in threads if t.is_alive()]
        if stuck:
            logger.warning("runnables did not stop within grace period names=%s", ",".join(stuck))
