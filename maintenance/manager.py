from __future__ import annotations

import logging
from typing import Optional

import redis
from kubernetes import client

from maintenance.conf import ManagerOptions
from maintenance.errors import RuntimeFatalError
from maintenance.health import Check, HealthChecks
from maintenance.leader_election import AlwaysLeader, ElectionSettings, LeadershipGate, RedisLeaderElector
from maintenance.lease import LeaseManagerInitializer
from maintenance.metrics import ManagerMetrics
from maintenance.runnables import Runnable, RunContext, RunnableOrchestrator
from maintenance.servers import HTTPServerRunnable, parse_bind_address
from maintenance.tls import WebhookTLSConfig
from maintenance.version import GIT_COMMIT, VERSION
from maintenance.webhook import WebhookServer


logger = logging.getLogger(__name__)


class Manager:
    """Owns the runnables of one controller manager process.

    Probes, metrics, the webhook server and the leader elector start right away;
    everything else waits until this replica leads.
    """

    def __init__(
        self,
        options: ManagerOptions,
        *,
        api_client: client.ApiClient,
        redis_client: redis.Redis,
        webhook_tls: WebhookTLSConfig,
        gate: Optional[LeadershipGate] = None,
    ):
        self.options = options
        self.api_client = api_client
        self.redis_client = redis_client

        self.metrics = ManagerMetrics()
        self.metrics.build_info.labels(version=VERSION, git_commit=GIT_COMMIT).set(1)
        self.health = HealthChecks()

        self.elector: Optional[RedisLeaderElector] = None
        if gate is None:
            if options.leader_election:
                self.elector = RedisLeaderElector(
                    client=redis_client,
                    election_id=options.leader_election_id,
                    identity=options.identity,
                    settings=ElectionSettings(
                        lease_duration_seconds=options.lease_duration_seconds,
                        renew_deadline_seconds=options.renew_deadline_seconds,
                        retry_period_seconds=options.retry_period_seconds,
                    ),
                    on_change=self._on_leader_change,
                )
                gate = self.elector
            else:
                gate = AlwaysLeader()

        self.orchestrator = RunnableOrchestrator(
            gate=gate,
            grace_period_seconds=options.graceful_shutdown_timeout_seconds,
            on_failure=self._on_runnable_failure,
        )
        self.webhook_server = WebhookServer(port=options.webhook_port, tls=webhook_tls)
        self.lease_manager = LeaseManagerInitializer(
            client=redis_client,
            identity=options.identity,
            on_ready=lambda: self.metrics.lease_manager_ready.set(1),
        )

        self._add_builtin_runnables()

    def _add_builtin_runnables(self) -> None:
        probe_address = parse_bind_address(self.options.health_probe_bind_address)
        if probe_address is not None:
            self.add(
                "health-probes",
                HTTPServerRunnable("health-probes", probe_address, self.health.urlpatterns()),
                needs_leader_election=False,
            )
        metrics_address = parse_bind_address(self.options.metrics_bind_address)
        if metrics_address is not None:
            self.add(
                "metrics",
                HTTPServerRunnable("metrics", metrics_address, self.metrics.urlpatterns()),
                needs_leader_election=False,
            )
        self.add("webhook-server", self.webhook_server, needs_leader_election=False)
        if self.elector is not None:
            self.add("leader-election", self.elector, needs_leader_election=False)
        self.add("lease-manager-initializer", self.lease_manager, needs_leader_election=True)

    def add(self, name: str, runnable: Runnable, *, needs_leader_election: bool = True) -> None:
        self.orchestrator.register(name, runnable, needs_leader_election=needs_leader_election)

    def add_healthz_check(self, name: str, check: Check) -> None:
        self.health.add_healthz_check(name, check)

    def add_readyz_check(self, name: str, check: Check) -> None:
        self.health.add_readyz_check(name, check)

    def start(self, ctx: RunContext) -> None:
        try:
            self.orchestrator.run(ctx)
        except Exception as e:
            raise RuntimeFatalError(f"{type(e).__name__}: {e}") from e

    def _on_leader_change(self, leading: bool) -> None:
        self.metrics.leader_election_status.labels(name=self.options.leader_election_id).set(1 if leading else 0)

    def _on_runnable_failure(self, name: str, err: Exception) -> None:
        self.metrics.runnable_failures_total.labels(runnable=name).inc()
