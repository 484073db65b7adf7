from __future__ import annotations

from typing import Optional

from django.http import HttpResponse
from django.urls import path
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest


class ManagerMetrics:
    """Manager-level metrics on a registry owned by this instance."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.build_info = Gauge(
            "maintenance_manager_build_info",
            "Build information of the running manager (always 1)",
            labelnames=["version", "git_commit"],
            registry=self.registry,
        )
        self.leader_election_status = Gauge(
            "maintenance_leader_election_master_status",
            "Whether this replica currently holds the leader record (1=leader)",
            labelnames=["name"],
            registry=self.registry,
        )
        self.lease_manager_ready = Gauge(
            "maintenance_lease_manager_ready",
            "Whether the lease manager has been initialized (1=ready)",
            registry=self.registry,
        )
        self.runnable_failures_total = Counter(
            "maintenance_runnable_failures_total",
            "Number of runnables that stopped with an error",
            labelnames=["runnable"],
            registry=self.registry,
        )
        self.reconcile_total = Counter(
            "maintenance_reconcile_total",
            "Number of reconciliations by result",
            labelnames=["controller", "result"],
            registry=self.registry,
        )

    def metrics_view(self, request):
        return HttpResponse(generate_latest(self.registry), content_type=CONTENT_TYPE_LATEST)

    def urlpatterns(self) -> list:
        return [path("metrics", self.metrics_view)]
