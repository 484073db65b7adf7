from __future__ import annotations

import logging

import redis
from django.core.management.base import BaseCommand, CommandError
from django.utils.module_loading import import_string

from maintenance.cluster import is_openshift, load_cluster_config
from maintenance.conf import get_list, get_manager_options
from maintenance.errors import RuntimeFatalError, SetupError
from maintenance.health import ping
from maintenance.manager import Manager
from maintenance.signals import setup_signal_handler
from maintenance.tls import configure_webhook_tls
from maintenance.version import print_version


setup_log = logging.getLogger("maintenance.setup")


def run_setup_hooks(setting: str, *args) -> None:
    for dotted in get_list(key=setting):
        try:
            hook = import_string(dotted)
        except ImportError as e:
            raise SetupError(f"unable to load setup hook {dotted}: {e}") from e
        try:
            hook(*args)
        except SetupError:
            raise
        except Exception as e:
            raise SetupError(f"setup hook {dotted} failed: {type(e).__name__}: {e}") from e


class Command(BaseCommand):
    help = "Run the node maintenance controller manager (probes, metrics, webhooks, controllers)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--metrics-bind-address",
            default=None,
            help="The address the metric endpoint binds to. Use 0 to disable.",
        )
        parser.add_argument(
            "--health-probe-bind-address",
            default=None,
            help="The address the probe endpoint binds to.",
        )
        parser.add_argument(
            "--leader-elect",
            action="store_true",
            default=None,
            help="Enable leader election for controller manager. "
            "Enabling this will ensure there is only one active controller manager.",
        )
        parser.add_argument(
            "--enable-http2",
            action="store_true",
            default=None,
            help="If HTTP/2 should be enabled for the metrics and webhook servers.",
        )
        parser.add_argument("--identity", default=None, help="Process identity (defaults to hostname + random suffix)")
        parser.add_argument("--redis-url", default=None, help="Coordination store for leader election and leases")
        parser.add_argument(
            "--log-level",
            default=None,
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Log level of the maintenance loggers",
        )

    def handle(self, *args, **options):
        if options.get("log_level"):
            logging.getLogger("maintenance").setLevel(options["log_level"])

        print_version(setup_log)

        try:
            manager = self._setup(options)
        except SetupError as e:
            setup_log.error("setup failed error=%s", e)
            raise CommandError(str(e))

        setup_log.info("starting manager identity=%s", manager.options.identity)
        try:
            manager.start(setup_signal_handler())
        except RuntimeFatalError as e:
            setup_log.error("problem running manager error=%s", e)
            raise CommandError(f"problem running manager: {e}")
        setup_log.info("manager stopped")

    def _setup(self, options) -> Manager:
        try:
            opts = get_manager_options(
                metrics_bind_address=options.get("metrics_bind_address"),
                health_probe_bind_address=options.get("health_probe_bind_address"),
                leader_election=options.get("leader_elect"),
                enable_http2=options.get("enable_http2"),
                identity=options.get("identity"),
                redis_url=options.get("redis_url"),
            )
        except ValueError as e:
            raise SetupError(f"invalid manager options: {e}") from e

        webhook_tls = configure_webhook_tls(enable_http2=opts.enable_http2)

        api_client = load_cluster_config()
        try:
            manager = Manager(
                opts,
                api_client=api_client,
                redis_client=redis.Redis.from_url(opts.redis_url, decode_responses=True),
                webhook_tls=webhook_tls,
            )
        except ValueError as e:
            raise SetupError(f"unable to start manager: {e}") from e

        openshift = is_openshift(api_client)
        if openshift:
            setup_log.info("NMO was installed on Openshift cluster")

        run_setup_hooks("MAINTENANCE_CONTROLLER_SETUP", manager)
        run_setup_hooks("MAINTENANCE_WEBHOOK_SETUP", manager, openshift)

        manager.add_healthz_check("healthz", ping)
        manager.add_readyz_check("readyz", ping)
        return manager
