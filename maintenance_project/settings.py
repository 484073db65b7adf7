from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env if present (dev convenience)
load_dotenv(BASE_DIR / ".env")

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-insecure-secret")
DEBUG = os.environ.get("DJANGO_DEBUG", "0") not in {"0", "false", "False"}

ALLOWED_HOSTS = ["*"]
INSTALLED_APPS = [
    "maintenance",
]

# Every listener (probes, metrics, webhooks) routes with its own URLconf.
MIDDLEWARE = [
    "maintenance.middleware.ServerURLConfMiddleware",
]

ROOT_URLCONF = "maintenance_project.urls"

WSGI_APPLICATION = "maintenance_project.wsgi.application"

# The manager keeps no relational state.
DATABASES = {}

USE_I18N = False
USE_TZ = True

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "kv": {
            "format": "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "kv",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "maintenance": {
            "level": os.environ.get("MAINTENANCE_LOG_LEVEL", "INFO"),
        },
    },
}


# --- Manager options ---
MAINTENANCE_METRICS_BIND_ADDRESS = os.environ.get("MAINTENANCE_METRICS_BIND_ADDRESS", ":8080")
MAINTENANCE_HEALTH_PROBE_BIND_ADDRESS = os.environ.get("MAINTENANCE_HEALTH_PROBE_BIND_ADDRESS", ":8081")
MAINTENANCE_WEBHOOK_PORT = int(os.environ.get("MAINTENANCE_WEBHOOK_PORT", "9443"))
MAINTENANCE_ENABLE_HTTP2 = os.environ.get("MAINTENANCE_ENABLE_HTTP2", "0") not in {"0", "false", "False"}

# Process identity used both as leader record owner and lease holder.
# Empty means "<hostname>_<random>", chosen once at startup.
MAINTENANCE_IDENTITY = os.environ.get("MAINTENANCE_IDENTITY", "")

# --- Leader election ---
MAINTENANCE_LEADER_ELECT = os.environ.get("MAINTENANCE_LEADER_ELECT", "0") not in {"0", "false", "False"}
MAINTENANCE_LEASE_DURATION_SECONDS = float(os.environ.get("MAINTENANCE_LEASE_DURATION_SECONDS", "15"))
MAINTENANCE_RENEW_DEADLINE_SECONDS = float(os.environ.get("MAINTENANCE_RENEW_DEADLINE_SECONDS", "10"))
MAINTENANCE_RETRY_PERIOD_SECONDS = float(os.environ.get("MAINTENANCE_RETRY_PERIOD_SECONDS", "2"))

# Coordination store for the leader record and per-resource leases.
MAINTENANCE_REDIS_URL = os.environ.get("MAINTENANCE_REDIS_URL", "redis://localhost:6379/0")

# How long run() waits for runnables to return after cancellation.
MAINTENANCE_GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS = float(
    os.environ.get("MAINTENANCE_GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS", "30")
)

# --- Setup hooks ---
# Dotted paths called during setup: controllers get (manager), webhooks get (manager, is_openshift).
MAINTENANCE_CONTROLLER_SETUP = ["maintenance.reconciler.setup_with_manager"]
MAINTENANCE_WEBHOOK_SETUP = ["maintenance.webhook.setup_webhook_with_manager"]

# Lease taken on a node while it is under maintenance.
MAINTENANCE_NODE_LEASE_DURATION_SECONDS = int(os.environ.get("MAINTENANCE_NODE_LEASE_DURATION_SECONDS", "3600"))
