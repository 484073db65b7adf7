from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Optional

from django.http import HttpRequest, HttpResponse, HttpResponseNotAllowed, JsonResponse
from django.urls import path

from maintenance.errors import AdmissionDenied, AlreadyStartedError
from maintenance.runnables import RunContext
from maintenance.servers import HTTPServerRunnable
from maintenance.tls import WEBHOOK_CERT_DIR, WEBHOOK_CERT_NAME, WebhookTLSConfig, build_ssl_context


logger = logging.getLogger(__name__)


# Used when no certificates were injected, e.g. mounted by cert-manager.
DEFAULT_CERT_DIR = "/tmp/k8s-webhook-server/serving-certs"
DEFAULT_CERT_NAME = "tls.crt"
DEFAULT_KEY_NAME = "tls.key"

VALIDATE_NODE_MAINTENANCE_PATH = "/validate-nodemaintenance-medik8s-io-v1beta1"


Validator = Callable[[dict[str, Any]], None]


def serving_tls_config(cfg: WebhookTLSConfig) -> Optional[WebhookTLSConfig]:
    """TLS config the webhook listener should serve with, or None when no certificate is available."""

    if cfg.certs_injected:
        return cfg
    fallback = WebhookTLSConfig(
        cert_dir=DEFAULT_CERT_DIR,
        cert_name=DEFAULT_CERT_NAME,
        key_name=DEFAULT_KEY_NAME,
        tls_opts=list(cfg.tls_opts),
    )
    if os.path.exists(fallback.cert_file) and os.path.exists(fallback.key_file):
        return fallback
    return None


def admission_view(validator: Validator):
    """Wrap a validator into a Django view speaking the admission.k8s.io/v1 AdmissionReview envelope."""

    def view(request: HttpRequest) -> HttpResponse:
        if request.method != "POST":
            return HttpResponseNotAllowed(["POST"])
        try:
            review = json.loads(request.body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            return HttpResponse("invalid AdmissionReview body", status=400, content_type="text/plain; charset=utf-8")
        req = review.get("request") if isinstance(review, dict) else None
        if not isinstance(req, dict) or not req.get("uid"):
            return HttpResponse("AdmissionReview has no request uid", status=400, content_type="text/plain; charset=utf-8")

        response: dict[str, Any] = {"uid": req["uid"], "allowed": True}
        try:
            validator(req)
        except AdmissionDenied as e:
            response["allowed"] = False
            response["status"] = {"code": 403, "reason": "Forbidden", "message": str(e)}
            logger.info("admission denied uid=%s operation=%s reason=%s", req["uid"], req.get("operation"), e)

        return JsonResponse(
            {
                "apiVersion": review.get("apiVersion") or "admission.k8s.io/v1",
                "kind": "AdmissionReview",
                "response": response,
            }
        )

    return view


class WebhookServer:
    """HTTPS listener for admission webhooks. Paths are registered during setup."""

    def __init__(self, *, port: int, tls: WebhookTLSConfig, host: str = ""):
        self._host = host
        self._port = port
        self._tls = tls
        self._routes: dict[str, Validator] = {}
        self._started = False

    @property
    def paths(self) -> list[str]:
        return sorted(self._routes)

    def register(self, webhook_path: str, validator: Validator) -> None:
        if self._started:
            raise AlreadyStartedError(f"cannot register webhook {webhook_path}: server already started")
        if not webhook_path.startswith("/"):
            raise ValueError(f"webhook path must be absolute: {webhook_path!r}")
        if webhook_path in self._routes:
            raise ValueError(f"webhook {webhook_path} is already registered")
        self._routes[webhook_path] = validator
        logger.info("registering webhook path=%s", webhook_path)

    def urlpatterns(self) -> list:
        return [path(p.lstrip("/"), admission_view(v)) for p, v in sorted(self._routes.items())]

    def start(self, ctx: RunContext) -> None:
        self._started = True
        if not self._routes:
            logger.info("no webhooks registered, webhook server idle port=%s", self._port)
            ctx.wait()
            return
        tls = serving_tls_config(self._tls)
        if tls is None:
            raise FileNotFoundError(
                "no serving certificate for webhooks: looked for "
                f"{os.path.join(WEBHOOK_CERT_DIR, WEBHOOK_CERT_NAME)} and "
                f"{os.path.join(DEFAULT_CERT_DIR, DEFAULT_CERT_NAME)}"
            )
        server = HTTPServerRunnable(
            "webhook-server",
            (self._host, self._port),
            self.urlpatterns(),
            ssl_context=build_ssl_context(tls),
        )
        server.start(ctx)


def allow_node_maintenance(request: dict[str, Any]) -> None:
    """Admit every NodeMaintenance request."""

    logger.debug("admitting nodemaintenance uid=%s operation=%s", request.get("uid"), request.get("operation"))


def setup_webhook_with_manager(manager, is_openshift: bool) -> None:
    manager.webhook_server.register(VALIDATE_NODE_MAINTENANCE_PATH, allow_node_maintenance)
