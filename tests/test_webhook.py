"""
Admission webhook envelope and server registration tests.
"""

import json
import threading
import time
import urllib.request
from unittest.mock import MagicMock, patch

import pytest
from django.test import RequestFactory

from maintenance.errors import AdmissionDenied, AlreadyStartedError
from maintenance.leader_election import AlwaysLeader
from maintenance.runnables import OrchestratorState, RunContext, RunnableOrchestrator
from maintenance.servers import HTTPServerRunnable
from maintenance.tls import WebhookTLSConfig, force_http1
from maintenance.webhook import (
    VALIDATE_NODE_MAINTENANCE_PATH,
    WebhookServer,
    admission_view,
    allow_node_maintenance,
    serving_tls_config,
    setup_webhook_with_manager,
)


def _review(request):
    return json.dumps({"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview", "request": request})


def _post(view, body):
    rf = RequestFactory()
    return view(rf.post("/validate", data=body, content_type="application/json"))


def test_allowed_review_echoes_uid():
    view = admission_view(lambda req: None)

    response = _post(view, _review({"uid": "u-1", "operation": "CREATE"}))

    data = json.loads(response.content)
    assert response.status_code == 200
    assert data["kind"] == "AdmissionReview"
    assert data["response"] == {"uid": "u-1", "allowed": True}


def test_denied_review_carries_message():
    def deny(req):
        raise AdmissionDenied("no")

    response = _post(admission_view(deny), _review({"uid": "u-2"}))

    data = json.loads(response.content)
    assert data["response"]["allowed"] is False
    assert data["response"]["status"]["code"] == 403
    assert data["response"]["status"]["message"] == "no"


@pytest.mark.parametrize("body", ["not json", json.dumps({"request": {}}), json.dumps([])])
def test_malformed_reviews_are_rejected(body):
    response = _post(admission_view(lambda req: None), body)

    assert response.status_code == 400


def test_only_post_is_allowed():
    view = admission_view(lambda req: None)

    assert view(RequestFactory().get("/validate")).status_code == 405


def test_default_hook_admits_everything():
    manager = MagicMock()
    setup_webhook_with_manager(manager, is_openshift=False)

    (path_, validator), _ = manager.webhook_server.register.call_args
    assert path_ == VALIDATE_NODE_MAINTENANCE_PATH
    response = _post(admission_view(validator), _review({"uid": "u-3", "operation": "UPDATE", "object": {}}))

    assert json.loads(response.content)["response"] == {"uid": "u-3", "allowed": True}


def test_serving_tls_config_prefers_injected_certs():
    injected = WebhookTLSConfig(cert_dir="/certs", cert_name="a.crt", key_name="a.key")

    assert serving_tls_config(injected) is injected


def test_serving_tls_config_falls_back_or_gives_up():
    cfg = WebhookTLSConfig(tls_opts=[force_http1])

    with patch("maintenance.webhook.os.path.exists", return_value=True):
        fallback = serving_tls_config(cfg)
    assert fallback.cert_dir == "/tmp/k8s-webhook-server/serving-certs"
    assert fallback.tls_opts == [force_http1]

    with patch("maintenance.webhook.os.path.exists", return_value=False):
        assert serving_tls_config(cfg) is None


def test_server_without_routes_idles_until_cancelled():
    server = WebhookServer(port=0, tls=WebhookTLSConfig())
    ctx = RunContext()
    ctx.cancel()

    with patch("maintenance.webhook.serving_tls_config") as tls_lookup:
        server.start(ctx)

    tls_lookup.assert_not_called()
    with pytest.raises(AlreadyStartedError):
        server.register("/other", allow_node_maintenance)


def test_registered_webhooks_without_certs_fail_startup():
    server = WebhookServer(port=0, tls=WebhookTLSConfig())
    server.register(VALIDATE_NODE_MAINTENANCE_PATH, allow_node_maintenance)
    orchestrator = RunnableOrchestrator(gate=AlwaysLeader(), grace_period_seconds=5)
    orchestrator.register("webhook-server", server, needs_leader_election=False)

    with patch("maintenance.webhook.serving_tls_config", return_value=None):
        with pytest.raises(FileNotFoundError) as exc_info:
            orchestrator.run(RunContext())

    assert "/tmp/k8s-webhook-server/serving-certs/tls.crt" in str(exc_info.value)
    assert "/apiserver.local.config/certificates/apiserver.crt" in str(exc_info.value)
    assert orchestrator.state is OrchestratorState.FAULTED


def test_serves_admission_reviews_over_tls(tls_pair, tls_client):
    cert_dir, cert_name, key_name = tls_pair
    server = WebhookServer(
        port=0,
        host="127.0.0.1",
        tls=WebhookTLSConfig(cert_dir=cert_dir, cert_name=cert_name, key_name=key_name),
    )
    server.register(VALIDATE_NODE_MAINTENANCE_PATH, allow_node_maintenance)
    created = []

    def _build(*args, **kwargs):
        created.append(HTTPServerRunnable(*args, **kwargs))
        return created[-1]

    ctx = RunContext()
    with patch("maintenance.webhook.HTTPServerRunnable", side_effect=_build):
        t = threading.Thread(target=server.start, args=(ctx,), daemon=True)
        t.start()
        try:
            deadline = time.monotonic() + 5
            while not created and time.monotonic() < deadline:
                time.sleep(0.01)
            listener = created[0]
            assert listener.wait_bound(5)
            request = urllib.request.Request(
                f"https://127.0.0.1:{listener.port}{VALIDATE_NODE_MAINTENANCE_PATH}",
                data=_review({"uid": "u-4", "operation": "CREATE"}).encode(),
                headers={"Content-Type": "application/json"},
            )
            with urllib.request.urlopen(request, context=tls_client(), timeout=5) as resp:
                data = json.loads(resp.read())
        finally:
            ctx.cancel()
            t.join(10)

    assert data["response"] == {"uid": "u-4", "allowed": True}


def test_register_validates_paths():
    server = WebhookServer(port=0, tls=WebhookTLSConfig())
    server.register("/a", allow_node_maintenance)

    with pytest.raises(ValueError):
        server.register("/a", allow_node_maintenance)
    with pytest.raises(ValueError):
        server.register("relative", allow_node_maintenance)
    assert server.paths == ["/a"]
