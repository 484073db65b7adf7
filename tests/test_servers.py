"""
HTTP listener tests: bind address parsing and serving probes over a real socket.
"""

import socket
import threading
import urllib.error
import urllib.request
from unittest.mock import MagicMock, patch

import pytest

from maintenance.health import HealthChecks, ping
from maintenance.metrics import ManagerMetrics
from maintenance.middleware import URLCONF_ENVIRON_KEY
from maintenance.runnables import RunContext
from maintenance.servers import HTTPServerRunnable, parse_bind_address
from maintenance.tls import build_ssl_context, configure_webhook_tls


@pytest.mark.parametrize(
    "address,expected",
    [
        (":8080", ("", 8080)),
        ("127.0.0.1:8081", ("127.0.0.1", 8081)),
        ("[::1]:9443", ("::1", 9443)),
        ("0", None),
    ],
)
def test_parse_bind_address(address, expected):
    assert parse_bind_address(address) == expected


@pytest.mark.parametrize("address", ["8080", "host:port", ":70000"])
def test_parse_bind_address_rejects_invalid(address):
    with pytest.raises(ValueError):
        parse_bind_address(address)


def _serve(urlpatterns):
    server = HTTPServerRunnable("test", ("127.0.0.1", 0), urlpatterns)
    ctx = RunContext()
    t = threading.Thread(target=server.start, args=(ctx,), daemon=True)
    t.start()
    assert server.wait_bound(5)
    return server, ctx, t


def test_serves_probes_until_cancelled():
    checks = HealthChecks()
    checks.add_healthz_check("healthz", ping)
    checks.add_readyz_check("readyz", ping)
    server, ctx, t = _serve(checks.urlpatterns())
    base = f"http://127.0.0.1:{server.port}"

    try:
        with urllib.request.urlopen(f"{base}/healthz", timeout=5) as resp:
            assert resp.status == 200
            assert resp.read() == b"ok"
        with urllib.request.urlopen(f"{base}/readyz", timeout=5) as resp:
            assert resp.status == 200
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(f"{base}/metrics", timeout=5)
        assert exc_info.value.code == 404
    finally:
        ctx.cancel()
        t.join(10)
    assert not t.is_alive()


def test_serves_metrics():
    metrics = ManagerMetrics()
    metrics.runnable_failures_total.labels(runnable="webhook-server").inc()
    server, ctx, t = _serve(metrics.urlpatterns())

    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{server.port}/metrics", timeout=5) as resp:
            body = resp.read().decode()
    finally:
        ctx.cancel()
        t.join(10)

    assert 'maintenance_runnable_failures_total{runnable="webhook-server"} 1.0' in body


def test_bind_failure_raises():
    first, ctx, t = _serve([])
    try:
        second = HTTPServerRunnable("clash", ("127.0.0.1", first.port), [])
        with pytest.raises(OSError):
            second.start(RunContext())
    finally:
        ctx.cancel()
        t.join(10)


def test_idle_tls_client_does_not_block_other_connections(tls_pair, tls_client):
    cert_dir, _, _ = tls_pair
    checks = HealthChecks()
    ssl_context = build_ssl_context(configure_webhook_tls(enable_http2=False, cert_dir=cert_dir))
    server = HTTPServerRunnable("webhook", ("127.0.0.1", 0), checks.urlpatterns(), ssl_context=ssl_context)
    ctx = RunContext()
    t = threading.Thread(target=server.start, args=(ctx,), daemon=True)
    t.start()
    assert server.wait_bound(5)

    # Connects but never sends a ClientHello.
    idle = socket.create_connection(("127.0.0.1", server.port), timeout=5)
    try:
        url = f"https://127.0.0.1:{server.port}/healthz"
        with urllib.request.urlopen(url, context=tls_client(), timeout=3) as resp:
            assert resp.status == 200
            assert resp.read() == b"ok"
    finally:
        idle.close()
        ctx.cancel()
        t.join(10)


def test_listeners_dispatch_through_project_wsgi_application():
    app = MagicMock(return_value=[b"ok"])
    server = HTTPServerRunnable("test", ("127.0.0.1", 0), [])
    environ = {"PATH_INFO": "/healthz"}
    start_response = MagicMock()

    with patch("maintenance_project.wsgi.application", app):
        assert server._wsgi_app()(environ, start_response) == [b"ok"]

    app.assert_called_once_with(environ, start_response)
    assert environ[URLCONF_ENVIRON_KEY].urlpatterns == []
