"""
Webhook TLS configuration tests.
"""

import socket
import ssl
import threading
from unittest.mock import MagicMock

import pytest

from maintenance.runnables import RunContext
from maintenance.servers import HTTPServerRunnable
from maintenance.tls import (
    WebhookTLSConfig,
    build_ssl_context,
    configure_webhook_tls,
    force_http1,
)


def _cert_dir(tmp_path, *, cert: bool, key: bool):
    if cert:
        (tmp_path / "apiserver.crt").write_text("cert")
    if key:
        (tmp_path / "apiserver.key").write_text("key")
    return str(tmp_path)


@pytest.mark.parametrize("cert", [True, False])
@pytest.mark.parametrize("key", [True, False])
@pytest.mark.parametrize("enable_http2", [True, False])
def test_cert_fields_are_all_or_nothing(tmp_path, cert, key, enable_http2):
    cert_dir = _cert_dir(tmp_path, cert=cert, key=key)

    cfg = configure_webhook_tls(enable_http2=enable_http2, cert_dir=cert_dir)

    if cert and key:
        assert (cfg.cert_dir, cfg.cert_name, cfg.key_name) == (cert_dir, "apiserver.crt", "apiserver.key")
        assert cfg.certs_injected
    else:
        assert (cfg.cert_dir, cfg.cert_name, cfg.key_name) == ("", "", "")
        assert not cfg.certs_injected

    if enable_http2:
        assert cfg.tls_opts == []
    else:
        assert cfg.tls_opts == [force_http1]


def test_missing_certs_is_logged_not_raised(tmp_path, caplog):
    with caplog.at_level("INFO", logger="maintenance.setup"):
        cfg = configure_webhook_tls(enable_http2=False, cert_dir=str(tmp_path))

    assert cfg.cert_dir == ""
    assert "OLM injected certs for webhooks not found" in caplog.text
    assert "HTTP/2 for webhooks disabled" in caplog.text


def test_defaults_scenario_without_certs(tmp_path):
    cfg = configure_webhook_tls(enable_http2=False, cert_dir=str(tmp_path / "missing"))

    assert cfg.cert_dir == ""
    assert len(cfg.tls_opts) == 1


def test_force_http1_restricts_alpn():
    ctx = MagicMock()

    force_http1(ctx)

    ctx.set_alpn_protocols.assert_called_once_with(["http/1.1"])


def test_build_ssl_context_without_certs_is_none():
    assert build_ssl_context(WebhookTLSConfig()) is None


def test_build_ssl_context_loads_injected_pair(tls_pair):
    cert_dir, _, _ = tls_pair

    ctx = build_ssl_context(configure_webhook_tls(enable_http2=False, cert_dir=cert_dir))

    assert ctx is not None
    assert ctx.minimum_version >= ssl.TLSVersion.TLSv1_2


def _negotiated_alpn(tls_pair, tls_client, *, enable_http2):
    cert_dir, _, _ = tls_pair
    cfg = configure_webhook_tls(enable_http2=enable_http2, cert_dir=cert_dir)
    server = HTTPServerRunnable("webhook", ("127.0.0.1", 0), [], ssl_context=build_ssl_context(cfg))
    ctx = RunContext()
    t = threading.Thread(target=server.start, args=(ctx,), daemon=True)
    t.start()
    try:
        assert server.wait_bound(5)
        with socket.create_connection(("127.0.0.1", server.port), timeout=5) as raw:
            with tls_client(alpn=["h2", "http/1.1"]).wrap_socket(raw, server_hostname="localhost") as conn:
                return conn.selected_alpn_protocol()
    finally:
        ctx.cancel()
        t.join(10)


def test_http2_disabled_negotiates_http1_only(tls_pair, tls_client):
    assert _negotiated_alpn(tls_pair, tls_client, enable_http2=False) == "http/1.1"


def test_http2_enabled_leaves_alpn_to_the_client(tls_pair, tls_client):
    # Without a server ALPN list nothing is selected and the client falls back to HTTP/1.1.
    assert _negotiated_alpn(tls_pair, tls_client, enable_http2=True) is None
