from __future__ import annotations

import logging
import os
import ssl
from dataclasses import dataclass, field
from typing import Callable, Optional


logger = logging.getLogger("maintenance.setup")


# Where OLM injects the serving certificate for the webhook service.
WEBHOOK_CERT_DIR = "/apiserver.local.config/certificates"
WEBHOOK_CERT_NAME = "apiserver.crt"
WEBHOOK_KEY_NAME = "apiserver.key"


TLSOption = Callable[[ssl.SSLContext], None]


@dataclass
class WebhookTLSConfig:
    cert_dir: str = ""
    cert_name: str = ""
    key_name: str = ""
    tls_opts: list[TLSOption] = field(default_factory=list)

    @property
    def certs_injected(self) -> bool:
        return bool(self.cert_dir and self.cert_name and self.key_name)

    @property
    def cert_file(self) -> str:
        return os.path.join(self.cert_dir, self.cert_name) if self.certs_injected else ""

    @property
    def key_file(self) -> str:
        return os.path.join(self.cert_dir, self.key_name) if self.certs_injected else ""


def force_http1(ctx: ssl.SSLContext) -> None:
    ctx.set_alpn_protocols(["http/1.1"])


def configure_webhook_tls(
    *,
    enable_http2: bool,
    cert_dir: str = WEBHOOK_CERT_DIR,
    cert_name: str = WEBHOOK_CERT_NAME,
    key_name: str = WEBHOOK_KEY_NAME,
) -> WebhookTLSConfig:
    cfg = WebhookTLSConfig()

    certs = [os.path.join(cert_dir, cert_name), os.path.join(cert_dir, key_name)]
    if all(os.path.exists(fname) for fname in certs):
        cfg.cert_dir = cert_dir
        cfg.cert_name = cert_name
        cfg.key_name = key_name
    else:
        logger.info("OLM injected certs for webhooks not found cert_dir=%s", cert_dir)

    # HTTP/2 stays off unless asked for (HTTP/2 rapid reset and stream cancellation CVEs).
    if not enable_http2:
        cfg.tls_opts.append(force_http1)
        logger.info("HTTP/2 for webhooks disabled")
    else:
        logger.warning("HTTP/2 for webhooks enabled")

    return cfg


def build_ssl_context(cfg: WebhookTLSConfig) -> Optional[ssl.SSLContext]:
    """Server-side context for the webhook listener, or None when no certs were injected."""

    if not cfg.certs_injected:
        return None
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(certfile=cfg.cert_file, keyfile=cfg.key_file)
    for opt in cfg.tls_opts:
        opt(ctx)
    return ctx
