from __future__ import annotations

import logging
import ssl
import threading
from typing import Optional

from django.core.servers.basehttp import ThreadedWSGIServer, WSGIRequestHandler, get_internal_wsgi_application

from maintenance.middleware import URLCONF_ENVIRON_KEY
from maintenance.runnables import RunContext


logger = logging.getLogger(__name__)


TLS_HANDSHAKE_TIMEOUT_SECONDS = 10.0


class TLSWSGIServer(ThreadedWSGIServer):
    """Threaded WSGI server that does the TLS handshake in each connection's own thread.

    The listening socket stays plain, so a client that never sends a ClientHello
    only ties up its own thread and never blocks accept().
    """

    def __init__(
        self,
        *args,
        ssl_context: ssl.SSLContext,
        handshake_timeout: float = TLS_HANDSHAKE_TIMEOUT_SECONDS,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.ssl_context = ssl_context
        self.handshake_timeout = handshake_timeout

    def process_request_thread(self, request, client_address):
        try:
            request.settimeout(self.handshake_timeout)
            request = self.ssl_context.wrap_socket(request, server_side=True)
            request.settimeout(None)
        except OSError as e:
            logger.debug("tls handshake failed client=%s error=%s", client_address, e)
            self.shutdown_request(request)
            return
        super().process_request_thread(request, client_address)


def parse_bind_address(address: str) -> Optional[tuple[str, int]]:
    """Parse "host:port" (host may be empty). "0" disables the listener and returns None."""

    address = (address or "").strip()
    if address == "0":
        return None
    host, sep, raw_port = address.rpartition(":")
    if not sep:
        raise ValueError(f"invalid bind address {address!r}: expected host:port")
    try:
        port = int(raw_port)
    except ValueError:
        raise ValueError(f"invalid bind address {address!r}: port must be a number")
    if not 0 <= port <= 65535:
        raise ValueError(f"invalid bind address {address!r}: port out of range")
    return host.strip("[]"), port


class URLConf:
    """In-memory URLconf; Django resolves anything exposing `urlpatterns`."""

    def __init__(self, urlpatterns: list):
        self.urlpatterns = list(urlpatterns)


class HTTPServerRunnable:
    """Serves a set of Django URL patterns on one address until cancelled."""

    def __init__(
        self,
        name: str,
        address: tuple[str, int],
        urlpatterns: list,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.name = name
        self._address = address
        self._urlconf = URLConf(urlpatterns)
        self._ssl_context = ssl_context
        self._bound = threading.Event()
        self._port: Optional[int] = None

    @property
    def port(self) -> Optional[int]:
        return self._port

    def wait_bound(self, timeout: Optional[float] = None) -> bool:
        return self._bound.wait(timeout)

    def _wsgi_app(self):
        handler = get_internal_wsgi_application()
        urlconf = self._urlconf

        def app(environ, start_response):
            environ[URLCONF_ENVIRON_KEY] = urlconf
            return handler(environ, start_response)

        return app

    def start(self, ctx: RunContext) -> None:
        host, port = self._address
        if self._ssl_context is not None:
            httpd = TLSWSGIServer((host, port), WSGIRequestHandler, ipv6=":" in host, ssl_context=self._ssl_context)
        else:
            httpd = ThreadedWSGIServer((host, port), WSGIRequestHandler, ipv6=":" in host)
        try:
            httpd.set_app(self._wsgi_app())
        except Exception:
            httpd.server_close()
            raise
        self._port = httpd.server_address[1]
        self._bound.set()

        scheme = "https" if self._ssl_context is not None else "http"
        logger.info("serving name=%s address=%s://%s:%s", self.name, scheme, host or "0.0.0.0", self._port)

        serve_thread = threading.Thread(target=httpd.serve_forever, name=f"http-{self.name}", daemon=True)
        serve_thread.start()
        try:
            ctx.wait()
        finally:
            httpd.shutdown()
            httpd.server_close()
            serve_thread.join(timeout=5.0)
            logger.info("stopped serving name=%s", self.name)
