from __future__ import annotations

import logging
import socket
import threading
from socketserver import ThreadingMixIn
from typing import Any, Callable, Iterable
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import make_wsgi_app

from speedtest_prom_exporter.exporter import SpeedtestMetricsPublisher


LOGGER = logging.getLogger("speedtest_prom_exporter.http")


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _ThreadingWSGIServerV6(_ThreadingWSGIServer):
    address_family = socket.AF_INET6


class _DualStackWSGIServer(_ThreadingWSGIServerV6):
    def server_bind(self) -> None:
        self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        super().server_bind()


class _LoggingRequestHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        LOGGER.debug("%s %s", self.address_string(), format % args)


class MetricsServer:
    def __init__(
        self,
        publisher: SpeedtestMetricsPublisher,
        *,
        host: str = "",
        port: int = 9101,
        metrics_path: str = "/metrics",
    ) -> None:
        self.publisher = publisher
        self.host = host
        self.port = port
        self.metrics_path = "/" + metrics_path.strip("/")
        self._metrics_app = make_wsgi_app(registry=publisher.registry)
        self._server: WSGIServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def server_port(self) -> int:
        if self._server is None:
            return self.port
        return int(self._server.server_port)

    def app(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        path = environ.get("PATH_INFO", "") or "/"
        if path.rstrip("/") != self.metrics_path.rstrip("/"):
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"Not Found\n"]
        with self.publisher.lock:
            return self._metrics_app(environ, start_response)

    @property
    def bound_host(self) -> str:
        if self._server is None:
            return self.host
        return str(self._server.server_address[0])

    def _make_server(self, host: str, server_class: type[WSGIServer]) -> WSGIServer:
        return make_server(
            host,
            self.port,
            self.app,
            server_class=server_class,
            handler_class=_LoggingRequestHandler,
        )

    def start(self) -> None:
        # an empty host listens on every interface, IPv6 and IPv4 where the kernel allows it
        if not self.host and socket.has_ipv6:
            try:
                self._server = self._make_server("::", _DualStackWSGIServer)
            except OSError as error:
                LOGGER.debug("dual-stack bind failed, listening on IPv4 only: %s", error)
        if self._server is None:
            host = self.host or "0.0.0.0"
            self._server = self._make_server(
                host,
                _ThreadingWSGIServerV6 if ":" in host else _ThreadingWSGIServer,
            )
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="MetricsServer",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
