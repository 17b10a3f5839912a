from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_event: threading.Event
    worker_alive: Callable[[], bool]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            synced = self.ready_event.is_set()
            worker = self.worker_alive()
            body = f"synced={str(synced).lower()} worker={str(worker).lower()}".encode()
            self._respond(200 if synced and worker else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("deployer.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, worker_alive: Callable[[], bool] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the controller's readiness signals.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """
    alive = worker_alive or (lambda: True)

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        worker_alive = staticmethod(alive)

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    worker_alive: Callable[[], bool] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, worker_alive=worker_alive)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
