from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics``.

    ``/readyz`` answers 200 only while the controller is running (workers
    started, not draining) and its informer cache has completed the initial
    sync; the body reports both flags.  Without a sync callable only the
    running flag counts.
    """

    ready_event: threading.Event
    synced_fn: Callable[[], bool] | None

    def _synced(self) -> bool:
        return self.synced_fn is None or self.synced_fn()

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
            running = self.ready_event.is_set()
            synced = self._synced()
            if running and synced:
                self._respond(200, b"running=true synced=true")
            else:
                running_text = "true" if running else "false"
                synced_text = "true" if synced else "false"
                self._respond(503, f"running={running_text} synced={synced_text}".encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("reconciler.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, synced: Callable[[], bool] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness signals.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        synced_fn = staticmethod(synced) if synced is not None else None

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, synced: Callable[[], bool] | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, synced=synced)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
