"""
entrypoint.py — Container entrypoint.

Container platforms expect an HTTP endpoint that answers health probes,
even when the workload is a background poller. This module serves the
report service's health and status as JSON while the daemon runs.

Architecture
------------
┌─────────────────────────────────────────────────────────┐
│  Python process (PID 1 in container)                    │
│                                                         │
│  Main thread ──── scheduler.run_daemon(service)         │
│       │            Polls for due reports every 15 min   │
│       │            Registers SIGTERM → graceful exit    │
│       │                                                 │
│  Daemon thread ── HTTPServer on 0.0.0.0:$PORT           │
│                   GET /health  → service.health()       │
│                   GET /status  → service.status()       │
│                   GET /metrics → service.metrics()      │
│                   Dies automatically when main exits    │
└─────────────────────────────────────────────────────────┘

- The health server is a daemon thread so it never blocks process exit.
- run_daemon() stays on the main thread: signal.signal() only works there.
- $PORT is honoured so the platform can assign ports dynamically.
"""

import json
import logging
import os
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

# ---------------------------------------------------------------------------
# Logging — minimal bootstrap before build_service() sets up the full logger
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("entrypoint")

_HEALTH_PATHS = frozenset(("/", "/health", "/healthz", "/ping"))


def make_handler(service):
    """Build a request handler class bound to `service`."""

    routes = {
        "/status": service.status,
        "/metrics": service.metrics,
    }

    class _ServiceHandler(BaseHTTPRequestHandler):
        def _send_json(self, status: int, payload: dict) -> None:
            body = json.dumps(payload, default=str).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self) -> None:  # noqa: N802
            path = self.path.split("?", 1)[0]
            if path in _HEALTH_PATHS:
                health = service.health()
                self._send_json(200 if health["status"] == "healthy" else 503, health)
            elif path in routes:
                try:
                    self._send_json(200, routes[path]())
                except Exception as exc:
                    logger.error("%s failed: %s", path, exc)
                    self._send_json(500, {"error": str(exc)})
            else:
                self.send_response(404)
                self.send_header("Content-Length", "0")
                self.end_headers()

        def log_message(self, fmt: str, *args: object) -> None:  # noqa: D102
            # Probes hit this every few seconds
            pass

    return _ServiceHandler


def _start_health_server(service, port: int) -> None:
    """Serve health/status forever (runs in a daemon thread).

    Args:
        service: ReportService to report on.
        port: TCP port to listen on (usually $PORT).
    """
    server = HTTPServer(("0.0.0.0", port), make_handler(service))
    logger.info("Health server listening on 0.0.0.0:%d  [GET /health, /status, /metrics]", port)
    server.serve_forever()


def main() -> None:
    """Build the service, start the health thread, then run the daemon."""
    port = int(os.environ.get("PORT", 8000))

    logger.info("Starting report processor (importing pipeline modules…)")
    try:
        from scheduler import build_service, run_daemon  # noqa: PLC0415
    except ImportError as exc:
        logger.critical("Cannot import scheduler module: %s", exc)
        sys.exit(1)

    service = build_service(os.environ.get("REPORTS_CONFIG", "config.yaml"))

    health_thread = threading.Thread(
        target=_start_health_server,
        args=(service, port),
        name="health-server",
        daemon=True,
    )
    health_thread.start()

    run_daemon(service)  # blocks until SIGTERM / SIGINT


if __name__ == "__main__":
    main()
