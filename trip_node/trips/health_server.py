"""
Health and readiness endpoints for the trip node.
Serves /health (liveness), /health/ready (readiness: DB + RabbitMQ) and /metrics.
Runs in a daemon thread so the asyncio main loop is not blocked.
"""
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

logger = logging.getLogger(__name__)

SERVICE_NAME = "trip_node"

# Readiness state (set by run.py after init_orm and connect)
_db_ready = False
_rabbitmq_ready = False
_server: Optional[ThreadingHTTPServer] = None
_thread: Optional[threading.Thread] = None


def set_db_ready(ready: bool) -> None:
    global _db_ready
    _db_ready = ready


def set_rabbitmq_ready(ready: bool) -> None:
    global _rabbitmq_ready
    _rabbitmq_ready = ready


def is_ready() -> bool:
    return _db_ready and _rabbitmq_ready


def readiness_body() -> dict:
    ready = is_ready()
    return {"status": "ok" if ready else "degraded", "db": _db_ready, "rabbitmq": _rabbitmq_ready}


class _HealthHandler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        logger.debug("%s - - [%s] %s", self.address_string(), self.log_date_time_string(), format % args)

    def _send_json(self, status: int, body: dict) -> None:
        payload = json.dumps(body).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_GET(self):
        if self.path == "/health":
            self._send_json(200, {"status": "ok", "service": SERVICE_NAME})
            return
        if self.path == "/health/ready":
            self._send_json(200 if is_ready() else 503, readiness_body())
            return
        if self.path == "/metrics":
            payload = generate_latest(REGISTRY)
            self.send_response(200)
            self.send_header("Content-Type", CONTENT_TYPE_LATEST)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)
            return
        self.send_response(404)
        self.end_headers()

    def do_HEAD(self):
        if self.path in ("/health", "/metrics"):
            self.send_response(200)
        elif self.path == "/health/ready":
            self.send_response(200 if is_ready() else 503)
        else:
            self.send_response(404)
        self.end_headers()


def _run_server(server: ThreadingHTTPServer) -> None:
    try:
        server.serve_forever()
    except Exception as e:
        logger.warning("Health server error: %s", e)


def start_health_server(port: int = 9091, host: str = "0.0.0.0") -> Optional[ThreadingHTTPServer]:
    """Start health/ready/metrics server in a daemon thread; returns None when the port is taken."""
    global _server, _thread
    if _thread is not None and _thread.is_alive():
        return _server
    try:
        _server = ThreadingHTTPServer((host, port), _HealthHandler)
    except OSError as e:
        logger.warning("Could not start health server on port %s: %s", port, e)
        return None
    _thread = threading.Thread(target=_run_server, args=(_server,), daemon=True, name="health-server")
    _thread.start()
    logger.info("Health server started on port %s (GET /health, /health/ready, /metrics)", port)
    return _server


def stop_health_server() -> None:
    """Stop the health server (e.g. on shutdown)."""
    global _server, _thread
    if _server is not None:
        _server.shutdown()
        _server.server_close()
        _server = None
    _thread = None
