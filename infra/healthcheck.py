"""Lightweight HTTP health endpoint for operational monitoring."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


def build_health_payload(status: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reduce an agent status snapshot to the /health payload.

    The agent is unhealthy while the circuit breaker is active or when the
    most recent cycle failed.
    """
    breaker = status.get("circuit_breaker") or {}
    issues = []
    if breaker.get("active"):
        issues.append(f"circuit breaker active: {breaker.get('reason') or 'unknown'}")
    if status.get("last_cycle_failed"):
        issues.append(f"last cycle failed: {status.get('last_error') or 'unknown'}")

    return {
        "ok": not issues,
        "issues": issues,
        "mode": status.get("mode"),
        "phase": status.get("phase"),
        "running": status.get("running"),
        "cycle_count": status.get("cycle_count", 0),
        "last_cycle_at": status.get("last_cycle_at"),
        "last_error": status.get("last_error"),
        "circuit_breaker": breaker,
    }


HEALTH_PATHS = ("/", "/health", "/healthz")
STATUS_PATH = "/status"


class HealthServer:
    """
    JSON health endpoint served from a daemon thread.

    GET /health answers 200 when the payload says ok and 503 otherwise, so
    load balancers and supervisors can act on it. GET /status always answers
    200 with the same payload for dashboards.
    """

    def __init__(self, port: int, status_provider: Callable[[], Dict[str, Any]],
                 host: str = "0.0.0.0"):
        self._host = host
        self._port = int(port)
        self._status_provider = status_provider
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        """Bound port (useful with port 0), None while stopped."""
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return
        self._server = ThreadingHTTPServer((self._host, self._port), _make_handler(self._status_provider))
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        try:
            server.shutdown()
            server.server_close()
        except OSError as exc:  # pragma: no cover
            logger.warning("Failed shutting down health server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None


def _make_handler(status_provider: Callable[[], Dict[str, Any]]):
    class HealthHandler(BaseHTTPRequestHandler):
        def do_GET(self):  # type: ignore[override]
            if self.path == STATUS_PATH:
                self._send_json(200, status_provider() or {})
                return
            if self.path not in HEALTH_PATHS:
                self.send_error(404)
                return
            payload = status_provider() or {}
            self._send_json(200 if payload.get("ok", True) else 503, payload)

        def _send_json(self, code: int, payload: Dict[str, Any]) -> None:
            body = json.dumps(payload, default=str).encode("utf-8")
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
            return

    return HealthHandler


__all__ = ["HealthServer", "build_health_payload"]
