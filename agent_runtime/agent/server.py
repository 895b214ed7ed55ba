"""
HTTP server every agent gets for free.

Serves ``/health`` and ``/status`` (what ``agentrt health`` and the status
probes read), plus any routes the agent's services register. Runs on a
background thread so the agent's own work keeps the main thread.
"""

import logging
import secrets
import threading
from collections.abc import Callable
from datetime import datetime, timezone

import flask
from flask import jsonify, request
from werkzeug.serving import BaseWSGIServer, make_server

from ..__version__ import __version__

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PUBLIC_PATHS = ("/", "/health")
BUILTIN_ROUTES = ["/", "/health", "/status"]


class AgentServer:
    """Flask app for one agent, served by werkzeug on a daemon thread."""

    def __init__(
        self,
        port: int,
        host: str = DEFAULT_HOST,
        api_token: str | None = None,
        public_paths: tuple[str, ...] = DEFAULT_PUBLIC_PATHS,
    ):
        self.host = host
        self.requested_port = port
        self.api_token = api_token
        self.public_paths = set(public_paths)
        self.status_provider: Callable[[], dict] | None = None
        self.custom_routes: list[str] = []

        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None

        self.app = flask.Flask(__name__)
        self.app.before_request(self._check_auth)
        self.app.add_url_rule("/", "root", self._root, methods=["GET"])
        self.app.add_url_rule("/health", "health", self._health, methods=["GET"])
        self.app.add_url_rule("/status", "status", self._status, methods=["GET"])
        self.app.register_error_handler(404, self._not_found)
        self.app.register_error_handler(500, self._server_error)

    @property
    def port(self) -> int:
        """The bound port (differs from the requested one when that was 0)."""
        if self._server:
            return self._server.server_port
        return self.requested_port

    @property
    def running(self) -> bool:
        return self._server is not None

    def add_route(self, method: str, path: str, handler: Callable) -> None:
        """Register a route. ``handler`` is a plain Flask view function."""
        method = method.upper()
        endpoint = f"{method} {path}"
        self.app.add_url_rule(path, endpoint, handler, methods=[method])
        self.custom_routes.append(endpoint)

    def set_status_provider(self, fn: Callable[[], dict]) -> None:
        self.status_provider = fn

    def start(self) -> None:
        self._server = make_server(
            self.host, self.requested_port, self.app, threaded=True
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="agent-http", daemon=True
        )
        self._thread.start()
        logger.info(f"HTTP server listening on http://{self.host}:{self.port}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        logger.info("HTTP server stopped")

    def _check_auth(self):
        if not self.api_token or request.path in self.public_paths:
            return None

        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not secrets.compare_digest(
            token.strip(), self.api_token
        ):
            return jsonify({"error": "Unauthorized"}), 401
        return None

    def _root(self):
        return jsonify(
            {
                "runtime": "agent-runtime",
                "version": __version__,
                "routes": BUILTIN_ROUTES + self.custom_routes,
            }
        )

    def _health(self):
        status = self.status_provider() if self.status_provider else None
        healthy = status.get("running", True) if status else True
        body = {"healthy": healthy, "timestamp": datetime.now(timezone.utc).isoformat()}
        return jsonify(body), 200 if healthy else 503

    def _status(self):
        if not self.status_provider:
            return jsonify({"error": "Status not available"}), 503
        return jsonify(self.status_provider())

    def _not_found(self, e):
        return jsonify({"error": "Not found"}), 404

    def _server_error(self, e):
        logger.error(f"Route error {request.method} {request.path}: {e}")
        return jsonify({"error": str(getattr(e, "original_exception", e))}), 500
