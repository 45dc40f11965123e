"""
Flask REST API for the AquaFeed bridge.

This module provides the BridgeAPI class which manages the Flask application
and hands requests to the bridge service running on an asyncio event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Coroutine
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from flask import Flask, request
from flask_cors import CORS

from aquafeed_bridge import __version__

from .routes import setup_command_routes, setup_mqtt_routes, setup_schedule_routes
from .validation import APIError, format_error_response

if TYPE_CHECKING:
    from aquafeed_bridge.config.config_manager import ConfigManager
    from aquafeed_bridge.mqtt.service import BridgeService

DEFAULT_REQUEST_TIMEOUT = 45.0


class BridgeAPI:
    """
    Flask REST API for the AquaFeed bridge.

    Flask serves requests on its own threads; bridge coroutines are
    submitted to ``loop`` and their results awaited with a timeout.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        service: BridgeService,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        """
        Initialize BridgeAPI.

        Args:
            config_manager: Configuration manager instance
            service: Bridge service the endpoints act on
            loop: Event loop the bridge service runs on
        """
        self.config = config_manager
        self.service = service
        self.loop = loop
        self.logger = logging.getLogger("aquafeed_bridge.api")

        self.app = Flask(__name__)
        CORS(self.app)

        self.running = False
        self.server_thread: threading.Thread | None = None

        self._configure_app()
        self._setup_error_handlers()
        self.setup_routes()

        self.logger.info("BridgeAPI initialized")

    @property
    def request_timeout(self) -> float:
        """Seconds a request waits for the bridge."""
        api_config = self.config.get_config("system").get("api", {})
        return float(api_config.get("request_timeout", DEFAULT_REQUEST_TIMEOUT))

    def _configure_app(self) -> None:
        """Configure Flask application settings."""
        api_config = self.config.get_config("system").get("api", {})
        self.app.config.update(
            {
                "DEBUG": api_config.get("debug", False),
                "TESTING": False,
                "JSON_SORT_KEYS": False,
            },
        )

    def _setup_error_handlers(self) -> None:
        """Setup Flask error handlers for consistent error responses."""

        @self.app.errorhandler(APIError)
        def handle_api_error(error: APIError) -> tuple[dict[str, Any], int]:
            self.logger.error(
                "API Error: %s (status: %d)",
                error.message,
                error.status_code,
            )
            return format_error_response(
                error.message,
                error.status_code,
                error.error_code,
                error.source,
                error.meta,
            )

        @self.app.errorhandler(404)
        def handle_not_found(error: Any) -> tuple[dict[str, Any], int]:
            return format_error_response(
                "The requested resource was not found",
                404,
                "NOT_FOUND",
            )

        @self.app.errorhandler(405)
        def handle_method_not_allowed(error: Any) -> tuple[dict[str, Any], int]:
            return format_error_response(
                f"Method {request.method} not allowed for {request.path}",
                405,
                "METHOD_NOT_ALLOWED",
            )

        @self.app.errorhandler(500)
        def handle_internal_error(error: Any) -> tuple[dict[str, Any], int]:
            self.logger.exception("Internal server error: %s", error)
            return format_error_response(
                "An internal server error occurred",
                500,
                "INTERNAL_ERROR",
            )

        @self.app.before_request
        def log_request() -> None:
            self.logger.debug(
                "API Request: %s %s from %s",
                request.method,
                request.path,
                request.remote_addr,
            )

    def run_coroutine(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """
        Run a bridge coroutine on the bridge loop and wait for its result.

        Raises:
            APIError: 503 if the loop is not running, 504 on timeout.
        """
        if self.loop.is_closed() or not self.loop.is_running():
            coro.close()
            raise APIError("Bridge is not running", 503, "BRIDGE_UNAVAILABLE")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout=self.request_timeout)
        except TimeoutError as e:
            future.cancel()
            raise APIError(
                "Timed out waiting for the bridge",
                504,
                "BRIDGE_TIMEOUT",
            ) from e

    def setup_routes(self) -> None:
        """Register all API routes."""

        @self.app.route("/api/health", methods=["GET"])
        def health_check() -> dict[str, Any]:
            sink_health = self.run_coroutine(self.service.sink.get_health_status())
            return {
                "status": "healthy",
                "service": "aquafeed-bridge",
                "version": __version__,
                "bridge_running": self.service.running,
                "mqtt": self.service.status().to_dict(),
                "storage": asdict(sink_health),
            }

        @self.app.route("/api/stats", methods=["GET"])
        def stats() -> dict[str, Any]:
            return {"data": {"type": "bridge-stats", "attributes": self.service.get_stats()}}

        setup_mqtt_routes(self.app, self.service, self.run_coroutine)
        setup_command_routes(self.app, self.service, self.run_coroutine)
        setup_schedule_routes(self.app, self.service, self.run_coroutine)

        self.logger.info("API routes registered")

    def start(self) -> None:
        """Start the Flask server in a daemon thread."""
        if self.running:
            self.logger.warning("API server is already running")
            return

        api_config = self.config.get_config("system").get("api", {})
        host = api_config.get("host", "0.0.0.0")  # nosec B104 - Configurable bind address  # noqa: S104
        port = api_config.get("port", 5000)
        debug = api_config.get("debug", False)

        self.logger.info("Starting API server on %s:%d", host, port)

        def run_server() -> None:
            try:
                self.app.run(
                    host=host,
                    port=port,
                    debug=debug,
                    use_reloader=False,
                    threaded=True,
                )
            except Exception:
                self.logger.exception("API server error")

        self.server_thread = threading.Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

    def stop(self) -> None:
        """
        Stop the Flask API server.

        The development server has no clean shutdown; the daemon thread ends
        with the process.
        """
        if not self.running:
            return
        self.logger.info("Stopping API server")
        self.running = False
