"""Flask control API for streamkeeper.

Exposes reconnection status, the manual "reconnect now" trigger and the
diagnostic event stream. The Telegram bot talks to this too.
"""

import json
import logging
import os

from flask import Flask, Response, jsonify, request

from streamkeeper.config import Config
from streamkeeper.server.service import PlaybackService, ServiceNotRunning

logger = logging.getLogger(__name__)


def create_app(
    config: Config | None = None,
    service: PlaybackService | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Full configuration. Uses defaults if None.
        service: Pre-built playback service. When None one is built from
            config and started.
    """
    if config is None:
        config = service.config if service else Config()

    os.makedirs(config.server.data_dir, exist_ok=True)

    app = Flask(__name__)
    app.config["STREAMKEEPER"] = config

    if service is None:
        service = PlaybackService(config)
        service.start()
    event_bus = service.event_bus

    # Global JSON error handler, no bare HTML 500s
    @app.errorhandler(Exception)
    def handle_exception(e):
        from werkzeug.exceptions import HTTPException
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error: %s", e)
        return jsonify({"error": str(e)}), 500

    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    app.service = service
    app.event_bus = event_bus

    @app.route("/api/health")
    def health():
        from streamkeeper.__about__ import __version__
        return jsonify({"ok": True, "version": __version__, "running": service.is_running})

    @app.route("/api/status")
    def status():
        """Reconnection state plus engine status."""
        return jsonify(service.status())

    @app.route("/api/reconnect", methods=["POST"])
    def reconnect():
        """Reset backoff and recreate the session now."""
        logger.info("Manual reconnect via API from %s", request.remote_addr)
        try:
            snapshot = service.request_reconnect()
        except ServiceNotRunning as e:
            logger.warning("Manual reconnect refused: %s", e)
            return jsonify({"error": str(e)}), 503
        return jsonify({"ok": True, "message": "Reconnecting", "status": snapshot})

    # --- Event Endpoints ---

    @app.route("/api/events")
    def events_stream():
        """SSE stream of real-time events."""
        def generate():
            q = event_bus.subscribe()
            try:
                while True:
                    try:
                        event = q.get(timeout=30)
                        data = json.dumps(event)
                        yield f"event: {event['type']}\ndata: {data}\n\n"
                    except Exception:
                        # Timeout - send keepalive heartbeat
                        yield ": heartbeat\n\n"
            finally:
                event_bus.unsubscribe(q)

        return Response(generate(), mimetype="text/event-stream")

    @app.route("/api/events/recent")
    def events_recent():
        """Get recent events, newest first."""
        try:
            limit = int(request.args.get("limit", 20))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        event_type = request.args.get("type") or None
        return jsonify(event_bus.recent(limit, event_type=event_type))

    return app
