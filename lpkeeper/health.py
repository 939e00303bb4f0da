"""
Liveness endpoint. Answers GET / with {"success": true}; nothing else.
"""

import logging
import threading

from flask import Flask, jsonify

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    app = Flask(__name__)

    @app.route("/")
    def index():
        return jsonify({"success": True}), 200

    return app


def start_health_server(port: int, host: str = "0.0.0.0") -> threading.Thread:
    """Serve the health app from a daemon thread so it dies with the agent."""
    app = create_app()
    t = threading.Thread(
        target=app.run,
        kwargs={"host": host, "port": port, "debug": False, "use_reloader": False},
        name="health-server",
        daemon=True,
    )
    t.start()
    logger.info("Listening to port %d", port)
    return t
