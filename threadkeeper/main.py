"""Flask application wiring: orchestrator, routes and the Socket.IO observer channel."""

import atexit
from typing import Optional, Tuple

from flask import Flask
from flask_socketio import SocketIO

from threadkeeper.api.routes import register_watch_routes
from threadkeeper.api.websocket import WebSocketLogHandler, WebSocketManager, ws_manager
from threadkeeper.catalog.client import CatalogClient
from threadkeeper.config.env import DOWNLOAD_DIR, STATE_FILE
from threadkeeper.core.config import WatcherSettings, config
from threadkeeper.core.logger import attach_handler, setup_logger
from threadkeeper.core.storage import JsonKeyValueStore
from threadkeeper.download.orchestrator import Orchestrator
from threadkeeper.download.transfer import HttpTransferManager

logger = setup_logger(__name__)


def build_orchestrator(manager: Optional[WebSocketManager] = None) -> Orchestrator:
    """Assemble an orchestrator backed by HTTP, the local filesystem and the state file."""
    settings = WatcherSettings.from_config()
    user_agent = config.get("USER_AGENT")
    timeout = config.get("REQUEST_TIMEOUT")
    client = CatalogClient(timeout=timeout, user_agent=user_agent)
    transfers = HttpTransferManager.for_settings(DOWNLOAD_DIR, settings, timeout=timeout, user_agent=user_agent)
    return Orchestrator(
        store=JsonKeyValueStore(STATE_FILE),
        transfers=transfers,
        fetch_json=client.fetch_json,
        settings=settings,
        status_sink=manager.broadcast_status_update if manager is not None else None,
    )


def create_app(orchestrator: Orchestrator, manager: WebSocketManager = ws_manager) -> Tuple[Flask, SocketIO]:
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    socketio = SocketIO(app, async_mode="threading", cors_allowed_origins="*")
    manager.init_app(app, socketio)

    register_watch_routes(app, orchestrator)

    @socketio.on("connect")
    def handle_connect():
        manager.client_connected()
        socketio.emit("status_update", orchestrator.get_status())

    @socketio.on("disconnect")
    def handle_disconnect():
        manager.client_disconnected()

    @socketio.on("request_status")
    def handle_status_request():
        socketio.emit("status_update", orchestrator.get_status())

    return app, socketio


orchestrator = build_orchestrator(ws_manager)
app, socketio = create_app(orchestrator)


def start_background() -> None:
    """Load persisted state and start the scheduler loop."""
    attach_handler(WebSocketLogHandler(ws_manager))
    orchestrator.initialize()
    atexit.register(orchestrator.shutdown)
