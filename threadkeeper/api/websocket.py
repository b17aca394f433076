"""WebSocket manager for real-time status and log updates."""

import logging
import threading
from typing import Any, Dict, Optional

from flask_socketio import SocketIO

# Plain stdlib logger: records from this module must not loop back through
# the WebSocket log handler.
logger = logging.getLogger(__name__)

_LEVEL_TYPES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class WebSocketManager:
    """Manages WebSocket connections and broadcasts."""

    def __init__(self):
        self.socketio: Optional[SocketIO] = None
        self._enabled = False
        self._connection_count = 0
        self._connection_lock = threading.Lock()

    def init_app(self, app, socketio: SocketIO):
        """Initialize the WebSocket manager with Flask-SocketIO instance."""
        self.socketio = socketio
        self._enabled = True
        logger.info("WebSocket manager initialized")

    def client_connected(self):
        """Track a new client connection. Call this from the connect event handler."""
        with self._connection_lock:
            self._connection_count += 1
            current_count = self._connection_count
        logger.debug(f"Client connected. Active connections: {current_count}")

    def client_disconnected(self):
        """Track a client disconnection. Call this from the disconnect event handler."""
        with self._connection_lock:
            self._connection_count = max(0, self._connection_count - 1)
            current_count = self._connection_count
        logger.debug(f"Client disconnected. Active connections: {current_count}")

    def get_connection_count(self) -> int:
        """Get the current number of active WebSocket connections."""
        with self._connection_lock:
            return self._connection_count

    def has_active_connections(self) -> bool:
        return self.get_connection_count() > 0

    def is_enabled(self) -> bool:
        """Check if WebSocket is enabled and ready."""
        return self._enabled and self.socketio is not None

    def broadcast_status_update(self, status_data: Dict[str, Any]):
        """Broadcast a watcher status snapshot to all connected clients."""
        if not self.is_enabled():
            return

        try:
            self.socketio.emit('status_update', status_data)
            logger.debug("Broadcasted status update")
        except Exception as e:
            logger.error(f"Error broadcasting status update: {e}")

    def broadcast_log(self, message: str, log_type: str = 'info'):
        """Broadcast one log line to all clients."""
        if not self.is_enabled() or not self.has_active_connections():
            return

        try:
            self.socketio.emit('log', {'message': message, 'type': log_type})
        except Exception:
            # A failed log delivery is not worth another log line
            return


class WebSocketLogHandler(logging.Handler):
    """Logging handler that forwards records to connected clients as ``log`` events."""

    def __init__(self, manager: WebSocketManager, level: int = logging.INFO):
        super().__init__(level=level)
        self._manager = manager

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_type = _LEVEL_TYPES.get(record.levelno, "info")
            self._manager.broadcast_log(record.getMessage(), log_type)
        except Exception:
            self.handleError(record)


# Global WebSocket manager instance
ws_manager = WebSocketManager()
