"""Coalescing notifier for UI refreshes."""

import threading
from typing import Callable, Optional

from threadkeeper.core.logger import setup_logger

logger = setup_logger(__name__)


class Debouncer:
    """Run ``func`` once after ``wait`` seconds of quiet.

    Every ``trigger()`` restarts the quiet period, so a burst of requests
    collapses into a single call.
    """

    def __init__(self, func: Callable[[], None], wait: float):
        self._func = func
        self._wait = wait
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._wait, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Run a pending call right away."""
        with self._lock:
            pending = self._timer is not None
            if pending:
                self._timer.cancel()
                self._timer = None
        if pending:
            self._run()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def _fire(self) -> None:
        with self._lock:
            if self._timer is not threading.current_thread():
                # Superseded by a later trigger, a flush or a cancel
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        try:
            self._func()
        except Exception as e:
            logger.warning(f"Debounced notification failed: {e}")
