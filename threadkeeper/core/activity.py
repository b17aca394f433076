"""Transient run-time state: process run flag, processing slots, in-flight transfers."""

import threading
from typing import Dict, List, Optional, Set, Tuple

from threadkeeper.core.registry import WatchRegistry


class RunState:
    """Process-wide run flag.

    ``start()``/``stop()`` record user intent; ``recompute()`` re-derives the
    flag from the registry (some thread active and not closed), which is the
    value reported to observers and persisted.
    """

    def __init__(self):
        self._running = False
        self._shutdown = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running and not self._shutdown.is_set()

    def start(self) -> None:
        with self._lock:
            self._running = True

    def stop(self) -> None:
        with self._lock:
            self._running = False

    def recompute(self, registry: WatchRegistry) -> bool:
        derived = registry.any_running()
        with self._lock:
            self._running = derived
        return derived

    def shutdown(self) -> None:
        """Process is exiting: every cooperative check point unwinds."""
        self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()


class ActivityTracker:
    """Processing markers per thread and transfer handles per child.

    The processing marker set is what the concurrency cap counts, so
    claiming a slot and checking the cap happen under one lock.
    """

    def __init__(self):
        self._processing: Set[int] = set()
        self._transfers: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    # -- processing slots ------------------------------------------------

    def claim(self, thread_id: int, cap: int) -> bool:
        """Mark ``thread_id`` mid-processing if it is not already and a slot is free."""
        with self._lock:
            if thread_id in self._processing or len(self._processing) >= cap:
                return False
            self._processing.add(thread_id)
            return True

    def release(self, thread_id: int) -> None:
        with self._lock:
            self._processing.discard(thread_id)

    def is_processing(self, thread_id: int) -> bool:
        with self._lock:
            return thread_id in self._processing

    def processing_count(self) -> int:
        with self._lock:
            return len(self._processing)

    def processing_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._processing)

    # -- in-flight transfers ---------------------------------------------

    def track_transfer(self, key: str, thread_id: int, transfer_id: int) -> None:
        with self._lock:
            self._transfers[key] = (thread_id, transfer_id)

    def untrack_transfer(self, key: str) -> None:
        with self._lock:
            self._transfers.pop(key, None)

    def transfer_for(self, key: str) -> Optional[int]:
        with self._lock:
            handle = self._transfers.get(key)
        return handle[1] if handle else None

    def pop_transfers(self, thread_id: Optional[int] = None) -> List[int]:
        """Forget and return transfer ids for one thread, or for all when None."""
        with self._lock:
            keys = [
                key for key, (owner, _) in self._transfers.items()
                if thread_id is None or owner == thread_id
            ]
            return [self._transfers.pop(key)[1] for key in keys]

    def clear(self) -> None:
        with self._lock:
            self._transfers.clear()
