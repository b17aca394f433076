"""Watched-thread registry.

The registry owns the canonical list of WatchedItem records. Other
components keep ids, not item references, and go through ``edit()`` for
any consult-then-mutate sequence so the read and the write happen under
the same lock.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set

from threadkeeper.core.logger import setup_logger
from threadkeeper.core.models import WatchedItem

logger = setup_logger(__name__)


class WatchRegistry:
    """Thread-safe, insertion-ordered collection of watched threads plus their stuck timers."""

    def __init__(self, on_change: Optional[Callable[[], None]] = None):
        self._items: List[WatchedItem] = []
        self._timers: Dict[int, float] = {}
        self._lock = threading.RLock()
        self._on_change = on_change

    def set_change_callback(self, on_change: Optional[Callable[[], None]]) -> None:
        self._on_change = on_change

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    # -- structure -------------------------------------------------------

    def add(self, item: WatchedItem) -> bool:
        """Register ``item``. A second record with the same id is dropped."""
        with self._lock:
            if any(existing.id == item.id for existing in self._items):
                logger.warning(f"Removed duplicate thread entry {item.id} ({item.title}) during deduplication")
                return False
            self._items.append(item)
        self._changed()
        return True

    def load(self, items: Iterable[WatchedItem]) -> int:
        """Replace the contents, collapsing duplicate ids (first wins). Returns duplicates dropped."""
        unique: List[WatchedItem] = []
        seen: Set[int] = set()
        dropped = 0
        for item in items:
            if item.id in seen:
                logger.warning(f"Removed duplicate thread entry {item.id} ({item.title}) during deduplication")
                dropped += 1
                continue
            seen.add(item.id)
            unique.append(item)
        with self._lock:
            self._items = unique
            self._timers.clear()
        return dropped

    def remove(self, thread_id: int) -> Optional[WatchedItem]:
        with self._lock:
            for index, item in enumerate(self._items):
                if item.id == thread_id:
                    del self._items[index]
                    self._timers.pop(thread_id, None)
                    break
            else:
                return None
        self._changed()
        return item

    def find(self, thread_id: int) -> Optional[WatchedItem]:
        with self._lock:
            for item in self._items:
                if item.id == thread_id:
                    return item
        return None

    def all(self) -> List[WatchedItem]:
        with self._lock:
            return list(self._items)

    def ids(self) -> List[int]:
        with self._lock:
            return [item.id for item in self._items]

    def __contains__(self, thread_id: int) -> bool:
        return self.find(thread_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @contextmanager
    def edit(self, thread_id: int) -> Iterator[Optional[WatchedItem]]:
        """Hold the registry lock around a read-modify-write of one item.

        Yields None if the id is not registered. Change listeners run after
        the lock is released.
        """
        with self._lock:
            item = self.find(thread_id)
            yield item
        if item is not None:
            self._changed()

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the registry lock across several calls (the lock is reentrant)."""
        with self._lock:
            yield

    def touch(self) -> None:
        """Signal a change made through an ``edit()``-less path."""
        self._changed()

    # -- progress --------------------------------------------------------

    def mark_skipped(self, thread_id: int, filename: str) -> bool:
        """Add ``filename`` to a thread's skipped set. Returns True if it was new."""
        with self._lock:
            item = self.find(thread_id)
            if item is None or filename in item.skipped_images:
                return False
            item.skipped_images.add(filename)
        self._changed()
        return True

    def is_skipped(self, thread_id: int, filename: str) -> bool:
        with self._lock:
            item = self.find(thread_id)
            return item is not None and filename in item.skipped_images

    def is_active(self, thread_id: int) -> bool:
        with self._lock:
            item = self.find(thread_id)
            return item is not None and item.active

    # -- derived views ---------------------------------------------------

    def eligible(self) -> List[WatchedItem]:
        with self._lock:
            return [item for item in self._items if item.is_eligible]

    def eligible_count(self) -> int:
        return len(self.eligible())

    def any_running(self) -> bool:
        with self._lock:
            return any(item.active and not item.closed for item in self._items)

    # -- stuck timers ----------------------------------------------------

    def start_timer(self, thread_id: int, now: Optional[float] = None, restart: bool = False) -> bool:
        """Start the stuck timer unless one is running. Returns True if it was (re)started."""
        with self._lock:
            if thread_id in self._timers and not restart:
                return False
            self._timers[thread_id] = time.time() if now is None else now
            return True

    def clear_timer(self, thread_id: int) -> None:
        with self._lock:
            self._timers.pop(thread_id, None)

    def clear_all_timers(self) -> None:
        with self._lock:
            self._timers.clear()

    def timer_started(self, thread_id: int) -> Optional[float]:
        with self._lock:
            return self._timers.get(thread_id)

    def has_timer(self, thread_id: int) -> bool:
        with self._lock:
            return thread_id in self._timers
