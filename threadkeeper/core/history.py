"""Capped, time-ordered ledger of child images already downloaded.

The ledger is shared by every watched thread and is the only global answer
to "has this exact file ever been materialized". Per-thread skipped sets are
rebuilt from it on resume, never assumed equal to it.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set

from threadkeeper.core.errors import StateCorruption
from threadkeeper.core.logger import setup_logger
from threadkeeper.core.models import HistoryEntry

logger = setup_logger(__name__)


def filename_from_path(path: str) -> str:
    return path.rsplit("/", 1)[-1]


class HistoryLedger:
    """Thread-safe path -> HistoryEntry map with a capacity ceiling."""

    def __init__(self, capacity: int, on_change: Optional[Callable[[], None]] = None):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self._entries: Dict[str, HistoryEntry] = {}
        self._lock = threading.Lock()
        self._capacity = capacity
        self._on_change = on_change

    def set_change_callback(self, on_change: Optional[Callable[[], None]]) -> None:
        self._on_change = on_change

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def contains(self, path: str) -> bool:
        with self._lock:
            return path in self._entries

    def get(self, path: str) -> Optional[HistoryEntry]:
        with self._lock:
            return self._entries.get(path)

    def record(self, path: str, thread_id: int, timestamp: Optional[float] = None) -> Optional[str]:
        """Insert or overwrite ``path`` and enforce the capacity ceiling.

        Returns:
            The evicted path, if the insert pushed the ledger over capacity.
        """
        entry = HistoryEntry(timestamp=time.time() if timestamp is None else timestamp, thread_id=thread_id)
        evicted = None
        with self._lock:
            self._entries[path] = entry
            while len(self._entries) > self._capacity:
                evicted = self._evict_oldest()
        if evicted:
            logger.info(f"Removed oldest entry ({evicted}) from download history to maintain size limit")
        self._changed()
        return evicted

    def _evict_oldest(self) -> str:
        """Drop the single oldest entry. Called with lock held."""
        oldest = min(self._entries.items(), key=lambda item: item[1].timestamp)[0]
        del self._entries[oldest]
        return oldest

    def entries_for_thread(self, thread_id: int) -> Set[str]:
        """Filenames (final path segment) recorded for one thread."""
        with self._lock:
            return {
                filename_from_path(path)
                for path, entry in self._entries.items()
                if entry.thread_id == thread_id and filename_from_path(path)
            }

    def purge_expired(self, max_age: float, now: Optional[float] = None) -> int:
        """Remove entries older than ``max_age`` seconds. Returns count removed."""
        cutoff = (time.time() if now is None else now) - max_age
        with self._lock:
            before = len(self._entries)
            expired = [path for path, entry in self._entries.items() if entry.timestamp < cutoff]
            for path in expired:
                del self._entries[path]
            after = len(self._entries)
        if expired:
            logger.info(
                f"Cleaned up {len(expired)} download history entries older than "
                f"{max_age / 86400:.0f} days. Size: {before} -> {after}"
            )
            self._changed()
        return len(expired)

    def clear_thread(self, thread_id: int) -> int:
        with self._lock:
            owned = [path for path, entry in self._entries.items() if entry.thread_id == thread_id]
            for path in owned:
                del self._entries[path]
        if owned:
            self._changed()
        return len(owned)

    def clear_all(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        self._changed()
        return removed

    def to_storage(self) -> List[List[Any]]:
        with self._lock:
            return [[path, entry.to_dict()] for path, entry in self._entries.items()]

    def load(self, raw: Any) -> int:
        """Replace the ledger contents from a stored list of ``[path, entry]`` pairs.

        Entries with a bad shape are dropped with a warning; a stored value
        that is not a list at all raises StateCorruption. Returns the number
        of entries dropped.
        """
        if raw is None:
            raw = []
        if not isinstance(raw, list):
            raise StateCorruption("Stored download history is not a list")

        loaded: Dict[str, HistoryEntry] = {}
        dropped = 0
        for pair in raw:
            try:
                if not isinstance(pair, (list, tuple)) or len(pair) != 2 or not isinstance(pair[0], str):
                    raise StateCorruption(f"Malformed history pair: {pair!r}")
                loaded[pair[0]] = HistoryEntry.from_dict(pair[1])
            except StateCorruption as e:
                logger.warning(f"Removing invalid entry from download history: {e}")
                dropped += 1

        with self._lock:
            self._entries = loaded
            while len(self._entries) > self._capacity:
                self._evict_oldest()
        return dropped
