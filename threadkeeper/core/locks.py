"""Per-child mutual exclusion for download decisions."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


def download_key(thread_id: int, filename: str) -> str:
    return f"{thread_id}-{filename}"


class _KeyedLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class DownloadLockManager:
    """Hands out one real lock per child key.

    Entries are reference counted so the table only holds keys that are
    currently held or waited on.
    """

    def __init__(self):
        self._locks: Dict[str, _KeyedLock] = {}
        self._table_lock = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Block until ``key`` is free, hold it for the body, always release."""
        with self._table_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._table_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    self._locks.pop(key, None)

    def is_held(self, key: str) -> bool:
        with self._table_lock:
            entry = self._locks.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._locks)
