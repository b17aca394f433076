"""Persistent JSON key-value store for watcher state.

Stores watched threads, search parameters and download history in
CONFIG_DIR so progress survives restarts.
"""

import json
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping

from threadkeeper.core.logger import setup_logger

logger = setup_logger(__name__)

KEY_THREADS = "watched_threads"
KEY_SEARCH_PARAMS = "last_search_params"
KEY_HISTORY = "downloaded_images"
KEY_RUNNING = "is_running"

ALL_KEYS = (KEY_THREADS, KEY_SEARCH_PARAMS, KEY_HISTORY, KEY_RUNNING)


class JsonKeyValueStore:
    """Thread-safe key-value store backed by one JSON file."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Any]:
        try:
            if self._path.exists():
                data = json.loads(self._path.read_text())
                if isinstance(data, dict):
                    return data
                logger.warning(f"State file {self._path} is not an object, ignoring it")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load state file {self._path}: {e}")
        return {}

    def _save(self, data: Dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".state-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as handle:
                    json.dump(data, handle)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error(f"Failed to save state file {self._path}: {e}")

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the stored values for the keys that exist."""
        with self._lock:
            data = self._load()
        return {key: data[key] for key in keys if key in data}

    def set(self, values: Mapping[str, Any]) -> None:
        with self._lock:
            data = self._load()
            data.update(values)
            self._save(data)

    def remove(self, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._load()
            changed = False
            for key in keys:
                if key in data:
                    del data[key]
                    changed = True
            if changed:
                self._save(data)
