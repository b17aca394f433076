"""Configuration singleton with ENV > settings file > default resolution."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from threadkeeper.config import env

DAY = 24 * 60 * 60

# Built-in defaults. The type of each default decides how ENV and file
# values are coerced.
DEFAULTS: Dict[str, Any] = {
    "MAX_CONCURRENT": 5,
    "TICK_INTERVAL": 60.0,
    "STUCK_TIMEOUT": 300.0,
    "MAX_RETRIES": 3,
    "RETRY_BASE_DELAY": 1.5,
    "DOWNLOAD_TIMEOUT": 15.0,
    "HISTORY_CAPACITY": 18000,
    "HISTORY_RETENTION": float(7 * DAY),
    "HISTORY_CLEANUP_INTERVAL": float(DAY),
    "STALE_THREAD_AGE": float(7 * DAY),
    "UI_DEBOUNCE": 0.6,
    "RESUME_COOLDOWN": 2.0,
    "API_BASE_URL": "https://a.4cdn.org",
    "MEDIA_BASE_URL": "https://i.4cdn.org",
    "DEFAULT_DESTINATION": "4chan_downloads",
    "USER_AGENT": "threadkeeper/1.0",
    "REQUEST_TIMEOUT": 30.0,
}


def _coerce(value: Any, default: Any) -> Any:
    """Coerce a raw ENV/file value to the type of its default."""
    if default is None or value is None:
        return value
    if isinstance(default, bool):
        if isinstance(value, str):
            return env.string_to_bool(value)
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


class Config:
    """
    Dynamic configuration singleton that provides live settings access.

    Settings are resolved with priority: ENV var > settings file > default.
    Values are cached and can be refreshed when the settings file changes.
    """

    _instance: Optional['Config'] = None
    _lock = Lock()

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._cache: Dict[str, Any] = {}
        self._from_env: set = set()
        self._cache_lock = Lock()
        self._settings_file: Path = env.SETTINGS_FILE
        self._initialized = True
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._cache_lock:
            if self._loaded:
                return
            self._load_settings()

    def _read_settings_file(self) -> Dict[str, Any]:
        try:
            if self._settings_file.exists():
                data = json.loads(self._settings_file.read_text())
                if isinstance(data, dict):
                    return data
        except (json.JSONDecodeError, OSError):
            # Unreadable settings fall back to defaults; ENV still applies.
            pass
        return {}

    def _load_settings(self) -> None:
        file_values = self._read_settings_file()
        self._cache.clear()
        self._from_env.clear()

        for key, default in DEFAULTS.items():
            raw = default
            if key in os.environ:
                raw = os.environ[key]
                self._from_env.add(key)
            elif key in file_values:
                raw = file_values[key]
            try:
                self._cache[key] = _coerce(raw, default)
            except (TypeError, ValueError):
                self._cache[key] = default

        # Unknown keys from the file are kept verbatim
        for key, value in file_values.items():
            self._cache.setdefault(key, value)

        self._loaded = True

    def refresh(self) -> None:
        """Reload all cached settings from ENV and the settings file."""
        with self._cache_lock:
            self._loaded = False
            self._load_settings()

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value by key.

        Args:
            key: The setting key (e.g., 'MAX_CONCURRENT')
            default: Default value if setting not found

        Returns:
            The setting value, or default if not found
        """
        self._ensure_loaded()
        return self._cache.get(key, default)

    def __getattr__(self, name: str) -> Any:
        """
        Allow attribute-style access to settings.

        Example: config.MAX_CONCURRENT instead of config.get('MAX_CONCURRENT')
        """
        if name.startswith('_'):
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        self._ensure_loaded()

        if name in self._cache:
            return self._cache[name]

        if hasattr(env, name):
            return getattr(env, name)

        raise AttributeError(f"Setting '{name}' not found in config or env")

    def is_from_env(self, key: str) -> bool:
        """Check if a setting's value comes from an environment variable."""
        self._ensure_loaded()
        return key in self._from_env

    def get_all(self) -> Dict[str, Any]:
        """Get all cached settings as a dictionary."""
        self._ensure_loaded()
        return dict(self._cache)


# Global singleton instance
config = Config()


@dataclass(frozen=True)
class WatcherSettings:
    """Immutable snapshot of the settings the watch engine runs with."""

    max_concurrent: int = DEFAULTS["MAX_CONCURRENT"]
    tick_interval: float = DEFAULTS["TICK_INTERVAL"]
    stuck_timeout: float = DEFAULTS["STUCK_TIMEOUT"]
    max_retries: int = DEFAULTS["MAX_RETRIES"]
    retry_base_delay: float = DEFAULTS["RETRY_BASE_DELAY"]
    download_timeout: float = DEFAULTS["DOWNLOAD_TIMEOUT"]
    history_capacity: int = DEFAULTS["HISTORY_CAPACITY"]
    history_retention: float = DEFAULTS["HISTORY_RETENTION"]
    history_cleanup_interval: float = DEFAULTS["HISTORY_CLEANUP_INTERVAL"]
    stale_thread_age: float = DEFAULTS["STALE_THREAD_AGE"]
    ui_debounce: float = DEFAULTS["UI_DEBOUNCE"]
    resume_cooldown: float = DEFAULTS["RESUME_COOLDOWN"]
    api_base_url: str = DEFAULTS["API_BASE_URL"]
    media_base_url: str = DEFAULTS["MEDIA_BASE_URL"]
    default_destination: str = DEFAULTS["DEFAULT_DESTINATION"]

    @property
    def child_pause(self) -> float:
        """Pause between newly downloaded children of one thread."""
        return self.retry_base_delay / 3

    @classmethod
    def from_config(cls, source: Optional[Config] = None) -> 'WatcherSettings':
        source = source or config
        return cls(
            max_concurrent=source.get("MAX_CONCURRENT"),
            tick_interval=source.get("TICK_INTERVAL"),
            stuck_timeout=source.get("STUCK_TIMEOUT"),
            max_retries=source.get("MAX_RETRIES"),
            retry_base_delay=source.get("RETRY_BASE_DELAY"),
            download_timeout=source.get("DOWNLOAD_TIMEOUT"),
            history_capacity=source.get("HISTORY_CAPACITY"),
            history_retention=source.get("HISTORY_RETENTION"),
            history_cleanup_interval=source.get("HISTORY_CLEANUP_INTERVAL"),
            stale_thread_age=source.get("STALE_THREAD_AGE"),
            ui_debounce=source.get("UI_DEBOUNCE"),
            resume_cooldown=source.get("RESUME_COOLDOWN"),
            api_base_url=source.get("API_BASE_URL"),
            media_base_url=source.get("MEDIA_BASE_URL"),
            default_destination=source.get("DEFAULT_DESTINATION"),
        )
