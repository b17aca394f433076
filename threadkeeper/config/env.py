"""Environment-derived process settings, resolved once at import time."""

import os
from pathlib import Path


def string_to_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "yes", "1", "y", "on")


CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
DOWNLOAD_DIR = Path(os.getenv("DOWNLOAD_DIR", "/downloads"))

LOG_ROOT = Path(os.getenv("LOG_ROOT", "/var/log"))
LOG_DIR = LOG_ROOT / "threadkeeper"
LOG_FILE = LOG_DIR / "threadkeeper.log"
ENABLE_LOGGING = string_to_bool(os.getenv("ENABLE_LOGGING", "true"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
FLASK_PORT = int(os.getenv("FLASK_PORT", "8084"))
DEBUG = string_to_bool(os.getenv("DEBUG", "false"))

SETTINGS_FILE = CONFIG_DIR / "settings.json"
STATE_FILE = CONFIG_DIR / "state.json"
