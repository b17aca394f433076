"""Logging configuration and custom logger with error tracing."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, List

from threadkeeper.config.env import ENABLE_LOGGING, LOG_FILE, LOG_LEVEL

# Loggers built by setup_logger are not registered with the logging manager,
# so shared handlers have to be attached to each of them explicitly.
_loggers: List["CustomLogger"] = []
_shared_handlers: List[logging.Handler] = []
_registry_lock = Lock()

# Chatty lines that are only worth printing once in a row
_REPEAT_SUPPRESSED_PREFIXES = (
    "Searching catalog",
    "No new matching threads",
)


class RepeatFilter(logging.Filter):
    """Drop consecutive duplicates of known repetitive messages."""

    def __init__(self):
        super().__init__()
        self._last_message = None
        self._lock = Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        with self._lock:
            repeated = message == self._last_message
            self._last_message = message
        if repeated and message.startswith(_REPEAT_SUPPRESSED_PREFIXES):
            return False
        return True


_repeat_filter = RepeatFilter()


class CustomLogger(logging.Logger):
    """Custom logger class with additional error_trace method."""

    def error_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an error message with full stack trace."""
        self.log_resource_usage()
        kwargs.pop('exc_info', None)
        self.error(msg, *args, exc_info=True, **kwargs)

    def warning_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log a warning message with full stack trace."""
        self.log_resource_usage()
        kwargs.pop('exc_info', None)
        self.warning(msg, *args, exc_info=True, **kwargs)

    def info_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an info message (stack trace only if exception active)."""
        kwargs.pop('exc_info', None)
        has_exception = sys.exc_info()[0] is not None
        self.info(msg, *args, exc_info=has_exception, **kwargs)

    def log_resource_usage(self):
        # Best-effort only; this should never raise during exception logging.
        try:
            import psutil

            process = psutil.Process()
            app_memory_mb = process.memory_info().rss / (1024 * 1024)
            memory = psutil.virtual_memory()
            available_mb = memory.available / (1024 * 1024)
            self.debug(
                f"Process Memory: {app_memory_mb:.2f} MB, "
                f"Available={available_mb:.2f} MB, Threads: {process.num_threads()}"
            )
        except Exception:
            return


def attach_handler(handler: logging.Handler) -> None:
    """Attach a handler to every logger created by setup_logger, now and later."""
    with _registry_lock:
        if handler in _shared_handlers:
            return
        _shared_handlers.append(handler)
        for logger in _loggers:
            logger.addHandler(handler)


def detach_handler(handler: logging.Handler) -> None:
    """Remove a handler previously installed with attach_handler."""
    with _registry_lock:
        if handler not in _shared_handlers:
            return
        _shared_handlers.remove(handler)
        for logger in _loggers:
            logger.removeHandler(handler)


def setup_logger(name: str, log_file: Path = LOG_FILE) -> CustomLogger:
    """Set up and configure a logger instance.

    Args:
        name: The name of the logger instance
        log_file: Optional path to log file. If None, logs only to stdout/stderr

    Returns:
        CustomLogger: Configured logger instance with error_trace method
    """
    logging.setLoggerClass(CustomLogger)

    logger = CustomLogger(name)
    log_level = getattr(logging, LOG_LEVEL, logging.INFO)
    logger.setLevel(log_level)
    logger.addFilter(_repeat_filter)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    console_handler.addFilter(lambda record: record.levelno < logging.ERROR)  # Only allow logs below ERROR to stdout
    logger.addHandler(console_handler)

    error_handler = logging.StreamHandler(sys.stderr)
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    logger.addHandler(error_handler)

    try:
        if ENABLE_LOGGING and log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=5
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    except Exception as e:
        logger.error_trace(f"Failed to create log file: {e}")

    with _registry_lock:
        for handler in _shared_handlers:
            logger.addHandler(handler)
        _loggers.append(logger)

    return logger
