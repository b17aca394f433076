"""Exception types shared across the watch engine."""

from typing import Optional


class ThreadkeeperError(Exception):
    """Base class for all threadkeeper errors."""


class TransientFetchError(ThreadkeeperError):
    """A catalog/thread fetch failed at the network or HTTP level."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class MalformedUpstreamData(TransientFetchError):
    """Upstream answered, but not with the shape we expect."""


class TransferFailure(ThreadkeeperError):
    """A child transfer was interrupted, timed out, or could not start."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class InvalidFilterPattern(ThreadkeeperError):
    """The discovery filter is not a valid regular expression."""


class StateCorruption(ThreadkeeperError):
    """Persisted state has an unexpected shape."""


class OperationAborted(ThreadkeeperError):
    """The process or the owning thread stopped while work was in flight."""
