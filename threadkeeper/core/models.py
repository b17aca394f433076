"""Data structures for watched threads, download history and search state."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Set

from threadkeeper.core.errors import StateCorruption
from threadkeeper.core.logger import setup_logger

logger = setup_logger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def sanitize_component(value: Optional[str], fallback: str) -> str:
    """Make a single path component filesystem-safe."""
    if not value:
        return fallback
    return _UNSAFE_PATH_CHARS.sub("_", value)


def clean_destination(path: Optional[str], default: str) -> str:
    """Normalize a destination root to safe relative components.

    Empty, ``.`` and ``..`` segments are dropped so the result always stays
    beneath the download root.
    """
    parts = re.split(r"[\\/]+", (path or "").strip())
    kept = [sanitize_component(part, "") for part in parts if part.strip(".")]
    return "/".join(part for part in kept if part) or default


def build_child_path(destination: str, thread_id: int, poster: Optional[str], filename: Optional[str]) -> str:
    """Fully-qualified history key for one child image."""
    return "/".join((
        destination.strip("/"),
        str(thread_id),
        sanitize_component(poster, "Anonymous"),
        sanitize_component(filename, "unknown_file"),
    ))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class WatchedItem:
    """A thread under poll-and-download supervision.

    ``skipped_images`` is the source of truth for progress; the downloaded
    count is always derived from it and capped by ``total_images``.
    """

    id: int
    board: str
    title: str
    url: str
    time: int = 0
    active: bool = False
    closed: bool = False
    error: bool = False
    total_images: int = 0
    skipped_images: Set[str] = field(default_factory=set)

    @property
    def downloaded_count(self) -> int:
        return min(len(self.skipped_images), max(0, self.total_images))

    @property
    def is_eligible(self) -> bool:
        return self.active and not self.error and not self.closed

    @property
    def has_pending_work(self) -> bool:
        return self.total_images == 0 or self.downloaded_count < self.total_images

    @property
    def looks_complete(self) -> bool:
        return self.total_images > 0 and self.downloaded_count >= self.total_images

    def label(self) -> str:
        return f'"{self.title}" ({self.id})'

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "board": self.board,
            "title": self.title,
            "url": self.url,
            "time": self.time,
            "active": self.active,
            "closed": self.closed,
            "error": self.error,
            "totalImages": self.total_images,
            "downloadedCount": self.downloaded_count,
            "skippedImages": sorted(self.skipped_images),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "WatchedItem":
        """Rebuild an item from storage, repairing fields with a bad shape.

        Raises:
            StateCorruption: if the record has no usable id.
        """
        if not isinstance(data, dict):
            raise StateCorruption(f"Thread record is not an object: {data!r}")
        try:
            thread_id = int(data.get("id"))
        except (TypeError, ValueError):
            raise StateCorruption(f"Thread record has an invalid id: {data.get('id')!r}")

        raw_skipped = data.get("skippedImages", [])
        if isinstance(raw_skipped, (list, tuple, set)):
            skipped = {str(name) for name in raw_skipped if name}
        else:
            logger.warning(f"Invalid skippedImages format for thread {thread_id}, resetting.")
            skipped = set()

        total = _as_int(data.get("totalImages"))
        if total < 0:
            logger.warning(f"Negative image total for thread {thread_id}, resetting to 0.")
            total = 0

        return cls(
            id=thread_id,
            board=str(data.get("board") or ""),
            title=str(data.get("title") or f"Thread {thread_id}"),
            url=str(data.get("url") or ""),
            time=_as_int(data.get("time")),
            active=_as_bool(data.get("active")),
            closed=_as_bool(data.get("closed")),
            error=_as_bool(data.get("error")),
            total_images=total,
            skipped_images=skipped,
        )


@dataclass(frozen=True)
class HistoryEntry:
    """One materialized child: when it landed and which thread owns it."""

    timestamp: float
    thread_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "threadId": self.thread_id}

    @classmethod
    def from_dict(cls, data: Any) -> "HistoryEntry":
        if not isinstance(data, dict):
            raise StateCorruption(f"History entry is not an object: {data!r}")
        timestamp = data.get("timestamp")
        thread_id = data.get("threadId", data.get("thread_id"))
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise StateCorruption(f"History entry has an invalid timestamp: {timestamp!r}")
        if isinstance(thread_id, bool) or not isinstance(thread_id, int):
            raise StateCorruption(f"History entry has an invalid thread id: {thread_id!r}")
        return cls(timestamp=float(timestamp), thread_id=thread_id)


@dataclass
class SearchParams:
    """Last board/filter/destination the watcher was started with."""

    board: str = ""
    search_term: str = ""
    download_path: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "board": self.board,
            "searchTerm": self.search_term,
            "downloadPath": self.download_path,
        }

    @classmethod
    def from_dict(cls, data: Any, default_destination: str) -> "SearchParams":
        if not isinstance(data, dict):
            if data is not None:
                logger.warning("Invalid stored search parameters, resetting.")
            data = {}
        return cls(
            board=str(data.get("board") or ""),
            search_term=str(data.get("searchTerm") or ""),
            download_path=clean_destination(data.get("downloadPath"), default_destination),
        )


class MaterializeResult(NamedTuple):
    """Outcome of one child download decision."""

    success: bool
    downloaded: bool


def serialize_items(items: List[WatchedItem]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]
