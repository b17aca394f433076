"""Imageboard API layout: URL builders and payload parsing.

Thread payloads look like ``{"posts": [{"no", "sub", "time", "closed",
"archived", "tim", "ext", "name", ...}, ...]}`` with the opening post first;
posts carrying both ``tim`` and ``ext`` have an image. The catalog is a list
of pages, each ``{"threads": [{"no", "sub", "com", "time"}, ...]}``.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from threadkeeper.core.errors import MalformedUpstreamData


@dataclass(frozen=True)
class ChildImage:
    url: str
    filename: str
    poster: Optional[str]


@dataclass(frozen=True)
class ThreadSnapshot:
    thread_id: int
    subject: Optional[str]
    time: int
    closed: bool
    archived: bool
    images: Tuple[ChildImage, ...]

    @property
    def is_closed(self) -> bool:
        return self.closed or self.archived

    @property
    def state_label(self) -> str:
        return "closed" if self.closed else "archived"

    @property
    def image_count(self) -> int:
        return len(self.images)


@dataclass(frozen=True)
class CatalogEntry:
    thread_id: int
    subject: Optional[str]
    comment: Optional[str]
    time: int


def _flag(value: Any) -> bool:
    return value == 1 or value is True


def _timestamp(value: Any) -> Optional[int]:
    """Epoch seconds from a post's ``time`` field; missing is 0, garbage is None."""
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    return int(value)


class BoardApi:
    """Builds URLs for one imageboard deployment and parses its responses."""

    def __init__(self, api_base: str, media_base: str):
        self._api_base = api_base.rstrip("/")
        self._media_base = media_base.rstrip("/")

    def catalog_url(self, board: str) -> str:
        return f"{self._api_base}/{board}/catalog.json"

    def thread_url(self, board: str, thread_id: int) -> str:
        return f"{self._api_base}/{board}/thread/{thread_id}.json"

    def image_url(self, board: str, tim: Any, ext: str) -> str:
        return f"{self._media_base}/{board}/{tim}{ext}"

    def parse_thread(self, board: str, thread_id: int, payload: Any) -> ThreadSnapshot:
        """Validate a thread payload and expand it into its images, in post order."""
        if not isinstance(payload, dict):
            raise MalformedUpstreamData(f"Thread {thread_id} payload is not an object")
        posts = payload.get("posts")
        if not isinstance(posts, list) or not posts or not isinstance(posts[0], dict):
            raise MalformedUpstreamData(f"Invalid or empty API response for thread {thread_id}")

        op = posts[0]
        created = _timestamp(op.get("time"))
        if created is None:
            raise MalformedUpstreamData(f"Thread {thread_id} has a non-numeric time: {op.get('time')!r}")

        images: List[ChildImage] = []
        for post in posts:
            if not isinstance(post, dict):
                continue
            tim, ext = post.get("tim"), post.get("ext")
            if not tim or not ext:
                continue
            images.append(ChildImage(
                url=self.image_url(board, tim, ext),
                filename=f"{tim}{ext}",
                poster=post.get("name"),
            ))

        return ThreadSnapshot(
            thread_id=thread_id,
            subject=op.get("sub"),
            time=created,
            closed=_flag(op.get("closed")),
            archived=_flag(op.get("archived")),
            images=tuple(images),
        )

    def parse_catalog(self, payload: Any) -> List[CatalogEntry]:
        """Flatten catalog pages into entries, skipping records without a numeric id or time."""
        if not isinstance(payload, list):
            raise MalformedUpstreamData("Catalog response was not an array")

        entries: List[CatalogEntry] = []
        for page in payload:
            if not isinstance(page, dict) or not isinstance(page.get("threads"), list):
                continue
            for thread in page["threads"]:
                if not isinstance(thread, dict):
                    continue
                number = thread.get("no")
                if isinstance(number, bool) or not isinstance(number, int):
                    continue
                created = _timestamp(thread.get("time"))
                if created is None:
                    continue
                entries.append(CatalogEntry(
                    thread_id=number,
                    subject=thread.get("sub"),
                    comment=thread.get("com"),
                    time=created,
                ))
        return entries
