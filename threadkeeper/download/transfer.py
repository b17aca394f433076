"""Byte-transfer manager: begins downloads and reports their outcome as events.

Listeners receive a ``TransferEvent`` when a transfer is created (with its
final, possibly uniquified, relative filename), when it completes, and when
it is interrupted. Callers wait on those events rather than on the worker.
"""

import itertools
import os
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import requests

from threadkeeper.core.config import WatcherSettings
from threadkeeper.core.errors import TransferFailure
from threadkeeper.core.logger import setup_logger

logger = setup_logger(__name__)

DOWNLOAD_CHUNK_SIZE = 131072
PARTIAL_SUFFIX = ".part"

# Collision-avoidance rename: "name (1).ext"
DUPLICATE_NAME_PATTERN = re.compile(r"^(.*) \((\d+)\)(\.\w+)$")


class TransferState(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class TransferEvent:
    transfer_id: int
    state: TransferState
    filename: str
    error: Optional[str] = None


TransferListener = Callable[[TransferEvent], None]


@dataclass
class _Transfer:
    transfer_id: int
    url: str
    relative_path: str
    path: Path
    state: TransferState = TransferState.CREATED
    cancelled: threading.Event = field(default_factory=threading.Event)


def uniquified_name(name: str, attempt: int) -> str:
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        return f"{name} ({attempt})"
    return f"{stem} ({attempt}).{ext}"


class HttpTransferManager:
    """Streams URLs to files under ``root`` on a small worker pool."""

    def __init__(
        self,
        root: Path,
        session: Optional[requests.Session] = None,
        max_workers: int = 4,
        timeout: float = 30.0,
        user_agent: Optional[str] = None,
    ):
        self._root = Path(root)
        self._session = session or requests.Session()
        if user_agent:
            self._session.headers.update({"User-Agent": user_agent})
        self._timeout = timeout
        self._max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="Transfer")
        self._ids = itertools.count(1)
        self._transfers: Dict[int, _Transfer] = {}
        self._reserved: Set[Path] = set()
        self._listeners: List[TransferListener] = []
        self._lock = threading.Lock()

    @classmethod
    def for_settings(
        cls,
        root: Path,
        settings: WatcherSettings,
        timeout: float = 30.0,
        user_agent: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> "HttpTransferManager":
        """Build a manager whose pool never makes an engine attempt wait in a queue.

        A timed-out attempt keeps its worker until the next read times out, so
        every watched thread may hold up to ``max_retries`` workers at once, and
        the read timeout is capped at the attempt timeout.
        """
        return cls(
            root,
            session=session,
            max_workers=settings.max_concurrent * settings.max_retries,
            timeout=min(timeout, settings.download_timeout),
            user_agent=user_agent,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def read_timeout(self) -> float:
        return self._timeout

    # -- listeners -------------------------------------------------------

    def add_listener(self, listener: TransferListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: TransferListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, event: TransferEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error_trace(f"Transfer listener failed for {event.transfer_id}: {e}")

    # -- operations ------------------------------------------------------

    def _reserve_path(self, relative_path: str, conflict_action: str) -> Path:
        """Pick the final path for a new transfer. Called with lock held."""
        target = self._root / relative_path
        resolved = target.resolve()
        if self._root.resolve() not in resolved.parents:
            raise TransferFailure(f"Download path escapes the download root: {relative_path}", reason="INVALID_PATH")
        if conflict_action != "uniquify":
            return target
        candidate = target
        attempt = 0
        while candidate in self._reserved or candidate.exists():
            attempt += 1
            candidate = target.with_name(uniquified_name(target.name, attempt))
        return candidate

    def begin(self, url: str, relative_path: str, conflict_action: str = "uniquify") -> int:
        """Start downloading ``url`` to ``root/relative_path``. Returns the transfer id.

        Raises:
            TransferFailure: if the transfer cannot be started.
        """
        if not url:
            raise TransferFailure("Download initiation failed: empty URL", reason="INVALID_URL")
        with self._lock:
            transfer_id = next(self._ids)
            path = self._reserve_path(relative_path, conflict_action)
            self._reserved.add(path)
            transfer = _Transfer(
                transfer_id=transfer_id,
                url=url,
                relative_path=path.relative_to(self._root).as_posix(),
                path=path,
            )
            self._transfers[transfer_id] = transfer

        self._emit(TransferEvent(transfer_id, TransferState.CREATED, transfer.relative_path))
        try:
            self._executor.submit(self._run, transfer)
        except RuntimeError as e:
            self._finish(transfer, TransferState.INTERRUPTED, "SHUTDOWN")
            raise TransferFailure(f"Download initiation failed: {e}", reason="SHUTDOWN") from e
        return transfer_id

    def cancel(self, transfer_id: int) -> bool:
        with self._lock:
            transfer = self._transfers.get(transfer_id)
        if transfer is None or transfer.state in (TransferState.COMPLETE, TransferState.INTERRUPTED):
            return False
        transfer.cancelled.set()
        return True

    def erase(self, transfer_id: int) -> None:
        """Forget a transfer and delete whatever it left on disk."""
        with self._lock:
            transfer = self._transfers.pop(transfer_id, None)
        if transfer is None:
            return
        transfer.cancelled.set()
        for path in (transfer.path, transfer.path.with_name(transfer.path.name + PARTIAL_SUFFIX)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to erase {path}: {e}")

    def forget(self, transfer_id: int) -> None:
        """Drop the record of a finished transfer, keeping its file."""
        with self._lock:
            self._transfers.pop(transfer_id, None)

    def state(self, transfer_id: int) -> Optional[TransferState]:
        with self._lock:
            transfer = self._transfers.get(transfer_id)
            return transfer.state if transfer else None

    def search(self, pattern: str, limit: int = 1) -> List[str]:
        """Relative paths of completed files under root matching ``pattern``."""
        regex = re.compile(pattern)
        matches: List[str] = []
        if not self._root.exists():
            return matches
        for dirpath, _, filenames in os.walk(self._root):
            for name in filenames:
                if name.endswith(PARTIAL_SUFFIX):
                    continue
                relative = (Path(dirpath) / name).relative_to(self._root).as_posix()
                if regex.search(relative):
                    matches.append(relative)
                    if len(matches) >= limit:
                        return matches
        return matches

    def shutdown(self) -> None:
        with self._lock:
            transfers = list(self._transfers.values())
        for transfer in transfers:
            transfer.cancelled.set()
        self._executor.shutdown(wait=False)
        self._session.close()

    # -- worker ----------------------------------------------------------

    def _finish(self, transfer: _Transfer, state: TransferState, error: Optional[str] = None) -> None:
        with self._lock:
            transfer.state = state
            self._reserved.discard(transfer.path)
        self._emit(TransferEvent(transfer.transfer_id, state, transfer.relative_path, error))

    def _run(self, transfer: _Transfer) -> None:
        partial = transfer.path.with_name(transfer.path.name + PARTIAL_SUFFIX)
        transfer.state = TransferState.IN_PROGRESS
        try:
            if transfer.cancelled.is_set():
                raise TransferFailure("Cancelled before start", reason="USER_CANCELED")
            with self._session.get(transfer.url, stream=True, timeout=self._timeout) as response:
                if not response.ok:
                    raise TransferFailure(f"HTTP error {response.status_code}", reason="SERVER_FAILED")
                transfer.path.parent.mkdir(parents=True, exist_ok=True)
                with open(partial, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if transfer.cancelled.is_set():
                            raise TransferFailure("Cancelled", reason="USER_CANCELED")
                        if chunk:
                            handle.write(chunk)
            if transfer.cancelled.is_set():
                raise TransferFailure("Cancelled", reason="USER_CANCELED")
            os.replace(partial, transfer.path)
        except TransferFailure as e:
            partial.unlink(missing_ok=True)
            self._finish(transfer, TransferState.INTERRUPTED, e.reason)
            return
        except requests.RequestException as e:
            partial.unlink(missing_ok=True)
            logger.debug(f"Transfer {transfer.transfer_id} network failure: {e}")
            self._finish(transfer, TransferState.INTERRUPTED, "NETWORK_FAILED")
            return
        except OSError as e:
            partial.unlink(missing_ok=True)
            logger.warning(f"Transfer {transfer.transfer_id} file error: {e}")
            self._finish(transfer, TransferState.INTERRUPTED, "FILE_FAILED")
            return
        self._finish(transfer, TransferState.COMPLETE)
