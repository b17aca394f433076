"""Single-child download decisions with locking, dedup, retry and timeout."""

import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, Optional

from threadkeeper.core.activity import ActivityTracker, RunState
from threadkeeper.core.config import WatcherSettings
from threadkeeper.core.errors import OperationAborted, TransferFailure
from threadkeeper.core.history import HistoryLedger
from threadkeeper.core.locks import DownloadLockManager, download_key
from threadkeeper.core.logger import setup_logger
from threadkeeper.core.models import MaterializeResult, build_child_path, sanitize_component
from threadkeeper.core.registry import WatchRegistry
from threadkeeper.download.transfer import DUPLICATE_NAME_PATTERN, TransferEvent, TransferState

logger = setup_logger(__name__)

_FINAL_STATES = (TransferState.COMPLETE, TransferState.INTERRUPTED)


class _TransferWatch:
    """Awaitable outcome of one transfer attempt.

    The listener is registered before the transfer begins and removed on
    exit, so a transfer that finishes before ``wait_for`` is called is
    still observed.
    """

    def __init__(self, transfers):
        self._transfers = transfers
        self._lock = threading.Lock()
        self._buffered: Dict[int, TransferEvent] = {}
        self._transfer_id: Optional[int] = None
        self._future: "Future[TransferEvent]" = Future()

    def __enter__(self) -> "_TransferWatch":
        self._transfers.add_listener(self._on_event)
        return self

    def __exit__(self, *exc_info) -> bool:
        self._transfers.remove_listener(self._on_event)
        return False

    def _resolve(self, event: TransferEvent) -> None:
        """Called with lock held."""
        if not self._future.done():
            self._future.set_result(event)

    def _on_event(self, event: TransferEvent) -> None:
        if event.state not in _FINAL_STATES:
            return
        with self._lock:
            if self._transfer_id is None:
                self._buffered[event.transfer_id] = event
            elif event.transfer_id == self._transfer_id:
                self._resolve(event)

    def wait_for(self, transfer_id: int, timeout: float) -> TransferEvent:
        with self._lock:
            self._transfer_id = transfer_id
            early = self._buffered.pop(transfer_id, None)
            self._buffered.clear()
            if early is not None:
                self._resolve(early)
        return self._future.result(timeout=timeout)


class DownloadEngine:
    """Materializes child images for watched threads."""

    def __init__(
        self,
        registry: WatchRegistry,
        ledger: HistoryLedger,
        locks: DownloadLockManager,
        activity: ActivityTracker,
        run_state: RunState,
        transfers,
        settings: WatcherSettings,
        destination: Callable[[], str],
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._registry = registry
        self._ledger = ledger
        self._locks = locks
        self._activity = activity
        self._run_state = run_state
        self._transfers = transfers
        self._settings = settings
        self._destination = destination
        self._sleep = sleep

    def materialize(self, url: str, thread_id: int, poster: Optional[str]) -> MaterializeResult:
        """Download one image for a thread unless it is already known.

        Returns ``(True, False)`` for an already-known child, ``(True, True)``
        for a fresh download and ``(False, False)`` for any failure.
        """
        filename = sanitize_component(url.rsplit("/", 1)[-1], "unknown_file")
        item = self._registry.find(thread_id)
        if item is None:
            logger.error(f"Thread {thread_id} not found for {url}")
            return MaterializeResult(False, False)

        full_path = build_child_path(self._destination(), thread_id, poster, filename)
        key = download_key(thread_id, filename)

        with self._locks.hold(key):
            if self._already_done(thread_id, full_path, filename):
                return MaterializeResult(True, False)

            if not self._registry.is_active(thread_id):
                return MaterializeResult(False, False)

            try:
                return self._download_with_retries(url, thread_id, full_path, filename, key)
            except OperationAborted as e:
                logger.warning(f"Failed to download {filename} for thread {thread_id}: {e}")
                return MaterializeResult(False, False)
            finally:
                self._activity.untrack_transfer(key)

    def _already_done(self, thread_id: int, full_path: str, filename: str) -> bool:
        in_history = self._ledger.contains(full_path)
        skipped = self._registry.is_skipped(thread_id, filename)
        if in_history and not skipped:
            self._registry.mark_skipped(thread_id, filename)
        return in_history or skipped

    def _ensure_still_wanted(self, thread_id: int) -> None:
        if not self._run_state.is_running or not self._registry.is_active(thread_id):
            raise OperationAborted(f"Process or thread {thread_id} stopped before download attempt")

    def _download_with_retries(
        self, url: str, thread_id: int, full_path: str, filename: str, key: str
    ) -> MaterializeResult:
        max_retries = self._settings.max_retries
        for attempt in range(1, max_retries + 1):
            self._ensure_still_wanted(thread_id)
            try:
                self._attempt(url, thread_id, full_path, key)
            except TransferFailure as e:
                logger.warning(f"Download attempt {attempt}/{max_retries} failed for {url}: {e}")
                if self._registry.is_skipped(thread_id, filename):
                    # A collision duplicate was reconciled against history meanwhile
                    return MaterializeResult(True, False)
                if attempt == max_retries:
                    logger.error(f"Max retries reached for {url}, marking as failed for this run")
                    break
                self._sleep(self._settings.retry_base_delay * attempt)
                if not self._run_state.is_running or not self._registry.is_active(thread_id):
                    raise OperationAborted(
                        f"Stopping retries for {filename}: thread {thread_id} or process became inactive during wait"
                    )
                continue

            self._ledger.record(full_path, thread_id)
            self._registry.mark_skipped(thread_id, filename)
            logger.info(f"Successfully downloaded {filename} to {full_path} for thread {thread_id}")
            return MaterializeResult(True, True)

        logger.error(f"Failed to download {filename} for thread {thread_id} after {max_retries} retries")
        return MaterializeResult(False, False)

    def _attempt(self, url: str, thread_id: int, full_path: str, key: str) -> None:
        """One transfer attempt; raises TransferFailure unless it completes."""
        timeout = self._settings.download_timeout
        with _TransferWatch(self._transfers) as watch:
            transfer_id = self._transfers.begin(url, full_path, conflict_action="uniquify")
            self._activity.track_transfer(key, thread_id, transfer_id)
            try:
                event = watch.wait_for(transfer_id, timeout)
            except FutureTimeout:
                logger.warning(f"Download timed out for {url} (ID: {transfer_id}) after {timeout:.0f}s")
                self._discard(transfer_id)
                raise TransferFailure("Download timed out", reason="TIMEOUT")
            finally:
                self._activity.untrack_transfer(key)

        if event.state == TransferState.INTERRUPTED:
            reason = event.error or "Unknown"
            logger.warning(f"Download interrupted for {url} (ID: {transfer_id}). Reason: {reason}")
            self._transfers.erase(transfer_id)
            raise TransferFailure(f"Download interrupted: {reason}", reason=reason)
        self._transfers.forget(transfer_id)

    def _discard(self, transfer_id: int) -> None:
        self._transfers.cancel(transfer_id)
        self._transfers.erase(transfer_id)

    def abort_transfers(self, thread_id: Optional[int] = None) -> int:
        """Cancel and erase in-flight transfers for one thread (or all). Returns count."""
        transfer_ids = self._activity.pop_transfers(thread_id)
        for transfer_id in transfer_ids:
            logger.info(f"Cancelling download {transfer_id}" + (f" for thread {thread_id}" if thread_id else ""))
            self._discard(transfer_id)
        return len(transfer_ids)


class DuplicateGuard:
    """Transfer listener that cancels collision-renamed copies of known files.

    When the transfer manager uniquifies a name (``x (1).jpg``) and the
    original path is already in history, the copy is cancelled and erased
    and the original filename is marked done for its thread.
    """

    def __init__(self, registry: WatchRegistry, ledger: HistoryLedger, transfers):
        self._registry = registry
        self._ledger = ledger
        self._transfers = transfers

    def __call__(self, event: TransferEvent) -> None:
        if event.state != TransferState.CREATED:
            return

        parts = event.filename.replace("\\", "/").split("/")
        if len(parts) < 4:
            return
        filename, poster, thread_part = parts[-1], parts[-2], parts[-3]
        try:
            thread_id = int(thread_part)
        except ValueError:
            return

        match = DUPLICATE_NAME_PATTERN.match(filename)
        if not match:
            return

        base_filename = match.group(1) + match.group(3)
        base_path = "/".join(parts[:-3] + [thread_part, poster, base_filename])
        if not self._ledger.contains(base_path):
            return

        logger.info(f"Detected duplicate download: {filename}. Cancelling ID {event.transfer_id}.")
        self._transfers.cancel(event.transfer_id)
        self._transfers.erase(event.transfer_id)

        if self._registry.mark_skipped(thread_id, base_filename):
            logger.info(f"Marked base file {base_filename} as skipped for thread {thread_id} due to cancelled duplicate")
