"""Command surface of the watcher.

The ``Orchestrator`` owns every stateful component (registry, history
ledger, locks, run state, transfers) and wires them into the scheduler,
discovery, download engine and reconciler. Front ends call its commands;
each returns ``(success, error_message)`` or a plain payload and never
raises for an expected failure.
"""

import functools
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Tuple

from threadkeeper.catalog.board import BoardApi
from threadkeeper.catalog.client import fetch_with_retry
from threadkeeper.core.activity import ActivityTracker, RunState
from threadkeeper.core.config import WatcherSettings
from threadkeeper.core.debounce import Debouncer
from threadkeeper.core.errors import InvalidFilterPattern, StateCorruption
from threadkeeper.core.history import HistoryLedger
from threadkeeper.core.locks import DownloadLockManager
from threadkeeper.core.logger import setup_logger
from threadkeeper.core.models import SearchParams, WatchedItem, clean_destination, serialize_items
from threadkeeper.core.registry import WatchRegistry
from threadkeeper.core.storage import (
    ALL_KEYS,
    KEY_HISTORY,
    KEY_RUNNING,
    KEY_SEARCH_PARAMS,
    KEY_THREADS,
    JsonKeyValueStore,
)
from threadkeeper.download.discovery import Discovery, compile_filter
from threadkeeper.download.engine import DownloadEngine, DuplicateGuard
from threadkeeper.download.reconcile import Reconciler
from threadkeeper.download.scheduler import Scheduler

logger = setup_logger(__name__)

CommandResult = Tuple[bool, Optional[str]]


class Orchestrator:
    """Watches imageboard threads and keeps their images downloaded."""

    def __init__(
        self,
        store: JsonKeyValueStore,
        transfers,
        fetch_json: Callable[[str], Any],
        settings: Optional[WatcherSettings] = None,
        status_sink: Optional[Callable[[Dict[str, Any]], None]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or WatcherSettings.from_config()
        self._store = store
        self._status_sink = status_sink
        self._clock = clock
        self._params_lock = threading.Lock()
        self._search_params = SearchParams(download_path=self.settings.default_destination)

        self.run_state = RunState()
        self.activity = ActivityTracker()
        self.locks = DownloadLockManager()
        self.registry = WatchRegistry(on_change=self._on_threads_changed)
        self.ledger = HistoryLedger(self.settings.history_capacity, on_change=self._on_history_changed)
        self.board_api = BoardApi(self.settings.api_base_url, self.settings.media_base_url)
        self.transfers = transfers
        self._notifier = Debouncer(self._broadcast_status, self.settings.ui_debounce)

        fetch = functools.partial(
            fetch_with_retry,
            fetch_json,
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            should_abort=lambda: self.run_state.shutting_down,
            sleep=sleep,
        )

        self.engine = DownloadEngine(
            self.registry,
            self.ledger,
            self.locks,
            self.activity,
            self.run_state,
            transfers,
            self.settings,
            destination=lambda: self.get_last_search_params().download_path,
            sleep=sleep,
        )
        self.discovery = Discovery(
            self.registry,
            self.run_state,
            fetch,
            self.board_api,
            transfers,
            self.settings,
            search_params=self.get_last_search_params,
            kick=lambda: self.scheduler.kick(),
            clock=clock,
        )
        self.scheduler = Scheduler(
            self.registry,
            self.activity,
            self.run_state,
            self.engine,
            self.discovery,
            fetch,
            self.board_api,
            self.settings,
            persist_running=self._persist_running,
            notify=self._notifier.trigger,
            periodic_maintenance=self.cleanup_history,
            executor=executor,
            clock=clock,
            sleep=sleep,
        )
        self.reconciler = Reconciler(
            self.registry,
            self.ledger,
            self.run_state,
            fetch,
            self.board_api,
            self.settings,
            kick=self.scheduler.kick,
            clock=clock,
        )

        self._duplicate_guard = DuplicateGuard(self.registry, self.ledger, transfers)
        transfers.add_listener(self._duplicate_guard)

    # -- persistence -----------------------------------------------------

    def _serialized_threads(self):
        with self.registry.locked():
            return serialize_items(self.registry.all())

    def _on_threads_changed(self) -> None:
        self._store.set({KEY_THREADS: self._serialized_threads()})
        self._notifier.trigger()

    def _on_history_changed(self) -> None:
        self._store.set({KEY_HISTORY: self.ledger.to_storage()})
        self._notifier.trigger()

    def _persist_running(self, running: bool) -> None:
        self._store.set({KEY_RUNNING: running})

    def _refresh_running(self) -> bool:
        running = self.run_state.recompute(self.registry)
        self._persist_running(running)
        return running

    def initialize(self, start_scheduler: bool = True) -> None:
        """Load and repair persisted state, reconcile if running, start the loop."""
        logger.info(f"Loading state from {self._store.path}")
        stored = self._store.get(ALL_KEYS)

        raw_threads = stored.get(KEY_THREADS)
        if raw_threads is None:
            raw_threads = []
        elif not isinstance(raw_threads, list):
            logger.warning("Stored watched threads are not a list, resetting.")
            raw_threads = []

        items = []
        for record in raw_threads:
            try:
                items.append(WatchedItem.from_dict(record))
            except StateCorruption as e:
                logger.warning(f"Dropping invalid thread entry: {e}")
        duplicates = self.registry.load(items)
        if duplicates:
            logger.warning(f"Removed {duplicates} duplicate thread entries on load")

        with self._params_lock:
            self._search_params = SearchParams.from_dict(
                stored.get(KEY_SEARCH_PARAMS), self.settings.default_destination
            )

        try:
            dropped = self.ledger.load(stored.get(KEY_HISTORY))
            if dropped:
                logger.warning(f"Dropped {dropped} invalid download history entries")
        except StateCorruption as e:
            logger.warning(f"{e}, resetting download history.")
            self.ledger.load([])

        self.ledger.purge_expired(self.settings.history_retention, now=self._clock())

        running = self.run_state.recompute(self.registry)
        if stored.get(KEY_RUNNING) is not None and bool(stored.get(KEY_RUNNING)) != running:
            logger.info(f"Correcting stored running state to {running}")

        self._store.set({
            KEY_THREADS: self._serialized_threads(),
            KEY_SEARCH_PARAMS: self.get_last_search_params().to_dict(),
            KEY_HISTORY: self.ledger.to_storage(),
            KEY_RUNNING: running,
        })
        logger.info(
            f"Loaded {len(self.registry)} watched threads and {len(self.ledger)} history entries "
            f"(running: {running})"
        )

        if running:
            self.reconciler.reconcile()
        if start_scheduler:
            self.scheduler.start()
        self._notifier.trigger()

    def shutdown(self) -> None:
        logger.info("Shutting down watcher")
        self.run_state.shutdown()
        self.engine.abort_transfers()
        self.scheduler.shutdown()
        self.transfers.remove_listener(self._duplicate_guard)
        self.transfers.shutdown()
        self._notifier.cancel()

    # -- observer --------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        next_tick = self.scheduler.next_tick_at
        return {
            "isRunning": self.run_state.is_running,
            "watchedThreads": self._serialized_threads(),
            "trackedDownloads": len(self.ledger),
            "nextManageThreads": int(next_tick * 1000) if next_tick else None,
        }

    def _broadcast_status(self) -> None:
        if self._status_sink is not None:
            self._status_sink(self.get_status())

    def get_last_search_params(self) -> SearchParams:
        with self._params_lock:
            return self._search_params

    # -- commands --------------------------------------------------------

    def start(
        self,
        board: str,
        search_term: Optional[str] = None,
        thread_id: Any = None,
        download_path: Optional[str] = None,
    ) -> CommandResult:
        """Begin watching: add one thread by id, or search the board's catalog."""
        board = (board or "").strip()
        search_term = (search_term or "").strip()
        has_id = thread_id not in (None, "")
        if not board:
            return False, "Board is required"

        params = SearchParams(
            board=board,
            search_term=search_term,
            download_path=clean_destination(download_path, self.settings.default_destination),
        )
        with self._params_lock:
            self._search_params = params
        self._store.set({KEY_SEARCH_PARAMS: params.to_dict()})
        self.run_state.start()
        self._persist_running(True)

        if has_id:
            logger.info(f"Starting process for specific thread ID: {thread_id} on /{board}/")
            success, error = self.discovery.add_by_id(board, thread_id)
        elif search_term:
            logger.info(f'Starting search on /{board}/ for "{search_term}"')
            try:
                compile_filter(search_term)
            except InvalidFilterPattern as e:
                logger.error(str(e))
                success, error = False, str(e)
            else:
                self.discovery.discover(board, search_term, self.discovery.free_slots())
                success, error = True, None
        else:
            logger.error("Start request needs either a search term or a thread ID")
            success, error = False, "Either a search term or a thread ID is required"

        self._refresh_running()
        self.scheduler.kick()
        self._notifier.trigger()
        return success, error

    def stop(self) -> CommandResult:
        """Pause every active thread and cancel in-flight transfers."""
        paused = 0
        with self.registry.locked():
            for item in self.registry.all():
                if item.active:
                    item.active = False
                    paused += 1
                self.registry.clear_timer(item.id)
        self.run_state.stop()
        cancelled = self.engine.abort_transfers()
        self.registry.touch()
        self._refresh_running()
        logger.info(f"Stopped: paused {paused} threads, cancelled {cancelled} downloads")
        return True, None

    def resume_all(self) -> CommandResult:
        resumed, message = self.reconciler.resume_all()
        self._refresh_running()
        self._notifier.trigger()
        return resumed, message

    def toggle(self, thread_id: int) -> CommandResult:
        """Pause an active thread, or re-activate a paused or errored one."""
        cap = self.settings.max_concurrent
        with self.registry.edit(thread_id) as item:
            if item is None:
                logger.error(f"ToggleThread: Thread {thread_id} not found.")
                return False, "Thread not found"
            label = item.label()

            if item.active:
                logger.info(f"Pausing thread {label}")
                item.active = False
                self.registry.clear_timer(thread_id)
                activated = False
            else:
                if item.closed:
                    logger.warning(f"Cannot activate thread {label} because it is marked as closed.")
                    return False, "Thread is closed"
                if item.error:
                    logger.info(f"Retrying errored thread {label}")
                    item.error = False
                if self.registry.eligible_count() >= cap:
                    logger.warning(f"Cannot activate thread {label}: Maximum concurrent threads ({cap}) reached.")
                    return False, "Maximum concurrent threads reached"
                logger.info(f"Resuming thread {label}")
                item.active = True
                activated = True

        if activated:
            self.run_state.start()
            self._refresh_running()
            self.scheduler.kick()
        else:
            self.engine.abort_transfers(thread_id)
            self._refresh_running()
        return True, None

    def close(self, thread_id: int) -> CommandResult:
        with self.registry.edit(thread_id) as item:
            if item is None:
                logger.error(f"CloseThread: Thread {thread_id} not found.")
                return False, "Thread not found"
            logger.info(f"Closing thread {item.label()}")
            was_active = item.active
            item.closed = True
            item.active = False
            item.error = False
            self.registry.clear_timer(thread_id)

        self.engine.abort_transfers(thread_id)
        running = self._refresh_running()
        if was_active and running:
            self.discovery.check_for_new_threads()
        return True, None

    def remove(self, thread_id: int) -> CommandResult:
        item = self.registry.find(thread_id)
        if item is None:
            logger.error(f"RemoveThread: Thread {thread_id} not found.")
            return False, "Thread not found"

        self.engine.abort_transfers(thread_id)
        was_active = item.active
        self.registry.remove(thread_id)
        logger.info(f"Thread {item.label()} removed. {len(self.registry)} threads remaining.")

        running = self._refresh_running()
        if was_active and running:
            self.discovery.check_for_new_threads()
        return True, None

    def forget_history(self, thread_id: int) -> CommandResult:
        """Drop a thread's download history so its images are fetched again."""
        with self.registry.edit(thread_id) as item:
            if item is None:
                logger.error(f"ForgetThreadDownloads: Thread {thread_id} not found.")
                return False, "Thread not found"
            label = item.label()
            previous = len(item.skipped_images)
            item.skipped_images = set()
            item.error = False
            active = item.active
            self.registry.clear_timer(thread_id)

        removed = self.ledger.clear_thread(thread_id)
        logger.warning(
            f"Forgot download history for thread {label}: cleared {previous} skipped images "
            f"and {removed} history entries"
        )
        if active:
            self.scheduler.kick()
        return True, None

    def forget_all_history(self) -> CommandResult:
        removed = self.ledger.clear_all()
        self._store.remove([KEY_HISTORY])
        with self.registry.locked():
            self.registry.clear_all_timers()
            for item in self.registry.all():
                item.skipped_images = set()
                item.error = False
        self.registry.touch()
        logger.warning(f"Forgot all download history ({removed} entries)")
        if self.run_state.is_running:
            self.scheduler.kick()
        return True, None

    def sync_counts(self) -> int:
        """Merge ledger-owned filenames into every thread's skipped set. Returns threads updated."""
        updated = 0
        with self.registry.locked():
            for item in self.registry.all():
                owned = self.ledger.entries_for_thread(item.id)
                merged = owned | item.skipped_images
                if merged != item.skipped_images:
                    old_count = item.downloaded_count
                    item.skipped_images = merged
                    logger.info(
                        f"Sync: thread {item.label()} count {old_count} -> {item.downloaded_count}, "
                        f"{len(owned)} history entries, skipped set size {len(merged)}"
                    )
                    updated += 1
        if updated:
            self.registry.touch()
        logger.info(f"Sync complete: {updated} threads updated")
        return updated

    def cleanup_history(self) -> int:
        """Purge history entries older than the retention window."""
        return self.ledger.purge_expired(self.settings.history_retention, now=self._clock())
