"""Periodic control loop and per-thread processing.

Each tick re-checks threads whose stuck timer expired, dispatches eligible
threads to a worker pool up to the concurrency cap, refills capacity through
discovery and re-derives the process run flag. A thread is processed by at
most one worker at a time; its children are downloaded one after another.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from threadkeeper.catalog.board import BoardApi, ThreadSnapshot
from threadkeeper.core.activity import ActivityTracker, RunState
from threadkeeper.core.config import WatcherSettings
from threadkeeper.core.errors import OperationAborted, TransientFetchError
from threadkeeper.core.logger import setup_logger
from threadkeeper.core.models import WatchedItem, sanitize_component
from threadkeeper.core.registry import WatchRegistry
from threadkeeper.download.discovery import Discovery
from threadkeeper.download.engine import DownloadEngine

logger = setup_logger(__name__)


def sync_stuck_timer(registry: WatchRegistry, item: WatchedItem, now: float) -> None:
    """Clear the timer while work remains, start it once the thread looks complete."""
    if item.downloaded_count < item.total_images:
        registry.clear_timer(item.id)
    elif item.total_images > 0:
        if registry.start_timer(item.id, now):
            logger.info(
                f"Thread {item.label()} appears complete ({item.downloaded_count}/{item.total_images}). "
                "Starting potential close timer."
            )
    else:
        registry.clear_timer(item.id)


class Scheduler:
    """Drives thread processing on a fixed period plus on-demand kicks."""

    def __init__(
        self,
        registry: WatchRegistry,
        activity: ActivityTracker,
        run_state: RunState,
        engine: DownloadEngine,
        discovery: Discovery,
        fetch: Callable[[str], Any],
        board_api: BoardApi,
        settings: WatcherSettings,
        persist_running: Callable[[bool], None],
        notify: Callable[[], None],
        periodic_maintenance: Optional[Callable[[], None]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._registry = registry
        self._activity = activity
        self._run_state = run_state
        self._engine = engine
        self._discovery = discovery
        self._fetch = fetch
        self._api = board_api
        self._settings = settings
        self._persist_running = persist_running
        self._notify = notify
        self._maintenance = periodic_maintenance
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.max_concurrent, thread_name_prefix="ThreadWorker"
        )
        self._clock = clock
        self._sleep = sleep

        self._tick_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._next_tick_at: Optional[float] = None

    # -- loop ------------------------------------------------------------

    @property
    def next_tick_at(self) -> Optional[float]:
        return self._next_tick_at

    def kick(self) -> None:
        """Ask the loop for an immediate tick."""
        self._wake.set()

    def start(self) -> None:
        """Start the scheduler thread. Safe to call multiple times."""
        if self._loop_thread is not None and self._loop_thread.is_alive():
            logger.debug("Scheduler already started")
            return
        self._stopping.clear()
        self._loop_thread = threading.Thread(target=self._loop, daemon=True, name="Scheduler")
        self._loop_thread.start()
        logger.info(
            f"Scheduler started: every {self._settings.tick_interval:.0f}s, "
            f"{self._settings.max_concurrent} concurrent threads"
        )

    def shutdown(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self._wake.set()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=timeout)
        self._executor.shutdown(wait=False)

    def _loop(self) -> None:
        interval = self._settings.tick_interval
        last_maintenance = self._clock()
        while not self._stopping.is_set():
            # Clear before ticking: a kick that arrives during the tick forces another one
            self._wake.clear()
            try:
                self.tick()
            except Exception as e:
                logger.error_trace(f"Error during scheduled tick: {e}")

            if self._maintenance is not None:
                if self._clock() - last_maintenance >= self._settings.history_cleanup_interval:
                    last_maintenance = self._clock()
                    try:
                        self._maintenance()
                    except Exception as e:
                        logger.error_trace(f"Error during periodic maintenance: {e}")

            self._next_tick_at = self._clock() + interval
            self._wake.wait(timeout=interval)
        self._next_tick_at = None

    # -- tick ------------------------------------------------------------

    def tick(self) -> List[Future]:
        """Run one management cycle. Returns futures for the threads dispatched."""
        with self._tick_lock:
            return self._tick()

    def _tick(self) -> List[Future]:
        cap = self._settings.max_concurrent
        items = self._registry.all()
        now = self._clock()

        stuck = [item for item in items if item.is_eligible and self._registry.has_timer(item.id)]
        finished = [
            item for item in items
            if not item.active and not item.closed and not item.error and item.looks_complete
        ]
        logger.debug(
            f"Tick: {sum(1 for item in items if item.is_eligible)} active, "
            f"checking {len(stuck)} potentially stuck."
        )

        for item in stuck + finished:
            started = self._registry.timer_started(item.id)
            if started is not None and now - started >= self._settings.stuck_timeout:
                self._recheck_expired(item.id)

        available = cap - self._activity.processing_count()
        if available <= 0:
            logger.debug(f"All {cap} processing slots busy.")
            self._notify()
            return []

        candidates = [
            item for item in self._registry.eligible()
            if not self._activity.is_processing(item.id) and item.has_pending_work
        ]
        futures: List[Future] = []
        for item in candidates[:available]:
            if not self._activity.claim(item.id, cap):
                continue
            try:
                futures.append(self._executor.submit(self._run_claimed, item.id))
            except RuntimeError as e:
                self._activity.release(item.id)
                logger.error(f"Could not dispatch thread {item.label()}: {e}")

        if self._registry.eligible_count() < cap and self._run_state.is_running:
            self._discovery.check_for_new_threads()

        running = self._run_state.recompute(self._registry)
        self._persist_running(running)
        if not running and len(self._registry) > 0:
            logger.info("All watched threads are now inactive, paused, closed, or errored.")
        self._notify()
        return futures

    def _recheck_expired(self, thread_id: int) -> None:
        """Re-fetch a thread whose stuck timer ran out and close or reopen it."""
        item = self._registry.find(thread_id)
        if item is None:
            return
        logger.info(f"Thread {item.label()} timer expired. Checking for new images...")

        try:
            snapshot = self._api.parse_thread(item.board, item.id, self._fetch(item.url))
        except (TransientFetchError, OperationAborted) as e:
            logger.error(f"Failed to re-check thread {item.label()} state during timer check: {e}. Closing thread.")
            with self._registry.edit(thread_id) as current:
                if current is not None:
                    current.closed = True
                    current.active = False
                    current.error = True
                self._registry.clear_timer(thread_id)
        else:
            with self._registry.edit(thread_id) as current:
                if current is None:
                    return
                if snapshot.is_closed:
                    logger.info(
                        f"Thread {current.label()} timer check: thread now {snapshot.state_label}. Closing locally."
                    )
                    current.closed = True
                    current.active = False
                    current.error = False
                elif snapshot.image_count > current.total_images:
                    logger.info(
                        f"Thread {current.label()} timer check: found new images "
                        f"({current.total_images} -> {snapshot.image_count}). Re-activating processing."
                    )
                    current.total_images = snapshot.image_count
                    current.active = True
                    current.error = False
                else:
                    logger.info(f"Thread {current.label()} timer check: no new images found. Closing thread locally.")
                    current.closed = True
                    current.active = False
                self._registry.clear_timer(thread_id)

        self._discovery.check_for_new_threads()

    # -- per-thread processing -------------------------------------------

    def process_item(self, thread_id: int) -> None:
        """Process one thread now, if a slot is free and it is not already running."""
        if not self._activity.claim(thread_id, self._settings.max_concurrent):
            logger.debug(f"Thread {thread_id} is already processing or no slot is free")
            return
        self._run_claimed(thread_id)

    def _still_wanted(self, thread_id: int) -> bool:
        return self._run_state.is_running and self._registry.is_active(thread_id)

    def _pause_with_error(self, thread_id: int) -> None:
        with self._registry.edit(thread_id) as item:
            if item is not None:
                item.error = True
                item.active = False

    def _run_claimed(self, thread_id: int) -> None:
        """Process a thread whose processing slot is already claimed."""
        item = self._registry.find(thread_id)
        label = item.label() if item is not None else str(thread_id)
        try:
            if item is None:
                logger.error(f"Thread {thread_id} disappeared before processing")
                return
            snapshot = self._api.parse_thread(item.board, item.id, self._fetch(item.url))
            self._apply_snapshot(thread_id, snapshot)
        except TransientFetchError as e:
            self._pause_with_error(thread_id)
            logger.error(f"Error processing thread {label}: {e}. Thread paused.")
        except OperationAborted as e:
            logger.warning(f"Processing of thread {label} aborted: {e}")
        except Exception as e:
            self._pause_with_error(thread_id)
            logger.error_trace(f"Unexpected error processing thread {label}: {e}. Thread paused.")
        finally:
            self._activity.release(thread_id)
            if not self._registry.is_active(thread_id) and self._run_state.is_running:
                self._discovery.check_for_new_threads()

    def _apply_snapshot(self, thread_id: int, snapshot: ThreadSnapshot) -> None:
        now = self._clock()
        with self._registry.edit(thread_id) as item:
            if item is None:
                return
            if snapshot.is_closed:
                logger.info(f"Thread {item.label()} is marked {snapshot.state_label} upstream. Closing locally.")
                item.closed = True
                item.active = False
                item.error = False
                self._registry.clear_timer(thread_id)
                return

            item.error = False
            if item.total_images != snapshot.image_count:
                item.total_images = snapshot.image_count
            sync_stuck_timer(self._registry, item, now)
            pending = item.downloaded_count < item.total_images
            label = item.label()
            empty = item.total_images == 0

        if empty:
            logger.info(f"No images found in thread {label}.")
        if pending:
            self._download_children(thread_id, snapshot)

    def _download_children(self, thread_id: int, snapshot: ThreadSnapshot) -> None:
        downloaded_in_run = 0
        for image in snapshot.images:
            if not self._still_wanted(thread_id):
                logger.warning(f"Stopping image processing loop for thread {thread_id}: thread/process inactive.")
                break

            if not self._registry.is_skipped(thread_id, sanitize_component(image.filename, "unknown_file")):
                result = self._engine.materialize(image.url, thread_id, image.poster)
                if result.success and result.downloaded:
                    downloaded_in_run += 1
                    self._sleep(self._settings.child_pause)

            if not self._still_wanted(thread_id):
                break

        with self._registry.edit(thread_id) as item:
            if item is None:
                return
            logger.info(
                f"Finished processing run for thread {item.label()}. {downloaded_in_run} new images downloaded. "
                f"Current state: {item.downloaded_count}/{item.total_images}"
            )
            if item.active and item.looks_complete:
                self._registry.start_timer(thread_id, self._clock(), restart=True)
