"""Resume-time reconciliation of watched threads against the history ledger."""

import threading
import time
from typing import Any, Callable, Optional, Tuple

from threadkeeper.catalog.board import BoardApi
from threadkeeper.core.activity import RunState
from threadkeeper.core.config import WatcherSettings
from threadkeeper.core.errors import OperationAborted, TransientFetchError
from threadkeeper.core.history import HistoryLedger
from threadkeeper.core.logger import setup_logger
from threadkeeper.core.registry import WatchRegistry
from threadkeeper.download.scheduler import sync_stuck_timer

logger = setup_logger(__name__)


class Reconciler:
    """Re-derives per-thread progress from the ledger and re-validates upstream state.

    The in-memory skipped set of each active thread is discarded and rebuilt
    from the ledger entries the thread owns, so after a restart the counts
    reflect what was actually materialized rather than what was last saved.
    """

    def __init__(
        self,
        registry: WatchRegistry,
        ledger: HistoryLedger,
        run_state: RunState,
        fetch: Callable[[str], Any],
        board_api: BoardApi,
        settings: WatcherSettings,
        kick: Callable[[], None],
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._ledger = ledger
        self._run_state = run_state
        self._fetch = fetch
        self._api = board_api
        self._settings = settings
        self._kick = kick
        self._clock = clock

        self._resume_lock = threading.Lock()
        self._resuming = False
        self._last_resume: Optional[float] = None

    def reconcile(self) -> int:
        """Sync every active thread. Returns the number successfully synced."""
        targets = [item for item in self._registry.all() if item.is_eligible]
        if not targets:
            logger.info("Reconcile: no active, non-error, non-closed threads to sync.")
            self._kick()
            return 0

        logger.info(f"Reconcile: checking state for {len(targets)} active threads...")
        synced = 0
        for target in targets:
            if not self._registry.find(target.id) or not target.is_eligible:
                continue
            if self._reconcile_one(target.id):
                synced += 1

        logger.info("Reconcile: finished state sync.")
        self._kick()
        return synced

    def _reconcile_one(self, thread_id: int) -> bool:
        item = self._registry.find(thread_id)
        if item is None:
            return False
        logger.debug(f"Syncing state for thread {item.label()}...")

        try:
            snapshot = self._api.parse_thread(item.board, item.id, self._fetch(item.url))
        except (TransientFetchError, OperationAborted) as e:
            logger.error(f"Failed to sync state for thread {item.label()} on resume: {e}")
            with self._registry.edit(thread_id) as current:
                if current is not None:
                    current.error = True
                    current.active = False
            return False

        with self._registry.edit(thread_id) as current:
            if current is None:
                return False
            if snapshot.is_closed:
                logger.info(
                    f"Thread {current.label()} resume check: thread now {snapshot.state_label}. Closing locally."
                )
                current.closed = True
                current.active = False
                current.error = False
                self._registry.clear_timer(thread_id)
                return True

            old_count = current.downloaded_count
            old_size = len(current.skipped_images)
            current.total_images = snapshot.image_count
            current.skipped_images = self._ledger.entries_for_thread(thread_id)
            current.error = False
            if old_count != current.downloaded_count or old_size != len(current.skipped_images):
                logger.info(
                    f"Synced state for thread {current.label()}: Count {old_count} -> {current.downloaded_count}, "
                    f"Skipped Set Size {old_size} -> {len(current.skipped_images)}, "
                    f"Total Images: {current.total_images}"
                )
            sync_stuck_timer(self._registry, current, self._clock())
        return True

    def resume_all(self) -> Tuple[bool, Optional[str]]:
        """Activate paused threads up to capacity, then reconcile.

        Returns:
            (resumed, message): ``resumed`` is True if any thread was activated.
        """
        now = self._clock()
        with self._resume_lock:
            if self._resuming:
                logger.debug("Resume all throttled: already in progress.")
                return False, "Resume already in progress"
            if self._last_resume is not None and now - self._last_resume < self._settings.resume_cooldown:
                logger.debug("Resume all throttled.")
                return False, "Resume requested too soon"
            self._resuming = True
            self._last_resume = now

        try:
            return self._resume_paused()
        finally:
            with self._resume_lock:
                self._resuming = False

    def _resume_paused(self) -> Tuple[bool, Optional[str]]:
        resumed = 0
        with self._registry.locked():
            paused = [item for item in self._registry.all() if not item.active and not item.error and not item.closed]
            if not paused:
                logger.info("Resume All: No paused, non-error, non-closed threads to resume.")
                self._run_state.recompute(self._registry)
                return False, "No paused threads to resume"

            slots = self._settings.max_concurrent - self._registry.eligible_count()
            logger.info(f"Attempting to resume up to {max(slots, 0)} threads initially...")
            for item in paused:
                if slots <= 0:
                    logger.info(
                        f"Resume All: Reached max concurrent threads ({self._settings.max_concurrent}). "
                        "Remaining threads kept paused."
                    )
                    break
                logger.info(f"Resuming thread {item.label()}")
                item.active = True
                item.error = False
                resumed += 1
                slots -= 1
            self._run_state.start()

        if not resumed:
            logger.info("Resume All: No threads were actually resumed (limit reached or none eligible).")
            return False, "Maximum concurrent threads already active"

        self._registry.touch()
        logger.info(f"Resumed {resumed} threads. Triggering sync and processing...")
        self.reconcile()
        return True, None
