"""Finding new threads to watch: catalog search and explicit add-by-id."""

import re
import time
from typing import Any, Callable, List, Optional, Pattern, Tuple

from threadkeeper.catalog.board import BoardApi, CatalogEntry
from threadkeeper.core.activity import RunState
from threadkeeper.core.config import WatcherSettings
from threadkeeper.core.errors import InvalidFilterPattern, OperationAborted, TransientFetchError
from threadkeeper.core.logger import setup_logger
from threadkeeper.core.models import SearchParams, WatchedItem
from threadkeeper.core.registry import WatchRegistry

logger = setup_logger(__name__)


def compile_filter(pattern: str) -> Pattern[str]:
    """Compile a case-insensitive thread filter.

    Raises:
        InvalidFilterPattern: if ``pattern`` is not a valid regular expression.
    """
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise InvalidFilterPattern(f'Invalid regex pattern: "{pattern}". Error: {e}') from e


def _matches(regex: Pattern[str], entry: CatalogEntry) -> bool:
    return bool(
        (entry.subject and regex.search(entry.subject))
        or (entry.comment and regex.search(entry.comment))
    )


class Discovery:
    """Admits new threads into the registry up to the free capacity."""

    def __init__(
        self,
        registry: WatchRegistry,
        run_state: RunState,
        fetch: Callable[[str], Any],
        board_api: BoardApi,
        transfers,
        settings: WatcherSettings,
        search_params: Callable[[], SearchParams],
        kick: Callable[[], None],
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._run_state = run_state
        self._fetch = fetch
        self._api = board_api
        self._transfers = transfers
        self._settings = settings
        self._search_params = search_params
        self._kick = kick
        self._clock = clock

    def free_slots(self) -> int:
        return self._settings.max_concurrent - self._registry.eligible_count()

    def destination_exists(self, thread_id: int) -> bool:
        """Best-effort probe: does the destination already hold files for this thread?"""
        root = re.escape(self._search_params().download_path.strip("/"))
        try:
            return bool(self._transfers.search(f"^{root}/{thread_id}/.*", limit=1))
        except (OSError, re.error) as e:
            logger.error(f"Error searching downloads for thread {thread_id} directory check: {e}")
            return False

    def discover(self, board: str, pattern: str, limit: int) -> int:
        """Search ``board``'s catalog and admit up to ``limit`` matching threads.

        Returns:
            Number of threads admitted.
        """
        try:
            regex = compile_filter(pattern)
        except InvalidFilterPattern as e:
            logger.error(str(e))
            return 0

        if limit <= 0:
            return 0

        logger.info(f'Searching catalog /{board}/ for up to {limit} threads matching "{pattern}"')
        try:
            entries = self._api.parse_catalog(self._fetch(self._api.catalog_url(board)))
        except (TransientFetchError, OperationAborted) as e:
            logger.error(f'Error searching catalog for /{board}/ with term "{pattern}": {e}')
            return 0

        now = self._clock()
        cutoff = now - self._settings.stale_thread_age
        candidates: List[CatalogEntry] = []
        for entry in entries:
            if entry.time < cutoff:
                continue
            if entry.thread_id in self._registry:
                continue
            if not _matches(regex, entry):
                continue
            if self.destination_exists(entry.thread_id):
                logger.info(f"Skipping potential thread {entry.thread_id} - download directory seems to exist.")
                continue
            candidates.append(entry)

        candidates.sort(key=lambda entry: entry.time, reverse=True)

        admitted = 0
        for entry in candidates[:limit]:
            item = WatchedItem(
                id=entry.thread_id,
                board=board,
                title=entry.subject or f"Thread {entry.thread_id}",
                url=self._api.thread_url(board, entry.thread_id),
                time=entry.time or int(now),
                active=True,
            )
            if self._registry.add(item):
                admitted += 1
                logger.info(f"Added: {item.label()}")

        if admitted:
            logger.info(f"Found {admitted} new matching threads. Adding to watch list.")
            self._kick()
        else:
            logger.info(f'No new matching threads found for "{pattern}" on /{board}/.')
        return admitted

    def check_for_new_threads(self) -> int:
        """Fill freed capacity using the last search parameters."""
        if not self._run_state.is_running:
            return 0
        params = self._search_params()
        if not params.board or not params.search_term:
            logger.info("Skipping new thread check, board or search term missing.")
            return 0
        slots = self.free_slots()
        if slots <= 0:
            return 0
        return self.discover(params.board, params.search_term, slots)

    def add_by_id(self, board: str, raw_thread_id: Any) -> Tuple[bool, Optional[str]]:
        """Register one thread by id. Returns (success, error_message)."""
        try:
            thread_id = int(raw_thread_id)
        except (TypeError, ValueError):
            error = f"Invalid Thread ID provided: {raw_thread_id}"
            logger.error(error)
            return False, error

        logger.info(f"Attempting to add thread {thread_id} from board /{board}/ by ID...")

        existing = self._registry.find(thread_id)
        if existing is not None:
            logger.warning(f"Thread {thread_id} is already in the watch list.")
            if not existing.active:
                logger.info(f"Existing thread {thread_id} is inactive. Use Toggle/Resume to reactivate.")
            return False, "Thread is already in the watch list"

        if self.destination_exists(thread_id):
            logger.warning(f"Thread ID {thread_id} not added - download directory seems to exist.")
            return False, "Download directory already exists"

        url = self._api.thread_url(board, thread_id)
        try:
            snapshot = self._api.parse_thread(board, thread_id, self._fetch(url))
        except (TransientFetchError, OperationAborted) as e:
            error = f"Error adding thread {thread_id} by ID from /{board}/: {e}"
            logger.error(error)
            return False, error

        item = WatchedItem(
            id=thread_id,
            board=board,
            title=snapshot.subject or f"Thread {thread_id}",
            url=url,
            time=snapshot.time or int(self._clock()),
            closed=snapshot.is_closed,
        )
        if item.closed:
            logger.info(f"Thread {item.label()} is already {snapshot.state_label}. Adding as closed.")

        with self._registry.locked():
            # Decide activation under the registry lock so two adds cannot both take the last slot
            activate = not item.closed and self.free_slots() > 0
            item.active = activate
            if not self._registry.add(item):
                return False, "Thread is already in the watch list"

        logger.info(f"Added thread {item.label()} to watch list{' (as closed)' if item.closed else ''}.")
        if activate:
            logger.info(f"Activating new thread {thread_id}.")
            self._kick()
        elif not item.closed:
            logger.warning(f"Thread {thread_id} added but not activated (max concurrent threads reached).")
        return True, None
