"""
Pytest configuration and shared fixtures.
"""

import itertools
import os
import re
import sys
import tempfile
import threading
from concurrent.futures import wait

# Set environment variables BEFORE importing the application
# These override the defaults that try to use system paths like /var/log
_temp_base = tempfile.mkdtemp(prefix="threadkeeper_test_")

# LOG_ROOT is the base - LOG_DIR is computed as LOG_ROOT / "threadkeeper"
os.environ["LOG_ROOT"] = _temp_base
os.environ["CONFIG_DIR"] = os.path.join(_temp_base, "config")
os.environ["DOWNLOAD_DIR"] = os.path.join(_temp_base, "downloads")

os.makedirs(os.path.join(_temp_base, "threadkeeper"), exist_ok=True)  # LOG_DIR
os.makedirs(os.path.join(_temp_base, "config"), exist_ok=True)
os.makedirs(os.path.join(_temp_base, "downloads"), exist_ok=True)

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from threadkeeper.catalog.board import BoardApi
from threadkeeper.core.config import WatcherSettings
from threadkeeper.core.errors import TransientFetchError
from threadkeeper.core.storage import JsonKeyValueStore
from threadkeeper.download.orchestrator import Orchestrator
from threadkeeper.download.transfer import TransferEvent, TransferState, uniquified_name

NOW = 1_700_000_000.0
BOARD = "g"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetch:
    """Canned JSON responses keyed by URL; unknown URLs fail like a 404."""

    def __init__(self):
        self.responses = {}
        self.calls = []
        self._lock = threading.Lock()

    def set(self, url, payload):
        self.responses[url] = payload

    def fail(self, url, error=None):
        self.responses[url] = error or TransientFetchError("HTTP error 500", url=url, status_code=500)

    def calls_to(self, url):
        with self._lock:
            return self.calls.count(url)

    def __call__(self, url):
        with self._lock:
            self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            raise TransientFetchError("HTTP error 404", url=url, status_code=404)
        if isinstance(response, Exception):
            raise response
        return response


class FakeTransfers:
    """In-memory transfer manager that settles transfers synchronously.

    ``outcomes`` maps a URL to "complete" (default), "fail" or "hang"
    (never reports a final state). Paths in ``existing`` force a
    collision rename, like a browser download manager would.
    """

    def __init__(self):
        self.listeners = []
        self.existing = set()
        self.outcomes = {}
        self.begun = []
        self.cancelled = set()
        self.erased = set()
        self._paths = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def _emit(self, event):
        for listener in list(self.listeners):
            listener(event)

    def begin(self, url, relative_path, conflict_action="uniquify"):
        with self._lock:
            transfer_id = next(self._ids)
            path, attempt = relative_path, 0
            while path in self.existing:
                attempt += 1
                directory, _, name = relative_path.rpartition("/")
                path = f"{directory}/{uniquified_name(name, attempt)}"
            self._paths[transfer_id] = path
            self.begun.append((url, path))

        self._emit(TransferEvent(transfer_id, TransferState.CREATED, path))
        if transfer_id in self.cancelled:
            self._emit(TransferEvent(transfer_id, TransferState.INTERRUPTED, path, "USER_CANCELED"))
            return transfer_id

        outcome = self.outcomes.get(url, "complete")
        if outcome == "complete":
            with self._lock:
                self.existing.add(path)
            self._emit(TransferEvent(transfer_id, TransferState.COMPLETE, path))
        elif outcome == "fail":
            self._emit(TransferEvent(transfer_id, TransferState.INTERRUPTED, path, "NETWORK_FAILED"))
        return transfer_id

    def begun_urls(self):
        return [url for url, _ in self.begun]

    def cancel(self, transfer_id):
        self.cancelled.add(transfer_id)
        return True

    def erase(self, transfer_id):
        self.erased.add(transfer_id)
        with self._lock:
            self._paths.pop(transfer_id, None)

    def forget(self, transfer_id):
        with self._lock:
            self._paths.pop(transfer_id, None)

    def search(self, pattern, limit=1):
        regex = re.compile(pattern)
        with self._lock:
            matches = [path for path in sorted(self.existing) if regex.search(path)]
        return matches[:limit]

    def shutdown(self):
        pass


def make_thread(thread_id, images=0, subject="Test thread", closed=False, archived=False, time=int(NOW), poster="Anonymous"):
    """Thread payload with ``images`` image posts after an image-less opening post."""
    posts = [{
        "no": thread_id,
        "sub": subject,
        "time": time,
        "closed": 1 if closed else 0,
        "archived": 1 if archived else 0,
        "name": poster,
    }]
    for index in range(images):
        posts.append({
            "no": thread_id + index + 1,
            "time": time + index + 1,
            "tim": 1000 + index,
            "ext": ".jpg",
            "name": poster,
        })
    return {"posts": posts}


def make_catalog(*threads):
    """Catalog payload from ``(thread_id, subject, comment, time)`` tuples."""
    return [{
        "page": 1,
        "threads": [
            {"no": thread_id, "sub": subject, "com": comment, "time": time}
            for thread_id, subject, comment, time in threads
        ],
    }]


def wait_all(futures, timeout=5.0):
    done, not_done = wait(futures, timeout=timeout)
    assert not not_done, "processing did not finish in time"
    for future in done:
        future.result()


@pytest.fixture
def settings():
    return WatcherSettings(
        max_concurrent=2,
        tick_interval=3600.0,
        download_timeout=0.2,
        ui_debounce=0.01,
        resume_cooldown=2.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Recorded sleep durations; nothing actually sleeps in tests."""
    return []


@pytest.fixture
def board_api(settings):
    return BoardApi(settings.api_base_url, settings.media_base_url)


@pytest.fixture
def fake_fetch():
    return FakeFetch()


@pytest.fixture
def fake_transfers():
    return FakeTransfers()


@pytest.fixture
def store(tmp_path):
    return JsonKeyValueStore(tmp_path / "state.json")


@pytest.fixture
def orchestrator(store, fake_transfers, fake_fetch, settings, clock, sleeps):
    orch = Orchestrator(
        store=store,
        transfers=fake_transfers,
        fetch_json=fake_fetch,
        settings=settings,
        clock=clock,
        sleep=sleeps.append,
    )
    yield orch
    orch.shutdown()


@pytest.fixture
def add_watched(orchestrator, board_api, fake_fetch):
    """Register a thread directly and serve its payload."""
    from threadkeeper.core.models import WatchedItem

    def _add(thread_id, images=0, active=True, closed=False, error=False, total=0, skipped=(), **payload):
        item = WatchedItem(
            id=thread_id,
            board=BOARD,
            title=payload.get("subject", "Test thread"),
            url=board_api.thread_url(BOARD, thread_id),
            time=int(NOW),
            active=active,
            closed=closed,
            error=error,
            total_images=total,
            skipped_images=set(skipped),
        )
        orchestrator.registry.add(item)
        fake_fetch.set(item.url, make_thread(thread_id, images=images, **payload))
        return item

    return _add
