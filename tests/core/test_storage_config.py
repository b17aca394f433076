"""
Tests for the JSON state store, the debouncer and settings resolution.
"""

import json
import threading

from threadkeeper.core.config import DEFAULTS, WatcherSettings, _coerce
from threadkeeper.core.debounce import Debouncer
from threadkeeper.core.storage import JsonKeyValueStore


class TestJsonKeyValueStore:
    def test_set_get_remove(self, tmp_path):
        store = JsonKeyValueStore(tmp_path / "state.json")
        store.set({"a": 1, "b": [1, 2]})
        store.set({"c": {"x": True}})

        assert store.get(["a", "b", "c", "missing"]) == {"a": 1, "b": [1, 2], "c": {"x": True}}

        store.remove(["a", "missing"])
        assert store.get(["a", "b"]) == {"b": [1, 2]}

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        store = JsonKeyValueStore(path)

        assert store.get(["a"]) == {}
        store.set({"a": 1})
        assert json.loads(path.read_text()) == {"a": 1}

    def test_non_object_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2, 3]")
        assert JsonKeyValueStore(path).get(["a"]) == {}

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonKeyValueStore(tmp_path / "state.json")
        for index in range(5):
            store.set({"n": index})

        assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]


class TestDebouncer:
    def test_burst_collapses_into_one_call(self):
        calls = []
        done = threading.Event()

        def func():
            calls.append(1)
            done.set()

        debouncer = Debouncer(func, wait=0.05)
        for _ in range(10):
            debouncer.trigger()

        assert done.wait(1.0)
        assert not debouncer.pending
        assert calls == [1]

    def test_flush_runs_pending_call_now(self):
        calls = []
        debouncer = Debouncer(lambda: calls.append(1), wait=10.0)
        debouncer.trigger()
        debouncer.flush()

        assert calls == [1]
        assert not debouncer.pending

    def test_cancel_and_errors(self):
        def boom():
            raise RuntimeError("listener failed")

        debouncer = Debouncer(boom, wait=10.0)
        debouncer.trigger()
        debouncer.cancel()
        assert not debouncer.pending

        debouncer.trigger()
        debouncer.flush()  # exception is logged, not raised


class TestSettings:
    def test_coerce_by_default_type(self):
        assert _coerce("7", 5) == 7
        assert _coerce("0.25", 1.5) == 0.25
        assert _coerce("false", True) is False
        assert _coerce(3, "x") == "3"

    def test_defaults(self):
        settings = WatcherSettings()

        assert settings.max_concurrent == 5
        assert settings.max_retries == 3
        assert settings.stuck_timeout == 300.0
        assert settings.history_capacity == 18000
        assert settings.child_pause == DEFAULTS["RETRY_BASE_DELAY"] / 3

    def test_from_config_reads_source(self):
        class Source:
            def get(self, key, default=None):
                return {"MAX_CONCURRENT": 9}.get(key, DEFAULTS.get(key, default))

        settings = WatcherSettings.from_config(Source())

        assert settings.max_concurrent == 9
        assert settings.tick_interval == DEFAULTS["TICK_INTERVAL"]
