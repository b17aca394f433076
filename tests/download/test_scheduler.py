"""
Tests for the scheduler tick, per-thread processing and stuck-thread detection.
"""

import threading

import pytest

from conftest import make_thread, wait_all


@pytest.fixture
def scheduler(orchestrator):
    orchestrator.run_state.start()
    return orchestrator.scheduler


def _paths_for(ledger, thread_id):
    return ledger.entries_for_thread(thread_id)


class TestProcessing:
    def test_tick_downloads_every_image_of_an_active_thread(
        self, orchestrator, scheduler, add_watched, fake_transfers, clock, sleeps
    ):
        add_watched(1, images=3)

        wait_all(scheduler.tick())

        item = orchestrator.registry.find(1)
        assert item.total_images == 3
        assert item.downloaded_count == 3
        assert _paths_for(orchestrator.ledger, 1) == {"1000.jpg", "1001.jpg", "1002.jpg"}
        assert len(fake_transfers.begun) == 3
        assert sleeps.count(orchestrator.settings.child_pause) == 3
        # Finished run starts the completion timer
        assert orchestrator.registry.timer_started(1) == clock.now
        assert not orchestrator.activity.processing_ids()

    def test_already_skipped_images_are_not_requested(self, orchestrator, scheduler, add_watched, fake_transfers):
        add_watched(1, images=3, skipped={"1000.jpg", "1002.jpg"})

        wait_all(scheduler.tick())

        assert [path.rsplit("/", 1)[-1] for _, path in fake_transfers.begun] == ["1001.jpg"]
        assert orchestrator.registry.find(1).downloaded_count == 3

    def test_closed_upstream_closes_locally(self, orchestrator, scheduler, add_watched, fake_fetch, fake_transfers):
        item = add_watched(1, images=2)
        fake_fetch.set(item.url, make_thread(1, images=2, closed=True))

        wait_all(scheduler.tick())

        item = orchestrator.registry.find(1)
        assert item.closed
        assert not item.active
        assert not item.error
        assert fake_transfers.begun == []

    def test_fetch_failure_pauses_only_that_thread(self, orchestrator, scheduler, add_watched, fake_fetch):
        first = add_watched(1, images=1)
        add_watched(2, images=1)
        fake_fetch.fail(first.url)

        wait_all(scheduler.tick())

        failed = orchestrator.registry.find(1)
        assert failed.error
        assert not failed.active
        assert not failed.closed
        assert orchestrator.registry.find(2).downloaded_count == 1

    def test_empty_thread_leaves_no_timer(self, orchestrator, scheduler, add_watched):
        add_watched(1, images=0)

        wait_all(scheduler.tick())

        assert orchestrator.registry.find(1).total_images == 0
        assert not orchestrator.registry.has_timer(1)

    def test_pausing_mid_run_stops_after_current_image(self, orchestrator, scheduler, add_watched, fake_transfers):
        add_watched(1, images=5)
        original = orchestrator.engine.materialize

        def materialize_then_pause(url, thread_id, poster):
            result = original(url, thread_id, poster)
            with orchestrator.registry.edit(thread_id) as item:
                item.active = False
            return result

        orchestrator.engine.materialize = materialize_then_pause

        wait_all(scheduler.tick())

        assert len(fake_transfers.begun) == 1
        assert orchestrator.registry.find(1).downloaded_count == 1

    def test_process_item_skips_thread_already_processing(self, orchestrator, scheduler, add_watched, fake_fetch):
        item = add_watched(1, images=1)
        orchestrator.activity.claim(1, cap=2)

        scheduler.process_item(1)

        assert fake_fetch.calls_to(item.url) == 0


class TestConcurrencyCap:
    def test_never_processes_more_than_cap(self, orchestrator, scheduler, add_watched):
        cap = orchestrator.settings.max_concurrent
        for thread_id in range(1, 5):
            add_watched(thread_id, images=2)

        peak = []
        original = orchestrator.engine.materialize

        def observe(url, thread_id, poster):
            peak.append(orchestrator.activity.processing_count())
            return original(url, thread_id, poster)

        orchestrator.engine.materialize = observe

        first = scheduler.tick()
        assert len(first) == cap
        wait_all(first)

        second = scheduler.tick()
        wait_all(second)

        assert max(peak) <= cap
        for thread_id in range(1, 5):
            assert orchestrator.registry.find(thread_id).downloaded_count == 2

    def test_complete_threads_are_not_dispatched(self, orchestrator, scheduler, add_watched, fake_fetch):
        item = add_watched(1, images=1, total=1, skipped={"1000.jpg"})

        assert scheduler.tick() == []
        assert fake_fetch.calls_to(item.url) == 0

    def test_tick_rederives_and_persists_run_flag(self, orchestrator, scheduler, store, add_watched):
        add_watched(1, active=False)

        scheduler.tick()

        assert not orchestrator.run_state.is_running
        assert store.get(["is_running"]) == {"is_running": False}


class TestStuckTimer:
    @pytest.fixture
    def complete_thread(self, orchestrator, add_watched, clock):
        item = add_watched(1, images=2, total=2, skipped={"1000.jpg", "1001.jpg"})
        orchestrator.registry.start_timer(1, now=clock.now)
        return item

    def test_not_expired_is_left_alone(self, orchestrator, scheduler, complete_thread, fake_fetch, clock):
        clock.advance(orchestrator.settings.stuck_timeout - 1)

        scheduler.tick()

        assert fake_fetch.calls_to(complete_thread.url) == 0
        assert not orchestrator.registry.find(1).closed

    def test_expired_without_new_images_closes(self, orchestrator, scheduler, complete_thread, clock):
        clock.advance(orchestrator.settings.stuck_timeout + 1)

        scheduler.tick()

        item = orchestrator.registry.find(1)
        assert item.closed
        assert not item.active
        assert not item.error
        assert not orchestrator.registry.has_timer(1)

    def test_expired_with_new_images_reopens(
        self, orchestrator, scheduler, complete_thread, fake_fetch, fake_transfers, clock
    ):
        fake_fetch.set(complete_thread.url, make_thread(1, images=3))
        clock.advance(orchestrator.settings.stuck_timeout + 1)

        wait_all(scheduler.tick())

        item = orchestrator.registry.find(1)
        assert not item.closed
        assert item.active
        assert item.total_images == 3
        assert item.downloaded_count == 3
        assert [path.rsplit("/", 1)[-1] for _, path in fake_transfers.begun] == ["1002.jpg"]

    def test_expired_and_closed_upstream(self, orchestrator, scheduler, complete_thread, fake_fetch, clock):
        fake_fetch.set(complete_thread.url, make_thread(1, images=2, archived=True))
        clock.advance(orchestrator.settings.stuck_timeout + 1)

        scheduler.tick()

        item = orchestrator.registry.find(1)
        assert item.closed
        assert not item.error

    def test_expired_and_unreachable_closes_with_error(
        self, orchestrator, scheduler, complete_thread, fake_fetch, clock
    ):
        fake_fetch.fail(complete_thread.url)
        clock.advance(orchestrator.settings.stuck_timeout + 1)

        scheduler.tick()

        item = orchestrator.registry.find(1)
        assert item.closed
        assert item.error
        assert not item.active


class TestLoop:
    def test_kick_during_tick_runs_another_tick(self, scheduler):
        ticks = []
        second_tick = threading.Event()

        def tick():
            ticks.append(len(ticks))
            if len(ticks) == 1:
                scheduler.kick()
            else:
                second_tick.set()
            return []

        scheduler.tick = tick
        scheduler.start()

        # tick_interval is an hour, so only the kick can cause the second tick
        assert second_tick.wait(5.0)
        assert ticks[:2] == [0, 1]
