"""API tests for the watcher routes."""

import pytest

from conftest import BOARD, make_thread
from threadkeeper.api.websocket import WebSocketManager


@pytest.fixture
def client(orchestrator):
    from threadkeeper.main import create_app

    app, _ = create_app(orchestrator, manager=WebSocketManager())
    app.config["TESTING"] = True
    return app.test_client()


class TestCommandRoutes:
    def test_start_by_thread_id(self, client, orchestrator, fake_fetch, board_api):
        fake_fetch.set(board_api.thread_url(BOARD, 321), make_thread(321, images=1))

        resp = client.post("/api/start", json={"board": BOARD, "threadId": 321, "downloadPath": "out"})

        assert resp.status_code == 200
        assert resp.json == {"success": True}
        assert orchestrator.registry.find(321).active

    def test_start_requires_term_or_id(self, client):
        resp = client.post("/api/start", json={"board": BOARD})

        assert resp.status_code == 400
        assert resp.json["success"] is False
        assert resp.json["error"]

    def test_start_with_no_body(self, client):
        resp = client.post("/api/start", data="not json", content_type="text/plain")
        assert resp.status_code == 400

    def test_stop(self, client, orchestrator, add_watched):
        add_watched(1)

        resp = client.post("/api/stop")

        assert resp.json == {"success": True}
        assert not orchestrator.registry.find(1).active

    def test_resume(self, client, orchestrator, add_watched):
        add_watched(1, images=1, active=False)

        resp = client.post("/api/resume")

        assert resp.json["success"] is True
        assert orchestrator.registry.find(1).active

    def test_toggle_close_forget_and_remove(self, client, orchestrator, add_watched):
        add_watched(1, skipped={"a.jpg"})

        assert client.post("/api/threads/1/toggle").json == {"success": True}
        assert not orchestrator.registry.find(1).active

        assert client.post("/api/threads/1/forget").json == {"success": True}
        assert orchestrator.registry.find(1).skipped_images == set()

        assert client.post("/api/threads/1/close").json == {"success": True}
        assert orchestrator.registry.find(1).closed

        assert client.delete("/api/threads/1").json == {"success": True}
        assert 1 not in orchestrator.registry

    def test_unknown_thread_is_404(self, client):
        assert client.post("/api/threads/999/close").status_code == 404
        assert client.delete("/api/threads/999").status_code == 404
        assert client.post("/api/threads/999/forget").status_code == 404

    def test_forget_all_history(self, client, orchestrator):
        orchestrator.ledger.record("4chan_downloads/1/Anonymous/a.jpg", 1)

        assert client.post("/api/history/forget").json == {"success": True}
        assert len(orchestrator.ledger) == 0

    def test_sync(self, client, orchestrator, add_watched):
        add_watched(1, total=2)
        orchestrator.ledger.record("4chan_downloads/1/Anonymous/a.jpg", 1)

        resp = client.post("/api/sync")

        assert resp.json == {"success": True, "updated": 1}


class TestQueryRoutes:
    def test_status(self, client, add_watched):
        add_watched(1, total=3)

        resp = client.get("/api/status")

        assert resp.status_code == 200
        assert resp.json["isRunning"] is False
        assert resp.json["watchedThreads"][0]["totalImages"] == 3
        assert "nextManageThreads" in resp.json

    def test_search_params(self, client, orchestrator, fake_fetch, board_api):
        fake_fetch.set(board_api.thread_url(BOARD, 5), make_thread(5))
        client.post("/api/start", json={"board": BOARD, "threadId": "5", "downloadPath": "/x/y/"})

        resp = client.get("/api/search-params")

        assert resp.json == {"board": BOARD, "searchTerm": "", "downloadPath": "x/y"}
