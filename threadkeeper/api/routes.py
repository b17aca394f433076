"""Watcher API routes: commands, status and search parameters."""

from typing import Any, Optional

from flask import Flask, jsonify, request

from threadkeeper.core.logger import setup_logger
from threadkeeper.download.orchestrator import Orchestrator

logger = setup_logger(__name__)


def _command_response(success: bool, error: Optional[str], failure_status: int = 400):
    if success:
        return jsonify({"success": True})
    return jsonify({"success": False, "error": error or "Request failed"}), failure_status


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_watch_routes(app: Flask, orchestrator: Orchestrator) -> None:
    @app.route("/api/start", methods=["POST"])
    def api_start():
        data = _json_body()
        success, error = orchestrator.start(
            board=str(data.get("board") or ""),
            search_term=data.get("searchTerm"),
            thread_id=data.get("threadId"),
            download_path=data.get("downloadPath"),
        )
        return _command_response(success, error)

    @app.route("/api/stop", methods=["POST"])
    def api_stop():
        return _command_response(*orchestrator.stop())

    @app.route("/api/resume", methods=["POST"])
    def api_resume():
        resumed, message = orchestrator.resume_all()
        return jsonify({"success": resumed, "message": message})

    @app.route("/api/threads/<int:thread_id>/toggle", methods=["POST"])
    def api_toggle_thread(thread_id: int):
        return _command_response(*orchestrator.toggle(thread_id))

    @app.route("/api/threads/<int:thread_id>/close", methods=["POST"])
    def api_close_thread(thread_id: int):
        success, error = orchestrator.close(thread_id)
        return _command_response(success, error, failure_status=404)

    @app.route("/api/threads/<int:thread_id>", methods=["DELETE"])
    def api_remove_thread(thread_id: int):
        success, error = orchestrator.remove(thread_id)
        return _command_response(success, error, failure_status=404)

    @app.route("/api/threads/<int:thread_id>/forget", methods=["POST"])
    def api_forget_thread(thread_id: int):
        success, error = orchestrator.forget_history(thread_id)
        return _command_response(success, error, failure_status=404)

    @app.route("/api/history/forget", methods=["POST"])
    def api_forget_all():
        return _command_response(*orchestrator.forget_all_history())

    @app.route("/api/status", methods=["GET"])
    def api_status():
        return jsonify(orchestrator.get_status())

    @app.route("/api/search-params", methods=["GET"])
    def api_search_params():
        return jsonify(orchestrator.get_last_search_params().to_dict())

    @app.route("/api/sync", methods=["POST"])
    def api_sync():
        updated = orchestrator.sync_counts()
        return jsonify({"success": True, "updated": updated})
