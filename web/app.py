from __future__ import annotations

import atexit
import logging
import threading
import uuid
from typing import Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from engine.config import load_config
from runs.errors import RunServiceError
from runs.service import TestRunsService, build_service

app = Flask(__name__)
log = logging.getLogger("testbrick.web")

USER_HEADER = "X-User-Id"
DEFAULT_RUN_LIMIT = 20
MAX_RUN_LIMIT = 100

_run_service: Optional[TestRunsService] = None
_service_lock = threading.Lock()


def get_run_service() -> TestRunsService:
    global _run_service
    with _service_lock:
        if _run_service is None:
            _run_service = build_service(load_config())
        return _run_service


def _current_user() -> Optional[str]:
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    return user_id or None


def _unauthorized():
    return jsonify({"error": f"missing {USER_HEADER} header", "code": "UNAUTHORIZED"}), 401


@app.errorhandler(RunServiceError)
def handle_run_error(error: RunServiceError):
    return jsonify(error.as_dict()), error.status_code


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    code = (error.name or "error").upper().replace(" ", "_")
    return jsonify({"error": f"{error.description} ({request.method} {request.path})", "code": code}), error.code


@app.errorhandler(Exception)
def handle_exception(error: Exception):
    correlation_id = str(uuid.uuid4())[:8]
    log.exception("[%s] Uncaught exception: %s", correlation_id, error)
    return (
        jsonify(
            {
                "error": f"[{correlation_id}] Internal failure - An unexpected error occurred",
                "code": "INTERNAL_ERROR",
                "correlation_id": correlation_id,
            }
        ),
        500,
    )


@app.get("/healthz")
def healthz():
    return jsonify({"status": "ok"})


@app.post("/test-runs/tests/<test_id>/run")
def start_run(test_id: str):
    user_id = _current_user()
    if user_id is None:
        return _unauthorized()
    raw_headless = request.args.get("headless")
    headless = None if raw_headless is None else raw_headless != "false"
    run = get_run_service().start_run(test_id, user_id, headless=headless)
    return jsonify(run), 201


@app.get("/test-runs/tests/<test_id>/runs")
def list_runs(test_id: str):
    user_id = _current_user()
    if user_id is None:
        return _unauthorized()
    raw_limit = request.args.get("limit")
    limit = DEFAULT_RUN_LIMIT
    if raw_limit is not None:
        try:
            limit = int(raw_limit)
        except ValueError:
            return jsonify({"error": "limit must be an integer", "code": "VALIDATION"}), 400
        if limit <= 0:
            return jsonify({"error": "limit must be positive", "code": "VALIDATION"}), 400
        limit = min(limit, MAX_RUN_LIMIT)
    return jsonify(get_run_service().list_runs_for_test_file(test_id, user_id, limit=limit))


@app.delete("/test-runs/tests/<test_id>/runs")
def delete_runs(test_id: str):
    user_id = _current_user()
    if user_id is None:
        return _unauthorized()
    return jsonify(get_run_service().delete_runs_for_test_file(test_id, user_id))


@app.get("/test-runs/share/<token>")
def get_shared_run(token: str):
    return jsonify(get_run_service().get_run_by_share_token(token))


@app.post("/test-runs/share/<token>/verify")
def verify_fix(token: str):
    return jsonify(get_run_service().verify_fix(token)), 201


@app.get("/test-runs/<run_id>")
def get_run(run_id: str):
    user_id = _current_user()
    if user_id is None:
        return _unauthorized()
    return jsonify(get_run_service().get_run(run_id, user_id))


@app.post("/test-runs/<run_id>/cancel")
def cancel_run(run_id: str):
    user_id = _current_user()
    if user_id is None:
        return _unauthorized()
    return jsonify(get_run_service().cancel_run(run_id, user_id))


@app.delete("/test-runs/<run_id>")
def delete_run(run_id: str):
    user_id = _current_user()
    if user_id is None:
        return _unauthorized()
    return jsonify(get_run_service().delete_run(run_id, user_id))


@atexit.register
def _shutdown_service() -> None:  # pragma: no cover - shutdown hook
    if _run_service is None:
        return
    try:
        _run_service.shutdown()
    except Exception as exc:
        log.debug("Shutdown cleanup failed: %s", exc)


if __name__ == "__main__":  # pragma: no cover - manual run helper
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host="0.0.0.0", port=5000)
