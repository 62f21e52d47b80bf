"""Platform connection, sync and progress streaming API routes."""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Mapping

from flask import Blueprint, Response, request, stream_with_context, url_for

from catalog.service import CatalogUnavailableError
from platforms.base import (
    AuthExpiredError,
    PlatformError,
    UnsupportedPlatformError,
    UpstreamUnavailableError,
)
from ratelimit.windowed import RateLimitExceededError
from routes.api_utils import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    UpstreamServiceError,
    current_user_id,
    handle_api_errors,
    success_response,
    translate_errors,
)
from sync.connections import ConnectionNotFoundError
from sync.locks import SyncInProgressError

logger = logging.getLogger(__name__)

sync_blueprint = Blueprint("sync", __name__)

_context: dict[str, Any] = {}

KEEPALIVE_SECONDS = 15.0

SYNC_ERROR_TRANSLATIONS = (
    (ConnectionNotFoundError, lambda exc: NotFoundError(str(exc))),
    (SyncInProgressError, lambda exc: ConflictError(str(exc))),
    (UnsupportedPlatformError, lambda exc: BadRequestError(str(exc))),
    (
        RateLimitExceededError,
        lambda exc: RateLimitedError(str(exc), payload=exc.to_dict()),
    ),
    (
        AuthExpiredError,
        lambda exc: UpstreamServiceError(str(exc), payload={"code": "auth_expired"}),
    ),
    (UpstreamUnavailableError, lambda exc: UpstreamServiceError(str(exc))),
    (CatalogUnavailableError, lambda exc: UpstreamServiceError(str(exc))),
    (PlatformError, lambda exc: BadRequestError(str(exc))),
)


def configure(context: Mapping[str, Any]) -> None:
    """Inject the orchestrator, stores and limiters used by the sync routes."""
    _context.update(context)


def _ctx(key: str) -> Any:
    if key not in _context:
        raise RuntimeError(f"sync routes missing context value: {key}")
    return _context[key]


def _error_event(exc: Exception) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "error", "message": str(exc) or type(exc).__name__}
    if isinstance(exc, RateLimitExceededError):
        event.update(exc.to_dict())
    return event


@sync_blueprint.route("/api/sync/platforms", methods=["GET"])
@handle_api_errors
def api_sync_platforms():
    registry = _ctx("registry")
    return success_response(registry.describe())


@sync_blueprint.route("/api/sync/status", methods=["GET"])
@handle_api_errors
def api_sync_status():
    user_id = current_user_id()
    orchestrator = _ctx("orchestrator")
    return success_response(orchestrator.status(user_id))


@sync_blueprint.route("/api/sync/all", methods=["POST"])
@handle_api_errors
def api_sync_all():
    user_id = current_user_id()
    orchestrator = _ctx("orchestrator")
    return success_response(orchestrator.sync_all(user_id))


@sync_blueprint.route("/api/sync/xbox/quota", methods=["GET"])
@handle_api_errors
def api_sync_xbox_quota():
    current_user_id()
    limiter = _ctx("xbox_limiter")
    return success_response(
        {
            "limit": limiter.limit,
            "remaining": limiter.remaining(),
            "minutesUntilReset": limiter.minutes_until_reset(),
        }
    )


@sync_blueprint.route("/api/sync/jobs/<job_id>", methods=["GET"])
@handle_api_errors
def api_sync_job_detail(job_id: str):
    user_id = current_user_id()
    job_manager = _ctx("job_manager")
    job = job_manager.get_job(job_id.strip().lower())
    if job is None or not str(job.get("jobType", "")).startswith(f"sync:{user_id}:"):
        raise NotFoundError("job not found")
    return success_response(job)


@sync_blueprint.route("/api/sync/disconnect/<platform>", methods=["DELETE"])
@handle_api_errors
@translate_errors(SYNC_ERROR_TRANSLATIONS)
def api_sync_disconnect(platform: str):
    user_id = current_user_id()
    orchestrator = _ctx("orchestrator")
    removed = orchestrator.disconnect(user_id, platform)
    return success_response(
        {"message": "Platform disconnected successfully", "removedEntries": removed}
    )


@sync_blueprint.route("/api/sync/<platform>", methods=["POST"])
@handle_api_errors
@translate_errors(SYNC_ERROR_TRANSLATIONS)
def api_sync_connect(platform: str):
    user_id = current_user_id()
    payload = request.get_json(silent=True)
    if payload is not None and not isinstance(payload, Mapping):
        raise BadRequestError("connection payload must be a JSON object")
    orchestrator = _ctx("orchestrator")
    connection = orchestrator.connect(user_id, platform, payload or {})
    return success_response(connection.to_status_dict())


@sync_blueprint.route("/api/sync/<platform>/sync", methods=["POST"])
@handle_api_errors
@translate_errors(SYNC_ERROR_TRANSLATIONS)
def api_sync_run(platform: str):
    user_id = current_user_id()
    orchestrator = _ctx("orchestrator")
    result = orchestrator.sync(user_id, platform)
    return success_response(result.to_dict())


@sync_blueprint.route("/api/sync/<platform>/jobs", methods=["POST"])
@handle_api_errors
@translate_errors(SYNC_ERROR_TRANSLATIONS)
def api_sync_enqueue(platform: str):
    user_id = current_user_id()
    key = platform.strip().lower()
    registry = _ctx("registry")
    registry.get(key)
    _ctx("connections").require(user_id, key)
    job_manager = _ctx("job_manager")
    job, created = job_manager.enqueue_sync(user_id, key)
    response, _status = success_response({"job": job, "created": created})
    response.headers["Location"] = url_for("sync.api_sync_job_detail", job_id=job["id"])
    return response, 202 if created else 200


@sync_blueprint.route("/api/sync/<platform>/progress", methods=["GET"])
@handle_api_errors
def api_sync_progress(platform: str):
    """Run a sync and stream its progress as server-sent events.

    The stream ends with a ``complete`` event carrying the run counters or an
    ``error`` event carrying the failure message.
    """

    user_id = current_user_id()
    orchestrator = _ctx("orchestrator")
    events: queue.Queue[dict[str, Any] | None] = queue.Queue()

    def _run() -> None:
        try:
            result = orchestrator.sync(
                user_id, platform, on_progress=lambda event: events.put(event.to_dict())
            )
            events.put({"type": "complete", **result.to_dict()})
        except Exception as exc:
            logger.warning("Streamed %s sync failed for user %s: %s", platform, user_id, exc)
            events.put(_error_event(exc))
        finally:
            events.put(None)

    worker = threading.Thread(target=_run, name=f"sync-{platform}-{user_id}", daemon=True)
    worker.start()

    def _event_stream():
        while True:
            try:
                item = events.get(timeout=KEEPALIVE_SECONDS)
            except queue.Empty:
                yield ": keep-alive\n\n"
                continue
            if item is None:
                return
            yield f"data: {json.dumps(item, default=str)}\n\n"

    response = Response(
        stream_with_context(_event_stream()),
        mimetype="text/event-stream",
    )
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


__all__ = ["SYNC_ERROR_TRANSLATIONS", "configure", "sync_blueprint"]
