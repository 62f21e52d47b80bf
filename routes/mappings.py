"""Title mapping administration API routes."""

from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, request

from catalog.mappings import MappingConflictError, MappingError, MappingNotFoundError
from routes.api_utils import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    current_user_id,
    handle_api_errors,
    success_response,
    translate_errors,
)

mappings_blueprint = Blueprint("mappings", __name__)

_context: dict[str, Any] = {}

MAPPING_ERROR_TRANSLATIONS = (
    (MappingConflictError, lambda exc: ConflictError(str(exc))),
    (MappingNotFoundError, lambda exc: NotFoundError(str(exc))),
    (MappingError, lambda exc: BadRequestError(str(exc))),
)


def configure(context: Mapping[str, Any]) -> None:
    """Inject the mapping store."""
    _context.update(context)


def _ctx(key: str) -> Any:
    if key not in _context:
        raise RuntimeError(f"mapping routes missing context value: {key}")
    return _context[key]


def _json_body() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        raise BadRequestError("request body must be a JSON object")
    return payload


def _parse_paging() -> tuple[int, int]:
    try:
        requested_limit = int(request.args.get("limit", 200))
    except (TypeError, ValueError):
        requested_limit = 200
    if requested_limit <= 0:
        requested_limit = 200
    limit = min(requested_limit, 200)

    try:
        offset = int(request.args.get("offset", 0))
    except (TypeError, ValueError):
        offset = 0
    return limit, max(offset, 0)


@mappings_blueprint.route("/api/sync/mappings", methods=["GET"])
@handle_api_errors
def api_list_mappings():
    current_user_id()
    store = _ctx("mapping_store")
    limit, offset = _parse_paging()
    platform = (request.args.get("platform") or "").strip() or None
    items, total = store.list_mappings(platform=platform, limit=limit, offset=offset)
    return success_response(
        {
            "items": [item.to_dict() for item in items],
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(items) < total,
        }
    )


@mappings_blueprint.route("/api/sync/mappings", methods=["POST"])
@handle_api_errors
@translate_errors(MAPPING_ERROR_TRANSLATIONS)
def api_create_mapping():
    current_user_id()
    payload = _json_body()
    store = _ctx("mapping_store")
    mapping = store.create(
        str(payload.get("platform") or ""),
        str(payload.get("originalTitle") or ""),
        payload.get("gameId"),
    )
    return success_response(mapping.to_dict(), 201)


@mappings_blueprint.route("/api/sync/mappings", methods=["DELETE"])
@handle_api_errors
@translate_errors(MAPPING_ERROR_TRANSLATIONS)
def api_delete_mapping():
    current_user_id()
    payload = _json_body()
    store = _ctx("mapping_store")
    store.delete(
        str(payload.get("platform") or ""),
        str(payload.get("originalTitle") or ""),
    )
    return success_response({"message": "Mapping deleted"})


__all__ = ["MAPPING_ERROR_TRANSLATIONS", "configure", "mappings_blueprint"]
