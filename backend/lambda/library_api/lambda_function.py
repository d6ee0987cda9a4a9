"""library_api/lambda_function.py

Lambda API for the per-user repeat-videos library. Each entry records a
video the user looped: title, loop markers (loopA/loopB), loop count and
when it was added.

Routes (via API Gateway proxy, single resource):
    GET     /api/library    — list the caller's entries
    POST    /api/library    — add an entry if not already present
    PATCH   /api/library    — increment loops and/or set title/loopA/loopB
    DELETE  /api/library    — delete one entry, or all with {"all": true}
    OPTIONS /api/library    — CORS preflight

Auth:
    Reads `Authorization: Bearer <token>`.
    Validates the JWT against the identity provider JWKS (RS256, cached for
    the process lifetime), checking audience and issuer.

Environment variables:
    AUTH0_DOMAIN                      required
    AUTH0_AUDIENCE                    default: https://api.repeat-videos.com
    LIBRARY_TABLE                     default: repeat-videos-library
    DYNAMODB_REGION                   default: us-west-2
    DYNAMODB_ENDPOINT_URL             default: unset
    DYNAMODB_CONNECT_TIMEOUT_SECONDS  default: 5
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import os
from typing import Any, Dict

from repeat_shared.auth import _authenticate
from repeat_shared.aws_clients import _get_ddb
from repeat_shared.http_utils import _error, _http_method, _json_body, _preflight, _response
from repeat_shared.serialization import _iso_ms, _now_iso_ms, _parse_iso8601

from persistence import (
    _delete_all_entries,
    _delete_entry,
    _insert_entry_if_absent,
    _list_entries,
    _update_entry,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

LIBRARY_TABLE = os.environ.get("LIBRARY_TABLE", "repeat-videos-library")

NO_UPDATE_FIELDS = "No update fields"

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)

# DynamoDB numbers: at most 38 significant digits, magnitude within 1E-130..1E+126.
_MAX_INTEGER = 10 ** 38 - 1
_MAX_MAGNITUDE = 1e125
_MIN_MAGNITUDE = 1e-125

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Request body validation
# ---------------------------------------------------------------------------


def _truthy(value: Any) -> bool:
    # JSON-client truthiness: empty arrays/objects still count as set.
    return value not in (None, False, 0, "")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, int):
        return abs(value) <= _MAX_INTEGER
    if not math.isfinite(value):
        return False
    return value == 0 or _MIN_MAGNITUDE <= abs(value) <= _MAX_MAGNITUDE


def _require_video_id(body: Dict[str, Any]) -> str:
    video_id = body.get("videoId")
    if not isinstance(video_id, str) or not video_id:
        raise ValueError("videoId is required")
    return video_id


def _optional_title(body: Dict[str, Any]) -> Any:
    title = body.get("title")
    if title is not None and not isinstance(title, str):
        raise ValueError("title must be a string or null")
    return title


def _optional_marker(body: Dict[str, Any], field: str) -> Any:
    value = body.get(field)
    if value is not None and not _is_number(value):
        raise ValueError(f"{field} must be a number or null")
    return value


def _coerce_added_at(raw: Any) -> str:
    """Normalise a client-supplied addedAt (ISO string or epoch ms)."""
    if raw in (None, "", 0):
        return _now_iso_ms()
    if _is_number(raw):
        try:
            moment = _EPOCH + dt.timedelta(milliseconds=raw)
        except OverflowError as exc:
            raise ValueError("addedAt is not a valid timestamp") from exc
        return _iso_ms(moment)
    if isinstance(raw, str):
        parsed = _parse_iso8601(raw)
        if parsed is None:
            raise ValueError("addedAt is not a valid timestamp")
        return _iso_ms(parsed)
    raise ValueError("addedAt is not a valid timestamp")


def _parse_new_entry(owner_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    loops = body.get("loops", 0)
    if loops is None:
        loops = 0
    if not isinstance(loops, int) or not _is_number(loops) or loops < 0:
        raise ValueError("loops must be a non-negative integer")

    return {
        "owner_id": owner_id,
        "videoId": _require_video_id(body),
        "title": _optional_title(body),
        "loops": loops,
        "loopA": _optional_marker(body, "loopA"),
        "loopB": _optional_marker(body, "loopB"),
        "addedAt": _coerce_added_at(body.get("addedAt")),
    }


def _parse_patch(body: Dict[str, Any]) -> Dict[str, Any]:
    """Return only the settable fields present in the body.

    A key that is present with a null value is kept (it clears the stored
    attribute); a key that was not sent is left out entirely.
    """
    assignments: Dict[str, Any] = {}
    if "title" in body:
        assignments["title"] = _optional_title(body)
    for field in ("loopA", "loopB"):
        if field in body:
            assignments[field] = _optional_marker(body, field)
    return assignments


# ---------------------------------------------------------------------------
# Operation handlers
# ---------------------------------------------------------------------------


def _handle_list(ddb, owner_id: str) -> Dict[str, Any]:
    entries = _list_entries(ddb, LIBRARY_TABLE, owner_id)
    return _response(200, entries)


def _handle_create(ddb, owner_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    try:
        entry = _parse_new_entry(owner_id, body)
    except ValueError as exc:
        return _error(400, str(exc))

    if not _insert_entry_if_absent(ddb, LIBRARY_TABLE, entry):
        logger.info("entry already present, left unchanged: %s/%s", owner_id, entry["videoId"])
    return _response(200, {"ok": True})


def _handle_update(ddb, owner_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    try:
        video_id = _require_video_id(body)
        assignments = _parse_patch(body)
    except ValueError as exc:
        return _error(400, str(exc))

    increment_loops = _truthy(body.get("incLoops"))
    if not increment_loops and not assignments:
        return _error(400, NO_UPDATE_FIELDS)

    updated = _update_entry(
        ddb,
        LIBRARY_TABLE,
        owner_id,
        video_id,
        increment_loops=increment_loops,
        assignments=assignments,
    )
    if not updated:
        logger.info("update matched no entry: %s/%s", owner_id, video_id)
    return _response(200, {"ok": True})


def _handle_delete(ddb, owner_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    if _truthy(body.get("all")):
        deleted = _delete_all_entries(ddb, LIBRARY_TABLE, owner_id)
        logger.info("deleted all %d entries for %s", deleted, owner_id)
        return _response(200, {"ok": True})

    try:
        video_id = _require_video_id(body)
    except ValueError as exc:
        return _error(400, str(exc))

    _delete_entry(ddb, LIBRARY_TABLE, owner_id, video_id)
    return _response(200, {"ok": True})


_BODY_HANDLERS = {
    "POST": _handle_create,
    "PATCH": _handle_update,
    "DELETE": _handle_delete,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method = _http_method(event)

    if method == "OPTIONS":
        return _preflight()

    try:
        owner_id, auth_err = _authenticate(event)
        if auth_err:
            return auth_err

        if method != "GET" and method not in _BODY_HANDLERS:
            return _error(405, "Method not allowed")

        logger.info("%s library for %s", method, owner_id)
        ddb = _get_ddb()
        if method == "GET":
            return _handle_list(ddb, owner_id)

        try:
            body = _json_body(event)
        except ValueError as exc:
            return _error(400, str(exc))
        return _BODY_HANDLERS[method](ddb, owner_id, body)
    except Exception:
        logger.exception("library function error")
        return _error(500, "Internal error")
