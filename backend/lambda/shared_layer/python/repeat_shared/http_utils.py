"""repeat_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope, body parsing and method extraction used by the
repeat-videos API Lambda functions.
"""

from __future__ import annotations

import base64
import binascii
import json
from decimal import Decimal
from typing import Any, Dict

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Authorization, Content-Type",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, DELETE, OPTIONS",
}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            **CORS_HEADERS,
            "Content-Type": "application/json",
        },
        "body": json.dumps(body, default=_json_default),
    }


def _preflight() -> Dict[str, Any]:
    """Empty 204 answer to a CORS pre-flight request."""
    return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}


def _error(status_code: int, message: str) -> Dict[str, Any]:
    """Build a standard error response: ``{"error": message}``."""
    return _response(status_code, {"error": message})


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not JSON and cannot be stored.
    raise ValueError(f"Unsupported JSON constant: {name}")


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse the JSON object body of an API Gateway event (handles base64).

    An absent or empty body parses as ``{}``. Raises ValueError when the body
    is not valid JSON or is not a JSON object.
    """
    raw = event.get("body")
    if raw in (None, ""):
        return {}

    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValueError("Invalid JSON body") from exc

    try:
        parsed = json.loads(raw, parse_constant=_reject_constant)
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid JSON body") from exc

    if not isinstance(parsed, dict):
        raise ValueError("Invalid JSON body")
    return parsed


def _http_method(event: Dict[str, Any]) -> str:
    """Extract the HTTP method from an API Gateway v1 or v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    return (http.get("method") or event.get("httpMethod") or "").upper()
