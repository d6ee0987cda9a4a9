"""repeat_shared.auth — Bearer JWT authentication for repeat-videos Lambdas.

Reads the `Authorization: Bearer <token>` header, validates the RS256 JWT
against the identity provider's JWKS endpoint, and checks audience and
issuer. Every failure mode collapses to the same 401 for the client; the
specific reason is only logged.

Requires environment variables:
    AUTH0_DOMAIN     — e.g. repeat-videos.eu.auth0.com

Optional:
    AUTH0_AUDIENCE              — default: https://api.repeat-videos.com
    JWKS_FETCH_TIMEOUT_SECONDS  — default: 5
"""

from __future__ import annotations

import http.client
import json
import logging
import os
import threading
import urllib.request
from typing import Any, Dict, Optional, Tuple

import jwt
from jwt.algorithms import RSAAlgorithm

from repeat_shared.http_utils import _error

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration (read from env; callers may override at import time)
# ---------------------------------------------------------------------------

AUTH0_DOMAIN: str = os.environ.get("AUTH0_DOMAIN", "")
AUTH0_AUDIENCE: str = os.environ.get("AUTH0_AUDIENCE") or "https://api.repeat-videos.com"
JWKS_FETCH_TIMEOUT_SECONDS: float = float(os.environ.get("JWKS_FETCH_TIMEOUT_SECONDS", "5"))

BEARER_PREFIX = "Bearer "
UNAUTHORIZED_MESSAGE = "Unauthorized"

# ---------------------------------------------------------------------------
# JWKS cache (process lifetime)
# ---------------------------------------------------------------------------

_jwks_cache: Optional[Dict[str, Any]] = None
_jwks_lock = threading.Lock()


def _jwks_url() -> str:
    return f"https://{AUTH0_DOMAIN}/.well-known/jwks.json"


def _expected_issuer() -> str:
    return f"https://{AUTH0_DOMAIN}/"


def _header(event: Dict[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup (API GW v2 lower-cases, v1 does not)."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == wanted:
            return value
    return None


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """Extract the bearer token from the Authorization header."""
    auth_header = _header(event, "authorization")
    if not isinstance(auth_header, str) or not auth_header.startswith(BEARER_PREFIX):
        return None
    token = auth_header[len(BEARER_PREFIX) :].strip()
    return token or None


def _fetch_jwks_document() -> Dict[str, Any]:
    with urllib.request.urlopen(_jwks_url(), timeout=JWKS_FETCH_TIMEOUT_SECONDS) as resp:
        return json.loads(resp.read())


def _get_jwks() -> Dict[str, Any]:
    """Fetch (once per process) the identity provider JWKS, keyed by kid."""
    global _jwks_cache
    if _jwks_cache is not None:
        return _jwks_cache

    with _jwks_lock:
        if _jwks_cache is not None:
            return _jwks_cache

        if not AUTH0_DOMAIN:
            raise ValueError("AUTH0_DOMAIN not set")

        try:
            data = _fetch_jwks_document()
        except (OSError, ValueError, http.client.HTTPException) as exc:
            raise ValueError(f"JWKS fetch failed: {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("keys", []), list):
            raise ValueError("JWKS document is not a key set")

        keys: Dict[str, Any] = {}
        for key_data in data.get("keys", []):
            if not isinstance(key_data, dict):
                continue
            kid = key_data.get("kid")
            if not kid or key_data.get("kty") != "RSA":
                continue
            try:
                keys[kid] = RSAAlgorithm.from_jwk(json.dumps(key_data))
            except jwt.PyJWTError as exc:
                logger.warning("skipping unusable JWK %s: %s", kid, exc)

        logger.info("JWKS loaded from %s (%d keys)", _jwks_url(), len(keys))
        _jwks_cache = keys
        return _jwks_cache


def _verify_token(token: str) -> str:
    """Verify an RS256 bearer JWT. Returns the subject claim."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid token header: {exc}") from exc

    alg = header.get("alg")
    if alg != "RS256":
        raise ValueError(f"Unexpected token algorithm: {alg}")

    key = _get_jwks().get(header.get("kid"))
    if key is None:
        raise ValueError("Token key ID not found in JWKS")

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=AUTH0_AUDIENCE,
            issuer=_expected_issuer(),
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Token has expired.")
    except jwt.InvalidAudienceError:
        raise ValueError("Token audience mismatch.")
    except jwt.InvalidIssuerError:
        raise ValueError("Token issuer mismatch.")
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ValueError("Token subject is empty.")
    return subject


def _authenticate(event: Dict[str, Any]) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
    """Authenticate request via bearer JWT.

    Returns (subject, None) on success or (None, error_response) on failure.
    """
    token = _extract_token(event)
    if not token:
        logger.warning("auth rejected: missing or non-bearer Authorization header")
        return None, _error(401, UNAUTHORIZED_MESSAGE)

    try:
        return _verify_token(token), None
    except ValueError as exc:
        logger.warning("auth rejected: %s", exc)
        return None, _error(401, UNAUTHORIZED_MESSAGE)
