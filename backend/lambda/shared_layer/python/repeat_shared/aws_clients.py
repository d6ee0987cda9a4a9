"""repeat_shared.aws_clients — Lazy-singleton DynamoDB client.

The client is created on first call and cached for the lifetime of the
process, so warm Lambda invocations reuse the same connection pool. It is
never closed explicitly.
"""

from __future__ import annotations

import logging
import os
import threading

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration (overridable via env)
# ---------------------------------------------------------------------------

DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "us-west-2")
DYNAMODB_ENDPOINT_URL: str = os.environ.get("DYNAMODB_ENDPOINT_URL", "")
DYNAMODB_CONNECT_TIMEOUT_SECONDS: float = float(
    os.environ.get("DYNAMODB_CONNECT_TIMEOUT_SECONDS", "5")
)

# ---------------------------------------------------------------------------
# Client singleton
# ---------------------------------------------------------------------------

_ddb = None
_ddb_lock = threading.Lock()


def _get_ddb():
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is not None:
        return _ddb

    with _ddb_lock:
        if _ddb is None:
            kwargs = {
                "region_name": DYNAMODB_REGION,
                # Failed calls surface to the caller; nothing is retried here.
                "config": Config(
                    connect_timeout=DYNAMODB_CONNECT_TIMEOUT_SECONDS,
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            }
            if DYNAMODB_ENDPOINT_URL:
                kwargs["endpoint_url"] = DYNAMODB_ENDPOINT_URL
            _ddb = boto3.client("dynamodb", **kwargs)
            logger.info("DynamoDB client created (region=%s)", kwargs["region_name"])
    return _ddb
