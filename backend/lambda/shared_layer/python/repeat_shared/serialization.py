"""repeat_shared.serialization — DynamoDB serialization/deserialization.

Provides TypeSerializer/TypeDeserializer wrappers and timestamp helpers.
"""

from __future__ import annotations

import datetime as dt
import re
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

_SER = TypeSerializer()
_DESER = TypeDeserializer()

_FRACTION_RE = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def _serialize(value: Any) -> Any:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    out: Dict[str, Any] = {}
    for k, v in item.items():
        val = _DESER.deserialize(v)
        if isinstance(val, Decimal):
            val = int(val) if val == int(val) else float(val)
        out[k] = val
    return out


def _iso_ms(moment: dt.datetime) -> str:
    """UTC ISO 8601 with millisecond precision and Z suffix."""
    moment = moment.astimezone(dt.timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _now_iso_ms() -> str:
    return _iso_ms(dt.datetime.now(dt.timezone.utc))


def _parse_iso8601(raw: str) -> Optional[dt.datetime]:
    if not raw:
        return None
    try:
        # fromisoformat before 3.11 only takes 3- or 6-digit fractions.
        normalized = _FRACTION_RE.sub(
            lambda m: f"{m.group(1)}.{(m.group(2) + '000000')[:6]}",
            raw.replace("Z", "+00:00"),
        )
        parsed = dt.datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)
