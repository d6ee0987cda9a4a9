"""persistence.py — Library entry DynamoDB persistence helpers.

Table layout: partition key `owner_id` (S), sort key `videoId` (S). Every
helper takes the owner explicitly, so no call can touch another owner's
entries.
"""
from __future__ import annotations

from typing import Any, Dict, List

from botocore.exceptions import ClientError

from repeat_shared.serialization import _deserialize, _serialize

__all__ = [
    "PUBLIC_ATTRIBUTES",
    "_delete_all_entries",
    "_delete_entry",
    "_entry_key",
    "_insert_entry_if_absent",
    "_list_entries",
    "_update_entry",
]

PUBLIC_ATTRIBUTES = ("owner_id", "videoId", "title", "loopA", "loopB", "loops", "addedAt")
SETTABLE_ATTRIBUTES = ("title", "loopA", "loopB")


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _entry_key(owner_id: str, video_id: str) -> Dict[str, Any]:
    return {"owner_id": _serialize(owner_id), "videoId": _serialize(video_id)}


def _query_owner(ddb, table: str, owner_id: str, projection: List[str]) -> List[Dict[str, Any]]:
    names = {f"#p{i}": attr for i, attr in enumerate(projection)}
    kwargs: Dict[str, Any] = {
        "TableName": table,
        "KeyConditionExpression": "owner_id = :oid",
        "ExpressionAttributeValues": {":oid": _serialize(owner_id)},
        "ProjectionExpression": ", ".join(names),
        "ExpressionAttributeNames": names,
    }
    items: List[Dict[str, Any]] = []
    while True:
        resp = ddb.query(**kwargs)
        items.extend(resp.get("Items", []))
        if "LastEvaluatedKey" not in resp:
            break
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
    return items


def _list_entries(ddb, table: str, owner_id: str) -> List[Dict[str, Any]]:
    """All entries for one owner, public attributes only."""
    return [_deserialize(raw) for raw in _query_owner(ddb, table, owner_id, list(PUBLIC_ATTRIBUTES))]


def _insert_entry_if_absent(ddb, table: str, entry: Dict[str, Any]) -> bool:
    """Put the entry unless (owner_id, videoId) already exists.

    Returns True when written, False when an entry was already present (the
    stored entry is left untouched).
    """
    try:
        ddb.put_item(
            TableName=table,
            Item={k: _serialize(v) for k, v in entry.items()},
            ConditionExpression="attribute_not_exists(videoId)",
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise
    return True


def _update_entry(
    ddb,
    table: str,
    owner_id: str,
    video_id: str,
    *,
    increment_loops: bool,
    assignments: Dict[str, Any],
) -> bool:
    """Apply an in-place update to an existing entry.

    `assignments` holds only the attributes to SET; a None value stores
    NULL. Returns False when no such entry exists (nothing is created).
    """
    names: Dict[str, str] = {"#vid": "videoId"}
    values: Dict[str, Any] = {}
    set_parts: List[str] = []
    for attr in SETTABLE_ATTRIBUTES:
        if attr not in assignments:
            continue
        names[f"#{attr}"] = attr
        values[f":{attr}"] = _serialize(assignments[attr])
        set_parts.append(f"#{attr} = :{attr}")

    clauses: List[str] = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if increment_loops:
        names["#loops"] = "loops"
        values[":one"] = _serialize(1)
        clauses.append("ADD #loops :one")
    if not clauses:
        raise ValueError("No update fields")

    try:
        ddb.update_item(
            TableName=table,
            Key=_entry_key(owner_id, video_id),
            UpdateExpression=" ".join(clauses),
            ConditionExpression="attribute_exists(#vid)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise
    return True


def _delete_entry(ddb, table: str, owner_id: str, video_id: str) -> None:
    ddb.delete_item(TableName=table, Key=_entry_key(owner_id, video_id))


def _delete_all_entries(ddb, table: str, owner_id: str) -> int:
    """Delete every entry for one owner. Returns the number deleted."""
    keys = _query_owner(ddb, table, owner_id, ["owner_id", "videoId"])
    for raw_key in keys:
        ddb.delete_item(TableName=table, Key=raw_key)
    return len(keys)

