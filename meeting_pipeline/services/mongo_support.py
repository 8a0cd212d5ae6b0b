from __future__ import annotations

from collections.abc import Mapping
from typing import Any


def create_mongo_database(*, uri: str, db_name: str, connect_timeout_ms: int) -> Any:
    from pymongo import MongoClient

    client = MongoClient(
        uri,
        serverSelectionTimeoutMS=connect_timeout_ms,
        connectTimeoutMS=connect_timeout_ms,
        tz_aware=True,
    )
    return client[db_name]


def to_object_id(record_id: str) -> Any | None:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(record_id)
    except (InvalidId, TypeError):
        return None


def serialize_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def serialize_records(records: Any) -> list[dict[str, Any]]:
    serialized: list[dict[str, Any]] = []
    for record in records:
        item = serialize_record(record)
        if item:
            serialized.append(item)
    return serialized
