from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from itertools import count
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import (
    create_mongo_database,
    serialize_record,
    serialize_records,
    to_object_id,
)


def is_eligible_for_retry(
    item: Mapping[str, Any],
    now: datetime,
    backoff_base_seconds: float = 5.0,
) -> bool:
    attempts = int(item.get("attempts") or 0)
    if attempts >= int(item.get("max_attempts") or 0):
        return False
    last_attempt_at = item.get("last_attempt_at")
    if not isinstance(last_attempt_at, datetime):
        return True
    if last_attempt_at.tzinfo is None:
        last_attempt_at = last_attempt_at.replace(tzinfo=UTC)
    return now - last_attempt_at >= timedelta(seconds=backoff_base_seconds * 2**attempts)


class IndexQueueStore(ABC):
    # Tickets with attempts >= max_attempts are dead letters.

    @abstractmethod
    def enqueue(
        self,
        *,
        meeting_id: str,
        user_id: str,
        priority: int,
        max_attempts: int,
    ) -> tuple[dict[str, Any], bool]:
        raise NotImplementedError

    @abstractmethod
    def list_candidates(
        self,
        *,
        user_id: str | None,
        limit: int,
        now: datetime | None = None,
        backoff_base_seconds: float = 0.0,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_item(self, item_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def record_attempt(self, item_id: str, attempted_at: datetime) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def record_error(self, item_id: str, error_message: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, item_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_dead_letters(self, *, user_id: str | None, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryIndexQueueStore(IndexQueueStore):
    def __init__(self) -> None:
        self._items: dict[str, dict[str, Any]] = {}
        self._item_id_by_key: dict[tuple[str, str], str] = {}
        self._sequence = count(1)

    def enqueue(
        self,
        *,
        meeting_id: str,
        user_id: str,
        priority: int,
        max_attempts: int,
    ) -> tuple[dict[str, Any], bool]:
        key = (meeting_id, user_id)
        existing_id = self._item_id_by_key.get(key)
        if existing_id:
            existing = self._items[existing_id]
            existing["priority"] = max(existing["priority"], priority)
            revived = existing["attempts"] >= existing["max_attempts"]
            if revived:
                existing.update(
                    {
                        "attempts": 0,
                        "max_attempts": max_attempts,
                        "last_attempt_at": None,
                        "error_message": None,
                    },
                )
            return _public(existing), revived

        sequence = next(self._sequence)
        item_id = f"queue-{sequence}"
        item = {
            "_id": item_id,
            "meeting_id": meeting_id,
            "user_id": user_id,
            "priority": priority,
            "attempts": 0,
            "max_attempts": max_attempts,
            "last_attempt_at": None,
            "error_message": None,
            "created_at": datetime.now(UTC),
            "_sequence": sequence,
        }
        self._items[item_id] = item
        self._item_id_by_key[key] = item_id
        return _public(item), True

    def list_candidates(
        self,
        *,
        user_id: str | None,
        limit: int,
        now: datetime | None = None,
        backoff_base_seconds: float = 0.0,
    ) -> list[dict[str, Any]]:
        candidates = [
            item
            for item in self._items.values()
            if item["attempts"] < item["max_attempts"]
            and (user_id is None or item["user_id"] == user_id)
            and (now is None or is_eligible_for_retry(item, now, backoff_base_seconds))
        ]
        candidates.sort(key=lambda item: (-item["priority"], item["created_at"], item["_sequence"]))
        return [_public(item) for item in candidates[:limit]]

    def get_item(self, item_id: str) -> dict[str, Any] | None:
        item = self._items.get(item_id)
        if not item:
            return None
        return _public(item)

    def record_attempt(self, item_id: str, attempted_at: datetime) -> dict[str, Any] | None:
        item = self._items.get(item_id)
        if not item:
            return None
        item["attempts"] += 1
        item["last_attempt_at"] = attempted_at
        return _public(item)

    def record_error(self, item_id: str, error_message: str) -> None:
        item = self._items.get(item_id)
        if item:
            item["error_message"] = error_message

    def delete(self, item_id: str) -> bool:
        item = self._items.pop(item_id, None)
        if not item:
            return False
        self._item_id_by_key.pop((item["meeting_id"], item["user_id"]), None)
        return True

    def list_dead_letters(self, *, user_id: str | None, limit: int) -> list[dict[str, Any]]:
        dead_letters = [
            item
            for item in self._items.values()
            if item["attempts"] >= item["max_attempts"]
            and (user_id is None or item["user_id"] == user_id)
        ]
        dead_letters.sort(key=lambda item: item["last_attempt_at"] or item["created_at"], reverse=True)
        return [_public(item) for item in dead_letters[:limit]]


class MongoIndexQueueStore(IndexQueueStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, DESCENDING

        database = create_mongo_database(
            uri=uri,
            db_name=db_name,
            connect_timeout_ms=connect_timeout_ms,
        )
        self._collection = database[collection_name]
        self._collection.create_index(
            [("meeting_id", ASCENDING), ("user_id", ASCENDING)],
            unique=True,
        )
        self._collection.create_index([("priority", DESCENDING), ("created_at", ASCENDING)])

    def enqueue(
        self,
        *,
        meeting_id: str,
        user_id: str,
        priority: int,
        max_attempts: int,
    ) -> tuple[dict[str, Any], bool]:
        identity = {"meeting_id": meeting_id, "user_id": user_id}
        update_result = self._collection.update_one(
            identity,
            {
                "$setOnInsert": {
                    "attempts": 0,
                    "max_attempts": max_attempts,
                    "last_attempt_at": None,
                    "error_message": None,
                    "created_at": datetime.now(UTC),
                },
                "$max": {"priority": priority},
            },
            upsert=True,
        )
        revive_result = self._collection.update_one(
            {**identity, "$expr": {"$gte": ["$attempts", "$max_attempts"]}},
            {
                "$set": {
                    "attempts": 0,
                    "max_attempts": max_attempts,
                    "last_attempt_at": None,
                    "error_message": None,
                },
            },
        )
        serialized = serialize_record(self._collection.find_one(identity))
        if not serialized:
            raise RuntimeError("Unable to read queued item.")
        created = update_result.upserted_id is not None or revive_result.modified_count > 0
        return serialized, created

    def list_candidates(
        self,
        *,
        user_id: str | None,
        limit: int,
        now: datetime | None = None,
        backoff_base_seconds: float = 0.0,
    ) -> list[dict[str, Any]]:
        conditions: list[dict[str, Any]] = [{"$lt": ["$attempts", "$max_attempts"]}]
        if now is not None:
            # last_attempt_at + base * 2^attempts <= now, in milliseconds.
            conditions.append(
                {
                    "$or": [
                        {"$eq": [{"$ifNull": ["$last_attempt_at", None]}, None]},
                        {
                            "$lte": [
                                {
                                    "$add": [
                                        "$last_attempt_at",
                                        {
                                            "$multiply": [
                                                backoff_base_seconds * 1000,
                                                {"$pow": [2, "$attempts"]},
                                            ],
                                        },
                                    ],
                                },
                                now,
                            ],
                        },
                    ],
                },
            )
        query: dict[str, Any] = {"$expr": {"$and": conditions}}
        if user_id:
            query["user_id"] = user_id
        cursor = (
            self._collection.find(query)
            .sort([("priority", -1), ("created_at", 1)])
            .limit(limit)
        )
        return serialize_records(cursor)

    def get_item(self, item_id: str) -> dict[str, Any] | None:
        object_id = to_object_id(item_id)
        if object_id is None:
            return None
        return serialize_record(self._collection.find_one({"_id": object_id}))

    def record_attempt(self, item_id: str, attempted_at: datetime) -> dict[str, Any] | None:
        from pymongo import ReturnDocument

        object_id = to_object_id(item_id)
        if object_id is None:
            return None
        record = self._collection.find_one_and_update(
            {"_id": object_id},
            {"$inc": {"attempts": 1}, "$set": {"last_attempt_at": attempted_at}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_record(record)

    def record_error(self, item_id: str, error_message: str) -> None:
        object_id = to_object_id(item_id)
        if object_id is None:
            return
        self._collection.update_one({"_id": object_id}, {"$set": {"error_message": error_message}})

    def delete(self, item_id: str) -> bool:
        object_id = to_object_id(item_id)
        if object_id is None:
            return False
        return self._collection.delete_one({"_id": object_id}).deleted_count > 0

    def list_dead_letters(self, *, user_id: str | None, limit: int) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"$expr": {"$gte": ["$attempts", "$max_attempts"]}}
        if user_id:
            query["user_id"] = user_id
        cursor = self._collection.find(query).sort("last_attempt_at", -1).limit(limit)
        return serialize_records(cursor)


def _public(item: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in item.items() if key != "_sequence"}


def create_index_queue_store(settings: Settings) -> IndexQueueStore:
    return _create_index_queue_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_index_queue_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_index_queue_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> IndexQueueStore:
    if data_store == "mongodb":
        return MongoIndexQueueStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryIndexQueueStore()


def clear_index_queue_store_cache() -> None:
    _create_index_queue_store_cached.cache_clear()
