from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import create_mongo_database, serialize_record

INDEX_STATUS_INDEXING = "indexing"
INDEX_STATUS_INDEXED = "indexed"
INDEX_STATUS_FAILED = "failed"


class FileSearchIndexStore(ABC):
    @abstractmethod
    def get_record(self, *, meeting_id: str, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def mark_indexing(self, *, meeting_id: str, user_id: str, store_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def mark_indexed(
        self,
        *,
        meeting_id: str,
        user_id: str,
        store_name: str,
        file_name: str | None,
        content_hash: str,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def mark_failed(self, *, meeting_id: str, user_id: str, error_message: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def count_indexed(self, user_id: str) -> int:
        raise NotImplementedError


class InMemoryFileSearchIndexStore(FileSearchIndexStore):
    def __init__(self) -> None:
        self._records: dict[tuple[str, str], dict[str, Any]] = {}

    def get_record(self, *, meeting_id: str, user_id: str) -> dict[str, Any] | None:
        record = self._records.get((meeting_id, user_id))
        if not record:
            return None
        return dict(record)

    def mark_indexing(self, *, meeting_id: str, user_id: str, store_name: str) -> None:
        record = self._ensure_record(meeting_id, user_id)
        record.update(
            {
                "store_name": store_name,
                "status": INDEX_STATUS_INDEXING,
                "error_message": None,
                "updated_at": datetime.now(UTC),
            },
        )

    def mark_indexed(
        self,
        *,
        meeting_id: str,
        user_id: str,
        store_name: str,
        file_name: str | None,
        content_hash: str,
    ) -> None:
        now = datetime.now(UTC)
        record = self._ensure_record(meeting_id, user_id)
        record.update(
            {
                "store_name": store_name,
                "file_name": file_name,
                "content_hash": content_hash,
                "status": INDEX_STATUS_INDEXED,
                "error_message": None,
                "indexed_at": now,
                "updated_at": now,
            },
        )

    def mark_failed(self, *, meeting_id: str, user_id: str, error_message: str) -> None:
        record = self._ensure_record(meeting_id, user_id)
        record.update(
            {
                "status": INDEX_STATUS_FAILED,
                "error_message": error_message,
                "updated_at": datetime.now(UTC),
            },
        )

    def count_indexed(self, user_id: str) -> int:
        return sum(
            1
            for record in list(self._records.values())
            if record["user_id"] == user_id and record.get("status") == INDEX_STATUS_INDEXED
        )

    def _ensure_record(self, meeting_id: str, user_id: str) -> dict[str, Any]:
        key = (meeting_id, user_id)
        if key not in self._records:
            self._records[key] = {
                "_id": f"index-{len(self._records) + 1}",
                "meeting_id": meeting_id,
                "user_id": user_id,
                "store_name": None,
                "file_name": None,
                "content_hash": None,
                "status": None,
                "error_message": None,
                "indexed_at": None,
                "created_at": datetime.now(UTC),
            }
        return self._records[key]


class MongoFileSearchIndexStore(FileSearchIndexStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        database = create_mongo_database(
            uri=uri,
            db_name=db_name,
            connect_timeout_ms=connect_timeout_ms,
        )
        self._collection = database[collection_name]
        self._collection.create_index([("meeting_id", 1), ("user_id", 1)], unique=True)
        self._collection.create_index([("user_id", 1), ("status", 1)])

    def get_record(self, *, meeting_id: str, user_id: str) -> dict[str, Any] | None:
        return serialize_record(self._collection.find_one({"meeting_id": meeting_id, "user_id": user_id}))

    def mark_indexing(self, *, meeting_id: str, user_id: str, store_name: str) -> None:
        self._upsert(
            meeting_id,
            user_id,
            {"store_name": store_name, "status": INDEX_STATUS_INDEXING, "error_message": None},
        )

    def mark_indexed(
        self,
        *,
        meeting_id: str,
        user_id: str,
        store_name: str,
        file_name: str | None,
        content_hash: str,
    ) -> None:
        self._upsert(
            meeting_id,
            user_id,
            {
                "store_name": store_name,
                "file_name": file_name,
                "content_hash": content_hash,
                "status": INDEX_STATUS_INDEXED,
                "error_message": None,
                "indexed_at": datetime.now(UTC),
            },
        )

    def mark_failed(self, *, meeting_id: str, user_id: str, error_message: str) -> None:
        self._upsert(
            meeting_id,
            user_id,
            {"status": INDEX_STATUS_FAILED, "error_message": error_message},
        )

    def count_indexed(self, user_id: str) -> int:
        return self._collection.count_documents({"user_id": user_id, "status": INDEX_STATUS_INDEXED})

    def _upsert(self, meeting_id: str, user_id: str, updates: dict[str, Any]) -> None:
        now = datetime.now(UTC)
        self._collection.update_one(
            {"meeting_id": meeting_id, "user_id": user_id},
            {"$set": {**updates, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )


def create_file_search_index_store(settings: Settings) -> FileSearchIndexStore:
    return _create_file_search_index_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_file_search_index_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_file_search_index_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> FileSearchIndexStore:
    if data_store == "mongodb":
        return MongoFileSearchIndexStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryFileSearchIndexStore()


def clear_file_search_index_store_cache() -> None:
    _create_file_search_index_store_cached.cache_clear()
