from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import create_mongo_database, serialize_record

STORE_STATUS_ACTIVE = "active"


class FileSearchStoreRegistry(ABC):
    @abstractmethod
    def get_store(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def save_store(self, *, user_id: str, store_name: str, display_name: str) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update_file_count(self, user_id: str, file_count: int) -> None:
        raise NotImplementedError


class InMemoryFileSearchStoreRegistry(FileSearchStoreRegistry):
    def __init__(self) -> None:
        self._stores: dict[str, dict[str, Any]] = {}

    def get_store(self, user_id: str) -> dict[str, Any] | None:
        store = self._stores.get(user_id)
        if not store:
            return None
        return dict(store)

    def save_store(self, *, user_id: str, store_name: str, display_name: str) -> dict[str, Any]:
        existing = self._stores.get(user_id)
        if existing:
            return dict(existing)
        now = datetime.now(UTC)
        store = {
            "_id": f"file-search-store-{len(self._stores) + 1}",
            "user_id": user_id,
            "store_name": store_name,
            "display_name": display_name,
            "file_count": 0,
            "status": STORE_STATUS_ACTIVE,
            "created_at": now,
            "updated_at": now,
        }
        self._stores[user_id] = store
        return dict(store)

    def update_file_count(self, user_id: str, file_count: int) -> None:
        store = self._stores.get(user_id)
        if store:
            store["file_count"] = file_count
            store["updated_at"] = datetime.now(UTC)


class MongoFileSearchStoreRegistry(FileSearchStoreRegistry):
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
        self._collection.create_index("user_id", unique=True)

    def get_store(self, user_id: str) -> dict[str, Any] | None:
        return serialize_record(self._collection.find_one({"user_id": user_id}))

    def save_store(self, *, user_id: str, store_name: str, display_name: str) -> dict[str, Any]:
        now = datetime.now(UTC)
        # setOnInsert keeps the first store if two workers raced to create one.
        self._collection.update_one(
            {"user_id": user_id},
            {
                "$setOnInsert": {
                    "store_name": store_name,
                    "display_name": display_name,
                    "file_count": 0,
                    "status": STORE_STATUS_ACTIVE,
                    "created_at": now,
                    "updated_at": now,
                },
            },
            upsert=True,
        )
        saved = self.get_store(user_id)
        if not saved:
            raise RuntimeError("Unable to read saved file search store.")
        return saved

    def update_file_count(self, user_id: str, file_count: int) -> None:
        self._collection.update_one(
            {"user_id": user_id},
            {"$set": {"file_count": file_count, "updated_at": datetime.now(UTC)}},
        )


def create_file_search_store_registry(settings: Settings) -> FileSearchStoreRegistry:
    return _create_file_search_store_registry_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_file_search_stores_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_file_search_store_registry_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> FileSearchStoreRegistry:
    if data_store == "mongodb":
        return MongoFileSearchStoreRegistry(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryFileSearchStoreRegistry()


def clear_file_search_store_registry_cache() -> None:
    _create_file_search_store_registry_cached.cache_clear()
