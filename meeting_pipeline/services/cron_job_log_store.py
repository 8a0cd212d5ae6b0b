from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import (
    create_mongo_database,
    serialize_records,
)


class CronJobLogStore(ABC):
    @abstractmethod
    def append(self, entry: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, *, limit: int, user_id: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryCronJobLogStore(CronJobLogStore):
    def __init__(self) -> None:
        self._entries: list[dict[str, Any]] = []

    def append(self, entry: Mapping[str, Any]) -> str:
        entry_id = f"cron-log-{len(self._entries) + 1}"
        stored_entry = dict(entry)
        stored_entry["_id"] = entry_id
        stored_entry.setdefault("created_at", datetime.now(UTC))
        self._entries.append(stored_entry)
        return entry_id

    def list_recent(self, *, limit: int, user_id: str | None = None) -> list[dict[str, Any]]:
        entries = [
            dict(entry)
            for entry in reversed(self._entries)
            if user_id is None or entry.get("user_id") == user_id
        ]
        return entries[:limit]


class MongoCronJobLogStore(CronJobLogStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import DESCENDING

        database = create_mongo_database(
            uri=uri,
            db_name=db_name,
            connect_timeout_ms=connect_timeout_ms,
        )
        self._collection = database[collection_name]
        self._collection.create_index([("created_at", DESCENDING)])
        self._collection.create_index([("user_id", 1), ("created_at", DESCENDING)])
        self._collection.create_index("run_id")

    def append(self, entry: Mapping[str, Any]) -> str:
        payload = dict(entry)
        payload.setdefault("created_at", datetime.now(UTC))
        insert_result = self._collection.insert_one(payload)
        return str(insert_result.inserted_id)

    def list_recent(self, *, limit: int, user_id: str | None = None) -> list[dict[str, Any]]:
        query: dict[str, Any] = {}
        if user_id:
            query["user_id"] = user_id
        cursor = self._collection.find(query).sort("created_at", -1).limit(limit)
        return serialize_records(cursor)


def create_cron_job_log_store(settings: Settings) -> CronJobLogStore:
    return _create_cron_job_log_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_cron_job_logs_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_cron_job_log_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> CronJobLogStore:
    if data_store == "mongodb":
        return MongoCronJobLogStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryCronJobLogStore()


def clear_cron_job_log_store_cache() -> None:
    _create_cron_job_log_store_cached.cache_clear()
