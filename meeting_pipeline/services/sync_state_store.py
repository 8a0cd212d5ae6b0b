from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import create_mongo_database, serialize_record

SYNC_STATUS_IDLE = "idle"
SYNC_STATUS_SYNCING = "syncing"
SYNC_STATUS_ERROR = "error"
MAX_SAMPLE_ERRORS = 10


class SyncStateStore(ABC):
    @abstractmethod
    def get_state(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def try_begin_sync(
        self,
        *,
        user_id: str,
        integration_id: str | None,
        sync_type: str,
        started_at: datetime,
        stale_after: timedelta,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def complete_sync(
        self,
        *,
        user_id: str,
        meetings_synced: int,
        total_meetings_found: int,
        errors: Sequence[Mapping[str, Any]],
        completed_at: datetime,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def fail_sync(self, *, user_id: str, error_message: str, failed_at: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def reset_error_count(self, user_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def increment_error_count(self, *, user_id: str, error_message: str) -> int:
        raise NotImplementedError


class InMemorySyncStateStore(SyncStateStore):
    def __init__(self) -> None:
        self._states: dict[str, dict[str, Any]] = {}

    def get_state(self, user_id: str) -> dict[str, Any] | None:
        state = self._states.get(user_id)
        if not state:
            return None
        return dict(state)

    def try_begin_sync(
        self,
        *,
        user_id: str,
        integration_id: str | None,
        sync_type: str,
        started_at: datetime,
        stale_after: timedelta,
    ) -> bool:
        state = self._states.get(user_id)
        if state and state.get("status") == SYNC_STATUS_SYNCING:
            last_started = state.get("last_sync_started_at")
            if isinstance(last_started, datetime) and last_started >= started_at - stale_after:
                return False

        if not state:
            state = _new_state(user_id, started_at)
            self._states[user_id] = state
        state.update(
            {
                "integration_id": integration_id,
                "status": SYNC_STATUS_SYNCING,
                "sync_type": sync_type,
                "last_sync_started_at": started_at,
                "updated_at": started_at,
            },
        )
        return True

    def complete_sync(
        self,
        *,
        user_id: str,
        meetings_synced: int,
        total_meetings_found: int,
        errors: Sequence[Mapping[str, Any]],
        completed_at: datetime,
    ) -> None:
        state = self._states.setdefault(user_id, _new_state(user_id, completed_at))
        state.update(
            _completion_fields(
                meetings_synced=meetings_synced,
                total_meetings_found=total_meetings_found,
                errors=errors,
                completed_at=completed_at,
            ),
        )

    def fail_sync(self, *, user_id: str, error_message: str, failed_at: datetime) -> None:
        state = self._states.setdefault(user_id, _new_state(user_id, failed_at))
        state.update(
            {
                "status": SYNC_STATUS_ERROR,
                "last_sync_error": error_message,
                "updated_at": failed_at,
            },
        )

    def reset_error_count(self, user_id: str) -> None:
        state = self._states.setdefault(user_id, _new_state(user_id, datetime.now(UTC)))
        state["error_count"] = 0

    def increment_error_count(self, *, user_id: str, error_message: str) -> int:
        state = self._states.setdefault(user_id, _new_state(user_id, datetime.now(UTC)))
        state["error_count"] = int(state.get("error_count") or 0) + 1
        state["last_sync_error"] = error_message
        return state["error_count"]


class MongoSyncStateStore(SyncStateStore):
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

    def get_state(self, user_id: str) -> dict[str, Any] | None:
        return serialize_record(self._collection.find_one({"user_id": user_id}))

    def try_begin_sync(
        self,
        *,
        user_id: str,
        integration_id: str | None,
        sync_type: str,
        started_at: datetime,
        stale_after: timedelta,
    ) -> bool:
        from pymongo import ReturnDocument
        from pymongo.errors import DuplicateKeyError

        # The unique user_id index turns a lost race into DuplicateKeyError on upsert.
        try:
            claimed = self._collection.find_one_and_update(
                {
                    "user_id": user_id,
                    "$or": [
                        {"status": {"$ne": SYNC_STATUS_SYNCING}},
                        {"last_sync_started_at": {"$lt": started_at - stale_after}},
                    ],
                },
                {
                    "$set": {
                        "integration_id": integration_id,
                        "status": SYNC_STATUS_SYNCING,
                        "sync_type": sync_type,
                        "last_sync_started_at": started_at,
                        "updated_at": started_at,
                    },
                    "$setOnInsert": {
                        "error_count": 0,
                        "meetings_synced": 0,
                        "total_meetings_found": 0,
                        "created_at": started_at,
                    },
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            return False
        return claimed is not None

    def complete_sync(
        self,
        *,
        user_id: str,
        meetings_synced: int,
        total_meetings_found: int,
        errors: Sequence[Mapping[str, Any]],
        completed_at: datetime,
    ) -> None:
        self._collection.update_one(
            {"user_id": user_id},
            {
                "$set": _completion_fields(
                    meetings_synced=meetings_synced,
                    total_meetings_found=total_meetings_found,
                    errors=errors,
                    completed_at=completed_at,
                ),
                "$setOnInsert": {"error_count": 0, "created_at": completed_at},
            },
            upsert=True,
        )

    def fail_sync(self, *, user_id: str, error_message: str, failed_at: datetime) -> None:
        self._collection.update_one(
            {"user_id": user_id},
            {
                "$set": {
                    "status": SYNC_STATUS_ERROR,
                    "last_sync_error": error_message,
                    "updated_at": failed_at,
                },
                "$setOnInsert": {"error_count": 0, "created_at": failed_at},
            },
            upsert=True,
        )

    def reset_error_count(self, user_id: str) -> None:
        self._collection.update_one(
            {"user_id": user_id},
            {"$set": {"error_count": 0, "updated_at": datetime.now(UTC)}},
            upsert=True,
        )

    def increment_error_count(self, *, user_id: str, error_message: str) -> int:
        from pymongo import ReturnDocument

        record = self._collection.find_one_and_update(
            {"user_id": user_id},
            {
                "$inc": {"error_count": 1},
                "$set": {"last_sync_error": error_message, "updated_at": datetime.now(UTC)},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int((record or {}).get("error_count") or 0)


def _new_state(user_id: str, created_at: datetime) -> dict[str, Any]:
    return {
        "_id": f"sync-state-{user_id}",
        "user_id": user_id,
        "integration_id": None,
        "status": SYNC_STATUS_IDLE,
        "sync_type": None,
        "last_sync_started_at": None,
        "last_sync_completed_at": None,
        "meetings_synced": 0,
        "total_meetings_found": 0,
        "error_count": 0,
        "last_sync_error": None,
        "created_at": created_at,
        "updated_at": created_at,
    }


def _completion_fields(
    *,
    meetings_synced: int,
    total_meetings_found: int,
    errors: Sequence[Mapping[str, Any]],
    completed_at: datetime,
) -> dict[str, Any]:
    sample_errors = [dict(item) for item in errors[:MAX_SAMPLE_ERRORS]]
    return {
        "status": SYNC_STATUS_IDLE,
        "last_sync_completed_at": completed_at,
        "meetings_synced": meetings_synced,
        "total_meetings_found": total_meetings_found,
        "last_sync_error": json.dumps(sample_errors) if sample_errors else None,
        "updated_at": completed_at,
    }


def create_sync_state_store(settings: Settings) -> SyncStateStore:
    return _create_sync_state_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_sync_state_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_sync_state_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> SyncStateStore:
    if data_store == "mongodb":
        return MongoSyncStateStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemorySyncStateStore()


def clear_sync_state_store_cache() -> None:
    _create_sync_state_store_cached.cache_clear()
