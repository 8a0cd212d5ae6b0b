from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import (
    create_mongo_database,
    serialize_record,
    serialize_records,
)
from meeting_pipeline.services.user_store import normalize_email


class IntegrationStore(ABC):
    @abstractmethod
    def get_active_integration(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_active_integration_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_active_integrations(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def save_integration(
        self,
        *,
        user_id: str,
        access_token: str,
        token_expires_at: datetime | None,
        provider_user_email: str | None,
        provider_user_id: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryIntegrationStore(IntegrationStore):
    def __init__(self) -> None:
        self._integrations_by_user_id: dict[str, dict[str, Any]] = {}
        self._user_id_by_email: dict[str, str] = {}

    def get_active_integration(self, user_id: str) -> dict[str, Any] | None:
        integration = self._integrations_by_user_id.get(user_id)
        if not integration or not integration.get("is_active"):
            return None
        return dict(integration)

    def find_active_integration_by_email(self, email: str) -> dict[str, Any] | None:
        user_id = self._user_id_by_email.get(normalize_email(email))
        if not user_id:
            return None
        return self.get_active_integration(user_id)

    def list_active_integrations(self) -> list[dict[str, Any]]:
        return [
            dict(integration)
            for integration in self._integrations_by_user_id.values()
            if integration.get("is_active")
        ]

    def save_integration(
        self,
        *,
        user_id: str,
        access_token: str,
        token_expires_at: datetime | None,
        provider_user_email: str | None,
        provider_user_id: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        existing = self._integrations_by_user_id.get(user_id)
        if existing and existing.get("provider_user_email"):
            self._user_id_by_email.pop(existing["provider_user_email"], None)

        normalized_email = normalize_email(provider_user_email) if provider_user_email else None
        integration = {
            "_id": existing["_id"] if existing else f"integration-{len(self._integrations_by_user_id) + 1}",
            "user_id": user_id,
            "access_token": access_token,
            "token_expires_at": token_expires_at,
            "provider_user_email": normalized_email,
            "provider_user_id": provider_user_id,
            "is_active": is_active,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        self._integrations_by_user_id[user_id] = integration
        if normalized_email:
            self._user_id_by_email[normalized_email] = user_id
        return dict(integration)


class MongoIntegrationStore(IntegrationStore):
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
        self._collection.create_index([("provider_user_email", 1), ("is_active", 1)])

    def get_active_integration(self, user_id: str) -> dict[str, Any] | None:
        return serialize_record(self._collection.find_one({"user_id": user_id, "is_active": True}))

    def find_active_integration_by_email(self, email: str) -> dict[str, Any] | None:
        return serialize_record(
            self._collection.find_one(
                {"provider_user_email": normalize_email(email), "is_active": True},
            ),
        )

    def list_active_integrations(self) -> list[dict[str, Any]]:
        return serialize_records(self._collection.find({"is_active": True}))

    def save_integration(
        self,
        *,
        user_id: str,
        access_token: str,
        token_expires_at: datetime | None,
        provider_user_email: str | None,
        provider_user_id: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        record = self._collection.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {
                    "access_token": access_token,
                    "token_expires_at": token_expires_at,
                    "provider_user_email": (
                        normalize_email(provider_user_email) if provider_user_email else None
                    ),
                    "provider_user_id": provider_user_id,
                    "is_active": is_active,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        serialized = serialize_record(record)
        if not serialized:
            raise RuntimeError("Unable to read saved integration.")
        return serialized


def create_integration_store(settings: Settings) -> IntegrationStore:
    return _create_integration_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_integrations_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_integration_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> IntegrationStore:
    if data_store == "mongodb":
        return MongoIntegrationStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryIntegrationStore()


def clear_integration_store_cache() -> None:
    _create_integration_store_cached.cache_clear()
