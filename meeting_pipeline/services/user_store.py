from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import (
    create_mongo_database,
    serialize_record,
    to_object_id,
)


class UserStore(ABC):
    @abstractmethod
    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_user(self, *, email: str, full_name: str) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self) -> None:
        self._next_id = 1
        self._users_by_id: dict[str, dict[str, Any]] = {}
        self._user_id_by_email: dict[str, str] = {}

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        user = self._users_by_id.get(user_id)
        if not user:
            return None
        return dict(user)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        user_id = self._user_id_by_email.get(normalize_email(email))
        if not user_id:
            return None
        return self.get_user_by_id(user_id)

    def create_user(self, *, email: str, full_name: str) -> dict[str, Any]:
        normalized_email = normalize_email(email)
        if normalized_email in self._user_id_by_email:
            raise ValueError("email_already_exists")

        user_id = f"user-{self._next_id}"
        self._next_id += 1
        now = datetime.now(UTC)
        user = {
            "_id": user_id,
            "email": normalized_email,
            "full_name": full_name.strip(),
            "created_at": now,
            "updated_at": now,
        }
        self._users_by_id[user_id] = user
        self._user_id_by_email[normalized_email] = user_id
        return dict(user)


class MongoUserStore(UserStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        users_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        database = create_mongo_database(
            uri=uri,
            db_name=db_name,
            connect_timeout_ms=connect_timeout_ms,
        )
        self._users = database[users_collection_name]
        self._users.create_index("email", unique=True)

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        object_id = to_object_id(user_id)
        if object_id is None:
            return None
        return serialize_record(self._users.find_one({"_id": object_id}))

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return serialize_record(self._users.find_one({"email": normalize_email(email)}))

    def create_user(self, *, email: str, full_name: str) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        now = datetime.now(UTC)
        payload = {
            "email": normalize_email(email),
            "full_name": full_name.strip(),
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = self._users.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("email_already_exists") from exc
        created = serialize_record(self._users.find_one({"_id": insert_result.inserted_id}))
        if not created:
            raise RuntimeError("Unable to read created user.")
        return created


def normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user_store(settings: Settings) -> UserStore:
    return _create_user_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_user_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_users_collection: str,
    mongodb_connect_timeout_ms: int,
) -> UserStore:
    if data_store == "mongodb":
        return MongoUserStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            users_collection_name=mongodb_users_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryUserStore()


def clear_user_store_cache() -> None:
    _create_user_store_cached.cache_clear()
