from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import (
    create_mongo_database,
    serialize_record,
    to_object_id,
)
from meeting_pipeline.services.user_store import normalize_email


class CrmStore(ABC):
    @abstractmethod
    def get_contact_by_email(self, *, owner_id: str, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_or_create_contact(
        self,
        *,
        owner_id: str,
        email: str,
        fields: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        raise NotImplementedError

    @abstractmethod
    def get_contact(self, contact_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_or_create_company(
        self,
        *,
        owner_id: str,
        domain: str,
        fields: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        raise NotImplementedError

    @abstractmethod
    def get_company(self, company_id: str) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryCrmStore(CrmStore):
    def __init__(self) -> None:
        self._contacts: dict[str, dict[str, Any]] = {}
        self._contact_id_by_key: dict[tuple[str, str], str] = {}
        self._companies: dict[str, dict[str, Any]] = {}
        self._company_id_by_key: dict[tuple[str, str], str] = {}

    def get_contact_by_email(self, *, owner_id: str, email: str) -> dict[str, Any] | None:
        contact_id = self._contact_id_by_key.get((owner_id, normalize_email(email)))
        if not contact_id:
            return None
        return self.get_contact(contact_id)

    def get_or_create_contact(
        self,
        *,
        owner_id: str,
        email: str,
        fields: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        key = (owner_id, normalize_email(email))
        existing_id = self._contact_id_by_key.get(key)
        if existing_id:
            return dict(self._contacts[existing_id]), False

        contact_id = f"contact-{len(self._contacts) + 1}"
        now = datetime.now(UTC)
        contact = dict(fields)
        contact.update(
            {
                "_id": contact_id,
                "owner_id": owner_id,
                "email": key[1],
                "created_at": now,
                "updated_at": now,
            },
        )
        self._contacts[contact_id] = contact
        self._contact_id_by_key[key] = contact_id
        return dict(contact), True

    def get_contact(self, contact_id: str) -> dict[str, Any] | None:
        contact = self._contacts.get(contact_id)
        if not contact:
            return None
        return dict(contact)

    def get_or_create_company(
        self,
        *,
        owner_id: str,
        domain: str,
        fields: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        key = (owner_id, domain.strip().lower())
        existing_id = self._company_id_by_key.get(key)
        if existing_id:
            return dict(self._companies[existing_id]), False

        company_id = f"company-{len(self._companies) + 1}"
        now = datetime.now(UTC)
        company = dict(fields)
        company.update(
            {
                "_id": company_id,
                "owner_id": owner_id,
                "domain": key[1],
                "created_at": now,
                "updated_at": now,
            },
        )
        self._companies[company_id] = company
        self._company_id_by_key[key] = company_id
        return dict(company), True

    def get_company(self, company_id: str) -> dict[str, Any] | None:
        company = self._companies.get(company_id)
        if not company:
            return None
        return dict(company)


class MongoCrmStore(CrmStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        contacts_collection_name: str,
        companies_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        database = create_mongo_database(
            uri=uri,
            db_name=db_name,
            connect_timeout_ms=connect_timeout_ms,
        )
        self._contacts = database[contacts_collection_name]
        self._companies = database[companies_collection_name]
        self._contacts.create_index([("owner_id", 1), ("email", 1)], unique=True)
        self._companies.create_index([("owner_id", 1), ("domain", 1)], unique=True)

    def get_contact_by_email(self, *, owner_id: str, email: str) -> dict[str, Any] | None:
        return serialize_record(
            self._contacts.find_one({"owner_id": owner_id, "email": normalize_email(email)}),
        )

    def get_or_create_contact(
        self,
        *,
        owner_id: str,
        email: str,
        fields: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        return self._get_or_create(
            self._contacts,
            {"owner_id": owner_id, "email": normalize_email(email)},
            fields,
        )

    def get_contact(self, contact_id: str) -> dict[str, Any] | None:
        object_id = to_object_id(contact_id)
        if object_id is None:
            return None
        return serialize_record(self._contacts.find_one({"_id": object_id}))

    def get_or_create_company(
        self,
        *,
        owner_id: str,
        domain: str,
        fields: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        return self._get_or_create(
            self._companies,
            {"owner_id": owner_id, "domain": domain.strip().lower()},
            fields,
        )

    def get_company(self, company_id: str) -> dict[str, Any] | None:
        object_id = to_object_id(company_id)
        if object_id is None:
            return None
        return serialize_record(self._companies.find_one({"_id": object_id}))

    def _get_or_create(
        self,
        collection: Any,
        identity: Mapping[str, Any],
        fields: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        from pymongo.errors import DuplicateKeyError

        existing = serialize_record(collection.find_one(dict(identity)))
        if existing:
            return existing, False

        now = datetime.now(UTC)
        document = dict(fields)
        document.update(identity)
        document.update({"created_at": now, "updated_at": now})
        try:
            insert_result = collection.insert_one(document)
        except DuplicateKeyError:
            # Another sync created it between the lookup and the insert.
            winner = serialize_record(collection.find_one(dict(identity)))
            if not winner:
                raise
            return winner, False

        created = serialize_record(collection.find_one({"_id": insert_result.inserted_id}))
        if not created:
            raise RuntimeError("Unable to read created CRM record.")
        return created, True


def create_crm_store(settings: Settings) -> CrmStore:
    return _create_crm_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_contacts_collection=settings.mongodb_contacts_collection,
        mongodb_companies_collection=settings.mongodb_companies_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_crm_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_contacts_collection: str,
    mongodb_companies_collection: str,
    mongodb_connect_timeout_ms: int,
) -> CrmStore:
    if data_store == "mongodb":
        return MongoCrmStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            contacts_collection_name=mongodb_contacts_collection,
            companies_collection_name=mongodb_companies_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryCrmStore()


def clear_crm_store_cache() -> None:
    _create_crm_store_cached.cache_clear()
