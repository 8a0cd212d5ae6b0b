from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.services.mongo_support import (
    create_mongo_database,
    serialize_record,
    serialize_records,
    to_object_id,
)


class MeetingStore(ABC):
    @abstractmethod
    def upsert_meeting(
        self,
        *,
        external_recording_id: str,
        fields: Mapping[str, Any],
        insert_defaults: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_meeting_by_external_id(self, external_recording_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_existing_external_ids(self, external_recording_ids: Iterable[str]) -> set[str]:
        raise NotImplementedError

    @abstractmethod
    def add_attendee(self, *, meeting_id: str, dedup_key: str, attendee: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_attendees(self, meeting_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def add_action_item(self, *, meeting_id: str, dedup_key: str, item: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_action_items(self, meeting_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._meetings: dict[str, dict[str, Any]] = {}
        self._meeting_id_by_external_id: dict[str, str] = {}
        self._attendees: dict[str, dict[str, dict[str, Any]]] = {}
        self._action_items: dict[str, dict[str, dict[str, Any]]] = {}

    def upsert_meeting(
        self,
        *,
        external_recording_id: str,
        fields: Mapping[str, Any],
        insert_defaults: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        meeting_id = self._meeting_id_by_external_id.get(external_recording_id)
        if meeting_id is None:
            meeting_id = f"meeting-{len(self._meetings) + 1}"
            meeting = dict(insert_defaults or {})
            meeting.update(
                {
                    "_id": meeting_id,
                    "external_recording_id": external_recording_id,
                    "created_at": now,
                },
            )
            self._meetings[meeting_id] = meeting
            self._meeting_id_by_external_id[external_recording_id] = meeting_id

        meeting = self._meetings[meeting_id]
        meeting.update(dict(fields))
        meeting["updated_at"] = now
        return dict(meeting)

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        meeting = self._meetings.get(meeting_id)
        if not meeting:
            return None
        return dict(meeting)

    def get_meeting_by_external_id(self, external_recording_id: str) -> dict[str, Any] | None:
        meeting_id = self._meeting_id_by_external_id.get(external_recording_id)
        if not meeting_id:
            return None
        return self.get_meeting(meeting_id)

    def find_existing_external_ids(self, external_recording_ids: Iterable[str]) -> set[str]:
        return {
            external_id
            for external_id in external_recording_ids
            if external_id in self._meeting_id_by_external_id
        }

    def add_attendee(self, *, meeting_id: str, dedup_key: str, attendee: Mapping[str, Any]) -> bool:
        attendees = self._attendees.setdefault(meeting_id, {})
        if dedup_key in attendees:
            return False
        record = dict(attendee)
        record.update(
            {
                "_id": f"attendee-{meeting_id}-{len(attendees) + 1}",
                "meeting_id": meeting_id,
                "dedup_key": dedup_key,
                "created_at": datetime.now(UTC),
            },
        )
        attendees[dedup_key] = record
        return True

    def list_attendees(self, meeting_id: str) -> list[dict[str, Any]]:
        return [dict(record) for record in self._attendees.get(meeting_id, {}).values()]

    def add_action_item(self, *, meeting_id: str, dedup_key: str, item: Mapping[str, Any]) -> bool:
        items = self._action_items.setdefault(meeting_id, {})
        if dedup_key in items:
            return False
        record = dict(item)
        record.update(
            {
                "_id": f"action-item-{meeting_id}-{len(items) + 1}",
                "meeting_id": meeting_id,
                "dedup_key": dedup_key,
                "created_at": datetime.now(UTC),
            },
        )
        items[dedup_key] = record
        return True

    def list_action_items(self, meeting_id: str) -> list[dict[str, Any]]:
        return [dict(record) for record in self._action_items.get(meeting_id, {}).values()]


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        meetings_collection_name: str,
        attendees_collection_name: str,
        action_items_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        database = create_mongo_database(
            uri=uri,
            db_name=db_name,
            connect_timeout_ms=connect_timeout_ms,
        )
        self._meetings = database[meetings_collection_name]
        self._attendees = database[attendees_collection_name]
        self._action_items = database[action_items_collection_name]
        self._meetings.create_index("external_recording_id", unique=True)
        self._meetings.create_index([("owner_user_id", 1), ("meeting_start", -1)])
        self._attendees.create_index([("meeting_id", 1), ("dedup_key", 1)], unique=True)
        self._action_items.create_index([("meeting_id", 1), ("dedup_key", 1)], unique=True)

    def upsert_meeting(
        self,
        *,
        external_recording_id: str,
        fields: Mapping[str, Any],
        insert_defaults: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        set_fields = dict(fields)
        set_fields["updated_at"] = now
        on_insert = {
            key: value
            for key, value in (insert_defaults or {}).items()
            if key not in set_fields
        }
        on_insert["created_at"] = now
        record = self._meetings.find_one_and_update(
            {"external_recording_id": external_recording_id},
            {"$set": set_fields, "$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        serialized = serialize_record(record)
        if not serialized:
            raise RuntimeError("Unable to read upserted meeting.")
        return serialized

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        object_id = to_object_id(meeting_id)
        if object_id is None:
            return None
        return serialize_record(self._meetings.find_one({"_id": object_id}))

    def get_meeting_by_external_id(self, external_recording_id: str) -> dict[str, Any] | None:
        return serialize_record(
            self._meetings.find_one({"external_recording_id": external_recording_id}),
        )

    def find_existing_external_ids(self, external_recording_ids: Iterable[str]) -> set[str]:
        candidates = list(external_recording_ids)
        if not candidates:
            return set()
        cursor = self._meetings.find(
            {"external_recording_id": {"$in": candidates}},
            {"external_recording_id": 1},
        )
        return {str(record["external_recording_id"]) for record in cursor}

    def add_attendee(self, *, meeting_id: str, dedup_key: str, attendee: Mapping[str, Any]) -> bool:
        return self._insert_once(self._attendees, meeting_id, dedup_key, attendee)

    def list_attendees(self, meeting_id: str) -> list[dict[str, Any]]:
        return serialize_records(self._attendees.find({"meeting_id": meeting_id}).sort("created_at", 1))

    def add_action_item(self, *, meeting_id: str, dedup_key: str, item: Mapping[str, Any]) -> bool:
        return self._insert_once(self._action_items, meeting_id, dedup_key, item)

    def list_action_items(self, meeting_id: str) -> list[dict[str, Any]]:
        return serialize_records(
            self._action_items.find({"meeting_id": meeting_id}).sort("created_at", 1),
        )

    def _insert_once(
        self,
        collection: Any,
        meeting_id: str,
        dedup_key: str,
        payload: Mapping[str, Any],
    ) -> bool:
        from pymongo.errors import DuplicateKeyError

        document = dict(payload)
        document.update(
            {
                "meeting_id": meeting_id,
                "dedup_key": dedup_key,
                "created_at": datetime.now(UTC),
            },
        )
        try:
            collection.insert_one(document)
        except DuplicateKeyError:
            return False
        return True


def create_meeting_store(settings: Settings) -> MeetingStore:
    return _create_meeting_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_meetings_collection=settings.mongodb_meetings_collection,
        mongodb_attendees_collection=settings.mongodb_meeting_attendees_collection,
        mongodb_action_items_collection=settings.mongodb_meeting_action_items_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_meetings_collection: str,
    mongodb_attendees_collection: str,
    mongodb_action_items_collection: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if data_store == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            meetings_collection_name=mongodb_meetings_collection,
            attendees_collection_name=mongodb_attendees_collection,
            action_items_collection_name=mongodb_action_items_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()
