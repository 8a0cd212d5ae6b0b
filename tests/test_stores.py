from datetime import UTC, datetime, timedelta

from meeting_pipeline.services.crm_store import InMemoryCrmStore
from meeting_pipeline.services.file_search_store_registry import InMemoryFileSearchStoreRegistry
from meeting_pipeline.services.index_queue_store import InMemoryIndexQueueStore
from meeting_pipeline.services.integration_store import InMemoryIntegrationStore
from meeting_pipeline.services.meeting_store import InMemoryMeetingStore
from meeting_pipeline.services.sync_state_store import InMemorySyncStateStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
STALE_AFTER = timedelta(minutes=30)


def _begin(store: InMemorySyncStateStore, started_at: datetime) -> bool:
    return store.try_begin_sync(
        user_id="user-1",
        integration_id="integration-1",
        sync_type="incremental",
        started_at=started_at,
        stale_after=STALE_AFTER,
    )


def test_sync_state_lock_is_exclusive_until_completed() -> None:
    store = InMemorySyncStateStore()

    assert _begin(store, NOW) is True
    assert _begin(store, NOW + timedelta(minutes=1)) is False

    store.complete_sync(
        user_id="user-1",
        meetings_synced=3,
        total_meetings_found=3,
        errors=[],
        completed_at=NOW + timedelta(minutes=2),
    )

    assert _begin(store, NOW + timedelta(minutes=3)) is True


def test_sync_state_lock_can_be_reclaimed_when_stale() -> None:
    store = InMemorySyncStateStore()

    assert _begin(store, NOW) is True
    assert _begin(store, NOW + timedelta(minutes=29)) is False
    assert _begin(store, NOW + timedelta(minutes=31)) is True


def test_sync_state_keeps_at_most_ten_sample_errors() -> None:
    store = InMemorySyncStateStore()
    _begin(store, NOW)

    store.complete_sync(
        user_id="user-1",
        meetings_synced=0,
        total_meetings_found=15,
        errors=[{"call_id": str(index), "error": "boom"} for index in range(15)],
        completed_at=NOW,
    )

    state = store.get_state("user-1")
    assert state["status"] == "idle"
    assert state["last_sync_error"].count('"call_id"') == 10


def test_sync_state_error_count_increments_and_resets() -> None:
    store = InMemorySyncStateStore()

    assert store.increment_error_count(user_id="user-1", error_message="first") == 1
    assert store.increment_error_count(user_id="user-1", error_message="second") == 2
    assert store.get_state("user-1")["last_sync_error"] == "second"

    store.reset_error_count("user-1")

    assert store.get_state("user-1")["error_count"] == 0


def test_index_queue_dedupes_and_orders_candidates() -> None:
    store = InMemoryIndexQueueStore()
    low, created_low = store.enqueue(meeting_id="meeting-1", user_id="user-1", priority=0, max_attempts=5)
    duplicate, created_duplicate = store.enqueue(
        meeting_id="meeting-1",
        user_id="user-1",
        priority=10,
        max_attempts=5,
    )
    high, _ = store.enqueue(meeting_id="meeting-2", user_id="user-1", priority=10, max_attempts=5)
    other_user, _ = store.enqueue(meeting_id="meeting-3", user_id="user-2", priority=0, max_attempts=5)

    assert created_low is True
    assert created_duplicate is False
    assert duplicate["_id"] == low["_id"]
    assert duplicate["priority"] == 10
    assert "_sequence" not in low
    assert [item["_id"] for item in store.list_candidates(user_id=None, limit=10)] == [
        low["_id"],
        high["_id"],
        other_user["_id"],
    ]
    assert [item["_id"] for item in store.list_candidates(user_id="user-2", limit=10)] == [other_user["_id"]]


def test_index_queue_moves_exhausted_items_to_dead_letters() -> None:
    store = InMemoryIndexQueueStore()
    item, _ = store.enqueue(meeting_id="meeting-1", user_id="user-1", priority=0, max_attempts=2)

    store.record_attempt(item["_id"], NOW)
    attempted = store.record_attempt(item["_id"], NOW + timedelta(minutes=1))
    store.record_error(item["_id"], "upload failed")

    assert attempted["attempts"] == 2
    assert store.list_candidates(user_id=None, limit=10) == []
    dead_letters = store.list_dead_letters(user_id="user-1", limit=10)
    assert [entry["_id"] for entry in dead_letters] == [item["_id"]]
    assert dead_letters[0]["error_message"] == "upload failed"
    assert store.delete(item["_id"]) is True
    assert store.delete(item["_id"]) is False


def test_index_queue_enqueue_revives_dead_letter() -> None:
    store = InMemoryIndexQueueStore()
    item, _ = store.enqueue(meeting_id="meeting-1", user_id="user-1", priority=0, max_attempts=1)
    store.record_attempt(item["_id"], NOW)
    store.record_error(item["_id"], "upload failed")

    revived, created = store.enqueue(meeting_id="meeting-1", user_id="user-1", priority=5, max_attempts=3)

    assert created is True
    assert revived["_id"] == item["_id"]
    assert revived["attempts"] == 0
    assert revived["max_attempts"] == 3
    assert revived["last_attempt_at"] is None
    assert revived["error_message"] is None
    assert revived["priority"] == 5
    assert store.list_dead_letters(user_id="user-1", limit=10) == []
    assert [entry["_id"] for entry in store.list_candidates(user_id="user-1", limit=10)] == [item["_id"]]


def test_index_queue_enqueue_never_lowers_priority() -> None:
    store = InMemoryIndexQueueStore()
    store.enqueue(meeting_id="meeting-1", user_id="user-1", priority=10, max_attempts=5)

    item, created = store.enqueue(meeting_id="meeting-1", user_id="user-1", priority=0, max_attempts=5)

    assert created is False
    assert item["priority"] == 10


def test_index_queue_candidates_skip_items_in_backoff() -> None:
    store = InMemoryIndexQueueStore()
    backing_off = [
        store.enqueue(meeting_id=f"meeting-{index}", user_id="user-1", priority=10, max_attempts=5)[0]
        for index in range(3)
    ]
    for item in backing_off:
        store.record_attempt(item["_id"], NOW)
    fresh, _ = store.enqueue(meeting_id="meeting-fresh", user_id="user-1", priority=0, max_attempts=5)

    candidates = store.list_candidates(user_id="user-1", limit=1, now=NOW, backoff_base_seconds=5)
    later = store.list_candidates(
        user_id="user-1",
        limit=10,
        now=NOW + timedelta(seconds=10),
        backoff_base_seconds=5,
    )

    assert [item["_id"] for item in candidates] == [fresh["_id"]]
    assert len(later) == 4


def test_meeting_store_upsert_keeps_insert_defaults_on_update() -> None:
    store = InMemoryMeetingStore()
    created = store.upsert_meeting(
        external_recording_id="rec-1",
        fields={"title": "First"},
        insert_defaults={"thumbnail_status": "pending"},
    )
    store.upsert_meeting(
        external_recording_id="rec-1",
        fields={"title": "Second"},
        insert_defaults={"thumbnail_status": "reset"},
    )

    meeting = store.get_meeting(created["_id"])
    assert meeting["title"] == "Second"
    assert meeting["thumbnail_status"] == "pending"
    assert store.find_existing_external_ids(["rec-1", "rec-2"]) == {"rec-1"}


def test_meeting_store_dedupes_attendees_and_action_items() -> None:
    store = InMemoryMeetingStore()

    assert store.add_attendee(meeting_id="meeting-1", dedup_key="a@x.io", attendee={"name": "A"}) is True
    assert store.add_attendee(meeting_id="meeting-1", dedup_key="a@x.io", attendee={"name": "B"}) is False
    assert store.add_action_item(meeting_id="meeting-1", dedup_key="send|30", item={"title": "Send"}) is True
    assert store.add_action_item(meeting_id="meeting-1", dedup_key="send|30", item={"title": "Send"}) is False
    assert [attendee["name"] for attendee in store.list_attendees("meeting-1")] == ["A"]
    assert len(store.list_action_items("meeting-1")) == 1


def test_crm_store_first_write_wins() -> None:
    store = InMemoryCrmStore()

    contact, created = store.get_or_create_contact(
        owner_id="user-1",
        email="Bruno@Acme.com",
        fields={"first_name": "Bruno"},
    )
    again, created_again = store.get_or_create_contact(
        owner_id="user-1",
        email="bruno@acme.com",
        fields={"first_name": "Changed"},
    )
    other_owner, created_other = store.get_or_create_contact(
        owner_id="user-2",
        email="bruno@acme.com",
        fields={"first_name": "Bruno"},
    )
    company, _ = store.get_or_create_company(owner_id="user-1", domain="ACME.com", fields={"name": "Acme"})
    same_company, company_created = store.get_or_create_company(
        owner_id="user-1",
        domain="acme.com",
        fields={"name": "Other"},
    )

    assert (created, created_again, created_other) == (True, False, True)
    assert again["_id"] == contact["_id"]
    assert again["first_name"] == "Bruno"
    assert other_owner["_id"] != contact["_id"]
    assert company_created is False
    assert same_company["name"] == "Acme"
    assert company["domain"] == "acme.com"


def test_file_search_store_registry_keeps_first_store() -> None:
    registry = InMemoryFileSearchStoreRegistry()

    first = registry.save_store(user_id="user-1", store_name="fileSearchStores/a", display_name="meetings-user-1")
    second = registry.save_store(user_id="user-1", store_name="fileSearchStores/b", display_name="meetings-user-1")
    registry.update_file_count("user-1", 7)

    assert second["store_name"] == first["store_name"] == "fileSearchStores/a"
    assert registry.get_store("user-1")["file_count"] == 7
    assert registry.get_store("user-2") is None


def test_integration_store_resolves_active_integration_by_email() -> None:
    store = InMemoryIntegrationStore()
    store.save_integration(
        user_id="user-1",
        access_token="token",
        token_expires_at=None,
        provider_user_email="Ana@Seller.io",
    )
    store.save_integration(
        user_id="user-2",
        access_token="token",
        token_expires_at=None,
        provider_user_email="off@seller.io",
        is_active=False,
    )

    assert store.find_active_integration_by_email("ana@seller.io")["user_id"] == "user-1"
    assert store.find_active_integration_by_email("off@seller.io") is None
    assert [integration["user_id"] for integration in store.list_active_integrations()] == ["user-1"]
