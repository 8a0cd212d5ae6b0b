from datetime import UTC, datetime

import pytest

from meeting_pipeline.services.meeting_document import (
    build_meeting_document,
    compute_content_hash,
    sentiment_label,
)


def _meeting(**overrides: object) -> dict[str, object]:
    meeting: dict[str, object] = {
        "_id": "meeting-1",
        "title": "Acme discovery",
        "meeting_start": datetime(2026, 3, 10, 9, 0, tzinfo=UTC),
        "duration_minutes": 45,
        "company_id": "company-1",
        "primary_contact_id": "contact-1",
        "sentiment_score": 0.42,
        "talk_time_rep_pct": 55.0,
        "talk_time_customer_pct": 45.0,
        "talk_time_judgement": "good",
        "summary": "Discussed rollout.",
        "transcript_text": "Ana Rep: Hello\nBruno Buyer: Hi",
        "last_synced_at": datetime(2026, 3, 10, 12, 0, tzinfo=UTC),
    }
    meeting.update(overrides)
    return meeting


ATTENDEES = [
    {"name": "Bruno Buyer", "email": "bruno@acme.com"},
    {"name": "Ana Rep", "email": "ana@seller.io"},
]
ACTION_ITEMS = [{"title": "Send proposal"}, {"title": ""}]
COMPANY = {"_id": "company-1", "name": "Acme", "domain": "acme.com"}
CONTACT = {"_id": "contact-1", "first_name": "Bruno", "last_name": "Buyer", "email": "bruno@acme.com"}


@pytest.mark.parametrize(
    ("score", "expected"),
    [(0.26, "positive"), (0.25, "neutral"), (-0.25, "neutral"), (-0.26, "negative"), (None, "neutral")],
)
def test_sentiment_label_thresholds(score: float | None, expected: str) -> None:
    assert sentiment_label(score) == expected


def test_build_meeting_document_sets_metadata_tags() -> None:
    document = build_meeting_document(
        _meeting(),
        attendees=ATTENDEES,
        action_items=ACTION_ITEMS,
        company=COMPANY,
        contact=CONTACT,
    )

    assert document.display_name == "meeting-meeting-1.md"
    assert document.custom_metadata == [
        {"key": "meeting_id", "stringValue": "meeting-1"},
        {"key": "company_id", "stringValue": "company-1"},
        {"key": "sentiment", "stringValue": "positive"},
        {"key": "meeting_date", "stringValue": "2026-03-10"},
        {"key": "has_action_items", "stringValue": "true"},
    ]
    assert document.payload["attendees"] == ["Ana Rep", "Bruno Buyer"]
    assert document.payload["action_items"] == ["Send proposal"]
    assert document.payload["contact"] == {"id": "contact-1", "name": "Bruno Buyer", "email": "bruno@acme.com"}


def test_build_meeting_document_omits_missing_metadata() -> None:
    document = build_meeting_document(
        _meeting(company_id=None, primary_contact_id=None, sentiment_score=None, meeting_start=None),
        attendees=[],
        action_items=[],
    )

    assert document.custom_metadata == [
        {"key": "meeting_id", "stringValue": "meeting-1"},
        {"key": "sentiment", "stringValue": "neutral"},
        {"key": "has_action_items", "stringValue": "false"},
    ]


def test_content_hash_ignores_sync_bookkeeping_fields() -> None:
    first = build_meeting_document(_meeting(), attendees=ATTENDEES, action_items=ACTION_ITEMS)
    resynced = build_meeting_document(
        _meeting(last_synced_at=datetime(2026, 3, 11, tzinfo=UTC), sync_status="synced"),
        attendees=list(reversed(ATTENDEES)),
        action_items=ACTION_ITEMS,
    )
    edited = build_meeting_document(
        _meeting(transcript_text="Ana Rep: Hello again"),
        attendees=ATTENDEES,
        action_items=ACTION_ITEMS,
    )

    assert first.content_hash == resynced.content_hash
    assert first.content_hash != edited.content_hash
    assert len(first.content_hash) == 64


def test_compute_content_hash_is_key_order_independent() -> None:
    assert compute_content_hash({"a": 1, "b": [1, 2]}) == compute_content_hash({"b": [1, 2], "a": 1})
    assert compute_content_hash({"a": 1}) != compute_content_hash({"a": 2})


def test_render_markdown_includes_sections() -> None:
    document = build_meeting_document(
        _meeting(),
        attendees=ATTENDEES,
        action_items=ACTION_ITEMS,
        company=COMPANY,
        contact=CONTACT,
    )

    markdown = document.render_markdown()

    assert markdown.startswith("# Acme discovery\n")
    assert "- Company: Acme" in markdown
    assert "- Sentiment: positive (0.42)" in markdown
    assert "- Talk time: rep 55.0% / customer 45.0% (good)" in markdown
    assert "## Action items\n\n- Send proposal" in markdown
    assert markdown.rstrip().endswith("Bruno Buyer: Hi")
