import pytest

from meeting_pipeline.services.errors import PayloadValidationError
from meeting_pipeline.services.fathom_payload import (
    company_domain,
    extract_recording_id,
    normalize_summary,
    normalize_transcript,
    parse_fathom_analytics,
    parse_fathom_call,
    parse_recording_timestamp,
    split_full_name,
)


def test_extract_recording_id_prefers_explicit_fields_in_order() -> None:
    payload = {
        "id": "generic-id",
        "call_id": "call-id",
        "recording": {"id": "nested-id"},
        "recordingId": "camel-id",
        "url": "https://fathom.video/calls/from-url",
    }

    assert extract_recording_id(payload) == "camel-id"
    assert extract_recording_id({"recording_id": 123456, **payload}) == "123456"
    assert extract_recording_id({"recording": {"id": 77}, "id": "generic-id"}) == "77"


def test_extract_recording_id_falls_back_to_url() -> None:
    assert extract_recording_id({"url": "https://fathom.video/calls/98765?tab=summary"}) == "98765"
    assert extract_recording_id({"share_url": "https://fathom.video/share/AbC-12_x"}) == "AbC-12_x"
    assert extract_recording_id({"recording": {"url": "https://app.fathom.video/recording/42"}}) == "42"


def test_extract_recording_id_ignores_blank_and_boolean_values() -> None:
    assert extract_recording_id({"recording_id": "  ", "id": True}) is None
    assert extract_recording_id({"url": "https://fathom.video/home"}) is None
    assert extract_recording_id({}) is None


def test_normalize_transcript_renders_speaker_lines() -> None:
    transcript = [
        {"speaker": {"display_name": "Ana Rep"}, "text": "Hello there", "timestamp": "00:00:01"},
        {"speaker": "Bruno", "text": "Hi"},
        {"speaker_name": "Carla", "text": "Morning"},
        {"text": "   "},
        "Plain line",
    ]

    assert normalize_transcript(transcript) == "Ana Rep: Hello there\nBruno: Hi\nCarla: Morning\nPlain line"
    assert normalize_transcript({"segments": transcript[:1]}) == "Ana Rep: Hello there"
    assert normalize_transcript({"text": " Full text "}) == "Full text"
    assert normalize_transcript([]) is None
    assert normalize_transcript(None) is None


def test_normalize_summary_accepts_string_or_mapping() -> None:
    assert normalize_summary("  Recap ") == "Recap"
    assert normalize_summary({"template_name": "general", "markdown_formatted": "## Recap"}) == "## Recap"
    assert normalize_summary({"markdown_formatted": "", "text": "Plain recap"}) == "Plain recap"
    assert normalize_summary({"unrelated": "value"}) is None


@pytest.mark.parametrize(
    ("value", "expected"),
    [("01:02:03", 3723), ("12:30", 750), ("45", 45), ("", None), (None, None), ("1:xx", None)],
)
def test_parse_recording_timestamp(value: str | None, expected: int | None) -> None:
    assert parse_recording_timestamp(value) == expected


def test_split_full_name_and_company_domain() -> None:
    assert split_full_name("Bruno van Buyer", "bruno@acme.com") == ("Bruno", "van Buyer")
    assert split_full_name("Cher", "cher@acme.com") == ("Cher", None)
    assert split_full_name(None, "dana.lee@acme.com") == ("dana.lee", None)
    assert company_domain("bruno@Acme.COM") == "acme.com"
    assert company_domain("someone@gmail.com") is None
    assert company_domain("not-an-email") is None


def test_parse_fathom_call_coerces_numeric_ids_and_null_lists() -> None:
    call = parse_fathom_call(
        {
            "id": 314,
            "title": "Kickoff",
            "recording_start_time": "2026-03-10T09:00:00Z",
            "calendar_invitees": None,
            "action_items": None,
            "recorded_by": {"name": "Ana", "email": "ana@seller.io"},
            "new_field_from_fathom": {"kept": True},
        },
    )

    assert call.recording_id == "314"
    assert call.calendar_invitees == []
    assert call.action_items == []
    assert call.owner_email == "ana@seller.io"
    assert call.start_time is not None and call.start_time.hour == 9


def test_parse_fathom_call_rejects_missing_recording_id() -> None:
    with pytest.raises(PayloadValidationError, match="Invalid Fathom call payload"):
        parse_fathom_call({"title": "No id"})
    with pytest.raises(PayloadValidationError):
        parse_fathom_call({"recording_id": "   "})


def test_parse_fathom_analytics() -> None:
    analytics = parse_fathom_analytics(
        {
            "sentiment": {"score": -0.4},
            "talk_time_analysis": {"rep_percentage": 55, "customer_percentage": 45},
            "key_moments": None,
        },
    )

    assert analytics is not None
    assert analytics.sentiment is not None and analytics.sentiment.score == -0.4
    assert analytics.key_moments == []
    assert parse_fathom_analytics(None) is None
    with pytest.raises(PayloadValidationError):
        parse_fathom_analytics({"sentiment": {"score": "very good"}})
