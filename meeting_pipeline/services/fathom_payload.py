import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from meeting_pipeline.schemas.fathom import FathomAnalytics, FathomCall
from meeting_pipeline.services.errors import PayloadValidationError

RECORDING_ID_PATHS = (
    "recording_id",
    "recordingId",
    "recording.id",
    "call_id",
    "callId",
    "id",
)
RECORDING_URL_PATHS = ("url", "calls_url", "share_url", "recording.url")
RECORDING_URL_PATTERN = re.compile(r"/(?:calls|recording|recordings|share)/([A-Za-z0-9_-]+)")
SUMMARY_KEYS = ("markdown_formatted", "text", "summary", "content")
PERSONAL_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "outlook.com",
        "hotmail.com",
        "live.com",
        "yahoo.com",
        "icloud.com",
        "me.com",
        "aol.com",
        "proton.me",
        "protonmail.com",
    },
)


def extract_path(payload: Mapping[str, Any], path: str) -> Any:
    value: Any = payload
    for segment in path.split("."):
        if not isinstance(value, Mapping):
            return None
        if segment not in value:
            return None
        value = value[segment]
    return value


def extract_first_string(payload: Mapping[str, Any], paths: tuple[str, ...]) -> str | None:
    for path in paths:
        text = to_text(extract_path(payload, path))
        if text:
            return text
    return None


def to_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def extract_recording_id(payload: Mapping[str, Any]) -> str | None:
    """Find the recording id of a webhook payload.

    Explicit id fields win in ``RECORDING_ID_PATHS`` order; otherwise the id is
    parsed from the first call/share URL that contains one.
    """
    recording_id = extract_first_string(payload, RECORDING_ID_PATHS)
    if recording_id:
        return recording_id

    for path in RECORDING_URL_PATHS:
        url = to_text(extract_path(payload, path))
        if not url:
            continue
        match = RECORDING_URL_PATTERN.search(url)
        if match:
            return match.group(1)
    return None


def normalize_transcript(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        lines = [line for line in (_format_segment(segment) for segment in value) if line]
        return "\n".join(lines) or None
    if isinstance(value, Mapping):
        for key in ("segments", "lines", "sentences"):
            if isinstance(value.get(key), list):
                return normalize_transcript(value[key])
        for key in ("text", "transcript", "content"):
            text = normalize_transcript(value.get(key))
            if text:
                return text
    return None


def _format_segment(segment: Any) -> str | None:
    if isinstance(segment, str):
        return segment.strip() or None
    if not isinstance(segment, Mapping):
        return None

    text = to_text(segment.get("text"))
    if not text:
        return None
    speaker = segment.get("speaker")
    if isinstance(speaker, Mapping):
        speaker_name = to_text(speaker.get("display_name")) or to_text(speaker.get("name"))
    else:
        speaker_name = to_text(speaker) or to_text(segment.get("speaker_name"))
    if speaker_name:
        return f"{speaker_name}: {text}"
    return text


def normalize_summary(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Mapping):
        for key in SUMMARY_KEYS:
            text = normalize_summary(value.get(key))
            if text:
                return text
    return None


def parse_recording_timestamp(value: str | None) -> int | None:
    """Convert ``HH:MM:SS`` or ``MM:SS`` into seconds."""
    if not value:
        return None
    parts = value.strip().split(":")
    if not 1 <= len(parts) <= 3:
        return None
    seconds = 0
    for part in parts:
        if not part.isdigit():
            return None
        seconds = seconds * 60 + int(part)
    return seconds


def split_full_name(full_name: str | None, email: str) -> tuple[str, str | None]:
    if not full_name or not full_name.strip():
        return email.split("@", maxsplit=1)[0], None
    first_name, _, last_name = full_name.strip().partition(" ")
    return first_name, last_name.strip() or None


def company_domain(email: str | None) -> str | None:
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", maxsplit=1)[1].strip().lower()
    if not domain or domain in PERSONAL_EMAIL_DOMAINS:
        return None
    return domain


def parse_fathom_call(payload: Mapping[str, Any]) -> FathomCall:
    try:
        return FathomCall.model_validate(dict(payload))
    except ValidationError as exc:
        raise PayloadValidationError(f"Invalid Fathom call payload: {_summarize(exc)}") from exc


def parse_fathom_analytics(payload: Mapping[str, Any] | None) -> FathomAnalytics | None:
    if not payload:
        return None
    try:
        return FathomAnalytics.model_validate(dict(payload))
    except ValidationError as exc:
        raise PayloadValidationError(f"Invalid Fathom analytics payload: {_summarize(exc)}") from exc


def _summarize(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors()[:3]:
        location = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        messages.append(f"{location}: {error.get('msg')}")
    return "; ".join(messages)
