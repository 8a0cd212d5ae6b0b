import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

POSITIVE_SENTIMENT_THRESHOLD = 0.25
NEGATIVE_SENTIMENT_THRESHOLD = -0.25


@dataclass(frozen=True)
class MeetingDocument:
    meeting_id: str
    display_name: str
    payload: dict[str, Any]
    content_hash: str
    custom_metadata: list[dict[str, str]]

    def render_markdown(self) -> str:
        return render_markdown(self.payload)


def sentiment_label(score: float | None) -> str:
    if score is None:
        return "neutral"
    if score > POSITIVE_SENTIMENT_THRESHOLD:
        return "positive"
    if score < NEGATIVE_SENTIMENT_THRESHOLD:
        return "negative"
    return "neutral"


def build_meeting_document(
    meeting: Mapping[str, Any],
    *,
    attendees: Sequence[Mapping[str, Any]],
    action_items: Sequence[Mapping[str, Any]],
    company: Mapping[str, Any] | None = None,
    contact: Mapping[str, Any] | None = None,
) -> MeetingDocument:
    """Build the searchable document for a meeting.

    Only content fields go into the payload; sync timestamps and statuses are
    left out so the hash changes only when something worth re-indexing does.
    """
    meeting_id = str(meeting["_id"])
    meeting_date = _to_date_string(meeting.get("meeting_start"))
    score = meeting.get("sentiment_score")
    label = sentiment_label(score)
    action_item_titles = [
        str(item["title"]) for item in action_items if item.get("title")
    ]

    payload = {
        "meeting_id": meeting_id,
        "title": meeting.get("title") or "Untitled meeting",
        "meeting_date": meeting_date,
        "duration_minutes": meeting.get("duration_minutes"),
        "company": _company_section(company, meeting.get("company_id")),
        "contact": _contact_section(contact, meeting.get("primary_contact_id")),
        "attendees": sorted(
            {
                str(attendee.get("name") or attendee.get("email"))
                for attendee in attendees
                if attendee.get("name") or attendee.get("email")
            },
        ),
        "sentiment": {"label": label, "score": score},
        "talk_time": {
            "rep_pct": meeting.get("talk_time_rep_pct"),
            "customer_pct": meeting.get("talk_time_customer_pct"),
            "judgement": meeting.get("talk_time_judgement"),
        },
        "summary": meeting.get("summary"),
        "action_items": action_item_titles,
        "transcript": meeting.get("transcript_text"),
    }

    metadata_values = {
        "meeting_id": meeting_id,
        "company_id": payload["company"]["id"] if payload["company"] else None,
        "sentiment": label,
        "meeting_date": meeting_date,
        "has_action_items": "true" if action_item_titles else "false",
    }
    custom_metadata = [
        {"key": key, "stringValue": str(value)}
        for key, value in metadata_values.items()
        if value is not None
    ]
    return MeetingDocument(
        meeting_id=meeting_id,
        display_name=f"meeting-{meeting_id}.md",
        payload=payload,
        content_hash=compute_content_hash(payload),
        custom_metadata=custom_metadata,
    )


def compute_content_hash(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def render_markdown(payload: Mapping[str, Any]) -> str:
    lines = [f"# {payload['title']}", ""]
    if payload.get("meeting_date"):
        lines.append(f"- Date: {payload['meeting_date']}")
    if payload.get("duration_minutes") is not None:
        lines.append(f"- Duration: {payload['duration_minutes']} minutes")
    company = payload.get("company")
    if company:
        lines.append(f"- Company: {company.get('name') or company['id']}")
    contact = payload.get("contact")
    if contact:
        lines.append(f"- Primary contact: {contact.get('name') or contact.get('email') or contact['id']}")
    if payload.get("attendees"):
        lines.append(f"- Attendees: {', '.join(payload['attendees'])}")
    sentiment = payload["sentiment"]
    if sentiment["score"] is None:
        lines.append(f"- Sentiment: {sentiment['label']}")
    else:
        lines.append(f"- Sentiment: {sentiment['label']} ({sentiment['score']})")
    talk_time = payload["talk_time"]
    if talk_time["rep_pct"] is not None:
        lines.append(
            f"- Talk time: rep {talk_time['rep_pct']}% / customer {talk_time['customer_pct']}%"
            f" ({talk_time['judgement']})",
        )

    if payload.get("summary"):
        lines.extend(["", "## Summary", "", str(payload["summary"])])
    if payload.get("action_items"):
        lines.extend(["", "## Action items", ""])
        lines.extend(f"- {title}" for title in payload["action_items"])
    if payload.get("transcript"):
        lines.extend(["", "## Transcript", "", str(payload["transcript"])])
    return "\n".join(lines) + "\n"


def _company_section(company: Mapping[str, Any] | None, company_id: Any) -> dict[str, Any] | None:
    if company:
        return {
            "id": str(company["_id"]),
            "name": company.get("name"),
            "domain": company.get("domain"),
        }
    if company_id:
        return {"id": str(company_id), "name": None, "domain": None}
    return None


def _contact_section(contact: Mapping[str, Any] | None, contact_id: Any) -> dict[str, Any] | None:
    if contact:
        name = contact.get("full_name") or " ".join(
            part for part in (contact.get("first_name"), contact.get("last_name")) if part
        )
        return {"id": str(contact["_id"]), "name": name or None, "email": contact.get("email")}
    if contact_id:
        return {"id": str(contact_id), "name": None, "email": None}
    return None


def _to_date_string(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            return None
    return None
