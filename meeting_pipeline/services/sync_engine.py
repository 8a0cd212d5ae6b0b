import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib import parse

from meeting_pipeline.core.config import Settings
from meeting_pipeline.schemas.fathom import FathomAnalytics, FathomCall
from meeting_pipeline.schemas.sync import CallSyncError, SyncResponse, SyncType
from meeting_pipeline.services.crm_store import CrmStore, create_crm_store
from meeting_pipeline.services.errors import (
    IntegrationAuthError,
    PayloadValidationError,
    PipelineError,
    SyncInProgressError,
    UpstreamError,
)
from meeting_pipeline.services.fathom_api_client import FathomApiClient
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
from meeting_pipeline.services.index_queue_store import IndexQueueStore, create_index_queue_store
from meeting_pipeline.services.integration_store import IntegrationStore, create_integration_store
from meeting_pipeline.services.meeting_store import MeetingStore, create_meeting_store
from meeting_pipeline.services.sync_state_store import SyncStateStore, create_sync_state_store

logger = logging.getLogger(__name__)

FATHOM_RECORDING_URL = "https://app.fathom.video/recording/{recording_id}"
FATHOM_EMBED_URL = "https://fathom.video/embed/{token}"
CONTACT_SOURCE = "fathom_sync"
DEFAULT_INDEX_PRIORITY = 0
WEBHOOK_INDEX_PRIORITY = 10
TALK_TIME_HIGH_THRESHOLD = 70.0
TALK_TIME_LOW_THRESHOLD = 30.0
PROCESSING_PENDING = "pending"
PROCESSING_COMPLETE = "complete"
# (minimum prior attempts, minutes to wait), checked in order.
TRANSCRIPT_FETCH_COOLDOWNS = ((24, 720), (12, 180), (6, 60), (3, 15))
DEFAULT_TRANSCRIPT_FETCH_COOLDOWN_MINUTES = 5
# Bulk sync types that list once more without date filters when their window is empty.
UNFILTERED_RETRY_SYNC_TYPES = frozenset({SyncType.initial, SyncType.manual, SyncType.all_time})

FathomClientFactory = Callable[[Mapping[str, Any]], FathomApiClient]


@dataclass(frozen=True)
class CallSyncResult:
    success: bool
    recording_id: str | None = None
    meeting_id: str | None = None
    transcript_available: bool = False
    error: str | None = None


class FathomSyncService:
    def __init__(
        self,
        settings: Settings,
        *,
        integration_store: IntegrationStore | None = None,
        sync_state_store: SyncStateStore | None = None,
        meeting_store: MeetingStore | None = None,
        crm_store: CrmStore | None = None,
        index_queue_store: IndexQueueStore | None = None,
        fathom_client_factory: FathomClientFactory | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.integration_store = integration_store or create_integration_store(settings)
        self.sync_state_store = sync_state_store or create_sync_state_store(settings)
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.crm_store = crm_store or create_crm_store(settings)
        self.index_queue_store = index_queue_store or create_index_queue_store(settings)
        self.fathom_client_factory = fathom_client_factory or self._create_fathom_client
        self.clock = clock or (lambda: datetime.now(UTC))

    def run_sync(
        self,
        *,
        user_id: str,
        sync_type: SyncType,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        call_id: str | None = None,
        limit: int | None = None,
        webhook_payload: Mapping[str, Any] | None = None,
    ) -> SyncResponse:
        integration = self.require_integration(user_id)

        if sync_type == SyncType.webhook:
            recording_id = call_id or (extract_recording_id(webhook_payload) if webhook_payload else None)
            if not recording_id:
                raise PayloadValidationError(
                    "Webhook syncs require call_id or a webhook_payload with a recording id.",
                )
            result = self.sync_single_call(
                user_id=user_id,
                integration=integration,
                call_id=recording_id,
                call_payload=webhook_payload,
                index_priority=WEBHOOK_INDEX_PRIORITY,
            )
            return SyncResponse(
                success=result.success,
                user_id=user_id,
                sync_type=sync_type,
                meetings_synced=1 if result.success else 0,
                total_meetings_found=1,
                errors=[] if result.success else [
                    CallSyncError(call_id=recording_id, error=result.error or "Unknown error"),
                ],
                meeting_id=result.meeting_id,
                transcript_available=result.transcript_available,
            )

        return self._run_bulk_sync(
            user_id=user_id,
            integration=integration,
            sync_type=sync_type,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )

    def require_integration(self, user_id: str) -> dict[str, Any]:
        integration = self.integration_store.get_active_integration(user_id)
        if not integration:
            raise IntegrationAuthError("No active Fathom integration found for this user.")
        if not integration.get("access_token"):
            raise IntegrationAuthError("Fathom integration has no access token; reconnect it.")

        expires_at = integration.get("token_expires_at")
        if isinstance(expires_at, datetime):
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=UTC)
            if expires_at <= self.clock():
                raise IntegrationAuthError("Fathom access token expired; reconnect the integration.")
        return integration

    def resolve_window(
        self,
        sync_type: SyncType,
        start_date: datetime | None,
        end_date: datetime | None,
    ) -> tuple[datetime, datetime]:
        window_end = end_date or self.clock()
        if start_date:
            return start_date, window_end

        if sync_type == SyncType.incremental:
            lookback = timedelta(hours=self.settings.incremental_sync_hours)
        elif sync_type == SyncType.initial:
            lookback = timedelta(days=self.settings.initial_sync_days)
        elif sync_type == SyncType.all_time:
            lookback = timedelta(days=self.settings.all_time_sync_days)
        else:
            lookback = timedelta(days=self.settings.manual_sync_days)
        return window_end - lookback, window_end

    def sync_single_call(
        self,
        *,
        user_id: str,
        integration: Mapping[str, Any],
        call_id: str,
        call_payload: Mapping[str, Any] | None = None,
        client: FathomApiClient | None = None,
        index_priority: int = DEFAULT_INDEX_PRIORITY,
    ) -> CallSyncResult:
        try:
            client = client or self.fathom_client_factory(integration)
            detail = {key: value for key, value in client.fetch_call(call_id).items() if value is not None}
            merged_payload = {**(call_payload or {}), **detail}
            if not merged_payload.get("recording_id"):
                merged_payload["recording_id"] = call_id
            call = parse_fathom_call(merged_payload)
            analytics = self._load_analytics(client, call.recording_id)

            contacts = self._resolve_contacts(user_id, call)
            meeting = self.meeting_store.upsert_meeting(
                external_recording_id=call.recording_id,
                fields=self._build_meeting_fields(user_id, integration, call, analytics, contacts),
                insert_defaults={
                    "thumbnail_status": PROCESSING_PENDING,
                    "transcript_status": PROCESSING_PENDING,
                    "summary_status": PROCESSING_PENDING,
                },
            )
            if not meeting.get("transcript_text"):
                meeting = self._fetch_missing_transcript(client, meeting)
            meeting_id = str(meeting["_id"])
            self._save_attendees(meeting_id, call, contacts)
            self._save_action_items(meeting_id, user_id, call, analytics)

            transcript_available = bool(meeting.get("transcript_text"))
            if transcript_available:
                self.index_queue_store.enqueue(
                    meeting_id=meeting_id,
                    user_id=user_id,
                    priority=index_priority,
                    max_attempts=self.settings.index_queue_max_attempts,
                )
        except PipelineError as exc:
            logger.warning(
                "Call sync failed user_id=%s call_id=%s error_type=%s error=%s",
                user_id,
                call_id,
                exc.__class__.__name__,
                exc,
            )
            return CallSyncResult(success=False, recording_id=call_id, error=str(exc))
        except Exception as exc:
            logger.exception("Call sync crashed user_id=%s call_id=%s", user_id, call_id)
            return CallSyncResult(
                success=False,
                recording_id=call_id,
                error=str(exc) or exc.__class__.__name__,
            )

        logger.info(
            "Call synced user_id=%s call_id=%s meeting_id=%s transcript_available=%s",
            user_id,
            call_id,
            meeting_id,
            transcript_available,
        )
        return CallSyncResult(
            success=True,
            recording_id=call.recording_id,
            meeting_id=meeting_id,
            transcript_available=transcript_available,
        )

    def _run_bulk_sync(
        self,
        *,
        user_id: str,
        integration: Mapping[str, Any],
        sync_type: SyncType,
        start_date: datetime | None,
        end_date: datetime | None,
        limit: int | None,
    ) -> SyncResponse:
        run_id = uuid.uuid4().hex[:12]
        claimed = self.sync_state_store.try_begin_sync(
            user_id=user_id,
            integration_id=str(integration.get("_id") or "") or None,
            sync_type=sync_type.value,
            started_at=self.clock(),
            stale_after=timedelta(minutes=self.settings.sync_lock_stale_after_minutes),
        )
        if not claimed:
            raise SyncInProgressError("A Fathom sync is already running for this user.")

        window_start, window_end = self.resolve_window(sync_type, start_date, end_date)
        page_size = min(limit or self.settings.fathom_page_size, self.settings.fathom_page_size)
        max_calls = limit or self.settings.fathom_max_calls_per_sync
        logger.info(
            "Sync started user_id=%s run_id=%s sync_type=%s start=%s end=%s page_size=%s",
            user_id,
            run_id,
            sync_type.value,
            window_start.isoformat(),
            window_end.isoformat(),
            page_size,
        )

        errors: list[CallSyncError] = []
        meetings_synced = 0
        total_meetings_found = 0
        processing_started = False
        offset = 0
        try:
            client = self.fathom_client_factory(integration)
            while total_meetings_found < max_calls:
                try:
                    calls = client.list_calls(
                        start_date=window_start,
                        end_date=window_end,
                        limit=page_size,
                        offset=offset,
                    )
                except UpstreamError as exc:
                    if not processing_started:
                        raise
                    logger.warning(
                        "Sync page fetch failed user_id=%s run_id=%s offset=%s error=%s",
                        user_id,
                        run_id,
                        offset,
                        exc,
                    )
                    errors.append(
                        CallSyncError(error=f"Page fetch failed at offset {offset}: {exc}"),
                    )
                    break

                processing_started = True
                page = calls[: max_calls - total_meetings_found]
                total_meetings_found += len(page)
                meetings_synced += self._sync_listed_calls(
                    user_id=user_id,
                    integration=integration,
                    client=client,
                    calls=page,
                    errors=errors,
                )

                if len(calls) < page_size or limit:
                    break
                offset += page_size
            else:
                logger.warning(
                    "Sync call cap reached user_id=%s run_id=%s max_calls=%s",
                    user_id,
                    run_id,
                    max_calls,
                )

            if total_meetings_found == 0 and sync_type in UNFILTERED_RETRY_SYNC_TYPES:
                logger.info(
                    "No calls in sync window, retrying without date filters user_id=%s run_id=%s",
                    user_id,
                    run_id,
                )
                try:
                    calls = client.list_calls(start_date=None, end_date=None, limit=page_size, offset=0)
                except UpstreamError as exc:
                    logger.warning(
                        "Unfiltered page fetch failed user_id=%s run_id=%s error=%s",
                        user_id,
                        run_id,
                        exc,
                    )
                    errors.append(CallSyncError(error=f"Unfiltered page fetch failed: {exc}"))
                    calls = []
                total_meetings_found += len(calls)
                meetings_synced += self._sync_listed_calls(
                    user_id=user_id,
                    integration=integration,
                    client=client,
                    calls=calls,
                    errors=errors,
                )
        except Exception as exc:
            self.sync_state_store.fail_sync(
                user_id=user_id,
                error_message=str(exc) or exc.__class__.__name__,
                failed_at=self.clock(),
            )
            logger.error(
                "Sync failed user_id=%s run_id=%s sync_type=%s error=%s",
                user_id,
                run_id,
                sync_type.value,
                exc,
            )
            raise

        self.sync_state_store.complete_sync(
            user_id=user_id,
            meetings_synced=meetings_synced,
            total_meetings_found=total_meetings_found,
            errors=[error.model_dump() for error in errors],
            completed_at=self.clock(),
        )
        logger.info(
            "Sync completed user_id=%s run_id=%s sync_type=%s meetings_synced=%s "
            "total_meetings_found=%s error_count=%s",
            user_id,
            run_id,
            sync_type.value,
            meetings_synced,
            total_meetings_found,
            len(errors),
        )
        return SyncResponse(
            user_id=user_id,
            sync_type=sync_type,
            meetings_synced=meetings_synced,
            total_meetings_found=total_meetings_found,
            errors=errors,
            start_date=window_start,
            end_date=window_end,
        )

    def _sync_listed_calls(
        self,
        *,
        user_id: str,
        integration: Mapping[str, Any],
        client: FathomApiClient,
        calls: list[dict[str, Any]],
        errors: list[CallSyncError],
    ) -> int:
        synced = 0
        for listed_call in calls:
            call_id = extract_recording_id(listed_call)
            if not call_id:
                errors.append(CallSyncError(error="Listed call has no recording id."))
                continue
            result = self.sync_single_call(
                user_id=user_id,
                integration=integration,
                call_id=call_id,
                call_payload=listed_call,
                client=client,
            )
            if result.success:
                synced += 1
            else:
                errors.append(CallSyncError(call_id=call_id, error=result.error or "Unknown error"))
        return synced

    def _fetch_missing_transcript(self, client: FathomApiClient, meeting: dict[str, Any]) -> dict[str, Any]:
        recording_id = str(meeting["external_recording_id"])
        now = self.clock()
        attempts = int(meeting.get("transcript_fetch_attempts") or 0)
        last_fetch_at = meeting.get("last_transcript_fetch_at")
        if isinstance(last_fetch_at, datetime):
            if last_fetch_at.tzinfo is None:
                last_fetch_at = last_fetch_at.replace(tzinfo=UTC)
            cooldown = timedelta(minutes=transcript_fetch_cooldown_minutes(attempts))
            if timedelta(0) <= now - last_fetch_at < cooldown:
                logger.info(
                    "Transcript fetch cooling down call_id=%s attempts=%s cooldown_minutes=%s",
                    recording_id,
                    attempts,
                    int(cooldown.total_seconds() // 60),
                )
                return meeting

        meeting = self.meeting_store.upsert_meeting(
            external_recording_id=recording_id,
            fields={"transcript_fetch_attempts": attempts + 1, "last_transcript_fetch_at": now},
        )
        transcript_text = client.fetch_transcript(recording_id)
        if not transcript_text:
            logger.info("Transcript not available yet call_id=%s attempts=%s", recording_id, attempts + 1)
            return meeting

        fields: dict[str, Any] = {
            "transcript_text": transcript_text,
            "transcript_status": PROCESSING_COMPLETE,
        }
        if not meeting.get("summary"):
            summary = client.fetch_summary(recording_id)
            if summary:
                fields["summary"] = summary
                fields["summary_status"] = PROCESSING_COMPLETE
        logger.info("Transcript fetched call_id=%s characters=%s", recording_id, len(transcript_text))
        return self.meeting_store.upsert_meeting(external_recording_id=recording_id, fields=fields)

    def _load_analytics(self, client: FathomApiClient, call_id: str) -> FathomAnalytics | None:
        payload = client.fetch_call_analytics(call_id)
        try:
            return parse_fathom_analytics(payload)
        except PayloadValidationError as exc:
            logger.warning("Ignoring malformed analytics call_id=%s error=%s", call_id, exc)
            return None

    def _build_meeting_fields(
        self,
        user_id: str,
        integration: Mapping[str, Any],
        call: FathomCall,
        analytics: FathomAnalytics | None,
        contacts: list[dict[str, Any]],
    ) -> dict[str, Any]:
        start_time = call.start_time
        end_time = call.end_time
        duration_minutes = None
        if start_time and end_time:
            duration_minutes = round((end_time - start_time).total_seconds() / 60)

        fields: dict[str, Any] = {
            "owner_user_id": user_id,
            "fathom_user_id": integration.get("provider_user_id"),
            "title": call.title or call.meeting_title,
            "meeting_start": start_time,
            "meeting_end": end_time,
            "duration_minutes": duration_minutes,
            "owner_email": call.owner_email,
            "team_name": call.recorded_by.team if call.recorded_by else None,
            "share_url": call.share_url,
            "calls_url": call.url,
            "fathom_embed_url": build_embed_url(call),
            "fathom_created_at": call.created_at,
            "transcript_language": call.transcript_language or "en",
            "calendar_invitees_type": call.calendar_invitees_domains_type,
            "last_synced_at": self.clock(),
            "sync_status": "synced",
        }

        transcript_text = normalize_transcript(call.transcript)
        if transcript_text:
            fields["transcript_text"] = transcript_text
            fields["transcript_status"] = PROCESSING_COMPLETE
        summary = normalize_summary(call.default_summary) or normalize_summary(call.summary)
        if summary:
            fields["summary"] = summary
            fields["summary_status"] = PROCESSING_COMPLETE

        if analytics:
            if analytics.sentiment and analytics.sentiment.score is not None:
                fields["sentiment_score"] = analytics.sentiment.score
            talk_time = analytics.talk_time_analysis
            if talk_time and talk_time.rep_percentage is not None:
                fields["talk_time_rep_pct"] = talk_time.rep_percentage
                fields["talk_time_customer_pct"] = talk_time.customer_percentage
                fields["talk_time_judgement"] = judge_talk_time(talk_time.rep_percentage)

        if contacts:
            primary = contacts[0]
            fields["primary_contact_id"] = primary["contact_id"]
            fields["company_id"] = primary.get("company_id")
        return fields

    def _resolve_contacts(self, user_id: str, call: FathomCall) -> list[dict[str, Any]]:
        resolved: list[dict[str, Any]] = []
        seen_emails: set[str] = set()
        for participant in collect_participants(call):
            email = participant.get("email")
            if participant["is_host"] or not email or email in seen_emails:
                continue
            seen_emails.add(email)

            company_id = None
            domain = company_domain(email)
            if domain:
                company, _ = self.crm_store.get_or_create_company(
                    owner_id=user_id,
                    domain=domain,
                    fields={
                        "name": company_name_from_domain(domain),
                        "website": f"https://{domain}",
                        "source": CONTACT_SOURCE,
                    },
                )
                company_id = str(company["_id"])

            first_name, last_name = split_full_name(participant.get("name"), email)
            contact, created = self.crm_store.get_or_create_contact(
                owner_id=user_id,
                email=email,
                fields={
                    "first_name": first_name,
                    "last_name": last_name,
                    "full_name": participant.get("name"),
                    "company_id": company_id,
                    "source": CONTACT_SOURCE,
                },
            )
            if created:
                logger.info("Contact created user_id=%s contact_id=%s", user_id, contact["_id"])
            resolved.append(
                {
                    "email": email,
                    "contact_id": str(contact["_id"]),
                    "company_id": contact.get("company_id") or company_id,
                },
            )
        return resolved

    def _save_attendees(
        self,
        meeting_id: str,
        call: FathomCall,
        contacts: list[dict[str, Any]],
    ) -> None:
        contact_ids = {contact["email"]: contact["contact_id"] for contact in contacts}
        for participant in collect_participants(call):
            email = participant.get("email")
            name = participant.get("name")
            dedup_key = email or (f"name:{name.strip().lower()}" if name else None)
            if not dedup_key:
                continue
            self.meeting_store.add_attendee(
                meeting_id=meeting_id,
                dedup_key=dedup_key,
                attendee={
                    "name": name,
                    "email": email,
                    "is_external": not participant["is_host"],
                    "role": "host" if participant["is_host"] else "attendee",
                    "contact_id": contact_ids.get(email) if email else None,
                },
            )

    def _save_action_items(
        self,
        meeting_id: str,
        user_id: str,
        call: FathomCall,
        analytics: FathomAnalytics | None,
    ) -> None:
        items: list[dict[str, Any]] = []
        for moment in analytics.key_moments if analytics else []:
            if not moment.description or not moment.description.strip():
                continue
            items.append(
                {
                    "title": moment.description.strip(),
                    "timestamp_seconds": int(moment.timestamp) if moment.timestamp is not None else None,
                    "priority": "high" if moment.type == "objection" else "medium",
                    "category": moment.type or "key_moment",
                    "ai_generated": True,
                    "completed": False,
                    "source": "key_moment",
                },
            )
        for action_item in call.action_items:
            if not action_item.description or not action_item.description.strip():
                continue
            assignee = action_item.assignee
            items.append(
                {
                    "title": action_item.description.strip(),
                    "timestamp_seconds": parse_recording_timestamp(action_item.recording_timestamp),
                    "priority": "medium",
                    "category": "action_item",
                    "ai_generated": not action_item.user_generated,
                    "completed": action_item.completed,
                    "assignee_name": assignee.name if assignee else None,
                    "assignee_email": assignee.email if assignee else None,
                    "playback_url": action_item.recording_playback_url,
                    "source": "fathom_action_item",
                },
            )

        for item in items:
            timestamp = item["timestamp_seconds"]
            dedup_key = f"{item['title'].lower()}|{'' if timestamp is None else timestamp}"
            self.meeting_store.add_action_item(
                meeting_id=meeting_id,
                dedup_key=dedup_key,
                item={**item, "user_id": user_id},
            )

    def _create_fathom_client(self, integration: Mapping[str, Any]) -> FathomApiClient:
        return FathomApiClient(
            api_url=self.settings.fathom_api_url,
            access_token=str(integration.get("access_token") or ""),
            timeout_seconds=self.settings.fathom_api_timeout_seconds,
            user_agent=self.settings.fathom_api_user_agent,
            max_attempts=self.settings.http_max_attempts,
            initial_backoff_seconds=self.settings.http_initial_backoff_seconds,
        )


def transcript_fetch_cooldown_minutes(attempts: int) -> int:
    for min_attempts, minutes in TRANSCRIPT_FETCH_COOLDOWNS:
        if attempts >= min_attempts:
            return minutes
    return DEFAULT_TRANSCRIPT_FETCH_COOLDOWN_MINUTES


def judge_talk_time(rep_percentage: float | None) -> str | None:
    if rep_percentage is None:
        return None
    if rep_percentage > TALK_TIME_HIGH_THRESHOLD:
        return "high"
    if rep_percentage < TALK_TIME_LOW_THRESHOLD:
        return "low"
    return "good"


def build_embed_url(call: FathomCall) -> str | None:
    if call.recording_id:
        return FATHOM_RECORDING_URL.format(recording_id=call.recording_id)
    if not call.share_url:
        return None
    token = parse.urlparse(call.share_url).path.rstrip("/").rsplit("/", maxsplit=1)[-1]
    return FATHOM_EMBED_URL.format(token=token) if token else None


def collect_participants(call: FathomCall) -> list[dict[str, Any]]:
    """Participants of a call, preferring the explicit list over calendar invitees."""
    owner_email = (call.owner_email or "").strip().lower() or None
    participants: list[dict[str, Any]] = []
    if call.participants:
        for participant in call.participants:
            email = participant.email.strip().lower() if participant.email else None
            participants.append(
                {
                    "name": participant.name,
                    "email": email,
                    "is_host": participant.is_host or (email is not None and email == owner_email),
                },
            )
        return participants

    for invitee in call.calendar_invitees:
        email = invitee.email.strip().lower() if invitee.email else None
        if invitee.is_external is None:
            is_host = email is not None and email == owner_email
        else:
            is_host = not invitee.is_external
        participants.append({"name": invitee.name, "email": email, "is_host": is_host})
    return participants


def company_name_from_domain(domain: str) -> str:
    label = domain.split(".", maxsplit=1)[0]
    return label.replace("-", " ").replace("_", " ").title()
