import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.schemas.indexing import (
    IndexEnqueueResponse,
    IndexItemResult,
    IndexItemStatus,
    IndexProcessResponse,
)
from meeting_pipeline.services.crm_store import CrmStore, create_crm_store
from meeting_pipeline.services.errors import PipelineError, UpstreamError
from meeting_pipeline.services.file_search_index_store import (
    FileSearchIndexStore,
    create_file_search_index_store,
)
from meeting_pipeline.services.file_search_store_registry import (
    FileSearchStoreRegistry,
    create_file_search_store_registry,
)
from meeting_pipeline.services.gemini_file_search_client import GeminiFileSearchClient
from meeting_pipeline.services.index_queue_store import IndexQueueStore, create_index_queue_store
from meeting_pipeline.services.meeting_document import build_meeting_document
from meeting_pipeline.services.meeting_store import MeetingStore, create_meeting_store
from meeting_pipeline.services.request_throttle import RequestThrottle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _ItemOutcome:
    status: IndexItemStatus
    file_name: str | None = None
    reason: str | None = None


class IndexQueueWorker:
    """Drains the meeting index queue into each user's file search store."""

    def __init__(
        self,
        settings: Settings,
        *,
        queue_store: IndexQueueStore | None = None,
        index_store: FileSearchIndexStore | None = None,
        store_registry: FileSearchStoreRegistry | None = None,
        meeting_store: MeetingStore | None = None,
        crm_store: CrmStore | None = None,
        file_search_client: GeminiFileSearchClient | None = None,
        throttle: RequestThrottle | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.queue_store = queue_store or create_index_queue_store(settings)
        self.index_store = index_store or create_file_search_index_store(settings)
        self.store_registry = store_registry or create_file_search_store_registry(settings)
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.crm_store = crm_store or create_crm_store(settings)
        self._file_search_client = file_search_client
        self.throttle = throttle or RequestThrottle(settings.index_requests_per_second)
        self.clock = clock or (lambda: datetime.now(UTC))

    def process_queue(self, *, user_id: str | None = None, limit: int | None = None) -> IndexProcessResponse:
        batch_limit = min(
            limit or self.settings.index_queue_default_limit,
            self.settings.index_queue_max_limit,
        )
        eligible = self.queue_store.list_candidates(
            user_id=user_id,
            limit=batch_limit,
            now=self.clock(),
            backoff_base_seconds=self.settings.index_queue_backoff_base_seconds,
        )
        logger.info(
            "Index queue drain started user_id=%s eligible=%s concurrency=%s",
            user_id,
            len(eligible),
            self.settings.index_queue_concurrency,
        )

        if self.settings.index_queue_concurrency > 1 and len(eligible) > 1:
            with ThreadPoolExecutor(max_workers=self.settings.index_queue_concurrency) as executor:
                results = list(executor.map(self.process_item, eligible))
        else:
            results = [self.process_item(item) for item in eligible]

        response = IndexProcessResponse(
            processed=len(results),
            indexed=_count(results, IndexItemStatus.indexed),
            unchanged=_count(results, IndexItemStatus.unchanged),
            removed=_count(results, IndexItemStatus.removed),
            failed=_count(results, IndexItemStatus.failed) + _count(results, IndexItemStatus.dead_lettered),
            results=results,
        )
        logger.info(
            "Index queue drain completed processed=%s indexed=%s unchanged=%s removed=%s failed=%s",
            response.processed,
            response.indexed,
            response.unchanged,
            response.removed,
            response.failed,
        )
        return response

    def process_item(self, item: Mapping[str, Any]) -> IndexItemResult:
        item_id = str(item["_id"])
        meeting_id = str(item["meeting_id"])
        user_id = str(item["user_id"])
        self.throttle.acquire()

        attempted = self.queue_store.record_attempt(item_id, self.clock()) or dict(item)
        attempts = int(attempted.get("attempts") or 0)
        max_attempts = int(attempted.get("max_attempts") or 0)
        try:
            outcome = self._index_meeting(item_id, meeting_id, user_id)
        except Exception as exc:
            error_message = str(exc) or exc.__class__.__name__
            self.index_store.mark_failed(meeting_id=meeting_id, user_id=user_id, error_message=error_message)
            self.queue_store.record_error(item_id, error_message)
            dead_lettered = attempts >= max_attempts
            if isinstance(exc, PipelineError):
                logger.warning(
                    "Index attempt failed queue_item_id=%s meeting_id=%s attempts=%s/%s dead_lettered=%s error=%s",
                    item_id,
                    meeting_id,
                    attempts,
                    max_attempts,
                    dead_lettered,
                    error_message,
                )
            else:
                logger.exception(
                    "Index attempt crashed queue_item_id=%s meeting_id=%s attempts=%s/%s",
                    item_id,
                    meeting_id,
                    attempts,
                    max_attempts,
                )
            return IndexItemResult(
                queue_item_id=item_id,
                meeting_id=meeting_id,
                user_id=user_id,
                status=IndexItemStatus.dead_lettered if dead_lettered else IndexItemStatus.failed,
                attempts=attempts,
                error=error_message,
            )

        logger.info(
            "Index item done queue_item_id=%s meeting_id=%s status=%s reason=%s",
            item_id,
            meeting_id,
            outcome.status.value,
            outcome.reason,
        )
        return IndexItemResult(
            queue_item_id=item_id,
            meeting_id=meeting_id,
            user_id=user_id,
            status=outcome.status,
            attempts=attempts,
            file_name=outcome.file_name,
            error=outcome.reason if outcome.status == IndexItemStatus.removed else None,
        )

    def enqueue_meeting(self, *, meeting_id: str, user_id: str, priority: int = 0) -> IndexEnqueueResponse:
        meeting = self.meeting_store.get_meeting(meeting_id)
        if not meeting or not meeting.get("transcript_text"):
            return IndexEnqueueResponse(queued=False, reason="Transcript not available yet.")
        item, created = self.queue_store.enqueue(
            meeting_id=meeting_id,
            user_id=user_id,
            priority=priority,
            max_attempts=self.settings.index_queue_max_attempts,
        )
        return IndexEnqueueResponse(
            queued=True,
            queue_item_id=str(item["_id"]),
            already_queued=not created,
        )

    def list_dead_letters(self, *, user_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        return self.queue_store.list_dead_letters(user_id=user_id, limit=limit)

    def _index_meeting(self, item_id: str, meeting_id: str, user_id: str) -> _ItemOutcome:
        meeting = self.meeting_store.get_meeting(meeting_id)
        if not meeting:
            self.queue_store.delete(item_id)
            return _ItemOutcome(status=IndexItemStatus.removed, reason="meeting no longer exists")

        transcript = str(meeting.get("transcript_text") or "").strip()
        if len(transcript) < self.settings.index_min_transcript_chars:
            self.queue_store.delete(item_id)
            return _ItemOutcome(
                status=IndexItemStatus.removed,
                reason=f"transcript shorter than {self.settings.index_min_transcript_chars} characters",
            )

        store_name = self._get_or_create_store(user_id)
        company_id = meeting.get("company_id")
        contact_id = meeting.get("primary_contact_id")
        document = build_meeting_document(
            meeting,
            attendees=self.meeting_store.list_attendees(meeting_id),
            action_items=self.meeting_store.list_action_items(meeting_id),
            company=self.crm_store.get_company(str(company_id)) if company_id else None,
            contact=self.crm_store.get_contact(str(contact_id)) if contact_id else None,
        )

        existing = self.index_store.get_record(meeting_id=meeting_id, user_id=user_id)
        if existing and existing.get("content_hash") == document.content_hash:
            self.queue_store.delete(item_id)
            return _ItemOutcome(status=IndexItemStatus.unchanged, reason="content hash unchanged")

        self.index_store.mark_indexing(meeting_id=meeting_id, user_id=user_id, store_name=store_name)
        upload = self._get_file_search_client().upload_document(
            store_name=store_name,
            display_name=document.display_name,
            content=document.render_markdown().encode("utf-8"),
            custom_metadata=document.custom_metadata,
        )
        file_name = upload.get("name")
        self.index_store.mark_indexed(
            meeting_id=meeting_id,
            user_id=user_id,
            store_name=store_name,
            file_name=file_name,
            content_hash=document.content_hash,
        )
        self.store_registry.update_file_count(user_id, self.index_store.count_indexed(user_id))
        self.queue_store.delete(item_id)

        previous_file_name = existing.get("file_name") if existing else None
        if previous_file_name and previous_file_name != file_name:
            self._delete_previous_document(meeting_id, previous_file_name)
        return _ItemOutcome(status=IndexItemStatus.indexed, file_name=file_name)

    def _delete_previous_document(self, meeting_id: str, document_name: str) -> None:
        # The new version is already indexed, so a failed cleanup only leaves a stale copy.
        try:
            self._get_file_search_client().delete_document(document_name)
        except UpstreamError as exc:
            logger.warning(
                "Stale document cleanup failed meeting_id=%s document_name=%s error=%s",
                meeting_id,
                document_name,
                exc,
            )
            return
        logger.info("Stale document deleted meeting_id=%s document_name=%s", meeting_id, document_name)

    def _get_or_create_store(self, user_id: str) -> str:
        existing = self.store_registry.get_store(user_id)
        if existing:
            return str(existing["store_name"])

        display_name = f"meetings-{user_id}"
        created = self._get_file_search_client().create_store(display_name)
        saved = self.store_registry.save_store(
            user_id=user_id,
            store_name=str(created["name"]),
            display_name=display_name,
        )
        logger.info("File search store created user_id=%s store_name=%s", user_id, saved["store_name"])
        return str(saved["store_name"])

    def _get_file_search_client(self) -> GeminiFileSearchClient:
        if self._file_search_client is None:
            if not self.settings.gemini_api_key:
                raise PipelineError("GEMINI_API_KEY is not configured.")
            self._file_search_client = GeminiFileSearchClient(
                api_key=self.settings.gemini_api_key,
                timeout_seconds=self.settings.gemini_api_timeout_seconds,
                api_base_url=self.settings.gemini_api_base_url,
                upload_base_url=self.settings.gemini_upload_base_url,
                max_attempts=self.settings.http_max_attempts,
                initial_backoff_seconds=self.settings.http_initial_backoff_seconds,
            )
        return self._file_search_client


def _count(results: list[IndexItemResult], status: IndexItemStatus) -> int:
    return sum(1 for result in results if result.status == status)
