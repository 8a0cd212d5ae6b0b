from fastapi import APIRouter, Response, status

from meeting_pipeline.core.config import get_settings
from meeting_pipeline.schemas.indexing import (
    DeadLetterItem,
    DeadLettersResponse,
    IndexEnqueueRequest,
    IndexEnqueueResponse,
    IndexProcessRequest,
    IndexProcessResponse,
)
from meeting_pipeline.services.index_queue_worker import IndexQueueWorker

router = APIRouter(prefix="/indexing", tags=["indexing"])


@router.post("/process", response_model=IndexProcessResponse)
def process_index_queue(payload: IndexProcessRequest | None = None) -> IndexProcessResponse:
    request = payload or IndexProcessRequest()
    settings = get_settings()
    worker = IndexQueueWorker(settings)
    return worker.process_queue(user_id=request.user_id, limit=request.limit)


@router.post("/enqueue", response_model=IndexEnqueueResponse)
def enqueue_meeting(payload: IndexEnqueueRequest, response: Response) -> IndexEnqueueResponse:
    settings = get_settings()
    worker = IndexQueueWorker(settings)
    result = worker.enqueue_meeting(
        meeting_id=payload.meeting_id,
        user_id=payload.user_id,
        priority=payload.priority,
    )
    if not result.queued:
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.get("/dead-letters", response_model=DeadLettersResponse)
def list_dead_letters(limit: int = 50, user_id: str | None = None) -> DeadLettersResponse:
    settings = get_settings()
    worker = IndexQueueWorker(settings)
    items = worker.list_dead_letters(user_id=user_id, limit=max(1, min(limit, 200)))
    return DeadLettersResponse(
        items=[
            DeadLetterItem(
                id=str(item["_id"]),
                meeting_id=str(item["meeting_id"]),
                user_id=str(item["user_id"]),
                attempts=int(item.get("attempts") or 0),
                max_attempts=int(item.get("max_attempts") or 0),
                priority=int(item.get("priority") or 0),
                error_message=item.get("error_message"),
                last_attempt_at=item.get("last_attempt_at"),
                created_at=item["created_at"],
            )
            for item in items
        ],
    )
