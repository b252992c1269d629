from typing import Any

from fastapi import APIRouter, Depends, Query

from storyflow.api.errors import http_error_for
from storyflow.core.auth import Principal
from storyflow.core.security import get_human_principal, require_scopes_or_403, require_topic_manager_or_403
from storyflow.schemas.admin import (
    CancelOut,
    CancelRequest,
    CleanupOut,
    CleanupRequest,
    DuplicateCandidateOut,
    DuplicateStatus,
    EnqueueRequest,
    PipelineEventOut,
    RescanOut,
    RescanRequest,
    ResolveDuplicateOut,
    ResolveDuplicateRequest,
    SweepOut,
    SweepRequest,
    TopicOut,
)
from storyflow.schemas.queue import QueueItemOut, QueueStatus
from storyflow.services.errors import RepositoryError
from storyflow.services.pipeline import get_pipeline
from storyflow.services.repository import get_repository

router = APIRouter()


async def _authorize(principal: Principal, repository: Any, topic_id: str | None) -> None:
    """Topic-scoped calls are open to the topic's owner; everything else needs an admin."""
    if topic_id is None:
        require_scopes_or_403(principal, {"admin:write"})
        return

    require_scopes_or_403(principal, {"topics:manage"})
    try:
        topic = await repository.get_topic(topic_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc
    require_topic_manager_or_403(principal, topic["owner_id"])


@router.get("/queue", response_model=list[QueueItemOut])
async def list_queue_items(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    item_status: QueueStatus | None = Query(default=None, alias="status"),
    topic_id: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[QueueItemOut]:
    await _authorize(principal, repository, topic_id)

    try:
        rows = await repository.list_items(status=item_status, topic_id=topic_id, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return [QueueItemOut(**row) for row in rows]


@router.post("/queue", response_model=QueueItemOut)
async def enqueue_article(
    payload: EnqueueRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> QueueItemOut:
    try:
        article = await repository.get_topic_article(payload.topic_article_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc
    await _authorize(principal, repository, article["topic_id"])

    try:
        row = await repository.enqueue(
            payload.topic_article_id,
            params=payload.model_dump(exclude={"topic_article_id"}, exclude_none=True),
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return QueueItemOut(**row)


@router.post("/queue/cancel", response_model=CancelOut)
async def cancel_queue_items(
    payload: CancelRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> CancelOut:
    await _authorize(principal, repository, payload.topic_id)

    try:
        cancelled = await repository.cancel(
            topic_id=payload.topic_id,
            topic_article_ids=payload.topic_article_ids,
            include_processing=payload.include_processing,
            reason=payload.reason,
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return CancelOut(cancelled=cancelled)


@router.post("/queue/{item_id}/retry", response_model=QueueItemOut)
async def retry_queue_item(
    item_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> QueueItemOut:
    try:
        item = await repository.get_queue_item(item_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc
    await _authorize(principal, repository, item["topic_id"])

    try:
        row = await repository.retry(item_id, actor_type="human", actor_id=principal.actor_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return QueueItemOut(**row)


@router.get("/queue/{item_id}/events", response_model=list[PipelineEventOut])
async def list_queue_item_events(
    item_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[PipelineEventOut]:
    try:
        item = await repository.get_queue_item(item_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc
    await _authorize(principal, repository, item["topic_id"])

    try:
        rows = await repository.list_item_events(item_id, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return [PipelineEventOut(**row) for row in rows]


@router.get("/duplicates", response_model=list[DuplicateCandidateOut])
async def list_duplicates(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    candidate_status: DuplicateStatus | None = Query(default="pending", alias="status"),
    topic_id: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[DuplicateCandidateOut]:
    await _authorize(principal, repository, topic_id)

    try:
        rows = await repository.list_duplicate_candidates(
            status=candidate_status,
            topic_id=topic_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return [DuplicateCandidateOut(**row) for row in rows]


@router.post("/duplicates/rescan", response_model=RescanOut)
async def rescan_duplicates(
    payload: RescanRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> RescanOut:
    await _authorize(principal, repository, payload.topic_id)

    try:
        counts = await repository.rescan_duplicates(
            topic_id=payload.topic_id,
            limit=payload.limit,
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return RescanOut(**counts)


@router.post("/duplicates/{candidate_id}/resolve", response_model=ResolveDuplicateOut)
async def resolve_duplicate(
    candidate_id: str,
    payload: ResolveDuplicateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    pipeline=Depends(get_pipeline),
) -> ResolveDuplicateOut:
    try:
        candidate = await repository.get_duplicate_candidate(candidate_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc
    await _authorize(principal, repository, candidate["topic_id"])

    try:
        result = await pipeline.resolve_duplicate(
            candidate_id,
            resolution=payload.resolution,
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return ResolveDuplicateOut(
        candidate=DuplicateCandidateOut(**result["candidate"]),
        topic_article_id=result["topic_article"]["id"],
        topic_article_status=result["topic_article"]["status"],
    )


@router.post("/topics/{topic_id}/cleanup", response_model=CleanupOut)
async def cleanup_topic(
    topic_id: str,
    payload: CleanupRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> CleanupOut:
    await _authorize(principal, repository, topic_id)

    try:
        result = await repository.gate_cleanup(
            topic_id,
            dry_run=payload.dry_run,
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return CleanupOut(**result)


@router.post("/topics/{topic_id}/deactivate", response_model=TopicOut)
async def deactivate_topic(
    topic_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    pipeline=Depends(get_pipeline),
) -> TopicOut:
    await _authorize(principal, repository, topic_id)

    try:
        topic = await pipeline.deactivate_topic(topic_id, actor_type="human", actor_id=principal.actor_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return TopicOut(**topic)


@router.post("/stories/sweep", response_model=SweepOut)
async def sweep_stories(
    payload: SweepRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> SweepOut:
    await _authorize(principal, repository, payload.topic_id)

    try:
        counts = await repository.sweep_story_integrity(
            topic_id=payload.topic_id,
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return SweepOut(**counts)
