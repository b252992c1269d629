from fastapi import APIRouter, Depends, Query

from storyflow.api.errors import http_error_for
from storyflow.core.security import get_machine_principal, require_scopes_or_403
from storyflow.schemas.queue import (
    ClaimedItemOut,
    ClaimNextRequest,
    ClaimRequest,
    QueueItemOut,
    ResetStalledOut,
    ResultOut,
    ResultRequest,
)
from storyflow.services.errors import RepositoryError
from storyflow.services.pipeline import get_pipeline
from storyflow.services.repository import get_repository

router = APIRouter()


@router.get("", response_model=list[QueueItemOut])
async def list_pending_items(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=200),
) -> list[QueueItemOut]:
    require_scopes_or_403(principal, {"queue:read"})

    try:
        rows = await repository.list_pending(limit)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return [QueueItemOut(**row) for row in rows]


@router.post("/claim-next", response_model=list[ClaimedItemOut])
async def claim_next_items(
    payload: ClaimNextRequest,
    principal=Depends(get_machine_principal),
    pipeline=Depends(get_pipeline),
) -> list[ClaimedItemOut]:
    require_scopes_or_403(principal, {"queue:write"})

    try:
        rows = await pipeline.claim_next(payload.worker_id or principal.subject, payload.limit)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return [ClaimedItemOut(**row) for row in rows]


@router.post("/reset-stalled", response_model=ResetStalledOut)
async def reset_stalled_items(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ResetStalledOut:
    require_scopes_or_403(principal, {"queue:write"})

    try:
        counts = await repository.reset_stalled(limit=limit, actor_type="machine", actor_id=principal.subject)
        await repository.reset_stalled_stories()
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return ResetStalledOut(**counts)


@router.post("/{item_id}/claim", response_model=ClaimedItemOut)
async def claim_item(
    item_id: str,
    payload: ClaimRequest,
    principal=Depends(get_machine_principal),
    pipeline=Depends(get_pipeline),
) -> ClaimedItemOut:
    require_scopes_or_403(principal, {"queue:write"})

    try:
        row = await pipeline.claim(item_id, payload.worker_id or principal.subject)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return ClaimedItemOut(**row)


@router.post("/{item_id}/result", response_model=ResultOut)
async def submit_item_result(
    item_id: str,
    payload: ResultRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> ResultOut:
    require_scopes_or_403(principal, {"queue:write"})

    try:
        result = await repository.submit_result(
            item_id,
            worker_id=payload.worker_id or principal.subject,
            outcome=payload.model_dump(exclude={"worker_id"}),
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    story = result["story"]
    return ResultOut(
        outcome=result["outcome"],
        item=QueueItemOut(**result["item"]),
        story_id=story["id"] if story else None,
    )
