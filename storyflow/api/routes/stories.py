from fastapi import APIRouter, Depends

from storyflow.api.errors import http_error_for
from storyflow.core.security import (
    get_human_principal,
    get_machine_principal,
    require_scopes_or_403,
    require_topic_manager_or_403,
)
from storyflow.schemas.stories import StageCompleteRequest, StoryOut
from storyflow.services.errors import RepositoryError
from storyflow.services.pipeline import PipelineService, get_pipeline
from storyflow.services.repository import get_repository

router = APIRouter()


async def _authorize_story(principal, pipeline: PipelineService, story_id: str) -> None:
    require_scopes_or_403(principal, {"topics:manage"})
    try:
        story = await pipeline.repository.get_story(story_id)
        topic = await pipeline.repository.get_topic(story["topic_id"])
    except RepositoryError as exc:
        raise http_error_for(exc) from exc
    require_topic_manager_or_403(principal, topic["owner_id"])


@router.post("/{story_id}/ready", response_model=StoryOut)
async def mark_story_ready(
    story_id: str,
    principal=Depends(get_human_principal),
    pipeline=Depends(get_pipeline),
) -> StoryOut:
    await _authorize_story(principal, pipeline, story_id)

    try:
        story = await pipeline.mark_ready(story_id, actor_type="human", actor_id=principal.actor_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return StoryOut(**story)


@router.post("/{story_id}/publish", response_model=StoryOut)
async def publish_story(
    story_id: str,
    principal=Depends(get_human_principal),
    pipeline=Depends(get_pipeline),
) -> StoryOut:
    await _authorize_story(principal, pipeline, story_id)

    try:
        story = await pipeline.publish_story(story_id, actor_type="human", actor_id=principal.actor_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return StoryOut(**story)


@router.post("/{story_id}/archive", response_model=StoryOut)
async def archive_story(
    story_id: str,
    principal=Depends(get_human_principal),
    pipeline=Depends(get_pipeline),
) -> StoryOut:
    await _authorize_story(principal, pipeline, story_id)

    try:
        story = await pipeline.archive_story(story_id, actor_type="human", actor_id=principal.actor_id)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return StoryOut(**story)


@router.post("/{story_id}/stages/{stage}/begin", response_model=StoryOut)
async def begin_story_stage(
    story_id: str,
    stage: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> StoryOut:
    require_scopes_or_403(principal, {"queue:write"})

    try:
        story = await repository.begin_stage(story_id, stage)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return StoryOut(**story)


@router.post("/{story_id}/stages/{stage}/complete", response_model=StoryOut)
async def complete_story_stage(
    story_id: str,
    stage: str,
    payload: StageCompleteRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> StoryOut:
    require_scopes_or_403(principal, {"queue:write"})

    try:
        story = await repository.complete_stage(story_id, stage, automated=payload.automated)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return StoryOut(**story)
