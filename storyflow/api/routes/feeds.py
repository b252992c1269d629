from fastapi import APIRouter, Depends, Query

from storyflow.api.errors import http_error_for
from storyflow.schemas.stories import PublishedStoryOut, StoryFeature
from storyflow.services.errors import RepositoryError
from storyflow.services.repository import get_repository

router = APIRouter()


@router.get("/{topic_id}/stories", response_model=list[PublishedStoryOut])
async def list_topic_stories(
    topic_id: str,
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[PublishedStoryOut]:
    try:
        rows = await repository.list_published_stories(topic_id, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return [PublishedStoryOut(**row) for row in rows]


@router.get("/{topic_id}/features/{feature}", response_model=list[PublishedStoryOut])
async def list_feature_stories(
    topic_id: str,
    feature: StoryFeature,
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[PublishedStoryOut]:
    try:
        rows = await repository.list_feature_stories(topic_id, feature, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return [PublishedStoryOut(**row) for row in rows]
