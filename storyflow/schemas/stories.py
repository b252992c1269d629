from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

StoryStatus = Literal["draft", "ready", "published", "archived"]
StoryFeature = Literal["parliamentary", "sentiment"]


class StoryOut(BaseModel):
    id: str
    topic_id: str
    article_id: str | None = None
    topic_article_id: str | None = None
    title: str | None = None
    slug: str | None = None
    status: StoryStatus
    is_published: bool
    published_at: datetime | None = None
    slides: list[dict[str, Any]] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    processing_stage: str | None = None
    simplified_at: datetime | None = None
    illustration_generated_at: datetime | None = None
    animation_generated_at: datetime | None = None
    is_auto_simplified: bool = False
    is_auto_illustrated: bool = False
    is_auto_animated: bool = False
    created_at: datetime
    updated_at: datetime


class PublishedStoryOut(BaseModel):
    id: str
    topic_id: str
    title: str | None = None
    slug: str | None = None
    published_at: datetime | None = None
    slides: list[dict[str, Any]] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)


class StageCompleteRequest(BaseModel):
    automated: bool = True
