from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

QueueStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
ResultOutcome = Literal["completed", "retry_scheduled", "failed", "discarded_cancelled"]


class QueueItemOut(BaseModel):
    id: str
    topic_article_id: str
    topic_id: str
    status: QueueStatus
    attempts: int
    max_attempts: int
    slide_type: str
    tone: str | None = None
    writing_style: str | None = None
    ai_provider: str
    created_at: datetime
    updated_at: datetime
    next_run_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    result_data: dict[str, Any] | None = None
    claimed_by: str | None = None


class ClaimInputs(BaseModel):
    title: str | None = None
    body: str | None = None
    url: str
    author: str | None = None
    published_at: str | None = None


class ClaimedItemOut(QueueItemOut):
    inputs: ClaimInputs


class ClaimRequest(BaseModel):
    worker_id: str | None = Field(default=None, min_length=1)


class ClaimNextRequest(ClaimRequest):
    limit: int = Field(default=5, ge=1, le=100)


class GeneratedStory(BaseModel):
    title: str | None = None
    slides: list[dict[str, Any]] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class GenerationError(BaseModel):
    code: str
    message: str | None = None
    transient: bool = True


class ResultRequest(BaseModel):
    status: Literal["completed", "failed"]
    story: GeneratedStory | None = None
    error: GenerationError | None = None
    worker_id: str | None = Field(default=None, min_length=1)


class ResultOut(BaseModel):
    outcome: ResultOutcome
    item: QueueItemOut
    story_id: str | None = None


class ResetStalledOut(BaseModel):
    reset: int
    failed: int
