from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

DuplicateStatus = Literal["pending", "confirmed", "dismissed"]
DuplicateResolution = Literal["confirm", "dismiss"]


class EnqueueRequest(BaseModel):
    topic_article_id: str
    slide_type: str | None = None
    tone: str | None = None
    writing_style: str | None = None
    ai_provider: str | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=20)


class CancelRequest(BaseModel):
    topic_id: str | None = None
    topic_article_ids: list[str] | None = None
    include_processing: bool = False
    reason: str = Field(default="cancelled by operator", min_length=1)

    @model_validator(mode="after")
    def _require_target(self) -> "CancelRequest":
        if self.topic_id is None and not self.topic_article_ids:
            raise ValueError("topic_id or topic_article_ids is required")
        return self


class CancelOut(BaseModel):
    cancelled: int


class PipelineEventOut(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    event_type: str
    actor_type: str
    actor_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class DuplicateCandidateOut(BaseModel):
    id: str
    topic_id: str
    topic_article_id: str
    original_topic_article_id: str
    similarity_score: float
    detection_method: str
    status: DuplicateStatus
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime


class RescanRequest(BaseModel):
    topic_id: str | None = None
    limit: int = Field(default=200, ge=1, le=1000)


class RescanOut(BaseModel):
    scanned: int
    candidates_created: int
    flagged: int


class ResolveDuplicateRequest(BaseModel):
    resolution: DuplicateResolution


class ResolveDuplicateOut(BaseModel):
    candidate: DuplicateCandidateOut
    topic_article_id: str
    topic_article_status: str


class CleanupRequest(BaseModel):
    dry_run: bool = True


class CleanupDiscardOut(BaseModel):
    topic_article_id: str
    rejection_reason: str | None = None
    matched_term: str | None = None


class CleanupOut(BaseModel):
    dry_run: bool
    scanned: int
    discarded: list[CleanupDiscardOut] = Field(default_factory=list)


class TopicOut(BaseModel):
    id: str
    name: str
    owner_id: str | None = None
    is_active: bool
    is_public: bool
    auto_enqueue: bool
    enabled_features: list[str] = Field(default_factory=list)


class SweepRequest(BaseModel):
    topic_id: str | None = None


class SweepOut(BaseModel):
    deleted_empty: int
    archived_duplicates: int
