from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

IngestOutcome = Literal["accepted", "duplicate", "discarded"]


class IngestRequest(BaseModel):
    topic_id: str
    url: str = Field(min_length=1)
    title: str | None = None
    body: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    import_metadata: dict[str, Any] = Field(default_factory=dict)


class IngestResult(BaseModel):
    outcome: IngestOutcome
    topic_article_id: str
    topic_id: str
    shared_content_id: str
    status: str
    reason: str | None = None
    detection_method: str | None = None
