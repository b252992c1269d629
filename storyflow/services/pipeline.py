from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import Depends
from opentelemetry import trace

from storyflow.core.config import Settings, get_settings
from storyflow.services.events import (
    STORY_PUBLISHED,
    STORY_READY,
    TOPIC_ARTICLE_QUALIFIED,
    TOPIC_DEACTIVATED,
    DomainEvent,
    EventBus,
)
from storyflow.services.handlers import register_default_handlers
from storyflow.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class PipelineService:
    """Runs repository transitions and announces them once they have committed."""

    def __init__(self, repository: Any, bus: EventBus) -> None:
        self.repository = repository
        self.bus = bus

    async def ingest(
        self,
        *,
        topic_id: str,
        url: str,
        title: str | None,
        body: str | None,
        author: str | None = None,
        published_at: datetime | None = None,
        import_metadata: dict[str, Any] | None = None,
        actor_type: str = "machine",
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        with tracer.start_as_current_span("pipeline.ingest") as span:
            span.set_attribute("storyflow.topic_id", topic_id)
            result = await self.repository.ingest_article(
                topic_id=topic_id,
                url=url,
                title=title,
                body=body,
                author=author,
                published_at=published_at,
                import_metadata=import_metadata,
                actor_type=actor_type,
                actor_id=actor_id,
            )
            span.set_attribute("storyflow.ingest.outcome", result["outcome"])

        logger.info(
            "ingested article topic_id=%s topic_article_id=%s outcome=%s status=%s reason=%s",
            topic_id,
            result["topic_article_id"],
            result["outcome"],
            result["status"],
            result["reason"],
        )
        if result.get("qualified"):
            await self.bus.publish(
                DomainEvent(
                    event_type=TOPIC_ARTICLE_QUALIFIED,
                    entity_id=result["topic_article_id"],
                    payload={"topic_id": topic_id},
                    actor_type=actor_type,
                    actor_id=actor_id,
                )
            )
        return result

    async def resolve_duplicate(
        self,
        candidate_id: str,
        *,
        resolution: str,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        result = await self.repository.resolve_duplicate(
            candidate_id,
            resolution=resolution,
            actor_type=actor_type,
            actor_id=actor_id,
        )
        article = result["topic_article"]
        if result.get("qualified"):
            await self.bus.publish(
                DomainEvent(
                    event_type=TOPIC_ARTICLE_QUALIFIED,
                    entity_id=article["id"],
                    payload={"topic_id": article["topic_id"]},
                    actor_type=actor_type,
                    actor_id=actor_id,
                )
            )
        return result

    async def claim(self, item_id: str, worker_id: str) -> dict[str, Any]:
        with tracer.start_as_current_span("queue.claim") as span:
            span.set_attribute("storyflow.queue_item_id", item_id)
            return await self.repository.claim(item_id, worker_id)

    async def claim_next(self, worker_id: str, limit: int) -> list[dict[str, Any]]:
        with tracer.start_as_current_span("queue.claim") as span:
            items = await self.repository.claim_next(worker_id, limit)
            span.set_attribute("storyflow.queue.claimed", len(items))
            return items

    async def mark_ready(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        story = await self.repository.mark_ready(story_id, actor_type=actor_type, actor_id=actor_id)
        await self.bus.publish(
            DomainEvent(
                event_type=STORY_READY,
                entity_id=story["id"],
                payload={"topic_id": story["topic_id"], "title": story["title"]},
                actor_type=actor_type,
                actor_id=actor_id,
            )
        )
        return story

    async def publish_story(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        story = await self.repository.publish_story(story_id, actor_type=actor_type, actor_id=actor_id)
        failures = await self.bus.publish(
            DomainEvent(
                event_type=STORY_PUBLISHED,
                entity_id=story["id"],
                payload={"topic_id": story["topic_id"]},
                actor_type=actor_type,
                actor_id=actor_id,
            )
        )
        if failures:
            return story
        return await self.repository.get_story(story_id)

    async def archive_story(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        return await self.repository.archive_story(story_id, actor_type=actor_type, actor_id=actor_id)

    async def deactivate_topic(self, topic_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        topic = await self.repository.deactivate_topic(topic_id, actor_type=actor_type, actor_id=actor_id)
        await self.bus.publish(
            DomainEvent(
                event_type=TOPIC_DEACTIVATED,
                entity_id=topic["id"],
                actor_type=actor_type,
                actor_id=actor_id,
            )
        )
        return topic


def build_pipeline(repository: Any, settings: Settings) -> PipelineService:
    bus = EventBus()
    register_default_handlers(bus, repository, settings)
    return PipelineService(repository, bus)


def get_pipeline(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> PipelineService:
    return build_pipeline(repository, settings)
