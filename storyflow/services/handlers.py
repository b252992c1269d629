from __future__ import annotations

import logging
from typing import Any

import httpx

from storyflow.core.config import Settings
from storyflow.services.errors import RepositoryConflictError, RepositoryValidationError
from storyflow.services.events import (
    STORY_PUBLISHED,
    STORY_READY,
    TOPIC_ARTICLE_QUALIFIED,
    TOPIC_DEACTIVATED,
    DomainEvent,
    EventBus,
)

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10.0


class PipelineHandlers:
    """Default reactions to committed pipeline transitions."""

    def __init__(self, repository: Any, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings

    async def auto_enqueue(self, event: DomainEvent) -> None:
        topic = await self.repository.get_topic(event.payload["topic_id"])
        if not topic["auto_enqueue"]:
            return
        try:
            item = await self.repository.enqueue(
                event.entity_id,
                params=None,
                actor_type="system",
                actor_id="auto_enqueue",
            )
        except (RepositoryConflictError, RepositoryValidationError) as exc:
            logger.info("auto enqueue skipped topic_article_id=%s reason=%s", event.entity_id, exc)
            return
        logger.info("auto enqueued topic_article_id=%s queue_item_id=%s", event.entity_id, item["id"])

    async def notify_story_ready(self, event: DomainEvent) -> None:
        await self._post_webhook("notification", self.settings.notification_webhook_url, event)

    async def drip_feed_story_ready(self, event: DomainEvent) -> None:
        await self._post_webhook("drip_feed", self.settings.drip_feed_webhook_url, event)

    async def assign_slug(self, event: DomainEvent) -> None:
        story = await self.repository.assign_slug(event.entity_id)
        logger.info("story slug assigned story_id=%s slug=%s", story["id"], story["slug"])

    async def cancel_topic_queue(self, event: DomainEvent) -> None:
        cancelled = await self.repository.cancel(
            topic_id=event.entity_id,
            reason="topic deactivated",
            actor_type=event.actor_type,
            actor_id=event.actor_id,
        )
        logger.info("topic deactivated topic_id=%s cancelled=%s", event.entity_id, cancelled)

    async def _post_webhook(self, hook: str, url: str | None, event: DomainEvent) -> None:
        if not url:
            logger.info("%s hook not configured, skipping story_id=%s", hook, event.entity_id)
            return
        body = {
            "event_type": event.event_type,
            "story_id": event.entity_id,
            "payload": event.payload,
            "occurred_at": event.occurred_at.isoformat(),
        }
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json=body)
            response.raise_for_status()
        logger.info("%s hook delivered story_id=%s status=%s", hook, event.entity_id, response.status_code)


def register_default_handlers(bus: EventBus, repository: Any, settings: Settings) -> PipelineHandlers:
    handlers = PipelineHandlers(repository, settings)
    bus.subscribe(TOPIC_ARTICLE_QUALIFIED, handlers.auto_enqueue)
    bus.subscribe(STORY_READY, handlers.notify_story_ready)
    bus.subscribe(STORY_READY, handlers.drip_feed_story_ready)
    bus.subscribe(STORY_PUBLISHED, handlers.assign_slug)
    bus.subscribe(TOPIC_DEACTIVATED, handlers.cancel_topic_queue)
    return handlers
