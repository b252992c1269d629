from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

TOPIC_ARTICLE_QUALIFIED = "topic_article.qualified"
STORY_READY = "story.ready"
STORY_PUBLISHED = "story.published"
TOPIC_DEACTIVATED = "topic.deactivated"


@dataclass(slots=True)
class DomainEvent:
    event_type: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    actor_type: str = "system"
    actor_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """In-process publisher for events raised after a transition has committed.

    A failing handler is logged and skipped; the transition that raised the
    event stays committed and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        return list(self._handlers.get(event_type, []))

    async def publish(self, event: DomainEvent) -> int:
        failures = 0
        for handler in self.handlers_for(event.event_type):
            try:
                await handler(event)
            except Exception:
                failures += 1
                logger.exception(
                    "event handler failed event_type=%s entity_id=%s handler=%s",
                    event.event_type,
                    event.entity_id,
                    getattr(handler, "__qualname__", repr(handler)),
                )
        return failures
