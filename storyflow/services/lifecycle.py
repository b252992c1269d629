from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timedelta
from typing import Any

from storyflow.services.errors import RepositoryConflictError, RepositoryValidationError

STORY_STATUSES = ("draft", "ready", "published", "archived")
CONSUMER_VISIBLE_STATUSES = frozenset({"published"})
STORY_FEATURES = frozenset({"parliamentary", "sentiment"})

_STORY_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"ready", "archived"},
    "ready": {"published", "archived"},
    "published": {"archived"},
    "archived": set(),
}
# ready -> draft exists only for the stalled-stage reset.
_SYSTEM_STORY_TRANSITIONS: dict[str, set[str]] = {
    "ready": {"draft"},
}

# stage -> (completion timestamp column, automation flag column)
STAGE_COLUMNS: dict[str, tuple[str, str]] = {
    "simplify": ("simplified_at", "is_auto_simplified"),
    "illustrate": ("illustration_generated_at", "is_auto_illustrated"),
    "animate": ("animation_generated_at", "is_auto_animated"),
}

_WHITESPACE_RE = re.compile(r"\s+")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")
SLUG_MAX_LENGTH = 80


def validate_story_transition(*, from_status: str, to_status: str, system: bool = False) -> None:
    allowed = set(_STORY_TRANSITIONS.get(from_status, set()))
    if system:
        allowed |= _SYSTEM_STORY_TRANSITIONS.get(from_status, set())
    if to_status not in allowed:
        raise RepositoryConflictError(f"invalid story status transition: {from_status} -> {to_status}")


def validate_story_reference(*, article_id: str | None, topic_article_id: str | None) -> None:
    if bool(article_id) == bool(topic_article_id):
        raise RepositoryValidationError("story must reference exactly one of article_id or topic_article_id")


def validate_ready(*, title: str | None, slide_count: int) -> None:
    if not (title or "").strip():
        raise RepositoryValidationError("story title is required before it can be marked ready")
    if slide_count < 1:
        raise RepositoryValidationError("story needs at least one slide before it can be marked ready")


def validate_stage(stage: str) -> tuple[str, str]:
    columns = STAGE_COLUMNS.get(stage)
    if columns is None:
        raise RepositoryValidationError(f"unknown story stage: {stage!r}")
    return columns


def validate_feature(feature: str) -> None:
    if feature not in STORY_FEATURES:
        raise RepositoryValidationError(f"unknown story feature: {feature!r}")


def normalize_title(title: str | None) -> str:
    return _WHITESPACE_RE.sub(" ", (title or "").casefold()).strip()


def slugify(title: str | None, *, suffix: str | None = None) -> str:
    folded = unicodedata.normalize("NFKD", title or "").encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_STRIP_RE.sub("-", folded.lower()).strip("-")[:SLUG_MAX_LENGTH].rstrip("-")
    if not slug:
        slug = "story"
    if suffix:
        slug = f"{slug}-{suffix}"
    return slug


def stage_is_stalled(story: dict[str, Any], *, timeout_seconds: int, now: datetime) -> bool:
    if not story.get("processing_stage"):
        return False
    started_at = story.get("stage_started_at")
    if started_at is None:
        return True
    return started_at <= now - timedelta(seconds=timeout_seconds)


def duplicate_published_titles(stories: list[dict[str, Any]]) -> list[str]:
    """Ids of published stories that repeat an older published title in the same topic.

    The earliest created story per (topic, normalized title) is kept; ties
    on ``created_at`` fall back to the id.
    """
    groups: dict[tuple[str, str], list[dict[str, Any]]] = {}
    for story in stories:
        if story.get("status") != "published" or not story.get("is_published"):
            continue
        key = normalize_title(story.get("title"))
        if not key:
            continue
        groups.setdefault((str(story.get("topic_id")), key), []).append(story)

    losers: list[str] = []
    for members in groups.values():
        if len(members) < 2:
            continue
        members.sort(key=_age_key)
        losers.extend(str(member["id"]) for member in members[1:])
    return losers


def _age_key(story: dict[str, Any]) -> tuple[Any, str]:
    return (story.get("created_at"), str(story.get("id")))
