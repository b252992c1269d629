from __future__ import annotations

from storyflow.services.errors import RepositoryConflictError

ARTICLE_STATUSES = ("new", "processing", "processed", "discarded", "duplicate_pending", "archived")
QUEUE_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
ACTIVE_QUEUE_STATUSES = frozenset({"pending", "processing"})
TERMINAL_QUEUE_STATUSES = frozenset({"completed", "failed", "cancelled"})
# Articles in these states may never be queued for generation.
UNQUEUEABLE_ARTICLE_STATUSES = frozenset({"discarded", "duplicate_pending", "archived"})

_ARTICLE_TRANSITIONS: dict[str, set[str]] = {
    "new": {"processed", "discarded", "duplicate_pending", "archived"},
    "duplicate_pending": {"new", "discarded", "archived"},
    "processed": {"processing", "discarded", "archived"},
    "processing": {"processed", "discarded", "archived"},
    "discarded": {"new", "archived"},
    "archived": set(),
}

_QUEUE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "cancelled"},
    "processing": {"completed", "failed", "pending", "cancelled"},
    "failed": {"pending"},
    "completed": set(),
    "cancelled": set(),
}


def validate_article_transition(*, from_status: str, to_status: str) -> None:
    if to_status == from_status:
        return
    allowed = _ARTICLE_TRANSITIONS.get(from_status)
    if allowed is None or to_status not in allowed:
        raise RepositoryConflictError(f"invalid article status transition: {from_status} -> {to_status}")


def validate_queue_transition(*, from_status: str, to_status: str) -> None:
    allowed = _QUEUE_TRANSITIONS.get(from_status)
    if allowed is None or to_status not in allowed:
        raise RepositoryConflictError(f"invalid queue status transition: {from_status} -> {to_status}")


def compute_retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    return min(base_seconds * (2**multiplier), max_seconds)
