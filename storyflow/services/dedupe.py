from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

_TOKEN_RE = re.compile(r"\w+")
_STOP_WORDS = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "by",
    "for",
    "from",
    "has",
    "in",
    "is",
    "it",
    "of",
    "on",
    "or",
    "the",
    "to",
    "was",
    "with",
}
SHINGLE_SIZE = 3

DedupeOutcome = Literal["none", "needs_review", "auto_discard"]
DetectionMethod = Literal["exact_url", "content_checksum", "title_similarity", "content_similarity"]

# Terminal ledger states never take part in comparisons.
EXCLUDED_STATUSES = frozenset({"discarded", "archived"})


@dataclass(slots=True)
class DedupeSnapshot:
    article_id: str
    normalized_url: str | None
    content_checksum: str | None
    title: str | None
    body: str | None
    status: str = "new"


@dataclass(slots=True)
class DedupeMatch:
    original_id: str
    similarity_score: float
    detection_method: DetectionMethod


@dataclass(slots=True)
class DedupePolicy:
    review_threshold: float = 0.75
    auto_discard_checksum: bool = True
    max_matches: int = 5


@dataclass(slots=True)
class DedupeDecision:
    outcome: DedupeOutcome
    matches: list[DedupeMatch] = field(default_factory=list)

    @property
    def methods(self) -> list[str]:
        seen: list[str] = []
        for match in self.matches:
            if match.detection_method not in seen:
                seen.append(match.detection_method)
        return seen

    def metadata(self, checked_at: str) -> dict[str, Any]:
        return {
            "duplicates_found": len(self.matches),
            "checked_at": checked_at,
            "methods": self.methods,
            "outcome": self.outcome,
        }


def evaluate_duplicates(
    *,
    incoming: DedupeSnapshot,
    recent: list[DedupeSnapshot],
    policy: DedupePolicy | None = None,
) -> DedupeDecision:
    policy = policy or DedupePolicy()
    matches: list[DedupeMatch] = []
    for existing in recent:
        if existing.article_id == incoming.article_id or existing.status in EXCLUDED_STATUSES:
            continue
        match = score_pair(incoming=incoming, existing=existing)
        if match is not None and match.similarity_score >= policy.review_threshold:
            matches.append(match)

    if not matches:
        return DedupeDecision(outcome="none")

    ranked = sorted(matches, key=lambda row: (-row.similarity_score, _method_rank(row.detection_method), row.original_id))
    ranked = ranked[: max(1, policy.max_matches)]

    if policy.auto_discard_checksum and any(row.detection_method == "content_checksum" for row in ranked):
        return DedupeDecision(outcome="auto_discard", matches=ranked)
    return DedupeDecision(outcome="needs_review", matches=ranked)


def score_pair(*, incoming: DedupeSnapshot, existing: DedupeSnapshot) -> DedupeMatch | None:
    """Best single signal between two snapshots, exact signals first."""
    if _equals(incoming.normalized_url, existing.normalized_url):
        return DedupeMatch(existing.article_id, 1.0, "exact_url")
    # Articles with no extracted text all share one checksum.
    if _has_text(incoming) and _equals(incoming.content_checksum, existing.content_checksum):
        return DedupeMatch(existing.article_id, 1.0, "content_checksum")

    title_similarity = _jaccard(_tokenize(incoming.title), _tokenize(existing.title))
    content_similarity = _jaccard(_shingles(incoming.body), _shingles(existing.body))
    if title_similarity <= 0.0 and content_similarity <= 0.0:
        return None
    if content_similarity > title_similarity:
        return DedupeMatch(existing.article_id, round(content_similarity, 4), "content_similarity")
    return DedupeMatch(existing.article_id, round(title_similarity, 4), "title_similarity")


def _method_rank(method: str) -> int:
    order = ("exact_url", "content_checksum", "content_similarity", "title_similarity")
    return order.index(method) if method in order else len(order)


def _equals(left: str | None, right: str | None) -> bool:
    return bool(left and right and left == right)


def _has_text(snapshot: DedupeSnapshot) -> bool:
    return any(part and part.strip() for part in (snapshot.title, snapshot.body))


def _jaccard(left: set[Any], right: set[Any]) -> float:
    if not left or not right:
        return 0.0
    union = len(left | right)
    if union <= 0:
        return 0.0
    return len(left & right) / union


def _tokenize(value: str | None) -> set[str]:
    if not value:
        return set()
    tokens = _TOKEN_RE.findall(value.casefold())
    return {token for token in tokens if token and token not in _STOP_WORDS}


def _shingles(value: str | None) -> set[tuple[str, ...]]:
    if not value:
        return set()
    words = [token for token in _TOKEN_RE.findall(value.casefold()) if token not in _STOP_WORDS]
    if len(words) < SHINGLE_SIZE:
        return {tuple(words)} if words else set()
    return {tuple(words[index : index + SHINGLE_SIZE]) for index in range(len(words) - SHINGLE_SIZE + 1)}
