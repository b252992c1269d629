"""Relevance and quality gate.

Every decision here is a pure function of the article content and the topic's
gate policy, so re-evaluating an article always yields the same outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from storyflow.core.config import Settings
from storyflow.core.urls import word_count as count_words

GateOutcome = Literal["accepted", "discarded"]

REASON_NEGATIVE_KEYWORD = "negative_keyword"
REASON_COMPETING_REGION = "competing_region"
REASON_LOW_RELEVANCE = "insufficient_regional_relevance"

_OVERRIDABLE_THRESHOLDS = (
    "relevance_floor",
    "cleanup_relevance_floor",
    "queue_min_quality",
    "queue_min_relevance",
    "snippet_word_threshold",
)


@dataclass(slots=True)
class GatePolicy:
    relevance_floor: int = 20
    cleanup_relevance_floor: int = 5
    queue_min_quality: int = 50
    queue_min_relevance: int = 5
    snippet_word_threshold: int = 150
    keywords: tuple[str, ...] = ()
    negative_keywords: tuple[str, ...] = ()
    competing_regions: tuple[str, ...] = ()

    @classmethod
    def for_topic(cls, topic: dict[str, Any], settings: Settings) -> GatePolicy:
        values: dict[str, int] = {
            "relevance_floor": settings.gate_relevance_floor,
            "cleanup_relevance_floor": settings.gate_cleanup_relevance_floor,
            "queue_min_quality": settings.gate_queue_min_quality,
            "queue_min_relevance": settings.gate_queue_min_relevance,
            "snippet_word_threshold": settings.gate_snippet_word_threshold,
        }
        overrides = topic.get("gate_overrides")
        if isinstance(overrides, dict):
            for key in _OVERRIDABLE_THRESHOLDS:
                raw = overrides.get(key)
                if isinstance(raw, bool):
                    continue
                try:
                    values[key] = int(raw)
                except (TypeError, ValueError):
                    continue
        return cls(
            **values,
            keywords=_terms(topic.get("keywords")),
            negative_keywords=_terms(topic.get("negative_keywords")),
            competing_regions=_terms(topic.get("competing_regions")),
        )


@dataclass(slots=True)
class GateInput:
    title: str | None
    body: str | None
    author: str | None = None
    published_at: Any = None
    import_metadata: dict[str, Any] = field(default_factory=dict)
    word_count: int | None = None


@dataclass(slots=True)
class GateDecision:
    outcome: GateOutcome
    status: str
    regional_relevance_score: int
    content_quality_score: int
    keyword_matches: list[str]
    is_snippet: bool
    snippet_reason: str | None
    rejection_reason: str | None = None
    matched_term: str | None = None
    min_threshold: int | None = None

    def metadata(self) -> dict[str, Any]:
        if self.outcome == "accepted":
            return {"gate": {"outcome": "accepted", "relevance_score": self.regional_relevance_score}}
        return {
            "rejection_reason": self.rejection_reason,
            "relevance_score": self.regional_relevance_score,
            "min_threshold": self.min_threshold,
            "matched_term": self.matched_term,
        }


def evaluate_gate(article: GateInput, policy: GatePolicy, *, relevance_floor: int | None = None) -> GateDecision:
    relevance = relevance_from_metadata(article.import_metadata)
    words = article.word_count if article.word_count is not None else count_words(article.body)
    quality = quality_score(article, words=words)
    matches = keyword_matches(article, policy.keywords)
    is_snippet, snippet_reason = detect_snippet(article.body, words=words, threshold=policy.snippet_word_threshold)
    floor = policy.relevance_floor if relevance_floor is None else relevance_floor

    def discard(reason: str, *, term: str | None = None, threshold: int | None = None) -> GateDecision:
        return GateDecision(
            outcome="discarded",
            status="discarded",
            regional_relevance_score=relevance,
            content_quality_score=quality,
            keyword_matches=matches,
            is_snippet=is_snippet,
            snippet_reason=snippet_reason,
            rejection_reason=reason,
            matched_term=term,
            min_threshold=threshold,
        )

    text = _searchable_text(article)
    negative = _first_match(text, policy.negative_keywords)
    if negative is not None:
        return discard(REASON_NEGATIVE_KEYWORD, term=negative)
    competing = _first_match(text, policy.competing_regions)
    if competing is not None:
        return discard(REASON_COMPETING_REGION, term=competing)
    if relevance < floor:
        return discard(REASON_LOW_RELEVANCE, threshold=floor)

    return GateDecision(
        outcome="accepted",
        status="processed",
        regional_relevance_score=relevance,
        content_quality_score=quality,
        keyword_matches=matches,
        is_snippet=is_snippet,
        snippet_reason=snippet_reason,
    )


def is_queue_eligible(*, status: str, quality_score: int, relevance_score: int, policy: GatePolicy) -> bool:
    return (
        status == "processed"
        and quality_score >= policy.queue_min_quality
        and relevance_score >= policy.queue_min_relevance
    )


def relevance_from_metadata(import_metadata: dict[str, Any] | None) -> int:
    if not isinstance(import_metadata, dict):
        return 0
    raw = import_metadata.get("regional_relevance_score")
    if raw is None or isinstance(raw, bool):
        return 0
    try:
        return int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return 0


def quality_score(article: GateInput, *, words: int) -> int:
    score = 50
    title = article.title or ""
    body = article.body or ""

    if words > 300:
        score += 20
    elif words > 150:
        score += 15
    elif words > 100:
        score += 10
    elif words > 50:
        score += 5
    elif words < 30:
        score -= 10

    if article.author:
        score += 5
    if article.published_at:
        score += 3

    lowered_title = title.casefold()
    if "error" in lowered_title or "404" in lowered_title:
        score -= 50
    if body and len(body) < len(title) * 2:
        score -= 15

    return min(100, max(0, score))


def keyword_matches(article: GateInput, keywords: tuple[str, ...]) -> list[str]:
    text = _searchable_text(article)
    return [keyword for keyword in keywords if keyword.casefold() in text]


def detect_snippet(body: str | None, *, words: int, threshold: int) -> tuple[bool, str | None]:
    stripped = (body or "").rstrip()
    if stripped.endswith("...") or stripped.endswith("…"):
        return True, "truncated_body"
    if words < threshold:
        return True, "short_body"
    return False, None


def _searchable_text(article: GateInput) -> str:
    return f"{article.title or ''} {article.body or ''}".casefold()


def _first_match(text: str, terms: tuple[str, ...]) -> str | None:
    for term in terms:
        if term.casefold() in text:
            return term
    return None


def _terms(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return ()
    if isinstance(value, (set, frozenset)):
        # Sets have no stable order; matching must not depend on hash seeds.
        value = sorted(item for item in value if isinstance(item, str))
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return tuple(dict.fromkeys(items))
