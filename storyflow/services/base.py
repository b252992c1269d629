from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from storyflow.core.config import Settings
from storyflow.core.urls import normalize_url, parse_normalization_overrides
from storyflow.services.dedupe import DedupePolicy
from storyflow.services.errors import RepositoryValidationError
from storyflow.services.gate import GateDecision, GateInput, GatePolicy, evaluate_gate
from storyflow.services.ledger import compute_retry_delay_seconds

EMPTY_GENERATION = "empty_generation"
STALLED_EXHAUSTED_MESSAGE = "stalled: max attempts exhausted"
DUPLICATE_RESOLUTIONS = {"confirm", "dismiss"}
ADMIN_QUEUE_FILTER_STATUSES = {"pending", "processing", "completed", "failed", "cancelled"}


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class GenerationOutcome:
    succeeded: bool
    title: str | None = None
    slides: list[dict[str, Any]] | None = None
    features: list[str] | None = None
    story_metadata: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = True

    @property
    def slide_count(self) -> int:
        return len(self.slides or [])


class RepositoryBase:
    """Storage-independent rules shared by the repository implementations."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.queue_max_attempts = max(1, settings.queue_max_attempts)
        self.queue_retry_base_seconds = max(0, settings.queue_retry_base_seconds)
        self.queue_retry_max_seconds = max(0, settings.queue_retry_max_seconds)
        self.dedupe_window_size = max(1, settings.dedupe_window_size)
        self.url_overrides = parse_normalization_overrides(settings.url_normalization_overrides_json)

    def _gate_policy(self, topic: dict[str, Any]) -> GatePolicy:
        return GatePolicy.for_topic(topic, self.settings)

    def _dedupe_policy(self) -> DedupePolicy:
        return DedupePolicy(
            review_threshold=self.settings.dedupe_review_threshold,
            auto_discard_checksum=self.settings.dedupe_auto_discard_checksum,
            max_matches=self.settings.dedupe_max_matches,
        )

    def _normalize_url(self, url: str) -> str:
        try:
            return normalize_url(url, overrides=self.url_overrides)
        except ValueError as exc:
            raise RepositoryValidationError(str(exc)) from exc

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        return compute_retry_delay_seconds(
            attempt=attempt,
            base_seconds=self.queue_retry_base_seconds,
            max_seconds=self.queue_retry_max_seconds,
        )

    def _evaluate_gate(
        self,
        *,
        topic: dict[str, Any],
        shared: dict[str, Any],
        import_metadata: dict[str, Any] | None,
        relevance_floor: int | None = None,
    ) -> GateDecision:
        article = GateInput(
            title=shared.get("title"),
            body=shared.get("body"),
            author=shared.get("author"),
            published_at=shared.get("published_at"),
            import_metadata=self._coerce_json_dict(import_metadata),
            word_count=shared.get("word_count"),
        )
        return evaluate_gate(article, self._gate_policy(topic), relevance_floor=relevance_floor)

    def _resolve_queue_params(self, params: dict[str, Any] | None) -> dict[str, Any]:
        params = params or {}
        max_attempts = params.get("max_attempts")
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            max_attempts = self.queue_max_attempts
        return {
            "slide_type": self._coerce_text(params.get("slide_type")) or self.settings.queue_default_slide_type,
            "tone": self._coerce_text(params.get("tone")),
            "writing_style": self._coerce_text(params.get("writing_style")),
            "ai_provider": self._coerce_text(params.get("ai_provider")) or self.settings.queue_default_ai_provider,
            "max_attempts": max_attempts,
        }

    @classmethod
    def _parse_generation_outcome(cls, outcome: dict[str, Any]) -> GenerationOutcome:
        status = outcome.get("status")
        if status == "completed":
            story = cls._coerce_json_dict(outcome.get("story"))
            raw_slides = story.get("slides")
            slides = [slide for slide in raw_slides if isinstance(slide, dict)] if isinstance(raw_slides, list) else []
            if not slides:
                return GenerationOutcome(
                    succeeded=False,
                    error_code=EMPTY_GENERATION,
                    error_message="generation returned no slides",
                )
            return GenerationOutcome(
                succeeded=True,
                title=cls._coerce_text(story.get("title")),
                slides=slides,
                features=cls._coerce_str_list(story.get("features")),
                story_metadata=cls._coerce_json_dict(story.get("metadata")),
            )
        if status == "failed":
            error = cls._coerce_json_dict(outcome.get("error"))
            return GenerationOutcome(
                succeeded=False,
                error_code=cls._coerce_text(error.get("code")) or "generation_failed",
                error_message=cls._coerce_text(error.get("message")),
                retryable=error.get("transient") is not False,
            )
        raise RepositoryValidationError("result status must be completed or failed")

    @staticmethod
    def _should_retry(item: dict[str, Any], outcome: GenerationOutcome) -> bool:
        """Permanent failures skip the remaining attempts."""
        return outcome.retryable and item["attempts"] < item["max_attempts"]

    @staticmethod
    def _format_error_message(outcome: GenerationOutcome) -> str:
        if outcome.error_message:
            return f"{outcome.error_code}: {outcome.error_message}"
        return outcome.error_code or "generation_failed"

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return dict(value)
        return {}

    @staticmethod
    def _coerce_str_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
        return list(dict.fromkeys(items))

    @staticmethod
    def _coerce_limit(limit: int, *, maximum: int = 1000) -> int:
        return max(1, min(limit, maximum))
