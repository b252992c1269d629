from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from storyflow.core.config import Settings
from storyflow.core.urls import canonical_hash, content_checksum, source_domain, word_count
from storyflow.services.base import (
    ADMIN_QUEUE_FILTER_STATUSES,
    DUPLICATE_RESOLUTIONS,
    STALLED_EXHAUSTED_MESSAGE,
    MachineCredentialRecord,
    RepositoryBase,
)
from storyflow.services.dedupe import EXCLUDED_STATUSES, DedupeSnapshot, evaluate_duplicates
from storyflow.services.errors import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from storyflow.services.gate import is_queue_eligible
from storyflow.services.ledger import (
    ACTIVE_QUEUE_STATUSES,
    UNQUEUEABLE_ARTICLE_STATUSES,
    validate_article_transition,
    validate_queue_transition,
)
from storyflow.services.lifecycle import (
    duplicate_published_titles,
    normalize_title,
    slugify,
    stage_is_stalled,
    validate_feature,
    validate_ready,
    validate_stage,
    validate_story_reference,
    validate_story_transition,
)

logger = logging.getLogger(__name__)

LOCAL_MODULES: tuple[tuple[str, str, list[str]], ...] = (
    ("local-scraper", "local-scraper-key", ["ingest:write"]),
    ("local-worker", "local-worker-key", ["queue:read", "queue:write"]),
)


class InMemoryRepository(RepositoryBase):
    """Process-local repository used in development and tests.

    It enforces the same transition rules as ``PostgresRepository``; one
    ``asyncio.Lock`` stands in for transactions and row locks.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
        seed_modules: bool = True,
    ) -> None:
        super().__init__(settings)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self.modules: dict[str, dict[str, Any]] = {}
        self.topics: dict[str, dict[str, Any]] = {}
        self.shared_content: dict[str, dict[str, Any]] = {}
        self.topic_articles: dict[str, dict[str, Any]] = {}
        self.duplicate_candidates: dict[str, dict[str, Any]] = {}
        self.queue_items: dict[str, dict[str, Any]] = {}
        self.stories: dict[str, dict[str, Any]] = {}
        self.pipeline_events: list[dict[str, Any]] = []
        if seed_modules:
            for module_id, api_key, scopes in LOCAL_MODULES:
                self.register_module(module_id, api_key=api_key, scopes=scopes)

    async def close(self) -> None:
        return None

    def register_module(self, module_id: str, *, api_key: str, scopes: list[str]) -> None:
        self.modules[module_id] = {
            "id": str(uuid4()),
            "module_id": module_id,
            "scopes": list(scopes),
            "key_hash": hashlib.sha256(api_key.encode("utf-8")).hexdigest(),
        }

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        module = self.modules.get(module_id)
        if not module:
            return []
        return [
            MachineCredentialRecord(
                module_db_id=module["id"],
                module_id=module["module_id"],
                scopes=list(module["scopes"]),
                key_hash=module["key_hash"],
            )
        ]

    # Topics

    async def create_topic(
        self,
        *,
        name: str,
        owner_id: str | None = None,
        is_active: bool = True,
        is_public: bool = True,
        auto_enqueue: bool = False,
        keywords: list[str] | None = None,
        negative_keywords: list[str] | None = None,
        competing_regions: list[str] | None = None,
        enabled_features: list[str] | None = None,
        gate_overrides: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = self._now()
        topic = {
            "id": str(uuid4()),
            "name": name,
            "owner_id": owner_id,
            "is_active": is_active,
            "is_public": is_public,
            "auto_enqueue": auto_enqueue,
            "keywords": list(keywords or []),
            "negative_keywords": list(negative_keywords or []),
            "competing_regions": list(competing_regions or []),
            "enabled_features": list(enabled_features or []),
            "gate_overrides": dict(gate_overrides or {}),
            "created_at": now,
            "updated_at": now,
        }
        async with self._lock:
            self.topics[topic["id"]] = topic
        return deepcopy(topic)

    async def get_topic(self, topic_id: str) -> dict[str, Any]:
        return deepcopy(self._require_topic(topic_id))

    async def deactivate_topic(self, topic_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        async with self._lock:
            topic = self._require_topic(topic_id)
            if topic["is_active"]:
                topic["is_active"] = False
                topic["updated_at"] = self._now()
                self._record_event("topic", topic_id, "deactivated", actor_type, actor_id, {})
            return deepcopy(topic)

    # Ingestion

    async def upsert_shared_content(
        self,
        *,
        url: str,
        title: str | None,
        body: str | None,
        author: str | None = None,
        published_at: datetime | None = None,
    ) -> tuple[dict[str, Any], bool]:
        normalized_url = self._normalize_url(url)
        async with self._lock:
            record, created = self._upsert_shared_content(
                url=url,
                normalized_url=normalized_url,
                title=title,
                body=body,
                author=author,
                published_at=published_at,
            )
            return deepcopy(record), created

    async def ingest_article(
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
        normalized_url = self._normalize_url(url)
        async with self._lock:
            topic = self._require_topic(topic_id)
            if not topic["is_active"]:
                raise RepositoryValidationError("topic is not active")

            shared, _ = self._upsert_shared_content(
                url=url,
                normalized_url=normalized_url,
                title=title,
                body=body,
                author=author,
                published_at=published_at,
            )
            now = self._now()

            existing = self._find_topic_article(topic_id, shared["id"])
            if existing is not None:
                metadata = existing["metadata"]
                metadata["duplicate_prevented_at"] = now.isoformat()
                metadata["duplicate_seen_count"] = int(metadata.get("duplicate_seen_count", 0)) + 1
                existing["updated_at"] = now
                self._record_event(
                    "topic_article",
                    existing["id"],
                    "duplicate_prevented",
                    actor_type,
                    actor_id,
                    {"detection_method": "exact_url"},
                )
                return self._ingest_result(
                    "duplicate",
                    existing,
                    reason="exact_url",
                    detection_method="exact_url",
                )

            article = {
                "id": str(uuid4()),
                "topic_id": topic_id,
                "shared_content_id": shared["id"],
                "status": "new",
                "regional_relevance_score": 0,
                "content_quality_score": 0,
                "keyword_matches": [],
                "is_snippet": False,
                "snippet_reason": None,
                "import_metadata": self._coerce_json_dict(import_metadata),
                "metadata": {},
                "created_at": now,
                "updated_at": now,
            }
            self.topic_articles[article["id"]] = article
            self._record_event("topic_article", article["id"], "ingested", actor_type, actor_id, {"url": normalized_url})

            decision = evaluate_duplicates(
                incoming=self._snapshot(article),
                recent=self._dedupe_window(topic_id, exclude_id=article["id"]),
                policy=self._dedupe_policy(),
            )
            if decision.matches:
                for match in decision.matches:
                    self._insert_duplicate_candidate(
                        topic_id=topic_id,
                        topic_article_id=article["id"],
                        original_topic_article_id=match.original_id,
                        similarity_score=match.similarity_score,
                        detection_method=match.detection_method,
                    )
                article["metadata"]["duplicate_check"] = decision.metadata(now.isoformat())
                if decision.outcome == "auto_discard":
                    self._set_article_status(article, "discarded", actor_type, actor_id, reason="duplicate_content")
                    article["metadata"]["rejection_reason"] = "duplicate_content"
                    reason = "duplicate_content"
                else:
                    self._set_article_status(article, "duplicate_pending", actor_type, actor_id, reason="duplicate_suspected")
                    reason = "duplicate_pending"
                return self._ingest_result(
                    "duplicate",
                    article,
                    reason=reason,
                    detection_method=decision.matches[0].detection_method,
                )

            qualified = self._apply_gate(topic, article, shared, actor_type, actor_id)
            if article["status"] == "discarded":
                return self._ingest_result("discarded", article, reason=article["metadata"].get("rejection_reason"))
            return self._ingest_result("accepted", article, qualified=qualified)

    async def get_topic_article(self, topic_article_id: str) -> dict[str, Any]:
        return deepcopy(self._require_topic_article(topic_article_id))

    async def get_shared_content(self, shared_content_id: str) -> dict[str, Any]:
        record = self.shared_content.get(shared_content_id)
        if not record:
            raise RepositoryNotFoundError("shared content not found")
        return deepcopy(record)

    # Duplicate review

    async def get_duplicate_candidate(self, candidate_id: str) -> dict[str, Any]:
        candidate = self.duplicate_candidates.get(candidate_id)
        if not candidate:
            raise RepositoryNotFoundError("duplicate candidate not found")
        return deepcopy(candidate)

    async def list_duplicate_candidates(
        self,
        *,
        status: str | None = None,
        topic_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.duplicate_candidates.values()
            if (status is None or row["status"] == status) and (topic_id is None or row["topic_id"] == topic_id)
        ]
        rows.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
        return deepcopy(rows[max(0, offset) : max(0, offset) + self._coerce_limit(limit)])

    async def rescan_duplicates(
        self,
        *,
        topic_id: str | None = None,
        limit: int = 200,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, int]:
        async with self._lock:
            if topic_id is not None:
                self._require_topic(topic_id)
            scan = [
                row
                for row in self.topic_articles.values()
                if row["status"] in {"new", "processed"} and (topic_id is None or row["topic_id"] == topic_id)
            ]
            scan.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
            scan = scan[: self._coerce_limit(limit)]

            created_total = 0
            flagged = 0
            policy = self._dedupe_policy()
            for article in scan:
                older = [
                    snapshot
                    for snapshot in self._dedupe_window(article["topic_id"], exclude_id=article["id"])
                    if self._is_older(self.topic_articles[snapshot.article_id], article)
                ]
                decision = evaluate_duplicates(incoming=self._snapshot(article), recent=older, policy=policy)
                created = 0
                for match in decision.matches:
                    if self._insert_duplicate_candidate(
                        topic_id=article["topic_id"],
                        topic_article_id=article["id"],
                        original_topic_article_id=match.original_id,
                        similarity_score=match.similarity_score,
                        detection_method=match.detection_method,
                    ):
                        created += 1
                created_total += created
                if created and article["status"] == "new":
                    article["metadata"]["duplicate_check"] = decision.metadata(self._now().isoformat())
                    self._set_article_status(article, "duplicate_pending", actor_type, actor_id, reason="rescan")
                    flagged += 1

            logger.info(
                "duplicate rescan topic_id=%s scanned=%s candidates_created=%s flagged=%s",
                topic_id,
                len(scan),
                created_total,
                flagged,
            )
            return {"scanned": len(scan), "candidates_created": created_total, "flagged": flagged}

    async def resolve_duplicate(
        self,
        candidate_id: str,
        *,
        resolution: str,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        if resolution not in DUPLICATE_RESOLUTIONS:
            raise RepositoryValidationError("resolution must be confirm or dismiss")
        async with self._lock:
            candidate = self.duplicate_candidates.get(candidate_id)
            if not candidate:
                raise RepositoryNotFoundError("duplicate candidate not found")
            if candidate["status"] != "pending":
                raise RepositoryConflictError("duplicate candidate is already resolved")

            article = self._require_topic_article(candidate["topic_article_id"])
            topic = self._require_topic(article["topic_id"])
            now = self._now()
            candidate["status"] = "confirmed" if resolution == "confirm" else "dismissed"
            candidate["resolved_by"] = actor_id
            candidate["resolved_at"] = now
            self._record_event(
                "duplicate_candidate",
                candidate_id,
                candidate["status"],
                actor_type,
                actor_id,
                {"topic_article_id": article["id"], "original_topic_article_id": candidate["original_topic_article_id"]},
            )

            qualified = False
            if resolution == "confirm":
                if article["status"] not in {"discarded", "archived"}:
                    self._set_article_status(article, "discarded", actor_type, actor_id, reason="confirmed_duplicate")
                    article["metadata"]["rejection_reason"] = "confirmed_duplicate"
                    self._cancel_items_for_articles({article["id"]}, "article discarded: confirmed_duplicate", actor_type, actor_id)
            elif article["status"] == "duplicate_pending" and not self._has_pending_candidates(article["id"]):
                self._set_article_status(article, "new", actor_type, actor_id, reason="duplicate_dismissed")
                shared = self.shared_content[article["shared_content_id"]]
                qualified = self._apply_gate(topic, article, shared, actor_type, actor_id)

            return {
                "candidate": deepcopy(candidate),
                "topic_article": deepcopy(article),
                "qualified": qualified,
            }

    # Gate cleanup

    async def gate_cleanup(
        self,
        topic_id: str,
        *,
        dry_run: bool,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        async with self._lock:
            topic = self._require_topic(topic_id)
            floor = self._gate_policy(topic).cleanup_relevance_floor
            scanned = 0
            discarded: list[dict[str, Any]] = []
            for article in sorted(self.topic_articles.values(), key=lambda row: (row["created_at"], row["id"])):
                if article["topic_id"] != topic_id or article["status"] not in {"new", "processed"}:
                    continue
                scanned += 1
                shared = self.shared_content[article["shared_content_id"]]
                decision = self._evaluate_gate(
                    topic=topic,
                    shared=shared,
                    import_metadata=article["import_metadata"],
                    relevance_floor=floor,
                )
                if decision.outcome != "discarded":
                    continue
                discarded.append(
                    {
                        "topic_article_id": article["id"],
                        "rejection_reason": decision.rejection_reason,
                        "matched_term": decision.matched_term,
                    }
                )
                if dry_run:
                    continue
                self._set_article_status(article, "discarded", actor_type, actor_id, reason=decision.rejection_reason)
                article["metadata"].update(decision.metadata())
                article["metadata"]["cleanup"] = True

            if not dry_run and discarded:
                self._cancel_items_for_articles(
                    {row["topic_article_id"] for row in discarded},
                    "article discarded by cleanup",
                    actor_type,
                    actor_id,
                )
            logger.info(
                "gate cleanup topic_id=%s dry_run=%s scanned=%s discarded=%s",
                topic_id,
                dry_run,
                scanned,
                len(discarded),
            )
            return {"dry_run": dry_run, "scanned": scanned, "discarded": discarded}

    # Generation queue

    async def enqueue(
        self,
        topic_article_id: str,
        *,
        params: dict[str, Any] | None = None,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        async with self._lock:
            article = self.topic_articles.get(topic_article_id)
            if not article:
                raise RepositoryNotFoundError("topic article not found")
            if article["status"] in UNQUEUEABLE_ARTICLE_STATUSES:
                raise RepositoryValidationError(f"topic article in status {article['status']} cannot be queued")
            if self._active_item_for(topic_article_id) is not None:
                raise RepositoryConflictError("topic article already has an active queue item")
            if article["status"] == "new":
                self._set_article_status(article, "processed", actor_type, actor_id, reason="operator_approved")

            now = self._now()
            item = {
                "id": str(uuid4()),
                "topic_article_id": topic_article_id,
                "topic_id": article["topic_id"],
                "status": "pending",
                "attempts": 0,
                **self._resolve_queue_params(params),
                "created_at": now,
                "updated_at": now,
                "next_run_at": now,
                "started_at": None,
                "completed_at": None,
                "error_message": None,
                "result_data": None,
                "claimed_by": None,
            }
            self.queue_items[item["id"]] = item
            self._record_event(
                "queue_item",
                item["id"],
                "enqueued",
                actor_type,
                actor_id,
                {"topic_article_id": topic_article_id, "slide_type": item["slide_type"]},
            )
            return deepcopy(item)

    async def get_queue_item(self, item_id: str) -> dict[str, Any]:
        return deepcopy(self._require_item(item_id))

    async def list_pending(self, limit: int) -> list[dict[str, Any]]:
        now = self._now()
        rows = [row for row in self.queue_items.values() if row["status"] == "pending" and row["next_run_at"] <= now]
        rows.sort(key=lambda row: (row["created_at"], row["id"]))
        return deepcopy(rows[: self._coerce_limit(limit)])

    async def claim(self, item_id: str, worker_id: str) -> dict[str, Any]:
        async with self._lock:
            item = self._require_item(item_id)
            self._claim_item(item, worker_id)
            return self._claimed_view(item)

    async def claim_next(self, worker_id: str, limit: int) -> list[dict[str, Any]]:
        async with self._lock:
            now = self._now()
            candidates = [
                row
                for row in self.queue_items.values()
                if row["status"] == "pending"
                and row["next_run_at"] <= now
                and row["attempts"] < row["max_attempts"]
            ]
            candidates.sort(key=lambda row: (row["created_at"], row["id"]))
            claimed: list[dict[str, Any]] = []
            for item in candidates[: self._coerce_limit(limit, maximum=100)]:
                try:
                    self._claim_item(item, worker_id)
                except RepositoryConflictError:
                    logger.warning("skipping unclaimable queue item id=%s", item["id"])
                    continue
                claimed.append(self._claimed_view(item))
            return claimed

    async def submit_result(self, item_id: str, *, worker_id: str, outcome: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            item = self._require_item(item_id)
            if item["status"] == "cancelled":
                logger.info("discarding result for cancelled queue item id=%s worker_id=%s", item_id, worker_id)
                return {"outcome": "discarded_cancelled", "item": deepcopy(item), "story": None}
            if item["status"] != "processing":
                raise RepositoryConflictError("queue item is not processing")
            if item["claimed_by"] != worker_id:
                raise RepositoryForbiddenError("queue item claimed by another worker")

            parsed = self._parse_generation_outcome(outcome)
            article = self._require_topic_article(item["topic_article_id"])
            now = self._now()
            story: dict[str, Any] | None = None

            if parsed.succeeded:
                validate_queue_transition(from_status="processing", to_status="completed")
                shared = self.shared_content[article["shared_content_id"]]
                story = self._insert_story(
                    topic_id=item["topic_id"],
                    title=parsed.title or shared.get("title"),
                    slides=parsed.slides or [],
                    topic_article_id=article["id"],
                    features=parsed.features,
                    metadata=parsed.story_metadata,
                    actor_type="machine",
                    actor_id=worker_id,
                )
                item["status"] = "completed"
                item["completed_at"] = now
                item["error_message"] = None
                item["result_data"] = {"story_id": story["id"], "slide_count": parsed.slide_count}
                resolved = "completed"
            else:
                item["error_message"] = self._format_error_message(parsed)
                if self._should_retry(item, parsed):
                    validate_queue_transition(from_status="processing", to_status="pending")
                    delay = self._compute_retry_delay_seconds(attempt=item["attempts"])
                    item["status"] = "pending"
                    item["next_run_at"] = now + timedelta(seconds=delay)
                    item["started_at"] = None
                    item["claimed_by"] = None
                    resolved = "retry_scheduled"
                else:
                    validate_queue_transition(from_status="processing", to_status="failed")
                    item["status"] = "failed"
                    resolved = "failed"
            item["updated_at"] = now

            if article["status"] == "processing":
                self._set_article_status(article, "processed", "machine", worker_id, reason=f"generation_{resolved}")
            self._record_event(
                "queue_item",
                item_id,
                resolved,
                "machine",
                worker_id,
                {
                    "attempts": item["attempts"],
                    "error_message": item["error_message"],
                    "result_data": item["result_data"],
                },
            )
            logger.info(
                "queue result item_id=%s outcome=%s attempts=%s/%s",
                item_id,
                resolved,
                item["attempts"],
                item["max_attempts"],
            )
            return {"outcome": resolved, "item": deepcopy(item), "story": deepcopy(story) if story else None}

    async def reset_stalled(
        self,
        *,
        timeout_seconds: int | None = None,
        limit: int = 100,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> dict[str, int]:
        timeout = self.settings.queue_stall_timeout_seconds if timeout_seconds is None else timeout_seconds
        async with self._lock:
            cutoff = self._now() - timedelta(seconds=max(0, timeout))
            stalled = [
                row for row in self.queue_items.values() if row["status"] == "processing" and row["updated_at"] < cutoff
            ]
            stalled.sort(key=lambda row: (row["updated_at"], row["id"]))
            reset = 0
            failed = 0
            for item in stalled[: self._coerce_limit(limit)]:
                now = self._now()
                if item["attempts"] >= item["max_attempts"]:
                    item["status"] = "failed"
                    item["error_message"] = STALLED_EXHAUSTED_MESSAGE
                    failed += 1
                    event_type = "stalled_failed"
                else:
                    item["status"] = "pending"
                    item["next_run_at"] = now
                    reset += 1
                    event_type = "stalled_reset"
                item["started_at"] = None
                item["claimed_by"] = None
                item["updated_at"] = now
                article = self.topic_articles.get(item["topic_article_id"])
                if article and article["status"] == "processing":
                    self._set_article_status(article, "processed", actor_type, actor_id, reason=event_type)
                self._record_event("queue_item", item["id"], event_type, actor_type, actor_id, {"attempts": item["attempts"]})

            if reset or failed:
                logger.info("reset stalled queue items reset=%s failed=%s timeout_seconds=%s", reset, failed, timeout)
            return {"reset": reset, "failed": failed}

    async def cancel(
        self,
        *,
        topic_id: str | None = None,
        topic_article_ids: list[str] | None = None,
        include_processing: bool = False,
        reason: str,
        actor_type: str,
        actor_id: str | None,
    ) -> int:
        if topic_id is None and not topic_article_ids:
            raise RepositoryValidationError("cancel requires topic_id or topic_article_ids")
        statuses = {"pending", "processing"} if include_processing else {"pending"}
        article_ids = set(topic_article_ids or [])
        async with self._lock:
            matched = [
                row
                for row in self.queue_items.values()
                if row["status"] in statuses
                and (topic_id is None or row["topic_id"] == topic_id)
                and (not article_ids or row["topic_article_id"] in article_ids)
            ]
            for item in matched:
                self._cancel_item(item, reason, actor_type, actor_id)
            if matched:
                logger.info("cancelled queue items count=%s topic_id=%s reason=%s", len(matched), topic_id, reason)
            return len(matched)

    async def retry(self, item_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        async with self._lock:
            item = self._require_item(item_id)
            if item["status"] != "failed":
                raise RepositoryConflictError(f"queue item in status {item['status']} cannot be retried")
            article = self._require_topic_article(item["topic_article_id"])
            if article["status"] in UNQUEUEABLE_ARTICLE_STATUSES:
                raise RepositoryValidationError(f"topic article in status {article['status']} cannot be queued")
            if self._active_item_for(item["topic_article_id"]) is not None:
                raise RepositoryConflictError("topic article already has an active queue item")

            validate_queue_transition(from_status="failed", to_status="pending")
            previous_error = item["error_message"]
            now = self._now()
            item["status"] = "pending"
            item["attempts"] = 0
            item["next_run_at"] = now
            item["started_at"] = None
            item["claimed_by"] = None
            item["error_message"] = None
            item["updated_at"] = now
            self._record_event("queue_item", item_id, "retried", actor_type, actor_id, {"previous_error": previous_error})
            return deepcopy(item)

    async def list_items(
        self,
        *,
        status: str | None = None,
        topic_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if status is not None and status not in ADMIN_QUEUE_FILTER_STATUSES:
            raise RepositoryValidationError(f"unsupported queue status filter: {status}")
        rows = [
            row
            for row in self.queue_items.values()
            if (status is None or row["status"] == status) and (topic_id is None or row["topic_id"] == topic_id)
        ]
        rows.sort(key=lambda row: (row["updated_at"], row["id"]), reverse=True)
        return deepcopy(rows[max(0, offset) : max(0, offset) + self._coerce_limit(limit, maximum=500)])

    async def list_item_events(self, item_id: str, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        self._require_item(item_id)
        rows = [
            row for row in self.pipeline_events if row["entity_type"] == "queue_item" and row["entity_id"] == item_id
        ]
        rows.sort(key=lambda row: row["id"], reverse=True)
        return deepcopy(rows[max(0, offset) : max(0, offset) + self._coerce_limit(limit, maximum=500)])

    # Stories

    async def create_story(
        self,
        *,
        topic_id: str,
        title: str | None,
        slides: list[dict[str, Any]],
        article_id: str | None = None,
        topic_article_id: str | None = None,
        features: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            self._require_topic(topic_id)
            if topic_article_id is not None:
                self._require_topic_article(topic_article_id)
            story = self._insert_story(
                topic_id=topic_id,
                title=title,
                slides=slides,
                article_id=article_id,
                topic_article_id=topic_article_id,
                features=features,
                metadata=metadata,
                actor_type=actor_type,
                actor_id=actor_id,
            )
            return deepcopy(story)

    async def get_story(self, story_id: str) -> dict[str, Any]:
        return deepcopy(self._require_story(story_id))

    async def mark_ready(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        async with self._lock:
            story = self._require_story(story_id)
            validate_story_transition(from_status=story["status"], to_status="ready")
            validate_ready(title=story["title"], slide_count=len(story["slides"]))
            self._set_story_status(story, "ready", actor_type, actor_id)
            return deepcopy(story)

    async def publish_story(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        async with self._lock:
            story = self._require_story(story_id)
            validate_story_transition(from_status=story["status"], to_status="published")
            if self.settings.story_reject_duplicate_titles:
                title_key = normalize_title(story["title"])
                for other in self.stories.values():
                    if (
                        other["id"] != story_id
                        and other["topic_id"] == story["topic_id"]
                        and other["status"] == "published"
                        and other["is_published"]
                        and normalize_title(other["title"]) == title_key
                    ):
                        raise RepositoryConflictError("a published story with this title already exists in the topic")
            story["is_published"] = True
            story["published_at"] = self._now()
            self._set_story_status(story, "published", actor_type, actor_id)
            return deepcopy(story)

    async def archive_story(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        async with self._lock:
            story = self._require_story(story_id)
            validate_story_transition(from_status=story["status"], to_status="archived")
            story["is_published"] = False
            story["processing_stage"] = None
            story["stage_started_at"] = None
            self._set_story_status(story, "archived", actor_type, actor_id)
            return deepcopy(story)

    async def assign_slug(self, story_id: str) -> dict[str, Any]:
        async with self._lock:
            story = self._require_story(story_id)
            if story["slug"]:
                return deepcopy(story)
            slug = slugify(story["title"])
            taken = {other["slug"] for other in self.stories.values() if other["id"] != story_id and other["slug"]}
            if slug in taken:
                slug = slugify(story["title"], suffix=story_id[:8])
            story["slug"] = slug
            story["updated_at"] = self._now()
            return deepcopy(story)

    async def begin_stage(self, story_id: str, stage: str) -> dict[str, Any]:
        validate_stage(stage)
        async with self._lock:
            story = self._require_story(story_id)
            if story["status"] == "archived":
                raise RepositoryConflictError("archived stories cannot enter a processing stage")
            if story["processing_stage"] and story["processing_stage"] != stage:
                raise RepositoryConflictError(f"story stage {story['processing_stage']} is already in progress")
            now = self._now()
            story["processing_stage"] = stage
            story["stage_started_at"] = now
            story["updated_at"] = now
            return deepcopy(story)

    async def complete_stage(self, story_id: str, stage: str, *, automated: bool) -> dict[str, Any]:
        completed_column, auto_flag_column = validate_stage(stage)
        async with self._lock:
            story = self._require_story(story_id)
            if story["processing_stage"] != stage:
                raise RepositoryConflictError(f"story stage {stage} is not in progress")
            now = self._now()
            story[completed_column] = now
            story[auto_flag_column] = automated
            story["processing_stage"] = None
            story["stage_started_at"] = None
            story["updated_at"] = now
            return deepcopy(story)

    async def reset_stalled_stories(self, *, timeout_seconds: int | None = None) -> int:
        timeout = self.settings.story_stage_timeout_seconds if timeout_seconds is None else timeout_seconds
        async with self._lock:
            now = self._now()
            count = 0
            for story in self.stories.values():
                if not stage_is_stalled(story, timeout_seconds=timeout, now=now):
                    continue
                story["processing_stage"] = None
                story["stage_started_at"] = None
                story["updated_at"] = now
                if story["status"] == "ready":
                    validate_story_transition(from_status="ready", to_status="draft", system=True)
                    self._set_story_status(story, "draft", "system", None, reason="stage_timeout")
                count += 1
            if count:
                logger.info("reset stalled story stages count=%s timeout_seconds=%s", count, timeout)
            return count

    async def sweep_story_integrity(
        self,
        *,
        topic_id: str | None = None,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> dict[str, int]:
        async with self._lock:
            in_scope = [row for row in self.stories.values() if topic_id is None or row["topic_id"] == topic_id]
            empty_ids = {row["id"] for row in in_scope if not row["slides"]}
            for story_id in empty_ids:
                del self.stories[story_id]
                self._record_event("story", story_id, "deleted_empty", actor_type, actor_id, {})

            remaining = [row for row in in_scope if row["id"] not in empty_ids]
            duplicate_ids = duplicate_published_titles(remaining)
            for story_id in duplicate_ids:
                story = self.stories[story_id]
                story["is_published"] = False
                self._set_story_status(story, "archived", actor_type, actor_id, reason="duplicate_title")

            logger.info(
                "story integrity sweep topic_id=%s deleted_empty=%s archived_duplicates=%s",
                topic_id,
                len(empty_ids),
                len(duplicate_ids),
            )
            return {"deleted_empty": len(empty_ids), "archived_duplicates": len(duplicate_ids)}

    # Publication gateway

    async def list_published_stories(self, topic_id: str, *, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        self._require_visible_topic(topic_id)
        return self._published_page(topic_id, feature=None, limit=limit, offset=offset)

    async def list_feature_stories(
        self,
        topic_id: str,
        feature: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        validate_feature(feature)
        topic = self._require_visible_topic(topic_id)
        if feature not in topic["enabled_features"]:
            raise RepositoryNotFoundError("topic not found")
        return self._published_page(topic_id, feature=feature, limit=limit, offset=offset)

    async def list_events(self, *, entity_type: str | None = None, entity_id: str | None = None) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.pipeline_events
            if (entity_type is None or row["entity_type"] == entity_type)
            and (entity_id is None or row["entity_id"] == entity_id)
        ]
        return deepcopy(rows)

    # Internal helpers; callers hold the lock.

    def _now(self) -> datetime:
        return self._clock()

    def _require_topic(self, topic_id: str) -> dict[str, Any]:
        topic = self.topics.get(topic_id)
        if not topic:
            raise RepositoryNotFoundError("topic not found")
        return topic

    def _require_visible_topic(self, topic_id: str) -> dict[str, Any]:
        topic = self.topics.get(topic_id)
        if not topic or not topic["is_active"] or not topic["is_public"]:
            raise RepositoryNotFoundError("topic not found")
        return topic

    def _require_topic_article(self, topic_article_id: str) -> dict[str, Any]:
        article = self.topic_articles.get(topic_article_id)
        if not article:
            raise RepositoryNotFoundError("topic article not found")
        return article

    def _require_item(self, item_id: str) -> dict[str, Any]:
        item = self.queue_items.get(item_id)
        if not item:
            raise RepositoryNotFoundError("queue item not found")
        return item

    def _require_story(self, story_id: str) -> dict[str, Any]:
        story = self.stories.get(story_id)
        if not story:
            raise RepositoryNotFoundError("story not found")
        return story

    def _upsert_shared_content(
        self,
        *,
        url: str,
        normalized_url: str,
        title: str | None,
        body: str | None,
        author: str | None,
        published_at: datetime | None,
    ) -> tuple[dict[str, Any], bool]:
        now = self._now()
        for record in self.shared_content.values():
            if record["normalized_url"] == normalized_url:
                record["last_seen_at"] = now
                return record, False
        record = {
            "id": str(uuid4()),
            "url": url,
            "normalized_url": normalized_url,
            "canonical_hash": canonical_hash(normalized_url),
            "title": title,
            "body": body,
            "author": author,
            "published_at": published_at,
            "content_checksum": content_checksum(title, body),
            "word_count": word_count(body),
            "source_domain": source_domain(normalized_url),
            "first_seen_at": now,
            "last_seen_at": now,
        }
        self.shared_content[record["id"]] = record
        return record, True

    def _find_topic_article(self, topic_id: str, shared_content_id: str) -> dict[str, Any] | None:
        for article in self.topic_articles.values():
            if article["topic_id"] == topic_id and article["shared_content_id"] == shared_content_id:
                return article
        return None

    def _snapshot(self, article: dict[str, Any]) -> DedupeSnapshot:
        shared = self.shared_content[article["shared_content_id"]]
        return DedupeSnapshot(
            article_id=article["id"],
            normalized_url=shared["normalized_url"],
            content_checksum=shared["content_checksum"],
            title=shared["title"],
            body=shared["body"],
            status=article["status"],
        )

    def _dedupe_window(self, topic_id: str, *, exclude_id: str) -> list[DedupeSnapshot]:
        rows = [
            row
            for row in self.topic_articles.values()
            if row["topic_id"] == topic_id and row["id"] != exclude_id and row["status"] not in EXCLUDED_STATUSES
        ]
        rows.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
        return [self._snapshot(row) for row in rows[: self.dedupe_window_size]]

    @staticmethod
    def _is_older(candidate: dict[str, Any], article: dict[str, Any]) -> bool:
        return (candidate["created_at"], candidate["id"]) < (article["created_at"], article["id"])

    def _insert_duplicate_candidate(
        self,
        *,
        topic_id: str,
        topic_article_id: str,
        original_topic_article_id: str,
        similarity_score: float,
        detection_method: str,
    ) -> bool:
        for row in self.duplicate_candidates.values():
            if row["topic_article_id"] == topic_article_id and row["original_topic_article_id"] == original_topic_article_id:
                return False
        candidate = {
            "id": str(uuid4()),
            "topic_id": topic_id,
            "topic_article_id": topic_article_id,
            "original_topic_article_id": original_topic_article_id,
            "similarity_score": similarity_score,
            "detection_method": detection_method,
            "status": "pending",
            "resolved_by": None,
            "resolved_at": None,
            "created_at": self._now(),
        }
        self.duplicate_candidates[candidate["id"]] = candidate
        return True

    def _has_pending_candidates(self, topic_article_id: str) -> bool:
        return any(
            row["topic_article_id"] == topic_article_id and row["status"] == "pending"
            for row in self.duplicate_candidates.values()
        )

    def _apply_gate(
        self,
        topic: dict[str, Any],
        article: dict[str, Any],
        shared: dict[str, Any],
        actor_type: str,
        actor_id: str | None,
    ) -> bool:
        decision = self._evaluate_gate(topic=topic, shared=shared, import_metadata=article["import_metadata"])
        article["regional_relevance_score"] = decision.regional_relevance_score
        article["content_quality_score"] = decision.content_quality_score
        article["keyword_matches"] = list(decision.keyword_matches)
        article["is_snippet"] = decision.is_snippet
        article["snippet_reason"] = decision.snippet_reason
        article["metadata"].update(decision.metadata())
        self._set_article_status(article, decision.status, actor_type, actor_id, reason=decision.rejection_reason or "gate_accepted")
        if decision.outcome != "accepted":
            return False
        return is_queue_eligible(
            status=article["status"],
            quality_score=decision.content_quality_score,
            relevance_score=decision.regional_relevance_score,
            policy=self._gate_policy(topic),
        )

    def _set_article_status(
        self,
        article: dict[str, Any],
        to_status: str,
        actor_type: str,
        actor_id: str | None,
        *,
        reason: str | None = None,
    ) -> None:
        from_status = article["status"]
        validate_article_transition(from_status=from_status, to_status=to_status)
        if from_status == to_status:
            return
        article["status"] = to_status
        article["updated_at"] = self._now()
        self._record_event(
            "topic_article",
            article["id"],
            "status_changed",
            actor_type,
            actor_id,
            {"from": from_status, "to": to_status, "reason": reason},
        )

    def _active_item_for(self, topic_article_id: str) -> dict[str, Any] | None:
        for item in self.queue_items.values():
            if item["topic_article_id"] == topic_article_id and item["status"] in ACTIVE_QUEUE_STATUSES:
                return item
        return None

    def _claim_item(self, item: dict[str, Any], worker_id: str) -> None:
        now = self._now()
        if item["status"] != "pending" or item["attempts"] >= item["max_attempts"] or item["next_run_at"] > now:
            raise RepositoryConflictError("queue item is not claimable")
        article = self._require_topic_article(item["topic_article_id"])
        validate_article_transition(from_status=article["status"], to_status="processing")

        item["status"] = "processing"
        item["attempts"] += 1
        item["started_at"] = now
        item["claimed_by"] = worker_id
        item["updated_at"] = now
        self._set_article_status(article, "processing", "machine", worker_id, reason="claimed")
        self._record_event("queue_item", item["id"], "claimed", "machine", worker_id, {"attempts": item["attempts"]})

    def _claimed_view(self, item: dict[str, Any]) -> dict[str, Any]:
        article = self.topic_articles[item["topic_article_id"]]
        shared = self.shared_content[article["shared_content_id"]]
        view = deepcopy(item)
        view["inputs"] = {
            "title": shared["title"],
            "body": shared["body"],
            "url": shared["url"],
            "author": shared["author"],
            "published_at": shared["published_at"].isoformat() if shared["published_at"] else None,
        }
        return view

    def _cancel_item(self, item: dict[str, Any], reason: str, actor_type: str, actor_id: str | None) -> None:
        validate_queue_transition(from_status=item["status"], to_status="cancelled")
        was_processing = item["status"] == "processing"
        item["status"] = "cancelled"
        item["error_message"] = reason
        item["updated_at"] = self._now()
        if was_processing:
            article = self.topic_articles.get(item["topic_article_id"])
            if article and article["status"] == "processing":
                self._set_article_status(article, "processed", actor_type, actor_id, reason="queue_cancelled")
        self._record_event("queue_item", item["id"], "cancelled", actor_type, actor_id, {"reason": reason})

    def _cancel_items_for_articles(
        self,
        topic_article_ids: set[str],
        reason: str,
        actor_type: str,
        actor_id: str | None,
    ) -> int:
        matched = [
            row
            for row in self.queue_items.values()
            if row["status"] == "pending" and row["topic_article_id"] in topic_article_ids
        ]
        for item in matched:
            self._cancel_item(item, reason, actor_type, actor_id)
        return len(matched)

    def _insert_story(
        self,
        *,
        topic_id: str,
        title: str | None,
        slides: list[dict[str, Any]],
        article_id: str | None = None,
        topic_article_id: str | None = None,
        features: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        validate_story_reference(article_id=article_id, topic_article_id=topic_article_id)
        now = self._now()
        story = {
            "id": str(uuid4()),
            "topic_id": topic_id,
            "article_id": article_id,
            "topic_article_id": topic_article_id,
            "title": title,
            "slug": None,
            "status": "draft",
            "is_published": False,
            "published_at": None,
            "slides": [dict(slide) for slide in slides],
            "features": self._coerce_str_list(features),
            "metadata": dict(metadata or {}),
            "processing_stage": None,
            "stage_started_at": None,
            "simplified_at": None,
            "illustration_generated_at": None,
            "animation_generated_at": None,
            "is_auto_simplified": False,
            "is_auto_illustrated": False,
            "is_auto_animated": False,
            "created_at": now,
            "updated_at": now,
        }
        self.stories[story["id"]] = story
        self._record_event("story", story["id"], "created", actor_type, actor_id, {"slide_count": len(slides)})
        return story

    def _set_story_status(
        self,
        story: dict[str, Any],
        to_status: str,
        actor_type: str,
        actor_id: str | None,
        *,
        reason: str | None = None,
    ) -> None:
        from_status = story["status"]
        story["status"] = to_status
        story["updated_at"] = self._now()
        self._record_event(
            "story",
            story["id"],
            "status_changed",
            actor_type,
            actor_id,
            {"from": from_status, "to": to_status, "reason": reason},
        )

    def _published_page(self, topic_id: str, *, feature: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.stories.values()
            if row["topic_id"] == topic_id
            and row["status"] == "published"
            and row["is_published"]
            and (feature is None or feature in row["features"])
        ]
        rows.sort(key=lambda row: (row["published_at"], row["id"]), reverse=True)
        return deepcopy(rows[max(0, offset) : max(0, offset) + self._coerce_limit(limit, maximum=100)])

    def _record_event(
        self,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        self.pipeline_events.append(
            {
                "id": len(self.pipeline_events) + 1,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_type": event_type,
                "actor_type": actor_type,
                "actor_id": actor_id,
                "payload": payload,
                "created_at": self._now(),
            }
        )

    @staticmethod
    def _ingest_result(
        outcome: str,
        article: dict[str, Any],
        *,
        reason: str | None = None,
        detection_method: str | None = None,
        qualified: bool = False,
    ) -> dict[str, Any]:
        return {
            "outcome": outcome,
            "topic_article_id": article["id"],
            "topic_id": article["topic_id"],
            "shared_content_id": article["shared_content_id"],
            "status": article["status"],
            "reason": reason,
            "detection_method": detection_method,
            "qualified": qualified,
        }
