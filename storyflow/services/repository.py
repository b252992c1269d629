from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from storyflow.core.config import Settings, get_settings
from storyflow.core.urls import canonical_hash, content_checksum, source_domain, word_count
from storyflow.services.base import (
    ADMIN_QUEUE_FILTER_STATUSES,
    DUPLICATE_RESOLUTIONS,
    STALLED_EXHAUSTED_MESSAGE,
    MachineCredentialRecord,
    RepositoryBase,
)
from storyflow.services.dedupe import DedupeSnapshot, evaluate_duplicates
from storyflow.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from storyflow.services.gate import GateDecision, is_queue_eligible
from storyflow.services.ledger import UNQUEUEABLE_ARTICLE_STATUSES, validate_article_transition
from storyflow.services.lifecycle import (
    duplicate_published_titles,
    normalize_title,
    slugify,
    validate_feature,
    validate_ready,
    validate_stage,
    validate_story_reference,
    validate_story_transition,
)
from storyflow.services.store import InMemoryRepository

__all__ = [
    "InMemoryRepository",
    "MachineCredentialRecord",
    "PostgresRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryForbiddenError",
    "RepositoryNotFoundError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "get_repository",
]

logger = logging.getLogger(__name__)

TOPIC_COLUMNS = """
  id::text as id,
  name,
  owner_id,
  is_active,
  is_public,
  auto_enqueue,
  keywords,
  negative_keywords,
  competing_regions,
  enabled_features,
  gate_overrides,
  created_at,
  updated_at
"""

SHARED_CONTENT_COLUMNS = """
  id::text as id,
  url,
  normalized_url,
  canonical_hash,
  title,
  body,
  author,
  published_at,
  content_checksum,
  word_count,
  source_domain,
  first_seen_at,
  last_seen_at
"""

TOPIC_ARTICLE_COLUMNS = """
  id::text as id,
  topic_id::text as topic_id,
  shared_content_id::text as shared_content_id,
  status::text as status,
  regional_relevance_score,
  content_quality_score,
  keyword_matches,
  is_snippet,
  snippet_reason,
  import_metadata,
  metadata,
  created_at,
  updated_at
"""

QUEUE_COLUMNS = """
  id::text as id,
  topic_article_id::text as topic_article_id,
  topic_id::text as topic_id,
  status::text as status,
  attempts,
  max_attempts,
  slide_type,
  tone,
  writing_style,
  ai_provider,
  created_at,
  updated_at,
  next_run_at,
  started_at,
  completed_at,
  error_message,
  result_data,
  claimed_by
"""

STORY_COLUMNS = """
  s.id::text as id,
  s.topic_id::text as topic_id,
  s.article_id::text as article_id,
  s.topic_article_id::text as topic_article_id,
  s.title,
  s.slug,
  s.status::text as status,
  s.is_published,
  s.published_at,
  s.features,
  s.metadata,
  s.processing_stage,
  s.stage_started_at,
  s.simplified_at,
  s.illustration_generated_at,
  s.animation_generated_at,
  s.is_auto_simplified,
  s.is_auto_illustrated,
  s.is_auto_animated,
  s.created_at,
  s.updated_at,
  coalesce(
    (select jsonb_agg(sl.content order by sl.slide_number) from slides sl where sl.story_id = s.id),
    '[]'::jsonb
  ) as slides
"""

CANDIDATE_COLUMNS = """
  id::text as id,
  topic_id::text as topic_id,
  topic_article_id::text as topic_article_id,
  original_topic_article_id::text as original_topic_article_id,
  similarity_score,
  detection_method,
  status,
  resolved_by,
  resolved_at,
  created_at
"""


class PostgresRepository(RepositoryBase):
    def __init__(
        self,
        settings: Settings,
        *,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        super().__init__(settings)
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into topics (
              name,
              owner_id,
              is_active,
              is_public,
              auto_enqueue,
              keywords,
              negative_keywords,
              competing_regions,
              enabled_features,
              gate_overrides
            )
            values ($1, $2, $3, $4, $5, $6::text[], $7::text[], $8::text[], $9::text[], $10::jsonb)
            returning {TOPIC_COLUMNS}
            """,
            name,
            owner_id,
            is_active,
            is_public,
            auto_enqueue,
            list(keywords or []),
            list(negative_keywords or []),
            list(competing_regions or []),
            list(enabled_features or []),
            json.dumps(gate_overrides or {}),
        )
        return self._topic_row_to_dict(row)

    async def get_topic(self, topic_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._require_topic(conn, topic_id)

    async def deactivate_topic(self, topic_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                topic = await self._require_topic(conn, topic_id, for_update=True)
                if not topic["is_active"]:
                    return topic
                row = await conn.fetchrow(
                    f"""
                    update topics
                    set is_active = false, updated_at = now()
                    where id = $1::uuid
                    returning {TOPIC_COLUMNS}
                    """,
                    topic_id,
                )
                await self._record_event(conn, "topic", topic_id, "deactivated", actor_type, actor_id, {})
                return self._topic_row_to_dict(row)

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._upsert_shared_content(
                conn,
                url=url,
                normalized_url=normalized_url,
                title=title,
                body=body,
                author=author,
                published_at=published_at,
            )

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                topic = await self._require_topic(conn, topic_id)
                if not topic["is_active"]:
                    raise RepositoryValidationError("topic is not active")

                shared, _ = await self._upsert_shared_content(
                    conn,
                    url=url,
                    normalized_url=normalized_url,
                    title=title,
                    body=body,
                    author=author,
                    published_at=published_at,
                )

                row = await conn.fetchrow(
                    f"""
                    insert into topic_articles (topic_id, shared_content_id, import_metadata)
                    values ($1::uuid, $2::uuid, $3::jsonb)
                    on conflict (topic_id, shared_content_id) do nothing
                    returning {TOPIC_ARTICLE_COLUMNS}
                    """,
                    topic_id,
                    shared["id"],
                    json.dumps(self._coerce_json_dict(import_metadata)),
                )
                if row is None:
                    existing = await conn.fetchrow(
                        f"""
                        update topic_articles
                        set
                          metadata = metadata || jsonb_build_object(
                            'duplicate_prevented_at', to_jsonb(now()),
                            'duplicate_seen_count', coalesce((metadata->>'duplicate_seen_count')::int, 0) + 1
                          ),
                          updated_at = now()
                        where topic_id = $1::uuid and shared_content_id = $2::uuid
                        returning {TOPIC_ARTICLE_COLUMNS}
                        """,
                        topic_id,
                        shared["id"],
                    )
                    article = self._article_row_to_dict(existing)
                    await self._record_event(
                        conn,
                        "topic_article",
                        article["id"],
                        "duplicate_prevented",
                        actor_type,
                        actor_id,
                        {"detection_method": "exact_url"},
                    )
                    return self._ingest_result("duplicate", article, reason="exact_url", detection_method="exact_url")

                article = self._article_row_to_dict(row)
                await self._record_event(
                    conn,
                    "topic_article",
                    article["id"],
                    "ingested",
                    actor_type,
                    actor_id,
                    {"url": normalized_url},
                )

                incoming = DedupeSnapshot(
                    article_id=article["id"],
                    normalized_url=shared["normalized_url"],
                    content_checksum=shared["content_checksum"],
                    title=shared["title"],
                    body=shared["body"],
                    status=article["status"],
                )
                window = await self._fetch_dedupe_window(conn, topic_id=topic_id, exclude_id=article["id"])
                decision = evaluate_duplicates(incoming=incoming, recent=window, policy=self._dedupe_policy())
                if decision.matches:
                    for match in decision.matches:
                        await self._insert_duplicate_candidate(
                            conn,
                            topic_id=topic_id,
                            topic_article_id=article["id"],
                            original_topic_article_id=match.original_id,
                            similarity_score=match.similarity_score,
                            detection_method=match.detection_method,
                        )
                    metadata: dict[str, Any] = {
                        "duplicate_check": decision.metadata(datetime.now(timezone.utc).isoformat())
                    }
                    if decision.outcome == "auto_discard":
                        metadata["rejection_reason"] = "duplicate_content"
                        article = await self._set_article_status(
                            conn,
                            article,
                            "discarded",
                            actor_type,
                            actor_id,
                            reason="duplicate_content",
                            metadata=metadata,
                        )
                        reason = "duplicate_content"
                    else:
                        article = await self._set_article_status(
                            conn,
                            article,
                            "duplicate_pending",
                            actor_type,
                            actor_id,
                            reason="duplicate_suspected",
                            metadata=metadata,
                        )
                        reason = "duplicate_pending"
                    return self._ingest_result(
                        "duplicate",
                        article,
                        reason=reason,
                        detection_method=decision.matches[0].detection_method,
                    )

                article, qualified = await self._apply_gate(conn, topic, article, shared, actor_type, actor_id)
                if article["status"] == "discarded":
                    return self._ingest_result("discarded", article, reason=article["metadata"].get("rejection_reason"))
                return self._ingest_result("accepted", article, qualified=qualified)

    async def get_topic_article(self, topic_article_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._require_topic_article(conn, topic_article_id)

    async def get_shared_content(self, shared_content_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {SHARED_CONTENT_COLUMNS} from shared_content where id = $1::uuid",
                shared_content_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("shared content not found") from exc
        if not row:
            raise RepositoryNotFoundError("shared content not found")
        return dict(row)

    # Duplicate review

    async def get_duplicate_candidate(self, candidate_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {CANDIDATE_COLUMNS} from duplicate_candidates where id = $1::uuid",
                candidate_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("duplicate candidate not found") from exc
        if not row:
            raise RepositoryNotFoundError("duplicate candidate not found")
        return self._candidate_row_to_dict(row)

    async def list_duplicate_candidates(
        self,
        *,
        status: str | None = None,
        topic_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {CANDIDATE_COLUMNS}
            from duplicate_candidates
            where ($1::text is null or status = $1::text)
              and ($2::uuid is null or topic_id = $2::uuid)
            order by created_at desc, id desc
            limit $3
            offset $4
            """,
            status,
            topic_id,
            self._coerce_limit(limit),
            max(0, offset),
        )
        return [self._candidate_row_to_dict(row) for row in rows]

    async def rescan_duplicates(
        self,
        *,
        topic_id: str | None = None,
        limit: int = 200,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, int]:
        pool = await self._get_pool()
        policy = self._dedupe_policy()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                if topic_id is not None:
                    await self._require_topic(conn, topic_id)
                rows = await conn.fetch(
                    f"""
                    select
                      {self._prefixed(TOPIC_ARTICLE_COLUMNS, "ta")},
                      sc.normalized_url,
                      sc.content_checksum,
                      sc.title,
                      sc.body
                    from topic_articles ta
                    join shared_content sc on sc.id = ta.shared_content_id
                    where ta.status in ('new', 'processed')
                      and ($1::uuid is null or ta.topic_id = $1::uuid)
                    order by ta.created_at desc, ta.id desc
                    limit $2
                    for update of ta skip locked
                    """,
                    topic_id,
                    self._coerce_limit(limit),
                )

                created_total = 0
                flagged = 0
                for row in rows:
                    article = self._article_row_to_dict(row)
                    window = await self._fetch_dedupe_window(
                        conn,
                        topic_id=article["topic_id"],
                        exclude_id=article["id"],
                        older_than=(article["created_at"], article["id"]),
                    )
                    decision = evaluate_duplicates(
                        incoming=DedupeSnapshot(
                            article_id=article["id"],
                            normalized_url=row["normalized_url"],
                            content_checksum=row["content_checksum"],
                            title=row["title"],
                            body=row["body"],
                            status=article["status"],
                        ),
                        recent=window,
                        policy=policy,
                    )
                    created = 0
                    for match in decision.matches:
                        if await self._insert_duplicate_candidate(
                            conn,
                            topic_id=article["topic_id"],
                            topic_article_id=article["id"],
                            original_topic_article_id=match.original_id,
                            similarity_score=match.similarity_score,
                            detection_method=match.detection_method,
                        ):
                            created += 1
                    created_total += created
                    if created and article["status"] == "new":
                        await self._set_article_status(
                            conn,
                            article,
                            "duplicate_pending",
                            actor_type,
                            actor_id,
                            reason="rescan",
                            metadata={"duplicate_check": decision.metadata(datetime.now(timezone.utc).isoformat())},
                        )
                        flagged += 1

        logger.info(
            "duplicate rescan topic_id=%s scanned=%s candidates_created=%s flagged=%s",
            topic_id,
            len(rows),
            created_total,
            flagged,
        )
        return {"scanned": len(rows), "candidates_created": created_total, "flagged": flagged}

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with self._transaction(conn):
                    candidate_row = await conn.fetchrow(
                        f"select {CANDIDATE_COLUMNS} from duplicate_candidates where id = $1::uuid for update",
                        candidate_id,
                    )
                    if not candidate_row:
                        raise RepositoryNotFoundError("duplicate candidate not found")
                    if candidate_row["status"] != "pending":
                        raise RepositoryConflictError("duplicate candidate is already resolved")

                    new_status = "confirmed" if resolution == "confirm" else "dismissed"
                    candidate_row = await conn.fetchrow(
                        f"""
                        update duplicate_candidates
                        set status = $2, resolved_by = $3, resolved_at = now()
                        where id = $1::uuid
                        returning {CANDIDATE_COLUMNS}
                        """,
                        candidate_id,
                        new_status,
                        actor_id,
                    )
                    candidate = self._candidate_row_to_dict(candidate_row)
                    await self._record_event(
                        conn,
                        "duplicate_candidate",
                        candidate_id,
                        new_status,
                        actor_type,
                        actor_id,
                        {
                            "topic_article_id": candidate["topic_article_id"],
                            "original_topic_article_id": candidate["original_topic_article_id"],
                        },
                    )

                    article = await self._require_topic_article(conn, candidate["topic_article_id"], for_update=True)
                    qualified = False
                    if resolution == "confirm":
                        if article["status"] not in {"discarded", "archived"}:
                            article = await self._set_article_status(
                                conn,
                                article,
                                "discarded",
                                actor_type,
                                actor_id,
                                reason="confirmed_duplicate",
                                metadata={"rejection_reason": "confirmed_duplicate"},
                            )
                            await self._cancel_pending_for_articles(
                                conn,
                                [article["id"]],
                                "article discarded: confirmed_duplicate",
                                actor_type,
                                actor_id,
                            )
                    elif article["status"] == "duplicate_pending":
                        still_pending = await conn.fetchval(
                            """
                            select count(*)
                            from duplicate_candidates
                            where topic_article_id = $1::uuid and status = 'pending'
                            """,
                            article["id"],
                        )
                        if not still_pending:
                            article = await self._set_article_status(
                                conn,
                                article,
                                "new",
                                actor_type,
                                actor_id,
                                reason="duplicate_dismissed",
                            )
                            topic = await self._require_topic(conn, article["topic_id"])
                            shared = await self._fetch_shared_content(conn, article["shared_content_id"])
                            article, qualified = await self._apply_gate(
                                conn,
                                topic,
                                article,
                                shared,
                                actor_type,
                                actor_id,
                            )
                    return {"candidate": candidate, "topic_article": article, "qualified": qualified}
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("duplicate candidate not found") from exc

    # Gate cleanup

    async def gate_cleanup(
        self,
        topic_id: str,
        *,
        dry_run: bool,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                topic = await self._require_topic(conn, topic_id)
                floor = self._gate_policy(topic).cleanup_relevance_floor
                rows = await conn.fetch(
                    f"""
                    select
                      {self._prefixed(TOPIC_ARTICLE_COLUMNS, "ta")},
                      sc.title,
                      sc.body,
                      sc.author,
                      sc.published_at,
                      sc.word_count
                    from topic_articles ta
                    join shared_content sc on sc.id = ta.shared_content_id
                    where ta.topic_id = $1::uuid and ta.status in ('new', 'processed')
                    order by ta.created_at asc, ta.id asc
                    for update of ta
                    """,
                    topic_id,
                )
                discarded: list[dict[str, Any]] = []
                for row in rows:
                    article = self._article_row_to_dict(row)
                    decision = self._evaluate_gate(
                        topic=topic,
                        shared=dict(row),
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
                    await self._set_article_status(
                        conn,
                        article,
                        "discarded",
                        actor_type,
                        actor_id,
                        reason=decision.rejection_reason,
                        metadata={**decision.metadata(), "cleanup": True},
                    )

                if not dry_run and discarded:
                    await self._cancel_pending_for_articles(
                        conn,
                        [row["topic_article_id"] for row in discarded],
                        "article discarded by cleanup",
                        actor_type,
                        actor_id,
                    )

        logger.info(
            "gate cleanup topic_id=%s dry_run=%s scanned=%s discarded=%s",
            topic_id,
            dry_run,
            len(rows),
            len(discarded),
        )
        return {"dry_run": dry_run, "scanned": len(rows), "discarded": discarded}

    # Generation queue

    async def enqueue(
        self,
        topic_article_id: str,
        *,
        params: dict[str, Any] | None = None,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        resolved = self._resolve_queue_params(params)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with self._transaction(conn):
                    article = await self._require_topic_article(conn, topic_article_id, for_update=True)
                    if article["status"] in UNQUEUEABLE_ARTICLE_STATUSES:
                        raise RepositoryValidationError(
                            f"topic article in status {article['status']} cannot be queued"
                        )
                    active = await conn.fetchval(
                        """
                        select 1
                        from generation_queue
                        where topic_article_id = $1::uuid and status in ('pending', 'processing')
                        """,
                        topic_article_id,
                    )
                    if active:
                        raise RepositoryConflictError("topic article already has an active queue item")
                    if article["status"] == "new":
                        await self._set_article_status(
                            conn,
                            article,
                            "processed",
                            actor_type,
                            actor_id,
                            reason="operator_approved",
                        )

                    row = await conn.fetchrow(
                        f"""
                        insert into generation_queue (
                          topic_article_id,
                          topic_id,
                          max_attempts,
                          slide_type,
                          tone,
                          writing_style,
                          ai_provider
                        )
                        values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7)
                        returning {QUEUE_COLUMNS}
                        """,
                        topic_article_id,
                        article["topic_id"],
                        resolved["max_attempts"],
                        resolved["slide_type"],
                        resolved["tone"],
                        resolved["writing_style"],
                        resolved["ai_provider"],
                    )
                    item = self._item_row_to_dict(row)
                    await self._record_event(
                        conn,
                        "queue_item",
                        item["id"],
                        "enqueued",
                        actor_type,
                        actor_id,
                        {"topic_article_id": topic_article_id, "slide_type": item["slide_type"]},
                    )
                    return item
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("topic article already has an active queue item") from exc

    async def get_queue_item(self, item_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._require_item(conn, item_id)

    async def list_pending(self, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {QUEUE_COLUMNS}
            from generation_queue
            where status = 'pending' and next_run_at <= now()
            order by created_at asc, id asc
            limit $1
            """,
            self._coerce_limit(limit),
        )
        return [self._item_row_to_dict(row) for row in rows]

    async def claim(self, item_id: str, worker_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with self._transaction(conn):
                    # Article row before queue row, matching enqueue and cancellation.
                    pending = await self._require_item(conn, item_id)
                    article = await self._require_topic_article(conn, pending["topic_article_id"], for_update=True)
                    row = await conn.fetchrow(
                        f"""
                        update generation_queue
                        set
                          status = 'processing',
                          attempts = attempts + 1,
                          started_at = now(),
                          claimed_by = $2,
                          updated_at = now()
                        where id = $1::uuid
                          and status = 'pending'
                          and attempts < max_attempts
                          and next_run_at <= now()
                        returning {QUEUE_COLUMNS}
                        """,
                        item_id,
                        worker_id,
                    )
                    if not row:
                        raise RepositoryConflictError("queue item is not claimable")

                    item = self._item_row_to_dict(row)
                    await self._set_article_status(conn, article, "processing", "machine", worker_id, reason="claimed")
                    await self._record_event(
                        conn,
                        "queue_item",
                        item["id"],
                        "claimed",
                        "machine",
                        worker_id,
                        {"attempts": item["attempts"]},
                    )
                    item["inputs"] = await self._fetch_claim_inputs(conn, item["topic_article_id"])
                    return item
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("queue item not found") from exc

    async def claim_next(self, worker_id: str, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                rows = await conn.fetch(
                    f"""
                    with next_items as (
                      select q.id
                      from generation_queue q
                      join topic_articles ta on ta.id = q.topic_article_id
                      where q.status = 'pending'
                        and q.attempts < q.max_attempts
                        and q.next_run_at <= now()
                        and ta.status = 'processed'
                      order by q.created_at asc, q.id asc
                      limit $2
                      for update of ta skip locked
                    )
                    update generation_queue
                    set
                      status = 'processing',
                      attempts = attempts + 1,
                      started_at = now(),
                      claimed_by = $1,
                      updated_at = now()
                    from next_items
                    where generation_queue.id = next_items.id
                      and generation_queue.status = 'pending'
                    returning {self._prefixed(QUEUE_COLUMNS, "generation_queue")}
                    """,
                    worker_id,
                    self._coerce_limit(limit, maximum=100),
                )
                claimed: list[dict[str, Any]] = []
                for row in sorted(rows, key=lambda value: (value["created_at"], value["id"])):
                    item = self._item_row_to_dict(row)
                    article = await self._require_topic_article(conn, item["topic_article_id"], for_update=True)
                    await self._set_article_status(conn, article, "processing", "machine", worker_id, reason="claimed")
                    await self._record_event(
                        conn,
                        "queue_item",
                        item["id"],
                        "claimed",
                        "machine",
                        worker_id,
                        {"attempts": item["attempts"]},
                    )
                    item["inputs"] = await self._fetch_claim_inputs(conn, item["topic_article_id"])
                    claimed.append(item)
                return claimed

    async def submit_result(self, item_id: str, *, worker_id: str, outcome: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with self._transaction(conn):
                    snapshot = await self._require_item(conn, item_id)
                    article = await self._require_topic_article(conn, snapshot["topic_article_id"], for_update=True)
                    item = await self._require_item(conn, item_id, for_update=True)
                    if item["status"] == "cancelled":
                        logger.info("discarding result for cancelled queue item id=%s worker_id=%s", item_id, worker_id)
                        return {"outcome": "discarded_cancelled", "item": item, "story": None}
                    if item["status"] != "processing":
                        raise RepositoryConflictError("queue item is not processing")
                    if item["claimed_by"] != worker_id:
                        raise RepositoryForbiddenError("queue item claimed by another worker")

                    parsed = self._parse_generation_outcome(outcome)
                    story: dict[str, Any] | None = None

                    if parsed.succeeded:
                        shared = await self._fetch_shared_content(conn, article["shared_content_id"])
                        story = await self._insert_story(
                            conn,
                            topic_id=item["topic_id"],
                            title=parsed.title or shared["title"],
                            slides=parsed.slides or [],
                            topic_article_id=article["id"],
                            features=parsed.features,
                            metadata=parsed.story_metadata,
                            actor_type="machine",
                            actor_id=worker_id,
                        )
                        row = await conn.fetchrow(
                            f"""
                            update generation_queue
                            set
                              status = 'completed',
                              completed_at = now(),
                              error_message = null,
                              result_data = $2::jsonb,
                              updated_at = now()
                            where id = $1::uuid
                            returning {QUEUE_COLUMNS}
                            """,
                            item_id,
                            json.dumps({"story_id": story["id"], "slide_count": parsed.slide_count}),
                        )
                        resolved = "completed"
                    else:
                        error_message = self._format_error_message(parsed)
                        if self._should_retry(item, parsed):
                            delay = self._compute_retry_delay_seconds(attempt=item["attempts"])
                            row = await conn.fetchrow(
                                f"""
                                update generation_queue
                                set
                                  status = 'pending',
                                  error_message = $2,
                                  next_run_at = now() + ($3::int * interval '1 second'),
                                  started_at = null,
                                  claimed_by = null,
                                  updated_at = now()
                                where id = $1::uuid
                                returning {QUEUE_COLUMNS}
                                """,
                                item_id,
                                error_message,
                                delay,
                            )
                            resolved = "retry_scheduled"
                        else:
                            row = await conn.fetchrow(
                                f"""
                                update generation_queue
                                set status = 'failed', error_message = $2, updated_at = now()
                                where id = $1::uuid
                                returning {QUEUE_COLUMNS}
                                """,
                                item_id,
                                error_message,
                            )
                            resolved = "failed"

                    item = self._item_row_to_dict(row)
                    if article["status"] == "processing":
                        await self._set_article_status(
                            conn,
                            article,
                            "processed",
                            "machine",
                            worker_id,
                            reason=f"generation_{resolved}",
                        )
                    await self._record_event(
                        conn,
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
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("queue item not found") from exc

        logger.info(
            "queue result item_id=%s outcome=%s attempts=%s/%s",
            item_id,
            resolved,
            item["attempts"],
            item["max_attempts"],
        )
        return {"outcome": resolved, "item": item, "story": story}

    async def reset_stalled(
        self,
        *,
        timeout_seconds: int | None = None,
        limit: int = 100,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> dict[str, int]:
        timeout = self.settings.queue_stall_timeout_seconds if timeout_seconds is None else timeout_seconds
        pool = await self._get_pool()
        reset = 0
        failed = 0
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                rows = await conn.fetch(
                    """
                    select
                      id::text as id,
                      topic_article_id::text as topic_article_id,
                      attempts,
                      max_attempts
                    from generation_queue
                    where status = 'processing'
                      and updated_at < now() - ($1::int * interval '1 second')
                    order by updated_at asc, id asc
                    limit $2
                    """,
                    max(0, timeout),
                    self._coerce_limit(limit),
                )
                for candidate in rows:
                    article = await self._require_topic_article(conn, candidate["topic_article_id"], for_update=True)
                    row = await conn.fetchrow(
                        """
                        select id::text as id, attempts, max_attempts
                        from generation_queue
                        where id = $1::uuid
                          and status = 'processing'
                          and updated_at < now() - ($2::int * interval '1 second')
                        for update
                        """,
                        candidate["id"],
                        max(0, timeout),
                    )
                    if not row:
                        continue
                    if row["attempts"] >= row["max_attempts"]:
                        await conn.execute(
                            """
                            update generation_queue
                            set
                              status = 'failed',
                              error_message = $2,
                              started_at = null,
                              claimed_by = null,
                              updated_at = now()
                            where id = $1::uuid
                            """,
                            row["id"],
                            STALLED_EXHAUSTED_MESSAGE,
                        )
                        failed += 1
                        event_type = "stalled_failed"
                    else:
                        await conn.execute(
                            """
                            update generation_queue
                            set
                              status = 'pending',
                              next_run_at = now(),
                              started_at = null,
                              claimed_by = null,
                              updated_at = now()
                            where id = $1::uuid
                            """,
                            row["id"],
                        )
                        reset += 1
                        event_type = "stalled_reset"
                    if article["status"] == "processing":
                        await self._set_article_status(conn, article, "processed", actor_type, actor_id, reason=event_type)
                    await self._record_event(
                        conn,
                        "queue_item",
                        row["id"],
                        event_type,
                        actor_type,
                        actor_id,
                        {"attempts": row["attempts"]},
                    )

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
        statuses = ["pending", "processing"] if include_processing else ["pending"]
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with self._transaction(conn):
                    count = await self._cancel_items(
                        conn,
                        topic_id=topic_id,
                        topic_article_ids=topic_article_ids or None,
                        statuses=statuses,
                        reason=reason,
                        actor_type=actor_type,
                        actor_id=actor_id,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid topic or topic article id") from exc
        if count:
            logger.info("cancelled queue items count=%s topic_id=%s reason=%s", count, topic_id, reason)
        return count

    async def retry(self, item_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with self._transaction(conn):
                    item = await self._require_item(conn, item_id, for_update=True)
                    if item["status"] != "failed":
                        raise RepositoryConflictError(f"queue item in status {item['status']} cannot be retried")
                    article = await self._require_topic_article(conn, item["topic_article_id"])
                    if article["status"] in UNQUEUEABLE_ARTICLE_STATUSES:
                        raise RepositoryValidationError(
                            f"topic article in status {article['status']} cannot be queued"
                        )
                    row = await conn.fetchrow(
                        f"""
                        update generation_queue
                        set
                          status = 'pending',
                          attempts = 0,
                          next_run_at = now(),
                          started_at = null,
                          claimed_by = null,
                          error_message = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {QUEUE_COLUMNS}
                        """,
                        item_id,
                    )
                    await self._record_event(
                        conn,
                        "queue_item",
                        item_id,
                        "retried",
                        actor_type,
                        actor_id,
                        {"previous_error": item["error_message"]},
                    )
                    return self._item_row_to_dict(row)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("topic article already has an active queue item") from exc

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
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {QUEUE_COLUMNS}
            from generation_queue
            where ($1::text is null or status::text = $1::text)
              and ($2::uuid is null or topic_id = $2::uuid)
            order by updated_at desc, id desc
            limit $3
            offset $4
            """,
            status,
            topic_id,
            self._coerce_limit(limit, maximum=500),
            max(0, offset),
        )
        return [self._item_row_to_dict(row) for row in rows]

    async def list_item_events(self, item_id: str, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._require_item(conn, item_id)
            rows = await conn.fetch(
                """
                select
                  id,
                  entity_type,
                  entity_id::text as entity_id,
                  event_type,
                  actor_type,
                  actor_id,
                  payload,
                  created_at
                from pipeline_events
                where entity_type = 'queue_item' and entity_id = $1::uuid
                order by id desc
                limit $2
                offset $3
                """,
                item_id,
                self._coerce_limit(limit, maximum=500),
                max(0, offset),
            )
        return [self._event_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                await self._require_topic(conn, topic_id)
                if topic_article_id is not None:
                    await self._require_topic_article(conn, topic_article_id)
                return await self._insert_story(
                    conn,
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

    async def get_story(self, story_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._require_story(conn, story_id)

    async def mark_ready(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                story = await self._require_story(conn, story_id, for_update=True)
                validate_story_transition(from_status=story["status"], to_status="ready")
                validate_ready(title=story["title"], slide_count=len(story["slides"]))
                return await self._set_story_status(conn, story, "ready", actor_type, actor_id)

    async def publish_story(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                story = await self._require_story(conn, story_id, for_update=True)
                validate_story_transition(from_status=story["status"], to_status="published")
                if self.settings.story_reject_duplicate_titles:
                    titles = await conn.fetch(
                        """
                        select title
                        from stories
                        where topic_id = $1::uuid
                          and id <> $2::uuid
                          and status = 'published'
                          and is_published = true
                        """,
                        story["topic_id"],
                        story_id,
                    )
                    title_key = normalize_title(story["title"])
                    if any(normalize_title(row["title"]) == title_key for row in titles):
                        raise RepositoryConflictError("a published story with this title already exists in the topic")
                return await self._set_story_status(
                    conn,
                    story,
                    "published",
                    actor_type,
                    actor_id,
                    extra_sql="is_published = true, published_at = now()",
                )

    async def archive_story(self, story_id: str, *, actor_type: str, actor_id: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                story = await self._require_story(conn, story_id, for_update=True)
                validate_story_transition(from_status=story["status"], to_status="archived")
                return await self._set_story_status(
                    conn,
                    story,
                    "archived",
                    actor_type,
                    actor_id,
                    extra_sql="is_published = false, processing_stage = null, stage_started_at = null",
                )

    async def assign_slug(self, story_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                story = await self._require_story(conn, story_id, for_update=True)
                if story["slug"]:
                    return story
                slug = slugify(story["title"])
                taken = await conn.fetchval("select 1 from stories where slug = $1 and id <> $2::uuid", slug, story_id)
                if taken:
                    slug = slugify(story["title"], suffix=story_id[:8])
                await conn.execute(
                    "update stories set slug = $2, updated_at = now() where id = $1::uuid",
                    story_id,
                    slug,
                )
                return await self._require_story(conn, story_id)

    async def begin_stage(self, story_id: str, stage: str) -> dict[str, Any]:
        validate_stage(stage)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                story = await self._require_story(conn, story_id, for_update=True)
                if story["status"] == "archived":
                    raise RepositoryConflictError("archived stories cannot enter a processing stage")
                if story["processing_stage"] and story["processing_stage"] != stage:
                    raise RepositoryConflictError(f"story stage {story['processing_stage']} is already in progress")
                await conn.execute(
                    """
                    update stories
                    set processing_stage = $2, stage_started_at = now(), updated_at = now()
                    where id = $1::uuid
                    """,
                    story_id,
                    stage,
                )
                return await self._require_story(conn, story_id)

    async def complete_stage(self, story_id: str, stage: str, *, automated: bool) -> dict[str, Any]:
        completed_column, auto_flag_column = validate_stage(stage)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                story = await self._require_story(conn, story_id, for_update=True)
                if story["processing_stage"] != stage:
                    raise RepositoryConflictError(f"story stage {stage} is not in progress")
                # Column names come from the fixed stage table, never from input.
                await conn.execute(
                    f"""
                    update stories
                    set
                      {completed_column} = now(),
                      {auto_flag_column} = $2,
                      processing_stage = null,
                      stage_started_at = null,
                      updated_at = now()
                    where id = $1::uuid
                    """,
                    story_id,
                    automated,
                )
                return await self._require_story(conn, story_id)

    async def reset_stalled_stories(self, *, timeout_seconds: int | None = None) -> int:
        timeout = self.settings.story_stage_timeout_seconds if timeout_seconds is None else timeout_seconds
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                rows = await conn.fetch(
                    """
                    with stalled as (
                      select id, status
                      from stories
                      where processing_stage is not null
                        and (stage_started_at is null or stage_started_at <= now() - ($1::int * interval '1 second'))
                      for update skip locked
                    )
                    update stories
                    set
                      processing_stage = null,
                      stage_started_at = null,
                      status = case when stalled.status = 'ready' then 'draft'::story_status else stalled.status end,
                      updated_at = now()
                    from stalled
                    where stories.id = stalled.id
                    returning stories.id::text as id, stalled.status::text as previous_status
                    """,
                    max(0, timeout),
                )
                for row in rows:
                    if row["previous_status"] == "ready":
                        await self._record_event(
                            conn,
                            "story",
                            row["id"],
                            "status_changed",
                            "system",
                            None,
                            {"from": "ready", "to": "draft", "reason": "stage_timeout"},
                        )
        if rows:
            logger.info("reset stalled story stages count=%s timeout_seconds=%s", len(rows), timeout)
        return len(rows)

    async def sweep_story_integrity(
        self,
        *,
        topic_id: str | None = None,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> dict[str, int]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with self._transaction(conn):
                deleted = await conn.fetch(
                    """
                    delete from stories s
                    where ($1::uuid is null or s.topic_id = $1::uuid)
                      and not exists (select 1 from slides sl where sl.story_id = s.id)
                    returning s.id::text as id
                    """,
                    topic_id,
                )
                for row in deleted:
                    await self._record_event(conn, "story", row["id"], "deleted_empty", actor_type, actor_id, {})

                published = await conn.fetch(
                    """
                    select
                      id::text as id,
                      topic_id::text as topic_id,
                      title,
                      status::text as status,
                      is_published,
                      published_at,
                      created_at
                    from stories
                    where ($1::uuid is null or topic_id = $1::uuid)
                      and status = 'published'
                      and is_published = true
                    for update
                    """,
                    topic_id,
                )
                duplicate_ids = duplicate_published_titles([dict(row) for row in published])
                for story_id in duplicate_ids:
                    await conn.execute(
                        """
                        update stories
                        set status = 'archived', is_published = false, updated_at = now()
                        where id = $1::uuid
                        """,
                        story_id,
                    )
                    await self._record_event(
                        conn,
                        "story",
                        story_id,
                        "status_changed",
                        actor_type,
                        actor_id,
                        {"from": "published", "to": "archived", "reason": "duplicate_title"},
                    )

        logger.info(
            "story integrity sweep topic_id=%s deleted_empty=%s archived_duplicates=%s",
            topic_id,
            len(deleted),
            len(duplicate_ids),
        )
        return {"deleted_empty": len(deleted), "archived_duplicates": len(duplicate_ids)}

    # Publication gateway

    async def list_published_stories(self, topic_id: str, *, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._require_visible_topic(conn, topic_id)
            return await self._published_page(conn, topic_id, feature=None, limit=limit, offset=offset)

    async def list_feature_stories(
        self,
        topic_id: str,
        feature: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        validate_feature(feature)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            topic = await self._require_visible_topic(conn, topic_id)
            if feature not in topic["enabled_features"]:
                raise RepositoryNotFoundError("topic not found")
            return await self._published_page(conn, topic_id, feature=feature, limit=limit, offset=offset)

    # Internal helpers

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @asynccontextmanager
    async def _transaction(self, conn: asyncpg.Connection) -> AsyncIterator[None]:
        """Run a transaction, surfacing lock contention aborts as conflicts."""
        try:
            async with conn.transaction():
                yield
        except (pg_exc.DeadlockDetectedError, pg_exc.SerializationError) as exc:
            logger.warning("transaction aborted sqlstate=%s error=%s", exc.sqlstate, exc)
            raise RepositoryConflictError("concurrent update conflict, retry the request") from exc

    async def _record_event(
        self,
        conn: asyncpg.Connection,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into pipeline_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2::uuid, $3, $4, $5, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload, default=str),
        )

    async def _require_topic(
        self,
        conn: asyncpg.Connection,
        topic_id: str,
        *,
        for_update: bool = False,
    ) -> dict[str, Any]:
        lock = " for update" if for_update else ""
        try:
            row = await conn.fetchrow(f"select {TOPIC_COLUMNS} from topics where id = $1::uuid{lock}", topic_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("topic not found") from exc
        if not row:
            raise RepositoryNotFoundError("topic not found")
        return self._topic_row_to_dict(row)

    async def _require_visible_topic(self, conn: asyncpg.Connection, topic_id: str) -> dict[str, Any]:
        topic = await self._require_topic(conn, topic_id)
        if not topic["is_active"] or not topic["is_public"]:
            raise RepositoryNotFoundError("topic not found")
        return topic

    async def _require_topic_article(
        self,
        conn: asyncpg.Connection,
        topic_article_id: str,
        *,
        for_update: bool = False,
    ) -> dict[str, Any]:
        lock = " for update" if for_update else ""
        try:
            row = await conn.fetchrow(
                f"select {TOPIC_ARTICLE_COLUMNS} from topic_articles where id = $1::uuid{lock}",
                topic_article_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("topic article not found") from exc
        if not row:
            raise RepositoryNotFoundError("topic article not found")
        return self._article_row_to_dict(row)

    async def _require_item(
        self,
        conn: asyncpg.Connection,
        item_id: str,
        *,
        for_update: bool = False,
    ) -> dict[str, Any]:
        lock = " for update" if for_update else ""
        try:
            row = await conn.fetchrow(f"select {QUEUE_COLUMNS} from generation_queue where id = $1::uuid{lock}", item_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("queue item not found") from exc
        if not row:
            raise RepositoryNotFoundError("queue item not found")
        return self._item_row_to_dict(row)

    async def _require_story(
        self,
        conn: asyncpg.Connection,
        story_id: str,
        *,
        for_update: bool = False,
    ) -> dict[str, Any]:
        try:
            if for_update:
                await conn.execute("select 1 from stories where id = $1::uuid for update", story_id)
            row = await conn.fetchrow(f"select {STORY_COLUMNS} from stories s where s.id = $1::uuid", story_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("story not found") from exc
        if not row:
            raise RepositoryNotFoundError("story not found")
        return self._story_row_to_dict(row)

    async def _fetch_shared_content(self, conn: asyncpg.Connection, shared_content_id: str) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"select {SHARED_CONTENT_COLUMNS} from shared_content where id = $1::uuid",
            shared_content_id,
        )
        if not row:
            raise RepositoryNotFoundError("shared content not found")
        return dict(row)

    async def _upsert_shared_content(
        self,
        conn: asyncpg.Connection,
        *,
        url: str,
        normalized_url: str,
        title: str | None,
        body: str | None,
        author: str | None,
        published_at: datetime | None,
    ) -> tuple[dict[str, Any], bool]:
        row = await conn.fetchrow(
            f"""
            insert into shared_content (
              url,
              normalized_url,
              canonical_hash,
              title,
              body,
              author,
              published_at,
              content_checksum,
              word_count,
              source_domain
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            on conflict (normalized_url) do update set last_seen_at = now()
            returning {SHARED_CONTENT_COLUMNS}, (xmax = 0) as created
            """,
            url,
            normalized_url,
            canonical_hash(normalized_url),
            title,
            body,
            author,
            published_at,
            content_checksum(title, body),
            word_count(body),
            source_domain(normalized_url),
        )
        record = dict(row)
        created = bool(record.pop("created"))
        return record, created

    async def _fetch_dedupe_window(
        self,
        conn: asyncpg.Connection,
        *,
        topic_id: str,
        exclude_id: str,
        older_than: tuple[datetime, str] | None = None,
    ) -> list[DedupeSnapshot]:
        older_at, older_id = older_than if older_than else (None, None)
        rows = await conn.fetch(
            """
            select
              ta.id::text as id,
              ta.status::text as status,
              sc.normalized_url,
              sc.content_checksum,
              sc.title,
              sc.body
            from topic_articles ta
            join shared_content sc on sc.id = ta.shared_content_id
            where ta.topic_id = $1::uuid
              and ta.id <> $2::uuid
              and ta.status not in ('discarded', 'archived')
              and (
                $4::timestamptz is null
                or ta.created_at < $4::timestamptz
                or (ta.created_at = $4::timestamptz and ta.id < $5::uuid)
              )
            order by ta.created_at desc, ta.id desc
            limit $3
            """,
            topic_id,
            exclude_id,
            self.dedupe_window_size,
            older_at,
            older_id,
        )
        return [
            DedupeSnapshot(
                article_id=row["id"],
                normalized_url=row["normalized_url"],
                content_checksum=row["content_checksum"],
                title=row["title"],
                body=row["body"],
                status=row["status"],
            )
            for row in rows
        ]

    async def _insert_duplicate_candidate(
        self,
        conn: asyncpg.Connection,
        *,
        topic_id: str,
        topic_article_id: str,
        original_topic_article_id: str,
        similarity_score: float,
        detection_method: str,
    ) -> bool:
        inserted = await conn.fetchval(
            """
            insert into duplicate_candidates (
              topic_id,
              topic_article_id,
              original_topic_article_id,
              similarity_score,
              detection_method
            )
            values ($1::uuid, $2::uuid, $3::uuid, $4::float8, $5)
            on conflict (topic_article_id, original_topic_article_id) do nothing
            returning 1
            """,
            topic_id,
            topic_article_id,
            original_topic_article_id,
            similarity_score,
            detection_method,
        )
        return bool(inserted)

    async def _apply_gate(
        self,
        conn: asyncpg.Connection,
        topic: dict[str, Any],
        article: dict[str, Any],
        shared: dict[str, Any],
        actor_type: str,
        actor_id: str | None,
    ) -> tuple[dict[str, Any], bool]:
        decision: GateDecision = self._evaluate_gate(
            topic=topic,
            shared=shared,
            import_metadata=article["import_metadata"],
        )
        await conn.execute(
            """
            update topic_articles
            set
              regional_relevance_score = $2,
              content_quality_score = $3,
              keyword_matches = $4::text[],
              is_snippet = $5,
              snippet_reason = $6
            where id = $1::uuid
            """,
            article["id"],
            decision.regional_relevance_score,
            decision.content_quality_score,
            list(decision.keyword_matches),
            decision.is_snippet,
            decision.snippet_reason,
        )
        article = await self._set_article_status(
            conn,
            article,
            decision.status,
            actor_type,
            actor_id,
            reason=decision.rejection_reason or "gate_accepted",
            metadata=decision.metadata(),
        )
        if decision.outcome != "accepted":
            return article, False
        qualified = is_queue_eligible(
            status=article["status"],
            quality_score=decision.content_quality_score,
            relevance_score=decision.regional_relevance_score,
            policy=self._gate_policy(topic),
        )
        return article, qualified

    async def _set_article_status(
        self,
        conn: asyncpg.Connection,
        article: dict[str, Any],
        to_status: str,
        actor_type: str,
        actor_id: str | None,
        *,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        from_status = article["status"]
        validate_article_transition(from_status=from_status, to_status=to_status)
        row = await conn.fetchrow(
            f"""
            update topic_articles
            set
              status = $2::topic_article_status,
              metadata = metadata || $3::jsonb,
              updated_at = now()
            where id = $1::uuid
            returning {TOPIC_ARTICLE_COLUMNS}
            """,
            article["id"],
            to_status,
            json.dumps(metadata or {}),
        )
        if from_status != to_status:
            await self._record_event(
                conn,
                "topic_article",
                article["id"],
                "status_changed",
                actor_type,
                actor_id,
                {"from": from_status, "to": to_status, "reason": reason},
            )
        return self._article_row_to_dict(row)

    async def _fetch_claim_inputs(self, conn: asyncpg.Connection, topic_article_id: str) -> dict[str, Any]:
        row = await conn.fetchrow(
            """
            select sc.title, sc.body, sc.url, sc.author, sc.published_at
            from topic_articles ta
            join shared_content sc on sc.id = ta.shared_content_id
            where ta.id = $1::uuid
            """,
            topic_article_id,
        )
        return {
            "title": row["title"],
            "body": row["body"],
            "url": row["url"],
            "author": row["author"],
            "published_at": row["published_at"].isoformat() if row["published_at"] else None,
        }

    async def _cancel_items(
        self,
        conn: asyncpg.Connection,
        *,
        topic_id: str | None,
        topic_article_ids: list[str] | None,
        statuses: list[str],
        reason: str,
        actor_type: str,
        actor_id: str | None,
    ) -> int:
        await conn.execute(
            """
            select ta.id
            from topic_articles ta
            join generation_queue q on q.topic_article_id = ta.id
            where q.status::text = any($3::text[])
              and ($1::uuid is null or q.topic_id = $1::uuid)
              and ($2::uuid[] is null or q.topic_article_id = any($2::uuid[]))
            order by ta.id
            for update of ta
            """,
            topic_id,
            topic_article_ids,
            statuses,
        )
        rows = await conn.fetch(
            """
            update generation_queue q
            set status = 'cancelled', error_message = $4, updated_at = now()
            from (
              select id, status::text as previous_status
              from generation_queue
              where status::text = any($3::text[])
                and ($1::uuid is null or topic_id = $1::uuid)
                and ($2::uuid[] is null or topic_article_id = any($2::uuid[]))
              for update
            ) matched
            where q.id = matched.id
            returning
              q.id::text as id,
              q.topic_article_id::text as topic_article_id,
              matched.previous_status
            """,
            topic_id,
            topic_article_ids,
            statuses,
            reason,
        )
        for row in rows:
            if row["previous_status"] == "processing":
                article = await self._require_topic_article(conn, row["topic_article_id"], for_update=True)
                if article["status"] == "processing":
                    await self._set_article_status(
                        conn,
                        article,
                        "processed",
                        actor_type,
                        actor_id,
                        reason="queue_cancelled",
                    )
            await self._record_event(conn, "queue_item", row["id"], "cancelled", actor_type, actor_id, {"reason": reason})
        return len(rows)

    async def _cancel_pending_for_articles(
        self,
        conn: asyncpg.Connection,
        topic_article_ids: list[str],
        reason: str,
        actor_type: str,
        actor_id: str | None,
    ) -> int:
        return await self._cancel_items(
            conn,
            topic_id=None,
            topic_article_ids=topic_article_ids,
            statuses=["pending"],
            reason=reason,
            actor_type=actor_type,
            actor_id=actor_id,
        )

    async def _insert_story(
        self,
        conn: asyncpg.Connection,
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
        story_id = await conn.fetchval(
            """
            insert into stories (topic_id, article_id, topic_article_id, title, features, metadata)
            values ($1::uuid, $2::uuid, $3::uuid, $4, $5::text[], $6::jsonb)
            returning id::text
            """,
            topic_id,
            article_id,
            topic_article_id,
            title,
            self._coerce_str_list(features),
            json.dumps(metadata or {}),
        )
        if slides:
            await conn.executemany(
                """
                insert into slides (story_id, slide_number, content)
                values ($1::uuid, $2, $3::jsonb)
                """,
                [(story_id, index, json.dumps(slide)) for index, slide in enumerate(slides, start=1)],
            )
        await self._record_event(conn, "story", story_id, "created", actor_type, actor_id, {"slide_count": len(slides)})
        return await self._require_story(conn, story_id)

    async def _set_story_status(
        self,
        conn: asyncpg.Connection,
        story: dict[str, Any],
        to_status: str,
        actor_type: str,
        actor_id: str | None,
        *,
        extra_sql: str | None = None,
    ) -> dict[str, Any]:
        extra = f", {extra_sql}" if extra_sql else ""
        await conn.execute(
            f"""
            update stories
            set status = $2::story_status, updated_at = now(){extra}
            where id = $1::uuid
            """,
            story["id"],
            to_status,
        )
        await self._record_event(
            conn,
            "story",
            story["id"],
            "status_changed",
            actor_type,
            actor_id,
            {"from": story["status"], "to": to_status, "reason": None},
        )
        return await self._require_story(conn, story["id"])

    async def _published_page(
        self,
        conn: asyncpg.Connection,
        topic_id: str,
        *,
        feature: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        rows = await conn.fetch(
            f"""
            select {STORY_COLUMNS}
            from stories s
            where s.topic_id = $1::uuid
              and s.status = 'published'
              and s.is_published = true
              and ($2::text is null or $2::text = any(s.features))
            order by s.published_at desc, s.id desc
            limit $3
            offset $4
            """,
            topic_id,
            feature,
            self._coerce_limit(limit, maximum=100),
            max(0, offset),
        )
        return [self._story_row_to_dict(row) for row in rows]

    @staticmethod
    def _prefixed(columns: str, alias: str) -> str:
        lines = [line.strip() for line in columns.strip().splitlines() if line.strip()]
        return ",\n".join(f"{alias}.{line.rstrip(',')}" for line in lines)

    @classmethod
    def _topic_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        topic = dict(row)
        for key in ("keywords", "negative_keywords", "competing_regions", "enabled_features"):
            topic[key] = list(topic.get(key) or [])
        topic["gate_overrides"] = cls._coerce_json_dict(topic.get("gate_overrides"))
        return topic

    @classmethod
    def _article_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "topic_id": row["topic_id"],
            "shared_content_id": row["shared_content_id"],
            "status": row["status"],
            "regional_relevance_score": row["regional_relevance_score"],
            "content_quality_score": row["content_quality_score"],
            "keyword_matches": list(row["keyword_matches"] or []),
            "is_snippet": row["is_snippet"],
            "snippet_reason": row["snippet_reason"],
            "import_metadata": cls._coerce_json_dict(row["import_metadata"]),
            "metadata": cls._coerce_json_dict(row["metadata"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @classmethod
    def _item_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        item = dict(row)
        result_data = item.get("result_data")
        item["result_data"] = cls._coerce_json_dict(result_data) if result_data is not None else None
        return item

    @classmethod
    def _story_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        story = dict(row)
        slides = story.get("slides")
        if isinstance(slides, str):
            try:
                slides = json.loads(slides)
            except json.JSONDecodeError:
                slides = []
        story["slides"] = [slide for slide in slides or [] if isinstance(slide, dict)]
        story["features"] = list(story.get("features") or [])
        story["metadata"] = cls._coerce_json_dict(story.get("metadata"))
        return story

    @staticmethod
    def _candidate_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        candidate = dict(row)
        candidate["similarity_score"] = float(candidate["similarity_score"])
        return candidate

    @classmethod
    def _event_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        event = dict(row)
        event["payload"] = cls._coerce_json_dict(event.get("payload"))
        return event

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


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.storage_backend == "postgres":
        return PostgresRepository(
            settings,
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )
    return InMemoryRepository(settings)
