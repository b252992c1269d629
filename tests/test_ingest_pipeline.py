from __future__ import annotations

import asyncio
from typing import Any

import pytest
from conftest import make_body

from storyflow.core.config import Settings
from storyflow.services.errors import RepositoryConflictError, RepositoryValidationError
from storyflow.services.pipeline import PipelineService, build_pipeline
from storyflow.services.store import InMemoryRepository


async def _create_topic(repository: InMemoryRepository, **overrides: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
        "name": "Harbour Town",
        "owner_id": "owner-1",
        "keywords": ["harbour"],
        "negative_keywords": ["horoscope"],
    }
    values.update(overrides)
    return await repository.create_topic(**values)


async def _ingest(
    pipeline: PipelineService,
    topic_id: str,
    url: str,
    title: str,
    body: str,
    *,
    relevance: int = 40,
) -> dict[str, Any]:
    return await pipeline.ingest(
        topic_id=topic_id,
        url=url,
        title=title,
        body=body,
        author="Staff Reporter",
        import_metadata={"regional_relevance_score": relevance},
        actor_id="local-scraper",
    )


def test_ingest_accepts_and_qualifies_relevant_article(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)

        result = await _ingest(pipeline, topic["id"], "https://news.example/harbour", "Harbour budget", make_body("a"))

        assert result["outcome"] == "accepted"
        assert result["status"] == "processed"
        assert result["qualified"] is True
        article = await repository.get_topic_article(result["topic_article_id"])
        assert article["keyword_matches"] == ["harbour"]
        assert article["metadata"]["gate"] == {"outcome": "accepted", "relevance_score": 40}
        assert repository.queue_items == {}

    asyncio.run(scenario())


def test_ingest_auto_enqueues_when_topic_opts_in(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository, auto_enqueue=True)

        result = await _ingest(pipeline, topic["id"], "https://news.example/harbour", "Harbour budget", make_body("a"))

        items = list(repository.queue_items.values())
        assert len(items) == 1
        assert items[0]["topic_article_id"] == result["topic_article_id"]
        assert items[0]["status"] == "pending"
        assert items[0]["slide_type"] == settings.queue_default_slide_type

    asyncio.run(scenario())


def test_ingest_same_url_in_topic_is_exact_duplicate(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)

        first = await _ingest(pipeline, topic["id"], "https://news.example/harbour", "Harbour budget", make_body("a"))
        second = await _ingest(
            pipeline,
            topic["id"],
            "https://NEWS.example/harbour/?utm_source=rss",
            "Harbour budget",
            make_body("a"),
        )

        assert second["outcome"] == "duplicate"
        assert second["reason"] == "exact_url"
        assert second["topic_article_id"] == first["topic_article_id"]
        assert len(repository.shared_content) == 1
        article = await repository.get_topic_article(first["topic_article_id"])
        assert article["metadata"]["duplicate_seen_count"] == 1

    asyncio.run(scenario())


def test_same_url_in_another_topic_shares_content(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        first_topic = await _create_topic(repository)
        second_topic = await _create_topic(repository, name="Eastport")

        first = await _ingest(pipeline, first_topic["id"], "https://news.example/harbour", "Harbour budget", make_body("a"))
        second = await _ingest(pipeline, second_topic["id"], "https://news.example/harbour", "Harbour budget", make_body("a"))

        assert second["outcome"] == "accepted"
        assert second["shared_content_id"] == first["shared_content_id"]
        assert second["topic_article_id"] != first["topic_article_id"]

    asyncio.run(scenario())


def test_identical_content_at_new_url_is_auto_discarded(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)

        first = await _ingest(pipeline, topic["id"], "https://news.example/a", "Harbour budget", make_body("a"))
        second = await _ingest(pipeline, topic["id"], "https://mirror.example/a", "Harbour Budget", make_body("a"))

        assert second["outcome"] == "duplicate"
        assert second["status"] == "discarded"
        assert second["reason"] == "duplicate_content"
        assert second["detection_method"] == "content_checksum"
        candidates = await repository.list_duplicate_candidates(topic_id=topic["id"])
        assert len(candidates) == 1
        assert candidates[0]["original_topic_article_id"] == first["topic_article_id"]
        article = await repository.get_topic_article(second["topic_article_id"])
        assert article["metadata"]["duplicate_check"]["outcome"] == "auto_discard"

    asyncio.run(scenario())


def test_articles_without_text_are_not_content_duplicates(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)

        for url in ("https://a.example/one", "https://b.example/two"):
            result = await pipeline.ingest(
                topic_id=topic["id"],
                url=url,
                title=None,
                body=None,
                import_metadata={"regional_relevance_score": 40},
            )
            assert result["outcome"] == "accepted"
            assert result["reason"] != "duplicate_content"

        assert await repository.list_duplicate_candidates(topic_id=topic["id"]) == []

    asyncio.run(scenario())


def test_identical_content_goes_to_review_without_auto_discard(clock) -> None:
    settings = Settings(otel_enabled=False, dedupe_auto_discard_checksum=False)
    repository = InMemoryRepository(settings, clock=clock)

    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)

        await _ingest(pipeline, topic["id"], "https://news.example/a", "Harbour budget", make_body("a"))
        second = await _ingest(pipeline, topic["id"], "https://mirror.example/a", "Harbour budget", make_body("a"))

        assert second["status"] == "duplicate_pending"
        assert second["reason"] == "duplicate_pending"

    asyncio.run(scenario())


def test_similar_title_is_held_for_review(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository, auto_enqueue=True)

        await _ingest(pipeline, topic["id"], "https://news.example/a", "Council approves harbour budget", make_body("a"))
        held = await _ingest(
            pipeline,
            topic["id"],
            "https://other.example/b",
            "Council approves the harbour budget",
            make_body("b"),
        )

        assert held["outcome"] == "duplicate"
        assert held["status"] == "duplicate_pending"
        assert held["detection_method"] == "title_similarity"
        # Only the first article was queued.
        assert len(repository.queue_items) == 1

    asyncio.run(scenario())


@pytest.mark.parametrize(
    ("title", "relevance", "reason"),
    [
        ("Your weekly horoscope", 40, "negative_keyword"),
        ("Harbour budget", 2, "insufficient_regional_relevance"),
    ],
)
def test_gate_discards_with_reason(
    repository: InMemoryRepository,
    settings: Settings,
    title: str,
    relevance: int,
    reason: str,
) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)

        result = await _ingest(pipeline, topic["id"], "https://news.example/a", title, make_body("a"), relevance=relevance)

        assert result["outcome"] == "discarded"
        assert result["status"] == "discarded"
        assert result["reason"] == reason
        article = await repository.get_topic_article(result["topic_article_id"])
        assert article["metadata"]["rejection_reason"] == reason

    asyncio.run(scenario())


def test_ingest_rejects_inactive_topic_and_relative_url(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        active = await _create_topic(repository)
        inactive = await _create_topic(repository, is_active=False)

        with pytest.raises(RepositoryValidationError):
            await _ingest(pipeline, inactive["id"], "https://news.example/a", "Harbour", make_body("a"))
        with pytest.raises(RepositoryValidationError):
            await _ingest(pipeline, active["id"], "/relative/path", "Harbour", make_body("a"))

    asyncio.run(scenario())


def test_dismissing_duplicate_runs_gate_and_enqueues(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository, auto_enqueue=True)
        await _ingest(pipeline, topic["id"], "https://news.example/a", "Council approves harbour budget", make_body("a"))
        held = await _ingest(
            pipeline,
            topic["id"],
            "https://other.example/b",
            "Council approves the harbour budget",
            make_body("b"),
        )
        [candidate] = await repository.list_duplicate_candidates(status="pending")

        result = await pipeline.resolve_duplicate(
            candidate["id"],
            resolution="dismiss",
            actor_type="human",
            actor_id="owner-1",
        )

        assert result["candidate"]["status"] == "dismissed"
        assert result["candidate"]["resolved_by"] == "owner-1"
        assert result["topic_article"]["status"] == "processed"
        assert result["qualified"] is True
        queued = {item["topic_article_id"] for item in repository.queue_items.values()}
        assert held["topic_article_id"] in queued

        with pytest.raises(RepositoryConflictError):
            await pipeline.resolve_duplicate(candidate["id"], resolution="confirm", actor_type="human", actor_id="owner-1")

    asyncio.run(scenario())


def test_confirming_duplicate_discards_article(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)
        await _ingest(pipeline, topic["id"], "https://news.example/a", "Council approves harbour budget", make_body("a"))
        held = await _ingest(
            pipeline,
            topic["id"],
            "https://other.example/b",
            "Council approves the harbour budget",
            make_body("b"),
        )
        [candidate] = await repository.list_duplicate_candidates(status="pending")

        result = await pipeline.resolve_duplicate(
            candidate["id"],
            resolution="confirm",
            actor_type="human",
            actor_id="owner-1",
        )

        assert result["topic_article"]["id"] == held["topic_article_id"]
        assert result["topic_article"]["status"] == "discarded"
        assert result["topic_article"]["metadata"]["rejection_reason"] == "confirmed_duplicate"
        assert result["qualified"] is False

        with pytest.raises(RepositoryValidationError):
            await repository.resolve_duplicate(candidate["id"], resolution="merge", actor_type="human", actor_id=None)

    asyncio.run(scenario())


def test_rescan_creates_candidates_once(repository: InMemoryRepository, clock) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, repository.settings)
        topic = await _create_topic(repository)
        await _ingest(pipeline, topic["id"], "https://news.example/a", "Harbour budget approved council", make_body("a"))
        clock.advance(60)
        await _ingest(pipeline, topic["id"], "https://news.example/b", "Harbour budget approved today", make_body("b"))
        assert repository.duplicate_candidates == {}

        repository.settings = Settings(otel_enabled=False, dedupe_review_threshold=0.5)
        first = await repository.rescan_duplicates(topic_id=topic["id"], actor_type="human", actor_id="admin-1")
        second = await repository.rescan_duplicates(topic_id=topic["id"], actor_type="human", actor_id="admin-1")

        assert first == {"scanned": 2, "candidates_created": 1, "flagged": 0}
        assert second == {"scanned": 2, "candidates_created": 0, "flagged": 0}

    asyncio.run(scenario())


def test_gate_cleanup_dry_run_reports_without_changes(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository)
        kept = await _ingest(pipeline, topic["id"], "https://news.example/a", "Harbour budget", make_body("a"))
        stale = await _ingest(pipeline, topic["id"], "https://news.example/b", "Ferry timetable", make_body("b"))
        item = await repository.enqueue(stale["topic_article_id"], actor_type="human", actor_id="owner-1")
        repository.topics[topic["id"]]["negative_keywords"] = ["ferry"]

        preview = await repository.gate_cleanup(topic["id"], dry_run=True, actor_type="human", actor_id="owner-1")

        assert preview["dry_run"] is True
        assert preview["scanned"] == 2
        assert preview["discarded"] == [
            {"topic_article_id": stale["topic_article_id"], "rejection_reason": "negative_keyword", "matched_term": "ferry"}
        ]
        assert (await repository.get_topic_article(stale["topic_article_id"]))["status"] == "processed"

        applied = await repository.gate_cleanup(topic["id"], dry_run=False, actor_type="human", actor_id="owner-1")

        assert applied["discarded"] == preview["discarded"]
        assert (await repository.get_topic_article(stale["topic_article_id"]))["status"] == "discarded"
        assert (await repository.get_topic_article(kept["topic_article_id"]))["status"] == "processed"
        assert (await repository.get_queue_item(item["id"]))["status"] == "cancelled"

    asyncio.run(scenario())


def test_deactivating_topic_cancels_pending_items(repository: InMemoryRepository, settings: Settings) -> None:
    async def scenario() -> None:
        pipeline = build_pipeline(repository, settings)
        topic = await _create_topic(repository, auto_enqueue=True)
        await _ingest(pipeline, topic["id"], "https://news.example/a", "Harbour budget", make_body("a"))

        deactivated = await pipeline.deactivate_topic(topic["id"], actor_type="human", actor_id="owner-1")

        assert deactivated["is_active"] is False
        [item] = repository.queue_items.values()
        assert item["status"] == "cancelled"
        assert item["error_message"] == "topic deactivated"

    asyncio.run(scenario())


def test_shared_content_is_keyed_on_normalized_url(repository: InMemoryRepository, clock) -> None:
    async def scenario() -> None:
        first, created = await repository.upsert_shared_content(
            url="https://NEWS.example/harbour/?utm_source=rss",
            title="Harbour budget approved",
            body="The council approved the harbour budget.",
        )
        assert created is True
        assert first["normalized_url"] == "https://news.example/harbour"
        assert first["source_domain"] == "news.example"
        assert first["word_count"] == 6
        assert first["content_checksum"]

        clock.advance(60)
        second, created_again = await repository.upsert_shared_content(
            url="https://news.example/harbour",
            title="A different headline",
            body="Different text.",
        )

        assert created_again is False
        assert second["id"] == first["id"]
        assert second["title"] == "Harbour budget approved"
        assert second["content_checksum"] == first["content_checksum"]
        assert second["last_seen_at"] > first["last_seen_at"]
        assert len(repository.shared_content) == 1

    asyncio.run(scenario())
