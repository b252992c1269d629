from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest
from conftest import make_body

from storyflow.services.base import STALLED_EXHAUSTED_MESSAGE
from storyflow.services.errors import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from storyflow.services.store import InMemoryRepository

COMPLETED = {
    "status": "completed",
    "story": {
        "title": "Harbour budget, explained",
        "slides": [{"text": "The council met."}, {"text": "It approved the budget."}],
        "features": ["parliamentary"],
    },
}
FAILED = {"status": "failed", "error": {"code": "http_503", "message": "upstream busy", "transient": True}}


async def _article(repository: InMemoryRepository, topic_id: str, slug: str, **overrides: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
        "topic_id": topic_id,
        "url": f"https://news.example/{slug}",
        "title": f"{slug.title()} harbour news",
        "body": make_body(slug),
        "author": "Staff Reporter",
        "import_metadata": {"regional_relevance_score": 40},
    }
    values.update(overrides)
    return await repository.ingest_article(**values)


async def _queued(repository: InMemoryRepository, slug: str = "alpha", **params: Any) -> dict[str, Any]:
    topics = list(repository.topics.values())
    topic = topics[0] if topics else await repository.create_topic(name="Harbour Town", owner_id="owner-1")
    result = await _article(repository, topic["id"], slug)
    return await repository.enqueue(result["topic_article_id"], params=params or None, actor_type="human", actor_id="owner-1")


def test_enqueue_validates_article(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        topic = await repository.create_topic(name="Harbour Town", negative_keywords=["horoscope"])
        discarded = await _article(repository, topic["id"], "stars", title="Horoscope of the week")
        accepted = await _article(repository, topic["id"], "alpha")

        with pytest.raises(RepositoryNotFoundError):
            await repository.enqueue("missing", actor_type="human", actor_id=None)
        with pytest.raises(RepositoryValidationError):
            await repository.enqueue(discarded["topic_article_id"], actor_type="human", actor_id=None)

        item = await repository.enqueue(
            accepted["topic_article_id"],
            params={"slide_type": "explainer", "tone": "calm", "max_attempts": 5},
            actor_type="human",
            actor_id=None,
        )
        assert item["status"] == "pending"
        assert item["attempts"] == 0
        assert item["max_attempts"] == 5
        assert item["slide_type"] == "explainer"
        assert item["ai_provider"] == "deepseek"

        with pytest.raises(RepositoryConflictError):
            await repository.enqueue(accepted["topic_article_id"], actor_type="human", actor_id=None)

    asyncio.run(scenario())


def test_claim_is_exclusive_and_returns_inputs(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        item = await _queued(repository)

        claimed = await repository.claim(item["id"], "worker-a")

        assert claimed["status"] == "processing"
        assert claimed["attempts"] == 1
        assert claimed["claimed_by"] == "worker-a"
        assert claimed["inputs"]["url"] == "https://news.example/alpha"
        assert claimed["inputs"]["title"] == "Alpha harbour news"
        article = await repository.get_topic_article(item["topic_article_id"])
        assert article["status"] == "processing"

        with pytest.raises(RepositoryConflictError):
            await repository.claim(item["id"], "worker-b")

    asyncio.run(scenario())


def test_claim_next_takes_oldest_eligible_items(repository: InMemoryRepository, clock) -> None:
    async def scenario() -> None:
        first = await _queued(repository, "alpha")
        clock.advance(1)
        second = await _queued(repository, "beta")
        clock.advance(1)
        await _queued(repository, "gamma")

        claimed = await repository.claim_next("worker-a", 2)

        assert [row["id"] for row in claimed] == [first["id"], second["id"]]
        assert len(await repository.list_pending(10)) == 1

    asyncio.run(scenario())


def test_completed_result_creates_draft_story(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        item = await _queued(repository)
        await repository.claim(item["id"], "worker-a")

        with pytest.raises(RepositoryForbiddenError):
            await repository.submit_result(item["id"], worker_id="worker-b", outcome=COMPLETED)

        result = await repository.submit_result(item["id"], worker_id="worker-a", outcome=COMPLETED)

        assert result["outcome"] == "completed"
        assert result["item"]["status"] == "completed"
        assert result["item"]["completed_at"] is not None
        story = result["story"]
        assert story["status"] == "draft"
        assert story["title"] == "Harbour budget, explained"
        assert story["topic_article_id"] == item["topic_article_id"]
        assert story["article_id"] is None
        assert story["features"] == ["parliamentary"]
        assert len(story["slides"]) == 2
        assert result["item"]["result_data"] == {"story_id": story["id"], "slide_count": 2}
        assert (await repository.get_topic_article(item["topic_article_id"]))["status"] == "processed"

        with pytest.raises(RepositoryConflictError):
            await repository.submit_result(item["id"], worker_id="worker-a", outcome=COMPLETED)

    asyncio.run(scenario())


def test_empty_generation_counts_as_failure(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        item = await _queued(repository)
        await repository.claim(item["id"], "worker-a")

        result = await repository.submit_result(
            item["id"],
            worker_id="worker-a",
            outcome={"status": "completed", "story": {"title": "Empty", "slides": []}},
        )

        assert result["outcome"] == "retry_scheduled"
        assert result["story"] is None
        assert result["item"]["error_message"] == "empty_generation: generation returned no slides"
        assert repository.stories == {}

    asyncio.run(scenario())


def test_failures_back_off_then_fail(repository: InMemoryRepository, clock) -> None:
    async def scenario() -> None:
        item = await _queued(repository)
        started = clock()

        await repository.claim(item["id"], "worker-a")
        first = await repository.submit_result(item["id"], worker_id="worker-a", outcome=FAILED)
        assert first["outcome"] == "retry_scheduled"
        assert first["item"]["next_run_at"] == started + timedelta(seconds=60)
        assert first["item"]["claimed_by"] is None
        assert await repository.claim_next("worker-a", 5) == []

        clock.advance(60)
        await repository.claim(item["id"], "worker-a")
        second = await repository.submit_result(item["id"], worker_id="worker-a", outcome=FAILED)
        assert second["item"]["next_run_at"] == clock() + timedelta(seconds=120)

        clock.advance(120)
        [claimed] = await repository.claim_next("worker-a", 5)
        assert claimed["attempts"] == 3
        third = await repository.submit_result(item["id"], worker_id="worker-a", outcome=FAILED)

        assert third["outcome"] == "failed"
        assert third["item"]["status"] == "failed"
        assert third["item"]["error_message"] == "http_503: upstream busy"
        assert await repository.claim_next("worker-a", 5) == []

    asyncio.run(scenario())


def test_permanent_failure_skips_remaining_attempts(repository: InMemoryRepository) -> None:
    permanent = {"status": "failed", "error": {"code": "http_400", "message": "bad request", "transient": False}}
    unclassified = {"status": "failed", "error": {"code": "worker_exception", "message": "boom"}}

    async def scenario() -> None:
        rejected = await _queued(repository, "alpha")
        flaky = await _queued(repository, "beta")
        await repository.claim(rejected["id"], "worker-a")
        await repository.claim(flaky["id"], "worker-a")

        first = await repository.submit_result(rejected["id"], worker_id="worker-a", outcome=permanent)
        second = await repository.submit_result(flaky["id"], worker_id="worker-a", outcome=unclassified)

        assert first["outcome"] == "failed"
        assert first["item"]["status"] == "failed"
        assert first["item"]["attempts"] == 1
        assert first["item"]["error_message"] == "http_400: bad request"
        assert second["outcome"] == "retry_scheduled"
        assert second["item"]["status"] == "pending"

    asyncio.run(scenario())


def test_concurrent_claims_have_one_winner(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        item = await _queued(repository)

        results = await asyncio.gather(
            repository.claim(item["id"], "worker-a"),
            repository.claim(item["id"], "worker-b"),
            return_exceptions=True,
        )

        winners = [row for row in results if isinstance(row, dict)]
        losers = [row for row in results if isinstance(row, RepositoryConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1
        stored = await repository.get_queue_item(item["id"])
        assert stored["claimed_by"] == winners[0]["claimed_by"]
        assert stored["attempts"] == 1

    asyncio.run(scenario())


def test_reset_stalled_requeues_or_fails(repository: InMemoryRepository, clock) -> None:
    async def scenario() -> None:
        retryable = await _queued(repository, "alpha")
        exhausted = await _queued(repository, "beta", max_attempts=1)
        await repository.claim(retryable["id"], "worker-a")
        await repository.claim(exhausted["id"], "worker-a")

        clock.advance(600)
        assert await repository.reset_stalled() == {"reset": 0, "failed": 0}

        clock.advance(1)
        counts = await repository.reset_stalled()

        assert counts == {"reset": 1, "failed": 1}
        reset_item = await repository.get_queue_item(retryable["id"])
        assert reset_item["status"] == "pending"
        assert reset_item["claimed_by"] is None
        assert reset_item["next_run_at"] == clock()
        assert reset_item["attempts"] == 1
        assert reset_item["started_at"] is None
        failed_item = await repository.get_queue_item(exhausted["id"])
        assert failed_item["status"] == "failed"
        assert failed_item["attempts"] == 1
        assert failed_item["error_message"] == STALLED_EXHAUSTED_MESSAGE
        article = await repository.get_topic_article(retryable["topic_article_id"])
        assert article["status"] == "processed"

        assert await repository.reset_stalled() == {"reset": 0, "failed": 0}
        assert await repository.get_queue_item(retryable["id"]) == reset_item
        assert await repository.get_queue_item(exhausted["id"]) == failed_item

    asyncio.run(scenario())


def test_result_for_cancelled_item_is_discarded(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        item = await _queued(repository)
        await repository.claim(item["id"], "worker-a")

        assert await repository.cancel(topic_id=item["topic_id"], reason="operator", actor_type="human", actor_id=None) == 0
        cancelled = await repository.cancel(
            topic_article_ids=[item["topic_article_id"]],
            include_processing=True,
            reason="operator",
            actor_type="human",
            actor_id=None,
        )
        assert cancelled == 1

        result = await repository.submit_result(item["id"], worker_id="worker-a", outcome=COMPLETED)

        assert result["outcome"] == "discarded_cancelled"
        assert result["item"]["status"] == "cancelled"
        assert repository.stories == {}

        with pytest.raises(RepositoryValidationError):
            await repository.cancel(reason="operator", actor_type="human", actor_id=None)

    asyncio.run(scenario())


def test_retry_resets_failed_item(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        item = await _queued(repository, max_attempts=1)
        await repository.claim(item["id"], "worker-a")
        await repository.submit_result(item["id"], worker_id="worker-a", outcome=FAILED)

        retried = await repository.retry(item["id"], actor_type="human", actor_id="owner-1")

        assert retried["status"] == "pending"
        assert retried["attempts"] == 0
        assert retried["error_message"] is None

        with pytest.raises(RepositoryConflictError):
            await repository.retry(item["id"], actor_type="human", actor_id="owner-1")

    asyncio.run(scenario())


def test_list_items_and_events(repository: InMemoryRepository) -> None:
    async def scenario() -> None:
        item = await _queued(repository)
        await repository.claim(item["id"], "worker-a")
        await repository.submit_result(item["id"], worker_id="worker-a", outcome=COMPLETED)

        rows = await repository.list_items(status="completed")
        assert [row["id"] for row in rows] == [item["id"]]
        with pytest.raises(RepositoryValidationError):
            await repository.list_items(status="stuck")

        events = await repository.list_item_events(item["id"])
        assert [event["event_type"] for event in events] == ["completed", "claimed", "enqueued"]
        assert all(isinstance(event["id"], int) for event in events)

    asyncio.run(scenario())
