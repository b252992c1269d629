from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest
from conftest import make_body
from fastapi.testclient import TestClient

import storyflow.core.security as security
from storyflow.core.config import get_settings
from storyflow.main import app
from storyflow.services.repository import get_repository
from storyflow.services.store import InMemoryRepository

SCRAPER_HEADERS = {"X-Module-Id": "local-scraper", "X-API-Key": "local-scraper-key"}
WORKER_HEADERS = {"X-Module-Id": "local-worker", "X-API-Key": "local-worker-key"}
BEARER = {"Authorization": "Bearer token"}


@pytest.fixture
def api_client(repository: InMemoryRepository) -> TestClient:
    os.environ["SF_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["SF_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: repository

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("SF_SUPABASE_URL", None)
    os.environ.pop("SF_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _create_topic(repository: InMemoryRepository, **overrides: Any) -> dict[str, Any]:
    values: dict[str, Any] = {"name": "Harbour Town", "owner_id": "owner-1"}
    values.update(overrides)
    return asyncio.run(repository.create_topic(**values))


def _ingest_payload(topic_id: str, slug: str = "alpha", relevance: int = 40) -> dict[str, Any]:
    return {
        "topic_id": topic_id,
        "url": f"https://news.example/{slug}?utm_campaign=rss",
        "title": f"{slug.title()} harbour news",
        "body": make_body(slug),
        "author": "Staff Reporter",
        "import_metadata": {"regional_relevance_score": relevance},
    }


def test_ingest_with_scraper_credentials(api_client: TestClient, repository: InMemoryRepository) -> None:
    topic = _create_topic(repository)

    response = api_client.post("/ingest", json=_ingest_payload(topic["id"]), headers=SCRAPER_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "accepted"
    assert body["status"] == "processed"

    repeat = api_client.post("/ingest", json=_ingest_payload(topic["id"]), headers=SCRAPER_HEADERS)
    assert repeat.json()["outcome"] == "duplicate"
    assert repeat.json()["topic_article_id"] == body["topic_article_id"]


def test_ingest_rejects_bad_credentials_and_missing_scope(
    api_client: TestClient,
    repository: InMemoryRepository,
) -> None:
    topic = _create_topic(repository)

    missing = api_client.post("/ingest", json=_ingest_payload(topic["id"]))
    wrong_key = api_client.post(
        "/ingest",
        json=_ingest_payload(topic["id"]),
        headers={"X-Module-Id": "local-scraper", "X-API-Key": "nope"},
    )
    wrong_scope = api_client.post("/ingest", json=_ingest_payload(topic["id"]), headers=WORKER_HEADERS)

    assert missing.status_code == 401
    assert wrong_key.status_code == 401
    assert wrong_scope.status_code == 403


def test_ingest_maps_repository_errors(api_client: TestClient, repository: InMemoryRepository) -> None:
    inactive = _create_topic(repository, is_active=False)

    unknown = api_client.post("/ingest", json=_ingest_payload("no-such-topic"), headers=SCRAPER_HEADERS)
    closed = api_client.post("/ingest", json=_ingest_payload(inactive["id"]), headers=SCRAPER_HEADERS)

    assert unknown.status_code == 404
    assert closed.status_code == 422


def test_worker_claims_and_completes_item(api_client: TestClient, repository: InMemoryRepository) -> None:
    topic = _create_topic(repository, auto_enqueue=True)
    api_client.post("/ingest", json=_ingest_payload(topic["id"]), headers=SCRAPER_HEADERS)

    pending = api_client.get("/queue", headers=WORKER_HEADERS)
    assert pending.status_code == 200
    assert len(pending.json()) == 1

    claimed = api_client.post("/queue/claim-next", json={"limit": 5}, headers=WORKER_HEADERS)
    assert claimed.status_code == 200
    [item] = claimed.json()
    assert item["claimed_by"] == "local-worker"
    assert item["inputs"]["url"] == "https://news.example/alpha?utm_campaign=rss"

    result = api_client.post(
        f"/queue/{item['id']}/result",
        json={
            "status": "completed",
            "story": {"title": "Alpha, explained", "slides": [{"text": "one"}], "features": ["sentiment"]},
        },
        headers=WORKER_HEADERS,
    )

    assert result.status_code == 200
    body = result.json()
    assert body["outcome"] == "completed"
    assert body["item"]["status"] == "completed"
    assert repository.stories[body["story_id"]]["status"] == "draft"

    again = api_client.post(
        f"/queue/{item['id']}/result",
        json={"status": "failed", "error": {"code": "timeout"}},
        headers=WORKER_HEADERS,
    )
    assert again.status_code == 409


def test_worker_cannot_claim_twice_and_resets_stalled(api_client: TestClient, repository: InMemoryRepository) -> None:
    topic = _create_topic(repository, auto_enqueue=True)
    api_client.post("/ingest", json=_ingest_payload(topic["id"]), headers=SCRAPER_HEADERS)
    [item] = repository.queue_items.values()

    first = api_client.post(f"/queue/{item['id']}/claim", json={"worker_id": "worker-a"}, headers=WORKER_HEADERS)
    second = api_client.post(f"/queue/{item['id']}/claim", json={"worker_id": "worker-b"}, headers=WORKER_HEADERS)
    stalled = api_client.post("/queue/reset-stalled", headers=WORKER_HEADERS)

    assert first.status_code == 200
    assert first.json()["claimed_by"] == "worker-a"
    assert second.status_code == 409
    assert stalled.json() == {"reset": 0, "failed": 0}

    foreign = api_client.post(
        f"/queue/{item['id']}/result",
        json={"status": "failed", "error": {"code": "timeout"}, "worker_id": "worker-b"},
        headers=WORKER_HEADERS,
    )
    assert foreign.status_code == 403


def test_admin_queue_denies_user_without_topic(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: InMemoryRepository,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "owner-1", "app_metadata": {"role": "user"}})
    topic = _create_topic(repository)

    unscoped = api_client.get("/admin/queue", headers=BEARER)
    scoped = api_client.get("/admin/queue", params={"topic_id": topic["id"]}, headers=BEARER)

    assert unscoped.status_code == 403
    assert scoped.status_code == 200
    assert scoped.json() == []


def test_admin_queue_denies_non_owner(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: InMemoryRepository,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "stranger", "user_metadata": {"role": "admin"}})
    topic = _create_topic(repository)

    response = api_client.get("/admin/queue", params={"topic_id": topic["id"]}, headers=BEARER)

    assert response.status_code == 403


def test_admin_can_list_everything(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: InMemoryRepository,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "admin-1", "app_metadata": {"roles": ["admin"]}})
    topic = _create_topic(repository)
    api_client.post("/ingest", json=_ingest_payload(topic["id"]), headers=SCRAPER_HEADERS)

    queue = api_client.get("/admin/queue", headers=BEARER)
    duplicates = api_client.get("/admin/duplicates", headers=BEARER)
    sweep = api_client.post("/admin/stories/sweep", json={}, headers=BEARER)

    assert queue.status_code == 200
    assert duplicates.status_code == 200
    assert sweep.json() == {"deleted_empty": 0, "archived_duplicates": 0}


def test_human_auth_requires_bearer_token(api_client: TestClient) -> None:
    response = api_client.get("/admin/queue")
    assert response.status_code == 401


def test_owner_enqueues_retries_and_reads_events(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: InMemoryRepository,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "owner-1", "app_metadata": {}})
    topic = _create_topic(repository)
    ingested = api_client.post("/ingest", json=_ingest_payload(topic["id"]), headers=SCRAPER_HEADERS).json()

    enqueued = api_client.post(
        "/admin/queue",
        json={"topic_article_id": ingested["topic_article_id"], "max_attempts": 1},
        headers=BEARER,
    )
    assert enqueued.status_code == 200
    item_id = enqueued.json()["id"]

    duplicate = api_client.post("/admin/queue", json={"topic_article_id": ingested["topic_article_id"]}, headers=BEARER)
    assert duplicate.status_code == 409

    api_client.post("/queue/claim-next", json={"limit": 1}, headers=WORKER_HEADERS)
    failed = api_client.post(
        f"/queue/{item_id}/result",
        json={"status": "failed", "error": {"code": "http_400", "message": "bad prompt"}},
        headers=WORKER_HEADERS,
    )
    assert failed.json()["outcome"] == "failed"

    retried = api_client.post(f"/admin/queue/{item_id}/retry", headers=BEARER)
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending"

    events = api_client.get(f"/admin/queue/{item_id}/events", headers=BEARER)
    assert [event["event_type"] for event in events.json()] == ["retried", "failed", "claimed", "enqueued"]

    cancelled = api_client.post("/admin/queue/cancel", json={"topic_id": topic["id"]}, headers=BEARER)
    assert cancelled.json() == {"cancelled": 1}

    missing_target = api_client.post("/admin/queue/cancel", json={}, headers=BEARER)
    assert missing_target.status_code == 422


def test_owner_resolves_duplicate_and_cleans_topic(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: InMemoryRepository,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "owner-1", "app_metadata": {"role": "user"}})
    topic = _create_topic(repository)
    api_client.post("/ingest", json=_ingest_payload(topic["id"], "alpha"), headers=SCRAPER_HEADERS)
    mirrored = dict(_ingest_payload(topic["id"], "alpha"), url="https://mirror.example/alpha")
    held = api_client.post("/ingest", json=mirrored, headers=SCRAPER_HEADERS).json()
    assert held["reason"] == "duplicate_content"

    [candidate] = api_client.get("/admin/duplicates", params={"topic_id": topic["id"]}, headers=BEARER).json()
    resolved = api_client.post(
        f"/admin/duplicates/{candidate['id']}/resolve",
        json={"resolution": "confirm"},
        headers=BEARER,
    )
    assert resolved.status_code == 200
    assert resolved.json()["candidate"]["status"] == "confirmed"
    assert resolved.json()["topic_article_status"] == "discarded"

    rescan = api_client.post("/admin/duplicates/rescan", json={"topic_id": topic["id"]}, headers=BEARER)
    assert rescan.json() == {"scanned": 1, "candidates_created": 0, "flagged": 0}

    cleanup = api_client.post(f"/admin/topics/{topic['id']}/cleanup", json={}, headers=BEARER)
    assert cleanup.json() == {"dry_run": True, "scanned": 1, "discarded": []}

    deactivated = api_client.post(f"/admin/topics/{topic['id']}/deactivate", headers=BEARER)
    assert deactivated.json()["is_active"] is False


def test_owner_publishes_story_and_feed_serves_it(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: InMemoryRepository,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "owner-1", "app_metadata": {"role": "user"}})
    topic = _create_topic(repository, enabled_features=["sentiment"])
    story = asyncio.run(
        repository.create_story(
            topic_id=topic["id"],
            title="Harbour budget approved",
            slides=[{"text": "one"}],
            article_id="legacy-article-1",
            features=["sentiment"],
        )
    )

    early = api_client.post(f"/stories/{story['id']}/publish", headers=BEARER)
    assert early.status_code == 409

    ready = api_client.post(f"/stories/{story['id']}/ready", headers=BEARER)
    published = api_client.post(f"/stories/{story['id']}/publish", headers=BEARER)

    assert ready.json()["status"] == "ready"
    assert published.status_code == 200
    assert published.json()["slug"] == "harbour-budget-approved"

    feed = api_client.get(f"/feeds/{topic['id']}/stories")
    featured = api_client.get(f"/feeds/{topic['id']}/features/sentiment")
    disabled = api_client.get(f"/feeds/{topic['id']}/features/parliamentary")
    invalid = api_client.get(f"/feeds/{topic['id']}/features/weather")

    assert [row["id"] for row in feed.json()] == [story["id"]]
    assert [row["slug"] for row in featured.json()] == ["harbour-budget-approved"]
    assert disabled.status_code == 404
    assert invalid.status_code == 422


def test_story_routes_deny_other_users(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: InMemoryRepository,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "stranger", "app_metadata": {"role": "user"}})
    topic = _create_topic(repository)
    story = asyncio.run(
        repository.create_story(
            topic_id=topic["id"],
            title="Harbour budget approved",
            slides=[{"text": "one"}],
            article_id="legacy-article-1",
        )
    )

    response = api_client.post(f"/stories/{story['id']}/ready", headers=BEARER)

    assert response.status_code == 403
    assert repository.stories[story["id"]]["status"] == "draft"


def test_worker_tracks_story_stages(api_client: TestClient, repository: InMemoryRepository) -> None:
    topic = _create_topic(repository)
    story = asyncio.run(
        repository.create_story(
            topic_id=topic["id"],
            title="Harbour budget approved",
            slides=[{"text": "one"}],
            article_id="legacy-article-1",
        )
    )

    denied = api_client.post(f"/stories/{story['id']}/stages/illustrate/begin", headers=SCRAPER_HEADERS)
    assert denied.status_code == 403

    begun = api_client.post(f"/stories/{story['id']}/stages/illustrate/begin", headers=WORKER_HEADERS)
    assert begun.status_code == 200
    assert begun.json()["processing_stage"] == "illustrate"

    busy = api_client.post(f"/stories/{story['id']}/stages/animate/begin", headers=WORKER_HEADERS)
    assert busy.status_code == 409

    unknown = api_client.post(f"/stories/{story['id']}/stages/narrate/begin", headers=WORKER_HEADERS)
    assert unknown.status_code == 422

    completed = api_client.post(
        f"/stories/{story['id']}/stages/illustrate/complete",
        json={"automated": False},
        headers=WORKER_HEADERS,
    )
    assert completed.status_code == 200
    body = completed.json()
    assert body["processing_stage"] is None
    assert body["illustration_generated_at"] is not None
    assert body["is_auto_illustrated"] is False

    again = api_client.post(
        f"/stories/{story['id']}/stages/illustrate/complete",
        json={"automated": True},
        headers=WORKER_HEADERS,
    )
    assert again.status_code == 409


def test_feed_hides_inactive_topics(api_client: TestClient, repository: InMemoryRepository) -> None:
    topic = _create_topic(repository, is_active=False)

    response = api_client.get(f"/feeds/{topic['id']}/stories")

    assert response.status_code == 404
