from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from storyflow.core.config import Settings
from storyflow.services.store import InMemoryRepository


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_body(prefix: str, words: int = 60) -> str:
    return " ".join(f"{prefix}{index}" for index in range(words))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(otel_enabled=False)


@pytest.fixture
def repository(settings: Settings, clock: FakeClock) -> InMemoryRepository:
    return InMemoryRepository(settings, clock=clock)
