"""Shared fixtures: an in-memory store driven by a deterministic clock."""

from datetime import datetime, timedelta, timezone
from typing import Any, List

import pytest

from firechat_sync.config import Settings
from firechat_sync.context import ChatContext
from firechat_sync.repositories.memory import InMemoryDocumentStore


class StepClock:
    """Clock that advances one second per reading."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.now
        self.now += timedelta(seconds=1)
        return value


class Recorder:
    """Callback that keeps every delivery."""

    def __init__(self) -> None:
        self.items: List[Any] = []
        self.errors: List[Exception] = []

    def __call__(self, item: Any) -> None:
        self.items.append(item)

    def error(self, error: Exception) -> None:
        self.errors.append(error)

    @property
    def last(self) -> Any:
        return self.items[-1]


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def store(clock: StepClock) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def context(store: InMemoryDocumentStore, settings: Settings) -> ChatContext:
    return ChatContext(store, settings)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_recorder():
    return Recorder
