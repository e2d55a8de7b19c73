from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from token_queue.config import EngineConfig
from token_queue.models import Counter, CounterStatus, Department, QueueType, Token
from token_queue.service import TokenService
from token_queue.store import InMemoryDirectory, InMemoryTokenStore

# A Monday morning.
T0 = datetime(2024, 12, 2, 10, 0)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, minutes: float = 0.0, seconds: float = 0.0) -> None:
        self.now += timedelta(minutes=minutes, seconds=seconds)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def notify(self, event: str, token: Token) -> None:
        self.events.append((event, token.token_number))

    def of(self, event: str) -> list[str]:
        return [n for e, n in self.events if e == event]


def make_directory() -> InMemoryDirectory:
    """CS: priority ordering, two counters. AC: fifo, one counter."""
    return InMemoryDirectory(
        [
            Department(id="CS", code="CS", queue_type=QueueType.PRIORITY, max_tokens_per_day=999),
            Department(id="AC", code="AC", queue_type=QueueType.FIFO, max_tokens_per_day=999),
        ],
        [
            Counter(id="CS-1", department_id="CS", status=CounterStatus.ACTIVE),
            Counter(id="CS-2", department_id="CS", status=CounterStatus.ACTIVE),
            Counter(id="AC-1", department_id="AC", status=CounterStatus.ACTIVE),
        ],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def service(store, clock, notifier) -> TokenService:
    return TokenService(
        store=store,
        directory=make_directory(),
        notifier=notifier,
        config=EngineConfig(),
        clock=clock,
    )
