from __future__ import annotations

from datetime import datetime, timezone

import pytest

from brandtrust.core.clock import FixedClock
from brandtrust.core.config import Settings
from brandtrust.jobs.context import JobContext
from brandtrust.services.push import PushDeliveryError, PushMessage
from brandtrust.services.repository import PushSubscriptionRecord
from brandtrust.services.store import InMemoryStore

# A Wednesday, 12:00 UTC: outside quiet hours.
NOON = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


class RecordingPushSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, PushMessage]] = []
        self.failures: dict[str, int | None] = {}

    async def send(self, subscription: PushSubscriptionRecord, message: PushMessage) -> None:
        if subscription.endpoint in self.failures:
            raise PushDeliveryError("push failed", status_code=self.failures[subscription.endpoint])
        self.sent.append((subscription.endpoint, message))


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOON)


@pytest.fixture
def settings() -> Settings:
    return Settings(storage_backend="memory", otel_enabled=False)


@pytest.fixture
def store(clock: FixedClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def push_sender() -> RecordingPushSender:
    return RecordingPushSender()


@pytest.fixture
def context(store: InMemoryStore, settings: Settings, clock: FixedClock, push_sender: RecordingPushSender) -> JobContext:
    return JobContext(repository=store, settings=settings, clock=clock, push_sender=push_sender)
