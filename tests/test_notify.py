from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from brandtrust.core.clock import FixedClock
from brandtrust.jobs.context import JobContext
from brandtrust.jobs.errors import JobDeferred
from brandtrust.jobs.notify import (
    handle_score_change,
    in_quiet_hours,
    net_deltas,
    pick_headline,
    quiet_hours_end,
)
from brandtrust.jobs.runner import JobRunner
from brandtrust.schemas.jobs import ScoreChangePayload, ScoreDelta
from brandtrust.services.coalescer import enqueue_score_change
from brandtrust.services.repository import NotificationLogRecord, PushSubscriptionRecord
from brandtrust.services.store import InMemoryStore


def _utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 15, hour, minute, tzinfo=timezone.utc)


def _delta(category: str, delta: float, *, minute: int = 0) -> ScoreDelta:
    return ScoreDelta(category=category, delta=delta, score=2.0 + delta, computed_at=_utc(12, minute))


def _follow(store: InMemoryStore, user_id: str, *endpoints: str, enabled: bool = True) -> None:
    store.follows.setdefault("acme", {})[user_id] = enabled
    store.subscriptions[user_id] = [
        PushSubscriptionRecord(endpoint=endpoint, p256dh="p256dh", auth="auth") for endpoint in endpoints
    ]


def _payload(*deltas: ScoreDelta) -> ScoreChangePayload:
    return ScoreChangePayload(brand_id="acme", bucket_start=_utc(11, 55), events=list(deltas))


@pytest.mark.parametrize(
    ("hour", "quiet"),
    [(21, False), (22, True), (23, True), (0, True), (6, True), (7, False), (12, False)],
)
def test_quiet_hours_window(hour: int, quiet: bool) -> None:
    assert in_quiet_hours(_utc(hour), 22, 7) is quiet


def test_quiet_hours_end_is_next_seven_utc() -> None:
    assert quiet_hours_end(_utc(23, 30), 7) == datetime(2024, 5, 16, 7, 0, tzinfo=timezone.utc)
    assert quiet_hours_end(_utc(3, 0), 7) == _utc(7, 0)


def test_headline_is_largest_net_change() -> None:
    netted = net_deltas(
        [_delta("labor", -1.5), _delta("social", 2.0), _delta("labor", -1.0, minute=3), _delta("politics", 1.0)]
    )

    assert netted["labor"].delta == pytest.approx(-2.5)
    headline = pick_headline(netted)
    assert headline is not None
    assert headline.category == "labor"


def test_changes_that_cancel_out_send_nothing(context: JobContext, store: InMemoryStore, push_sender) -> None:
    _follow(store, "user-1", "https://push.example/1")

    asyncio.run(handle_score_change(_payload(_delta("labor", 1.5), _delta("labor", -1.5)), context))

    assert push_sender.sent == []
    assert store.notification_log == []


def test_quiet_hours_raise_deferral(context: JobContext, clock: FixedClock) -> None:
    clock.set(_utc(23, 10))

    with pytest.raises(JobDeferred) as exc_info:
        asyncio.run(handle_score_change(_payload(_delta("labor", -2.0)), context))

    assert exc_info.value.not_before == datetime(2024, 5, 16, 7, 0, tzinfo=timezone.utc)


def test_quiet_hour_job_is_deferred_without_spending_an_attempt(
    store: InMemoryStore, settings, clock: FixedClock, push_sender
) -> None:
    clock.set(_utc(21, 58))
    asyncio.run(enqueue_score_change(store, "acme", [_delta("labor", -2.0)], now=clock.now()))
    _follow(store, "user-1", "https://push.example/1")
    clock.set(_utc(22, 5))
    runner = JobRunner(store, settings, clock=clock, push_sender=push_sender)

    summary = asyncio.run(runner.run_once())

    (job,) = store.jobs.values()
    assert summary.deferred == 1
    assert job.attempts == 0
    assert job.not_before == datetime(2024, 5, 16, 7, 0, tzinfo=timezone.utc)
    assert push_sender.sent == []

    clock.set(datetime(2024, 5, 16, 7, 0, tzinfo=timezone.utc))
    summary = asyncio.run(runner.run_once())

    assert summary.succeeded == 1
    assert store.jobs == {}
    assert len(push_sender.sent) == 1


def test_followers_receive_one_push_per_subscription(
    context: JobContext, store: InMemoryStore, push_sender, clock: FixedClock
) -> None:
    _follow(store, "user-1", "https://push.example/1a", "https://push.example/1b")
    _follow(store, "user-2", "https://push.example/2")
    _follow(store, "user-muted", "https://push.example/muted", enabled=False)

    asyncio.run(handle_score_change(_payload(_delta("labor", -2.0)), context))

    assert sorted(endpoint for endpoint, _ in push_sender.sent) == [
        "https://push.example/1a",
        "https://push.example/1b",
        "https://push.example/2",
    ]
    message = push_sender.sent[0][1]
    assert message.body == "Labor & Workers score dropped by 2.0 (now 0.0)"
    assert [(entry.user_id, entry.success) for entry in store.notification_log] == [
        ("user-1", True),
        ("user-2", True),
    ]


def test_same_topic_is_pushed_once_per_day(
    context: JobContext, store: InMemoryStore, push_sender, clock: FixedClock
) -> None:
    _follow(store, "user-1", "https://push.example/1")

    asyncio.run(handle_score_change(_payload(_delta("labor", -2.0)), context))
    clock.advance(hours=2)
    asyncio.run(handle_score_change(_payload(_delta("labor", -1.5)), context))

    assert len(push_sender.sent) == 1

    clock.set(datetime(2024, 5, 16, 12, 0, tzinfo=timezone.utc))
    asyncio.run(handle_score_change(_payload(_delta("labor", -1.5)), context))

    assert len(push_sender.sent) == 2


def test_daily_cap_per_user(context: JobContext, store: InMemoryStore, push_sender, clock: FixedClock) -> None:
    _follow(store, "user-1", "https://push.example/1")
    for index in range(5):
        store.notification_log.append(
            NotificationLogRecord(
                user_id="user-1",
                brand_id=f"brand-{index}",
                category="labor",
                delta=-1.0,
                success=True,
                sent_at=clock.now() - timedelta(hours=1),
            )
        )

    asyncio.run(handle_score_change(_payload(_delta("social", 3.0)), context))

    assert push_sender.sent == []


def test_delivery_failures_are_isolated_and_expired_subscriptions_removed(
    context: JobContext, store: InMemoryStore, push_sender
) -> None:
    _follow(store, "user-1", "https://push.example/gone")
    _follow(store, "user-2", "https://push.example/flaky")
    _follow(store, "user-3", "https://push.example/ok")
    push_sender.failures = {"https://push.example/gone": 410, "https://push.example/flaky": 500}

    asyncio.run(handle_score_change(_payload(_delta("environment", 1.2)), context))

    assert [endpoint for endpoint, _ in push_sender.sent] == ["https://push.example/ok"]
    assert store.subscriptions["user-1"] == []
    assert len(store.subscriptions["user-2"]) == 1
    outcomes = {entry.user_id: (entry.success, entry.error) for entry in store.notification_log}
    assert outcomes["user-1"] == (False, "push failed")
    assert outcomes["user-2"] == (False, "push failed")
    assert outcomes["user-3"] == (True, None)


def test_unexpected_recipient_error_does_not_fail_the_job(
    context: JobContext, store: InMemoryStore, push_sender, monkeypatch: pytest.MonkeyPatch
) -> None:
    _follow(store, "user-1", "https://push.example/1")
    _follow(store, "user-2", "https://push.example/2")
    original = store.allow_push_send

    async def flaky_allow(user_id: str, *args, **kwargs) -> bool:
        if user_id == "user-1":
            raise RuntimeError("rate limiter unavailable")
        return await original(user_id, *args, **kwargs)

    monkeypatch.setattr(store, "allow_push_send", flaky_allow)

    asyncio.run(handle_score_change(_payload(_delta("labor", -2.0)), context))

    assert [endpoint for endpoint, _ in push_sender.sent] == ["https://push.example/2"]
