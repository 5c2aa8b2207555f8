from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from brandtrust.core.clock import FixedClock
from brandtrust.core.config import Settings
from brandtrust.jobs.context import JobContext
from brandtrust.jobs.runner import JobRunner
from brandtrust.jobs.score import handle_score_brand
from brandtrust.schemas.events import Verification
from brandtrust.schemas.jobs import ScoreBrandPayload
from brandtrust.services.repository import EventRecord
from brandtrust.services.store import InMemoryStore

from conftest import RecordingPushSender


def _add_event(store: InMemoryStore, clock: FixedClock, event_id: str, *, age_days: float, labor: float) -> None:
    store.events[event_id] = EventRecord(
        event_id=event_id,
        brand_id="acme",
        title=event_id,
        occurred_at=clock.now() - timedelta(days=age_days),
        severity=1.0,
        credibility=1.0,
        verification=Verification.OFFICIAL,
        impacts={"labor": labor},
        created_at=clock.now(),
    )


def _score(context: JobContext) -> None:
    asyncio.run(handle_score_brand(ScoreBrandPayload(brand_id="acme"), context))


def test_first_scoring_persists_rows_without_notifying(
    context: JobContext, store: InMemoryStore, clock: FixedClock
) -> None:
    store.baselines["acme"] = {"labor": 2.0, "environment": 1.0}
    _add_event(store, clock, "evt_recent", age_days=0, labor=-0.8)

    _score(context)

    assert store.category_scores[("acme", "labor")].score == pytest.approx(1.2)
    assert store.category_scores[("acme", "environment")].score == pytest.approx(1.0)
    assert store.summaries["acme"].baseline_only is False
    assert store.summaries["acme"].event_count == 1
    assert store.jobs == {}


def test_scoring_ignores_future_and_stale_events(context: JobContext, store: InMemoryStore, clock: FixedClock) -> None:
    _add_event(store, clock, "evt_future", age_days=-1, labor=-3.0)
    _add_event(store, clock, "evt_ancient", age_days=400, labor=-3.0)

    _score(context)

    assert store.summaries["acme"].baseline_only is True
    assert store.summaries["acme"].explanation == ["Baseline only: no qualifying events"]
    assert store.category_scores[("acme", "labor")].score == 0.0


def test_large_score_change_enqueues_coalesced_notification(
    context: JobContext, store: InMemoryStore, clock: FixedClock
) -> None:
    store.baselines["acme"] = {"labor": 1.0}
    _score(context)

    _add_event(store, clock, "evt_strike", age_days=0, labor=-2.5)
    _score(context)

    jobs = list(store.jobs.values())
    assert len(jobs) == 1
    assert jobs[0].stage == "send_push_for_score_change"
    assert jobs[0].coalesce_key == "notify:acme:2024-05-15T12:00:00+00:00"
    assert jobs[0].payload["events"][0]["category"] == "labor"
    assert jobs[0].payload["events"][0]["delta"] == pytest.approx(-2.5)


def test_small_score_change_does_not_notify(context: JobContext, store: InMemoryStore, clock: FixedClock) -> None:
    _score(context)

    _add_event(store, clock, "evt_minor", age_days=0, labor=-0.4)
    _score(context)

    assert store.jobs == {}


def test_small_changes_accumulate_until_they_cross_the_threshold(
    context: JobContext, store: InMemoryStore, clock: FixedClock
) -> None:
    store.baselines["acme"] = {"labor": 1.0}
    _score(context)

    _add_event(store, clock, "evt_minor_1", age_days=0, labor=-0.6)
    _score(context)
    assert store.jobs == {}

    _add_event(store, clock, "evt_minor_2", age_days=0, labor=-0.6)
    _score(context)

    (job,) = store.jobs.values()
    assert job.payload["events"][0]["delta"] == pytest.approx(-1.2)
    assert store.category_scores[("acme", "labor")].notified_score == pytest.approx(-0.2)


def test_notification_survives_a_failed_merge(
    monkeypatch: pytest.MonkeyPatch,
    context: JobContext,
    store: InMemoryStore,
    settings: Settings,
    clock: FixedClock,
    push_sender: RecordingPushSender,
) -> None:
    store.baselines["acme"] = {"labor": 0.0}
    _score(context)
    _add_event(store, clock, "evt_strike", age_days=0, labor=-4.0)

    merge = store.merge_score_change
    calls = {"count": 0}

    async def merge_failing_once(*args: Any, **kwargs: Any) -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("connection reset during merge")
        return await merge(*args, **kwargs)

    monkeypatch.setattr(store, "merge_score_change", merge_failing_once)
    asyncio.run(store.enqueue_job("score_brand", {"brand_id": "acme"}, not_before=clock.now()))
    runner = JobRunner(store, settings, clock=clock, push_sender=push_sender)

    first = asyncio.run(runner.run_once())
    clock.advance(seconds=1)
    second = asyncio.run(runner.run_once())

    assert first.failed == 1
    assert second.succeeded == 1
    (job,) = store.jobs.values()
    assert job.stage == "send_push_for_score_change"
    assert [event["category"] for event in job.payload["events"]] == ["labor"]
    assert job.payload["events"][0]["delta"] == pytest.approx(-4.0, abs=1e-3)
