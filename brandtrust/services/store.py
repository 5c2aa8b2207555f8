"""Process-local store with the same interface as ``PostgresRepository``.

Used for tests and single-process development. None of the mutating methods
await anything, so each one runs to completion without yielding to the event
loop; that gives the same all-or-nothing claim and merge semantics as the
conditional SQL statements.
"""

from __future__ import annotations

import copy
import itertools
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from brandtrust.core.clock import Clock, SystemClock
from brandtrust.jobs.lease_reaper import lock_is_stale
from brandtrust.schemas.events import CATEGORIES, Verification, is_escalation
from brandtrust.services.repository import (
    BrandScoreSummaryRecord,
    CategoryScoreRecord,
    DeadJobRecord,
    EventRecord,
    EventSourceRecord,
    FollowerRecord,
    JobRecord,
    MachineCredentialRecord,
    NotificationLogRecord,
    PushSubscriptionRecord,
    UserWeightsRecord,
)
from brandtrust.services.sufficiency import EvidenceProfile


class InMemoryStore:
    def __init__(self, clock: Clock | None = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self.jobs: dict[str, JobRecord] = {}
        self.dead_jobs: list[DeadJobRecord] = []
        self.events: dict[str, EventRecord] = {}
        self.sources: dict[tuple[str, str], EventSourceRecord] = {}
        self.review_flags: dict[str, tuple[str, datetime]] = {}
        self.brands: dict[str, str] = {}
        self.baselines: dict[str, dict[str, float]] = {}
        self.category_scores: dict[tuple[str, str], CategoryScoreRecord] = {}
        self.summaries: dict[str, BrandScoreSummaryRecord] = {}
        self.user_weights: dict[str, UserWeightsRecord] = {}
        self.follows: dict[str, dict[str, bool]] = {}
        self.subscriptions: dict[str, list[PushSubscriptionRecord]] = {}
        self.notification_log: list[NotificationLogRecord] = []
        self.snapshots: dict[str, dict[str, Any]] = {}
        self.credentials: dict[str, list[MachineCredentialRecord]] = {}
        self.evidence_profiles: dict[str, EvidenceProfile] = {}
        self._sequence = itertools.count()
        self._job_order: dict[str, int] = {}

    async def close(self) -> None:
        return None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        return list(self.credentials.get(module_id, []))

    # jobs

    async def enqueue_job(
        self,
        stage: str,
        payload: dict[str, Any],
        *,
        not_before: datetime,
        coalesce_key: str | None = None,
    ) -> str | None:
        if coalesce_key is not None and self._unlocked_job_for_key(coalesce_key) is not None:
            return None
        return self._insert_job(stage, copy.deepcopy(payload), not_before=not_before, coalesce_key=coalesce_key)

    async def merge_score_change(
        self,
        stage: str,
        coalesce_key: str,
        *,
        brand_id: str,
        base_payload: dict[str, Any],
        events: list[dict[str, Any]],
        not_before: datetime,
    ) -> str:
        existing = self._unlocked_job_for_key(coalesce_key)
        if existing is not None:
            existing.payload.setdefault("events", []).extend(copy.deepcopy(events))
            job_id = existing.id
        else:
            payload = copy.deepcopy(base_payload)
            payload["events"] = copy.deepcopy(events)
            job_id = self._insert_job(stage, payload, not_before=not_before, coalesce_key=coalesce_key)
        for event in events:
            row = self.category_scores.get((brand_id, event["category"]))
            if row is not None:
                row.notified_score = float(event["score"])
        return job_id

    async def release_stale_locks(self, *, older_than: datetime) -> int:
        released = 0
        for job in self.jobs.values():
            if lock_is_stale(job, older_than):
                self._release(job)
                released += 1
        return released

    async def list_due_jobs(self, *, now: datetime, limit: int) -> list[JobRecord]:
        due = [job for job in self.jobs.values() if job.locked_by is None and job.not_before <= now]
        due.sort(key=self._fifo_key)
        return [replace(job, payload=copy.deepcopy(job.payload)) for job in due[:limit]]

    async def claim_jobs(self, job_ids: list[str], *, worker_id: str, now: datetime) -> list[JobRecord]:
        claimed: list[JobRecord] = []
        for job_id in job_ids:
            job = self.jobs.get(job_id)
            if job is None or job.locked_by is not None or job.not_before > now:
                continue
            job.locked_by = worker_id
            job.locked_at = now
            claimed.append(replace(job, payload=copy.deepcopy(job.payload)))
        claimed.sort(key=self._fifo_key)
        return claimed

    async def complete_job(self, job_id: str, *, worker_id: str) -> bool:
        job = self._locked_job(job_id, worker_id)
        if job is None:
            return False
        self._delete_job(job_id)
        return True

    async def reschedule_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        attempts: int,
        last_error: str,
        not_before: datetime,
    ) -> bool:
        job = self._locked_job(job_id, worker_id)
        if job is None:
            return False
        job.attempts = attempts
        job.last_error = last_error
        job.not_before = not_before
        self._release(job)
        return True

    async def defer_job(self, job_id: str, *, worker_id: str, not_before: datetime) -> bool:
        job = self._locked_job(job_id, worker_id)
        if job is None:
            return False
        job.not_before = not_before
        self._release(job)
        return True

    async def dead_letter_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        attempts: int,
        last_error: str,
        now: datetime,
    ) -> bool:
        job = self._locked_job(job_id, worker_id)
        if job is None:
            return False
        self.dead_jobs.append(
            DeadJobRecord(
                id=job.id,
                stage=job.stage,
                payload=copy.deepcopy(job.payload),
                attempts=attempts,
                last_error=last_error,
                original_created_at=job.created_at,
                moved_to_dead_at=now,
            )
        )
        self._delete_job(job_id)
        return True

    async def list_dead_jobs(self, *, limit: int) -> list[DeadJobRecord]:
        ordered = sorted(self.dead_jobs, key=lambda item: item.moved_to_dead_at, reverse=True)
        return ordered[: max(1, min(limit, 1000))]

    # events

    async def count_recent_events(self, brand_id: str, *, since: datetime) -> int:
        return sum(
            1
            for event in self.events.values()
            if event.brand_id == brand_id and event.created_at is not None and event.created_at >= since
        )

    async def insert_event(self, event: EventRecord, *, now: datetime) -> bool:
        if event.event_id in self.events:
            return False
        self.events[event.event_id] = replace(event, created_at=now, sources=[], impacts=dict(event.impacts))
        return True

    async def insert_event_sources(self, sources: list[EventSourceRecord]) -> int:
        inserted = 0
        for source in sources:
            key = (source.event_id, source.canonical_url)
            if key in self.sources:
                continue
            self.sources[key] = replace(source)
            inserted += 1
        return inserted

    async def get_event(self, event_id: str) -> EventRecord | None:
        event = self.events.get(event_id)
        if event is None:
            return None
        sources = sorted(
            (source for (owner, _), source in self.sources.items() if owner == event_id),
            key=lambda source: source.canonical_url,
        )
        return replace(event, sources=[replace(source) for source in sources], impacts=dict(event.impacts))

    async def escalate_verification(self, event_id: str, verification: Verification) -> bool:
        event = self.events.get(event_id)
        if event is None or not is_escalation(event.verification, verification):
            return False
        event.verification = verification
        return True

    async def flag_brand_for_review(self, brand_id: str, *, reason: str, now: datetime) -> None:
        self.review_flags[brand_id] = (reason, now)

    async def list_scoring_events(self, brand_id: str, *, since: datetime, until: datetime) -> list[EventRecord]:
        events = [
            replace(event, impacts=dict(event.impacts))
            for event in self.events.values()
            if event.brand_id == brand_id and since <= event.occurred_at <= until
        ]
        return sorted(events, key=lambda event: (event.occurred_at, event.event_id))

    async def list_recent_events(self, *, since: datetime, limit: int) -> list[EventRecord]:
        events = [
            replace(event, impacts=dict(event.impacts))
            for event in self.events.values()
            if event.occurred_at >= since and event.verification != Verification.NOISE
        ]
        events.sort(key=lambda event: event.event_id)
        events.sort(key=lambda event: event.occurred_at, reverse=True)
        return events[:limit]

    async def list_brand_targets(self) -> list[tuple[str, str]]:
        return sorted(self.brands.items())

    # scores

    async def get_baseline(self, brand_id: str) -> dict[str, float]:
        return dict(self.baselines.get(brand_id, {}))

    async def get_category_scores(self, brand_id: str) -> list[CategoryScoreRecord]:
        return [
            replace(self.category_scores[(brand_id, category)])
            for category in CATEGORIES
            if (brand_id, category) in self.category_scores
        ]

    async def get_score_summary(self, brand_id: str) -> BrandScoreSummaryRecord | None:
        summary = self.summaries.get(brand_id)
        return replace(summary, explanation=list(summary.explanation)) if summary else None

    async def save_brand_scores(
        self,
        rows: list[CategoryScoreRecord],
        summary: BrandScoreSummaryRecord,
    ) -> dict[str, float]:
        notified: dict[str, float] = {}
        for category in CATEGORIES:
            existing = self.category_scores.get((summary.brand_id, category))
            if existing is not None:
                notified[category] = existing.score if existing.notified_score is None else existing.notified_score
        for row in rows:
            # first insert seeds the watermark; later saves leave it to merge_score_change
            watermark = notified.get(row.category, row.score)
            self.category_scores[(row.brand_id, row.category)] = replace(row, notified_score=watermark)
        self.summaries[summary.brand_id] = replace(summary, explanation=list(summary.explanation))
        return notified

    async def list_score_summaries(self, *, limit: int) -> list[BrandScoreSummaryRecord]:
        ordered = sorted(self.summaries.values(), key=lambda item: item.computed_at, reverse=True)
        return [replace(item, explanation=list(item.explanation)) for item in ordered[:limit]]

    async def get_user_weights(self, user_id: str) -> UserWeightsRecord | None:
        record = self.user_weights.get(user_id)
        if record is None:
            return None
        return UserWeightsRecord(
            user_id=record.user_id,
            weights=dict(record.weights),
            dealbreakers=dict(record.dealbreakers),
        )

    async def get_evidence_profile(self, brand_id: str) -> EvidenceProfile | None:
        profile = self.evidence_profiles.get(brand_id)
        if profile is None:
            return None
        brand_events = {event_id for event_id, event in self.events.items() if event.brand_id == brand_id}
        domains = {source.domain for (event_id, _), source in self.sources.items() if event_id in brand_events}
        return replace(profile, event_count=len(brand_events), news_source_count=len(domains))

    # notifications

    async def list_followers(self, brand_id: str) -> list[FollowerRecord]:
        followers = []
        for user_id, enabled in sorted(self.follows.get(brand_id, {}).items()):
            if not enabled:
                continue
            subscriptions = sorted(self.subscriptions.get(user_id, []), key=lambda sub: sub.endpoint)
            followers.append(
                FollowerRecord(
                    user_id=user_id,
                    brand_id=brand_id,
                    subscriptions=[replace(sub) for sub in subscriptions],
                )
            )
        return followers

    async def allow_push_send(
        self,
        user_id: str,
        brand_id: str,
        category: str,
        *,
        day_start: datetime,
        daily_limit: int,
    ) -> bool:
        sent_today = [
            entry
            for entry in self.notification_log
            if entry.user_id == user_id and entry.success and entry.sent_at >= day_start
        ]
        if any(entry.brand_id == brand_id and entry.category == category for entry in sent_today):
            return False
        return len(sent_today) < daily_limit

    async def record_notification(self, record: NotificationLogRecord) -> None:
        self.notification_log.append(replace(record))

    async def delete_push_subscription(self, endpoint: str) -> None:
        for user_id, subscriptions in self.subscriptions.items():
            self.subscriptions[user_id] = [sub for sub in subscriptions if sub.endpoint != endpoint]

    # snapshots

    async def save_snapshot(self, key: str, document: dict[str, Any], *, now: datetime) -> None:
        self.snapshots[key] = copy.deepcopy(document)

    def _insert_job(
        self,
        stage: str,
        payload: dict[str, Any],
        *,
        not_before: datetime,
        coalesce_key: str | None,
    ) -> str:
        job_id = str(uuid4())
        self.jobs[job_id] = JobRecord(
            id=job_id,
            stage=stage,
            payload=payload,
            not_before=not_before,
            created_at=self.clock.now(),
            coalesce_key=coalesce_key,
        )
        self._job_order[job_id] = next(self._sequence)
        return job_id

    def _unlocked_job_for_key(self, coalesce_key: str) -> JobRecord | None:
        for job in self.jobs.values():
            if job.coalesce_key == coalesce_key and job.locked_by is None:
                return job
        return None

    def _release(self, job: JobRecord) -> None:
        job.locked_by = None
        job.locked_at = None
        if job.coalesce_key is not None and any(
            other.id != job.id and other.coalesce_key == job.coalesce_key and other.locked_by is None
            for other in self.jobs.values()
        ):
            job.coalesce_key = None

    def _locked_job(self, job_id: str, worker_id: str) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.locked_by != worker_id:
            return None
        return job

    def _delete_job(self, job_id: str) -> None:
        self.jobs.pop(job_id, None)
        self._job_order.pop(job_id, None)

    def _fifo_key(self, job: JobRecord) -> tuple[datetime, int]:
        return job.created_at, self._job_order.get(job.id, 0)
