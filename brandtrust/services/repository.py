from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from brandtrust.core.config import get_settings
from brandtrust.schemas.events import CATEGORIES, VERIFICATION_RANK, Verification
from brandtrust.services.sufficiency import EvidenceProfile

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates a constraint that is not an idempotent duplicate."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class JobRecord:
    id: str
    stage: str
    payload: dict[str, Any]
    not_before: datetime
    created_at: datetime
    locked_by: str | None = None
    locked_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    coalesce_key: str | None = None


@dataclass(slots=True)
class DeadJobRecord:
    id: str
    stage: str
    payload: dict[str, Any]
    attempts: int
    last_error: str | None
    original_created_at: datetime | None
    moved_to_dead_at: datetime


@dataclass(slots=True)
class EventSourceRecord:
    event_id: str
    canonical_url: str
    domain: str
    source_name: str | None = None
    published_at: datetime | None = None


@dataclass(slots=True)
class EventRecord:
    event_id: str
    brand_id: str
    title: str
    occurred_at: datetime
    severity: float
    credibility: float
    verification: Verification
    impacts: dict[str, float]
    category: str = "general"
    description: str | None = None
    ingested_from: str = "manual"
    created_at: datetime | None = None
    sources: list[EventSourceRecord] = field(default_factory=list)


@dataclass(slots=True)
class CategoryScoreRecord:
    brand_id: str
    category: str
    baseline: float
    news: float
    score: float
    event_count: int
    computed_at: datetime
    notified_score: float | None = None


@dataclass(slots=True)
class BrandScoreSummaryRecord:
    brand_id: str
    baseline_only: bool
    event_count: int
    explanation: list[str]
    computed_at: datetime


@dataclass(slots=True)
class UserWeightsRecord:
    user_id: str
    weights: dict[str, float]
    dealbreakers: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class PushSubscriptionRecord:
    endpoint: str
    p256dh: str
    auth: str


@dataclass(slots=True)
class FollowerRecord:
    user_id: str
    brand_id: str
    subscriptions: list[PushSubscriptionRecord]


@dataclass(slots=True)
class NotificationLogRecord:
    user_id: str
    brand_id: str
    category: str
    delta: float
    success: bool
    sent_at: datetime
    error: str | None = None


class PostgresRepository:
    """asyncpg-backed storage for jobs, events, scores and notification state.

    Every queue mutation that needs mutual exclusion is a single conditional
    statement; no advisory locks or external lock managers are used.
    """

    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select module_id, scopes, key_hash
            from module_credentials
            where module_id = $1 and enabled
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    # jobs

    async def enqueue_job(
        self,
        stage: str,
        payload: dict[str, Any],
        *,
        not_before: datetime,
        coalesce_key: str | None = None,
    ) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into jobs (id, stage, payload, not_before, coalesce_key)
            values ($1::uuid, $2, $3::jsonb, $4, $5)
            on conflict (coalesce_key) where locked_by is null and coalesce_key is not null
            do nothing
            returning id::text
            """,
            str(uuid4()),
            stage,
            json.dumps(payload),
            not_before,
            coalesce_key,
        )

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
        """Append score-change events to the open job for ``coalesce_key``.

        The merge and the advance of each category's ``notified_score`` commit
        together, so a rerun of the producing job sees either both or neither.
        """
        pool = await self._get_pool()
        document = dict(base_payload)
        document["events"] = events
        async with pool.acquire() as conn:
            async with conn.transaction():
                job_id = await conn.fetchval(
                    """
                    insert into jobs (id, stage, payload, not_before, coalesce_key)
                    values ($1::uuid, $2, $3::jsonb, $4, $5)
                    on conflict (coalesce_key) where locked_by is null and coalesce_key is not null
                    do update set payload = jsonb_set(
                      jobs.payload,
                      '{events}',
                      coalesce(jobs.payload -> 'events', '[]'::jsonb) || (excluded.payload -> 'events')
                    )
                    returning id::text
                    """,
                    str(uuid4()),
                    stage,
                    json.dumps(document),
                    not_before,
                    coalesce_key,
                )
                await conn.executemany(
                    "update category_scores set notified_score = $3 where brand_id = $1 and category = $2",
                    [(brand_id, event["category"], float(event["score"])) for event in events],
                )
        return job_id

    async def release_stale_locks(self, *, older_than: datetime) -> int:
        rows = await self._release_jobs(
            """
            with stale as (
              select id, coalesce_key, created_at
              from jobs
              where locked_by is not null and locked_at < $1
              for update skip locked
            ),
            ranked as (
              select id, row_number() over (partition by coalesce_key order by created_at, id) as key_rank
              from stale
            )
            update jobs
            set locked_by = null, locked_at = null,
              coalesce_key = case when ranked.key_rank > 1 then null else {released_key} end
            from ranked
            where jobs.id = ranked.id
            returning jobs.id
            """,
            older_than,
        )
        return len(rows)

    async def list_due_jobs(self, *, now: datetime, limit: int) -> list[JobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where locked_by is null and not_before <= $1
            order by created_at asc, id asc
            limit $2
            """,
            now,
            limit,
        )
        return [self._job_row_to_record(row) for row in rows]

    async def claim_jobs(self, job_ids: list[str], *, worker_id: str, now: datetime) -> list[JobRecord]:
        if not job_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            update jobs
            set locked_by = $2, locked_at = $3
            where id = any($1::uuid[]) and locked_by is null and not_before <= $3
            returning {_JOB_COLUMNS}
            """,
            job_ids,
            worker_id,
            now,
        )
        return sorted(
            (self._job_row_to_record(row) for row in rows),
            key=lambda job: (job.created_at, job.id),
        )

    async def complete_job(self, job_id: str, *, worker_id: str) -> bool:
        pool = await self._get_pool()
        try:
            status = await pool.execute(
                "delete from jobs where id = $1::uuid and locked_by = $2",
                job_id,
                worker_id,
            )
        except _DATABASE_ERRORS as exc:
            raise _repository_error("complete job", exc) from exc
        return _affected(status) == 1

    async def reschedule_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        attempts: int,
        last_error: str,
        not_before: datetime,
    ) -> bool:
        rows = await self._release_jobs(
            """
            update jobs
            set attempts = $3, last_error = $4, not_before = $5, locked_by = null, locked_at = null,
              coalesce_key = {released_key}
            where id = $1::uuid and locked_by = $2
            returning id
            """,
            job_id,
            worker_id,
            attempts,
            last_error,
            not_before,
        )
        return len(rows) == 1

    async def defer_job(self, job_id: str, *, worker_id: str, not_before: datetime) -> bool:
        rows = await self._release_jobs(
            """
            update jobs
            set not_before = $3, locked_by = null, locked_at = null, coalesce_key = {released_key}
            where id = $1::uuid and locked_by = $2
            returning id
            """,
            job_id,
            worker_id,
            not_before,
        )
        return len(rows) == 1

    async def dead_letter_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        attempts: int,
        last_error: str,
        now: datetime,
    ) -> bool:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        delete from jobs
                        where id = $1::uuid and locked_by = $2
                        returning id::text as id, stage, payload, created_at
                        """,
                        job_id,
                        worker_id,
                    )
                    if row is None:
                        return False
                    await conn.execute(
                        """
                        insert into jobs_dead (id, stage, payload, attempts, last_error, original_created_at, moved_to_dead_at)
                        values ($1::uuid, $2, $3::jsonb, $4, $5, $6, $7)
                        """,
                        row["id"],
                        row["stage"],
                        json.dumps(_coerce_json_dict(row["payload"])),
                        attempts,
                        last_error,
                        row["created_at"],
                        now,
                    )
                    return True
        except _DATABASE_ERRORS as exc:
            raise _repository_error("dead-letter job", exc) from exc

    async def _release_jobs(self, statement: str, *args: Any) -> list[asyncpg.Record]:
        """Unlock jobs, keeping a coalesce key only where no unlocked job holds it.

        A concurrent release of a same-key job can still take the key between the
        check and the write; the statement is then rerun with the key dropped.
        """
        pool = await self._get_pool()
        try:
            try:
                return await pool.fetch(statement.format(released_key=_RELEASED_COALESCE_KEY), *args)
            except pg_exc.UniqueViolationError:
                logger.warning("coalesce key taken during job release; releasing without key")
                return await pool.fetch(statement.format(released_key="null"), *args)
        except _DATABASE_ERRORS as exc:
            raise _repository_error("release job", exc) from exc

    async def list_dead_jobs(self, *, limit: int) -> list[DeadJobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, stage, payload, attempts, last_error, original_created_at, moved_to_dead_at
            from jobs_dead
            order by moved_to_dead_at desc
            limit $1
            """,
            max(1, min(limit, 1000)),
        )
        return [
            DeadJobRecord(
                id=row["id"],
                stage=row["stage"],
                payload=_coerce_json_dict(row["payload"]),
                attempts=row["attempts"],
                last_error=row["last_error"],
                original_created_at=row["original_created_at"],
                moved_to_dead_at=row["moved_to_dead_at"],
            )
            for row in rows
        ]

    # events

    async def count_recent_events(self, brand_id: str, *, since: datetime) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval(
            "select count(*) from brand_events where brand_id = $1 and created_at >= $2",
            brand_id,
            since,
        )
        return int(count or 0)

    async def insert_event(self, event: EventRecord, *, now: datetime) -> bool:
        pool = await self._get_pool()
        try:
            inserted = await pool.fetchval(
                """
                insert into brand_events (
                  event_id, brand_id, title, description, category, occurred_at,
                  severity, credibility, verification, impacts, ingested_from, created_at
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11, $12)
                on conflict (event_id) do nothing
                returning event_id
                """,
                event.event_id,
                event.brand_id,
                event.title,
                event.description,
                event.category,
                event.occurred_at,
                event.severity,
                event.credibility,
                event.verification.value,
                json.dumps(event.impacts),
                event.ingested_from,
                now,
            )
        except (pg_exc.CheckViolationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return inserted is not None

    async def insert_event_sources(self, sources: list[EventSourceRecord]) -> int:
        if not sources:
            return 0
        pool = await self._get_pool()
        inserted = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for source in sources:
                    status = await conn.execute(
                        """
                        insert into event_sources (event_id, canonical_url, domain, source_name, published_at)
                        values ($1, $2, $3, $4, $5)
                        on conflict (event_id, canonical_url) do nothing
                        """,
                        source.event_id,
                        source.canonical_url,
                        source.domain,
                        source.source_name,
                        source.published_at,
                    )
                    inserted += _affected(status)
        return inserted

    async def get_event(self, event_id: str) -> EventRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"select {_EVENT_COLUMNS} from brand_events where event_id = $1", event_id)
            if row is None:
                return None
            source_rows = await conn.fetch(
                """
                select event_id, canonical_url, domain, source_name, published_at
                from event_sources
                where event_id = $1
                order by canonical_url
                """,
                event_id,
            )
        event = self._event_row_to_record(row)
        event.sources = [
            EventSourceRecord(
                event_id=source["event_id"],
                canonical_url=source["canonical_url"],
                domain=source["domain"],
                source_name=source["source_name"],
                published_at=source["published_at"],
            )
            for source in source_rows
        ]
        return event

    async def escalate_verification(self, event_id: str, verification: Verification) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update brand_events
            set verification = $2
            where event_id = $1
              and (case verification
                     when 'noise' then 0
                     when 'unverified' then 1
                     when 'corroborated' then 2
                     when 'official' then 3
                   end) < $3
            """,
            event_id,
            verification.value,
            VERIFICATION_RANK[verification],
        )
        return _affected(status) == 1

    async def flag_brand_for_review(self, brand_id: str, *, reason: str, now: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into brand_review_flags (brand_id, reason, flagged_at)
            values ($1, $2, $3)
            on conflict (brand_id) do update set reason = excluded.reason, flagged_at = excluded.flagged_at
            """,
            brand_id,
            reason,
            now,
        )

    async def list_scoring_events(self, brand_id: str, *, since: datetime, until: datetime) -> list[EventRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_EVENT_COLUMNS}
            from brand_events
            where brand_id = $1 and occurred_at >= $2 and occurred_at <= $3
            order by occurred_at asc, event_id asc
            """,
            brand_id,
            since,
            until,
        )
        return [self._event_row_to_record(row) for row in rows]

    async def list_recent_events(self, *, since: datetime, limit: int) -> list[EventRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_EVENT_COLUMNS}
            from brand_events
            where occurred_at >= $1 and verification <> 'noise'
            order by occurred_at desc, event_id asc
            limit $2
            """,
            since,
            limit,
        )
        return [self._event_row_to_record(row) for row in rows]

    async def list_brand_targets(self) -> list[tuple[str, str]]:
        pool = await self._get_pool()
        rows = await pool.fetch("select brand_id, name from brands where active order by brand_id")
        return [(row["brand_id"], row["name"]) for row in rows]

    # scores

    async def get_baseline(self, brand_id: str) -> dict[str, float]:
        pool = await self._get_pool()
        rows = await pool.fetch("select category, baseline from brand_baselines where brand_id = $1", brand_id)
        return {row["category"]: float(row["baseline"]) for row in rows}

    async def get_category_scores(self, brand_id: str) -> list[CategoryScoreRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select brand_id, category, baseline, news, score, event_count, computed_at, notified_score
            from category_scores
            where brand_id = $1
            """,
            brand_id,
        )
        records = [
            CategoryScoreRecord(
                brand_id=row["brand_id"],
                category=row["category"],
                baseline=float(row["baseline"]),
                news=float(row["news"]),
                score=float(row["score"]),
                event_count=row["event_count"],
                computed_at=row["computed_at"],
                notified_score=None if row["notified_score"] is None else float(row["notified_score"]),
            )
            for row in rows
        ]
        return sorted(records, key=lambda record: CATEGORIES.index(record.category))

    async def get_score_summary(self, brand_id: str) -> BrandScoreSummaryRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select brand_id, baseline_only, event_count, explanation, computed_at
            from brand_score_summaries
            where brand_id = $1
            """,
            brand_id,
        )
        if row is None:
            return None
        return BrandScoreSummaryRecord(
            brand_id=row["brand_id"],
            baseline_only=row["baseline_only"],
            event_count=row["event_count"],
            explanation=[str(line) for line in _coerce_json_list(row["explanation"])],
            computed_at=row["computed_at"],
        )

    async def save_brand_scores(
        self,
        rows: list[CategoryScoreRecord],
        summary: BrandScoreSummaryRecord,
    ) -> dict[str, float]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                previous_rows = await conn.fetch(
                    """
                    select category, coalesce(notified_score, score) as notified_score
                    from category_scores
                    where brand_id = $1
                    for update
                    """,
                    summary.brand_id,
                )
                for row in rows:
                    await conn.execute(
                        """
                        insert into category_scores (brand_id, category, baseline, news, score, event_count, computed_at, notified_score)
                        values ($1, $2, $3, $4, $5, $6, $7, $5)
                        on conflict (brand_id, category) do update set
                          baseline = excluded.baseline,
                          news = excluded.news,
                          score = excluded.score,
                          event_count = excluded.event_count,
                          computed_at = excluded.computed_at
                        """,
                        row.brand_id,
                        row.category,
                        row.baseline,
                        row.news,
                        row.score,
                        row.event_count,
                        row.computed_at,
                    )
                await conn.execute(
                    """
                    insert into brand_score_summaries (brand_id, baseline_only, event_count, explanation, computed_at)
                    values ($1, $2, $3, $4::jsonb, $5)
                    on conflict (brand_id) do update set
                      baseline_only = excluded.baseline_only,
                      event_count = excluded.event_count,
                      explanation = excluded.explanation,
                      computed_at = excluded.computed_at
                    """,
                    summary.brand_id,
                    summary.baseline_only,
                    summary.event_count,
                    json.dumps(summary.explanation),
                    summary.computed_at,
                )
        return {row["category"]: float(row["notified_score"]) for row in previous_rows}

    async def list_score_summaries(self, *, limit: int) -> list[BrandScoreSummaryRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select brand_id, baseline_only, event_count, explanation, computed_at
            from brand_score_summaries
            order by computed_at desc
            limit $1
            """,
            limit,
        )
        return [
            BrandScoreSummaryRecord(
                brand_id=row["brand_id"],
                baseline_only=row["baseline_only"],
                event_count=row["event_count"],
                explanation=[str(line) for line in _coerce_json_list(row["explanation"])],
                computed_at=row["computed_at"],
            )
            for row in rows
        ]

    async def get_user_weights(self, user_id: str) -> UserWeightsRecord | None:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select category, weight, dealbreaker_threshold from user_weights where user_id = $1",
            user_id,
        )
        if not rows:
            return None
        return UserWeightsRecord(
            user_id=user_id,
            weights={row["category"]: float(row["weight"]) for row in rows},
            dealbreakers={
                row["category"]: float(row["dealbreaker_threshold"])
                for row in rows
                if row["dealbreaker_threshold"] is not None
            },
        )

    async def get_evidence_profile(self, brand_id: str) -> EvidenceProfile | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              b.website,
              b.wikidata_qid,
              b.has_ownership,
              b.legal_entity,
              b.has_recalls,
              b.has_regulatory,
              b.has_certifications,
              b.has_sustainability_report,
              b.has_public_commitments,
              b.has_watchdog_reports,
              b.has_ngo_analysis,
              b.product_count,
              b.retailer_presence,
              b.has_consumer_reports,
              (select count(*) from brand_events e where e.brand_id = b.brand_id) as event_count,
              (
                select count(distinct s.domain)
                from event_sources s
                join brand_events e on e.event_id = s.event_id
                where e.brand_id = b.brand_id
              ) as news_source_count
            from brand_evidence b
            where b.brand_id = $1
            """,
            brand_id,
        )
        if row is None:
            return None
        return EvidenceProfile(
            website=row["website"],
            wikidata_qid=row["wikidata_qid"],
            has_ownership=bool(row["has_ownership"]),
            legal_entity=row["legal_entity"],
            event_count=int(row["event_count"] or 0),
            has_recalls=bool(row["has_recalls"]),
            has_regulatory=bool(row["has_regulatory"]),
            has_certifications=bool(row["has_certifications"]),
            has_sustainability_report=bool(row["has_sustainability_report"]),
            has_public_commitments=bool(row["has_public_commitments"]),
            news_source_count=int(row["news_source_count"] or 0),
            has_watchdog_reports=bool(row["has_watchdog_reports"]),
            has_ngo_analysis=bool(row["has_ngo_analysis"]),
            product_count=int(row["product_count"] or 0),
            retailer_presence=bool(row["retailer_presence"]),
            has_consumer_reports=bool(row["has_consumer_reports"]),
        )

    # notifications

    async def list_followers(self, brand_id: str) -> list[FollowerRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select f.user_id, s.endpoint, s.p256dh, s.auth
            from user_follows f
            left join user_push_subs s on s.user_id = f.user_id
            where f.brand_id = $1 and f.notifications_enabled
            order by f.user_id, s.endpoint
            """,
            brand_id,
        )
        followers: dict[str, FollowerRecord] = {}
        for row in rows:
            follower = followers.setdefault(
                row["user_id"],
                FollowerRecord(user_id=row["user_id"], brand_id=brand_id, subscriptions=[]),
            )
            if row["endpoint"]:
                follower.subscriptions.append(
                    PushSubscriptionRecord(endpoint=row["endpoint"], p256dh=row["p256dh"], auth=row["auth"])
                )
        return list(followers.values())

    async def allow_push_send(
        self,
        user_id: str,
        brand_id: str,
        category: str,
        *,
        day_start: datetime,
        daily_limit: int,
    ) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) filter (where brand_id = $2 and category = $3) as same_topic,
              count(*) as total
            from notification_log
            where user_id = $1 and success and sent_at >= $4
            """,
            user_id,
            brand_id,
            category,
            day_start,
        )
        return int(row["same_topic"]) == 0 and int(row["total"]) < daily_limit

    async def record_notification(self, record: NotificationLogRecord) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into notification_log (user_id, brand_id, category, delta, success, error, sent_at)
            values ($1, $2, $3, $4, $5, $6, $7)
            """,
            record.user_id,
            record.brand_id,
            record.category,
            record.delta,
            record.success,
            record.error,
            record.sent_at,
        )

    async def delete_push_subscription(self, endpoint: str) -> None:
        pool = await self._get_pool()
        await pool.execute("delete from user_push_subs where endpoint = $1", endpoint)

    # snapshots

    async def save_snapshot(self, key: str, document: dict[str, Any], *, now: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into snapshots (key, document, created_at)
            values ($1, $2::jsonb, $3)
            on conflict (key) do update set document = excluded.document, created_at = excluded.created_at
            """,
            key,
            json.dumps(document),
            now,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("BT_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_record(row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            stage=row["stage"],
            payload=_coerce_json_dict(row["payload"]),
            not_before=row["not_before"],
            created_at=row["created_at"],
            locked_by=row["locked_by"],
            locked_at=row["locked_at"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            coalesce_key=row["coalesce_key"],
        )

    @staticmethod
    def _event_row_to_record(row: asyncpg.Record) -> EventRecord:
        impacts = _coerce_json_dict(row["impacts"])
        return EventRecord(
            event_id=row["event_id"],
            brand_id=row["brand_id"],
            title=row["title"],
            description=row["description"],
            category=row["category"],
            occurred_at=row["occurred_at"],
            severity=float(row["severity"]),
            credibility=float(row["credibility"]),
            verification=Verification(row["verification"]),
            impacts={key: float(value) for key, value in impacts.items() if key in CATEGORIES},
            ingested_from=row["ingested_from"],
            created_at=row["created_at"],
        )


# A released job keeps its coalesce key only if no other unlocked job holds it.
_RELEASED_COALESCE_KEY = """
case
  when exists (
    select 1 from jobs other
    where other.coalesce_key = jobs.coalesce_key and other.locked_by is null and other.id <> jobs.id
  ) then null
  else jobs.coalesce_key
end
"""

_JOB_COLUMNS = """
  id::text as id,
  stage,
  payload,
  not_before,
  created_at,
  locked_by,
  locked_at,
  attempts,
  last_error,
  coalesce_key
"""

_EVENT_COLUMNS = """
  event_id,
  brand_id,
  title,
  description,
  category,
  occurred_at,
  severity,
  credibility,
  verification,
  impacts,
  ingested_from,
  created_at
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1`` or ``INSERT 0 1``."""
    try:
        return int(status.rsplit(" ", maxsplit=1)[-1])
    except (AttributeError, ValueError):
        return 0


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, dict):
        return value
    return {}


def _coerce_json_list(value: Any) -> list[Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if isinstance(value, list):
        return value
    return []


@lru_cache
def get_repository() -> Any:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from brandtrust.services.store import InMemoryStore

        return InMemoryStore()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


_DATABASE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _repository_error(action: str, exc: Exception) -> RepositoryError:
    if isinstance(exc, asyncpg.PostgresError):
        return RepositoryError(f"{action} failed: {exc}")
    return RepositoryUnavailableError(f"{action} failed: database unavailable")
