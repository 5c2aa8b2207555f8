"""Lease-based job runner.

One ``run_once`` call releases stale locks, claims a FIFO batch of due jobs with
a single conditional update and executes each claimed job in isolation.
Several invocations may overlap; a job is executed by whichever invocation's
claim statement wins.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Sequence
from uuid import uuid4

from opentelemetry import trace

from brandtrust.core.clock import Clock, SystemClock
from brandtrust.core.config import Settings
from brandtrust.core.telemetry import job_span_attributes, run_span_attributes
from brandtrust.jobs.context import JobContext
from brandtrust.jobs.errors import InvalidJobPayload, JobDeferred
from brandtrust.jobs.executor import execute_job
from brandtrust.jobs.lease_reaper import stale_lock_cutoff
from brandtrust.services.push import PushSender, build_push_sender
from brandtrust.services.repository import JobRecord, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_ERROR_LENGTH = 2000

Executor = Callable[[JobRecord, JobContext], Awaitable[None]]


@dataclass(slots=True)
class RunSummary:
    worker_id: str
    released_stale: int = 0
    selected: int = 0
    claimed: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    dead_lettered: int = 0
    lease_lost: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def retry_delay_seconds(attempts: int, backoff: Sequence[int]) -> int:
    if not backoff:
        return 0
    index = min(max(attempts, 1), len(backoff)) - 1
    return int(backoff[index])


def format_error(exc: BaseException) -> str:
    message = f"{exc.__class__.__name__}: {exc}"
    return message[:MAX_ERROR_LENGTH]


class JobRunner:
    def __init__(
        self,
        repository: Any,
        settings: Settings,
        *,
        clock: Clock | None = None,
        push_sender: PushSender | None = None,
        executor: Executor = execute_job,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.clock = clock or SystemClock()
        self.executor = executor
        self.context = JobContext(
            repository=repository,
            settings=settings,
            clock=self.clock,
            push_sender=push_sender or build_push_sender(settings),
        )

    async def run_once(self) -> RunSummary:
        summary = RunSummary(worker_id=f"runner-{uuid4()}")
        with tracer.start_as_current_span("jobs.run_once") as span:
            now = self.clock.now()

            summary.released_stale = await self.repository.release_stale_locks(
                older_than=stale_lock_cutoff(now, self.settings.job_lock_timeout_seconds)
            )
            if summary.released_stale:
                logger.warning("released %s stale job lock(s)", summary.released_stale)

            due = await self.repository.list_due_jobs(now=now, limit=self.settings.job_batch_size)
            summary.selected = len(due)
            claimed = await self.repository.claim_jobs(
                [job.id for job in due],
                worker_id=summary.worker_id,
                now=now,
            )
            summary.claimed = len(claimed)
            summary.skipped = summary.selected - summary.claimed

            for job in claimed:
                try:
                    await self._run_job(job, summary)
                except RepositoryError:
                    logger.exception("could not record outcome for job id=%s stage=%s", job.id, job.stage)

            span.set_attributes(run_span_attributes(summary.as_dict()))

        if summary.claimed:
            logger.info(
                "job run worker=%s claimed=%s succeeded=%s failed=%s deferred=%s dead_lettered=%s lease_lost=%s",
                summary.worker_id,
                summary.claimed,
                summary.succeeded,
                summary.failed,
                summary.deferred,
                summary.dead_lettered,
                summary.lease_lost,
            )
        return summary

    async def _run_job(self, job: JobRecord, summary: RunSummary) -> None:
        with tracer.start_as_current_span("jobs.execute", attributes=job_span_attributes(job)) as span:
            try:
                await self.executor(job, self.context)
            except JobDeferred as deferred:
                if not await self.repository.defer_job(
                    job.id, worker_id=summary.worker_id, not_before=deferred.not_before
                ):
                    self._lease_lost(job, "defer", summary)
                    return
                summary.deferred += 1
                span.set_attribute("job.outcome", "deferred")
                logger.info("job id=%s deferred until %s: %s", job.id, deferred.not_before.isoformat(), deferred.reason)
                return
            except InvalidJobPayload as exc:
                summary.failed += 1
                span.record_exception(exc)
                span.set_attribute("job.outcome", "dead_lettered")
                logger.error("job id=%s stage=%s has an invalid payload: %s", job.id, job.stage, exc)
                await self._dead_letter(job, job.attempts + 1, format_error(exc), summary)
                return
            except Exception as exc:
                summary.failed += 1
                span.record_exception(exc)
                logger.exception("job id=%s stage=%s failed", job.id, job.stage)
                await self._record_failure(job, exc, summary, span)
                return

            if not await self.repository.complete_job(job.id, worker_id=summary.worker_id):
                self._lease_lost(job, "complete", summary)
                return
            summary.succeeded += 1
            span.set_attribute("job.outcome", "succeeded")

    async def _record_failure(self, job: JobRecord, exc: Exception, summary: RunSummary, span: Any) -> None:
        attempts = job.attempts + 1
        error = format_error(exc)
        if attempts >= self.settings.job_max_attempts:
            span.set_attribute("job.outcome", "dead_lettered")
            await self._dead_letter(job, attempts, error, summary)
            return

        delay = retry_delay_seconds(attempts, self.settings.job_retry_backoff_seconds)
        rescheduled = await self.repository.reschedule_job(
            job.id,
            worker_id=summary.worker_id,
            attempts=attempts,
            last_error=error,
            not_before=self.clock.now() + timedelta(seconds=delay),
        )
        if not rescheduled:
            self._lease_lost(job, "reschedule", summary)
            return
        span.set_attribute("job.outcome", "retry")
        logger.info("job id=%s retry %s/%s in %ss", job.id, attempts, self.settings.job_max_attempts, delay)

    async def _dead_letter(self, job: JobRecord, attempts: int, error: str, summary: RunSummary) -> None:
        moved = await self.repository.dead_letter_job(
            job.id,
            worker_id=summary.worker_id,
            attempts=attempts,
            last_error=error,
            now=self.clock.now(),
        )
        if not moved:
            self._lease_lost(job, "dead-letter", summary)
            return
        summary.dead_lettered += 1
        logger.warning("job id=%s stage=%s moved to dead letter after %s attempt(s)", job.id, job.stage, attempts)

    def _lease_lost(self, job: JobRecord, action: str, summary: RunSummary) -> None:
        # the lock was released as stale and the job now belongs to another runner
        summary.lease_lost += 1
        trace.get_current_span().set_attribute("job.outcome", "lease_lost")
        logger.warning(
            "job id=%s stage=%s lease lost before %s; outcome left to the current holder",
            job.id,
            job.stage,
            action,
        )
