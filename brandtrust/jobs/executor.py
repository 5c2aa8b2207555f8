from __future__ import annotations

from brandtrust.jobs.context import JobContext
from brandtrust.jobs.ingest import handle_ingest_event
from brandtrust.jobs.notify import handle_score_change
from brandtrust.jobs.score import handle_score_brand
from brandtrust.jobs.snapshots import handle_publish_snapshots
from brandtrust.jobs.verify import handle_verify_event
from brandtrust.schemas.jobs import (
    IngestEventPayload,
    PublishSnapshotsPayload,
    ScoreBrandPayload,
    ScoreChangePayload,
    VerifyEventPayload,
    parse_job_payload,
)
from brandtrust.services.repository import JobRecord


async def execute_job(job: JobRecord, context: JobContext) -> None:
    payload = parse_job_payload(job.stage, job.payload)
    if isinstance(payload, IngestEventPayload):
        await handle_ingest_event(payload, context)
    elif isinstance(payload, VerifyEventPayload):
        await handle_verify_event(payload, context)
    elif isinstance(payload, ScoreBrandPayload):
        await handle_score_brand(payload, context)
    elif isinstance(payload, ScoreChangePayload):
        await handle_score_change(payload, context)
    elif isinstance(payload, PublishSnapshotsPayload):
        await handle_publish_snapshots(payload, context)
