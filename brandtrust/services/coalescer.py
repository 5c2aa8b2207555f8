"""Coalesces score-change signals into one notify job per brand and time bucket."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from brandtrust.core.clock import ensure_utc
from brandtrust.schemas.jobs import JobStage, ScoreDelta

logger = logging.getLogger(__name__)

DEFAULT_BUCKET_MINUTES = 5


def bucket_start(now: datetime, minutes: int = DEFAULT_BUCKET_MINUTES) -> datetime:
    current = ensure_utc(now)
    width = minutes * 60
    epoch_seconds = int(current.timestamp())
    floored = epoch_seconds - epoch_seconds % width
    return datetime.fromtimestamp(floored, tz=current.tzinfo)


def coalesce_key(brand_id: str, start: datetime) -> str:
    return f"notify:{brand_id}:{ensure_utc(start).isoformat()}"


async def enqueue_score_change(
    repository: Any,
    brand_id: str,
    deltas: Iterable[ScoreDelta],
    *,
    now: datetime,
    bucket_minutes: int = DEFAULT_BUCKET_MINUTES,
) -> str | None:
    """Merge ``deltas`` into the open notify job for the brand's current bucket.

    The job only becomes due once its bucket has closed, so every signal that
    lands in the same bucket is delivered by a single job run. The merge also
    records each delta's score as the category's last notified score.
    """
    events = [delta.model_dump(mode="json") for delta in deltas]
    if not events:
        return None

    start = bucket_start(now, bucket_minutes)
    key = coalesce_key(brand_id, start)
    job_id = await repository.merge_score_change(
        JobStage.SEND_PUSH_FOR_SCORE_CHANGE.value,
        key,
        brand_id=brand_id,
        base_payload={"brand_id": brand_id, "bucket_start": start.isoformat()},
        events=events,
        not_before=start + timedelta(minutes=bucket_minutes),
    )
    logger.info("coalesced %s score change(s) for brand=%s into %s", len(events), brand_id, key)
    return job_id
