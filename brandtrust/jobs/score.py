from __future__ import annotations

import logging
from datetime import timedelta

from brandtrust.jobs.context import JobContext
from brandtrust.schemas.events import CATEGORIES
from brandtrust.schemas.jobs import ScoreBrandPayload, ScoreDelta
from brandtrust.services.coalescer import enqueue_score_change
from brandtrust.services.repository import BrandScoreSummaryRecord, CategoryScoreRecord
from brandtrust.services.scoring import ScoredEvent, score_brand

logger = logging.getLogger(__name__)


async def handle_score_brand(payload: ScoreBrandPayload, context: JobContext) -> None:
    repository = context.repository
    settings = context.settings
    now = context.clock.now()

    baseline = await repository.get_baseline(payload.brand_id)
    rows = await repository.list_scoring_events(
        payload.brand_id,
        since=now - timedelta(days=settings.score_lookback_days),
        until=now,
    )
    events = [
        ScoredEvent(
            event_id=row.event_id,
            occurred_at=row.occurred_at,
            severity=row.severity,
            credibility=row.credibility,
            verification=row.verification,
            impacts=row.impacts,
            title=row.title,
        )
        for row in rows
    ]
    result = score_brand(baseline, events, now=now)

    # scores as of the last merged notification, not the last save
    notified = await repository.save_brand_scores(
        [
            CategoryScoreRecord(
                brand_id=payload.brand_id,
                category=category,
                baseline=result.baseline[category],
                news=result.news[category],
                score=result.scores[category],
                event_count=result.event_count,
                computed_at=now,
            )
            for category in CATEGORIES
        ],
        BrandScoreSummaryRecord(
            brand_id=payload.brand_id,
            baseline_only=result.baseline_only,
            event_count=result.event_count,
            explanation=result.explanation.lines,
            computed_at=now,
        ),
    )
    logger.info(
        "scored brand=%s events=%s baseline_only=%s",
        payload.brand_id,
        result.event_count,
        result.baseline_only,
    )

    deltas: list[ScoreDelta] = []
    for category in CATEGORIES:
        if category not in notified:
            continue
        delta = result.scores[category] - notified[category]
        if abs(delta) >= settings.notify_min_delta:
            deltas.append(ScoreDelta(category=category, delta=delta, score=result.scores[category], computed_at=now))

    if deltas:
        await enqueue_score_change(
            repository,
            payload.brand_id,
            deltas,
            now=now,
            bucket_minutes=settings.notify_bucket_minutes,
        )
