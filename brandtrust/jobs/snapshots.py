from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from brandtrust.jobs.context import JobContext
from brandtrust.schemas.jobs import PublishSnapshotsPayload

logger = logging.getLogger(__name__)

LATEST_KEY = "latest"
BRAND_SNAPSHOT_LIMIT = 1000


async def handle_publish_snapshots(payload: PublishSnapshotsPayload, context: JobContext) -> None:
    repository = context.repository
    settings = context.settings
    now = context.clock.now()
    version = now.strftime("%Y%m%dT%H%M%SZ")

    events = await repository.list_recent_events(
        since=now - timedelta(days=settings.snapshot_trending_days),
        limit=settings.snapshot_trending_limit,
    )
    trending: dict[str, Any] = {
        "version": version,
        "generated_at": now.isoformat(),
        "events": [
            {
                "event_id": event.event_id,
                "brand_id": event.brand_id,
                "title": event.title,
                "category": event.category,
                "occurred_at": event.occurred_at.isoformat(),
                "severity": event.severity,
                "verification": event.verification.value,
            }
            for event in events
        ],
    }

    brands: list[dict[str, Any]] = []
    for summary in await repository.list_score_summaries(limit=BRAND_SNAPSHOT_LIMIT):
        rows = await repository.get_category_scores(summary.brand_id)
        brands.append(
            {
                "brand_id": summary.brand_id,
                "baseline_only": summary.baseline_only,
                "event_count": summary.event_count,
                "scores": {row.category: round(row.score, 4) for row in rows},
                "explanation": summary.explanation,
                "computed_at": summary.computed_at.isoformat(),
            }
        )

    trending_key = f"trending/{version}"
    brands_key = f"brands/{version}"
    await repository.save_snapshot(trending_key, trending, now=now)
    await repository.save_snapshot(brands_key, {"version": version, "generated_at": now.isoformat(), "brands": brands}, now=now)
    await repository.save_snapshot(
        LATEST_KEY,
        {"version": version, "generated_at": now.isoformat(), "trending": trending_key, "brands": brands_key},
        now=now,
    )
    logger.info("published snapshots version=%s events=%s brands=%s", version, len(events), len(brands))
