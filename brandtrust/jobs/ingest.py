from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta

from brandtrust.core.clock import ensure_utc
from brandtrust.core.urls import normalize_url, registrable_domain
from brandtrust.jobs.context import JobContext
from brandtrust.jobs.errors import InvalidJobPayload
from brandtrust.schemas.jobs import IngestEventPayload, JobStage
from brandtrust.services.repository import EventRecord, EventSourceRecord
from brandtrust.services.scoring import event_credibility

logger = logging.getLogger(__name__)


def derive_event_id(brand_id: str, title: str, occurred_at: datetime, canonical_urls: list[str]) -> str:
    """Natural key of an event, stable across retries of the same ingest payload."""
    material = "\n".join(
        [
            brand_id,
            " ".join(title.lower().split()),
            ensure_utc(occurred_at).date().isoformat(),
            *sorted(set(canonical_urls)),
        ]
    )
    return "evt_" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


async def is_brand_flooded(context: JobContext, brand_id: str, now: datetime) -> bool:
    since = now - timedelta(hours=context.settings.flood_window_hours)
    recent = await context.repository.count_recent_events(brand_id, since=since)
    return recent > context.settings.flood_threshold


async def enqueue_score_brand(context: JobContext, brand_id: str, now: datetime) -> str | None:
    return await context.repository.enqueue_job(
        JobStage.SCORE_BRAND.value,
        {"brand_id": brand_id},
        not_before=now,
        coalesce_key=f"score_brand:{brand_id}",
    )


async def handle_ingest_event(payload: IngestEventPayload, context: JobContext) -> None:
    repository = context.repository
    now = context.clock.now()
    occurred_at = ensure_utc(payload.occurred_at)
    if occurred_at > now:
        raise InvalidJobPayload(f"event for brand {payload.brand_id} is dated in the future: {occurred_at.isoformat()}")

    canonical_sources: dict[str, tuple[str, str | None, datetime | None]] = {}
    for source in payload.sources:
        canonical_url = normalize_url(source.url)
        if canonical_url not in canonical_sources:
            canonical_sources[canonical_url] = (registrable_domain(canonical_url), source.name, source.published_at)

    event_id = derive_event_id(payload.brand_id, payload.title, occurred_at, list(canonical_sources))
    domains = [domain for domain, _, _ in canonical_sources.values() if domain]
    credibility = payload.credibility if payload.credibility is not None else event_credibility(domains)

    flooded = await is_brand_flooded(context, payload.brand_id, now)

    inserted = await repository.insert_event(
        EventRecord(
            event_id=event_id,
            brand_id=payload.brand_id,
            title=payload.title,
            description=payload.description,
            category=payload.category,
            occurred_at=occurred_at,
            severity=payload.severity,
            credibility=credibility,
            verification=payload.verification,
            impacts=dict(payload.impacts),
            ingested_from=payload.ingested_from,
        ),
        now=now,
    )
    await repository.insert_event_sources(
        [
            EventSourceRecord(
                event_id=event_id,
                canonical_url=canonical_url,
                domain=domain,
                source_name=name,
                published_at=published_at,
            )
            for canonical_url, (domain, name, published_at) in canonical_sources.items()
        ]
    )
    if not inserted:
        logger.info("event %s already stored; re-enqueueing follow-up jobs", event_id)

    if flooded:
        await repository.flag_brand_for_review(
            payload.brand_id,
            reason=f"more than {context.settings.flood_threshold} events in {context.settings.flood_window_hours}h",
            now=now,
        )
        logger.warning("flood control: brand=%s flagged for review, scoring suppressed", payload.brand_id)
    else:
        await enqueue_score_brand(context, payload.brand_id, now)

    await repository.enqueue_job(
        JobStage.VERIFY_EVENT.value,
        {"event_id": event_id},
        not_before=now,
        coalesce_key=f"verify_event:{event_id}",
    )
