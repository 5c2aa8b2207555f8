from __future__ import annotations

import logging
from typing import Iterable

from brandtrust.jobs.context import JobContext
from brandtrust.jobs.errors import InvalidJobPayload
from brandtrust.jobs.ingest import enqueue_score_brand, is_brand_flooded
from brandtrust.schemas.events import Verification, is_escalation
from brandtrust.schemas.jobs import VerifyEventPayload
from brandtrust.services.scoring import OFFICIAL_DOMAINS

logger = logging.getLogger(__name__)


def is_official_domain(domain: str) -> bool:
    lowered = domain.lower()
    if lowered.endswith(".gov"):
        return True
    return any(lowered == item or lowered.endswith(f".{item}") for item in OFFICIAL_DOMAINS)


def classify_sources(domains: Iterable[str]) -> Verification | None:
    distinct = {domain.lower() for domain in domains if domain}
    if any(is_official_domain(domain) for domain in distinct):
        return Verification.OFFICIAL
    if len(distinct) >= 2:
        return Verification.CORROBORATED
    return None


async def handle_verify_event(payload: VerifyEventPayload, context: JobContext) -> None:
    repository = context.repository
    event = await repository.get_event(payload.event_id)
    if event is None:
        raise InvalidJobPayload(f"event {payload.event_id} does not exist")

    proposed = classify_sources(source.domain for source in event.sources)
    if proposed is None or not is_escalation(event.verification, proposed):
        return

    if not await repository.escalate_verification(event.event_id, proposed):
        return
    logger.info("event %s escalated %s -> %s", event.event_id, event.verification.value, proposed.value)

    now = context.clock.now()
    if await is_brand_flooded(context, event.brand_id, now):
        logger.warning("flood control: skipping rescore for brand=%s after verification", event.brand_id)
        return
    await enqueue_score_brand(context, event.brand_id, now)
