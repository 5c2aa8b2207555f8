"""Fan-out of coalesced score changes to brand followers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from brandtrust.core.clock import ensure_utc
from brandtrust.jobs.context import JobContext
from brandtrust.jobs.errors import JobDeferred
from brandtrust.schemas.events import CATEGORIES
from brandtrust.schemas.jobs import ScoreChangePayload, ScoreDelta
from brandtrust.services.push import PushDeliveryError, PushMessage
from brandtrust.services.repository import FollowerRecord, NotificationLogRecord
from brandtrust.services.scoring import CATEGORY_LABELS

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Headline:
    category: str
    delta: float
    score: float


def in_quiet_hours(now: datetime, start_hour: int, end_hour: int) -> bool:
    hour = ensure_utc(now).hour
    if start_hour == end_hour:
        return False
    if start_hour > end_hour:
        return hour >= start_hour or hour < end_hour
    return start_hour <= hour < end_hour


def quiet_hours_end(now: datetime, end_hour: int) -> datetime:
    current = ensure_utc(now)
    candidate = current.replace(hour=end_hour, minute=0, second=0, microsecond=0)
    if candidate <= current:
        candidate += timedelta(days=1)
    return candidate


def net_deltas(events: Iterable[ScoreDelta]) -> dict[str, Headline]:
    """Sum deltas per category; the latest computed score per category wins."""
    netted: dict[str, Headline] = {}
    for event in sorted(events, key=lambda item: ensure_utc(item.computed_at)):
        current = netted.get(event.category)
        if current is None:
            netted[event.category] = Headline(category=event.category, delta=event.delta, score=event.score)
        else:
            current.delta += event.delta
            current.score = event.score
    return netted


def pick_headline(netted: dict[str, Headline]) -> Headline | None:
    best: Headline | None = None
    ordered = sorted(netted.values(), key=lambda item: _category_order(item.category))
    for item in ordered:
        if not item.delta:
            continue
        if best is None or abs(item.delta) > abs(best.delta):
            best = item
    return best


def build_message(brand_id: str, headline: Headline) -> PushMessage:
    label = CATEGORY_LABELS.get(headline.category, headline.category)
    direction = "improved" if headline.delta > 0 else "dropped"
    return PushMessage(
        title="Brand score update",
        body=f"{label} score {direction} by {abs(headline.delta):.1f} (now {headline.score:.1f})",
        url=f"/brands/{brand_id}",
        data={"brand_id": brand_id, "category": headline.category, "delta": round(headline.delta, 3)},
    )


async def handle_score_change(payload: ScoreChangePayload, context: JobContext) -> None:
    settings = context.settings
    now = context.clock.now()
    if in_quiet_hours(now, settings.quiet_hours_start, settings.quiet_hours_end):
        raise JobDeferred(quiet_hours_end(now, settings.quiet_hours_end), "quiet hours")

    headline = pick_headline(net_deltas(payload.events))
    if headline is None:
        logger.info("score changes for brand=%s net to zero; nothing to send", payload.brand_id)
        return

    message = build_message(payload.brand_id, headline)
    followers = await context.repository.list_followers(payload.brand_id)
    day_start = ensure_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)

    sent = 0
    for follower in followers:
        try:
            if await _notify_follower(context, follower, headline, message, day_start=day_start, now=now):
                sent += 1
        except Exception:
            logger.exception("push fan-out failed for user=%s brand=%s", follower.user_id, payload.brand_id)

    logger.info(
        "score change brand=%s category=%s delta=%.2f followers=%s sent=%s",
        payload.brand_id,
        headline.category,
        headline.delta,
        len(followers),
        sent,
    )


async def _notify_follower(
    context: JobContext,
    follower: FollowerRecord,
    headline: Headline,
    message: PushMessage,
    *,
    day_start: datetime,
    now: datetime,
) -> bool:
    repository = context.repository
    if not follower.subscriptions:
        return False

    allowed = await repository.allow_push_send(
        follower.user_id,
        follower.brand_id,
        headline.category,
        day_start=day_start,
        daily_limit=context.settings.push_daily_limit_per_user,
    )
    if not allowed:
        logger.debug("rate limited user=%s brand=%s category=%s", follower.user_id, follower.brand_id, headline.category)
        return False

    delivered = 0
    errors: list[str] = []
    for subscription in follower.subscriptions:
        try:
            await context.push_sender.send(subscription, message)
            delivered += 1
        except PushDeliveryError as exc:
            errors.append(str(exc))
            if exc.expired:
                await repository.delete_push_subscription(subscription.endpoint)
                logger.info("removed expired push subscription for user=%s", follower.user_id)
            else:
                logger.warning("push delivery failed user=%s error=%s", follower.user_id, exc)

    await repository.record_notification(
        NotificationLogRecord(
            user_id=follower.user_id,
            brand_id=follower.brand_id,
            category=headline.category,
            delta=headline.delta,
            success=delivered > 0,
            error="; ".join(errors) or None,
            sent_at=now,
        )
    )
    return delivered > 0


def _category_order(category: str) -> int:
    return CATEGORIES.index(category) if category in CATEGORIES else len(CATEGORIES)
