"""Deterministic brand scoring.

Event contribution for one category::

    impact * severity * credibility * verification_factor * recency_decay

Contributions are summed per category and clamped to ``[-NEWS_CAP, NEWS_CAP]``
before being added to the brand's baseline. A user's personalised score is the
weighted sum of category scores squashed through ``50 + 50 * tanh(raw / k)``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Literal, Mapping

from brandtrust.core.clock import ensure_utc
from brandtrust.schemas.events import CATEGORIES, Verification

HALF_LIFE_DAYS = 45.0
NEWS_CAP = 5.0
SCORE_SCALE_K = 1.0
EXPLANATION_LIMIT = 3

VERIFICATION_FACTORS: dict[Verification, float] = {
    Verification.OFFICIAL: 1.0,
    Verification.CORROBORATED: 0.75,
    Verification.UNVERIFIED: 0.5,
    Verification.NOISE: 0.1,
}

CATEGORY_LABELS = {
    "labor": "Labor & Workers",
    "environment": "Environment",
    "politics": "Political Activity",
    "social": "Social Responsibility",
}

OFFICIAL_DOMAINS = ("sec.gov", "epa.gov", "osha.gov", "ftc.gov", "fda.gov", "fec.gov", "ilo.org")
MAJOR_NEWS_DOMAINS = (
    "reuters.com",
    "apnews.com",
    "nytimes.com",
    "wsj.com",
    "bloomberg.com",
    "bbc.com",
    "bbc.co.uk",
    "theguardian.com",
)
TRADE_MARKERS = ("business", "industry", "trade", "journal")

Intensity = Literal["minimal", "slight", "moderate", "significant"]


@dataclass(slots=True)
class ScoredEvent:
    event_id: str
    occurred_at: datetime
    severity: float
    credibility: float
    verification: Verification
    impacts: dict[str, float]
    title: str | None = None


@dataclass(slots=True)
class Contribution:
    label: str
    category: str
    value: float


@dataclass(slots=True)
class Explanation:
    top_positive: list[Contribution]
    top_negative: list[Contribution]
    lines: list[str]


@dataclass(slots=True)
class BrandScoreResult:
    baseline: dict[str, float]
    news: dict[str, float]
    scores: dict[str, float]
    event_count: int
    baseline_only: bool
    explanation: Explanation


@dataclass(slots=True)
class DealbreakerResult:
    triggered: bool
    category: str | None = None
    threshold: float | None = None


@dataclass(slots=True)
class PersonalizedScore:
    final_score: int
    raw_score: float
    category_scores: dict[str, float]
    contributions: list[Contribution]
    explanation: Explanation
    dealbreaker: DealbreakerResult = field(default_factory=lambda: DealbreakerResult(triggered=False))


def recency_decay(age_days: float, half_life_days: float = HALF_LIFE_DAYS) -> float:
    if age_days < 0:
        raise ValueError("event age must be non-negative; future-dated events are not scoreable")
    return math.exp(-age_days * math.log(2) / half_life_days)


def event_age_days(occurred_at: datetime, now: datetime) -> float:
    return (ensure_utc(now) - ensure_utc(occurred_at)).total_seconds() / 86400.0


def verification_factor(verification: Verification | str) -> float:
    return VERIFICATION_FACTORS[Verification(verification)]


def event_contribution(event: ScoredEvent, category: str, *, now: datetime) -> float:
    impact = event.impacts.get(category, 0.0)
    if not impact:
        return 0.0
    decay = recency_decay(event_age_days(event.occurred_at, now))
    severity = _unit(event.severity)
    credibility = _unit(event.credibility)
    return impact * severity * credibility * verification_factor(event.verification) * decay


def aggregate_news_vector(
    events: Iterable[ScoredEvent],
    *,
    now: datetime,
    cap: float = NEWS_CAP,
) -> dict[str, float]:
    vector = {category: 0.0 for category in CATEGORIES}
    for event in events:
        for category in CATEGORIES:
            vector[category] += event_contribution(event, category, now=now)
    return {category: max(-cap, min(cap, value)) for category, value in vector.items()}


def compute_category_scores(baseline: Mapping[str, float], news: Mapping[str, float]) -> dict[str, float]:
    return {category: float(baseline.get(category, 0.0)) + float(news.get(category, 0.0)) for category in CATEGORIES}


def score_brand(baseline: Mapping[str, float], events: list[ScoredEvent], *, now: datetime) -> BrandScoreResult:
    normalized_baseline = {category: float(baseline.get(category, 0.0)) for category in CATEGORIES}
    if not events:
        return BrandScoreResult(
            baseline=normalized_baseline,
            news={category: 0.0 for category in CATEGORIES},
            scores=dict(normalized_baseline),
            event_count=0,
            baseline_only=True,
            explanation=Explanation(top_positive=[], top_negative=[], lines=["Baseline only: no qualifying events"]),
        )

    news = aggregate_news_vector(events, now=now)
    contributions: list[Contribution] = []
    for event in events:
        for category in CATEGORIES:
            value = event_contribution(event, category, now=now)
            if value:
                contributions.append(
                    Contribution(label=event.title or event.event_id, category=category, value=value)
                )

    return BrandScoreResult(
        baseline=normalized_baseline,
        news=news,
        scores=compute_category_scores(normalized_baseline, news),
        event_count=len(events),
        baseline_only=False,
        explanation=explain(contributions),
    )


def personalize(raw_score: float, k: float = SCORE_SCALE_K) -> int:
    return round(50 + 50 * math.tanh(raw_score / k))


def check_dealbreakers(
    category_scores: Mapping[str, float],
    thresholds: Mapping[str, float | None] | None,
) -> DealbreakerResult:
    if not thresholds:
        return DealbreakerResult(triggered=False)
    for category in CATEGORIES:
        threshold = thresholds.get(category)
        if threshold is None:
            continue
        if category_scores.get(category, 0.0) < -threshold:
            return DealbreakerResult(triggered=True, category=category, threshold=threshold)
    return DealbreakerResult(triggered=False)


def compute_personalized_score(
    weights: Mapping[str, float],
    category_scores: Mapping[str, float],
    dealbreakers: Mapping[str, float | None] | None = None,
    *,
    k: float = SCORE_SCALE_K,
) -> PersonalizedScore:
    contributions: list[Contribution] = []
    for category in CATEGORIES:
        weight = float(weights.get(category, 0.0))
        if weight < 0.0 or weight > 1.0:
            raise ValueError(f"weight for {category} must be within [0, 1]")
        contributions.append(
            Contribution(
                label=CATEGORY_LABELS[category],
                category=category,
                value=weight * float(category_scores.get(category, 0.0)),
            )
        )

    raw_score = sum(item.value for item in contributions)
    return PersonalizedScore(
        final_score=personalize(raw_score, k),
        raw_score=raw_score,
        category_scores={category: float(category_scores.get(category, 0.0)) for category in CATEGORIES},
        contributions=contributions,
        explanation=explain(contributions),
        dealbreaker=check_dealbreakers(category_scores, dealbreakers),
    )


def explain(contributions: Iterable[Contribution], limit: int = EXPLANATION_LIMIT) -> Explanation:
    ordered = sorted(contributions, key=lambda item: abs(item.value), reverse=True)
    top_positive = [item for item in ordered if item.value > 0][:limit]
    top_negative = [item for item in ordered if item.value < 0][:limit]
    lines = [describe_contribution(item) for item in top_positive + top_negative]
    return Explanation(top_positive=top_positive, top_negative=top_negative, lines=lines)


def intensity_bucket(value: float) -> Intensity:
    magnitude = abs(value)
    if magnitude < 0.1:
        return "minimal"
    if magnitude < 0.3:
        return "slight"
    if magnitude < 0.6:
        return "moderate"
    return "significant"


def describe_contribution(contribution: Contribution) -> str:
    bucket = intensity_bucket(contribution.value)
    if bucket == "minimal":
        return f"{contribution.label}: minimal impact"
    direction = "positive" if contribution.value > 0 else "negative"
    return f"{contribution.label}: {bucket} {direction} impact"


def source_credibility(domain: str | None) -> float:
    if not domain:
        return 0.5
    lowered = domain.lower()
    if lowered.endswith(".gov") or any(lowered == item or lowered.endswith(f".{item}") for item in OFFICIAL_DOMAINS):
        return 1.0
    if any(lowered == item or lowered.endswith(f".{item}") for item in MAJOR_NEWS_DOMAINS):
        return 0.9
    if any(marker in lowered for marker in TRADE_MARKERS):
        return 0.7
    return 0.5


def event_credibility(domains: Iterable[str]) -> float:
    scores = [source_credibility(domain) for domain in domains if domain]
    return max(scores) if scores else 0.5


def _unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
