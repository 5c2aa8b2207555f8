from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from brandtrust.schemas.events import Verification, coerce_severity
from brandtrust.services.scoring import (
    Contribution,
    ScoredEvent,
    aggregate_news_vector,
    check_dealbreakers,
    compute_personalized_score,
    describe_contribution,
    event_contribution,
    explain,
    intensity_bucket,
    personalize,
    recency_decay,
    score_brand,
    source_credibility,
)

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def _event(
    event_id: str = "evt_1",
    *,
    age_days: float = 0.0,
    impacts: dict[str, float] | None = None,
    severity: float = 1.0,
    credibility: float = 1.0,
    verification: Verification = Verification.OFFICIAL,
) -> ScoredEvent:
    return ScoredEvent(
        event_id=event_id,
        occurred_at=NOW - timedelta(days=age_days),
        severity=severity,
        credibility=credibility,
        verification=verification,
        impacts=impacts if impacts is not None else {"labor": -1.0},
        title=f"Event {event_id}",
    )


def test_recency_decay_properties() -> None:
    assert recency_decay(0) == 1.0
    assert recency_decay(45) == pytest.approx(0.5)
    assert recency_decay(90) == pytest.approx(0.25)
    assert recency_decay(10) > recency_decay(20) > 0


def test_recency_decay_rejects_future_events() -> None:
    with pytest.raises(ValueError):
        recency_decay(-1)


def test_event_contribution_multiplies_all_factors() -> None:
    event = _event(
        age_days=45,
        impacts={"environment": -2.0},
        severity=0.8,
        credibility=0.9,
        verification=Verification.CORROBORATED,
    )
    expected = -2.0 * 0.8 * 0.9 * 0.75 * 0.5
    assert event_contribution(event, "environment", now=NOW) == pytest.approx(expected)
    assert event_contribution(event, "labor", now=NOW) == 0.0


def test_news_vector_is_clamped() -> None:
    events = [_event(f"evt_{index}", impacts={"labor": -2.0, "social": 3.0}) for index in range(5)]
    vector = aggregate_news_vector(events, now=NOW)
    assert vector["labor"] == -5.0
    assert vector["social"] == 5.0
    assert vector["politics"] == 0.0


def test_score_brand_adds_news_to_baseline() -> None:
    result = score_brand({"labor": 2.0, "environment": 0.5}, [_event(impacts={"labor": -0.8})], now=NOW)
    assert result.baseline_only is False
    assert result.event_count == 1
    assert result.scores["labor"] == pytest.approx(1.2)
    assert result.scores["environment"] == pytest.approx(0.5)
    assert result.explanation.lines == ["Event evt_1: significant negative impact"]


def test_score_brand_without_events_is_baseline_only() -> None:
    result = score_brand({"labor": 1.5}, [], now=NOW)
    assert result.baseline_only is True
    assert result.scores == {"labor": 1.5, "environment": 0.0, "politics": 0.0, "social": 0.0}
    assert result.explanation.lines == ["Baseline only: no qualifying events"]


def test_personalize_midpoint_and_saturation() -> None:
    assert personalize(0.0) == 50
    assert personalize(100.0) == 100
    assert personalize(-100.0) == 0
    assert personalize(0.5) == round(50 + 50 * math.tanh(0.5))


def test_personalized_score_is_monotonic_in_category_score() -> None:
    weights = {"labor": 1.0, "environment": 0.5}
    low = compute_personalized_score(weights, {"labor": -1.0, "environment": 0.2})
    high = compute_personalized_score(weights, {"labor": 0.5, "environment": 0.2})
    assert high.final_score > low.final_score
    assert low.raw_score == pytest.approx(-0.9)


def test_personalized_score_rejects_out_of_range_weights() -> None:
    with pytest.raises(ValueError):
        compute_personalized_score({"labor": 1.5}, {"labor": 1.0})


def test_dealbreaker_triggers_below_negative_threshold() -> None:
    result = check_dealbreakers({"labor": -2.5, "social": -4.0}, {"labor": 2.0, "social": 3.0})
    assert result.triggered is True
    assert result.category == "labor"
    assert check_dealbreakers({"labor": -1.0}, {"labor": 2.0}).triggered is False
    assert check_dealbreakers({"labor": -10.0}, None).triggered is False


def test_intensity_buckets_and_descriptions() -> None:
    assert intensity_bucket(0.05) == "minimal"
    assert intensity_bucket(-0.2) == "slight"
    assert intensity_bucket(0.45) == "moderate"
    assert intensity_bucket(-0.6) == "significant"
    assert describe_contribution(Contribution("Labor & Workers", "labor", -0.2)) == (
        "Labor & Workers: slight negative impact"
    )
    assert describe_contribution(Contribution("Environment", "environment", 0.01)) == "Environment: minimal impact"


def test_explain_keeps_top_three_per_direction() -> None:
    contributions = [Contribution(f"p{index}", "labor", 0.1 * index) for index in range(1, 6)]
    contributions += [Contribution("n1", "social", -0.7)]
    explanation = explain(contributions)
    assert [item.label for item in explanation.top_positive] == ["p5", "p4", "p3"]
    assert [item.label for item in explanation.top_negative] == ["n1"]
    assert len(explanation.lines) == 4


def test_source_credibility_tiers() -> None:
    assert source_credibility("osha.gov") == 1.0
    assert source_credibility("ilo.org") == 1.0
    assert source_credibility("reuters.com") == 0.9
    assert source_credibility("industryweek.com") == 0.7
    assert source_credibility("someblog.net") == 0.5
    assert source_credibility(None) == 0.5


def test_severity_labels_and_numbers() -> None:
    assert coerce_severity("critical") == 1.0
    assert coerce_severity("Low") == 0.3
    assert coerce_severity(1.7) == 1.0
    assert coerce_severity(None) == 0.5
