from __future__ import annotations

from brandtrust.services.sufficiency import EvidenceProfile, evaluate_sufficiency


def test_two_domains_yield_preview() -> None:
    result = evaluate_sufficiency(EvidenceProfile(website="https://acme.example", event_count=3))

    assert result.sufficient is False
    assert result.domains_covered == 2
    assert result.recommendation == "show_preview"
    assert result.score == 40.0
    assert [item.domain for item in result.covered_domains] == ["identity", "behavior"]
    assert result.next_steps == [
        "Document certifications or sustainability claims",
        "Add coverage from independent news sources",
    ]


def test_depth_in_one_domain_does_not_compensate() -> None:
    result = evaluate_sufficiency(
        EvidenceProfile(event_count=500, has_recalls=True, has_regulatory=True, news_source_count=1)
    )

    assert result.domains_covered == 1
    assert result.recommendation == "show_preview"
    assert result.covered_domains[0].confidence == "strong"


def test_three_domains_are_sufficient() -> None:
    result = evaluate_sufficiency(
        EvidenceProfile(
            wikidata_qid="Q123",
            has_certifications=True,
            news_source_count=2,
        )
    )

    assert result.sufficient is True
    assert result.recommendation == "show_score"
    assert result.score == 60.0
    assert {item.domain for item in result.missing_domains} == {"behavior", "market"}


def test_empty_profile_is_a_stub() -> None:
    result = evaluate_sufficiency(EvidenceProfile())

    assert result.recommendation == "show_stub"
    assert result.domains_covered == 0
    assert result.reason == "No evidence collected yet"
    assert len(result.next_steps) == 2
