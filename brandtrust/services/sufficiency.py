"""Evidence sufficiency gate.

A brand score is shown only when at least three of five independent evidence
domains have any coverage. Depth in one domain never compensates for absence
in the others.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

EvidenceDomain = Literal["identity", "behavior", "claims", "scrutiny", "market"]
Confidence = Literal["none", "weak", "strong"]
Recommendation = Literal["show_score", "show_preview", "show_stub"]

DOMAINS: tuple[EvidenceDomain, ...] = ("identity", "behavior", "claims", "scrutiny", "market")
DOMAINS_REQUIRED = 3

DOMAIN_LABELS: dict[EvidenceDomain, str] = {
    "identity": "Identity & Ownership",
    "behavior": "Behavior & Actions",
    "claims": "Claims & Positioning",
    "scrutiny": "Third-Party Scrutiny",
    "market": "Market Presence",
}

NEXT_STEPS: dict[EvidenceDomain, str] = {
    "identity": "Add official website or verify ownership structure",
    "behavior": "Track news events and regulatory records",
    "claims": "Document certifications or sustainability claims",
    "scrutiny": "Add coverage from independent news sources",
    "market": "Link products or track retailer presence",
}


@dataclass(slots=True)
class EvidenceProfile:
    website: str | None = None
    wikidata_qid: str | None = None
    has_ownership: bool = False
    legal_entity: str | None = None
    event_count: int = 0
    has_recalls: bool = False
    has_regulatory: bool = False
    has_certifications: bool = False
    has_sustainability_report: bool = False
    has_public_commitments: bool = False
    news_source_count: int = 0
    has_watchdog_reports: bool = False
    has_ngo_analysis: bool = False
    product_count: int = 0
    retailer_presence: bool = False
    has_consumer_reports: bool = False


@dataclass(slots=True)
class DomainCoverage:
    domain: EvidenceDomain
    label: str
    covered: bool
    sources: list[str]
    confidence: Confidence


@dataclass(slots=True)
class SufficiencyResult:
    sufficient: bool
    score: float
    domains_covered: int
    domains_required: int
    recommendation: Recommendation
    reason: str
    covered_domains: list[DomainCoverage] = field(default_factory=list)
    missing_domains: list[DomainCoverage] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)


def recommend(domains_covered: int) -> Recommendation:
    if domains_covered >= DOMAINS_REQUIRED:
        return "show_score"
    if domains_covered >= 1:
        return "show_preview"
    return "show_stub"


def evaluate_sufficiency(profile: EvidenceProfile) -> SufficiencyResult:
    coverage = [
        _identity(profile),
        _behavior(profile),
        _claims(profile),
        _scrutiny(profile),
        _market(profile),
    ]
    return summarize_coverage(coverage)


def summarize_coverage(coverage: list[DomainCoverage]) -> SufficiencyResult:
    covered = [item for item in coverage if item.covered]
    missing = [item for item in coverage if not item.covered]
    domains_covered = len(covered)
    recommendation = recommend(domains_covered)

    if recommendation == "show_score":
        reason = f"Evidence found in {domains_covered} of {len(DOMAINS)} domains"
    elif recommendation == "show_preview":
        reason = (
            f"Evidence found in {domains_covered} of {len(DOMAINS)} domains; "
            f"{DOMAINS_REQUIRED} required for a score"
        )
    else:
        reason = "No evidence collected yet"

    return SufficiencyResult(
        sufficient=domains_covered >= DOMAINS_REQUIRED,
        score=round(domains_covered / len(DOMAINS) * 100, 1),
        domains_covered=domains_covered,
        domains_required=DOMAINS_REQUIRED,
        recommendation=recommendation,
        reason=reason,
        covered_domains=covered,
        missing_domains=missing,
        next_steps=[NEXT_STEPS[item.domain] for item in missing[:2]],
    )


def _coverage(domain: EvidenceDomain, sources: list[str], confidence: Confidence) -> DomainCoverage:
    return DomainCoverage(
        domain=domain,
        label=DOMAIN_LABELS[domain],
        covered=bool(sources),
        sources=sources,
        confidence=confidence if sources else "none",
    )


def _identity(profile: EvidenceProfile) -> DomainCoverage:
    sources: list[str] = []
    confidence: Confidence = "none"
    if profile.website:
        sources.append("Official website")
        confidence = "weak"
    if profile.wikidata_qid:
        sources.append("Wikidata")
        confidence = "strong" if confidence == "weak" else "weak"
    if profile.has_ownership:
        sources.append("Ownership records")
        confidence = "strong"
    if profile.legal_entity:
        sources.append("Legal entity filings")
        confidence = "strong"
    return _coverage("identity", sources, confidence)


def _behavior(profile: EvidenceProfile) -> DomainCoverage:
    sources: list[str] = []
    confidence: Confidence = "none"
    if profile.event_count > 0:
        sources.append(f"{profile.event_count} events tracked")
        confidence = "strong" if profile.event_count >= 5 else "weak"
    if profile.has_recalls:
        sources.append("FDA/CPSC recalls")
        if confidence == "none":
            confidence = "weak"
    if profile.has_regulatory:
        sources.append("EPA/OSHA records")
        confidence = "strong"
    return _coverage("behavior", sources, confidence)


def _claims(profile: EvidenceProfile) -> DomainCoverage:
    sources: list[str] = []
    confidence: Confidence = "none"
    if profile.has_certifications:
        sources.append("Certifications on record")
        confidence = "strong"
    if profile.has_sustainability_report:
        sources.append("Sustainability report")
        if confidence == "none":
            confidence = "weak"
    if profile.has_public_commitments:
        sources.append("Public commitments tracked")
        if confidence == "none":
            confidence = "weak"
    return _coverage("claims", sources, confidence)


def _scrutiny(profile: EvidenceProfile) -> DomainCoverage:
    sources: list[str] = []
    confidence: Confidence = "none"
    if profile.news_source_count >= 2:
        sources.append(f"{profile.news_source_count} news sources")
        confidence = "strong" if profile.news_source_count >= 5 else "weak"
    if profile.has_watchdog_reports:
        sources.append("Watchdog reports")
        confidence = "strong"
    if profile.has_ngo_analysis:
        sources.append("NGO assessments")
        confidence = "strong"
    return _coverage("scrutiny", sources, confidence)


def _market(profile: EvidenceProfile) -> DomainCoverage:
    sources: list[str] = []
    confidence: Confidence = "none"
    if profile.product_count > 0:
        sources.append(f"{profile.product_count} products tracked")
        confidence = "strong" if profile.product_count >= 10 else "weak"
    if profile.retailer_presence:
        sources.append("Retailer data")
        if confidence == "none":
            confidence = "weak"
    if profile.has_consumer_reports:
        sources.append("Consumer reports")
        confidence = "strong"
    return _coverage("market", sources, confidence)
