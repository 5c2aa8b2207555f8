from fastapi import APIRouter, Depends, HTTPException, Query, status

from brandtrust.schemas.brands import (
    BrandScoresOut,
    CategoryScoreOut,
    ContributionOut,
    DomainCoverageOut,
    PersonalizedScoreOut,
    SufficiencyOut,
)
from brandtrust.services.repository import RepositoryUnavailableError, get_repository
from brandtrust.services.scoring import Contribution, compute_personalized_score, describe_contribution
from brandtrust.services.sufficiency import DomainCoverage, EvidenceProfile, evaluate_sufficiency

router = APIRouter()


@router.get("/{brand_id}/scores", response_model=BrandScoresOut)
async def get_brand_scores(brand_id: str, repository=Depends(get_repository)) -> BrandScoresOut:
    try:
        summary = await repository.get_score_summary(brand_id)
        rows = await repository.get_category_scores(brand_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="brand has not been scored")

    return BrandScoresOut(
        brand_id=brand_id,
        baseline_only=summary.baseline_only,
        event_count=summary.event_count,
        explanation=summary.explanation,
        computed_at=summary.computed_at,
        scores=[
            CategoryScoreOut(
                category=row.category,
                baseline=row.baseline,
                news=row.news,
                score=row.score,
                event_count=row.event_count,
                computed_at=row.computed_at,
            )
            for row in rows
        ],
    )


@router.get("/{brand_id}/personalized", response_model=PersonalizedScoreOut)
async def get_personalized_score(
    brand_id: str,
    user_id: str = Query(min_length=1),
    repository=Depends(get_repository),
) -> PersonalizedScoreOut:
    try:
        rows = await repository.get_category_scores(brand_id)
        weights = await repository.get_user_weights(user_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not rows:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="brand has not been scored")
    if weights is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user weights not found")

    try:
        result = compute_personalized_score(
            weights.weights,
            {row.category: row.score for row in rows},
            weights.dealbreakers,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return PersonalizedScoreOut(
        brand_id=brand_id,
        user_id=user_id,
        final_score=result.final_score,
        raw_score=result.raw_score,
        category_scores=result.category_scores,
        top_positive=[_contribution_out(item) for item in result.explanation.top_positive],
        top_negative=[_contribution_out(item) for item in result.explanation.top_negative],
        explanation=result.explanation.lines,
        dealbreaker_triggered=result.dealbreaker.triggered,
        dealbreaker_category=result.dealbreaker.category,
    )


@router.get("/{brand_id}/sufficiency", response_model=SufficiencyOut)
async def get_sufficiency(brand_id: str, repository=Depends(get_repository)) -> SufficiencyOut:
    try:
        profile = await repository.get_evidence_profile(brand_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    result = evaluate_sufficiency(profile or EvidenceProfile())
    return SufficiencyOut(
        brand_id=brand_id,
        sufficient=result.sufficient,
        score=result.score,
        domains_covered=result.domains_covered,
        domains_required=result.domains_required,
        recommendation=result.recommendation,
        reason=result.reason,
        covered_domains=[_coverage_out(item) for item in result.covered_domains],
        missing_domains=[_coverage_out(item) for item in result.missing_domains],
        next_steps=result.next_steps,
    )


def _contribution_out(item: Contribution) -> ContributionOut:
    return ContributionOut(
        label=item.label,
        category=item.category,
        value=item.value,
        description=describe_contribution(item),
    )


def _coverage_out(item: DomainCoverage) -> DomainCoverageOut:
    return DomainCoverageOut(
        domain=item.domain,
        label=item.label,
        covered=item.covered,
        sources=item.sources,
        confidence=item.confidence,
    )
