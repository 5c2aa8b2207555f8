from datetime import datetime

from pydantic import BaseModel, Field


class CategoryScoreOut(BaseModel):
    category: str
    baseline: float
    news: float
    score: float
    event_count: int
    computed_at: datetime


class BrandScoresOut(BaseModel):
    brand_id: str
    baseline_only: bool
    event_count: int
    explanation: list[str] = Field(default_factory=list)
    computed_at: datetime
    scores: list[CategoryScoreOut]


class ContributionOut(BaseModel):
    label: str
    category: str
    value: float
    description: str


class PersonalizedScoreOut(BaseModel):
    brand_id: str
    user_id: str
    final_score: int
    raw_score: float
    category_scores: dict[str, float]
    top_positive: list[ContributionOut] = Field(default_factory=list)
    top_negative: list[ContributionOut] = Field(default_factory=list)
    explanation: list[str] = Field(default_factory=list)
    dealbreaker_triggered: bool = False
    dealbreaker_category: str | None = None


class DomainCoverageOut(BaseModel):
    domain: str
    label: str
    covered: bool
    sources: list[str]
    confidence: str


class SufficiencyOut(BaseModel):
    brand_id: str
    sufficient: bool
    score: float
    domains_covered: int
    domains_required: int
    recommendation: str
    reason: str
    covered_domains: list[DomainCoverageOut] = Field(default_factory=list)
    missing_domains: list[DomainCoverageOut] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
