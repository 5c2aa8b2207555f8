from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

CATEGORIES: tuple[str, ...] = ("labor", "environment", "politics", "social")

SEVERITY_LABELS = {
    "critical": 1.0,
    "high": 0.8,
    "medium": 0.5,
    "low": 0.3,
}
DEFAULT_SEVERITY = 0.5


class Verification(str, Enum):
    OFFICIAL = "official"
    CORROBORATED = "corroborated"
    UNVERIFIED = "unverified"
    NOISE = "noise"


VERIFICATION_RANK = {
    Verification.NOISE: 0,
    Verification.UNVERIFIED: 1,
    Verification.CORROBORATED: 2,
    Verification.OFFICIAL: 3,
}


def is_escalation(current: Verification, proposed: Verification) -> bool:
    return VERIFICATION_RANK[proposed] > VERIFICATION_RANK[current]


def coerce_severity(value: Any) -> float:
    """Map a numeric or labelled severity hint onto [0, 1]."""
    if value is None:
        return DEFAULT_SEVERITY
    if isinstance(value, bool):
        raise ValueError("severity must be a number or a label")
    if isinstance(value, (int, float)):
        return max(0.0, min(1.0, float(value)))
    if isinstance(value, str):
        label = value.strip().lower()
        if label in SEVERITY_LABELS:
            return SEVERITY_LABELS[label]
        try:
            return max(0.0, min(1.0, float(label)))
        except ValueError:
            return DEFAULT_SEVERITY
    raise ValueError("severity must be a number or a label")


class SourceRef(BaseModel):
    url: str
    name: str | None = None
    published_at: datetime | None = None


class EventCandidate(BaseModel):
    """Normalized evidence record produced by an adapter."""

    brand_id: str
    title: str
    url: str
    occurred_at: datetime
    description: str | None = None
    category: str = "general"
    severity: float = DEFAULT_SEVERITY
    impacts: dict[str, float] = Field(default_factory=dict)
    extra_sources: list[SourceRef] = Field(default_factory=list)
    source_name: str | None = None
    ingested_from: str = "adapter"

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value: Any) -> float:
        return coerce_severity(value)

    @field_validator("impacts")
    @classmethod
    def _impacts(cls, value: dict[str, float]) -> dict[str, float]:
        unknown = set(value) - set(CATEGORIES)
        if unknown:
            raise ValueError(f"unknown impact categories: {sorted(unknown)}")
        return value


class EventCandidatesIn(BaseModel):
    candidates: list[EventCandidate]


class EventCandidatesAccepted(BaseModel):
    job_ids: list[str]
