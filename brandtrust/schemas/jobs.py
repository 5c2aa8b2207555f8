from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from brandtrust.jobs.errors import InvalidJobPayload
from brandtrust.schemas.events import CATEGORIES, SourceRef, Verification, coerce_severity


class JobStage(str, Enum):
    INGEST_EVENT = "ingest_event"
    VERIFY_EVENT = "verify_event"
    SCORE_BRAND = "score_brand"
    SEND_PUSH_FOR_SCORE_CHANGE = "send_push_for_score_change"
    PUBLISH_SNAPSHOTS = "publish_snapshots"


class IngestEventPayload(BaseModel):
    stage: Literal["ingest_event"] = "ingest_event"
    brand_id: str
    title: str
    description: str | None = None
    category: str = "general"
    occurred_at: datetime
    severity: float = 0.5
    credibility: float | None = Field(default=None, ge=0.0, le=1.0)
    verification: Verification = Verification.UNVERIFIED
    impacts: dict[str, float] = Field(default_factory=dict)
    sources: list[SourceRef] = Field(default_factory=list)
    ingested_from: str = "manual"

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


class VerifyEventPayload(BaseModel):
    stage: Literal["verify_event"] = "verify_event"
    event_id: str


class ScoreBrandPayload(BaseModel):
    stage: Literal["score_brand"] = "score_brand"
    brand_id: str


class ScoreDelta(BaseModel):
    category: str
    delta: float
    score: float
    computed_at: datetime


class ScoreChangePayload(BaseModel):
    stage: Literal["send_push_for_score_change"] = "send_push_for_score_change"
    brand_id: str
    bucket_start: datetime
    events: list[ScoreDelta] = Field(default_factory=list)


class PublishSnapshotsPayload(BaseModel):
    stage: Literal["publish_snapshots"] = "publish_snapshots"


JobPayload = Annotated[
    Union[
        IngestEventPayload,
        VerifyEventPayload,
        ScoreBrandPayload,
        ScoreChangePayload,
        PublishSnapshotsPayload,
    ],
    Field(discriminator="stage"),
]

_JOB_PAYLOAD_ADAPTER: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job_payload(stage: str, payload: dict[str, Any] | None) -> JobPayload:
    """Resolve a stored ``(stage, payload)`` pair into its typed variant."""
    document = dict(payload or {})
    document["stage"] = stage
    try:
        return _JOB_PAYLOAD_ADAPTER.validate_python(document)
    except ValidationError as exc:
        raise InvalidJobPayload(f"invalid {stage} payload: {exc.error_count()} error(s)") from exc


def dump_job_payload(payload: BaseModel) -> dict[str, Any]:
    return payload.model_dump(mode="json", exclude={"stage"})


class DeadJobOut(BaseModel):
    id: str
    stage: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int
    last_error: str | None = None
    original_created_at: datetime | None = None
    moved_to_dead_at: datetime


class RunSummaryOut(BaseModel):
    worker_id: str
    released_stale: int
    selected: int
    claimed: int
    skipped: int
    succeeded: int
    failed: int
    deferred: int
    dead_lettered: int
    lease_lost: int = 0
