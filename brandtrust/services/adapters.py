"""Evidence adapters and the trigger that turns their output into ingest jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence

import httpx
from pydantic import ValidationError

from brandtrust.core.clock import Clock, SystemClock
from brandtrust.schemas.events import EventCandidate, SourceRef
from brandtrust.schemas.jobs import IngestEventPayload, JobStage, dump_job_payload

logger = logging.getLogger(__name__)


class AdapterError(Exception):
    """Raised when an adapter cannot produce candidates for a brand."""


@dataclass(slots=True)
class BrandTarget:
    brand_id: str
    name: str


class EvidenceAdapter(Protocol):
    name: str

    async def fetch(self, brand: BrandTarget, since: datetime) -> list[EventCandidate]: ...


class HttpEvidenceAdapter:
    """Adapter for feeds that already serve normalized candidates as JSON."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.client = client

    async def fetch(self, brand: BrandTarget, since: datetime) -> list[EventCandidate]:
        params = {"brand_id": brand.brand_id, "brand_name": brand.name, "since": since.isoformat()}
        try:
            if self.client is not None:
                response = await self.client.get(self.url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(self.url, params=params)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AdapterError(f"{self.name}: {exc.__class__.__name__}") from exc

        raw_items: Any = document.get("candidates") if isinstance(document, dict) else document
        if not isinstance(raw_items, list):
            raise AdapterError(f"{self.name}: expected a list of candidates")

        candidates: list[EventCandidate] = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            item = {"brand_id": brand.brand_id, "ingested_from": self.name, **item}
            try:
                candidates.append(EventCandidate.model_validate(item))
            except ValidationError as exc:
                logger.warning("adapter %s returned invalid candidate: %s error(s)", self.name, exc.error_count())
        return candidates


def candidate_to_payload(candidate: EventCandidate) -> IngestEventPayload:
    sources = [SourceRef(url=candidate.url, name=candidate.source_name)]
    sources.extend(candidate.extra_sources)
    return IngestEventPayload(
        brand_id=candidate.brand_id,
        title=candidate.title,
        description=candidate.description,
        category=candidate.category,
        occurred_at=candidate.occurred_at,
        severity=candidate.severity,
        impacts=candidate.impacts,
        sources=sources,
        ingested_from=candidate.ingested_from,
    )


async def enqueue_candidates(repository: Any, candidates: Iterable[EventCandidate], *, now: datetime) -> list[str]:
    job_ids: list[str] = []
    for candidate in candidates:
        job_id = await repository.enqueue_job(
            JobStage.INGEST_EVENT.value,
            dump_job_payload(candidate_to_payload(candidate)),
            not_before=now,
        )
        if job_id:
            job_ids.append(job_id)
    return job_ids


@dataclass(slots=True)
class TriggerSummary:
    brands: int = 0
    candidates: int = 0
    enqueued: int = 0
    errors: list[str] = field(default_factory=list)


class IngestionTrigger:
    """Polls every adapter for every brand and enqueues ``ingest_event`` jobs."""

    def __init__(
        self,
        repository: Any,
        adapters: Sequence[EvidenceAdapter],
        *,
        adapter_timeout_seconds: float = 10.0,
        inter_brand_delay_seconds: float = 1.0,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.adapters = list(adapters)
        self.adapter_timeout_seconds = adapter_timeout_seconds
        self.inter_brand_delay_seconds = inter_brand_delay_seconds
        self.clock = clock or SystemClock()
        self.sleep = sleep

    async def run(self, brands: Sequence[BrandTarget], since: datetime) -> TriggerSummary:
        summary = TriggerSummary()
        for index, brand in enumerate(brands):
            if index and self.inter_brand_delay_seconds > 0:
                await self.sleep(self.inter_brand_delay_seconds)
            summary.brands += 1
            for adapter in self.adapters:
                try:
                    candidates = await asyncio.wait_for(
                        adapter.fetch(brand, since),
                        timeout=self.adapter_timeout_seconds,
                    )
                except (AdapterError, asyncio.TimeoutError) as exc:
                    message = f"{adapter.name}:{brand.brand_id}: {str(exc) or exc.__class__.__name__}"
                    logger.warning("adapter failed adapter=%s brand=%s error=%s", adapter.name, brand.brand_id, exc)
                    summary.errors.append(message)
                    continue
                summary.candidates += len(candidates)
                job_ids = await enqueue_candidates(self.repository, candidates, now=self.clock.now())
                summary.enqueued += len(job_ids)
        logger.info(
            "ingestion trigger finished brands=%s candidates=%s enqueued=%s errors=%s",
            summary.brands,
            summary.candidates,
            summary.enqueued,
            len(summary.errors),
        )
        return summary
