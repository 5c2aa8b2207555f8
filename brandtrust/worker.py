from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import timedelta

from opentelemetry import trace

from brandtrust.core.clock import SystemClock
from brandtrust.core.config import Settings, get_settings
from brandtrust.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from brandtrust.jobs.runner import JobRunner
from brandtrust.schemas.jobs import JobStage
from brandtrust.services.adapters import BrandTarget, HttpEvidenceAdapter, IngestionTrigger
from brandtrust.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SNAPSHOT_COALESCE_KEY = "publish_snapshots"


def build_trigger(repository, settings: Settings, clock: SystemClock) -> IngestionTrigger | None:
    if not settings.ingest_feed_urls:
        return None
    adapters = [
        HttpEvidenceAdapter(name, url, timeout_seconds=settings.adapter_timeout_seconds)
        for name, url in sorted(settings.ingest_feed_urls.items())
    ]
    return IngestionTrigger(
        repository,
        adapters,
        adapter_timeout_seconds=settings.adapter_timeout_seconds,
        inter_brand_delay_seconds=settings.inter_brand_delay_seconds,
        clock=clock,
    )


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")
    clock = SystemClock()
    repository = get_repository()
    runner = JobRunner(repository, settings, clock=clock)
    trigger = build_trigger(repository, settings, clock)

    backoff = settings.poll_interval_seconds
    last_snapshot_at = 0.0
    last_ingest_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_snapshot_at >= settings.snapshot_interval_seconds:
                        job_id = await repository.enqueue_job(
                            JobStage.PUBLISH_SNAPSHOTS.value,
                            {},
                            not_before=clock.now(),
                            coalesce_key=SNAPSHOT_COALESCE_KEY,
                        )
                        if job_id:
                            logger.info("enqueued snapshot job: %s", job_id)
                        last_snapshot_at = now

                    if trigger is not None and now - last_ingest_at >= settings.ingest_interval_seconds:
                        brands = [
                            BrandTarget(brand_id=brand_id, name=name)
                            for brand_id, name in await repository.list_brand_targets()
                        ]
                        await trigger.run(brands, since=clock.now() - timedelta(hours=settings.ingest_lookback_hours))
                        last_ingest_at = now

                    summary = await runner.run_once()
                    if not summary.claimed:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - poll loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
