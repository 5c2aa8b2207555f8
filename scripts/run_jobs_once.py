#!/usr/bin/env python3
"""Run a single job-engine invocation and print its summary as JSON.

Intended for cron-style external triggers that do not go through the HTTP API.
"""

from __future__ import annotations

import argparse
import asyncio
import json

from brandtrust.core.config import get_settings
from brandtrust.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from brandtrust.jobs.runner import JobRunner
from brandtrust.services.repository import get_repository


async def run(invocations: int) -> list[dict[str, object]]:
    settings = get_settings()
    telemetry_runtime = setup_telemetry(settings, service_suffix="cli")
    repository = get_repository()
    runner = JobRunner(repository, settings)
    summaries: list[dict[str, object]] = []
    try:
        for _ in range(invocations):
            summary = await runner.run_once()
            summaries.append(summary.as_dict())
            if not summary.claimed:
                break
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)
    return summaries


def main() -> None:
    parser = argparse.ArgumentParser(description="Drain due jobs with one or more engine invocations.")
    parser.add_argument(
        "--invocations",
        type=int,
        default=1,
        help="Maximum number of back-to-back invocations; stops early when nothing is claimed",
    )
    args = parser.parse_args()

    configure_logging()
    print(json.dumps(asyncio.run(run(max(1, args.invocations))), indent=2))


if __name__ == "__main__":
    main()
