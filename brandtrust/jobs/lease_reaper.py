from __future__ import annotations

from datetime import datetime, timedelta

from brandtrust.services.repository import JobRecord


def stale_lock_cutoff(now: datetime, timeout_seconds: int) -> datetime:
    return now - timedelta(seconds=timeout_seconds)


def lock_is_stale(job: JobRecord, older_than: datetime) -> bool:
    if job.locked_by is None or job.locked_at is None:
        return False
    return job.locked_at < older_than
