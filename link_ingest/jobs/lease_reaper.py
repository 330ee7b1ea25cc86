from __future__ import annotations

from datetime import datetime, timedelta, timezone

from link_ingest.services.models import IngestionJob, JobStatus


def claim_expired(job: IngestionJob, stale_after_seconds: int, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if job.claimed_at is None:
        return False
    return job.claimed_at + timedelta(seconds=stale_after_seconds) <= now


def should_requeue(job: IngestionJob, stale_after_seconds: int, now: datetime | None = None) -> bool:
    return job.status == JobStatus.PROCESSING and claim_expired(job, stale_after_seconds, now=now)


def reaped_status(job: IngestionJob) -> JobStatus:
    """Status a stale job moves to: back to pending, or failed once attempts are spent."""
    return JobStatus.FAILED if job.attempts_exhausted else JobStatus.PENDING
