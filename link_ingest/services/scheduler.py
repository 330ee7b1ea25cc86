"""Durable ingestion job queue.

The queue owns ``CreatorProfile.ingestion_status``: ``processing()`` flips a
profile to processing for the duration of one job and restores it on every
exit path.
"""

from __future__ import annotations

import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator

from link_ingest.core.config import Settings
from link_ingest.core.errors import classify_exception
from link_ingest.core.urls import build_dedup_key, canonical_identity, host_of
from link_ingest.services.models import (
    EnqueueResult,
    IngestionJob,
    IngestionStatus,
    JobPayload,
    JobStatus,
    utcnow,
)
from link_ingest.services.repository import RepositoryValidationError
from link_ingest.strategies.registry import get_strategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    base_seconds: float = 5.0
    max_seconds: float = 300.0
    jitter_seconds: float = 1.0
    rate_limit_base_seconds: float = 30.0
    rate_limit_max_seconds: float = 900.0
    rate_limit_jitter_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            base_seconds=settings.job_retry_base_seconds,
            max_seconds=settings.job_retry_max_seconds,
            jitter_seconds=settings.job_retry_jitter_seconds,
            rate_limit_base_seconds=settings.rate_limit_retry_base_seconds,
            rate_limit_max_seconds=settings.rate_limit_retry_max_seconds,
            rate_limit_jitter_seconds=settings.rate_limit_retry_jitter_seconds,
        )

    def delay_seconds(self, attempt: int, *, kind: str, rng: random.Random | None = None) -> float:
        if kind == "rate_limited":
            return compute_retry_delay_seconds(
                attempt,
                base_seconds=self.rate_limit_base_seconds,
                max_seconds=self.rate_limit_max_seconds,
                jitter_seconds=self.rate_limit_jitter_seconds,
                rng=rng,
            )
        return compute_retry_delay_seconds(
            attempt,
            base_seconds=self.base_seconds,
            max_seconds=self.max_seconds,
            jitter_seconds=self.jitter_seconds,
            rng=rng,
        )


def compute_retry_delay_seconds(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter_seconds: float,
    rng: random.Random | None = None,
) -> float:
    if base_seconds <= 0:
        return 0.0
    multiplier = max(0, attempt - 1)
    jitter = (rng or random).uniform(0.0, jitter_seconds) if jitter_seconds > 0 else 0.0
    return min(base_seconds * (2**multiplier) + jitter, max_seconds)


@dataclass(slots=True)
class JobRun:
    """Outcome holder for one job inside ``JobQueue.processing``."""

    job: IngestionJob
    result: IngestionJob | None = None

    @property
    def resolved(self) -> bool:
        return self.result is not None


class JobQueue:
    def __init__(
        self,
        repository,
        *,
        retry_policy: RetryPolicy | None = None,
        max_attempts: int = 3,
        max_concurrent_jobs_per_host: int = 2,
        stale_processing_after_seconds: int = 1200,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_attempts = max(1, max_attempts)
        self.max_concurrent_jobs_per_host = max(1, max_concurrent_jobs_per_host)
        self.stale_processing_after_seconds = stale_processing_after_seconds
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(cls, repository, settings: Settings) -> JobQueue:
        return cls(
            repository,
            retry_policy=RetryPolicy.from_settings(settings),
            max_attempts=settings.job_max_attempts,
            max_concurrent_jobs_per_host=settings.max_concurrent_jobs_per_host,
            stale_processing_after_seconds=settings.stale_processing_after_seconds,
        )

    async def enqueue(
        self,
        job_type: str,
        creator_profile_id: str,
        payload: JobPayload,
        *,
        priority: int = 0,
    ) -> EnqueueResult:
        """Schedule a job; an equivalent pending or processing job is returned instead of a new one."""
        strategy = get_strategy(job_type)
        if strategy is None:
            raise RepositoryValidationError(f"unknown job type {job_type}")
        source_url = strategy.canonical_source(payload.source_url)
        if source_url is None:
            raise RepositoryValidationError(f"{payload.source_url!r} is not a supported {strategy.platform} url")

        dedup_key = job_dedup_key(strategy.kind.value, creator_profile_id, strategy.platform, source_url)
        canonical_payload = JobPayload(
            source_url=source_url,
            creator_profile_id=creator_profile_id,
            depth=payload.depth,
            strategy_options=dict(payload.strategy_options),
        )
        result = await self.repository.enqueue_job(
            job_type=strategy.kind.value,
            creator_profile_id=creator_profile_id,
            payload=canonical_payload,
            dedup_key=dedup_key,
            source_host=host_of(source_url),
            priority=priority,
            max_attempts=self.max_attempts,
        )
        logger.info(
            "job enqueue job_id=%s job_type=%s profile_id=%s depth=%s created=%s",
            result.job_id,
            result.job_type,
            creator_profile_id,
            payload.depth,
            result.created,
        )
        return result

    async def claim_next(self, worker_id: str) -> IngestionJob | None:
        job = await self.repository.claim_next_job(
            worker_id=worker_id,
            max_per_host=self.max_concurrent_jobs_per_host,
        )
        if job is not None:
            logger.info(
                "job claimed job_id=%s job_type=%s worker_id=%s attempt=%s/%s",
                job.id,
                job.job_type,
                worker_id,
                job.attempts,
                job.max_attempts,
            )
        return job

    async def complete(self, job_id: str) -> IngestionJob:
        job = await self.repository.complete_job(job_id)
        logger.info("job succeeded job_id=%s attempts=%s", job.id, job.attempts)
        return job

    async def fail(self, job_id: str, error: str, *, retryable: bool, kind: str = "transient") -> IngestionJob:
        """Requeue with backoff while attempts remain, otherwise fail terminally."""
        current = await self.repository.get_job(job_id)
        retry_at = None
        if retryable and current.attempts < current.max_attempts:
            delay = self.retry_policy.delay_seconds(current.attempts, kind=kind, rng=self.rng)
            retry_at = utcnow() + timedelta(seconds=delay)

        job = await self.repository.fail_job(job_id, error=error, error_kind=kind, retry_at=retry_at)
        if job.status == JobStatus.PENDING:
            logger.info(
                "job retry scheduled job_id=%s kind=%s attempt=%s/%s run_at=%s",
                job.id,
                kind,
                job.attempts,
                job.max_attempts,
                job.run_at.isoformat(),
            )
        else:
            logger.warning(
                "job failed job_id=%s kind=%s attempts=%s error=%s",
                job.id,
                kind,
                job.attempts,
                error,
            )
        return job

    @asynccontextmanager
    async def processing(self, job: IngestionJob) -> AsyncIterator[JobRun]:
        """Hold the profile in ``processing`` while ``job`` runs.

        Resolve the run with ``succeed``/``record_failure``; a block that exits
        normally without either counts as success, and an escaping exception
        is recorded as a failure before it propagates.
        """
        await self.repository.set_profile_ingestion_status(job.creator_profile_id, IngestionStatus.PROCESSING)
        run = JobRun(job=job)
        try:
            yield run
            if not run.resolved:
                await self.succeed(run)
        except Exception as exc:
            if not run.resolved:
                kind, retryable, message = classify_exception(exc)
                await self.record_failure(run, message, retryable=retryable, kind=kind)
            raise
        finally:
            await self._release_profile(run)

    async def succeed(self, run: JobRun) -> IngestionJob:
        run.result = await self.complete(run.job.id)
        return run.result

    async def record_failure(self, run: JobRun, error: str, *, retryable: bool, kind: str) -> IngestionJob:
        run.result = await self.fail(run.job.id, error, retryable=retryable, kind=kind)
        return run.result

    async def requeue_stale_jobs(self, *, limit: int = 50) -> list[IngestionJob]:
        jobs = await self.repository.requeue_stale_jobs(
            stale_after_seconds=self.stale_processing_after_seconds,
            limit=limit,
        )
        for job in jobs:
            logger.warning(
                "stale job reaped job_id=%s status=%s attempts=%s/%s",
                job.id,
                job.status.value,
                job.attempts,
                job.max_attempts,
            )
            await self.repository.release_profile_status(
                job.creator_profile_id,
                _profile_status_for(job),
                error=job.error,
            )
        return jobs

    async def reset_job(self, job_id: str) -> IngestionJob:
        job = await self.repository.reset_job(job_id)
        await self.repository.release_profile_status(job.creator_profile_id, IngestionStatus.PENDING)
        logger.info("job reset for retry job_id=%s", job.id)
        return job

    async def _release_profile(self, run: JobRun) -> None:
        outcome = run.result
        if outcome is None:
            # Repository writes failed; the reaper settles the job later.
            try:
                outcome = await self.repository.get_job(run.job.id)
            except Exception:
                logger.exception("job outcome unavailable job_id=%s", run.job.id)
                return
            if outcome.status == JobStatus.PROCESSING:
                return
        released = await self.repository.release_profile_status(
            run.job.creator_profile_id,
            _profile_status_for(outcome),
            error=outcome.error,
        )
        if not released:
            logger.info(
                "profile still processing other jobs profile_id=%s job_id=%s",
                run.job.creator_profile_id,
                run.job.id,
            )


def job_dedup_key(job_type: str, creator_profile_id: str, platform: str, source_url: str) -> str:
    return build_dedup_key(job_type, creator_profile_id, canonical_identity(platform, source_url))


def _profile_status_for(job: IngestionJob) -> IngestionStatus:
    if job.status == JobStatus.SUCCEEDED:
        return IngestionStatus.IDLE
    if job.status == JobStatus.FAILED:
        return IngestionStatus.FAILED
    return IngestionStatus.PENDING
