from __future__ import annotations

import logging
from typing import Any

from link_ingest.core.errors import classify_exception
from link_ingest.services.crawl import CrawlController
from link_ingest.services.merge import MergeCandidate, MergeEngine
from link_ingest.services.models import IngestionJob
from link_ingest.services.scheduler import JobQueue
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.strategies.registry import get_strategy

logger = logging.getLogger(__name__)


async def execute_job(
    job: IngestionJob,
    *,
    queue: JobQueue,
    merge_engine: MergeEngine,
    crawl: CrawlController,
    fetcher: SafeFetcher,
) -> dict[str, Any]:
    """Run one claimed job: extract, merge, enrich the profile, schedule follow-ups.

    Extraction failures are classified and recorded on the job; they do not
    propagate. Merge or repository failures escape after ``queue.processing``
    has recorded them as transient.
    """
    strategy = get_strategy(job.job_type)
    async with queue.processing(job) as run:
        if strategy is None:
            await queue.record_failure(run, f"unknown job type {job.job_type}", retryable=False, kind="content")
            return _failed_result(job, run.result, "content")

        try:
            extraction = await strategy.fetch_and_extract(job, fetcher)
        except Exception as exc:
            kind, retryable, message = classify_exception(exc)
            if kind == "policy":
                logger.warning(
                    "policy_violation job_id=%s job_type=%s source_url=%s error=%s",
                    job.id,
                    job.job_type,
                    job.payload.source_url,
                    message,
                )
            else:
                logger.info(
                    "extraction failed job_id=%s job_type=%s kind=%s retryable=%s error=%s",
                    job.id,
                    job.job_type,
                    kind,
                    retryable,
                    message,
                )
            await queue.record_failure(run, message, retryable=retryable, kind=kind)
            return _failed_result(job, run.result, kind)

        candidates = [
            MergeCandidate(url=link.url, source=job.job_type, signal=link.signal, title=link.title)
            for link in extraction.links
        ]
        merge_result = await merge_engine.merge(
            job.creator_profile_id,
            candidates,
            source_url=job.payload.source_url,
            job_id=job.id,
        )

        hints_applied: list[str] = []
        if not extraction.hints.is_empty:
            hints_applied = await queue.repository.apply_profile_hints(
                job.creator_profile_id,
                display_name=extraction.hints.display_name,
                avatar_url=extraction.hints.avatar_url,
            )

        follow_ups = await crawl.plan_follow_ups(job, extraction.crawl_targets)
        await queue.succeed(run)

    return {
        "handled": True,
        "jobId": job.id,
        "jobType": job.job_type,
        "status": run.result.status.value,
        "links": merge_result.summary(),
        "hintsApplied": hints_applied,
        "followUps": [follow_up.id for follow_up in follow_ups],
    }


def _failed_result(job: IngestionJob, outcome: IngestionJob | None, kind: str) -> dict[str, Any]:
    return {
        "handled": False,
        "jobId": job.id,
        "jobType": job.job_type,
        "status": outcome.status.value if outcome is not None else None,
        "errorKind": kind,
    }
