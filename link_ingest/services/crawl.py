from __future__ import annotations

import logging

from link_ingest.services.models import IngestionJob, JobPayload, JobStatus
from link_ingest.services.scheduler import JobQueue, job_dedup_key
from link_ingest.strategies.registry import get_strategy, resolve_strategy

logger = logging.getLogger(__name__)

# A succeeded job for the same source blocks re-crawling it from another hub.
BLOCKING_STATUSES = {JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.SUCCEEDED}


class CrawlController:
    """Decides which discovered hub pages become follow-up jobs."""

    def __init__(self, queue: JobQueue, repository) -> None:
        self.queue = queue
        self.repository = repository

    async def plan_follow_ups(self, job: IngestionJob, crawl_targets: list[str]) -> list[IngestionJob]:
        parent = get_strategy(job.job_type)
        parent_source = parent.canonical_source(job.payload.source_url) if parent is not None else None
        child_depth = job.depth + 1
        scheduled: list[IngestionJob] = []
        seen: set[str] = set()

        for target in crawl_targets:
            strategy = resolve_strategy(target)
            if strategy is None or strategy.max_depth == 0:
                logger.debug("crawl target skipped, no strategy job_id=%s target=%s", job.id, target)
                continue
            if child_depth > strategy.max_depth:
                logger.info(
                    "crawl target skipped, depth exceeded job_id=%s target=%s depth=%s",
                    job.id,
                    target,
                    child_depth,
                )
                continue

            source_url = strategy.canonical_source(target)
            if source_url is None:
                continue
            if source_url == parent_source:
                continue

            dedup_key = job_dedup_key(strategy.kind.value, job.creator_profile_id, strategy.platform, source_url)
            if dedup_key in seen:
                continue
            seen.add(dedup_key)
            if await self.repository.has_job_with_dedup_key(dedup_key, BLOCKING_STATUSES):
                logger.info("crawl target skipped, already scheduled job_id=%s target=%s", job.id, source_url)
                continue

            result = await self.queue.enqueue(
                strategy.kind.value,
                job.creator_profile_id,
                JobPayload(
                    source_url=source_url,
                    creator_profile_id=job.creator_profile_id,
                    depth=child_depth,
                ),
            )
            if result.created:
                scheduled.append(await self.repository.get_job(result.job_id))

        if scheduled:
            logger.info(
                "crawl follow-ups scheduled job_id=%s count=%s depth=%s",
                job.id,
                len(scheduled),
                child_depth,
            )
        return scheduled
