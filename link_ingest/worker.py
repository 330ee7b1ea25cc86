from __future__ import annotations

import asyncio
import logging
import random
import time

import httpx
from opentelemetry import trace

from link_ingest.core.config import Settings, get_settings
from link_ingest.core.telemetry import (
    configure_logging,
    job_span,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from link_ingest.jobs.executor import execute_job
from link_ingest.services.crawl import CrawlController
from link_ingest.services.merge import MergeEngine
from link_ingest.services.repository import PostgresRepository
from link_ingest.services.scheduler import JobQueue
from link_ingest.services.scoring import ConfidenceScorer, ScoringConfig
from link_ingest.strategies.fetch import SafeFetcher

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def poll_once(
    *,
    queue: JobQueue,
    merge_engine: MergeEngine,
    crawl: CrawlController,
    fetcher: SafeFetcher,
    worker_id: str,
) -> bool:
    """Claim and execute at most one job; returns False when nothing was eligible."""
    job = await queue.claim_next(worker_id)
    if job is None:
        return False

    with job_span(job) as span:
        try:
            result = await execute_job(
                job,
                queue=queue,
                merge_engine=merge_engine,
                crawl=crawl,
                fetcher=fetcher,
            )
        except Exception:
            logger.exception("job execution failed for id=%s", job.id)
            return True
        span.set_attribute("job.status", str(result.get("status")))
    return True


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    repository = PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
    )
    queue = JobQueue.from_settings(repository, settings)
    merge_engine = MergeEngine(
        repository,
        ConfidenceScorer(ScoringConfig.from_settings(settings)),
        conflict_retries=settings.merge_conflict_retries,
    )
    crawl = CrawlController(queue, repository)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0

    try:
        async with httpx.AsyncClient(timeout=settings.fetch_timeout_seconds, follow_redirects=False) as client:
            fetcher = SafeFetcher.from_settings(settings, client=client)
            while True:
                try:
                    with tracer.start_as_current_span("worker.poll_cycle"):
                        now = time.monotonic()
                        if now - last_reap_at >= settings.reaper_interval_seconds:
                            reaped = await queue.requeue_stale_jobs(limit=settings.reaper_batch_size)
                            if reaped:
                                logger.info("requeued stale jobs: %s", [job.id for job in reaped])
                            last_reap_at = now

                        processed = await poll_once(
                            queue=queue,
                            merge_engine=merge_engine,
                            crawl=crawl,
                            fetcher=fetcher,
                            worker_id=settings.worker_id,
                        )
                        if not processed:
                            await asyncio.sleep(settings.poll_interval_seconds)
                            continue

                    backoff = settings.poll_interval_seconds
                except Exception as exc:
                    jitter = random.uniform(0.0, 0.5)
                    sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                    logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                    await asyncio.sleep(sleep_for)
                    backoff = sleep_for
    finally:
        await repository.close()
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
