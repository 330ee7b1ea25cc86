from __future__ import annotations

import asyncio
import json
import logging

import httpx

from link_ingest.jobs.executor import execute_job
from link_ingest.services.crawl import CrawlController
from link_ingest.services.merge import MergeEngine
from link_ingest.services.models import IngestionJob, IngestionStatus, JobPayload, JobStatus
from link_ingest.services.scheduler import JobQueue
from link_ingest.services.store import InMemoryRepository
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.worker import poll_once

from conftest import PROFILE_ID

NEXT_DATA = {
    "props": {
        "pageProps": {
            "account": {
                "pageTitle": "Artist Name",
                "profilePictureUrl": "https://ugc.production.linktr.ee/avatar.jpg",
                "links": [
                    {"title": "Listen", "url": "https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb"},
                    {"title": "Merch", "url": "https://artist-merch.com/"},
                    {"title": "More", "url": "https://beacons.ai/artist"},
                ],
                "socialLinks": [
                    {"type": "INSTAGRAM", "url": "https://instagram.com/artist"},
                    {"type": "YOUTUBE", "url": "https://youtube.com/@artist"},
                ],
            }
        }
    }
}
LINKTREE_HTML = (
    '<html><head><title>Artist Name | Linktree</title></head><body>'
    f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(NEXT_DATA)}</script>'
    "</body></html>"
)


def _run(repository: InMemoryRepository, handler) -> tuple[dict, IngestionJob]:
    queue = JobQueue(repository)
    merge_engine = MergeEngine(repository)
    crawl = CrawlController(queue, repository)

    async def run() -> tuple[dict, IngestionJob]:
        await queue.enqueue(
            "import_linktree",
            PROFILE_ID,
            JobPayload(source_url="https://linktr.ee/artist", creator_profile_id=PROFILE_ID),
        )
        job = await queue.claim_next("worker-test")
        assert job is not None
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await execute_job(
                job,
                queue=queue,
                merge_engine=merge_engine,
                crawl=crawl,
                fetcher=SafeFetcher(client=client),
            )
        return result, await repository.get_job(job.id)

    return asyncio.run(run())


def test_execute_job_merges_links_and_schedules_follow_ups(repository: InMemoryRepository) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            text=LINKTREE_HTML,
            headers={"content-type": "text/html; charset=utf-8"},
            request=request,
        )

    result, job = _run(repository, handler)

    assert result["handled"] is True
    assert result["status"] == "succeeded"
    assert result["links"]["created"] == 5
    assert sorted(result["hintsApplied"]) == ["avatar_url", "display_name"]
    assert len(result["followUps"]) == 2
    assert job.status == JobStatus.SUCCEEDED

    links = asyncio.run(repository.list_links(PROFILE_ID))
    assert {link.platform for link in links} == {"spotify", "website", "beacons", "instagram", "youtube"}
    assert all(link.evidence[0].job_id == job.id for link in links)

    follow_ups = [asyncio.run(repository.get_job(job_id)) for job_id in result["followUps"]]
    assert sorted(job.job_type for job in follow_ups) == ["import_beacons", "import_youtube"]
    assert {job.depth for job in follow_ups} == {1}

    profile = asyncio.run(repository.get_profile(PROFILE_ID))
    assert profile.display_name == "Artist Name"
    assert profile.ingestion_status == IngestionStatus.IDLE


def test_off_allowlist_redirect_fails_without_retry(repository: InMemoryRepository, caplog) -> None:
    requested_hosts: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requested_hosts.append(request.url.host)
        return httpx.Response(302, headers={"location": "https://evil.example.com/phish"}, request=request)

    with caplog.at_level(logging.WARNING):
        result, job = _run(repository, handler)

    assert result["handled"] is False
    assert result["errorKind"] == "policy"
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error_kind == "policy"
    assert requested_hosts == ["linktr.ee"]
    assert "policy_violation" in caplog.text
    assert asyncio.run(repository.list_links(PROFILE_ID)) == []

    profile = asyncio.run(repository.get_profile(PROFILE_ID))
    assert profile.ingestion_status == IngestionStatus.FAILED
    assert profile.last_ingestion_error


def test_upstream_error_is_retried_later(repository: InMemoryRepository) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    result, job = _run(repository, handler)

    assert result["handled"] is False
    assert result["errorKind"] == "transient"
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.next_run_at is not None
    profile = asyncio.run(repository.get_profile(PROFILE_ID))
    assert profile.ingestion_status == IngestionStatus.PENDING


def test_unparseable_page_fails_as_content_error(repository: InMemoryRepository) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html><body></body></html>", request=request)

    result, job = _run(repository, handler)

    assert result["errorKind"] == "content"
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1


def test_poll_once_claims_and_executes_one_job(repository: InMemoryRepository) -> None:
    queue = JobQueue(repository)
    merge_engine = MergeEngine(repository)
    crawl = CrawlController(queue, repository)

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=LINKTREE_HTML, request=request)

    async def run() -> tuple[bool, bool]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = SafeFetcher(client=client)
            idle = await poll_once(
                queue=queue, merge_engine=merge_engine, crawl=crawl, fetcher=fetcher, worker_id="worker-test"
            )
            await queue.enqueue(
                "import_linktree",
                PROFILE_ID,
                JobPayload(source_url="https://linktr.ee/artist", creator_profile_id=PROFILE_ID),
            )
            busy = await poll_once(
                queue=queue, merge_engine=merge_engine, crawl=crawl, fetcher=fetcher, worker_id="worker-test"
            )
            return idle, busy

    idle, busy = asyncio.run(run())

    assert idle is False
    assert busy is True
    jobs = asyncio.run(repository.list_jobs(status=JobStatus.SUCCEEDED, creator_profile_id=PROFILE_ID))
    assert [job.job_type for job in jobs] == ["import_linktree"]
