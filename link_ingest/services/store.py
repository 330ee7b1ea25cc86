from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from uuid import uuid4

from link_ingest.jobs.lease_reaper import reaped_status, should_requeue
from link_ingest.services.models import (
    NON_TERMINAL_JOB_STATUSES,
    CreatorProfile,
    EnqueueResult,
    IngestionJob,
    IngestionStatus,
    JobPayload,
    JobStatus,
    MergePlan,
    SocialLink,
    utcnow,
)
from link_ingest.services.repository import (
    STALE_EXHAUSTED_ERROR,
    STALE_REQUEUED_ERROR,
    RepositoryConflictError,
    RepositoryNotFoundError,
    profile_hint_changes,
)


class InMemoryRepository:
    """Process-local repository with the same contract as ``PostgresRepository``.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self, *, job_max_attempts: int = 3, clock=utcnow) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.clock = clock
        self.jobs: dict[str, IngestionJob] = {}
        self.profiles: dict[str, CreatorProfile] = {}
        self.links: dict[str, SocialLink] = {}

    async def close(self) -> None:
        return None

    def add_profile(self, profile: CreatorProfile) -> CreatorProfile:
        self.profiles[profile.id] = profile
        return profile

    def add_link(self, link: SocialLink) -> SocialLink:
        for existing in self.links.values():
            if (existing.creator_profile_id, existing.platform, existing.url) == (
                link.creator_profile_id,
                link.platform,
                link.url,
            ):
                raise RepositoryConflictError("link already exists for canonical identity")
        self.links[link.id] = link
        return link

    # Jobs

    async def enqueue_job(
        self,
        *,
        job_type: str,
        creator_profile_id: str,
        payload: JobPayload,
        dedup_key: str,
        source_host: str | None,
        priority: int = 0,
        max_attempts: int | None = None,
    ) -> EnqueueResult:
        if creator_profile_id not in self.profiles:
            raise RepositoryNotFoundError("creator profile not found")
        existing = self._active_job_for(dedup_key)
        if existing is not None:
            return EnqueueResult(job_id=existing.id, created=False, dedup_key=dedup_key, job_type=job_type)

        now = self.clock()
        job = IngestionJob(
            id=str(uuid4()),
            job_type=job_type,
            creator_profile_id=creator_profile_id,
            payload=payload,
            status=JobStatus.PENDING,
            dedup_key=dedup_key,
            max_attempts=max(1, max_attempts or self.job_max_attempts),
            priority=priority,
            run_at=now,
            source_host=source_host,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return EnqueueResult(job_id=job.id, created=True, dedup_key=dedup_key, job_type=job_type)

    async def claim_next_job(self, *, worker_id: str, max_per_host: int) -> IngestionJob | None:
        now = self.clock()
        busy_hosts: dict[str, int] = {}
        for job in self.jobs.values():
            if job.status == JobStatus.PROCESSING and job.source_host:
                busy_hosts[job.source_host] = busy_hosts.get(job.source_host, 0) + 1

        eligible = [
            job
            for job in self.jobs.values()
            if job.status == JobStatus.PENDING
            and job.run_at <= now
            and job.attempts < job.max_attempts
            and (job.source_host is None or busy_hosts.get(job.source_host, 0) < max(1, max_per_host))
        ]
        if not eligible:
            return None

        job = min(eligible, key=lambda candidate: (candidate.priority, candidate.run_at, candidate.created_at))
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.claimed_by = worker_id
        job.claimed_at = now
        job.updated_at = now
        return replace(job)

    async def complete_job(self, job_id: str) -> IngestionJob:
        job = self._require_processing(job_id)
        job.status = JobStatus.SUCCEEDED
        job.error = None
        job.error_kind = None
        job.next_run_at = None
        job.claimed_by = None
        job.claimed_at = None
        job.updated_at = self.clock()
        return replace(job)

    async def fail_job(
        self,
        job_id: str,
        *,
        error: str,
        error_kind: str,
        retry_at: datetime | None,
    ) -> IngestionJob:
        job = self._require_processing(job_id)
        job.status = JobStatus.FAILED if retry_at is None else JobStatus.PENDING
        if retry_at is not None:
            job.run_at = retry_at
        job.next_run_at = retry_at
        job.error = error
        job.error_kind = error_kind
        job.claimed_by = None
        job.claimed_at = None
        job.updated_at = self.clock()
        return replace(job)

    async def requeue_stale_jobs(self, *, stale_after_seconds: int, limit: int) -> list[IngestionJob]:
        now = self.clock()
        stale = sorted(
            (job for job in self.jobs.values() if should_requeue(job, max(0, stale_after_seconds), now=now)),
            key=lambda job: job.claimed_at,
        )[: max(1, min(limit, 1000))]

        requeued: list[IngestionJob] = []
        for job in stale:
            job.status = reaped_status(job)
            job.error = STALE_EXHAUSTED_ERROR if job.status == JobStatus.FAILED else STALE_REQUEUED_ERROR
            job.error_kind = "transient"
            job.run_at = now
            job.next_run_at = None
            job.claimed_by = None
            job.claimed_at = None
            job.updated_at = now
            requeued.append(replace(job))
        return requeued

    async def reset_job(self, job_id: str) -> IngestionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job.status != JobStatus.FAILED:
            raise RepositoryConflictError(f"job is {job.status.value}; only failed jobs can be retried")
        if self._active_job_for(job.dedup_key) is not None:
            raise RepositoryConflictError("an active job with the same dedup key exists")
        now = self.clock()
        job.status = JobStatus.PENDING
        job.attempts = 0
        job.run_at = now
        job.next_run_at = None
        job.error = None
        job.error_kind = None
        job.updated_at = now
        return replace(job)

    async def has_job_with_dedup_key(self, dedup_key: str, statuses: set[JobStatus]) -> bool:
        return any(job.dedup_key == dedup_key and job.status in statuses for job in self.jobs.values())

    async def get_job(self, job_id: str) -> IngestionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return replace(job)

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        creator_profile_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[IngestionJob]:
        matching = [
            job
            for job in self.jobs.values()
            if (status is None or job.status == status)
            and (creator_profile_id is None or job.creator_profile_id == creator_profile_id)
        ]
        matching.sort(key=lambda job: job.created_at, reverse=True)
        start = max(0, offset)
        return [replace(job) for job in matching[start : start + max(1, min(limit, 500))]]

    # Profiles

    async def get_profile(self, profile_id: str) -> CreatorProfile:
        return replace(self._require_profile(profile_id))

    async def set_profile_ingestion_status(
        self,
        profile_id: str,
        status: IngestionStatus,
        *,
        error: str | None = None,
    ) -> CreatorProfile:
        profile = self._require_profile(profile_id)
        profile.ingestion_status = status
        if status != IngestionStatus.PROCESSING:
            profile.last_ingestion_error = error
        profile.updated_at = self.clock()
        return replace(profile)

    async def release_profile_status(
        self,
        profile_id: str,
        status: IngestionStatus,
        *,
        error: str | None = None,
    ) -> bool:
        profile = self._require_profile(profile_id)
        still_processing = any(
            job.creator_profile_id == profile_id and job.status == JobStatus.PROCESSING for job in self.jobs.values()
        )
        if still_processing:
            return False
        profile.ingestion_status = status
        profile.last_ingestion_error = error
        profile.updated_at = self.clock()
        return True

    async def apply_profile_hints(
        self,
        profile_id: str,
        *,
        display_name: str | None,
        avatar_url: str | None,
    ) -> list[str]:
        profile = self._require_profile(profile_id)
        changes = profile_hint_changes(profile, display_name=display_name, avatar_url=avatar_url)
        if "display_name" in changes:
            profile.display_name = changes["display_name"]
        if "avatar_url" in changes:
            profile.avatar_url = changes["avatar_url"]
        if changes:
            profile.updated_at = self.clock()
        return sorted(changes)

    # Links

    async def list_links(self, profile_id: str) -> list[SocialLink]:
        links = [link for link in self.links.values() if link.creator_profile_id == profile_id]
        links.sort(key=lambda link: (link.created_at, link.id))
        return [replace(link, evidence=list(link.evidence)) for link in links]

    async def get_link(self, profile_id: str, link_id: str) -> SocialLink:
        link = self.links.get(link_id)
        if link is None or link.creator_profile_id != profile_id:
            raise RepositoryNotFoundError("link not found")
        return replace(link, evidence=list(link.evidence))

    async def apply_merge_plan(self, plan: MergePlan) -> None:
        if plan.is_empty:
            return
        if plan.creator_profile_id not in self.profiles:
            raise RepositoryNotFoundError("creator profile not found")

        # Validate everything before the first write so a conflict leaves no partial state.
        taken = {
            (link.creator_profile_id, link.platform, link.url)
            for link in self.links.values()
        }
        for insert in plan.inserts:
            key = (insert.creator_profile_id, insert.platform, insert.url)
            if key in taken:
                raise RepositoryConflictError("link already exists for canonical identity")
            taken.add(key)
        for update in plan.updates:
            current = self.links.get(update.link_id)
            if current is None or current.version != update.expected_version:
                raise RepositoryConflictError(f"link {update.link_id} changed concurrently")

        now = self.clock()
        for insert in plan.inserts:
            link = SocialLink(
                id=str(uuid4()),
                creator_profile_id=insert.creator_profile_id,
                platform=insert.platform,
                url=insert.url,
                state=insert.state,
                confidence=insert.confidence,
                source_type=insert.source_type,
                source_platform=insert.source_platform,
                evidence=list(insert.evidence),
                display_text=insert.display_text,
                created_at=now,
                updated_at=now,
            )
            self.links[link.id] = link
        for update in plan.updates:
            link = self.links[update.link_id]
            link.state = update.state
            link.confidence = update.confidence
            link.evidence = list(update.evidence)
            link.source_platform = link.source_platform or update.source_platform
            link.display_text = link.display_text or update.display_text
            link.version += 1
            link.updated_at = now

    def _active_job_for(self, dedup_key: str) -> IngestionJob | None:
        for job in self.jobs.values():
            if job.dedup_key == dedup_key and job.status in NON_TERMINAL_JOB_STATUSES:
                return job
        return None

    def _require_processing(self, job_id: str) -> IngestionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job.status != JobStatus.PROCESSING:
            raise RepositoryConflictError(f"job is {job.status.value}, expected processing")
        return job

    def _require_profile(self, profile_id: str) -> CreatorProfile:
        profile = self.profiles.get(profile_id)
        if profile is None:
            raise RepositoryNotFoundError("creator profile not found")
        return profile
