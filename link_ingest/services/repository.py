from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from link_ingest.core.config import get_settings
from link_ingest.services.models import (
    CreatorProfile,
    EnqueueResult,
    Evidence,
    IngestionJob,
    IngestionStatus,
    JobPayload,
    JobStatus,
    LinkState,
    MergePlan,
    SocialLink,
    SourceType,
    quantize_confidence,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates a uniqueness or state transition rule."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


STALE_REQUEUED_ERROR = "processing timeout; requeued"
STALE_EXHAUSTED_ERROR = "processing timeout; attempts exhausted"

_JOB_COLUMNS = """
  id::text as id,
  job_type,
  creator_profile_id::text as creator_profile_id,
  payload,
  status,
  attempts,
  max_attempts,
  priority,
  run_at,
  next_run_at,
  dedup_key,
  source_host,
  error,
  error_kind,
  claimed_by,
  claimed_at,
  created_at,
  updated_at
"""
_QUALIFIED_JOB_COLUMNS = _JOB_COLUMNS.replace("id::text as id,", "j.id::text as id,", 1)

_LINK_COLUMNS = """
  id::text as id,
  creator_profile_id::text as creator_profile_id,
  platform,
  url,
  state,
  confidence,
  source_type,
  source_platform,
  evidence,
  display_text,
  version,
  created_at,
  updated_at
"""

_PROFILE_COLUMNS = """
  id::text as id,
  username_normalized,
  display_name,
  avatar_url,
  display_name_locked,
  avatar_locked,
  ingestion_status,
  last_ingestion_error,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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
        pool = await self._get_pool()
        attempts_budget = max(1, max_attempts or self.job_max_attempts)

        try:
            async with pool.acquire() as conn:
                # Two passes cover a racing job that turns terminal between insert and re-select.
                for _ in range(2):
                    job_id = await conn.fetchval(
                        """
                        insert into ingestion_jobs (
                          job_type,
                          creator_profile_id,
                          payload,
                          status,
                          max_attempts,
                          priority,
                          run_at,
                          dedup_key,
                          source_host
                        )
                        values ($1, $2::uuid, $3::jsonb, 'pending', $4, $5, now(), $6, $7)
                        on conflict (dedup_key) where status in ('pending', 'processing') do nothing
                        returning id::text
                        """,
                        job_type,
                        creator_profile_id,
                        json.dumps(payload.to_json()),
                        attempts_budget,
                        priority,
                        dedup_key,
                        source_host,
                    )
                    if job_id:
                        return EnqueueResult(job_id=job_id, created=True, dedup_key=dedup_key, job_type=job_type)

                    existing_id = await conn.fetchval(
                        """
                        select id::text
                        from ingestion_jobs
                        where dedup_key = $1 and status in ('pending', 'processing')
                        limit 1
                        """,
                        dedup_key,
                    )
                    if existing_id:
                        return EnqueueResult(job_id=existing_id, created=False, dedup_key=dedup_key, job_type=job_type)
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc

        raise RepositoryConflictError("could not enqueue job for dedup key")

    async def claim_next_job(self, *, worker_id: str, max_per_host: int) -> IngestionJob | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            with candidate as (
              select j.id
              from ingestion_jobs j
              where j.status = 'pending'
                and j.run_at <= now()
                and j.attempts < j.max_attempts
                and (
                  j.source_host is null
                  or (
                    select count(*)
                    from ingestion_jobs busy
                    where busy.status = 'processing'
                      and busy.source_host = j.source_host
                  ) < $2
                )
              order by j.priority asc, j.run_at asc, j.created_at asc
              limit 1
              for update skip locked
            )
            update ingestion_jobs j
            set
              status = 'processing',
              attempts = j.attempts + 1,
              claimed_by = $1,
              claimed_at = now(),
              updated_at = now()
            from candidate c
            where j.id = c.id
            returning {_QUALIFIED_JOB_COLUMNS}
            """,
            worker_id,
            max(1, max_per_host),
        )
        if not row:
            return None
        return self._job_row_to_record(row)

    async def complete_job(self, job_id: str) -> IngestionJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update ingestion_jobs
                    set
                      status = 'succeeded',
                      error = null,
                      error_kind = null,
                      next_run_at = null,
                      claimed_by = null,
                      claimed_at = null,
                      updated_at = now()
                    where id = $1::uuid and status = 'processing'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                )
                if not row:
                    await self._raise_job_transition_error(conn, job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return self._job_row_to_record(row)

    async def fail_job(
        self,
        job_id: str,
        *,
        error: str,
        error_kind: str,
        retry_at: datetime | None,
    ) -> IngestionJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update ingestion_jobs
                    set
                      status = case when $4::timestamptz is null then 'failed' else 'pending' end,
                      run_at = coalesce($4::timestamptz, run_at),
                      next_run_at = $4::timestamptz,
                      error = $2,
                      error_kind = $3,
                      claimed_by = null,
                      claimed_at = null,
                      updated_at = now()
                    where id = $1::uuid and status = 'processing'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    error,
                    error_kind,
                    retry_at,
                )
                if not row:
                    await self._raise_job_transition_error(conn, job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return self._job_row_to_record(row)

    async def requeue_stale_jobs(self, *, stale_after_seconds: int, limit: int) -> list[IngestionJob]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with stale as (
                      select id
                      from ingestion_jobs
                      where status = 'processing'
                        and claimed_at is not null
                        and claimed_at <= now() - ($1::int * interval '1 second')
                      order by claimed_at asc
                      limit $2
                      for update skip locked
                    )
                    update ingestion_jobs j
                    set
                      status = case when j.attempts >= j.max_attempts then 'failed' else 'pending' end,
                      error = case when j.attempts >= j.max_attempts then $3 else $4 end,
                      error_kind = 'transient',
                      run_at = now(),
                      next_run_at = null,
                      claimed_by = null,
                      claimed_at = null,
                      updated_at = now()
                    from stale s
                    where j.id = s.id
                    returning {_QUALIFIED_JOB_COLUMNS}
                    """,
                    max(0, stale_after_seconds),
                    bounded_limit,
                    STALE_EXHAUSTED_ERROR,
                    STALE_REQUEUED_ERROR,
                )
        return [self._job_row_to_record(row) for row in rows]

    async def reset_job(self, job_id: str) -> IngestionJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update ingestion_jobs
                    set
                      status = 'pending',
                      attempts = 0,
                      run_at = now(),
                      next_run_at = null,
                      error = null,
                      error_kind = null,
                      updated_at = now()
                    where id = $1::uuid and status = 'failed'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                )
                if not row:
                    status = await conn.fetchval("select status from ingestion_jobs where id = $1::uuid", job_id)
                    if status is None:
                        raise RepositoryNotFoundError("job not found")
                    raise RepositoryConflictError(f"job is {status}; only failed jobs can be retried")
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("an active job with the same dedup key exists") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return self._job_row_to_record(row)

    async def has_job_with_dedup_key(self, dedup_key: str, statuses: set[JobStatus]) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval(
            """
            select exists(
              select 1 from ingestion_jobs where dedup_key = $1 and status = any($2::text[])
            )
            """,
            dedup_key,
            sorted(status.value for status in statuses),
        )
        return bool(found)

    async def get_job(self, job_id: str) -> IngestionJob:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from ingestion_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        creator_profile_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[IngestionJob]:
        pool = await self._get_pool()
        clauses: list[str] = []
        args: list[Any] = []
        if status is not None:
            args.append(status.value)
            clauses.append(f"status = ${len(args)}")
        if creator_profile_id is not None:
            args.append(creator_profile_id)
            clauses.append(f"creator_profile_id = ${len(args)}::uuid")
        where_sql = f"where {' and '.join(clauses)}" if clauses else ""
        args.extend([max(1, min(limit, 500)), max(0, offset)])

        try:
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from ingestion_jobs
                {where_sql}
                order by created_at desc
                limit ${len(args) - 1}
                offset ${len(args)}
                """,
                *args,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid creator profile id") from exc
        return [self._job_row_to_record(row) for row in rows]

    # Profiles

    async def get_profile(self, profile_id: str) -> CreatorProfile:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_PROFILE_COLUMNS} from creator_profiles where id = $1::uuid",
                profile_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc
        if not row:
            raise RepositoryNotFoundError("creator profile not found")
        return self._profile_row_to_record(row)

    async def set_profile_ingestion_status(
        self,
        profile_id: str,
        status: IngestionStatus,
        *,
        error: str | None = None,
    ) -> CreatorProfile:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update creator_profiles
                set
                  ingestion_status = $2,
                  last_ingestion_error = case when $2 = 'processing' then last_ingestion_error else $3 end,
                  updated_at = now()
                where id = $1::uuid
                returning {_PROFILE_COLUMNS}
                """,
                profile_id,
                status.value,
                error,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc
        if not row:
            raise RepositoryNotFoundError("creator profile not found")
        return self._profile_row_to_record(row)

    async def release_profile_status(
        self,
        profile_id: str,
        status: IngestionStatus,
        *,
        error: str | None = None,
    ) -> bool:
        """Set the post-job status unless another job of the profile is still processing."""
        pool = await self._get_pool()
        try:
            updated = await pool.fetchval(
                """
                update creator_profiles p
                set
                  ingestion_status = $2,
                  last_ingestion_error = $3,
                  updated_at = now()
                where p.id = $1::uuid
                  and not exists (
                    select 1
                    from ingestion_jobs j
                    where j.creator_profile_id = p.id and j.status = 'processing'
                  )
                returning p.id::text
                """,
                profile_id,
                status.value,
                error,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc
        return updated is not None

    async def apply_profile_hints(
        self,
        profile_id: str,
        *,
        display_name: str | None,
        avatar_url: str | None,
    ) -> list[str]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"select {_PROFILE_COLUMNS} from creator_profiles where id = $1::uuid for update",
                        profile_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("creator profile not found")
                    profile = self._profile_row_to_record(row)
                    changes = profile_hint_changes(profile, display_name=display_name, avatar_url=avatar_url)
                    if not changes:
                        return []
                    await conn.execute(
                        """
                        update creator_profiles
                        set
                          display_name = coalesce($2, display_name),
                          avatar_url = coalesce($3, avatar_url),
                          updated_at = now()
                        where id = $1::uuid
                        """,
                        profile_id,
                        changes.get("display_name"),
                        changes.get("avatar_url"),
                    )
                    return sorted(changes)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc

    # Links

    async def list_links(self, profile_id: str) -> list[SocialLink]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_LINK_COLUMNS}
                from social_links
                where creator_profile_id = $1::uuid
                order by created_at asc, id asc
                """,
                profile_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc
        return [self._link_row_to_record(row) for row in rows]

    async def get_link(self, profile_id: str, link_id: str) -> SocialLink:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_LINK_COLUMNS}
                from social_links
                where id = $1::uuid and creator_profile_id = $2::uuid
                """,
                link_id,
                profile_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("link not found") from exc
        if not row:
            raise RepositoryNotFoundError("link not found")
        return self._link_row_to_record(row)

    async def apply_merge_plan(self, plan: MergePlan) -> None:
        """Write every insert and update of ``plan`` in one transaction."""
        if plan.is_empty:
            return
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for insert in plan.inserts:
                        await conn.execute(
                            """
                            insert into social_links (
                              creator_profile_id,
                              platform,
                              url,
                              state,
                              confidence,
                              source_type,
                              source_platform,
                              evidence,
                              display_text
                            )
                            values ($1::uuid, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
                            """,
                            insert.creator_profile_id,
                            insert.platform,
                            insert.url,
                            insert.state.value,
                            insert.confidence,
                            insert.source_type.value,
                            insert.source_platform,
                            json.dumps([record.to_json() for record in insert.evidence]),
                            insert.display_text,
                        )

                    for update in plan.updates:
                        updated_id = await conn.fetchval(
                            """
                            update social_links
                            set
                              state = $3,
                              confidence = $4,
                              evidence = $5::jsonb,
                              source_platform = coalesce(source_platform, $6),
                              display_text = coalesce(display_text, $7),
                              version = version + 1,
                              updated_at = now()
                            where id = $1::uuid and version = $2
                            returning id::text
                            """,
                            update.link_id,
                            update.expected_version,
                            update.state.value,
                            update.confidence,
                            json.dumps([record.to_json() for record in update.evidence]),
                            update.source_platform,
                            update.display_text,
                        )
                        if updated_id is None:
                            raise RepositoryConflictError(f"link {update.link_id} changed concurrently")
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("link already exists for canonical identity") from exc
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("creator profile not found") from exc

    async def _raise_job_transition_error(self, conn: asyncpg.Connection, job_id: str) -> None:
        status = await conn.fetchval("select status from ingestion_jobs where id = $1::uuid", job_id)
        if status is None:
            raise RepositoryNotFoundError("job not found")
        raise RepositoryConflictError(f"job is {status}, expected processing")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _job_row_to_record(cls, row: asyncpg.Record) -> IngestionJob:
        payload = JobPayload.from_json(cls._coerce_json_dict(row["payload"]))
        return IngestionJob(
            id=row["id"],
            job_type=row["job_type"],
            creator_profile_id=row["creator_profile_id"],
            payload=payload,
            status=JobStatus(row["status"]),
            dedup_key=row["dedup_key"],
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            priority=int(row["priority"]),
            run_at=row["run_at"],
            next_run_at=row["next_run_at"],
            source_host=cls._coerce_text(row["source_host"]),
            error=cls._coerce_text(row["error"]),
            error_kind=cls._coerce_text(row["error_kind"]),
            claimed_by=cls._coerce_text(row["claimed_by"]),
            claimed_at=row["claimed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _link_row_to_record(cls, row: asyncpg.Record) -> SocialLink:
        return SocialLink(
            id=row["id"],
            creator_profile_id=row["creator_profile_id"],
            platform=row["platform"],
            url=row["url"],
            state=LinkState(row["state"]),
            confidence=quantize_confidence(cls._coerce_decimal(row["confidence"])),
            source_type=SourceType(row["source_type"]),
            source_platform=cls._coerce_text(row["source_platform"]),
            evidence=[Evidence.from_json(item) for item in cls._coerce_json_list(row["evidence"])],
            display_text=cls._coerce_text(row["display_text"]),
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _profile_row_to_record(cls, row: asyncpg.Record) -> CreatorProfile:
        return CreatorProfile(
            id=row["id"],
            username_normalized=cls._coerce_text(row["username_normalized"]),
            display_name=cls._coerce_text(row["display_name"]),
            avatar_url=cls._coerce_text(row["avatar_url"]),
            display_name_locked=bool(row["display_name_locked"]),
            avatar_locked=bool(row["avatar_locked"]),
            ingestion_status=IngestionStatus(row["ingestion_status"]),
            last_ingestion_error=cls._coerce_text(row["last_ingestion_error"]),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_decimal(value: Any) -> Decimal:
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except (ArithmeticError, TypeError, ValueError):
            return Decimal("0")

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def profile_hint_changes(
    profile: CreatorProfile,
    *,
    display_name: str | None,
    avatar_url: str | None,
) -> dict[str, str]:
    """Hints only fill empty, unlocked profile fields."""
    changes: dict[str, str] = {}
    name = (display_name or "").strip()
    if name and not profile.display_name and not profile.display_name_locked:
        changes["display_name"] = name
    avatar = (avatar_url or "").strip()
    if avatar and not profile.avatar_url and not profile.avatar_locked:
        changes["avatar_url"] = avatar
    return changes


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
    )
