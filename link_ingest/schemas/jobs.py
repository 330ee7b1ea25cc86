from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from link_ingest.services.models import IngestionJob, JobPayload, JobStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobPayloadModel(CamelModel):
    source_url: str
    creator_profile_id: str
    depth: int = Field(default=0, ge=0)
    strategy_options: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: JobPayload) -> "JobPayloadModel":
        return cls(
            source_url=payload.source_url,
            creator_profile_id=payload.creator_profile_id,
            depth=payload.depth,
            strategy_options=dict(payload.strategy_options),
        )


class EnqueueJobRequest(CamelModel):
    creator_profile_id: str = Field(min_length=1)
    source_url: str = Field(min_length=1, max_length=2048)
    priority: int = Field(default=0, ge=-100, le=100)


class EnqueueJobOut(CamelModel):
    job_id: str
    created: bool
    job_type: str
    dedup_key: str


class JobOut(CamelModel):
    id: str
    job_type: str
    creator_profile_id: str
    payload: JobPayloadModel
    status: JobStatus
    attempts: int
    max_attempts: int
    priority: int
    run_at: datetime
    source_host: str | None = None
    error: str | None = None
    error_kind: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: IngestionJob) -> "JobOut":
        return cls(
            id=job.id,
            job_type=job.job_type,
            creator_profile_id=job.creator_profile_id,
            payload=JobPayloadModel.from_payload(job.payload),
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            priority=job.priority,
            run_at=job.run_at,
            source_host=job.source_host,
            error=job.error,
            error_kind=job.error_kind,
            claimed_by=job.claimed_by,
            claimed_at=job.claimed_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class ReapStaleOut(CamelModel):
    requeued: list[JobOut] = Field(default_factory=list)
