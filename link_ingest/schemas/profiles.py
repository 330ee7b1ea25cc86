from datetime import datetime

from pydantic import Field

from link_ingest.schemas.jobs import CamelModel, EnqueueJobOut
from link_ingest.services.models import CreatorProfile, IngestionStatus


class ProfileOut(CamelModel):
    id: str
    username_normalized: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    ingestion_status: IngestionStatus
    last_ingestion_error: str | None = None
    updated_at: datetime

    @classmethod
    def from_profile(cls, profile: CreatorProfile) -> "ProfileOut":
        return cls(
            id=profile.id,
            username_normalized=profile.username_normalized,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            ingestion_status=profile.ingestion_status,
            last_ingestion_error=profile.last_ingestion_error,
            updated_at=profile.updated_at,
        )


class RerunRequest(CamelModel):
    """Without ``sourceUrl`` every stored hub link of the profile is re-imported."""

    source_url: str | None = Field(default=None, max_length=2048)
    priority: int = Field(default=0, ge=-100, le=100)


class RerunOut(CamelModel):
    profile: ProfileOut
    jobs: list[EnqueueJobOut] = Field(default_factory=list)
