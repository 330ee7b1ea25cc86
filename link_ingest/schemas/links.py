from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field

from link_ingest.schemas.jobs import CamelModel
from link_ingest.services.models import Evidence, LinkState, SocialLink, SourceType


class EvidenceOut(CamelModel):
    source: str
    signal: str
    source_url: str | None = None
    job_id: str | None = None
    observed_at: datetime

    @classmethod
    def from_evidence(cls, record: Evidence) -> "EvidenceOut":
        return cls(
            source=record.source,
            signal=record.signal,
            source_url=record.source_url,
            job_id=record.job_id,
            observed_at=record.observed_at,
        )


class SocialLinkOut(CamelModel):
    id: str
    creator_profile_id: str
    platform: str
    url: str
    state: LinkState
    confidence: Decimal
    source_type: SourceType
    source_platform: str | None = None
    display_text: str | None = None
    evidence: list[EvidenceOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_link(cls, link: SocialLink) -> "SocialLinkOut":
        return cls(
            id=link.id,
            creator_profile_id=link.creator_profile_id,
            platform=link.platform,
            url=link.url,
            state=link.state,
            confidence=link.confidence,
            source_type=link.source_type,
            source_platform=link.source_platform,
            display_text=link.display_text,
            evidence=[EvidenceOut.from_evidence(record) for record in link.evidence],
            created_at=link.created_at,
            updated_at=link.updated_at,
        )


class LinkStateRequest(CamelModel):
    state: Literal["active", "rejected", "suggested"]
    actor: Literal["manual", "admin"] = "admin"
