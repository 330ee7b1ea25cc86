from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

CONFIDENCE_QUANTUM = Decimal("0.01")


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


NON_TERMINAL_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class LinkState(str, Enum):
    ACTIVE = "active"
    SUGGESTED = "suggested"
    REJECTED = "rejected"


class SourceType(str, Enum):
    MANUAL = "manual"
    ADMIN = "admin"
    INGESTED = "ingested"


class IngestionStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_confidence(value: float | Decimal) -> Decimal:
    bounded = min(max(Decimal(str(value)), Decimal("0")), Decimal("1"))
    return bounded.quantize(CONFIDENCE_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class JobPayload:
    source_url: str
    creator_profile_id: str
    depth: int = 0
    strategy_options: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sourceUrl": self.source_url,
            "creatorProfileId": self.creator_profile_id,
            "depth": self.depth,
        }
        if self.strategy_options:
            payload["strategyOptions"] = dict(self.strategy_options)
        return payload

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> JobPayload:
        options = raw.get("strategyOptions")
        try:
            depth = int(raw.get("depth") or 0)
        except (TypeError, ValueError):
            depth = 0
        return cls(
            source_url=str(raw.get("sourceUrl") or ""),
            creator_profile_id=str(raw.get("creatorProfileId") or ""),
            depth=max(0, depth),
            strategy_options=options if isinstance(options, dict) else {},
        )


@dataclass(slots=True)
class IngestionJob:
    id: str
    job_type: str
    creator_profile_id: str
    payload: JobPayload
    status: JobStatus
    dedup_key: str
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    run_at: datetime = field(default_factory=utcnow)
    next_run_at: datetime | None = None
    source_host: str | None = None
    error: str | None = None
    error_kind: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def depth(self) -> int:
        return self.payload.depth

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass(frozen=True, slots=True)
class Evidence:
    """One immutable signal that contributed to a link's confidence."""

    source: str
    signal: str
    source_url: str | None = None
    job_id: str | None = None
    observed_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.source, self.signal, self.source_url)

    def to_json(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "signal": self.signal,
            "source_url": self.source_url,
            "job_id": self.job_id,
            "observed_at": self.observed_at.isoformat(),
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> Evidence:
        observed_at = raw.get("observed_at")
        parsed_at = utcnow()
        if isinstance(observed_at, datetime):
            parsed_at = observed_at
        elif isinstance(observed_at, str) and observed_at.strip():
            try:
                parsed_at = datetime.fromisoformat(observed_at.strip().replace("Z", "+00:00"))
            except ValueError:
                parsed_at = utcnow()
        return cls(
            source=str(raw.get("source") or "unknown"),
            signal=str(raw.get("signal") or "unknown"),
            source_url=raw.get("source_url") if isinstance(raw.get("source_url"), str) else None,
            job_id=raw.get("job_id") if isinstance(raw.get("job_id"), str) else None,
            observed_at=parsed_at,
        )


def union_evidence(existing: list[Evidence], incoming: list[Evidence]) -> list[Evidence]:
    """Append incoming records whose key is not already present, keeping order."""
    merged = list(existing)
    seen = {record.key for record in existing}
    for record in incoming:
        if record.key in seen:
            continue
        seen.add(record.key)
        merged.append(record)
    return merged


def distinct_sources(evidence: list[Evidence]) -> set[str]:
    return {record.source for record in evidence}


@dataclass(slots=True)
class SocialLink:
    id: str
    creator_profile_id: str
    platform: str
    url: str
    state: LinkState
    confidence: Decimal
    source_type: SourceType
    source_platform: str | None = None
    evidence: list[Evidence] = field(default_factory=list)
    display_text: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def identity(self) -> str:
        return f"{self.platform}:{self.url}"


@dataclass(slots=True)
class CreatorProfile:
    id: str
    username_normalized: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    display_name_locked: bool = False
    avatar_locked: bool = False
    ingestion_status: IngestionStatus = IngestionStatus.IDLE
    last_ingestion_error: str | None = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class EnqueueResult:
    job_id: str
    created: bool
    dedup_key: str
    job_type: str


@dataclass(slots=True)
class LinkInsert:
    creator_profile_id: str
    platform: str
    url: str
    state: LinkState
    confidence: Decimal
    source_platform: str | None
    evidence: list[Evidence]
    display_text: str | None = None
    source_type: SourceType = SourceType.INGESTED


@dataclass(slots=True)
class LinkUpdate:
    link_id: str
    expected_version: int
    state: LinkState
    confidence: Decimal
    evidence: list[Evidence]
    source_platform: str | None = None
    display_text: str | None = None


@dataclass(slots=True)
class MergePlan:
    creator_profile_id: str
    inserts: list[LinkInsert] = field(default_factory=list)
    updates: list[LinkUpdate] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.inserts and not self.updates
