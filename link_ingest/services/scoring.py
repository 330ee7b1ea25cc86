from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Mapping

from link_ingest.core.config import Settings
from link_ingest.services.models import (
    Evidence,
    LinkState,
    SourceType,
    distinct_sources,
    quantize_confidence,
    union_evidence,
)

HANDLE_MATCH_SIGNAL = "handle_match"


@dataclass(frozen=True, slots=True)
class ScoringConfig:
    base_manual: float = 0.60
    base_admin: float = 0.50
    base_ingested: float = 0.20
    base_ingested_by_strategy: Mapping[str, float] = field(default_factory=dict)
    handle_bonus_min: float = 0.10
    handle_bonus_max: float = 0.20
    handle_min_similarity: float = 0.60
    corroboration_bonus: float = 0.15
    active_threshold: float = 0.70

    @classmethod
    def from_settings(cls, settings: Settings) -> ScoringConfig:
        return cls(
            base_manual=settings.score_base_manual,
            base_admin=settings.score_base_admin,
            base_ingested=settings.score_base_ingested,
            base_ingested_by_strategy=dict(settings.score_base_ingested_by_strategy),
            handle_bonus_min=settings.score_handle_bonus_min,
            handle_bonus_max=settings.score_handle_bonus_max,
            handle_min_similarity=settings.score_handle_min_similarity,
            corroboration_bonus=settings.score_corroboration_bonus,
            active_threshold=settings.score_active_threshold,
        )


@dataclass(slots=True)
class ScoreCandidate:
    source_type: SourceType
    source_platform: str | None
    handle: str | None
    evidence: list[Evidence]


@dataclass(slots=True)
class ScoredLink:
    confidence: Decimal
    evidence: list[Evidence]
    components: dict[str, float]


class ConfidenceScorer:
    def __init__(self, config: ScoringConfig | None = None) -> None:
        self.config = config or ScoringConfig()

    def base_for(self, source_type: SourceType, source_platform: str | None = None) -> float:
        if source_type == SourceType.MANUAL:
            return self.config.base_manual
        if source_type == SourceType.ADMIN:
            return self.config.base_admin
        if source_platform and source_platform in self.config.base_ingested_by_strategy:
            return self.config.base_ingested_by_strategy[source_platform]
        return self.config.base_ingested

    def handle_bonus(self, handle: str | None, known_handle: str | None) -> tuple[float, float]:
        """Return ``(bonus, similarity)``; below the minimum similarity there is no bonus."""
        if not handle or not known_handle:
            return 0.0, 0.0
        similarity = SequenceMatcher(None, handle.lower(), known_handle.lower()).ratio()
        floor = self.config.handle_min_similarity
        if similarity < floor:
            return 0.0, similarity
        span = 1.0 - floor
        scale = (similarity - floor) / span if span > 0 else 1.0
        bonus = self.config.handle_bonus_min + (self.config.handle_bonus_max - self.config.handle_bonus_min) * scale
        return bonus, similarity

    def score(
        self,
        candidate: ScoreCandidate,
        existing_evidence: list[Evidence],
        *,
        known_handle: str | None = None,
        existing_confidence: Decimal | None = None,
    ) -> ScoredLink:
        incoming = list(candidate.evidence)
        base = self.base_for(candidate.source_type, candidate.source_platform)
        bonus, similarity = self.handle_bonus(candidate.handle, known_handle)
        if bonus > 0 and incoming:
            first = incoming[0]
            incoming.append(
                Evidence(
                    source=first.source,
                    signal=HANDLE_MATCH_SIGNAL,
                    source_url=first.source_url,
                    job_id=first.job_id,
                    observed_at=first.observed_at,
                )
            )

        evidence = union_evidence(existing_evidence, incoming)
        sources = distinct_sources(evidence)
        corroboration = self.config.corroboration_bonus * max(0, len(sources) - 1)

        total = min(1.0, base + bonus + corroboration)
        confidence = quantize_confidence(total)
        if existing_confidence is not None and existing_confidence > confidence:
            confidence = existing_confidence

        return ScoredLink(
            confidence=confidence,
            evidence=evidence,
            components={
                "base": round(base, 4),
                "handle_similarity": round(similarity, 4),
                "handle_bonus": round(bonus, 4),
                "corroboration": round(corroboration, 4),
            },
        )

    def derive_state(self, confidence: Decimal, *, ambiguous: bool) -> LinkState:
        """Scoring never yields ``rejected``; only an explicit decision does."""
        if not ambiguous and confidence >= quantize_confidence(self.config.active_threshold):
            return LinkState.ACTIVE
        return LinkState.SUGGESTED
