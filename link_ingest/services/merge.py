"""Reconcile extracted candidates with a creator's stored link set.

``plan_merge`` is pure: it turns the current links and one pass of candidates
into a ``MergePlan``. ``MergeEngine`` applies that plan in one repository
transaction and re-plans when a concurrent pass wins a uniqueness race.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from link_ingest.core.platforms import DetectedLink, detect
from link_ingest.services.models import (
    Evidence,
    LinkInsert,
    LinkState,
    LinkUpdate,
    MergePlan,
    SocialLink,
    SourceType,
    quantize_confidence,
    union_evidence,
    utcnow,
)
from link_ingest.services.repository import RepositoryConflictError
from link_ingest.services.scoring import ConfidenceScorer, ScoreCandidate

logger = logging.getLogger(__name__)

USER_ACCEPT_MIN_CONFIDENCE = 0.70
DECISION_SIGNALS = {
    LinkState.ACTIVE: "user_accept",
    LinkState.SUGGESTED: "user_reset",
    LinkState.REJECTED: "user_reject",
}


@dataclass(frozen=True, slots=True)
class MergeCandidate:
    url: str
    source: str
    signal: str
    title: str | None = None


@dataclass(slots=True)
class MergeResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    attempts: int = 1

    def summary(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "dropped": len(self.dropped),
        }


@dataclass(slots=True)
class _Collected:
    detected: DetectedLink
    source: str
    title: str | None
    evidence: list[Evidence]


def plan_merge(
    creator_profile_id: str,
    candidates: list[MergeCandidate],
    existing_links: list[SocialLink],
    *,
    scorer: ConfidenceScorer,
    known_handle: str | None = None,
    source_url: str | None = None,
    job_id: str | None = None,
    observed_at: datetime | None = None,
) -> tuple[MergePlan, MergeResult]:
    observed = observed_at or utcnow()
    plan = MergePlan(creator_profile_id=creator_profile_id)
    result = MergeResult()

    collected: dict[str, _Collected] = {}
    for candidate in candidates:
        detected = detect(candidate.url)
        if detected is None:
            result.dropped.append(candidate.url)
            continue
        record = Evidence(
            source=candidate.source,
            signal=candidate.signal,
            source_url=source_url,
            job_id=job_id,
            observed_at=observed,
        )
        entry = collected.get(detected.identity)
        if entry is None:
            collected[detected.identity] = _Collected(
                detected=detected,
                source=candidate.source,
                title=candidate.title,
                evidence=[record],
            )
        else:
            entry.evidence = union_evidence(entry.evidence, [record])
            entry.title = entry.title or candidate.title

    existing_by_identity = {link.identity: link for link in existing_links}
    pass_identities_by_platform: dict[str, set[str]] = {}
    for identity, entry in collected.items():
        pass_identities_by_platform.setdefault(entry.detected.platform, set()).add(identity)
    stored_urls_by_platform: dict[str, set[str]] = {}
    for link in existing_links:
        if link.state != LinkState.REJECTED:
            stored_urls_by_platform.setdefault(link.platform, set()).add(link.url)

    for identity, entry in collected.items():
        detected = entry.detected
        ambiguous = not detected.multi_valued and (
            len(pass_identities_by_platform[detected.platform]) > 1
            or bool(stored_urls_by_platform.get(detected.platform, set()) - {detected.canonical_url})
        )
        existing = existing_by_identity.get(identity)

        if existing is None:
            scored = scorer.score(
                ScoreCandidate(
                    source_type=SourceType.INGESTED,
                    source_platform=entry.source,
                    handle=detected.handle,
                    evidence=entry.evidence,
                ),
                [],
                known_handle=known_handle,
            )
            plan.inserts.append(
                LinkInsert(
                    creator_profile_id=creator_profile_id,
                    platform=detected.platform,
                    url=detected.canonical_url,
                    state=scorer.derive_state(scored.confidence, ambiguous=ambiguous),
                    confidence=scored.confidence,
                    source_platform=entry.source,
                    evidence=scored.evidence,
                    display_text=entry.title,
                )
            )
            result.created.append(identity)
            continue

        if _is_authoritative(existing):
            # Manual, admin and user-decided links only collect corroborating evidence.
            evidence = union_evidence(existing.evidence, entry.evidence)
            if len(evidence) == len(existing.evidence):
                result.unchanged.append(identity)
                continue
            plan.updates.append(
                LinkUpdate(
                    link_id=existing.id,
                    expected_version=existing.version,
                    state=existing.state,
                    confidence=existing.confidence,
                    evidence=evidence,
                    source_platform=entry.source,
                    display_text=entry.title,
                )
            )
            result.updated.append(identity)
            continue

        scored = scorer.score(
            ScoreCandidate(
                source_type=SourceType.INGESTED,
                source_platform=existing.source_platform or entry.source,
                handle=detected.handle,
                evidence=entry.evidence,
            ),
            existing.evidence,
            known_handle=known_handle,
            existing_confidence=existing.confidence,
        )
        state = scorer.derive_state(scored.confidence, ambiguous=ambiguous)
        if (
            state == existing.state
            and scored.confidence == existing.confidence
            and len(scored.evidence) == len(existing.evidence)
        ):
            result.unchanged.append(identity)
            continue
        plan.updates.append(
            LinkUpdate(
                link_id=existing.id,
                expected_version=existing.version,
                state=state,
                confidence=scored.confidence,
                evidence=scored.evidence,
                source_platform=entry.source,
                display_text=entry.title,
            )
        )
        result.updated.append(identity)

    plan.unchanged = list(result.unchanged)
    return plan, result


class MergeEngine:
    def __init__(self, repository, scorer: ConfidenceScorer | None = None, *, conflict_retries: int = 3) -> None:
        self.repository = repository
        self.scorer = scorer or ConfidenceScorer()
        self.conflict_retries = max(0, conflict_retries)

    async def merge(
        self,
        creator_profile_id: str,
        candidates: list[MergeCandidate],
        *,
        source_url: str | None = None,
        job_id: str | None = None,
    ) -> MergeResult:
        profile = await self.repository.get_profile(creator_profile_id)
        attempt = 0
        while True:
            attempt += 1
            existing = await self.repository.list_links(creator_profile_id)
            plan, result = plan_merge(
                creator_profile_id,
                candidates,
                existing,
                scorer=self.scorer,
                known_handle=profile.username_normalized,
                source_url=source_url,
                job_id=job_id,
            )
            result.attempts = attempt
            try:
                await self.repository.apply_merge_plan(plan)
            except RepositoryConflictError as exc:
                if attempt > self.conflict_retries:
                    raise
                logger.info(
                    "merge conflict, re-planning profile_id=%s attempt=%s reason=%s",
                    creator_profile_id,
                    attempt,
                    exc,
                )
                continue

            logger.info(
                "merge applied profile_id=%s job_id=%s created=%s updated=%s unchanged=%s dropped=%s",
                creator_profile_id,
                job_id,
                len(result.created),
                len(result.updated),
                len(result.unchanged),
                len(result.dropped),
            )
            return result

    async def set_link_state(
        self,
        creator_profile_id: str,
        link_id: str,
        state: LinkState,
        *,
        actor: SourceType = SourceType.MANUAL,
    ) -> SocialLink:
        """Apply an explicit accept/reject decision; the only way a link becomes ``rejected``."""
        link = await self.repository.get_link(creator_profile_id, link_id)
        confidence = link.confidence
        if state == LinkState.ACTIVE:
            confidence = max(confidence, quantize_confidence(USER_ACCEPT_MIN_CONFIDENCE))
        decision = Evidence(source=actor.value, signal=DECISION_SIGNALS[state])
        evidence = union_evidence(link.evidence, [decision])

        plan = MergePlan(
            creator_profile_id=creator_profile_id,
            updates=[
                LinkUpdate(
                    link_id=link.id,
                    expected_version=link.version,
                    state=state,
                    confidence=confidence,
                    evidence=evidence,
                )
            ],
        )
        await self.repository.apply_merge_plan(plan)
        logger.info(
            "link state set profile_id=%s link_id=%s state=%s actor=%s",
            creator_profile_id,
            link_id,
            state.value,
            actor.value,
        )
        return await self.repository.get_link(creator_profile_id, link_id)


def _is_authoritative(link: SocialLink) -> bool:
    if link.source_type != SourceType.INGESTED or link.state == LinkState.REJECTED:
        return True
    return any(record.signal == DECISION_SIGNALS[LinkState.ACTIVE] for record in link.evidence)
