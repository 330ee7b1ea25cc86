from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from link_ingest.services.merge import MergeCandidate, MergeEngine, plan_merge
from link_ingest.services.models import CreatorProfile, Evidence, LinkState, SocialLink, SourceType
from link_ingest.services.repository import RepositoryConflictError
from link_ingest.services.scoring import ConfidenceScorer, ScoringConfig
from link_ingest.services.store import InMemoryRepository

from conftest import PROFILE_ID

LINKTREE_URL = "https://linktr.ee/artist"
BEACONS_URL = "https://beacons.ai/artist"
YOUTUBE_URL = "https://youtube.com/@artist"


def _candidates(source: str = "import_linktree") -> list[MergeCandidate]:
    return [
        MergeCandidate(url="https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb", source=source, signal="profile_link"),
        MergeCandidate(url="https://www.instagram.com/Artist/", source=source, signal="social_link", title="Instagram"),
    ]


def _link(**overrides: object) -> SocialLink:
    values: dict[str, object] = {
        "id": "link-1",
        "creator_profile_id": PROFILE_ID,
        "platform": "instagram",
        "url": "https://instagram.com/artist",
        "state": LinkState.ACTIVE,
        "confidence": Decimal("0.60"),
        "source_type": SourceType.MANUAL,
        "evidence": [Evidence(source="manual", signal="user_added")],
    }
    values.update(overrides)
    return SocialLink(**values)  # type: ignore[arg-type]


def test_plan_merge_collapses_equivalent_urls_within_a_pass() -> None:
    plan, result = plan_merge(
        PROFILE_ID,
        [
            MergeCandidate(url="https://Example.com/Artist/", source="import_linktree", signal="linktree_profile_link"),
            MergeCandidate(url="https://example.com/artist", source="import_linktree", signal="linktree_social_link"),
            MergeCandidate(url="javascript:alert(1)", source="import_linktree", signal="linktree_profile_link"),
        ],
        [],
        scorer=ConfidenceScorer(),
        source_url=LINKTREE_URL,
    )

    assert len(plan.inserts) == 1
    insert = plan.inserts[0]
    assert insert.url == "https://example.com/artist"
    assert insert.platform == "website"
    assert insert.source_type == SourceType.INGESTED
    assert [record.signal for record in insert.evidence] == ["linktree_profile_link", "linktree_social_link"]
    assert result.created == ["website:https://example.com/artist"]
    assert result.dropped == ["javascript:alert(1)"]


def test_merge_is_idempotent(repository: InMemoryRepository) -> None:
    engine = MergeEngine(repository)

    first = asyncio.run(engine.merge(PROFILE_ID, _candidates(), source_url=LINKTREE_URL, job_id="job-1"))
    second = asyncio.run(engine.merge(PROFILE_ID, _candidates(), source_url=LINKTREE_URL, job_id="job-2"))

    assert len(first.created) == 2
    assert second.created == []
    assert second.updated == []
    assert len(second.unchanged) == 2
    assert len(asyncio.run(repository.list_links(PROFILE_ID))) == 2


def test_handle_match_and_display_text_are_recorded(repository: InMemoryRepository) -> None:
    asyncio.run(MergeEngine(repository).merge(PROFILE_ID, _candidates(), source_url=LINKTREE_URL))

    links = {link.platform: link for link in asyncio.run(repository.list_links(PROFILE_ID))}
    instagram = links["instagram"]
    assert instagram.url == "https://instagram.com/artist"
    assert instagram.confidence == Decimal("0.40")
    assert instagram.state == LinkState.SUGGESTED
    assert instagram.display_text == "Instagram"
    assert "handle_match" in {record.signal for record in instagram.evidence}
    assert links["spotify"].confidence == Decimal("0.20")


def test_manual_links_keep_state_and_confidence(repository: InMemoryRepository) -> None:
    repository.add_link(_link())
    result = asyncio.run(MergeEngine(repository).merge(PROFILE_ID, _candidates(), source_url=LINKTREE_URL))

    link = asyncio.run(repository.get_link(PROFILE_ID, "link-1"))
    assert result.updated == ["instagram:https://instagram.com/artist"]
    assert link.state == LinkState.ACTIVE
    assert link.confidence == Decimal("0.60")
    assert link.source_type == SourceType.MANUAL
    assert [record.source for record in link.evidence] == ["manual", "import_linktree"]


def test_rejected_links_stay_rejected(repository: InMemoryRepository) -> None:
    repository.add_link(
        _link(
            state=LinkState.REJECTED,
            confidence=Decimal("0.40"),
            source_type=SourceType.INGESTED,
            evidence=[Evidence(source="import_linktree", signal="social_link", source_url=LINKTREE_URL)],
        )
    )
    engine = MergeEngine(repository)
    asyncio.run(engine.merge(PROFILE_ID, _candidates("import_beacons"), source_url=BEACONS_URL))
    asyncio.run(engine.merge(PROFILE_ID, _candidates("import_youtube"), source_url=YOUTUBE_URL))

    link = asyncio.run(repository.get_link(PROFILE_ID, "link-1"))
    assert link.state == LinkState.REJECTED
    assert link.confidence == Decimal("0.40")
    assert {record.source for record in link.evidence} == {"import_linktree", "import_beacons", "import_youtube"}


def test_corroborated_link_becomes_active(repository: InMemoryRepository) -> None:
    engine = MergeEngine(repository)
    asyncio.run(engine.merge(PROFILE_ID, _candidates("import_linktree"), source_url=LINKTREE_URL))
    asyncio.run(engine.merge(PROFILE_ID, _candidates("import_beacons"), source_url=BEACONS_URL))
    asyncio.run(engine.merge(PROFILE_ID, _candidates("import_youtube"), source_url=YOUTUBE_URL))

    links = {link.platform: link for link in asyncio.run(repository.list_links(PROFILE_ID))}
    assert links["instagram"].confidence == Decimal("0.70")
    assert links["instagram"].state == LinkState.ACTIVE
    assert links["spotify"].confidence == Decimal("0.50")
    assert links["spotify"].state == LinkState.SUGGESTED


def test_ambiguous_single_valued_platform_is_suggested() -> None:
    scorer = ConfidenceScorer(ScoringConfig(base_ingested=0.80))
    single, _ = plan_merge(
        PROFILE_ID,
        [MergeCandidate(url="https://instagram.com/artist", source="import_linktree", signal="social_link")],
        [],
        scorer=scorer,
    )
    double, _ = plan_merge(
        PROFILE_ID,
        [
            MergeCandidate(url="https://instagram.com/artist", source="import_linktree", signal="social_link"),
            MergeCandidate(url="https://instagram.com/artist_backup", source="import_linktree", signal="social_link"),
        ],
        [],
        scorer=scorer,
    )
    against_stored, _ = plan_merge(
        PROFILE_ID,
        [MergeCandidate(url="https://instagram.com/artist_backup", source="import_linktree", signal="social_link")],
        [_link()],
        scorer=scorer,
    )
    websites, _ = plan_merge(
        PROFILE_ID,
        [
            MergeCandidate(url="https://artist-merch.com", source="import_linktree", signal="profile_link"),
            MergeCandidate(url="https://artist-tour.com", source="import_linktree", signal="profile_link"),
        ],
        [],
        scorer=scorer,
    )

    assert [insert.state for insert in single.inserts] == [LinkState.ACTIVE]
    assert [insert.state for insert in double.inserts] == [LinkState.SUGGESTED, LinkState.SUGGESTED]
    assert [insert.state for insert in against_stored.inserts] == [LinkState.SUGGESTED]
    assert [insert.state for insert in websites.inserts] == [LinkState.ACTIVE, LinkState.ACTIVE]


def test_accept_and_reject_decisions(repository: InMemoryRepository) -> None:
    engine = MergeEngine(repository)
    asyncio.run(engine.merge(PROFILE_ID, _candidates(), source_url=LINKTREE_URL))
    instagram = next(link for link in asyncio.run(repository.list_links(PROFILE_ID)) if link.platform == "instagram")

    accepted = asyncio.run(engine.set_link_state(PROFILE_ID, instagram.id, LinkState.ACTIVE))
    assert accepted.state == LinkState.ACTIVE
    assert accepted.confidence == Decimal("0.70")
    assert accepted.evidence[-1].signal == "user_accept"

    # A later ambiguous pass does not demote an accepted link.
    asyncio.run(
        engine.merge(
            PROFILE_ID,
            _candidates("import_beacons")
            + [MergeCandidate(url="https://instagram.com/artist_backup", source="import_beacons", signal="social_link")],
            source_url=BEACONS_URL,
        )
    )
    assert asyncio.run(repository.get_link(PROFILE_ID, instagram.id)).state == LinkState.ACTIVE

    rejected = asyncio.run(engine.set_link_state(PROFILE_ID, instagram.id, LinkState.REJECTED, actor=SourceType.ADMIN))
    assert rejected.state == LinkState.REJECTED
    assert rejected.confidence == Decimal("0.70")
    assert rejected.evidence[-1].source == "admin"


class FlakyRepository(InMemoryRepository):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def apply_merge_plan(self, plan) -> None:
        if self.failures:
            self.failures -= 1
            raise RepositoryConflictError("link already exists for canonical identity")
        await super().apply_merge_plan(plan)


def test_merge_replans_after_conflict() -> None:
    repository = FlakyRepository(failures=1)
    repository.add_profile(CreatorProfile(id=PROFILE_ID, username_normalized="artist"))

    result = asyncio.run(MergeEngine(repository).merge(PROFILE_ID, _candidates(), source_url=LINKTREE_URL))

    assert result.attempts == 2
    assert len(result.created) == 2


def test_merge_gives_up_after_conflict_retries() -> None:
    repository = FlakyRepository(failures=5)
    repository.add_profile(CreatorProfile(id=PROFILE_ID, username_normalized="artist"))

    with pytest.raises(RepositoryConflictError):
        asyncio.run(MergeEngine(repository, conflict_retries=1).merge(PROFILE_ID, _candidates()))
