from __future__ import annotations

import pytest

from link_ingest.services.models import CreatorProfile
from link_ingest.services.store import InMemoryRepository

PROFILE_ID = "11111111-1111-1111-1111-111111111111"
OTHER_PROFILE_ID = "22222222-2222-2222-2222-222222222222"


@pytest.fixture
def repository() -> InMemoryRepository:
    repo = InMemoryRepository(job_max_attempts=3)
    repo.add_profile(CreatorProfile(id=PROFILE_ID, username_normalized="artist"))
    repo.add_profile(CreatorProfile(id=OTHER_PROFILE_ID, username_normalized="someone"))
    return repo
