from fastapi import Depends

from link_ingest.core.config import Settings, get_settings
from link_ingest.services.merge import MergeEngine
from link_ingest.services.repository import get_repository
from link_ingest.services.scheduler import JobQueue
from link_ingest.services.scoring import ConfidenceScorer, ScoringConfig


def get_job_queue(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> JobQueue:
    return JobQueue.from_settings(repository, settings)


def get_merge_engine(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> MergeEngine:
    return MergeEngine(
        repository,
        ConfidenceScorer(ScoringConfig.from_settings(settings)),
        conflict_retries=settings.merge_conflict_retries,
    )
