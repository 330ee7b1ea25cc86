import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from link_ingest.api.deps import get_job_queue, get_merge_engine
from link_ingest.core.auth import INGESTION_READ, INGESTION_WRITE, LINKS_WRITE, Principal
from link_ingest.core.security import get_admin_principal, require_scopes
from link_ingest.schemas.jobs import EnqueueJobOut, EnqueueJobRequest, JobOut, ReapStaleOut
from link_ingest.schemas.links import LinkStateRequest, SocialLinkOut
from link_ingest.schemas.profiles import ProfileOut, RerunOut, RerunRequest
from link_ingest.services.merge import MergeEngine
from link_ingest.services.models import EnqueueResult, IngestionStatus, JobPayload, JobStatus, LinkState, SourceType
from link_ingest.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from link_ingest.services.scheduler import JobQueue
from link_ingest.strategies.registry import resolve_strategy

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/jobs", response_model=EnqueueJobOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_ingestion_job(
    payload: EnqueueJobRequest,
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
    queue: JobQueue = Depends(get_job_queue),
) -> EnqueueJobOut:
    require_scopes(principal, {INGESTION_WRITE})

    try:
        await repository.get_profile(payload.creator_profile_id)
        result = await _enqueue_source(queue, payload.creator_profile_id, payload.source_url, payload.priority)
        await repository.release_profile_status(payload.creator_profile_id, IngestionStatus.PENDING)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    logger.info(
        "ingestion job requested job_id=%s profile_id=%s created=%s actor=%s",
        result.job_id,
        payload.creator_profile_id,
        result.created,
        principal.subject,
    )
    return EnqueueJobOut(
        job_id=result.job_id,
        created=result.created,
        job_type=result.job_type,
        dedup_key=result.dedup_key,
    )


@router.get("/jobs", response_model=list[JobOut])
async def list_ingestion_jobs(
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    creator_profile_id: str | None = Query(default=None, alias="creatorProfileId"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    require_scopes(principal, {INGESTION_READ})

    try:
        jobs = await repository.list_jobs(
            status=job_status,
            creator_profile_id=creator_profile_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobOut.from_job(job) for job in jobs]


@router.post("/jobs/reap-stale", response_model=ReapStaleOut)
async def reap_stale_jobs(
    principal: Principal = Depends(get_admin_principal),
    queue: JobQueue = Depends(get_job_queue),
    limit: int = Query(default=50, ge=1, le=1000),
) -> ReapStaleOut:
    require_scopes(principal, {INGESTION_WRITE})

    try:
        jobs = await queue.requeue_stale_jobs(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ReapStaleOut(requeued=[JobOut.from_job(job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobOut)
async def get_ingestion_job(
    job_id: str,
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
) -> JobOut:
    require_scopes(principal, {INGESTION_READ})

    try:
        job = await repository.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return JobOut.from_job(job)


@router.post("/jobs/{job_id}/retry", response_model=JobOut)
async def retry_ingestion_job(
    job_id: str,
    principal: Principal = Depends(get_admin_principal),
    queue: JobQueue = Depends(get_job_queue),
) -> JobOut:
    require_scopes(principal, {INGESTION_WRITE})

    try:
        job = await queue.reset_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return JobOut.from_job(job)


@router.get("/profiles/{profile_id}", response_model=ProfileOut)
async def get_ingestion_profile(
    profile_id: str,
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
) -> ProfileOut:
    require_scopes(principal, {INGESTION_READ})

    try:
        profile = await repository.get_profile(profile_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return ProfileOut.from_profile(profile)


@router.post("/profiles/{profile_id}/rerun", response_model=RerunOut, status_code=status.HTTP_202_ACCEPTED)
async def rerun_profile_ingestion(
    profile_id: str,
    payload: RerunRequest | None = None,
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
    queue: JobQueue = Depends(get_job_queue),
) -> RerunOut:
    require_scopes(principal, {INGESTION_WRITE})
    payload = payload or RerunRequest()

    try:
        await repository.get_profile(profile_id)
        if payload.source_url:
            sources = [payload.source_url]
        else:
            links = await repository.list_links(profile_id)
            sources = [
                link.url
                for link in links
                if link.state != LinkState.REJECTED and resolve_strategy(link.url) is not None
            ]
        if not sources:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="profile has no importable source links",
            )

        results = [await _enqueue_source(queue, profile_id, source, payload.priority) for source in sources]
        await repository.release_profile_status(profile_id, IngestionStatus.PENDING)
        profile = await repository.get_profile(profile_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    logger.info(
        "ingestion rerun requested profile_id=%s jobs=%s actor=%s",
        profile_id,
        len(results),
        principal.subject,
    )
    return RerunOut(
        profile=ProfileOut.from_profile(profile),
        jobs=[
            EnqueueJobOut(
                job_id=result.job_id,
                created=result.created,
                job_type=result.job_type,
                dedup_key=result.dedup_key,
            )
            for result in results
        ],
    )


@router.get("/profiles/{profile_id}/links", response_model=list[SocialLinkOut])
async def list_profile_links(
    profile_id: str,
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
) -> list[SocialLinkOut]:
    require_scopes(principal, {INGESTION_READ})

    try:
        await repository.get_profile(profile_id)
        links = await repository.list_links(profile_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [SocialLinkOut.from_link(link) for link in links]


@router.post("/profiles/{profile_id}/links/{link_id}/state", response_model=SocialLinkOut)
async def set_profile_link_state(
    profile_id: str,
    link_id: str,
    payload: LinkStateRequest,
    principal: Principal = Depends(get_admin_principal),
    merge_engine: MergeEngine = Depends(get_merge_engine),
) -> SocialLinkOut:
    require_scopes(principal, {LINKS_WRITE})

    try:
        link = await merge_engine.set_link_state(
            profile_id,
            link_id,
            LinkState(payload.state),
            actor=SourceType(payload.actor),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return SocialLinkOut.from_link(link)


async def _enqueue_source(queue: JobQueue, profile_id: str, source_url: str, priority: int) -> EnqueueResult:
    strategy = resolve_strategy(source_url)
    if strategy is None:
        raise RepositoryValidationError(f"{source_url!r} is not a supported ingestion source")
    return await queue.enqueue(
        strategy.kind.value,
        profile_id,
        JobPayload(source_url=source_url, creator_profile_id=profile_id),
        priority=priority,
    )
