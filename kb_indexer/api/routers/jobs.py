import logging
from typing import Callable
from fastapi import APIRouter, Depends, HTTPException, status

from kb_indexer.config import settings
from kb_indexer.core.fetcher import ContentFetcher
from kb_indexer.core.site_crawler import build_site_crawler
from kb_indexer.dependencies import get_fetcher_factory, get_indexing_service, get_request_context
from kb_indexer.exceptions import InvalidJobStateError, JobNotFoundError, PersistenceError
from kb_indexer.models.job import IndexingJob, TaskSpec
from kb_indexer.models.schemas import (
    CreateJobRequest,
    CreateJobResponse,
    JobStatusResponse,
    TaskStatusResponse,
    ChatbotIndexingStatusResponse,
)
from kb_indexer.services.indexing_service import IndexingJobService
from kb_indexer.utils.logger import get_request_logger

logger = logging.getLogger(__name__)
router = APIRouter()


def _job_response(job: IndexingJob, tasks) -> JobStatusResponse:
    return JobStatusResponse(
        **job.model_dump(exclude={"last_heartbeat"}),
        tasks=[TaskStatusResponse(**task.model_dump()) for task in tasks],
    )


def _store_unavailable(e: PersistenceError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)


@router.post(
    "/chatbots/{chatbot_id}/indexing-jobs",
    response_model=CreateJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue an indexing job",
)
async def create_indexing_job(
    chatbot_id: str,
    request: CreateJobRequest,
    service: IndexingJobService = Depends(get_indexing_service),
    context: dict = Depends(get_request_context),
    fetcher_factory: Callable[[], ContentFetcher] = Depends(get_fetcher_factory),
):
    """
    Enqueues one task per source. With `crawl` set, every website source is first
    expanded into one task per page discovered by following its links.
    The worker loop picks the job up on its next poll.
    """
    request_logger = get_request_logger(__name__, **context)
    specs = [TaskSpec(**source.model_dump()) for source in request.sources]
    if request.crawl is not None:
        async with fetcher_factory() as fetcher:
            crawler = build_site_crawler(settings, fetcher, **request.crawl.model_dump())
            specs = await crawler.expand_sources(specs)
        request_logger.info(f"Discovery for chatbot {chatbot_id} expanded {len(request.sources)} sources into {len(specs)}.")

    try:
        job = service.create_job(chatbot_id, specs)
    except PersistenceError as e:
        request_logger.error(f"Failed to enqueue indexing job for chatbot {chatbot_id}: {e}")
        raise _store_unavailable(e)

    request_logger.info(f"Indexing job {job.job_id} enqueued for chatbot {chatbot_id} ({job.total_tasks} sources).")
    return CreateJobResponse(
        job_id=job.job_id,
        status=job.status,
        total_tasks=job.total_tasks,
        message=f"Indexing job queued. Check status using GET /indexing-jobs/{job.job_id}",
    )


@router.get("/indexing-jobs/{job_id}", response_model=JobStatusResponse, summary="Get indexing job status")
async def get_indexing_job(job_id: str, service: IndexingJobService = Depends(get_indexing_service)):
    try:
        job, tasks = service.get_job_status(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PersistenceError as e:
        raise _store_unavailable(e)

    logger.info(f"Retrieved status for job {job_id}: {job.status}")
    return _job_response(job, tasks)


@router.post("/indexing-jobs/{job_id}/cancel", response_model=JobStatusResponse, summary="Cancel an indexing job")
async def cancel_indexing_job(job_id: str, service: IndexingJobService = Depends(get_indexing_service)):
    """
    Cancels a pending or processing job. A task already running is allowed to finish.
    """
    try:
        service.cancel_job(job_id)
        job, tasks = service.get_job_status(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceError as e:
        raise _store_unavailable(e)
    return _job_response(job, tasks)


@router.post(
    "/indexing-jobs/{job_id}/retry",
    response_model=CreateJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry the failed and cancelled tasks of a finished job",
)
async def retry_indexing_job(job_id: str, service: IndexingJobService = Depends(get_indexing_service)):
    try:
        job = service.retry_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceError as e:
        raise _store_unavailable(e)

    return CreateJobResponse(
        job_id=job.job_id,
        status=job.status,
        total_tasks=job.total_tasks,
        message=f"Retry of job {job_id} queued. Check status using GET /indexing-jobs/{job.job_id}",
    )


@router.get(
    "/chatbots/{chatbot_id}/indexing-status",
    response_model=ChatbotIndexingStatusResponse,
    summary="Get the indexing status of a chatbot",
)
async def get_chatbot_indexing_status(chatbot_id: str, service: IndexingJobService = Depends(get_indexing_service)):
    try:
        state = service.get_chatbot_status(chatbot_id)
    except PersistenceError as e:
        raise _store_unavailable(e)

    if state is None:
        return ChatbotIndexingStatusResponse(chatbot_id=chatbot_id)
    return ChatbotIndexingStatusResponse(chatbot_id=chatbot_id, status=state.status, job_id=state.job_id)
