"""Queue routes."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Response, status

from scribeflow.core.background import spawn
from scribeflow.core.logging_safety import safe_log_identifier
from scribeflow.routes.dependencies import get_queue, get_request_correlation_id
from scribeflow.schemas.error import (
    InputNotFoundError,
    JobNotRequeueableError,
    NoLeakNotFoundError,
    QueueBusyError,
)
from scribeflow.schemas.job import (
    AddFileRequest,
    AddFileResult,
    AddFolderRequest,
    AddFolderResult,
    CancelAllResult,
    CancelJobResult,
    ClearQueueResult,
    JobView,
    ProcessQueueResponse,
    QueueStats,
    RemoveJobResult,
)
from scribeflow.services.orchestrator import JobQueue

router = APIRouter(prefix="/queue", tags=["Queue"])
logger = logging.getLogger(__name__)


@router.post(
    "/files",
    response_model=AddFileResult,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"model": AddFileResult}, 404: {"model": InputNotFoundError}},
)
async def add_file(
    payload: AddFileRequest,
    response: Response,
    queue: Annotated[JobQueue, Depends(get_queue)],
) -> AddFileResult:
    result = await queue.add_file(payload.path)
    response.status_code = status.HTTP_201_CREATED if result.added else status.HTTP_200_OK
    return result


@router.post(
    "/folders",
    response_model=AddFolderResult,
    responses={404: {"model": InputNotFoundError}},
)
async def add_folder(
    payload: AddFolderRequest,
    queue: Annotated[JobQueue, Depends(get_queue)],
) -> AddFolderResult:
    return await queue.add_folder(payload.path)


@router.get("/jobs", response_model=list[JobView])
async def list_jobs(queue: Annotated[JobQueue, Depends(get_queue)]) -> list[JobView]:
    return queue.list_jobs()


@router.get(
    "/jobs/{jobId}",
    response_model=JobView,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def get_job(
    job_id: Annotated[str, Path(alias="jobId")],
    queue: Annotated[JobQueue, Depends(get_queue)],
) -> JobView:
    return queue.get_job(job_id)


@router.post(
    "/process",
    response_model=ProcessQueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={409: {"model": QueueBusyError}},
)
async def process_queue(
    correlation_id: Annotated[str, Depends(get_request_correlation_id)],
    queue: Annotated[JobQueue, Depends(get_queue)],
) -> ProcessQueueResponse:
    eligible = queue.begin_processing()
    spawn(queue.process_all(claimed=True), name="queue.process_all")
    logger.info(
        "queue.process_accepted correlation_id=%s eligible=%s",
        safe_log_identifier(correlation_id, prefix="cid"),
        eligible,
    )
    return ProcessQueueResponse(accepted=True, eligible_count=eligible)


@router.post("/cancel", response_model=CancelAllResult)
async def cancel_all(queue: Annotated[JobQueue, Depends(get_queue)]) -> CancelAllResult:
    return await queue.cancel_all()


@router.post(
    "/jobs/{jobId}/cancel",
    response_model=CancelJobResult,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def cancel_job(
    job_id: Annotated[str, Path(alias="jobId")],
    queue: Annotated[JobQueue, Depends(get_queue)],
) -> CancelJobResult:
    return await queue.cancel_one(job_id)


@router.delete(
    "/jobs/{jobId}",
    response_model=RemoveJobResult,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def remove_job(
    job_id: Annotated[str, Path(alias="jobId")],
    queue: Annotated[JobQueue, Depends(get_queue)],
) -> RemoveJobResult:
    return queue.remove_one(job_id)


@router.post(
    "/jobs/{jobId}/requeue",
    response_model=JobView,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": NoLeakNotFoundError}, 409: {"model": JobNotRequeueableError}},
)
async def requeue_job(
    job_id: Annotated[str, Path(alias="jobId")],
    queue: Annotated[JobQueue, Depends(get_queue)],
) -> JobView:
    return await queue.requeue(job_id)


@router.post("/clear", response_model=ClearQueueResult)
async def clear_queue(queue: Annotated[JobQueue, Depends(get_queue)]) -> ClearQueueResult:
    return queue.clear_queue()


@router.get("/stats", response_model=QueueStats)
async def queue_stats(queue: Annotated[JobQueue, Depends(get_queue)]) -> QueueStats:
    return queue.stats()
