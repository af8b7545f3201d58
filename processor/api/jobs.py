"""
Jobs API Router

POST   /ingest          enqueue processing of an already-stored original
POST   /jobs            enqueue one job of an explicit type
GET    /jobs/{job_id}   job status from the ledger
DELETE /jobs/{job_id}   cancel a job nobody has claimed yet
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from processor.api.dependencies import AppRuntime, Queue
from processor.core.errors import ConfigurationError, NotFoundError
from processor.models.jobs import JobState
from processor.schemas.processing import (
    ErrorResponse,
    IngestBody,
    IngestResponse,
    JobHandle,
    JobStatusResponse,
    JobSubmitBody,
    JobSubmitResponse,
)
from processor.services.coordinator import IngestRequest
from processor.services.job_queue import JobSpec

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Jobs"])


@router.post(
    "/ingest",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest an already-stored original for an owner entity",
    responses={
        404: {"model": ErrorResponse, "description": "Content hash not stored"},
        503: {"model": ErrorResponse, "description": "Processing queue is full"},
    },
)
async def ingest(body: IngestBody, runtime: AppRuntime) -> IngestResponse:
    handle = await runtime.coordinator.ingest(
        IngestRequest(
            content_hash=body.content_hash,
            owner_entity_id=body.owner_entity_id,
            mime_type=body.mime_type,
            original_name=body.original_name,
            priority=body.priority,
            trace_id=body.trace_id,
        )
    )
    if handle.created and handle.job.state == JobState.PENDING.value:
        await runtime.dispatcher.dispatch(handle.job)

    return IngestResponse(
        job=JobHandle.from_job(handle.job),
        jobs_enqueued=[JobHandle.from_job(job) for job in handle.jobs],
    )


@router.post(
    "/jobs",
    response_model=JobSubmitResponse,
    summary="Enqueue a single processing job",
    description=(
        "Re-extraction, re-rendering of one preset, or OCR. "
        "Returns enqueued=false with a reason when the deployment cannot run the job type."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid preset for the job type"},
        404: {"model": ErrorResponse, "description": "Content hash not stored"},
    },
)
async def submit_job(body: JobSubmitBody, runtime: AppRuntime) -> JobSubmitResponse:
    try:
        result = await runtime.coordinator.submit(
            JobSpec(
                type=body.type,
                content_hash=body.content_hash,
                owner_entity_id=body.owner_entity_id,
                mime_type=body.mime_type,
                original_name=body.original_name,
                preset=body.preset,
                priority=body.priority,
                trace_id=body.trace_id,
            )
        )
    except ConfigurationError as exc:
        logger.info("Job not enqueued | type=%s reason=%s", body.type.value, exc.message)
        return JobSubmitResponse(enqueued=False, reason=exc.message)

    if result.job.state == JobState.PENDING.value:
        await runtime.dispatcher.dispatch(result.job)
    return JobSubmitResponse(enqueued=True, job=JobHandle.from_job(result.job))


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    summary="Job status",
    responses={404: {"model": ErrorResponse, "description": "Unknown job"}},
)
async def get_job(job_id: str, queue: Queue) -> JobStatusResponse:
    job = await queue.get(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return JobStatusResponse.from_job(job)


@router.delete(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    summary="Cancel a pending job",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown job"},
        409: {"model": ErrorResponse, "description": "Job already claimed or finished"},
    },
)
async def cancel_job(job_id: str, queue: Queue) -> JobStatusResponse:
    job = await queue.cancel(job_id)
    await queue.cancel_dependents(job.id)
    return JobStatusResponse.from_job(job)
