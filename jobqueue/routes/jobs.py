"""
Job API routes.

Provides endpoints for enqueuing, inspecting and remediating background jobs.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from jobqueue.dependencies.auth import TokenPayload, get_current_principal, require_admin
from jobqueue.dependencies.services import get_job_service, get_registry
from jobqueue.errors import (
    JobNotCancellable,
    JobNotDeadLettered,
    JobNotFound,
    JobTypeNotFound,
    PayloadValidationFailed,
)
from jobqueue.jobs.registry import JobTypeRegistry
from jobqueue.models.job import Job, JobStatus
from jobqueue.routes.metrics import update_job_status_counts
from jobqueue.services.job_service import JobService


router = APIRouter(prefix="/api/jobs", tags=["jobs"])


# Pydantic models for request/response
class EnqueueJobRequest(BaseModel):
    """Request model for enqueuing a job."""
    type: str
    payload: dict = Field(default_factory=dict)
    priority: int | None = Field(default=None, ge=0, le=100)
    max_attempts: int | None = Field(default=None, ge=1)
    not_before: datetime | None = None


class JobResponse(BaseModel):
    """Response model for a job."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    status: str
    priority: int
    attempt: int
    max_attempts: int
    next_run_at: datetime
    worker_id: str | None = None
    lease_expires_at: datetime | None = None
    last_error: dict | None = None
    payload: dict
    result: dict | None = None
    created_by: str | None = None
    requeued_from: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


def job_to_response(job: Job) -> JobResponse:
    """Convert Job model to JobResponse."""
    return JobResponse(
        id=job.id,
        type=job.type,
        status=job.status.value if isinstance(job.status, JobStatus) else job.status,
        priority=job.priority,
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        next_run_at=job.next_run_at,
        worker_id=job.worker_id,
        lease_expires_at=job.lease_expires_at,
        last_error=job.last_error,
        payload=job.payload,
        result=job.result,
        created_by=job.created_by,
        requeued_from=job.requeued_from,
        started_at=job.started_at,
        completed_at=job.completed_at,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_job(
    request: EnqueueJobRequest,
    principal: TokenPayload = Depends(get_current_principal),
    job_service: JobService = Depends(get_job_service),
):
    """
    Enqueue a job.

    The payload is validated against the job type's schema before anything
    is stored.
    """
    try:
        job = await job_service.enqueue(
            request.type,
            request.payload,
            priority=request.priority,
            max_attempts=request.max_attempts,
            not_before=request.not_before,
            created_by=principal.sub,
        )
    except JobTypeNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except PayloadValidationFailed as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, "errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                for err in e.errors
            ]},
        )

    return job_to_response(job)


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: TokenPayload = Depends(get_current_principal),
    job_service: JobService = Depends(get_job_service),
):
    """List jobs, newest first."""
    jobs = await job_service.list_jobs(status=status_filter, job_type=type, limit=limit, offset=offset)
    return [job_to_response(job) for job in jobs]


@router.get("/stats", response_model=dict)
async def job_stats(
    principal: TokenPayload = Depends(get_current_principal),
    job_service: JobService = Depends(get_job_service),
):
    """Job counts per status."""
    counts = await job_service.get_stats()
    update_job_status_counts(counts)
    return counts


@router.get("/types", response_model=list[dict])
async def job_types(
    principal: TokenPayload = Depends(get_current_principal),
    registry: JobTypeRegistry = Depends(get_registry),
):
    """Registered job types and their policies."""
    result = []
    for job_type in registry.types():
        policy = registry.get_policy(job_type)
        result.append({
            "type": job_type,
            "max_attempts": policy.max_attempts,
            "timeout_seconds": policy.timeout_seconds,
            "default_priority": policy.default_priority,
            "concurrency_limit": policy.concurrency_limit,
        })
    return result


@router.get("/dlq", response_model=list[JobResponse])
async def dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: TokenPayload = Depends(require_admin),
    job_service: JobService = Depends(get_job_service),
):
    """Dead-lettered jobs awaiting operator action."""
    jobs = await job_service.list_dead_letters(limit=limit, offset=offset)
    return [job_to_response(job) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    principal: TokenPayload = Depends(get_current_principal),
    job_service: JobService = Depends(get_job_service),
):
    """Get job status and result by ID."""
    job = await job_service.get_job(job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    return job_to_response(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    principal: TokenPayload = Depends(get_current_principal),
    job_service: JobService = Depends(get_job_service),
):
    """Cancel a job that has not been picked up yet."""
    try:
        job = await job_service.cancel(job_id)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except JobNotCancellable as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    return job_to_response(job)


@router.post("/{job_id}/requeue", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def requeue_job(
    job_id: str,
    principal: TokenPayload = Depends(require_admin),
    job_service: JobService = Depends(get_job_service),
):
    """Re-enqueue a dead-lettered job as a new job."""
    try:
        job = await job_service.requeue_dead_letter(job_id, requested_by=principal.sub)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except JobNotDeadLettered as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except (JobTypeNotFound, PayloadValidationFailed) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    return job_to_response(job)
