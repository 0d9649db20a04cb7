"""Image generation API endpoints.

This module implements REST endpoints for generation jobs:
- POST /api/generations - Reserve points and enqueue a generation job
- POST /api/generations/sync - Enqueue and wait until the job settles
- GET /api/generations/active - Caller's jobs that are still queued or running
- GET /api/generations/{job_id} - Status of one of the caller's jobs

Every request is attributed to the user id from the X-User-Id header.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from genqueue.api.dependencies import CurrentUserId, Orchestrator, to_http_exception
from genqueue.models.generation_job import GenerationJob
from genqueue.services.exceptions import GenerationError
from genqueue.services.orchestrator import GenerationRequest

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])


# Response Models


class GenerationJobResponse(BaseModel):
    """Public view of a generation job."""

    id: UUID
    session_id: UUID
    status: str = Field(..., description="IN_QUEUE, IN_PROGRESS, COMPLETED or FAILED")
    queue_position: int | None = None
    image_urls: list[str] = Field(default_factory=list)
    error_message: str | None = None
    model_type: str
    resolution: str | None = None
    num_images: int
    points_reserved: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: GenerationJob) -> "GenerationJobResponse":
        return cls(
            id=job.id,
            session_id=job.session_id,
            status=job.status.value if hasattr(job.status, "value") else str(job.status),
            queue_position=job.queue_position,
            image_urls=list(job.image_urls or []),
            error_message=job.error_message,
            model_type=job.model_type,
            resolution=job.resolution,
            num_images=job.num_images,
            points_reserved=job.points_reserved,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class SyncGenerationResponse(BaseModel):
    """Result of a synchronous generation."""

    job_id: UUID
    session_id: UUID
    image_urls: list[str]
    balance: int = Field(..., description="Points balance after settlement")


# Endpoints


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=GenerationJobResponse)
async def submit_generation(
    request: GenerationRequest,
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> GenerationJobResponse:
    """Reserve points and enqueue a generation job.

    Returns 202 with the job in IN_QUEUE. Poll GET /api/generations/{id} for progress.

    Raises:
        HTTPException: 402 insufficient points, 404 unknown session/style,
            422 provider rejected, 503 provider unavailable
    """
    try:
        job = await orchestrator.submit(request, user_id)
    except GenerationError as e:
        raise to_http_exception(e)
    return GenerationJobResponse.from_job(job)


@router.post("/sync", response_model=SyncGenerationResponse)
async def generate_sync(
    request: GenerationRequest,
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> SyncGenerationResponse:
    """Enqueue a generation job and block until it completes.

    Raises:
        HTTPException: 408 if the wait deadline passes (the job keeps running and
            can still be fetched by id), 500 if the job failed (points refunded),
            plus the submission errors of POST /api/generations
    """
    try:
        job, balance = await orchestrator.generate_sync(request, user_id)
    except GenerationError as e:
        raise to_http_exception(e)

    return SyncGenerationResponse(
        job_id=job.id,
        session_id=job.session_id,
        image_urls=list(job.image_urls),
        balance=balance,
    )


@router.get("/active", response_model=list[GenerationJobResponse])
async def list_active_generations(
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> list[GenerationJobResponse]:
    """Caller's jobs in IN_QUEUE or IN_PROGRESS, newest first."""
    jobs = await orchestrator.get_active_jobs(user_id)
    return [GenerationJobResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=GenerationJobResponse)
async def get_generation(
    job_id: UUID,
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> GenerationJobResponse:
    """Status of one job.

    Raises:
        HTTPException: 404 if the job does not exist, 403 if it belongs to another user
    """
    try:
        job = await orchestrator.get_job(job_id, user_id)
    except GenerationError as e:
        raise to_http_exception(e)
    return GenerationJobResponse.from_job(job)
