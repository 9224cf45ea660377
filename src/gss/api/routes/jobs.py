"""Job intake and operator API endpoints.

This module implements REST endpoints for the job lifecycle:
- POST /api/jobs - Submit a property's source images as a new QUEUED job
- GET /api/jobs/{job_id} - Job status with its renders and attempt history
- POST /api/jobs/{job_id}/requeue - Operator retry of a FAILED job
- POST /api/jobs/{job_id}/cancel - Cancel a job (cooperative while in progress)
- POST /api/jobs/{job_id}/resolve - Resolve a job waiting for QC or manual review
- DELETE /api/properties/{property_id}/jobs - Delete a property's jobs, renders and attempts

Raw generator and evaluator payloads are only returned when include_raw=true.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from gss.api.dependencies import get_uow_factory
from gss.models.job import InvalidStateTransition, Job, JobStatus
from gss.services import operator
from gss.services.exceptions import JobNotFoundError
from gss.uow import UnitOfWork

router = APIRouter(prefix="/api", tags=["jobs"])


# Request/Response Models


class SubmitJobRequest(BaseModel):
    """Request model for job intake."""

    property_id: UUID = Field(..., description="Property the images belong to")
    source_images: list[str] = Field(
        ...,
        description="Source image references (URLs), one render per distinct image",
        min_length=1,
    )
    batch_id: UUID | None = Field(default=None, description="Optional grouping key")


class ResolveJobRequest(BaseModel):
    """Request model for resolving a job in QC_REVIEW or MANUAL_REVIEW."""

    approved: bool = Field(default=True, description="True completes the job")
    note: str | None = Field(default=None, description="Reason recorded on rejection", max_length=2000)


class AttemptDTO(BaseModel):
    """Data Transfer Object for one generation attempt."""

    attempt_number: int
    parameters: dict
    qc_verdict: str | None = None
    failure_reason: str | None = None
    suggested_fix: str | None = None
    artifact_ref: str | None = None
    generator_response: dict | None = None
    qc_response: dict | None = None
    created_at: datetime
    evaluated_at: datetime | None = None


class RenderDTO(BaseModel):
    """Data Transfer Object for one render."""

    id: UUID
    source_image_url: str
    status: str
    detected_shot_type: str | None = None
    confidence: float | None = None
    technical_tags: list[str] = Field(default_factory=list)
    motion_recommendation: str | None = None
    processing_time_sec: int | None = None
    error_message: str | None = None
    attempts: list[AttemptDTO] = Field(default_factory=list)


class JobDTO(BaseModel):
    """Data Transfer Object for a job and, on detail reads, its renders."""

    id: UUID
    property_id: UUID
    batch_id: UUID | None = None
    status: str
    retry_count: int
    retryable: bool
    last_error: str | None = None
    cancel_requested: bool
    created_at: datetime
    updated_at: datetime
    renders: list[RenderDTO] = Field(default_factory=list)


class DeletePropertyResponse(BaseModel):
    """Response model for property data deletion."""

    property_id: UUID
    jobs_deleted: int


# Helpers


def _job_dto(job: Job, renders: list[RenderDTO] | None = None) -> JobDTO:
    return JobDTO(
        id=job.id,
        property_id=job.property_id,
        batch_id=job.batch_id,
        status=job.status.value,
        retry_count=job.retry_count,
        retryable=job.retryable,
        last_error=job.last_error,
        cancel_requested=job.cancel_requested,
        created_at=job.created_at,
        updated_at=job.updated_at,
        renders=renders or [],
    )


async def _render_dtos(uow: UnitOfWork, job: Job, include_raw: bool) -> list[RenderDTO]:
    renders = []
    for render in await uow.renders.get_by_job(job.id):
        attempts = [
            AttemptDTO(
                attempt_number=attempt.attempt_number,
                parameters=attempt.parameters,
                qc_verdict=attempt.qc_verdict.value if attempt.qc_verdict else None,
                failure_reason=attempt.failure_reason,
                suggested_fix=attempt.suggested_fix,
                artifact_ref=attempt.artifact_ref,
                generator_response=attempt.generator_response if include_raw else None,
                qc_response=attempt.qc_response if include_raw else None,
                created_at=attempt.created_at,
                evaluated_at=attempt.evaluated_at,
            )
            for attempt in await uow.attempts.get_by_render(render.id)
        ]
        renders.append(
            RenderDTO(
                id=render.id,
                source_image_url=render.source_image_url,
                status=render.status.value,
                detected_shot_type=render.detected_shot_type,
                confidence=render.confidence,
                technical_tags=list(render.technical_tags or []),
                motion_recommendation=render.motion_recommendation,
                processing_time_sec=render.processing_time_sec,
                error_message=render.error_message,
                attempts=attempts,
            )
        )
    return renders


def _not_found(job_id: UUID) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")


def _conflict(error: InvalidStateTransition) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))


# API Endpoints


@router.post("/jobs", response_model=JobDTO, status_code=status.HTTP_201_CREATED)
async def submit_job(
    request: SubmitJobRequest,
    uow_factory=Depends(get_uow_factory),
) -> JobDTO:
    """Submit a property's source images for processing.

    Returns:
        The new job in QUEUED status

    Raises:
        HTTPException 400: No usable image reference
    """
    async with await uow_factory() as uow:
        try:
            job = await operator.submit_job(
                uow, request.property_id, request.source_images, batch_id=request.batch_id
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return _job_dto(job)


@router.get("/jobs", response_model=list[JobDTO], status_code=status.HTTP_200_OK)
async def list_jobs(
    job_status: JobStatus = Query(..., alias="status", description="Job status to filter by"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    uow_factory=Depends(get_uow_factory),
) -> list[JobDTO]:
    """Jobs in one status, oldest first (without renders)."""
    async with await uow_factory() as uow:
        jobs = await uow.jobs.get_by_status(job_status, limit=limit, offset=offset)
        return [_job_dto(job) for job in jobs]


@router.get("/jobs/{job_id}", response_model=JobDTO, status_code=status.HTTP_200_OK)
async def get_job(
    job_id: UUID,
    include_raw: bool = Query(False, description="Include raw generator/QC payloads"),
    uow_factory=Depends(get_uow_factory),
) -> JobDTO:
    """Job status with renders and their attempt history (oldest attempt first)."""
    async with await uow_factory() as uow:
        job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise _not_found(job_id)
        return _job_dto(job, await _render_dtos(uow, job, include_raw))


@router.post("/jobs/{job_id}/requeue", response_model=JobDTO, status_code=status.HTTP_200_OK)
async def requeue_job(job_id: UUID, uow_factory=Depends(get_uow_factory)) -> JobDTO:
    """Operator retry: return a FAILED job to the queue.

    Raises:
        HTTPException 404: Unknown job
        HTTPException 409: Job is not FAILED
    """
    async with await uow_factory() as uow:
        try:
            job = await operator.requeue_job(uow, job_id)
        except JobNotFoundError:
            raise _not_found(job_id)
        except InvalidStateTransition as e:
            raise _conflict(e)
        return _job_dto(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobDTO, status_code=status.HTTP_200_OK)
async def cancel_job(job_id: UUID, uow_factory=Depends(get_uow_factory)) -> JobDTO:
    """Cancel a job.

    In-progress jobs stop between attempts and end in FATAL_ERROR; the
    response then shows cancel_requested=true with the current status.

    Raises:
        HTTPException 404: Unknown job
        HTTPException 409: Job already terminal
    """
    async with await uow_factory() as uow:
        try:
            job = await operator.cancel_job(uow, job_id)
        except JobNotFoundError:
            raise _not_found(job_id)
        except InvalidStateTransition as e:
            raise _conflict(e)
        return _job_dto(job)


@router.post("/jobs/{job_id}/resolve", response_model=JobDTO, status_code=status.HTTP_200_OK)
async def resolve_job(
    job_id: UUID,
    request: ResolveJobRequest,
    uow_factory=Depends(get_uow_factory),
) -> JobDTO:
    """Resolve a job waiting for QC sign-off or manual review.

    Raises:
        HTTPException 404: Unknown job
        HTTPException 409: Job is not waiting for review
    """
    async with await uow_factory() as uow:
        try:
            job = await operator.resolve_job(uow, job_id, request.approved, request.note)
        except JobNotFoundError:
            raise _not_found(job_id)
        except InvalidStateTransition as e:
            raise _conflict(e)
        return _job_dto(job)


@router.delete(
    "/properties/{property_id}/jobs",
    response_model=DeletePropertyResponse,
    status_code=status.HTTP_200_OK,
)
async def delete_property_jobs(
    property_id: UUID, uow_factory=Depends(get_uow_factory)
) -> DeletePropertyResponse:
    """Delete every job of a property together with its renders and attempts."""
    async with await uow_factory() as uow:
        deleted = await operator.delete_property(uow, property_id)
    return DeletePropertyResponse(property_id=property_id, jobs_deleted=deleted)
