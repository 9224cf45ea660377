"""Read-only operator reports.

Query-only views over jobs, renders and attempts. Nothing here mutates state.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from gss.core.dependencies import get_uow
from gss.uow import UnitOfWork

router = APIRouter(prefix="/api/reports", tags=["reports"])


class JobStatusCountDTO(BaseModel):
    status: str
    count: int
    oldest: datetime | None = None
    newest: datetime | None = None


class RecentRenderDTO(BaseModel):
    id: UUID
    job_id: UUID
    job_status: str
    status: str
    detected_shot_type: str | None = None
    confidence: float | None = None
    technical_tags: list[str]
    motion_recommendation: str | None = None
    processing_time_sec: int | None = None
    error_message: str | None = None
    created_at: datetime


class RetryStatsDTO(BaseModel):
    render_id: UUID
    detected_shot_type: str | None = None
    total_attempts: int
    max_attempt: int | None = None
    passed: int
    failed: int


class RecentAttemptDTO(BaseModel):
    id: UUID
    render_id: UUID
    attempt_number: int
    parameters: dict
    qc_verdict: str | None = None
    failure_reason: str | None = None
    suggested_fix: str | None = None
    created_at: datetime
    detected_shot_type: str | None = None


class FailedJobErrorDTO(BaseModel):
    job_id: UUID
    status: str
    last_error: str | None = None
    render_id: UUID
    error_message: str
    created_at: datetime


class ShotTypeTimingDTO(BaseModel):
    detected_shot_type: str | None = None
    avg_processing_time_sec: float
    count: int


def _recent_render(row) -> RecentRenderDTO:
    return RecentRenderDTO(
        id=row.id,
        job_id=row.job_id,
        job_status=row.job_status.value,
        status=row.status,
        detected_shot_type=row.detected_shot_type,
        confidence=row.confidence,
        technical_tags=row.technical_tags,
        motion_recommendation=row.motion_recommendation,
        processing_time_sec=row.processing_time_sec,
        error_message=row.error_message,
        created_at=row.created_at,
    )


@router.get("/jobs-by-status", response_model=list[JobStatusCountDTO])
async def jobs_by_status(uow: UnitOfWork = Depends(get_uow)) -> list[JobStatusCountDTO]:
    """Job counts per status with oldest and newest creation time."""
    return [
        JobStatusCountDTO(
            status=row.status.value, count=row.count, oldest=row.oldest, newest=row.newest
        )
        for row in await uow.reports.jobs_by_status()
    ]


@router.get("/recent-renders", response_model=list[RecentRenderDTO])
async def recent_renders(
    limit: int = Query(50, ge=1, le=500),
    uow: UnitOfWork = Depends(get_uow),
) -> list[RecentRenderDTO]:
    """Most recent renders with their job's status."""
    return [_recent_render(row) for row in await uow.reports.recent_renders(limit)]


@router.get("/retry-stats", response_model=list[RetryStatsDTO])
async def retry_stats(uow: UnitOfWork = Depends(get_uow)) -> list[RetryStatsDTO]:
    """Per-render attempt totals with pass/fail counts."""
    return [
        RetryStatsDTO(
            render_id=row.render_id,
            detected_shot_type=row.detected_shot_type,
            total_attempts=row.total_attempts,
            max_attempt=row.max_attempt,
            passed=row.passed,
            failed=row.failed,
        )
        for row in await uow.reports.retry_stats()
    ]


@router.get("/recent-attempts", response_model=list[RecentAttemptDTO])
async def recent_attempts(
    limit: int = Query(50, ge=1, le=500),
    uow: UnitOfWork = Depends(get_uow),
) -> list[RecentAttemptDTO]:
    """Most recent attempts with the render's shot type."""
    return [
        RecentAttemptDTO(
            id=row.id,
            render_id=row.render_id,
            attempt_number=row.attempt_number,
            parameters=row.parameters,
            qc_verdict=row.qc_verdict.value if row.qc_verdict else None,
            failure_reason=row.failure_reason,
            suggested_fix=row.suggested_fix,
            created_at=row.created_at,
            detected_shot_type=row.detected_shot_type,
        )
        for row in await uow.reports.recent_attempts(limit)
    ]


@router.get("/renders-by-tag", response_model=list[RecentRenderDTO])
async def renders_by_tag(
    tag: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    uow: UnitOfWork = Depends(get_uow),
) -> list[RecentRenderDTO]:
    """Renders whose technical tags contain a tag."""
    return [_recent_render(row) for row in await uow.reports.renders_with_tag(tag, limit)]


@router.get("/renders-by-shot-type", response_model=list[RecentRenderDTO])
async def renders_by_shot_type(
    shot_type: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    uow: UnitOfWork = Depends(get_uow),
) -> list[RecentRenderDTO]:
    return [_recent_render(row) for row in await uow.reports.renders_by_shot_type(shot_type, limit)]


@router.get("/failed-jobs", response_model=list[FailedJobErrorDTO])
async def failed_jobs(
    limit: int = Query(100, ge=1, le=1000),
    uow: UnitOfWork = Depends(get_uow),
) -> list[FailedJobErrorDTO]:
    """Failed jobs with the render errors that explain them."""
    return [
        FailedJobErrorDTO(
            job_id=row.job_id,
            status=row.status.value,
            last_error=row.last_error,
            render_id=row.render_id,
            error_message=row.error_message,
            created_at=row.created_at,
        )
        for row in await uow.reports.failed_jobs_with_errors(limit)
    ]


@router.get("/renders/{render_id}/attempts", response_model=list[RecentAttemptDTO])
async def render_retry_history(
    render_id: UUID, uow: UnitOfWork = Depends(get_uow)
) -> list[RecentAttemptDTO]:
    """Retry history of one render (first attempt first)."""
    render = await uow.renders.get_by_id(render_id)
    if render is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Render {render_id} not found"
        )
    return [
        RecentAttemptDTO(
            id=attempt.id,
            render_id=attempt.render_id,
            attempt_number=attempt.attempt_number,
            parameters=attempt.parameters,
            qc_verdict=attempt.qc_verdict.value if attempt.qc_verdict else None,
            failure_reason=attempt.failure_reason,
            suggested_fix=attempt.suggested_fix,
            created_at=attempt.created_at,
            detected_shot_type=render.detected_shot_type,
        )
        for attempt in await uow.attempts.get_by_render(render_id)
    ]


@router.get("/processing-time", response_model=list[ShotTypeTimingDTO])
async def processing_time(uow: UnitOfWork = Depends(get_uow)) -> list[ShotTypeTimingDTO]:
    """Average render processing time per detected shot type."""
    return [
        ShotTypeTimingDTO(
            detected_shot_type=row.detected_shot_type,
            avg_processing_time_sec=row.avg_processing_time_sec,
            count=row.count,
        )
        for row in await uow.reports.processing_time_by_shot_type()
    ]
