"""Read-only operator views over jobs, renders and attempts.

These are read models for dashboards and the CLI; nothing here mutates state.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, func, select, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from gss.models.attempt import GenerationAttempt, QCVerdict
from gss.models.job import Job, JobStatus
from gss.models.render import Render


@dataclass(frozen=True)
class JobStatusCount:
    status: JobStatus
    count: int
    oldest: datetime | None
    newest: datetime | None


@dataclass(frozen=True)
class RecentRender:
    id: UUID
    job_id: UUID
    job_status: JobStatus
    status: str
    detected_shot_type: str | None
    confidence: float | None
    technical_tags: list[str]
    motion_recommendation: str | None
    processing_time_sec: int | None
    error_message: str | None
    created_at: datetime


@dataclass(frozen=True)
class RetryStats:
    render_id: UUID
    detected_shot_type: str | None
    total_attempts: int
    max_attempt: int | None
    passed: int
    failed: int


@dataclass(frozen=True)
class RecentAttempt:
    id: UUID
    render_id: UUID
    attempt_number: int
    parameters: dict
    qc_verdict: QCVerdict | None
    failure_reason: str | None
    suggested_fix: str | None
    created_at: datetime
    detected_shot_type: str | None


@dataclass(frozen=True)
class FailedJobError:
    job_id: UUID
    status: JobStatus
    last_error: str | None
    render_id: UUID
    error_message: str
    created_at: datetime


@dataclass(frozen=True)
class ShotTypeTiming:
    detected_shot_type: str | None
    avg_processing_time_sec: float
    count: int


class ReportingRepository:
    """Aggregating queries for the operator surface."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def jobs_by_status(self) -> list[JobStatusCount]:
        """Count jobs per status with oldest/newest creation time, largest group first."""
        count_col = func.count(Job.id).label("count")  # type: ignore[arg-type]
        result = await self.session.execute(
            select(
                Job.status,
                count_col,
                func.min(Job.created_at),
                func.max(Job.created_at),
            )
            .group_by(Job.status)
            .order_by(count_col.desc())
        )
        return [
            JobStatusCount(status=status, count=count, oldest=oldest, newest=newest)
            for status, count, oldest, newest in result.all()
        ]

    async def recent_renders(self, limit: int = 50) -> list[RecentRender]:
        """Most recent renders joined with their job's status."""
        result = await self.session.execute(
            select(Render, Job.status)
            .join(Job, Render.job_id == Job.id)  # type: ignore[arg-type]
            .order_by(Render.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return [self._recent_render(render, job_status) for render, job_status in result.all()]

    async def retry_stats(self) -> list[RetryStats]:
        """Per-render attempt totals with pass/fail counts."""
        passed = func.sum(case((GenerationAttempt.qc_verdict == QCVerdict.PASS, 1), else_=0))
        failed = func.sum(case((GenerationAttempt.qc_verdict == QCVerdict.FAIL, 1), else_=0))
        result = await self.session.execute(
            select(
                Render.id,
                Render.detected_shot_type,
                func.count(GenerationAttempt.id),  # type: ignore[arg-type]
                func.max(GenerationAttempt.attempt_number),
                passed,
                failed,
            )
            .outerjoin(GenerationAttempt, GenerationAttempt.render_id == Render.id)  # type: ignore[arg-type]
            .group_by(Render.id, Render.detected_shot_type)
            .order_by(Render.created_at.desc())  # type: ignore[attr-defined]
        )
        return [
            RetryStats(
                render_id=render_id,
                detected_shot_type=shot_type,
                total_attempts=total or 0,
                max_attempt=max_attempt,
                passed=int(passed_count or 0),
                failed=int(failed_count or 0),
            )
            for render_id, shot_type, total, max_attempt, passed_count, failed_count in result.all()
        ]

    async def recent_attempts(self, limit: int = 50) -> list[RecentAttempt]:
        """Most recent attempts with the owning render's shot type."""
        result = await self.session.execute(
            select(GenerationAttempt, Render.detected_shot_type)
            .join(Render, GenerationAttempt.render_id == Render.id)  # type: ignore[arg-type]
            .order_by(GenerationAttempt.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return [
            RecentAttempt(
                id=attempt.id,
                render_id=attempt.render_id,
                attempt_number=attempt.attempt_number,
                parameters=attempt.parameters,
                qc_verdict=attempt.qc_verdict,
                failure_reason=attempt.failure_reason,
                suggested_fix=attempt.suggested_fix,
                created_at=attempt.created_at,
                detected_shot_type=shot_type,
            )
            for attempt, shot_type in result.all()
        ]

    async def renders_with_tag(self, tag: str, limit: int = 50) -> list[RecentRender]:
        """Renders whose technical tag set contains a tag.

        PostgreSQL uses JSONB containment (GIN indexed); other stores filter
        in Python over the most recent renders.
        """
        query = (
            select(Render, Job.status)
            .join(Job, Render.job_id == Job.id)  # type: ignore[arg-type]
            .order_by(Render.created_at.desc())  # type: ignore[attr-defined]
        )
        if self.session.bind.dialect.name == "postgresql":
            query = query.where(type_coerce(Render.technical_tags, JSONB).contains([tag])).limit(limit)
            result = await self.session.execute(query)
            return [self._recent_render(render, job_status) for render, job_status in result.all()]

        result = await self.session.execute(query)
        matches = [
            self._recent_render(render, job_status)
            for render, job_status in result.all()
            if tag in (render.technical_tags or [])
        ]
        return matches[:limit]

    async def renders_by_shot_type(self, shot_type: str, limit: int = 50) -> list[RecentRender]:
        result = await self.session.execute(
            select(Render, Job.status)
            .join(Job, Render.job_id == Job.id)  # type: ignore[arg-type]
            .where(Render.detected_shot_type == shot_type)  # type: ignore[arg-type]
            .order_by(Render.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return [self._recent_render(render, job_status) for render, job_status in result.all()]

    async def failed_jobs_with_errors(self, limit: int = 100) -> list[FailedJobError]:
        """Failed jobs joined with the render errors that explain them."""
        result = await self.session.execute(
            select(Job, Render)
            .join(Render, Render.job_id == Job.id)  # type: ignore[arg-type]
            .where(Job.status == JobStatus.FAILED)  # type: ignore[arg-type]
            .where(Render.error_message.is_not(None))  # type: ignore[union-attr]
            .order_by(Render.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return [
            FailedJobError(
                job_id=job.id,
                status=job.status,
                last_error=job.last_error,
                render_id=render.id,
                error_message=render.error_message or "",
                created_at=render.created_at,
            )
            for job, render in result.all()
        ]

    async def processing_time_by_shot_type(self) -> list[ShotTypeTiming]:
        """Average render processing time per detected shot type."""
        result = await self.session.execute(
            select(
                Render.detected_shot_type,
                func.avg(Render.processing_time_sec),
                func.count(Render.id),  # type: ignore[arg-type]
            )
            .where(Render.processing_time_sec.is_not(None))  # type: ignore[union-attr]
            .group_by(Render.detected_shot_type)
            .order_by(Render.detected_shot_type.asc())  # type: ignore[union-attr]
        )
        return [
            ShotTypeTiming(
                detected_shot_type=shot_type,
                avg_processing_time_sec=float(avg or 0),
                count=count,
            )
            for shot_type, avg, count in result.all()
        ]

    @staticmethod
    def _recent_render(render: Render, job_status: JobStatus) -> RecentRender:
        return RecentRender(
            id=render.id,
            job_id=render.job_id,
            job_status=job_status,
            status=render.status.value,
            detected_shot_type=render.detected_shot_type,
            confidence=render.confidence,
            technical_tags=list(render.technical_tags or []),
            motion_recommendation=render.motion_recommendation,
            processing_time_sec=render.processing_time_sec,
            error_message=render.error_message,
            created_at=render.created_at,
        )
