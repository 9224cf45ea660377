"""Job repository for the render pipeline.

Provides data access methods for Job entities with worker coordination via FOR UPDATE SKIP LOCKED.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gss.core.timezone import utcnow
from gss.models.attempt import GenerationAttempt
from gss.models.job import ACTIVE_JOB_STATUSES, InvalidStateTransition, Job, JobStatus
from gss.models.render import Render


class JobRepository:
    """Repository for Job entities.

    Methods include worker coordination queries using FOR UPDATE SKIP LOCKED
    to ensure non-overlapping job distribution across concurrent workers.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: Job) -> Job:
        """Persist new job to database.

        Args:
            job: Job entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> Job | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(select(Job).where(Job.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: UUID) -> Job | None:
        """Retrieve a job and hold its row lock until the transaction ends.

        Recovery and claims update the same row, so ownership read here
        cannot change before the caller's writes commit.
        """
        result = await self.session.execute(
            select(Job).where(Job.id == job_id).with_for_update()  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def save(self, job: Job) -> Job:
        """Flush pending changes on a job made through its domain methods."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_property(self, property_id: UUID) -> list[Job]:
        """Retrieve all jobs for a property, oldest first."""
        result = await self.session.execute(
            select(Job)
            .where(Job.property_id == property_id)  # type: ignore[arg-type]
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_by_status(
        self, status: JobStatus, limit: int = 100, offset: int = 0
    ) -> list[Job]:
        """Retrieve jobs by status with pagination.

        Args:
            status: Job status to filter by
            limit: Maximum number of jobs to return (default: 100)
            offset: Number of jobs to skip (default: 0)

        Returns:
            List of jobs ordered by created_at timestamp (oldest first)
        """
        result = await self.session.execute(
            select(Job)
            .where(Job.status == status)  # type: ignore[arg-type]
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_next_queued(self, now: datetime, limit: int = 1) -> list[Job]:
        """Retrieve dispatchable queued jobs with row-level locking.

        Query explanation:
        - WHERE status = 'QUEUED' AND available_at <= now: Jobs ready to run
        - ORDER BY created_at ASC: Oldest first (starvation avoidance)
        - LIMIT: Candidates for this worker
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Args:
            now: Current time (naive UTC)
            limit: Maximum number of candidates (default: 1)

        Returns:
            List of jobs locked for this worker
        """
        # FOR UPDATE SKIP LOCKED ensures worker coordination
        result = await self.session.execute(
            select(Job)
            .where(Job.status == JobStatus.QUEUED)  # type: ignore[arg-type]
            .where(Job.available_at <= now)  # type: ignore[arg-type]
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def claim(self, job: Job, worker_id: str) -> bool:
        """Claim a queued job for a worker.

        The conditional UPDATE (status must still be QUEUED) makes the claim
        exclusive even on stores without SKIP LOCKED support.

        Args:
            job: Queued job selected by get_next_queued()
            worker_id: Identifier of the claiming worker

        Returns:
            True if this worker now owns the job, False if another worker won
        """
        if not worker_id:
            raise ValueError("worker_id is required")
        if not job.can_transition(JobStatus.PROCESSING):
            raise InvalidStateTransition(
                f"Cannot claim job in {job.status.value}. Job must be in QUEUED state."
            )

        result = await self.session.execute(
            update(Job)
            .where(Job.id == job.id)  # type: ignore[arg-type]
            .where(Job.status == JobStatus.QUEUED)  # type: ignore[arg-type]
            .values(
                status=JobStatus.PROCESSING,
                worker_id=worker_id,
                updated_at=max(utcnow(), job.updated_at),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return False

        await self.session.refresh(job)
        return True

    async def get_active(self) -> list[Job]:
        """Retrieve jobs currently owned by a worker (processing, classified, generating)."""
        result = await self.session.execute(
            select(Job)
            .where(Job.status.in_(ACTIVE_JOB_STATUSES))  # type: ignore[attr-defined]
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_due_for_retry(self, now: datetime, limit: int = 100) -> list[Job]:
        """Retrieve retryable failed jobs whose backoff has elapsed, with row-level locking."""
        result = await self.session.execute(
            select(Job)
            .where(Job.status == JobStatus.FAILED)  # type: ignore[arg-type]
            .where(Job.retryable.is_(True))  # type: ignore[attr-defined]
            .where(Job.available_at <= now)  # type: ignore[arg-type]
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def last_progress_at(self, job: Job) -> datetime:
        """Latest mutation time across the job and its renders.

        Attempt creation and finalization stamp the owning render, so render
        timestamps cover generation progress.
        """
        result = await self.session.execute(
            select(func.max(Render.updated_at)).where(Render.job_id == job.id)  # type: ignore[arg-type]
        )
        latest_render = result.scalar()
        if latest_render is None:
            return job.updated_at
        return max(job.updated_at, latest_render)

    async def delete_property_data(self, property_id: UUID) -> int:
        """Delete every job of a property together with its renders and attempts.

        Ownership is Job -> Renders -> Attempts; children are removed first so
        no attempt ever references a missing render. Runs inside the caller's
        transaction.

        Args:
            property_id: Property whose data should be removed

        Returns:
            Number of jobs deleted
        """
        job_ids = select(Job.id).where(Job.property_id == property_id)  # type: ignore[arg-type]
        render_ids = select(Render.id).where(Render.job_id.in_(job_ids))  # type: ignore[attr-defined]

        await self.session.execute(
            delete(GenerationAttempt).where(GenerationAttempt.render_id.in_(render_ids))  # type: ignore[attr-defined]
        )
        await self.session.execute(
            delete(Render).where(Render.job_id.in_(job_ids))  # type: ignore[attr-defined]
        )
        result = await self.session.execute(
            delete(Job).where(Job.property_id == property_id)  # type: ignore[arg-type]
        )
        await self.session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def request_cancel(self, job: Job) -> Job:
        """Flag a job for cooperative cancellation (checked between attempts)."""
        job.cancel_requested = True
        job.stamp()
        self.session.add(job)
        await self.session.flush()
        return job

    async def count(self) -> int:
        result = await self.session.execute(select(func.count(Job.id)))  # type: ignore[arg-type]
        return result.scalar() or 0

