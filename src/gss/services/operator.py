"""Intake and operator actions on jobs.

Every function runs inside the caller's Unit of Work; the caller commits.
These are the only writers of a job besides its owning Job Controller and
the dispatcher.
"""

from uuid import UUID

import structlog

from gss.models.attempt import QCVerdict
from gss.models.job import InvalidStateTransition, Job, JobStatus
from gss.services.exceptions import JobNotFoundError
from gss.uow import UnitOfWork

logger = structlog.get_logger(__name__)

CANCELLED_BY_OPERATOR = "cancelled"
REJECTED_BY_OPERATOR = "rejected by operator"


async def _get_job(uow: UnitOfWork, job_id: UUID) -> Job:
    job = await uow.jobs.get_by_id(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


async def settle_unfinished_renders(uow: UnitOfWork, job_id: UUID, reason: str) -> int:
    """Fail every unsettled render of a job that will not run again.

    An in-flight attempt is finalized as FAIL with `reason`, so no attempt of
    a terminal job is left without a verdict.

    Returns:
        Number of renders failed
    """
    settled = 0
    for render in await uow.renders.get_by_job(job_id):
        if render.is_settled:
            continue
        latest = await uow.attempts.get_latest_by_render(render.id)
        if latest is not None and latest.in_flight:
            latest.record_verdict(QCVerdict.FAIL, failure_reason=reason)
            await uow.attempts.save(latest)
        render.mark_failed(reason)
        await uow.renders.save(render)
        settled += 1
    return settled


async def submit_job(
    uow: UnitOfWork,
    property_id: UUID,
    source_images: list[str],
    batch_id: UUID | None = None,
) -> Job:
    """Create a QUEUED job for a property's source images.

    Duplicate image references are dropped (first occurrence wins) since a
    render is keyed by (job, image).

    Raises:
        ValueError: If no non-empty image reference is given
    """
    images = list(dict.fromkeys(ref.strip() for ref in source_images if ref and ref.strip()))
    if not images:
        raise ValueError("At least one source image is required")

    job = Job(property_id=property_id, batch_id=batch_id, source_images=images)
    await uow.jobs.add(job)
    logger.info(
        "job.submitted",
        job_id=str(job.id),
        property_id=str(property_id),
        images=len(images),
    )
    return job


async def requeue_job(uow: UnitOfWork, job_id: UUID) -> Job:
    """Operator retry: FAILED -> QUEUED (immediately dispatchable).

    Raises:
        JobNotFoundError: Unknown job
        InvalidStateTransition: Job is not FAILED
    """
    job = await _get_job(uow, job_id)
    job.requeue()
    await uow.jobs.save(job)
    logger.info("job.requeued", job_id=str(job.id), retry_count=job.retry_count, by="operator")
    return job


async def cancel_job(uow: UnitOfWork, job_id: UUID) -> Job:
    """Cancel a job.

    In-progress jobs are flagged and stopped cooperatively by their worker
    between attempts; jobs not owned by a worker end in FATAL_ERROR at once.

    Raises:
        JobNotFoundError: Unknown job
        InvalidStateTransition: Job already terminal
    """
    job = await _get_job(uow, job_id)
    if job.is_terminal:
        raise InvalidStateTransition(f"Cannot cancel job in terminal state {job.status.value}.")

    if job.is_active:
        await uow.jobs.request_cancel(job)
        logger.info("job.cancel_requested", job_id=str(job.id), worker_id=job.worker_id)
        return job

    await settle_unfinished_renders(uow, job.id, CANCELLED_BY_OPERATOR)
    job.mark_fatal(CANCELLED_BY_OPERATOR)
    await uow.jobs.save(job)
    logger.info("job.cancelled", job_id=str(job.id), by="operator")
    return job


async def resolve_job(uow: UnitOfWork, job_id: UUID, approved: bool, note: str | None = None) -> Job:
    """Resolve a job waiting for review.

    approved: QC_REVIEW or MANUAL_REVIEW -> COMPLETED.
    rejected: QC_REVIEW -> MANUAL_REVIEW, MANUAL_REVIEW -> FATAL_ERROR.

    Raises:
        JobNotFoundError: Unknown job
        InvalidStateTransition: Job is not waiting for review
    """
    job = await _get_job(uow, job_id)
    if job.status not in (JobStatus.QC_REVIEW, JobStatus.MANUAL_REVIEW):
        raise InvalidStateTransition(
            f"Cannot resolve job in {job.status.value}. Job must be in QC_REVIEW or MANUAL_REVIEW."
        )

    previous = job.status
    if approved:
        job.mark_completed()
    elif job.status == JobStatus.QC_REVIEW:
        job.mark_manual_review(note or REJECTED_BY_OPERATOR)
    else:
        job.mark_fatal(note or REJECTED_BY_OPERATOR)
    await uow.jobs.save(job)

    logger.info(
        "job.status_changed",
        job_id=str(job.id),
        previous=previous.value,
        status=job.status.value,
        by="operator",
    )
    return job


async def delete_property(uow: UnitOfWork, property_id: UUID) -> int:
    """Delete all jobs of a property with their renders and attempts (one transaction)."""
    deleted = await uow.jobs.delete_property_data(property_id)
    logger.info("property.deleted", property_id=str(property_id), jobs_deleted=deleted)
    return deleted
