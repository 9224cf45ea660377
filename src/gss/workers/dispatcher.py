"""Dispatcher: hands queued jobs to a pool of workers.

Each worker loop claims the oldest dispatchable QUEUED job (FOR UPDATE SKIP
LOCKED plus a conditional UPDATE, so exactly one worker wins) and runs a Job
Controller on it to completion. A maintenance loop returns stale in-progress
jobs to the queue and requeues retryable failures whose backoff elapsed.

Job execution is at-least-once: a recovered job is re-executed, and the
render/attempt idempotency keys keep re-execution free of duplicate side effects.
"""

import asyncio
import os
import socket
from datetime import timedelta
from typing import Callable
from uuid import UUID

import structlog

from gss.core.config import Settings
from gss.core.timezone import utcnow
from gss.services.collaborators import Collaborators
from gss.services.image_pipeline.factory import build_collaborators
from gss.services.orchestration.job_controller import JobController, UowFactory
from gss.uow import create_uow_factory

logger = structlog.get_logger(__name__)

# Back off before polling again after an unexpected error
ERROR_BACKOFF_SECONDS = 5


def make_worker_id(index: int) -> str:
    """Stable, human-readable claim owner: host:pid:index."""
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


async def claim_next_job(uow_factory: UowFactory, worker_id: str) -> UUID | None:
    """Claim the oldest dispatchable queued job for a worker.

    Args:
        uow_factory: Unit of Work factory
        worker_id: Claim owner recorded on the job

    Returns:
        ID of the claimed job, or None if nothing is dispatchable
    """
    async with await uow_factory() as uow:
        candidates = await uow.jobs.get_next_queued(utcnow(), limit=1)
        for job in candidates:
            if await uow.jobs.claim(job, worker_id):
                logger.info("job.claimed", job_id=str(job.id), worker_id=worker_id)
                return job.id
    return None


async def recover_stale_jobs(uow_factory: UowFactory, liveness_deadline_seconds: float) -> int:
    """Return in-progress jobs without recent progress to the queue.

    Progress is the latest updated_at across the job and its renders; every
    attempt start and finalization stamps the render.

    Returns:
        Number of jobs released
    """
    cutoff = utcnow() - timedelta(seconds=liveness_deadline_seconds)
    released = 0

    async with await uow_factory() as uow:
        for job in await uow.jobs.get_active():
            last_progress = await uow.jobs.last_progress_at(job)
            if last_progress >= cutoff:
                continue
            previous_owner = job.worker_id
            previous_status = job.status
            job.release()
            await uow.jobs.save(job)
            released += 1
            logger.warning(
                "job.recovered",
                job_id=str(job.id),
                previous_status=previous_status.value,
                previous_owner=previous_owner,
                last_progress_at=last_progress.isoformat(),
            )

    if released:
        logger.info("dispatcher.recovery", stale_jobs_released=released)
    return released


async def requeue_due_jobs(uow_factory: UowFactory, limit: int = 100) -> int:
    """Requeue retryable FAILED jobs whose backoff has elapsed.

    Returns:
        Number of jobs requeued
    """
    requeued = 0
    async with await uow_factory() as uow:
        for job in await uow.jobs.get_due_for_retry(utcnow(), limit=limit):
            job.requeue()
            await uow.jobs.save(job)
            requeued += 1
            logger.info("job.requeued", job_id=str(job.id), retry_count=job.retry_count)
    return requeued


async def run_worker(
    uow_factory: UowFactory,
    collaborators: Collaborators,
    settings: Settings,
    worker_id: str,
) -> None:
    """Claim-and-run loop for one worker.

    Polls at POLL_INTERVAL_SECONDS when the queue is empty; claims again
    immediately after finishing a job.
    """
    controller = JobController(uow_factory, collaborators, settings, worker_id)
    logger.info("worker.started", worker_id=worker_id)

    try:
        while True:
            try:
                job_id = await claim_next_job(uow_factory, worker_id)
                if job_id is None:
                    await asyncio.sleep(settings.poll_interval_seconds)
                    continue

                status = await controller.run(job_id)
                logger.info(
                    "job.run_finished",
                    job_id=str(job_id),
                    worker_id=worker_id,
                    status=status.value if status else None,
                )

            except asyncio.CancelledError:
                # Propagate cancellation for graceful shutdown
                raise

            except Exception as e:
                # Storage or unexpected errors: the job stays claimed and is
                # re-executed after liveness recovery
                logger.error(
                    "worker.error",
                    worker_id=worker_id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    except asyncio.CancelledError:
        # Graceful shutdown
        logger.info("worker.stopped", worker_id=worker_id)
        raise


async def run_maintenance(uow_factory: UowFactory, settings: Settings) -> None:
    """Periodic liveness recovery and backoff requeue."""
    try:
        while True:
            try:
                await recover_stale_jobs(uow_factory, settings.liveness_deadline_seconds)
                await requeue_due_jobs(uow_factory)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "dispatcher.maintenance_error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
            await asyncio.sleep(settings.recovery_interval_seconds)
    except asyncio.CancelledError:
        logger.info("dispatcher.maintenance_stopped")
        raise


async def run_dispatcher(
    session_factory: Callable,
    settings: Settings,
    collaborators: Collaborators | None = None,
) -> None:
    """Main dispatcher entry point.

    Workflow:
    1. Startup recovery (release stale jobs, requeue due retries)
    2. Start WORKER_COUNT worker loops and the maintenance loop
    3. On cancellation, cancel every loop and wait for them to stop

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (worker count, intervals, retry policy)
        collaborators: Classifier/generator/evaluator; Replicate adapters when omitted
    """
    if collaborators is None:
        collaborators = build_collaborators(settings)

    uow_factory = create_uow_factory(session_factory)

    # Startup recovery
    await recover_stale_jobs(uow_factory, settings.liveness_deadline_seconds)
    await requeue_due_jobs(uow_factory)

    tasks = [
        asyncio.create_task(
            run_worker(uow_factory, collaborators, settings, make_worker_id(index))
        )
        for index in range(settings.worker_count)
    ]
    tasks.append(asyncio.create_task(run_maintenance(uow_factory, settings)))

    logger.info(
        "dispatcher.started",
        worker_count=settings.worker_count,
        poll_interval=settings.poll_interval_seconds,
        liveness_deadline_seconds=settings.liveness_deadline_seconds,
    )

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("dispatcher.stopped")
