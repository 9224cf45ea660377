"""Job controller: drives one property's job through the status state machine.

The controller fans out one render controller per source image, bounded by
RENDER_CONCURRENCY, and rolls render outcomes up into the job status. It is
the single writer for its job: every transaction of a run (job and render
rows alike) is serialized through a per-run lock.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Awaitable, Callable, Iterable
from uuid import UUID

import structlog

from gss.core.config import Settings
from gss.core.timezone import utcnow
from gss.models.job import ACTIVE_JOB_STATUSES, Job, JobStatus
from gss.models.render import SETTLED_RENDER_STATUSES, RenderStatus
from gss.services.collaborators import Collaborators
from gss.services.exceptions import PermanentError, TransientError
from gss.services.operator import settle_unfinished_renders
from gss.services.orchestration.attempt_executor import AttemptExecutor
from gss.services.orchestration.render_controller import RenderController, RenderInterrupted
from gss.services.orchestration.retry_planner import RetryPlanner, RetryPolicy
from gss.uow import UnitOfWork

logger = structlog.get_logger(__name__)

CANCELLED_REASON = "cancelled"
HALTED_REASON = "halted after sibling render failure"
CLAIM_LOST_REASON = "claim lost"
DELETED_REASON = "job deleted"

UowFactory = Callable[[], Awaitable[UnitOfWork]]


class JobInterrupted(Exception):
    """Raised when a run cannot advance its job (cancelled, deleted or claim lost)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def aggregate_status(statuses: Iterable[RenderStatus]) -> JobStatus | None:
    """Roll render states up into a job status.

    Worst case dominates: MANUAL_REVIEW_NEEDED (or ESCALATED) > FAILED > all
    PASSED. Returns None while any render is unsettled, or for no renders.
    The result depends only on the set of states, never on their order.
    """
    statuses = set(statuses)
    if not statuses or not statuses <= SETTLED_RENDER_STATUSES:
        return None
    if statuses & {RenderStatus.MANUAL_REVIEW_NEEDED, RenderStatus.ESCALATED}:
        return JobStatus.MANUAL_REVIEW
    if RenderStatus.FAILED in statuses:
        return JobStatus.FAILED
    return JobStatus.QC_REVIEW


def compute_backoff(retry_count: int, base_delay: float, max_delay: float) -> float:
    """Delay before the n-th automatic job retry: base * 2**(n-1), capped at max_delay."""
    if retry_count < 1:
        return 0.0
    return min(max_delay, base_delay * (2 ** (retry_count - 1)))


def default_parameters(settings: Settings) -> dict:
    """Attempt #1 parameter record from settings (validated by the executor)."""
    return {
        "steps": settings.default_steps,
        "sampler": settings.default_sampler,
        "cfg_scale": settings.default_cfg_scale,
        "structure_scale": settings.default_structure_scale,
    }


class JobController:
    """Runs claimed jobs for one worker.

    Args:
        uow_factory: Creates Unit of Work instances (see create_uow_factory)
        collaborators: Classifier, generator and QC evaluator
        settings: Application settings (concurrency, retry policy, defaults)
        worker_id: Claim owner; the controller only writes jobs it owns
    """

    def __init__(
        self,
        uow_factory: UowFactory,
        collaborators: Collaborators,
        settings: Settings,
        worker_id: str,
    ):
        self.uow_factory = uow_factory
        self.collaborators = collaborators
        self.settings = settings
        self.worker_id = worker_id
        self.planner = RetryPlanner(RetryPolicy.from_settings(settings))
        self.executor = AttemptExecutor(collaborators.generator, collaborators.evaluator)

    async def run(self, job_id: UUID) -> JobStatus | None:
        """Run a claimed job to a settled status.

        Returns:
            Job status after the run, or None if the job no longer exists
        """
        run = _JobRun(self, job_id)
        return await run.execute()


class _JobRun:
    """State of a single JobController.run() invocation."""

    def __init__(self, controller: JobController, job_id: UUID):
        self.controller = controller
        self.settings = controller.settings
        self.worker_id = controller.worker_id
        self.job_id = job_id
        self.log = logger.bind(job_id=str(job_id), worker_id=controller.worker_id)

        self._write_lock = asyncio.Lock()
        self._halt = asyncio.Event()
        self._semaphore = asyncio.Semaphore(controller.settings.render_concurrency)

        self.renders = RenderController(
            transaction=self.transaction,
            classifier=controller.collaborators.classifier,
            executor=controller.executor,
            planner=controller.planner,
            default_parameters=default_parameters(controller.settings),
            should_stop=self.should_stop,
            write_guard=self.write_guard,
        )

    @asynccontextmanager
    async def transaction(self):
        """Serialized Unit of Work: one writer per job."""
        async with self._write_lock:
            async with await self.controller.uow_factory() as uow:
                yield uow

    def _owned(self, job: Job) -> bool:
        return job.status in ACTIVE_JOB_STATUSES and job.worker_id == self.worker_id

    async def should_stop(self) -> str | None:
        """Stop condition checked by render loops between steps."""
        if self._halt.is_set():
            return HALTED_REASON
        async with self.transaction() as uow:
            job = await uow.jobs.get_by_id(self.job_id)
        if job is None:
            return DELETED_REASON
        if job.cancel_requested:
            return CANCELLED_REASON
        if not self._owned(job):
            return CLAIM_LOST_REASON
        return None

    async def write_guard(self, uow: UnitOfWork) -> str | None:
        """Ownership check run inside each render write, so a recovered job is never written twice."""
        job = await uow.jobs.get_for_update(self.job_id)
        if job is None:
            return DELETED_REASON
        if not self._owned(job):
            return CLAIM_LOST_REASON
        return None

    async def execute(self) -> JobStatus | None:
        async with self.transaction() as uow:
            job = await uow.jobs.get_by_id(self.job_id)
            if job is None:
                self.log.warning("job.not_found")
                return None
            if not self._owned(job):
                self.log.warning("job.not_owned", status=job.status.value, owner=job.worker_id)
                return job.status
            if job.cancel_requested:
                return await self._cancel(uow, job)
            if not job.source_images:
                return await self._fail(uow, job, "job has no source images", retryable=False)

            renders = await uow.renders.ensure_for_job(job.id, list(job.source_images))
            render_ids = [render.id for render in renders]
            status = job.status

        self.log.info("job.started", status=status.value, renders=len(render_ids))

        try:
            if status == JobStatus.PROCESSING:
                await self._fan_out(self.renders.classify, render_ids)
                status = await self._advance(JobStatus.CLASSIFIED)
            if status == JobStatus.CLASSIFIED:
                status = await self._advance(JobStatus.GENERATING)
            if status == JobStatus.GENERATING:
                await self._fan_out(self._generate, render_ids)
                status = await self._settle()
            return status
        except (RenderInterrupted, JobInterrupted) as e:
            return await self._on_interrupted(e.reason)
        except PermanentError as e:
            return await self._on_error(e, retryable=False)
        except TransientError as e:
            return await self._on_error(e, retryable=True)

    async def _fan_out(self, step: Callable[[UUID], Awaitable], render_ids: list[UUID]) -> None:
        """Run one step for every render concurrently and re-raise the dominant failure.

        Cancellation outranks permanent errors, which outrank transient errors,
        which outrank the interruptions they caused in sibling renders.
        """

        async def _bounded(render_id: UUID):
            async with self._semaphore:
                return await step(render_id)

        results = await asyncio.gather(
            *(_bounded(render_id) for render_id in render_ids), return_exceptions=True
        )
        errors = [result for result in results if isinstance(result, BaseException)]
        if not errors:
            return

        def rank(error: BaseException) -> int:
            if isinstance(error, (RenderInterrupted, JobInterrupted)):
                return 0 if error.reason == CANCELLED_REASON else 3
            if isinstance(error, PermanentError):
                return 1
            if isinstance(error, TransientError):
                return 2
            # Unexpected errors (storage, bugs) propagate to the worker first
            return -1

        raise min(errors, key=rank)

    async def _generate(self, render_id: UUID) -> RenderStatus:
        try:
            status = await self.renders.generate(render_id)
        except TransientError:
            self._halt.set()
            raise
        await self._settle()
        return status

    async def _advance(self, target: JobStatus) -> JobStatus:
        async with self.transaction() as uow:
            job = await uow.jobs.get_by_id(self.job_id)
            if job is None:
                raise JobInterrupted(DELETED_REASON)
            if job.cancel_requested:
                raise JobInterrupted(CANCELLED_REASON)
            if not self._owned(job):
                raise JobInterrupted(CLAIM_LOST_REASON)
            previous = job.status
            if target == JobStatus.CLASSIFIED:
                job.mark_classified()
            else:
                job.mark_generating()
            await uow.jobs.save(job)

        self.log.info("job.status_changed", previous=previous.value, status=target.value)
        return target

    async def _settle(self) -> JobStatus | None:
        """Recompute the aggregate status; write the job only when it changes."""
        async with self.transaction() as uow:
            job = await uow.jobs.get_by_id(self.job_id)
            if job is None:
                raise JobInterrupted(DELETED_REASON)
            statuses = await uow.renders.get_statuses(self.job_id)
            decision = aggregate_status(statuses)
            if decision is None or decision == job.status or not self._owned(job):
                return job.status

            previous = job.status
            if decision == JobStatus.QC_REVIEW:
                job.mark_qc_review()
            elif decision == JobStatus.MANUAL_REVIEW:
                needing = sum(
                    1
                    for status in statuses
                    if status in (RenderStatus.MANUAL_REVIEW_NEEDED, RenderStatus.ESCALATED)
                )
                job.mark_manual_review(f"{needing} of {len(statuses)} renders need manual review")
            else:
                failed = await self._render_errors(uow)
                await self._fail(uow, job, failed, retryable=False)
                return job.status
            job.worker_id = None
            await uow.jobs.save(job)

        self.log.info("job.status_changed", previous=previous.value, status=job.status.value)

        if job.status == JobStatus.QC_REVIEW and not self.settings.require_qc_signoff:
            async with self.transaction() as uow:
                job = await uow.jobs.get_by_id(self.job_id)
                if job is None:
                    return None
                if job.status != JobStatus.QC_REVIEW:
                    return job.status
                job.mark_completed()
                await uow.jobs.save(job)
            self.log.info(
                "job.status_changed",
                previous=JobStatus.QC_REVIEW.value,
                status=JobStatus.COMPLETED.value,
            )
        return job.status

    async def _render_errors(self, uow: UnitOfWork) -> str:
        renders = await uow.renders.get_by_job(self.job_id)
        errors = [
            f"{render.source_image_url}: {render.error_message}"
            for render in renders
            if render.status == RenderStatus.FAILED and render.error_message
        ]
        return "; ".join(errors) or "render failed"

    async def _fail(self, uow: UnitOfWork, job: Job, message: str, retryable: bool) -> JobStatus:
        """Record a job-level failure; repeated failures escalate to FATAL_ERROR."""
        job.retry_count += 1
        if job.retry_count > self.settings.max_job_retries:
            fatal = f"giving up after {job.retry_count} failures: {message}"
            await settle_unfinished_renders(uow, job.id, fatal)
            job.mark_fatal(fatal)
            await uow.jobs.save(job)
            self.log.error("job.fatal", retry_count=job.retry_count, error=message)
            return job.status

        available_at = None
        if retryable:
            delay = compute_backoff(
                job.retry_count,
                self.settings.job_retry_base_delay_seconds,
                self.settings.job_retry_max_delay_seconds,
            )
            available_at = utcnow() + timedelta(seconds=delay)
        job.mark_failed(message, retryable=retryable, available_at=available_at)
        await uow.jobs.save(job)
        self.log.warning(
            "job.failed",
            retryable=retryable,
            retry_count=job.retry_count,
            available_at=available_at.isoformat() if available_at else None,
            error=message,
        )
        return job.status

    async def _cancel(self, uow: UnitOfWork, job: Job) -> JobStatus:
        """Fail every unsettled render and end the job in FATAL_ERROR."""
        await settle_unfinished_renders(uow, job.id, CANCELLED_REASON)
        job.mark_fatal(CANCELLED_REASON)
        await uow.jobs.save(job)
        self.log.info("job.cancelled")
        return job.status

    async def _on_interrupted(self, reason: str) -> JobStatus | None:
        async with self.transaction() as uow:
            job = await uow.jobs.get_by_id(self.job_id)
            if job is None:
                self.log.warning("job.deleted_during_run")
                return None
            if job.cancel_requested and not job.is_terminal:
                return await self._cancel(uow, job)

        self.log.warning("job.run_interrupted", reason=reason, status=job.status.value)
        return job.status

    async def _on_error(self, error: Exception, retryable: bool) -> JobStatus | None:
        async with self.transaction() as uow:
            job = await uow.jobs.get_by_id(self.job_id)
            if job is None:
                return None
            if job.cancel_requested and not job.is_terminal:
                return await self._cancel(uow, job)
            if not self._owned(job):
                self.log.warning("job.claim_lost", status=job.status.value)
                return job.status
            return await self._fail(uow, job, str(error) or type(error).__name__, retryable)
