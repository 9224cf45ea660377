"""Render controller: one image's classification -> generation -> QC loop.

Every store write goes through the `transaction` callable supplied by the job
controller, which serializes writes for the whole job. External calls
(classifier, generator, evaluator) always run outside a transaction.
"""

import time
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Awaitable, Callable
from uuid import UUID

import structlog

from gss.models.attempt import GenerationAttempt, GenerationParameters
from gss.models.job import InvalidStateTransition
from gss.models.render import Render, RenderStatus
from gss.services.collaborators import Classifier
from gss.services.exceptions import (
    ClassificationError,
    InvalidParametersError,
    PermanentError,
    ServiceError,
)
from gss.services.orchestration.attempt_executor import AttemptExecutor, validate_parameters
from gss.services.orchestration.retry_planner import PlanAction, RetryDecision, RetryPlanner
from gss.uow import UnitOfWork

logger = structlog.get_logger(__name__)

Transaction = Callable[[], AbstractAsyncContextManager[UnitOfWork]]
# Returns a reason string when the render loop must stop, None to continue
StopCheck = Callable[[], Awaitable[str | None]]
# Runs inside every write transaction; returns a reason when the job may no longer be written
WriteGuard = Callable[[UnitOfWork], Awaitable[str | None]]


class RenderInterrupted(Exception):
    """Raised when a render loop stops early (cancellation, lost claim, sibling failure)."""

    def __init__(self, render_id: UUID, reason: str):
        super().__init__(f"Render {render_id} interrupted: {reason}")
        self.render_id = render_id
        self.reason = reason


async def _never_stop() -> str | None:
    return None


async def _always_writable(uow: UnitOfWork) -> str | None:
    return None


class RenderController:
    """Drives one render through classification and the bounded attempt loop.

    Args:
        transaction: Opens a serialized Unit of Work for the owning job
        classifier: Shot-type classifier collaborator
        executor: Attempt executor (generator + QC evaluator)
        planner: Retry planner applied after each finalized attempt
        default_parameters: Parameter record for attempt #1
        should_stop: Checked before every classification and attempt
        write_guard: Checked inside every write transaction, before anything is written
    """

    def __init__(
        self,
        transaction: Transaction,
        classifier: Classifier,
        executor: AttemptExecutor,
        planner: RetryPlanner,
        default_parameters: GenerationParameters | dict | None = None,
        should_stop: StopCheck = _never_stop,
        write_guard: WriteGuard = _always_writable,
    ):
        self._transaction = transaction
        self.classifier = classifier
        self.executor = executor
        self.planner = planner
        self.default_parameters = (
            default_parameters if default_parameters is not None else GenerationParameters()
        )
        self._should_stop = should_stop
        self._write_guard = write_guard

    async def _check_stop(self, render_id: UUID) -> None:
        reason = await self._should_stop()
        if reason:
            logger.info("render.interrupted", render_id=str(render_id), reason=reason)
            raise RenderInterrupted(render_id, reason)

    @asynccontextmanager
    async def _write(self, render_id: UUID):
        """Transaction that refuses to write once the job is no longer ours."""
        async with self._transaction() as uow:
            reason = await self._write_guard(uow)
            if reason:
                logger.warning("render.write_refused", render_id=str(render_id), reason=reason)
                raise RenderInterrupted(render_id, reason)
            yield uow

    async def classify(self, render_id: UUID) -> Render:
        """Classify an unclassified render (no-op for renders already past classification).

        On classifier failure the render is marked FAILED and the error is
        re-raised for the job controller; the render never reaches CLASSIFIED.

        Raises:
            RenderInterrupted: Stop requested before the classifier was called, or
                the job stopped being ours before the outcome was written
            TransientError: Classifier unavailable
            PermanentError: Classifier rejected the image or answered unusably
        """
        async with self._transaction() as uow:
            render = await uow.renders.get_by_id(render_id)
            if render is None:
                raise ValueError(f"Render {render_id} not found")
            if render.status != RenderStatus.UNCLASSIFIED:
                return render
            image_ref = render.source_image_url

        await self._check_stop(render_id)

        started = time.monotonic()
        failure: ServiceError | None = None
        try:
            classification = await self.classifier.classify(image_ref)
        except ServiceError as e:
            failure = e

        async with self._write(render_id) as uow:
            render = await uow.renders.get_by_id(render_id)
            if render is None:
                raise ValueError(f"Render {render_id} not found")
            render.add_processing_time(time.monotonic() - started)

            if failure is None:
                try:
                    render.mark_classified(
                        shot_type=classification.shot_type,
                        confidence=classification.confidence,
                        tags=classification.tags,
                        prompt=classification.prompt,
                        motion_recommendation=classification.motion_recommendation,
                        analysis=classification.raw or None,
                    )
                except ValueError as e:
                    failure = ClassificationError(f"Unusable classification: {e}")

            if failure is not None:
                render.mark_failed(f"classification failed: {failure}")
            await uow.renders.save(render)

        if failure is not None:
            logger.warning(
                "render.classification_failed",
                render_id=str(render_id),
                error_type=type(failure).__name__,
                error=str(failure),
            )
            raise failure

        logger.info(
            "render.classified",
            render_id=str(render_id),
            shot_type=render.detected_shot_type,
            confidence=render.confidence,
        )
        return render

    async def generate(self, render_id: UUID) -> RenderStatus:
        """Run the attempt loop until the render settles.

        Each iteration resumes the in-flight attempt or plans the next one from
        the last finalized attempt, executes it outside a transaction, then
        finalizes it and applies the planner decision in one transaction.

        Returns:
            Settled render status (PASSED, MANUAL_REVIEW_NEEDED, ESCALATED or FAILED)

        Raises:
            RenderInterrupted: Stop requested between attempts, or the job stopped
                being ours before a result could be written
            TransientError: Generator or evaluator unavailable (attempt left in flight)
        """
        while True:
            await self._check_stop(render_id)

            try:
                async with self._write(render_id) as uow:
                    render, attempt = await self._next_attempt(uow, render_id)
            except PermanentError as e:
                return await self._fail_render(render_id, str(e))

            if attempt is None:
                return render.status

            try:
                result = await self.executor.execute(attempt, render)
            except InvalidParametersError as e:
                # No external call was made, so the slot is released
                return await self._fail_render(render_id, str(e), discard_attempt=attempt.id)

            async with self._write(render_id) as uow:
                attempt = await self.executor.finalize(uow, attempt.id, result)
                render = await uow.renders.get_by_id(render_id)
                if render is None:
                    raise ValueError(f"Render {render_id} not found")
                render.add_processing_time(result.duration_seconds)

                decision = self._plan(attempt)
                if result.generator_error and decision.action == PlanAction.RETRY:
                    render.mark_failed(f"generation failed: {result.generator_error}")
                else:
                    self._apply(render, decision, attempt)
                await uow.renders.save(render)

            if render.is_settled:
                logger.info(
                    "render.settled",
                    render_id=str(render_id),
                    status=render.status.value,
                    attempts=attempt.attempt_number,
                    processing_time_sec=render.processing_time_sec,
                )
                return render.status

    async def _next_attempt(
        self, uow: UnitOfWork, render_id: UUID
    ) -> tuple[Render, GenerationAttempt | None]:
        """Load the render and pick the attempt to execute next.

        Returns (render, None) when the render is (or has just become) settled.
        """
        render = await uow.renders.get_by_id(render_id)
        if render is None:
            raise ValueError(f"Render {render_id} not found")
        if render.is_settled:
            return render, None
        if render.status == RenderStatus.UNCLASSIFIED:
            raise InvalidStateTransition(
                f"Render {render_id} cannot enter generation before classification."
            )

        render.mark_generating()
        latest = await uow.attempts.get_latest_by_render(render_id)

        if latest is None:
            attempt = GenerationAttempt.start(render.id, 1, self.default_parameters)
            await uow.attempts.add(attempt)
            logger.info("attempt.started", render_id=str(render_id), attempt_number=1)
        elif latest.in_flight:
            attempt = latest
            logger.info(
                "attempt.resumed", render_id=str(render_id), attempt_number=attempt.attempt_number
            )
        else:
            decision = self._plan(latest)
            if decision.action != PlanAction.RETRY:
                self._apply(render, decision, latest)
                await uow.renders.save(render)
                return render, None

            attempt = GenerationAttempt.start(
                render.id, decision.next_attempt_number, decision.parameters
            )
            await uow.attempts.add(attempt)
            logger.info(
                "attempt.started",
                render_id=str(render_id),
                attempt_number=attempt.attempt_number,
                applied_fix=decision.applied_fix.value if decision.applied_fix else None,
            )

        await uow.renders.save(render)
        return render, attempt

    def _plan(self, attempt: GenerationAttempt) -> RetryDecision:
        return self.planner.plan(
            attempt.attempt_number,
            attempt.qc_verdict,
            attempt.failure_reason,
            attempt.suggested_fix,
            validate_parameters(attempt.parameters),
        )

    @staticmethod
    def _apply(render: Render, decision: RetryDecision, attempt: GenerationAttempt) -> None:
        if decision.action == PlanAction.SUCCEED:
            render.mark_passed()
        elif decision.action == PlanAction.EXHAUSTED:
            render.mark_manual_review()
        elif decision.action == PlanAction.ESCALATE:
            render.mark_escalated(
                f"unrecognized fix '{attempt.suggested_fix}' after attempt {attempt.attempt_number}"
            )
        else:
            # RETRY: the next iteration creates the attempt; record progress now
            render.stamp()

    async def _fail_render(
        self, render_id: UUID, message: str, discard_attempt: UUID | None = None
    ) -> RenderStatus:
        async with self._write(render_id) as uow:
            if discard_attempt is not None:
                attempt = await uow.attempts.get_by_id(discard_attempt)
                if attempt is not None and attempt.in_flight:
                    await uow.attempts.delete(attempt)
            render = await uow.renders.get_by_id(render_id)
            if render is None:
                raise ValueError(f"Render {render_id} not found")
            render.mark_failed(message)
            await uow.renders.save(render)

        logger.warning("render.failed", render_id=str(render_id), error=message)
        return RenderStatus.FAILED
