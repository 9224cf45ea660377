"""Attempt executor: runs one generation attempt and records its outcome.

`execute()` performs the two external calls (generator, then QC evaluator)
outside any transaction. `finalize()` writes the outcome into the attempt row
and is called inside the render controller's transaction, so the attempt and
its render advance together.
"""

import time
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog
from pydantic import ValidationError

from gss.models.attempt import GenerationAttempt, GenerationParameters, QCVerdict
from gss.models.job import InvalidStateTransition
from gss.models.render import Render
from gss.services.collaborators import Generator, QCEvaluator, RenderContext
from gss.services.exceptions import InvalidParametersError, PermanentError
from gss.services.orchestration.retry_planner import EVALUATOR_ERROR_REASON, normalize_verdict
from gss.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one executed attempt, ready to be written by finalize()."""

    verdict: QCVerdict
    failure_reason: str | None = None
    suggested_fix: str | None = None
    artifact_ref: str | None = None
    generator_response: dict[str, Any] | None = None
    qc_response: dict[str, Any] | None = None
    # Set when the generator rejected the request; the render is failed
    generator_error: str | None = None
    duration_seconds: float = 0.0


def validate_parameters(raw: dict) -> GenerationParameters:
    """Parse a stored parameter record.

    Raises:
        InvalidParametersError: If steps <= 0, cfg_scale <= 0, structure_scale
            outside [0, 1], or the record is otherwise malformed
    """
    try:
        return GenerationParameters.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'parameters'}: {error['msg']}"
            for error in e.errors()
        )
        raise InvalidParametersError(f"Invalid generation parameters: {problems}") from e


def _text(value: Any) -> str | None:
    # Evaluator hints are free text; anything else is dropped before it reaches the store
    return value if isinstance(value, str) and value else None


class AttemptExecutor:
    """Drives the generator and QC evaluator for a single attempt."""

    def __init__(self, generator: Generator, evaluator: QCEvaluator):
        self.generator = generator
        self.evaluator = evaluator

    async def execute(self, attempt: GenerationAttempt, render: Render) -> AttemptResult:
        """Run the generator and the QC evaluator for one attempt.

        Args:
            attempt: In-flight attempt (its parameters are validated here)
            render: Owning render, supplying the image and prompt context

        Returns:
            AttemptResult with a normalized verdict. Missing or invalid
            verdicts and evaluator rejections become FAIL("evaluator error");
            generator rejections become FAIL with the generator's message.

        Raises:
            InvalidParametersError: Parameters failed validation (no external call made)
            TransientError: Generator or evaluator unavailable (attempt stays in flight)
        """
        parameters = validate_parameters(attempt.parameters)
        started = time.monotonic()

        log = logger.bind(
            render_id=str(render.id),
            attempt_number=attempt.attempt_number,
        )
        log.info("attempt.executing", parameters=parameters.model_dump())

        try:
            artifact = await self.generator.generate(
                render.source_image_url, parameters, prompt=render.generated_prompt
            )
        except PermanentError as e:
            log.warning("attempt.generator_rejected", error=str(e))
            return AttemptResult(
                verdict=QCVerdict.FAIL,
                failure_reason=str(e) or "generator error",
                generator_error=str(e) or "generator error",
                duration_seconds=time.monotonic() - started,
            )

        context = RenderContext(
            render_id=render.id,
            source_image_url=render.source_image_url,
            shot_type=render.detected_shot_type,
            prompt=render.generated_prompt,
            attempt_number=attempt.attempt_number,
            parameters=parameters,
        )

        try:
            qc = await self.evaluator.evaluate(artifact.artifact_ref, context)
        except PermanentError as e:
            # Any evaluator rejection counts as FAIL; it never fails the render on its own
            log.warning("attempt.evaluator_rejected", error=str(e))
            return AttemptResult(
                verdict=QCVerdict.FAIL,
                failure_reason=EVALUATOR_ERROR_REASON,
                artifact_ref=artifact.artifact_ref,
                generator_response=artifact.raw_response,
                duration_seconds=time.monotonic() - started,
            )

        verdict = normalize_verdict(qc.verdict)
        if verdict is None:
            log.warning("attempt.invalid_verdict", verdict=qc.verdict)
            return AttemptResult(
                verdict=QCVerdict.FAIL,
                failure_reason=EVALUATOR_ERROR_REASON,
                artifact_ref=artifact.artifact_ref,
                generator_response=artifact.raw_response,
                qc_response=qc.raw or None,
                duration_seconds=time.monotonic() - started,
            )

        return AttemptResult(
            verdict=verdict,
            failure_reason=_text(qc.failure_reason),
            suggested_fix=_text(qc.suggested_fix),
            artifact_ref=artifact.artifact_ref,
            generator_response=artifact.raw_response,
            qc_response=qc.raw or None,
            duration_seconds=time.monotonic() - started,
        )

    async def finalize(
        self, uow: UnitOfWork, attempt_id: UUID, result: AttemptResult
    ) -> GenerationAttempt:
        """Write an attempt's outcome (exactly one row, exactly once).

        Raises:
            ValueError: If the attempt does not exist
            InvalidStateTransition: If the attempt already has a verdict
        """
        attempt = await uow.attempts.get_by_id(attempt_id)
        if attempt is None:
            raise ValueError(f"Attempt {attempt_id} not found")
        if not attempt.in_flight:
            raise InvalidStateTransition(
                f"Attempt {attempt.attempt_number} of render {attempt.render_id} is already finalized."
            )

        attempt.record_verdict(
            result.verdict,
            failure_reason=result.failure_reason,
            suggested_fix=result.suggested_fix,
            artifact_ref=result.artifact_ref,
            generator_response=result.generator_response,
            qc_response=result.qc_response,
        )
        await uow.attempts.save(attempt)

        logger.info(
            "attempt.finalized",
            render_id=str(attempt.render_id),
            attempt_number=attempt.attempt_number,
            verdict=attempt.qc_verdict.value if attempt.qc_verdict else None,
            failure_reason=attempt.failure_reason,
            suggested_fix=attempt.suggested_fix,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return attempt
