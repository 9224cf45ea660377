"""Attempt executor tests.

execute() is exercised with scripted collaborators and in-memory rows;
finalize() runs against the test database.
"""

from uuid import uuid4

import pytest

from gss.models.attempt import GenerationAttempt, GenerationParameters, QCVerdict
from gss.models.job import InvalidStateTransition, Job
from gss.models.render import Render
from gss.services.collaborators import QCResult
from gss.services.exceptions import (
    EvaluationError,
    EvaluatorUnavailableError,
    GenerationError,
    GeneratorUnavailableError,
    InvalidParametersError,
)
from gss.services.orchestration.attempt_executor import (
    AttemptExecutor,
    AttemptResult,
    validate_parameters,
)
from gss.services.orchestration.retry_planner import EVALUATOR_ERROR_REASON

IMAGE = "https://img.test/living.jpg"


@pytest.fixture
def render() -> Render:
    render = Render(job_id=uuid4(), source_image_url=IMAGE)
    render.mark_classified("living_room", 0.9, ["hdr"], "staged living room")
    render.mark_generating()
    return render


@pytest.fixture
def executor(collaborators) -> AttemptExecutor:
    return AttemptExecutor(collaborators.generator, collaborators.evaluator)


@pytest.mark.asyncio
class TestExecute:
    async def test_pass(self, executor, collaborators, render):
        attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())

        result = await executor.execute(attempt, render)

        assert result.verdict == QCVerdict.PASS
        assert result.artifact_ref == "https://renders.test/1.png"
        assert result.generator_response == {"output": "https://renders.test/1.png"}
        assert result.qc_response == {"verdict": "PASS"}
        assert result.generator_error is None
        assert result.duration_seconds >= 0

        # The evaluator sees the render context the attempt ran with
        image, number, parameters = collaborators.evaluator.calls[0]
        assert (image, number) == (IMAGE, 1)
        assert parameters == GenerationParameters().model_dump()

    async def test_fail_carries_reason_and_fix(self, executor, collaborators, render):
        collaborators.evaluator.script[IMAGE] = [
            QCResult(verdict="fail", failure_reason="warped walls", suggested_fix="reduce_structure_scale")
        ]
        attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())

        result = await executor.execute(attempt, render)

        assert result.verdict == QCVerdict.FAIL
        assert result.failure_reason == "warped walls"
        assert result.suggested_fix == "reduce_structure_scale"

    async def test_non_text_hints_are_dropped(self, executor, collaborators, render):
        collaborators.evaluator.script[IMAGE] = [
            QCResult(verdict="FAIL", failure_reason={"x": 1}, suggested_fix=["increase_steps"])
        ]
        attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())

        result = await executor.execute(attempt, render)

        assert result.verdict == QCVerdict.FAIL
        assert result.failure_reason is None
        assert result.suggested_fix is None

        attempt.record_verdict(result.verdict, result.failure_reason, result.suggested_fix)
        assert attempt.failure_reason == "unspecified failure"
        assert attempt.suggested_fix is None

    async def test_invalid_verdict_becomes_evaluator_error(self, executor, collaborators, render):
        collaborators.evaluator.script[IMAGE] = [QCResult(verdict="LOOKS GOOD", raw={"x": 1})]
        attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())

        result = await executor.execute(attempt, render)

        assert result.verdict == QCVerdict.FAIL
        assert result.failure_reason == EVALUATOR_ERROR_REASON
        assert result.suggested_fix is None
        assert result.qc_response == {"x": 1}

    async def test_evaluator_rejection_becomes_evaluator_error(self, executor, collaborators, render):
        collaborators.evaluator.script[IMAGE] = [EvaluationError("garbled answer")]
        attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())

        result = await executor.execute(attempt, render)

        assert result.verdict == QCVerdict.FAIL
        assert result.failure_reason == EVALUATOR_ERROR_REASON
        assert result.generator_error is None
        assert result.artifact_ref == "https://renders.test/1.png"

    async def test_generator_rejection_is_recorded(self, executor, collaborators, render):
        collaborators.generator.errors = [GenerationError("content policy violation")]
        attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())

        result = await executor.execute(attempt, render)

        assert result.verdict == QCVerdict.FAIL
        assert result.generator_error == "content policy violation"
        assert result.artifact_ref is None
        # The evaluator is never called without an artifact
        assert collaborators.evaluator.calls == []

    async def test_transient_errors_propagate(self, executor, collaborators, render):
        collaborators.generator.errors = [GeneratorUnavailableError("503")]
        attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())
        with pytest.raises(GeneratorUnavailableError):
            await executor.execute(attempt, render)

        collaborators.evaluator.script[IMAGE] = [EvaluatorUnavailableError("timeout")]
        with pytest.raises(EvaluatorUnavailableError):
            await executor.execute(attempt, render)

    async def test_invalid_parameters_make_no_external_call(self, executor, collaborators, render):
        attempt = GenerationAttempt.start(
            render.id, 1, {"steps": 0, "sampler": "DPM++", "cfg_scale": 7.5, "structure_scale": 0.5}
        )

        with pytest.raises(InvalidParametersError, match="steps"):
            await executor.execute(attempt, render)
        assert collaborators.generator.calls == []


def test_validate_parameters():
    params = validate_parameters(
        {"steps": 40, "sampler": "DDIM", "cfg_scale": 5.0, "structure_scale": 0.7}
    )
    assert params == GenerationParameters(steps=40, sampler="DDIM", cfg_scale=5.0, structure_scale=0.7)

    for bad in (
        {"cfg_scale": 0},
        {"structure_scale": 1.2},
        {"structure_scale": -0.1},
        {"steps": 50, "denoise": 0.3},
    ):
        with pytest.raises(InvalidParametersError):
            validate_parameters(bad)


@pytest.mark.asyncio
class TestFinalize:
    async def _in_flight_attempt(self, uow_factory) -> GenerationAttempt:
        async with await uow_factory() as uow:
            job = Job(property_id=uuid4(), source_images=[IMAGE])
            await uow.jobs.add(job)
            render = Render(job_id=job.id, source_image_url=IMAGE)
            await uow.renders.add(render)
            attempt = GenerationAttempt.start(render.id, 1, GenerationParameters())
            await uow.attempts.add(attempt)
        return attempt

    async def test_finalize_writes_outcome_once(self, uow_factory, executor):
        attempt = await self._in_flight_attempt(uow_factory)
        result = AttemptResult(
            verdict=QCVerdict.FAIL,
            failure_reason="blurry",
            suggested_fix="increase_steps",
            artifact_ref="https://renders.test/1.png",
            generator_response={"output": "https://renders.test/1.png"},
            qc_response={"verdict": "FAIL"},
        )

        async with await uow_factory() as uow:
            finalized = await executor.finalize(uow, attempt.id, result)
        assert finalized.qc_verdict == QCVerdict.FAIL

        async with await uow_factory() as uow:
            stored = await uow.attempts.get_by_id(attempt.id)
        assert stored.failure_reason == "blurry"
        assert stored.suggested_fix == "increase_steps"
        assert stored.qc_response == {"verdict": "FAIL"}

        with pytest.raises(InvalidStateTransition, match="already finalized"):
            async with await uow_factory() as uow:
                await executor.finalize(uow, attempt.id, result)

    async def test_finalize_unknown_attempt(self, uow_factory, executor):
        with pytest.raises(ValueError, match="not found"):
            async with await uow_factory() as uow:
                await executor.finalize(uow, uuid4(), AttemptResult(verdict=QCVerdict.PASS))
