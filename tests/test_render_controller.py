"""Render controller tests: classification and the bounded attempt loop for one render."""

from contextlib import asynccontextmanager
from uuid import uuid4

import pytest

from gss.models.attempt import GenerationAttempt, QCVerdict
from gss.models.job import Job
from gss.models.render import Render, RenderStatus
from gss.services.collaborators import QCResult
from gss.services.exceptions import (
    ClassificationError,
    ClassifierUnavailableError,
    GenerationError,
    GeneratorUnavailableError,
)
from gss.services.orchestration.attempt_executor import AttemptExecutor
from gss.services.orchestration.render_controller import RenderController, RenderInterrupted
from gss.services.orchestration.retry_planner import RetryPlanner

IMAGE = "https://img.test/bedroom.jpg"


def make_controller(uow_factory, collaborators, **kwargs) -> RenderController:
    @asynccontextmanager
    async def transaction():
        async with await uow_factory() as uow:
            yield uow

    return RenderController(
        transaction=transaction,
        classifier=collaborators.classifier,
        executor=AttemptExecutor(collaborators.generator, collaborators.evaluator),
        planner=RetryPlanner(),
        **kwargs,
    )


async def create_render(uow_factory, classified: bool = False) -> Render:
    async with await uow_factory() as uow:
        job = Job(property_id=uuid4(), source_images=[IMAGE])
        await uow.jobs.add(job)
        render = Render(job_id=job.id, source_image_url=IMAGE)
        if classified:
            render.mark_classified("bedroom", 0.8, ["low_light"], "cosy bedroom")
        await uow.renders.add(render)
    return render


async def load(uow_factory, render_id):
    async with await uow_factory() as uow:
        render = await uow.renders.get_by_id(render_id)
        attempts = await uow.attempts.get_by_render(render_id)
    return render, attempts


@pytest.mark.asyncio
class TestClassify:
    async def test_records_analysis(self, uow_factory, collaborators):
        render = await create_render(uow_factory)
        controller = make_controller(uow_factory, collaborators)

        await controller.classify(render.id)

        stored, _ = await load(uow_factory, render.id)
        assert stored.status == RenderStatus.CLASSIFIED
        assert stored.detected_shot_type == "living_room"
        assert stored.confidence == 0.92
        assert stored.technical_tags == ["hdr", "wide_angle"]
        assert stored.generated_prompt == "bright living room with mid-century furniture"
        assert stored.full_analysis == {"shot_type": "living_room", "confidence": 0.92}
        assert stored.processing_time_sec is not None

    async def test_already_classified_is_a_no_op(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        controller = make_controller(uow_factory, collaborators)

        await controller.classify(render.id)

        assert collaborators.classifier.calls == []

    async def test_classifier_rejection_fails_render(self, uow_factory, collaborators):
        render = await create_render(uow_factory)
        collaborators.classifier.errors[IMAGE] = ClassificationError("not a property photo")
        controller = make_controller(uow_factory, collaborators)

        with pytest.raises(ClassificationError):
            await controller.classify(render.id)

        stored, attempts = await load(uow_factory, render.id)
        assert stored.status == RenderStatus.FAILED
        assert stored.detected_shot_type is None
        assert stored.confidence is None
        assert "not a property photo" in stored.error_message
        assert attempts == []

    async def test_classifier_outage_is_transient(self, uow_factory, collaborators):
        render = await create_render(uow_factory)
        collaborators.classifier.errors[IMAGE] = ClassifierUnavailableError("503")
        controller = make_controller(uow_factory, collaborators)

        with pytest.raises(ClassifierUnavailableError):
            await controller.classify(render.id)

        stored, _ = await load(uow_factory, render.id)
        assert stored.status == RenderStatus.FAILED

    async def test_stop_before_classifier_call(self, uow_factory, collaborators):
        render = await create_render(uow_factory)

        async def stop():
            return "cancelled"

        controller = make_controller(uow_factory, collaborators, should_stop=stop)

        with pytest.raises(RenderInterrupted) as excinfo:
            await controller.classify(render.id)

        assert excinfo.value.reason == "cancelled"
        assert collaborators.classifier.calls == []


@pytest.mark.asyncio
class TestGenerate:
    async def test_fixes_applied_until_pass(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        warped = QCResult(
            verdict="FAIL", failure_reason="warped walls", suggested_fix="reduce_structure_scale"
        )
        collaborators.evaluator.script[IMAGE] = [warped, warped]
        controller = make_controller(uow_factory, collaborators)

        status = await controller.generate(render.id)

        assert status == RenderStatus.PASSED
        stored, attempts = await load(uow_factory, render.id)
        assert stored.status == RenderStatus.PASSED
        assert [a.attempt_number for a in attempts] == [1, 2, 3]
        assert [a.parameters["structure_scale"] for a in attempts] == [0.5, 0.4, 0.3]
        assert [a.qc_verdict for a in attempts] == [QCVerdict.FAIL, QCVerdict.FAIL, QCVerdict.PASS]
        assert attempts[0].failure_reason == "warped walls"

    async def test_exhausts_after_five_failures(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        collaborators.evaluator.default = QCResult(verdict="FAIL", failure_reason="artifacts")
        controller = make_controller(uow_factory, collaborators)

        status = await controller.generate(render.id)

        assert status == RenderStatus.MANUAL_REVIEW_NEEDED
        _, attempts = await load(uow_factory, render.id)
        assert [a.attempt_number for a in attempts] == [1, 2, 3, 4, 5]
        assert len(collaborators.generator.calls) == 5

    async def test_unknown_fix_escalates(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        collaborators.evaluator.script[IMAGE] = [
            QCResult(verdict="FAIL", failure_reason="wrong style", suggested_fix="make it baroque")
        ]
        controller = make_controller(uow_factory, collaborators)

        status = await controller.generate(render.id)

        assert status == RenderStatus.ESCALATED
        stored, attempts = await load(uow_factory, render.id)
        assert len(attempts) == 1
        assert "make it baroque" in stored.error_message

    async def test_generator_rejection_fails_render(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        collaborators.generator.errors = [GenerationError("content policy violation")]
        controller = make_controller(uow_factory, collaborators)

        status = await controller.generate(render.id)

        assert status == RenderStatus.FAILED
        stored, attempts = await load(uow_factory, render.id)
        assert stored.error_message == "generation failed: content policy violation"
        assert len(attempts) == 1
        assert attempts[0].qc_verdict == QCVerdict.FAIL

    async def test_transient_error_leaves_attempt_in_flight_and_resumes(
        self, uow_factory, collaborators
    ):
        render = await create_render(uow_factory, classified=True)
        collaborators.generator.errors = [GeneratorUnavailableError("rate limit")]
        controller = make_controller(uow_factory, collaborators)

        with pytest.raises(GeneratorUnavailableError):
            await controller.generate(render.id)

        stored, attempts = await load(uow_factory, render.id)
        assert stored.status == RenderStatus.GENERATING
        assert len(attempts) == 1
        assert attempts[0].in_flight

        # A second run resumes attempt 1 instead of creating attempt 2
        status = await controller.generate(render.id)

        assert status == RenderStatus.PASSED
        _, attempts = await load(uow_factory, render.id)
        assert [a.attempt_number for a in attempts] == [1]
        assert attempts[0].qc_verdict == QCVerdict.PASS

    async def test_replans_from_last_finalized_attempt(self, uow_factory, collaborators):
        """A run that stopped between attempts continues with the next number."""
        render = await create_render(uow_factory, classified=True)
        async with await uow_factory() as uow:
            stored = await uow.renders.get_by_id(render.id)
            stored.mark_generating()
            await uow.renders.save(stored)
            attempt = GenerationAttempt.start(
                render.id,
                1,
                {"steps": 50, "sampler": "DPM++", "cfg_scale": 7.5, "structure_scale": 0.5},
            )
            attempt.record_verdict(QCVerdict.FAIL, "halo", "increase_steps")
            await uow.attempts.add(attempt)

        controller = make_controller(uow_factory, collaborators)
        status = await controller.generate(render.id)

        assert status == RenderStatus.PASSED
        _, attempts = await load(uow_factory, render.id)
        assert [a.attempt_number for a in attempts] == [1, 2]
        assert attempts[1].parameters["steps"] == 60

    async def test_settled_render_is_left_alone(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        controller = make_controller(uow_factory, collaborators)
        await controller.generate(render.id)

        status = await controller.generate(render.id)

        assert status == RenderStatus.PASSED
        assert len(collaborators.generator.calls) == 1

    async def test_invalid_parameters_fail_without_consuming_attempt(
        self, uow_factory, collaborators
    ):
        render = await create_render(uow_factory, classified=True)
        controller = make_controller(
            uow_factory,
            collaborators,
            default_parameters={"steps": 50, "sampler": "DPM++", "cfg_scale": -1, "structure_scale": 0.5},
        )

        status = await controller.generate(render.id)

        assert status == RenderStatus.FAILED
        stored, attempts = await load(uow_factory, render.id)
        assert attempts == []
        assert "cfg_scale" in stored.error_message
        assert collaborators.generator.calls == []

    async def test_stop_between_attempts(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        collaborators.evaluator.default = QCResult(verdict="FAIL", failure_reason="artifacts")
        checks = []

        async def stop_after_two_attempts():
            checks.append(1)
            return "cancelled" if len(checks) > 2 else None

        controller = make_controller(uow_factory, collaborators, should_stop=stop_after_two_attempts)

        with pytest.raises(RenderInterrupted):
            await controller.generate(render.id)

        stored, attempts = await load(uow_factory, render.id)
        assert [a.attempt_number for a in attempts] == [1, 2]
        assert all(not a.in_flight for a in attempts)
        assert stored.status == RenderStatus.GENERATING

    async def test_refused_write_keeps_attempt_in_flight(self, uow_factory, collaborators):
        render = await create_render(uow_factory, classified=True)
        writes = []

        async def writable_once(uow):
            writes.append(1)
            return "claim lost" if len(writes) > 1 else None

        controller = make_controller(uow_factory, collaborators, write_guard=writable_once)

        with pytest.raises(RenderInterrupted) as excinfo:
            await controller.generate(render.id)

        assert excinfo.value.reason == "claim lost"
        stored, attempts = await load(uow_factory, render.id)
        # The evaluator passed the attempt, but nothing of the result was written
        assert len(collaborators.evaluator.calls) == 1
        assert stored.status == RenderStatus.GENERATING
        assert stored.processing_time_sec is None
        (attempt,) = attempts
        assert attempt.in_flight
