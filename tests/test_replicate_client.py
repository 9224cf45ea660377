"""Replicate adapter tests.

The SDK is mocked at the module boundary; these tests cover error
classification and how model answers are turned into collaborator results.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from gss.core.config import Settings
from gss.models.attempt import GenerationParameters
from gss.services.collaborators import RenderContext
from gss.services.exceptions import (
    ClassificationError,
    ConfigurationError,
    GenerationError,
    GeneratorUnavailableError,
    PermanentError,
    TransientError,
)
from gss.services.image_pipeline.classifier import ReplicateClassifier
from gss.services.image_pipeline.generator import ReplicateGenerator, build_input
from gss.services.image_pipeline.qc_evaluator import ReplicateQCEvaluator
from gss.services.image_pipeline.replicate_client import (
    classify_error,
    extract_json,
    output_text,
    output_url,
    run_model,
)

IMAGE = "https://img.test/lounge.jpg"


@pytest.fixture
def replicate_settings():
    return Settings(APP_ENV="test", REPLICATE_API_TOKEN="r8_test_token")


@pytest.mark.parametrize(
    ("exception", "expected_type", "prefix"),
    [
        (Exception("Request timed out after 60s"), TransientError, "Network timeout"),
        (Exception("HTTP 429 Too Many Requests"), TransientError, "Rate limit exceeded"),
        (Exception("503 Service Unavailable"), TransientError, "Service unavailable"),
        (Exception("401 Unauthorized"), PermanentError, "Authentication failed"),
        (Exception("Output flagged by content policy"), PermanentError, "Content policy violation"),
        (ConnectionError("connection refused"), TransientError, "Connection error"),
        (Exception("model crashed"), PermanentError, "Permanent error"),
    ],
)
def test_classify_error(exception, expected_type, prefix):
    error = classify_error(exception)

    assert isinstance(error, expected_type)
    assert str(error).startswith(prefix)


def test_classify_error_uses_given_subclasses():
    transient = classify_error(Exception("rate limit hit"), GeneratorUnavailableError, GenerationError)
    permanent = classify_error(Exception("nsfw content"), GeneratorUnavailableError, GenerationError)

    assert isinstance(transient, GeneratorUnavailableError)
    assert isinstance(permanent, GenerationError)


@pytest.mark.asyncio
async def test_run_model_requires_token():
    with pytest.raises(ConfigurationError, match="REPLICATE_API_TOKEN"):
        await run_model("owner/model", {"image": IMAGE}, "")


@pytest.mark.asyncio
async def test_run_model_returns_output():
    with patch("gss.services.image_pipeline.replicate_client.replicate.Client") as MockClient:
        MockClient.return_value.run.return_value = ["https://out.test/1.png"]

        output = await run_model("owner/model", {"image": IMAGE}, "r8_test_token")

    assert output == ["https://out.test/1.png"]
    MockClient.assert_called_once_with(api_token="r8_test_token")
    MockClient.return_value.run.assert_called_once_with("owner/model", input={"image": IMAGE})


@pytest.mark.asyncio
async def test_run_model_network_error_is_transient():
    with patch("gss.services.image_pipeline.replicate_client.replicate.Client") as MockClient:
        MockClient.return_value.run.side_effect = ConnectionError("connection refused")

        with pytest.raises(GeneratorUnavailableError, match="Connection error"):
            await run_model(
                "owner/model",
                {"image": IMAGE},
                "r8_test_token",
                transient=GeneratorUnavailableError,
                permanent=GenerationError,
            )


@pytest.mark.asyncio
async def test_run_model_unexpected_error_is_permanent():
    with patch("gss.services.image_pipeline.replicate_client.replicate.Client") as MockClient:
        MockClient.return_value.run.side_effect = RuntimeError("boom")

        with pytest.raises(GenerationError, match="Unexpected error: boom"):
            await run_model(
                "owner/model",
                {"image": IMAGE},
                "r8_test_token",
                transient=GeneratorUnavailableError,
                permanent=GenerationError,
            )


def test_output_helpers():
    assert output_text(None) == ""
    assert output_text(iter(["{", '"a": 1', "}"])) == '{"a": 1}'

    assert output_url([]) is None
    assert output_url(None) is None
    assert output_url(["https://out.test/1.png", "https://out.test/2.png"]) == "https://out.test/1.png"
    assert output_url(SimpleNamespace(url="https://out.test/file.png")) == "https://out.test/file.png"

    assert extract_json('Sure! {"verdict": "PASS"} Hope that helps.') == {"verdict": "PASS"}
    with pytest.raises(ValueError):
        extract_json("no json here")


@pytest.mark.asyncio
async def test_classifier_parses_answer(replicate_settings):
    answer = [
        "Here is the analysis: ",
        '{"shot_type": "Kitchen", "confidence": 0.8, "tags": "HDR, wide_angle", ',
        '"prompt": "modern kitchen with oak cabinets"}',
    ]
    with patch(
        "gss.services.image_pipeline.classifier.run_model", AsyncMock(return_value=answer)
    ) as mock_run:
        result = await ReplicateClassifier(replicate_settings).classify(IMAGE)

    assert result.shot_type == "kitchen"
    assert result.confidence == 0.8
    assert result.tags == frozenset({"hdr", "wide_angle"})
    assert result.prompt == "modern kitchen with oak cabinets"
    assert result.motion_recommendation is None
    assert mock_run.await_args.kwargs["permanent"] is ClassificationError


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "answer",
    [
        "I cannot tell what this room is.",
        '{"shot_type": "kitchen", "confidence": 1.5, "prompt": "kitchen"}',
        '{"shot_type": "kitchen", "confidence": "high", "prompt": "kitchen"}',
        '{"shot_type": "kitchen", "confidence": 0.7}',
        '{"confidence": 0.7, "prompt": "kitchen"}',
        '{"shot_type": "kitchen", "confidence": 0.7, "prompt": "kitchen", "tags": 5}',
        '{"shot_type": "kitchen", "confidence": 0.7, "prompt": "kitchen", "tags": [1, 2]}',
        '{"shot_type": ["kitchen"], "confidence": 0.7, "prompt": "kitchen"}',
    ],
)
async def test_classifier_rejects_unusable_answer(replicate_settings, answer):
    with patch("gss.services.image_pipeline.classifier.run_model", AsyncMock(return_value=answer)):
        with pytest.raises(ClassificationError):
            await ReplicateClassifier(replicate_settings).classify(IMAGE)


def make_context() -> RenderContext:
    return RenderContext(
        render_id=uuid4(),
        source_image_url=IMAGE,
        shot_type="living_room",
        prompt="cosy lounge",
        attempt_number=2,
        parameters=GenerationParameters(),
    )


@pytest.mark.asyncio
async def test_qc_evaluator_parses_verdict(replicate_settings):
    answer = '{"verdict": "FAIL", "failure_reason": "warped window", "suggested_fix": "reduce_structure_scale"}'
    with patch("gss.services.image_pipeline.qc_evaluator.run_model", AsyncMock(return_value=answer)):
        result = await ReplicateQCEvaluator(replicate_settings).evaluate(
            "https://out.test/1.png", make_context()
        )

    assert result.verdict == "FAIL"
    assert result.failure_reason == "warped window"
    assert result.suggested_fix == "reduce_structure_scale"


@pytest.mark.asyncio
async def test_qc_evaluator_unparseable_answer_has_no_verdict(replicate_settings):
    answer = "Looks great to me!"
    with patch("gss.services.image_pipeline.qc_evaluator.run_model", AsyncMock(return_value=answer)):
        result = await ReplicateQCEvaluator(replicate_settings).evaluate(
            "https://out.test/1.png", make_context()
        )

    assert result.verdict is None
    assert result.raw == {"answer": answer}


@pytest.mark.asyncio
async def test_qc_evaluator_drops_non_text_fields(replicate_settings):
    answer = (
        '{"verdict": "FAIL", "failure_reason": {"x": 1},'
        ' "suggested_fix": ["reduce_structure_scale"]}'
    )
    with patch("gss.services.image_pipeline.qc_evaluator.run_model", AsyncMock(return_value=answer)):
        result = await ReplicateQCEvaluator(replicate_settings).evaluate(
            "https://out.test/1.png", make_context()
        )

    assert result.verdict == "FAIL"
    assert result.failure_reason is None
    assert result.suggested_fix is None
    assert result.raw["suggested_fix"] == ["reduce_structure_scale"]


@pytest.mark.asyncio
async def test_qc_evaluator_non_string_verdict_is_missing(replicate_settings):
    answer = '{"verdict": true, "failure_reason": "  "}'
    with patch("gss.services.image_pipeline.qc_evaluator.run_model", AsyncMock(return_value=answer)):
        result = await ReplicateQCEvaluator(replicate_settings).evaluate(
            "https://out.test/1.png", make_context()
        )

    assert result.verdict is None
    assert result.failure_reason is None


def test_generator_input_mapping():
    parameters = GenerationParameters(steps=60, sampler="Euler a", cfg_scale=6.0, structure_scale=0.7)

    model_input = build_input(IMAGE, parameters, None)

    assert model_input["prompt_strength"] == 0.3
    assert model_input["scheduler"] == "K_EULER_ANCESTRAL"
    assert model_input["num_inference_steps"] == 60
    assert model_input["guidance_scale"] == 6.0
    assert model_input["prompt"]

    custom = build_input(IMAGE, GenerationParameters(sampler="LMS"), "staged bedroom")
    assert custom["scheduler"] == "LMS"
    assert custom["prompt"] == "staged bedroom"


@pytest.mark.asyncio
async def test_generator_returns_artifact(replicate_settings):
    output = [SimpleNamespace(url="https://out.test/render.png")]
    with patch("gss.services.image_pipeline.generator.run_model", AsyncMock(return_value=output)):
        artifact = await ReplicateGenerator(replicate_settings).generate(
            IMAGE, GenerationParameters(), "staged lounge"
        )

    assert artifact.artifact_ref == "https://out.test/render.png"
    assert artifact.raw_response["output"] == "https://out.test/render.png"
    assert artifact.raw_response["input"]["prompt"] == "staged lounge"


@pytest.mark.asyncio
async def test_generator_empty_output_is_rejection(replicate_settings):
    with patch("gss.services.image_pipeline.generator.run_model", AsyncMock(return_value=[])):
        with pytest.raises(GenerationError, match="Unexpected output format"):
            await ReplicateGenerator(replicate_settings).generate(IMAGE, GenerationParameters())


def test_settings_require_token_outside_tests():
    with pytest.raises(ValueError, match="REPLICATE_API_TOKEN"):
        Settings(APP_ENV="production", REPLICATE_API_TOKEN="")
