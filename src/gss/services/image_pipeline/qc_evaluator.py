"""QC evaluator backed by a Replicate vision-language model."""

import structlog

from gss.core.config import Settings
from gss.services.collaborators import QCResult, RenderContext
from gss.services.exceptions import EvaluationError, EvaluatorUnavailableError
from gss.services.image_pipeline.replicate_client import extract_json, output_text, run_model

logger = structlog.get_logger(__name__)

QC_PROMPT_TEMPLATE = (
    "You are the quality reviewer for a virtually staged real-estate photo "
    "(shot type: {shot_type}; staging brief: {prompt}). Check that walls, windows and doors "
    "keep their original geometry, that furniture is plausible and that there are no "
    "artifacts. Answer with a single JSON object and nothing else, using these keys: "
    '"verdict" ("PASS" or "FAIL"), "failure_reason" (short text, only when failing), '
    '"suggested_fix" (only when failing; one of: reduce_structure_scale, '
    "increase_structure_scale, increase_steps, reduce_steps, reduce_cfg_scale, "
    "increase_cfg_scale, change_sampler)."
)


def _text(value) -> str | None:
    """Keep a free-text answer field only when the model returned a non-empty string."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class ReplicateQCEvaluator:
    """QC evaluator collaborator using a Replicate-hosted vision model.

    Answers that cannot be parsed come back with no verdict; the executor
    records those as FAIL("evaluator error").
    """

    def __init__(self, settings: Settings):
        self.model = settings.qc_model
        self.api_token = settings.replicate_api_token

    async def evaluate(self, artifact_ref: str, context: RenderContext) -> QCResult:
        question = QC_PROMPT_TEMPLATE.format(
            shot_type=context.shot_type or "unknown",
            prompt=context.prompt or "none",
        )
        output = await run_model(
            self.model,
            {"image": artifact_ref, "prompt": question, "temperature": 0.1},
            self.api_token,
            transient=EvaluatorUnavailableError,
            permanent=EvaluationError,
        )
        text = output_text(output)

        try:
            payload = extract_json(text)
        except ValueError:
            logger.warning("qc.unparseable_answer", artifact_ref=artifact_ref, answer=text[:500])
            return QCResult(verdict=None, raw={"answer": text})

        verdict = payload.get("verdict")
        if not isinstance(verdict, str):
            verdict = None
        logger.debug(
            "qc.answered",
            artifact_ref=artifact_ref,
            attempt_number=context.attempt_number,
            verdict=verdict,
        )
        return QCResult(
            verdict=verdict,
            failure_reason=_text(payload.get("failure_reason")),
            suggested_fix=_text(payload.get("suggested_fix")),
            raw=payload,
        )
