"""Image generator backed by a Replicate image-to-image model."""

import structlog

from gss.core.config import Settings
from gss.models.attempt import GenerationParameters
from gss.services.collaborators import GeneratedArtifact
from gss.services.exceptions import GenerationError, GeneratorUnavailableError
from gss.services.image_pipeline.replicate_client import output_url, run_model

logger = structlog.get_logger(__name__)

DEFAULT_PROMPT = "professionally staged interior, natural light, photorealistic"

# Sampler names used in parameter records -> scheduler names accepted by the model
SCHEDULERS = {
    "DPM++": "DPMSolverMultistep",
    "Euler a": "K_EULER_ANCESTRAL",
    "Euler": "K_EULER",
    "DDIM": "DDIM",
    "Heun": "HeunDiscrete",
    "PNDM": "PNDM",
}


def build_input(image_ref: str, parameters: GenerationParameters, prompt: str | None) -> dict:
    """Translate a parameter record into the model's input payload.

    structure_scale is how much of the source image survives, so the model's
    prompt_strength (how much it may repaint) is its complement.
    """
    return {
        "image": image_ref,
        "prompt": prompt or DEFAULT_PROMPT,
        "num_inference_steps": parameters.steps,
        "guidance_scale": parameters.cfg_scale,
        "prompt_strength": round(1.0 - parameters.structure_scale, 4),
        "scheduler": SCHEDULERS.get(parameters.sampler, parameters.sampler),
        "num_outputs": 1,
    }


class ReplicateGenerator:
    """Generator collaborator using a Replicate-hosted diffusion model."""

    def __init__(self, settings: Settings):
        self.model = settings.generator_model
        self.api_token = settings.replicate_api_token

    async def generate(
        self, image_ref: str, parameters: GenerationParameters, prompt: str | None = None
    ) -> GeneratedArtifact:
        model_input = build_input(image_ref, parameters, prompt)
        output = await run_model(
            self.model,
            model_input,
            self.api_token,
            transient=GeneratorUnavailableError,
            permanent=GenerationError,
        )

        artifact_ref = output_url(output)
        if not artifact_ref:
            raise GenerationError(f"Unexpected output format from Replicate: {type(output)}")

        logger.debug("generator.answered", image_ref=image_ref, artifact_ref=artifact_ref)
        return GeneratedArtifact(
            artifact_ref=artifact_ref,
            raw_response={"model": self.model, "input": model_input, "output": artifact_ref},
        )
