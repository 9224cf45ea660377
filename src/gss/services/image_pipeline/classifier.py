"""Shot-type classifier backed by a Replicate vision-language model."""

import structlog

from gss.core.config import Settings
from gss.services.collaborators import Classification
from gss.services.exceptions import ClassificationError, ClassifierUnavailableError
from gss.services.image_pipeline.replicate_client import extract_json, output_text, run_model

logger = structlog.get_logger(__name__)

CLASSIFY_PROMPT = (
    "You are analysing a real-estate listing photograph. Answer with a single JSON object "
    "and nothing else, using these keys: "
    '"shot_type" (one of: exterior_front, exterior_rear, aerial, living_room, kitchen, '
    "dining_room, bedroom, bathroom, office, hallway, garden, pool, other), "
    '"confidence" (number between 0 and 1), '
    '"tags" (list of short technical tags such as "wide_angle", "low_light", "hdr"), '
    '"prompt" (one sentence describing how the room should look after virtual staging), '
    '"motion_recommendation" (one of: static, pan_left, pan_right, push_in, pull_out, orbit).'
)


def parse_classification(payload: dict) -> Classification:
    """Build a Classification from the model's JSON answer.

    Raises:
        ClassificationError: If required keys are missing or malformed
    """
    shot_type = payload.get("shot_type")
    shot_type = shot_type.strip() if isinstance(shot_type, str) else ""
    if not shot_type:
        raise ClassificationError("Classifier answer has no shot_type")

    try:
        confidence = float(payload.get("confidence"))
    except (TypeError, ValueError) as e:
        raise ClassificationError(f"Classifier confidence is not a number: {e}") from e
    if not 0.0 <= confidence <= 1.0:
        raise ClassificationError(f"Classifier confidence out of range: {confidence}")

    tags = payload.get("tags") or []
    if isinstance(tags, str):
        tags = [tag.strip() for tag in tags.split(",")]
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        raise ClassificationError(f"Classifier tags must be a list of strings, got {tags!r}")

    prompt = payload.get("prompt")
    prompt = prompt.strip() if isinstance(prompt, str) else ""
    if not prompt:
        raise ClassificationError("Classifier answer has no prompt")

    motion = payload.get("motion_recommendation")
    return Classification(
        shot_type=shot_type.lower(),
        confidence=confidence,
        tags=frozenset(tag.strip().lower() for tag in tags if tag.strip()),
        prompt=prompt,
        motion_recommendation=(motion.strip() or None) if isinstance(motion, str) else None,
        raw=payload,
    )


class ReplicateClassifier:
    """Classifier collaborator using a Replicate-hosted vision model."""

    def __init__(self, settings: Settings):
        self.model = settings.classifier_model
        self.api_token = settings.replicate_api_token

    async def classify(self, image_ref: str) -> Classification:
        output = await run_model(
            self.model,
            {"image": image_ref, "prompt": CLASSIFY_PROMPT, "temperature": 0.2},
            self.api_token,
            transient=ClassifierUnavailableError,
            permanent=ClassificationError,
        )
        text = output_text(output)

        try:
            payload = extract_json(text)
        except ValueError as e:
            raise ClassificationError(f"Unparseable classifier answer: {e}") from e

        classification = parse_classification(payload)
        logger.debug(
            "classifier.answered",
            image_ref=image_ref,
            shot_type=classification.shot_type,
            confidence=classification.confidence,
        )
        return classification
