"""Wire the Replicate-backed collaborators from settings."""

from gss.core.config import Settings
from gss.services.collaborators import Collaborators
from gss.services.image_pipeline.classifier import ReplicateClassifier
from gss.services.image_pipeline.generator import ReplicateGenerator
from gss.services.image_pipeline.qc_evaluator import ReplicateQCEvaluator


def build_collaborators(settings: Settings) -> Collaborators:
    return Collaborators(
        classifier=ReplicateClassifier(settings),
        generator=ReplicateGenerator(settings),
        evaluator=ReplicateQCEvaluator(settings),
    )
