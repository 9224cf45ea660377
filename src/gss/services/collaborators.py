"""Contracts for the external collaborators driven by the orchestrator.

The classifier, generator and QC evaluator are opaque services. Implementations
raise TransientError subclasses when the service is unavailable and
PermanentError subclasses when it rejects the request.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from gss.models.attempt import GenerationParameters


@dataclass(frozen=True)
class Classification:
    """Classifier answer for one source image."""

    shot_type: str
    confidence: float
    tags: frozenset[str]
    prompt: str
    motion_recommendation: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GeneratedArtifact:
    """Generator answer: where the render lives plus the untouched provider payload."""

    artifact_ref: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QCResult:
    """QC evaluator answer. `verdict` is kept as received and normalized downstream."""

    verdict: str | None
    failure_reason: str | None = None
    suggested_fix: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RenderContext:
    """What the generator and evaluator know about the render being attempted."""

    render_id: UUID
    source_image_url: str
    shot_type: str | None
    prompt: str | None
    attempt_number: int
    parameters: GenerationParameters


class Classifier(Protocol):
    async def classify(self, image_ref: str) -> Classification: ...


class Generator(Protocol):
    async def generate(
        self, image_ref: str, parameters: GenerationParameters, prompt: str | None = None
    ) -> GeneratedArtifact: ...


class QCEvaluator(Protocol):
    async def evaluate(self, artifact_ref: str, context: RenderContext) -> QCResult: ...


@dataclass(frozen=True)
class Collaborators:
    """The three external services a worker needs to run jobs."""

    classifier: Classifier
    generator: Generator
    evaluator: QCEvaluator
