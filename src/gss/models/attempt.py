"""GenerationAttempt entity - one bounded try at producing a QC-passing render."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, CheckConstraint, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from gss.core.config import ATTEMPT_NUMBER_CEILING
from gss.core.timezone import utcnow
from gss.models.job import InvalidStateTransition
from gss.services.exceptions import AttemptLimitError


class QCVerdict(str, Enum):
    """Automated quality-control outcome."""

    PASS = "PASS"
    FAIL = "FAIL"


class GenerationParameters(BaseModel):
    """Typed generation parameter record stored on each attempt."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    steps: int = PydanticField(default=50, gt=0)
    sampler: str = PydanticField(default="DPM++", min_length=1)
    cfg_scale: float = PydanticField(default=7.5, gt=0)
    structure_scale: float = PydanticField(default=0.50, ge=0.0, le=1.0)


class GenerationAttempt(SQLModel, table=True):
    """GenerationAttempt records one generator + QC round for a render."""

    __tablename__ = "generation_attempts"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint(
            f"attempt_number >= 1 AND attempt_number <= {ATTEMPT_NUMBER_CEILING}",
            name="valid_attempt",
        ),
        UniqueConstraint("render_id", "attempt_number", name="uq_attempts_render_number"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    render_id: UUID = Field(foreign_key="renders.id", ondelete="CASCADE", index=True)
    attempt_number: int = Field(default=1)
    parameters: dict = Field(
        default_factory=lambda: GenerationParameters().model_dump(),
        sa_column=Column(JSON, nullable=False),
    )
    qc_verdict: Optional[QCVerdict] = Field(default=None, index=True)
    failure_reason: Optional[str] = Field(default=None)
    suggested_fix: Optional[str] = Field(default=None, max_length=100)
    artifact_ref: Optional[str] = Field(default=None)
    generator_response: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    qc_response: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    evaluated_at: Optional[datetime] = Field(default=None)

    @classmethod
    def start(
        cls,
        render_id: UUID,
        attempt_number: int,
        parameters: GenerationParameters | dict,
    ) -> "GenerationAttempt":
        """Build a new in-flight attempt.

        Raw dict parameters are stored as given and validated by the executor
        before the generator is called.

        Raises:
            AttemptLimitError: If attempt_number is outside 1..5
        """
        if not 1 <= attempt_number <= ATTEMPT_NUMBER_CEILING:
            raise AttemptLimitError(
                f"attempt_number must be within 1..{ATTEMPT_NUMBER_CEILING}, got {attempt_number}"
            )
        if isinstance(parameters, GenerationParameters):
            parameters = parameters.model_dump()
        return cls(
            render_id=render_id,
            attempt_number=attempt_number,
            parameters=dict(parameters),
        )

    @property
    def in_flight(self) -> bool:
        return self.qc_verdict is None

    def params(self) -> GenerationParameters:
        """Parse stored parameters (raises pydantic.ValidationError if malformed)."""
        return GenerationParameters.model_validate(self.parameters)

    def record_verdict(
        self,
        verdict: QCVerdict,
        failure_reason: str | None = None,
        suggested_fix: str | None = None,
        artifact_ref: str | None = None,
        generator_response: dict | None = None,
        qc_response: dict | None = None,
    ) -> None:
        """Finalize the attempt with its QC verdict (allowed exactly once).

        Failure reason and suggested fix are kept only for FAIL verdicts.

        Raises:
            InvalidStateTransition: If a verdict was already recorded
        """
        if self.qc_verdict is not None:
            raise InvalidStateTransition(
                f"Attempt {self.attempt_number} already has verdict {self.qc_verdict.value}."
            )
        self.qc_verdict = verdict
        if verdict == QCVerdict.FAIL:
            self.failure_reason = failure_reason or "unspecified failure"
            self.suggested_fix = suggested_fix[:100] if suggested_fix else None
        else:
            self.failure_reason = None
            self.suggested_fix = None
        self.artifact_ref = artifact_ref
        self.generator_response = generator_response
        self.qc_response = qc_response
        self.evaluated_at = utcnow()
