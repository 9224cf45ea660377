"""Render entity - one source image's classification and generation record."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from gss.core.timezone import utcnow
from gss.models.job import InvalidStateTransition


class RenderStatus(str, Enum):
    """Render lifecycle status."""

    UNCLASSIFIED = "UNCLASSIFIED"
    CLASSIFIED = "CLASSIFIED"
    GENERATING = "GENERATING"
    PASSED = "PASSED"
    MANUAL_REVIEW_NEEDED = "MANUAL_REVIEW_NEEDED"
    ESCALATED = "ESCALATED"
    FAILED = "FAILED"


SETTLED_RENDER_STATUSES = frozenset(
    {
        RenderStatus.PASSED,
        RenderStatus.MANUAL_REVIEW_NEEDED,
        RenderStatus.ESCALATED,
        RenderStatus.FAILED,
    }
)


class Render(SQLModel, table=True):
    """Render tracks one image's analysis, generation loop outcome and diagnostics."""

    __tablename__ = "renders"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("job_id", "source_image_url", name="uq_renders_job_image"),
        Index("idx_renders_technical_tags", "technical_tags", postgresql_using="gin"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="jobs.id", ondelete="CASCADE", index=True)
    source_image_url: str
    status: RenderStatus = Field(default=RenderStatus.UNCLASSIFIED)
    detected_shot_type: Optional[str] = Field(default=None, max_length=100, index=True)
    confidence: Optional[float] = Field(default=None)
    generated_prompt: Optional[str] = Field(default=None)
    technical_tags: list = Field(
        default_factory=list,
        sa_column=Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    )
    motion_recommendation: Optional[str] = Field(default=None, max_length=50)
    full_analysis: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    processing_time_sec: Optional[int] = Field(default=None, ge=0)
    processing_time_ms: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_RENDER_STATUSES

    @property
    def is_classified(self) -> bool:
        return self.detected_shot_type is not None

    def stamp(self) -> None:
        """Advance updated_at, never moving it backwards."""
        now = utcnow()
        self.updated_at = max(now, self.updated_at) if self.updated_at else now

    def add_processing_time(self, seconds: float) -> None:
        """Accumulate wall time; the whole-second total is rounded from the millisecond sum."""
        self.processing_time_ms = (self.processing_time_ms or 0) + max(0, round(seconds * 1000))
        self.processing_time_sec = round(self.processing_time_ms / 1000)

    def mark_classified(
        self,
        shot_type: str,
        confidence: float,
        tags: list[str] | set[str] | frozenset[str],
        prompt: str,
        motion_recommendation: str | None = None,
        analysis: dict | None = None,
    ) -> None:
        """Transition from unclassified to classified, recording the analysis.

        Raises:
            InvalidStateTransition: If current status is not unclassified
            ValueError: If shot_type is empty or confidence is outside [0, 1]
        """
        if self.status != RenderStatus.UNCLASSIFIED:
            raise InvalidStateTransition(
                f"Cannot mark classified from {self.status.value}. "
                "Render must be in unclassified state."
            )
        if not shot_type:
            raise ValueError("shot_type is required")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {confidence}")

        # Shot type and confidence are always written together
        self.detected_shot_type = shot_type[:100]
        self.confidence = round(float(confidence), 4)
        self.technical_tags = sorted({str(tag) for tag in tags})
        self.generated_prompt = prompt
        self.motion_recommendation = motion_recommendation[:50] if motion_recommendation else None
        self.full_analysis = analysis
        self.error_message = None
        self.status = RenderStatus.CLASSIFIED
        self.stamp()

    def mark_generating(self) -> None:
        """Enter (or re-enter) the generation loop."""
        if self.status not in (RenderStatus.CLASSIFIED, RenderStatus.GENERATING):
            raise InvalidStateTransition(
                f"Cannot mark generating from {self.status.value}. "
                "Render must be classified or generating."
            )
        self.status = RenderStatus.GENERATING
        self.stamp()

    def _settle(self, target: RenderStatus) -> None:
        if self.status != RenderStatus.GENERATING:
            raise InvalidStateTransition(
                f"Cannot mark {target.value.lower()} from {self.status.value}. "
                "Render must be in generating state."
            )
        self.status = target
        self.stamp()

    def mark_passed(self) -> None:
        """Transition from generating to passed (an attempt received a PASS verdict)."""
        self._settle(RenderStatus.PASSED)
        self.error_message = None

    def mark_manual_review(self) -> None:
        """Transition from generating to manual review (attempts exhausted)."""
        self._settle(RenderStatus.MANUAL_REVIEW_NEEDED)

    def mark_escalated(self, reason: str) -> None:
        """Transition from generating to escalated (QC asked for a fix we cannot apply)."""
        self._settle(RenderStatus.ESCALATED)
        self.error_message = reason

    def mark_failed(self, error_message: str) -> None:
        """Transition from any unsettled state to failed.

        Raises:
            InvalidStateTransition: If render already settled
        """
        if self.is_settled:
            raise InvalidStateTransition(
                f"Cannot mark failed from settled state {self.status.value}."
            )
        self.status = RenderStatus.FAILED
        self.error_message = error_message
        self.stamp()

    def reset_for_retry(self) -> None:
        """Reopen a failed render when its job is requeued."""
        if self.status != RenderStatus.FAILED:
            raise InvalidStateTransition(
                f"Cannot reset render in {self.status.value}. Only failed renders are reset."
            )
        self.status = RenderStatus.CLASSIFIED if self.is_classified else RenderStatus.UNCLASSIFIED
        self.error_message = None
        self.stamp()
