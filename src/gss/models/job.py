"""Job entity - one property's processing unit with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from gss.core.timezone import utcnow


class JobStatus(str, Enum):
    """Job lifecycle status."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    CLASSIFIED = "CLASSIFIED"
    FAILED = "FAILED"
    GENERATING = "GENERATING"
    QC_REVIEW = "QC_REVIEW"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    COMPLETED = "COMPLETED"
    FATAL_ERROR = "FATAL_ERROR"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FATAL_ERROR})

# Statuses in which a worker owns the job
ACTIVE_JOB_STATUSES = frozenset(
    {JobStatus.PROCESSING, JobStatus.CLASSIFIED, JobStatus.GENERATING}
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FATAL_ERROR}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.CLASSIFIED, JobStatus.FAILED, JobStatus.QUEUED, JobStatus.FATAL_ERROR}
    ),
    JobStatus.CLASSIFIED: frozenset(
        {JobStatus.GENERATING, JobStatus.FAILED, JobStatus.QUEUED, JobStatus.FATAL_ERROR}
    ),
    JobStatus.GENERATING: frozenset(
        {
            JobStatus.QC_REVIEW,
            JobStatus.MANUAL_REVIEW,
            JobStatus.FAILED,
            JobStatus.QUEUED,
            JobStatus.FATAL_ERROR,
        }
    ),
    JobStatus.QC_REVIEW: frozenset(
        {JobStatus.COMPLETED, JobStatus.MANUAL_REVIEW, JobStatus.FATAL_ERROR}
    ),
    JobStatus.MANUAL_REVIEW: frozenset({JobStatus.COMPLETED, JobStatus.FATAL_ERROR}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED, JobStatus.FATAL_ERROR}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FATAL_ERROR: frozenset(),
}


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job, render or attempt state transition."""

    pass


class Job(SQLModel, table=True):
    """Job represents one property's set of source images moving through the pipeline."""

    __tablename__ = "jobs"  # type: ignore[assignment]
    __table_args__ = (Index("idx_jobs_status_available_at", "status", "available_at"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    property_id: UUID = Field(index=True)
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)
    batch_id: Optional[UUID] = Field(default=None)
    source_images: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    # Orchestration bookkeeping
    retry_count: int = Field(default=0, ge=0)
    retryable: bool = Field(default=False)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    cancel_requested: bool = Field(default=False)
    worker_id: Optional[str] = Field(default=None, max_length=100)
    available_at: datetime = Field(default_factory=utcnow)

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    def can_transition(self, target: JobStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def stamp(self) -> None:
        """Advance updated_at, never moving it backwards."""
        now = utcnow()
        self.updated_at = max(now, self.updated_at) if self.updated_at else now

    def _transition(self, target: JobStatus) -> None:
        if not self.can_transition(target):
            raise InvalidStateTransition(
                f"Cannot move job from {self.status.value} to {target.value}."
            )
        self.status = target
        self.stamp()

    def mark_processing(self, worker_id: str) -> None:
        """Transition from queued to processing (claimed by a worker).

        Raises:
            InvalidStateTransition: If current status is not queued
            ValueError: If worker_id is empty
        """
        if not worker_id:
            raise ValueError("worker_id is required")
        self._transition(JobStatus.PROCESSING)
        self.worker_id = worker_id

    def mark_classified(self) -> None:
        """Transition from processing to classified (all renders classified)."""
        self._transition(JobStatus.CLASSIFIED)

    def mark_generating(self) -> None:
        """Transition from classified to generating (all renders in generation loop)."""
        self._transition(JobStatus.GENERATING)

    def mark_qc_review(self) -> None:
        """Transition from generating to QC review (every render passed)."""
        self._transition(JobStatus.QC_REVIEW)

    def mark_manual_review(self, reason: str | None = None) -> None:
        """Route the job to manual review."""
        self._transition(JobStatus.MANUAL_REVIEW)
        if reason:
            self.last_error = reason[:2000]

    def mark_completed(self) -> None:
        """Resolve QC review (or manual review) positively."""
        self._transition(JobStatus.COMPLETED)
        self.worker_id = None

    def mark_failed(
        self, error_message: str, retryable: bool, available_at: datetime | None = None
    ) -> None:
        """Transition from an in-progress state to failed.

        Args:
            error_message: Job-level diagnostic (truncated to 2000 characters)
            retryable: Whether the dispatcher may requeue the job automatically
            available_at: Earliest time an automatic retry may run
        """
        self._transition(JobStatus.FAILED)
        self.last_error = error_message[:2000]
        self.retryable = retryable
        self.worker_id = None
        if available_at is not None:
            self.available_at = available_at

    def mark_fatal(self, error_message: str) -> None:
        """Transition from any non-terminal state to fatal error.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark fatal from terminal state {self.status.value}."
            )
        self._transition(JobStatus.FATAL_ERROR)
        self.last_error = error_message[:2000]
        self.retryable = False
        self.worker_id = None

    def requeue(self, available_at: datetime | None = None) -> None:
        """Return a failed job to the queue (operator retry or scheduled backoff retry)."""
        if self.status != JobStatus.FAILED:
            raise InvalidStateTransition(
                f"Cannot requeue from {self.status.value}. Job must be in FAILED state."
            )
        self._transition(JobStatus.QUEUED)
        self.retryable = False
        self.cancel_requested = False
        self.available_at = available_at or utcnow()

    def release(self) -> None:
        """Return an abandoned in-progress job to the queue (crash recovery)."""
        if not self.is_active:
            raise InvalidStateTransition(
                f"Cannot release job in {self.status.value}. Only in-progress jobs are released."
            )
        self._transition(JobStatus.QUEUED)
        self.worker_id = None
        self.available_at = utcnow()
