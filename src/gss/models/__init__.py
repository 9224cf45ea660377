"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from gss.models.attempt import GenerationAttempt, GenerationParameters, QCVerdict
from gss.models.job import InvalidStateTransition, Job, JobStatus
from gss.models.render import Render, RenderStatus

__all__ = [
    "Job",
    "JobStatus",
    "Render",
    "RenderStatus",
    "GenerationAttempt",
    "GenerationParameters",
    "QCVerdict",
    "InvalidStateTransition",
]
