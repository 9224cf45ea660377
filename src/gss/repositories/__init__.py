"""Repository layer for the render pipeline.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from gss.repositories.attempt import GenerationAttemptRepository
from gss.repositories.job import JobRepository
from gss.repositories.render import RenderRepository
from gss.repositories.reporting import ReportingRepository

__all__ = [
    "JobRepository",
    "RenderRepository",
    "GenerationAttemptRepository",
    "ReportingRepository",
]
