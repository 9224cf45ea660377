"""GenerationAttempt repository for the render pipeline.

Provides data access methods for GenerationAttempt entities.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gss.models.attempt import GenerationAttempt


class GenerationAttemptRepository:
    """Repository for GenerationAttempt entities.

    Attempts are keyed by (render_id, attempt_number); numbering is gapless
    per render.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, attempt: GenerationAttempt) -> GenerationAttempt:
        """Persist new attempt to database.

        Args:
            attempt: GenerationAttempt entity to persist

        Returns:
            Persisted attempt with generated ID
        """
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def save(self, attempt: GenerationAttempt) -> GenerationAttempt:
        """Flush pending changes on an attempt made through its domain methods."""
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def delete(self, attempt: GenerationAttempt) -> None:
        """Remove an attempt that never ran (validation failure before execution)."""
        await self.session.delete(attempt)
        await self.session.flush()

    async def get_by_id(self, attempt_id: UUID) -> GenerationAttempt | None:
        """Retrieve attempt by UUID.

        Args:
            attempt_id: Attempt's unique identifier

        Returns:
            GenerationAttempt if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationAttempt).where(GenerationAttempt.id == attempt_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_render(self, render_id: UUID) -> list[GenerationAttempt]:
        """Retrieve the retry history of a render.

        Args:
            render_id: Render's unique identifier

        Returns:
            List of attempts ordered by attempt number (first attempt first)
        """
        result = await self.session.execute(
            select(GenerationAttempt)
            .where(GenerationAttempt.render_id == render_id)  # type: ignore[arg-type]
            .order_by(GenerationAttempt.attempt_number.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_latest_by_render(self, render_id: UUID) -> GenerationAttempt | None:
        """Retrieve the highest-numbered attempt of a render.

        Useful for resuming the generation loop without loading the whole history.

        Args:
            render_id: Render's unique identifier

        Returns:
            Latest GenerationAttempt if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationAttempt)
            .where(GenerationAttempt.render_id == render_id)  # type: ignore[arg-type]
            .order_by(GenerationAttempt.attempt_number.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()
