"""Render repository for the render pipeline.

Provides data access methods for Render entities.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gss.models.render import Render, RenderStatus


class RenderRepository:
    """Repository for Render entities.

    Renders are keyed by (job_id, source_image_url) so re-executing a job
    reuses the rows created by an earlier run.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, render: Render) -> Render:
        """Persist new render to database.

        Args:
            render: Render entity to persist

        Returns:
            Persisted render with generated ID
        """
        self.session.add(render)
        await self.session.flush()
        return render

    async def save(self, render: Render) -> Render:
        """Flush pending changes on a render made through its domain methods."""
        self.session.add(render)
        await self.session.flush()
        return render

    async def get_by_id(self, render_id: UUID) -> Render | None:
        """Retrieve render by UUID.

        Args:
            render_id: Render's unique identifier

        Returns:
            Render if found, None otherwise
        """
        result = await self.session.execute(select(Render).where(Render.id == render_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_job(self, job_id: UUID) -> list[Render]:
        """Retrieve all renders of a job ordered by creation time (oldest first)."""
        result = await self.session.execute(
            select(Render)
            .where(Render.job_id == job_id)  # type: ignore[arg-type]
            .order_by(Render.created_at.asc(), Render.source_image_url.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_statuses(self, job_id: UUID) -> list[RenderStatus]:
        """Retrieve only the statuses of a job's renders (aggregation input)."""
        result = await self.session.execute(
            select(Render.status).where(Render.job_id == job_id)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())

    async def ensure_for_job(self, job_id: UUID, source_images: list[str]) -> list[Render]:
        """Create missing renders for a job's source images (idempotent).

        Existing renders are returned untouched; failed renders are reopened
        so a requeued job gets another run.

        Args:
            job_id: Owning job
            source_images: Image references supplied at intake

        Returns:
            One render per source image, in intake order
        """
        existing = {render.source_image_url: render for render in await self.get_by_job(job_id)}

        renders = []
        for image_ref in source_images:
            render = existing.get(image_ref)
            if render is None:
                render = Render(job_id=job_id, source_image_url=image_ref)
                self.session.add(render)
            elif render.status == RenderStatus.FAILED:
                render.reset_for_retry()
                self.session.add(render)
            renders.append(render)

        await self.session.flush()
        return renders
