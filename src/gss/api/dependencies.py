"""FastAPI dependencies shared by the API routers."""

from typing import Awaitable, Callable

from fastapi import Request

from gss.uow import UnitOfWork


def get_uow_factory(request: Request) -> Callable[[], Awaitable[UnitOfWork]]:
    """Get UnitOfWork factory from app state.

    Routes that need more than one transaction per request (or must commit
    before responding) open their own Units of Work.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        UnitOfWork factory function from app lifespan

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.jobs.get_by_id(job_id)
    """
    return request.app.state.uow_factory
