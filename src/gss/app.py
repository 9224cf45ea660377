"""FastAPI application: job intake, operator actions, reports and the in-process dispatcher."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from gss.api.routes import jobs, reports
from gss.core import timezone  # noqa: F401  # sets TZ=UTC
from gss.core.config import Settings, configure_logging
from gss.core.database import setup_db_session
from gss.uow import create_uow_factory
from gss.workers.dispatcher import run_dispatcher

logger = structlog.get_logger()


async def supervise(
    name: str,
    start: Callable[[], Awaitable[None]],
    restart_delay: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Keep a long-running worker alive.

    The worker is restarted after `restart_delay` seconds whenever it crashes
    or returns. Cancelling the supervising task cancels the running worker.

    Args:
        name: Worker name for logging
        start: Starts one run of the worker (e.g. run_dispatcher bound to its args)
        restart_delay: Seconds to wait before a restart
        shutdown_event: Set on application shutdown; no restart happens afterwards
    """
    while not shutdown_event.is_set():
        try:
            await start()
            logger.warning(
                "worker.stopped_unexpectedly", worker=name, retry_in_seconds=restart_delay
            )
        except asyncio.CancelledError:
            logger.info("worker.cancelled", worker=name)
            raise
        except Exception as e:
            logger.error(
                "worker.crashed",
                worker=name,
                error=str(e),
                error_type=type(e).__name__,
                retry_in_seconds=restart_delay,
                exc_info=e,
            )

        await asyncio.sleep(restart_delay)
        if not shutdown_event.is_set():
            logger.info("worker.restarting", worker=name)

    logger.info("worker.shutdown_complete", worker=name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: configure logging, create the session and UoW factories, start
      the supervised dispatcher unless RUN_DISPATCHER is false
    - Shutdown: cancel the dispatcher (in-flight attempts are resumed by the
      next claim of their job) and close database connections
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    app.state.session_factory = session_factory
    app.state.uow_factory = create_uow_factory(session_factory)

    shutdown_event = asyncio.Event()
    dispatcher_task = None
    if settings.run_dispatcher:
        dispatcher_task = asyncio.create_task(
            supervise(
                "dispatcher",
                lambda: run_dispatcher(session_factory, settings),
                settings.dispatcher_restart_delay_seconds,
                shutdown_event,
            )
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        dispatcher=dispatcher_task is not None,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if dispatcher_task is not None:
        dispatcher_task.cancel()
        await asyncio.gather(dispatcher_task, return_exceptions=True)

    await session_factory.kw["bind"].dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="GSS Render Pipeline API",
        description="Property photo classification, generation and QC orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router)  # prefix="/api"
    app.include_router(reports.router)  # prefix="/api/reports"

    @app.get("/health")
    async def health_check(response: Response):
        """Liveness plus a store round trip.

        Returns:
            200: {"status": "healthy"}
            503: {"status": "unhealthy", "error": {...}} when the store is unreachable
        """
        try:
            async with app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("health_check.failed", error=str(e), error_type=type(e).__name__)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "unhealthy", "error": {"type": type(e).__name__, "message": str(e)}}

        return {"status": "healthy"}

    return app


# Create app instance for uvicorn
app = create_app()
