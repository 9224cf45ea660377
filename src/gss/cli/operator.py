"""Operator CLI for the render pipeline.

Usage:
    python -m gss.cli <command> [OPTIONS]

Examples:
    # Job counts by status, retry totals and recent failures
    python -m gss.cli stats

    # Return a FAILED job to the queue
    python -m gss.cli requeue 5f0c...

    # Cancel a job (in-progress jobs stop between attempts)
    python -m gss.cli cancel 5f0c...

    # Release stale in-progress jobs and requeue due retries now
    python -m gss.cli recover

    # Run the dispatcher without the HTTP API
    python -m gss.cli worker
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from uuid import UUID

import structlog

from gss.core import timezone  # noqa: F401
from gss.core.config import Settings, configure_logging
from gss.core.database import setup_db_session
from gss.models.job import InvalidStateTransition
from gss.services import operator
from gss.services.exceptions import JobNotFoundError
from gss.uow import create_uow_factory
from gss.workers.dispatcher import recover_stale_jobs, requeue_due_jobs, run_dispatcher

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Operate the property render pipeline",
        epilog="Reads DATABASE_URL and the other settings from the environment or .env",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    stats = commands.add_parser("stats", help="Show job, retry and failure summaries")
    stats.add_argument(
        "--limit", type=int, default=10, help="Rows shown per section (default: 10)"
    )

    requeue = commands.add_parser("requeue", help="Return a FAILED job to the queue")
    requeue.add_argument("job_id", type=UUID)

    cancel = commands.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("job_id", type=UUID)

    commands.add_parser("recover", help="Release stale jobs and requeue due retries")
    commands.add_parser("worker", help="Run the dispatcher and its worker pool")

    return parser.parse_args(argv)


async def print_stats(uow_factory, limit: int) -> None:
    async with await uow_factory() as uow:
        by_status = await uow.reports.jobs_by_status()
        retries = await uow.reports.retry_stats()
        failures = await uow.reports.failed_jobs_with_errors(limit)
        timings = await uow.reports.processing_time_by_shot_type()

    print("\n" + "=" * 60)
    print("Jobs by status")
    print("=" * 60)
    for row in by_status:
        print(f"{row.status.value:<15} {row.count:>6}  oldest={row.oldest}  newest={row.newest}")
    if not by_status:
        print("(no jobs)")

    print("\nRetry statistics (most recent renders)")
    print("-" * 60)
    for row in retries[:limit]:
        print(
            f"{row.render_id}  {row.detected_shot_type or '-':<14} "
            f"attempts={row.total_attempts} passed={row.passed} failed={row.failed}"
        )

    if failures:
        print("\nFailed jobs")
        print("-" * 60)
        for row in failures:
            print(f"{row.job_id}  render={row.render_id}  {row.error_message}")

    if timings:
        print("\nAverage processing time by shot type")
        print("-" * 60)
        for row in timings:
            print(
                f"{row.detected_shot_type or '-':<20} "
                f"{row.avg_processing_time_sec:>8.1f}s  ({row.count} renders)"
            )
    print("=" * 60 + "\n")


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 3 (job not found), 4 (invalid transition)
    """
    args = parse_args(argv)

    # Initialize settings and logging
    settings = Settings()  # type: ignore[call-arg]

    # Configure logging level
    if args.verbose:
        settings.log_level = "DEBUG"

    configure_logging(settings)
    logger.info("cli.started", command=args.command)

    # Initialize database session factory
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        if args.command == "stats":
            await print_stats(uow_factory, args.limit)

        elif args.command == "requeue":
            async with await uow_factory() as uow:
                job = await operator.requeue_job(uow, args.job_id)
            print(f"Job {job.id} requeued (status={job.status.value})")

        elif args.command == "cancel":
            async with await uow_factory() as uow:
                job = await operator.cancel_job(uow, args.job_id)
            if job.cancel_requested and not job.is_terminal:
                print(f"Job {job.id} will stop at its next checkpoint")
            else:
                print(f"Job {job.id} cancelled (status={job.status.value})")

        elif args.command == "recover":
            released = await recover_stale_jobs(uow_factory, settings.liveness_deadline_seconds)
            requeued = await requeue_due_jobs(uow_factory)
            print(f"Released {released} stale job(s), requeued {requeued} job(s)")

        elif args.command == "worker":
            await run_dispatcher(session_factory, settings)

        return 0

    except JobNotFoundError as e:
        logger.error("cli.job_not_found", error=str(e))
        print(f"\nError: {e}", file=sys.stderr)
        return 3

    except InvalidStateTransition as e:
        logger.error("cli.invalid_transition", error=str(e))
        print(f"\nError: {e}", file=sys.stderr)
        return 4

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main() -> int:
    """Synchronous entry point for CLI."""
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
