"""Background workers for async processing tasks."""

from gss.workers.dispatcher import (
    claim_next_job,
    recover_stale_jobs,
    requeue_due_jobs,
    run_dispatcher,
    run_worker,
)

__all__ = [
    "claim_next_job",
    "recover_stale_jobs",
    "requeue_due_jobs",
    "run_dispatcher",
    "run_worker",
]
