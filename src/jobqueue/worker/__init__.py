"""jobqueue worker service.

Pool of polling workers that claim jobs from the store and run the handler
registered for each job type, retrying failures with backoff.

Usage:
    # Run as module (handlers come from JOBQUEUE_WORKER__HANDLER_MODULES)
    python -m jobqueue.worker
"""

from jobqueue.worker.main import JobContext, JobHandler, Worker, WorkerConfig, run
from jobqueue.worker.pool import HandlerRegistry, QueueRuntime

__all__ = [
    "HandlerRegistry",
    "JobContext",
    "JobHandler",
    "QueueRuntime",
    "Worker",
    "WorkerConfig",
    "run",
]
