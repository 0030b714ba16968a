"""jobqueue service layer.

- JobStore: durable job storage with atomic claim and guarded transitions
- BackoffPolicy: retry delay computation
- QueueManager: producer-facing façade (enqueue, schedule, cancel, status)
"""

from jobqueue.services.backoff import BackoffPolicy
from jobqueue.services.job_queue import JobStore, QueueHealth, QueueStats
from jobqueue.services.queue_manager import JobOptions, JobStatusView, QueueManager

__all__ = [
    "BackoffPolicy",
    "JobOptions",
    "JobStatusView",
    "JobStore",
    "QueueHealth",
    "QueueManager",
    "QueueStats",
]
