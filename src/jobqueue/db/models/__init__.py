"""SQLAlchemy ORM models for jobqueue.

- base: Common metadata, portable column types and JobStatus
- jobs: job_queue, queue_stats and job_dead_letter_queue tables
"""

from jobqueue.db.models.base import Base, JobStatus, metadata
from jobqueue.db.models.jobs import DeadLetterJob, Job, QueueStat

__all__ = [
    "Base",
    "DeadLetterJob",
    "Job",
    "JobStatus",
    "QueueStat",
    "metadata",
]
