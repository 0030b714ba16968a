"""Producer-facing façade over the queue runtime.

Business modules enqueue work and inspect it through QueueManager without
touching Job rows or the store directly.

Example:
    manager = QueueManager(runtime)
    job_id = await manager.enqueue_job(
        "default",
        "email.send",
        {"to": "a@b.c", "subject": "Welcome"},
        JobOptions(priority=5, delay=timedelta(minutes=10)),
    )
    status = await manager.get_job_status(job_id)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from jobqueue.core.errors import JobValidationError
from jobqueue.db.models.base import JobStatus
from jobqueue.db.models.jobs import Job

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from jobqueue.services.job_queue import QueueStats
    from jobqueue.worker.pool import QueueRuntime

logger = logging.getLogger(__name__)


@dataclass
class JobOptions:
    """Per-job enqueue options.

    Attributes:
        priority: Higher values are claimed first.
        delay: Run no earlier than now + delay.
        scheduled_at: Run no earlier than this time (exclusive with delay).
        max_retries: Attempt budget, stored as max_attempts.
        timeout: Recorded in metadata as timeout_seconds; not enforced.
        metadata: Free-form producer metadata.
        organization_id: Owning organization, if any.
        user_id: Requesting user, recorded in metadata.
    """

    priority: int = 0
    delay: timedelta | None = None
    scheduled_at: datetime | None = None
    max_retries: int = 3
    timeout: timedelta | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    organization_id: uuid.UUID | None = None
    user_id: uuid.UUID | str | None = None

    def build_metadata(self) -> dict[str, Any]:
        metadata = dict(self.metadata)
        if self.timeout is not None:
            metadata["timeout_seconds"] = self.timeout.total_seconds()
        if self.user_id is not None:
            metadata["user_id"] = str(self.user_id)
        return metadata


@dataclass
class JobStatusView:
    """Read-only snapshot of a job for callers outside the queue."""

    id: uuid.UUID
    queue: str
    job_type: str
    status: str
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error_message: str | None
    error_kind: str | None
    retry_count: int
    max_retries: int
    created_at: datetime | None
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    worker_id: str | None

    @classmethod
    def from_job(cls, job: Job) -> JobStatusView:
        return cls(
            id=job.id,
            queue=job.queue_name,
            job_type=job.job_type,
            status=job.status.value,
            payload=dict(job.payload or {}),
            result=dict(job.result) if job.result is not None else None,
            error_message=job.error_message,
            error_kind=job.error_kind,
            retry_count=job.attempt_count,
            max_retries=job.max_attempts,
            created_at=job.created_at,
            scheduled_at=job.scheduled_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            worker_id=job.worker_id,
        )

    @property
    def is_terminal(self) -> bool:
        """True once the job can no longer change status."""
        return JobStatus(self.status).is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize with ISO timestamps and a string id."""
        data = asdict(self)
        data["id"] = str(self.id)
        for key in ("created_at", "scheduled_at", "started_at", "completed_at"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        return data


class QueueManager:
    """Enqueue, schedule, cancel and inspect jobs."""

    def __init__(self, runtime: QueueRuntime) -> None:
        self.runtime = runtime

    async def enqueue_job(
        self,
        queue: str,
        job_type: str,
        payload: Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> uuid.UUID:
        """Enqueue a job, honoring delay or scheduled_at from options.

        Args:
            queue: Queue name; empty means the store's default queue.
            job_type: Handler key.
            payload: JSON object passed to the handler.
            options: Enqueue options.

        Returns:
            The new job's id.

        Raises:
            JobValidationError: If options conflict or the job is malformed.
            JobQueueError: If the job cannot be stored.
        """
        options = options or JobOptions()
        if options.delay is not None and options.scheduled_at is not None:
            msg = "delay and scheduled_at are mutually exclusive"
            raise JobValidationError(msg)

        job = Job(
            queue_name=queue or self.runtime.store.settings.default_queue,
            job_type=job_type,
            payload=payload,
            priority=options.priority,
            max_attempts=options.max_retries,
            organization_id=options.organization_id,
            metadata_json=options.build_metadata(),
        )

        if options.scheduled_at is not None:
            job_id = await self.runtime.enqueue_at(job, options.scheduled_at)
        elif options.delay is not None:
            job_id = await self.runtime.enqueue_with_delay(job, options.delay)
        else:
            job_id = await self.runtime.enqueue(job)

        logger.debug("Enqueued via manager: job_id=%s, job_type=%s", job_id, job_type)
        return job_id

    async def schedule_job(
        self,
        queue: str,
        job_type: str,
        payload: Mapping[str, Any],
        scheduled_at: datetime,
        options: JobOptions | None = None,
    ) -> uuid.UUID:
        """Enqueue a job that runs no earlier than scheduled_at."""
        options = replace(options or JobOptions(), scheduled_at=scheduled_at, delay=None)
        return await self.enqueue_job(queue, job_type, payload, options)

    async def cancel_job(self, job_id: uuid.UUID) -> bool:
        """Cancel a job; False (not an error) if it already finished."""
        return await self.runtime.cancel(job_id)

    async def get_job_status(self, job_id: uuid.UUID) -> JobStatusView:
        """Raises JobNotFoundError for unknown ids."""
        job = await self.runtime.get_job(job_id)
        return JobStatusView.from_job(job)

    async def get_queue_stats(self, queue: str) -> QueueStats:
        return await self.runtime.get_stats(queue)

    async def start_worker(self, queue: str, worker_id: str) -> None:
        queue_names: Sequence[str] = [queue] if queue else self.runtime.store.settings.queue_names
        await self.runtime.start_worker(worker_id, queue_names)

    async def stop_worker(self, worker_id: str) -> bool:
        return await self.runtime.stop_worker(worker_id)
