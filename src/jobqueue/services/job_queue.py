"""Durable job store with atomic, lease-based claiming.

This service is the single writer of job status and lease columns. Every
operation runs in its own session and transaction, so concurrent workers
only ever coordinate through the database.

Key features:
- Atomic claim: candidate selected with SELECT ... FOR UPDATE SKIP LOCKED,
  then taken with a guarded UPDATE that re-checks eligibility (rowcount 1)
- Leases: a processing job whose locked_until has passed is claimable again,
  so a crashed worker never strands a job
- Guarded transitions: complete/fail/retry only apply to processing jobs,
  so a late result for a cancelled job is a no-op
- Delayed and scheduled jobs (scheduled_at), priority ordering
- Daily per-queue statistics and a dead letter table

Usage:
    from jobqueue.services.job_queue import JobStore

    store = JobStore(session_factory)
    job = await store.claim("worker-1", ["default"])
    if job:
        try:
            ...  # run the handler for job.job_type
            await store.complete(job.id, {"ok": True})
        except Exception as e:
            await store.fail(job.id, str(e))
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, case, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from jobqueue.core.config import QueueSettings
from jobqueue.core.errors import (
    FailureKind,
    JobNotFoundError,
    JobQueueError,
    JobSerializationError,
    JobValidationError,
)
from jobqueue.db.models.base import JobStatus, UTCDateTime, utcnow
from jobqueue.db.models.jobs import DeadLetterJob, Job, QueueStat
from jobqueue.services.backoff import BackoffPolicy

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# Claim re-selects after losing a race on backends without row locks
MAX_CLAIM_ROUNDS = 5

STAT_COUNTERS = ("jobs_enqueued", "jobs_completed", "jobs_failed", "total_processing_ms")


@dataclass
class QueueStats:
    """Aggregated daily counters for one queue (or all queues)."""

    queue_name: str | None
    date: date
    jobs_enqueued: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    total_processing_ms: int = 0

    @property
    def avg_processing_ms(self) -> int:
        if self.jobs_completed == 0:
            return 0
        return self.total_processing_ms // self.jobs_completed


@dataclass
class QueueHealth:
    """Point-in-time view of the non-terminal jobs in one queue.

    Attributes:
        ready: Pending jobs that are due now.
        scheduled: Pending jobs scheduled in the future.
        processing: Jobs currently leased.
        stuck: Processing jobs whose lease has expired.
    """

    queue_name: str
    ready: int = 0
    scheduled: int = 0
    processing: int = 0
    stuck: int = 0


def normalize_document(value: Any, field: str) -> dict[str, Any]:
    """Check that value is a JSON object and return its JSON-normalized copy.

    Raises:
        TypeError, ValueError: If value is not a mapping or not encodable.
    """
    if not isinstance(value, Mapping):
        msg = f"{field} must be a mapping, got {type(value).__name__}"
        raise TypeError(msg)
    return json.loads(json.dumps(dict(value), allow_nan=False))


def _duration_ms(start: datetime | None, end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


class JobStore:
    """Relational job store implementing enqueue, claim and transitions.

    Attributes:
        settings: Queue defaults (default queue, attempts, lease).
        backoff: Delay policy applied by retry().
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: QueueSettings | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the store.

        Args:
            session_factory: Factory for async sessions bound to the database.
            settings: Queue settings; loaded from the environment if omitted.
            backoff: Retry delay policy; derived from settings if omitted.
            clock: Source of "now" (UTC); injectable for tests.
        """
        self._session_factory = session_factory
        self.settings = settings or QueueSettings()
        self.backoff = backoff or BackoffPolicy.from_settings(self.settings)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job) -> uuid.UUID:
        """Validate and insert a job as pending.

        Args:
            job: Unsaved job; queue_name, job_type and payload are required.
                scheduled_at defaults to now, id is assigned if absent.

        Returns:
            The job id.

        Raises:
            JobValidationError: If the job is malformed (nothing is written).
            JobQueueError: If the insert fails.
        """
        now = self.now()
        self._prepare_new_job(job, now)

        try:
            async with self._session_factory() as session, session.begin():
                session.add(job)
                await session.flush()
                await self._bump_stats(session, job.queue_name, now, jobs_enqueued=1)
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job: %s", str(e))
            raise JobQueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, queue=%s, priority=%d, scheduled_at=%s",
            job.id,
            job.job_type,
            job.queue_name,
            job.priority,
            job.scheduled_at.isoformat(),
        )
        return job.id

    async def enqueue_at(self, job: Job, scheduled_at: datetime) -> uuid.UUID:
        """Enqueue a job that becomes claimable at an absolute time."""
        job.scheduled_at = scheduled_at
        return await self.enqueue(job)

    async def enqueue_with_delay(self, job: Job, delay: timedelta) -> uuid.UUID:
        """Enqueue a job that becomes claimable after a delay from now."""
        if delay < timedelta(0):
            raise JobValidationError(f"delay must not be negative, got {delay}")
        job.scheduled_at = self.now() + delay
        return await self.enqueue(job)

    def _prepare_new_job(self, job: Job, now: datetime) -> None:
        if not isinstance(job.queue_name, str) or not job.queue_name.strip():
            raise JobValidationError("queue_name is required")
        if not isinstance(job.job_type, str) or not job.job_type.strip():
            raise JobValidationError("job_type is required")
        if job.payload is None:
            raise JobValidationError("payload is required")

        try:
            job.payload = normalize_document(job.payload, "payload")
            job.metadata_json = normalize_document(job.metadata_json or {}, "metadata")
        except (TypeError, ValueError) as e:
            raise JobValidationError(f"Invalid job document: {e}") from e

        if job.max_attempts is None:
            job.max_attempts = self.settings.max_attempts
        if job.max_attempts < 1:
            raise JobValidationError(f"max_attempts must be >= 1, got {job.max_attempts}")

        job.id = job.id or uuid.uuid4()
        job.queue_name = job.queue_name.strip()
        job.priority = job.priority or 0
        job.status = JobStatus.PENDING
        job.attempt_count = 0
        job.scheduled_at = job.scheduled_at or now
        job.worker_id = None
        job.locked_at = None
        job.locked_until = None
        job.result = None
        job.error_message = None
        job.error_kind = None
        job.created_at = now
        job.updated_at = now

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def _eligible(self, queue_names: Sequence[str], now: datetime):
        return and_(
            Job.queue_name.in_(list(queue_names)),
            Job.scheduled_at <= now,
            or_(
                Job.status == JobStatus.PENDING,
                and_(Job.status == JobStatus.PROCESSING, Job.locked_until < now),
            ),
        )

    async def claim(
        self,
        worker_id: str,
        queue_names: Sequence[str] | None = None,
        lease_seconds: int | None = None,
    ) -> Job | None:
        """Atomically lease the next eligible job.

        Eligible: queue in queue_names, scheduled_at <= now, and pending or
        processing with an expired lease. Ordered by priority desc then
        scheduled_at asc. attempt_count is not changed.

        Args:
            worker_id: Lease holder to record.
            queue_names: Queues to claim from. Defaults to the default queue.
            lease_seconds: Lease length. Defaults to settings.lease_seconds.

        Returns:
            The claimed job, or None if nothing is eligible.

        Raises:
            JobQueueError: If the claim fails at the database level.
        """
        names = list(queue_names) if queue_names else [self.settings.default_queue]
        now = self.now()
        lease = timedelta(seconds=lease_seconds or self.settings.lease_seconds)
        eligible = self._eligible(names, now)

        try:
            async with self._session_factory() as session, session.begin():
                for _ in range(MAX_CLAIM_ROUNDS):
                    candidate = (
                        select(Job.id)
                        .where(eligible)
                        .order_by(Job.priority.desc(), Job.scheduled_at.asc())
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    )
                    job_id = (await session.execute(candidate)).scalar_one_or_none()
                    if job_id is None:
                        return None

                    # Re-check eligibility in the UPDATE itself; another
                    # worker may have taken the row since the SELECT.
                    result = await session.execute(
                        update(Job)
                        .where(Job.id == job_id, eligible)
                        .values(
                            status=JobStatus.PROCESSING,
                            worker_id=worker_id,
                            locked_at=now,
                            locked_until=now + lease,
                            started_at=func.coalesce(Job.started_at, literal(now, UTCDateTime())),
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        logger.debug("Lost claim race: job_id=%s, worker_id=%s", job_id, worker_id)
                        continue

                    job = (await session.execute(select(Job).where(Job.id == job_id))).scalar_one()
                    break
                else:
                    return None

        except SQLAlchemyError as e:
            logger.error("Failed to claim job: %s", str(e))
            raise JobQueueError(f"Failed to claim job: {e}") from e

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, job_type=%s, attempt=%d/%d, locked_until=%s",
            job.id,
            worker_id,
            job.job_type,
            job.attempt_count + 1,
            job.max_attempts,
            job.locked_until.isoformat(),
        )
        return job

    async def dequeue(self, worker_id: str, queue_names: Sequence[str] | None = None) -> Job | None:
        """Queue-contract name for claim() with the default lease."""
        return await self.claim(worker_id, queue_names)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def complete(self, job_id: uuid.UUID, result: Mapping[str, Any] | None = None) -> bool:
        """Mark a processing job as completed.

        Args:
            job_id: Job to complete.
            result: Optional JSON object stored on the job.

        Returns:
            True if the job moved to completed; False if it was not
            processing (e.g. cancelled meanwhile) or does not exist.

        Raises:
            JobSerializationError: If result is not a JSON object.
            JobQueueError: If the update fails.
        """
        try:
            encoded = normalize_document(result, "result") if result is not None else None
        except (TypeError, ValueError) as e:
            raise JobSerializationError(f"Failed to serialize job result: {e}") from e

        now = self.now()
        try:
            async with self._session_factory() as session, session.begin():
                snapshot = await self._load(session, job_id)
                if snapshot is None or snapshot.status != JobStatus.PROCESSING:
                    self._log_ignored("complete", job_id, snapshot)
                    return False

                duration_ms = _duration_ms(snapshot.locked_at, now)
                applied = await self._guarded_update(
                    session,
                    snapshot,
                    status=JobStatus.COMPLETED,
                    result=encoded,
                    completed_at=now,
                    updated_at=now,
                    worker_id=None,
                    locked_at=None,
                    locked_until=None,
                )
                if not applied:
                    self._log_ignored("complete", job_id, snapshot)
                    return False

                await self._bump_stats(
                    session,
                    snapshot.queue_name,
                    now,
                    jobs_completed=1,
                    total_processing_ms=duration_ms,
                )
        except SQLAlchemyError as e:
            logger.error("Failed to complete job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to complete job: {e}") from e

        logger.info(
            "Job completed: job_id=%s, job_type=%s, duration_ms=%d",
            job_id,
            snapshot.job_type,
            duration_ms,
        )
        return True

    async def fail(
        self,
        job_id: uuid.UUID,
        error_message: str,
        kind: FailureKind = FailureKind.HANDLER_ERROR,
    ) -> bool:
        """Permanently fail a processing job and dead-letter it.

        Returns:
            True if the job moved to failed; False if it was not processing.

        Raises:
            JobQueueError: If the update fails.
        """
        now = self.now()
        try:
            async with self._session_factory() as session, session.begin():
                snapshot = await self._load(session, job_id)
                if snapshot is None or snapshot.status != JobStatus.PROCESSING:
                    self._log_ignored("fail", job_id, snapshot)
                    return False

                applied = await self._guarded_update(
                    session,
                    snapshot,
                    status=JobStatus.FAILED,
                    error_message=error_message,
                    error_kind=kind.value,
                    completed_at=now,
                    updated_at=now,
                    worker_id=None,
                    locked_at=None,
                    locked_until=None,
                )
                if not applied:
                    self._log_ignored("fail", job_id, snapshot)
                    return False

                session.add(
                    DeadLetterJob(
                        original_job_id=snapshot.id,
                        organization_id=snapshot.organization_id,
                        queue_name=snapshot.queue_name,
                        job_type=snapshot.job_type,
                        payload=snapshot.payload,
                        error_message=error_message,
                        error_kind=kind.value,
                        attempt_count=snapshot.attempt_count,
                        failed_at=now,
                        metadata_json=snapshot.metadata_json or {},
                    )
                )
                await session.flush()
                await self._bump_stats(session, snapshot.queue_name, now, jobs_failed=1)
        except SQLAlchemyError as e:
            logger.error("Failed to fail job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to fail job: {e}") from e

        logger.warning(
            "Job failed: job_id=%s, job_type=%s, kind=%s, attempts=%d/%d, error=%s",
            job_id,
            snapshot.job_type,
            kind.value,
            snapshot.attempt_count + 1,
            snapshot.max_attempts,
            error_message,
        )
        return True

    async def retry(self, job_id: uuid.UUID) -> bool:
        """Return a processing job to pending after a backoff delay.

        Increments attempt_count and clears the lease. Only applies while
        attempt_count < max_attempts.

        Returns:
            True if the job was rescheduled; False otherwise.

        Raises:
            JobQueueError: If the update fails.
        """
        now = self.now()
        try:
            async with self._session_factory() as session, session.begin():
                snapshot = await self._load(session, job_id)
                if (
                    snapshot is None
                    or snapshot.status != JobStatus.PROCESSING
                    or snapshot.attempt_count >= snapshot.max_attempts
                ):
                    self._log_ignored("retry", job_id, snapshot)
                    return False

                next_attempt = snapshot.attempt_count + 1
                run_at = now + self.backoff.delay_for(next_attempt)
                applied = await self._guarded_update(
                    session,
                    snapshot,
                    Job.attempt_count == snapshot.attempt_count,
                    status=JobStatus.PENDING,
                    attempt_count=next_attempt,
                    scheduled_at=run_at,
                    updated_at=now,
                    worker_id=None,
                    locked_at=None,
                    locked_until=None,
                )
                if not applied:
                    self._log_ignored("retry", job_id, snapshot)
                    return False
        except SQLAlchemyError as e:
            logger.error("Failed to retry job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to retry job: {e}") from e

        logger.info(
            "Job scheduled for retry: job_id=%s, job_type=%s, attempt=%d/%d, retry_at=%s",
            job_id,
            snapshot.job_type,
            next_attempt,
            snapshot.max_attempts,
            run_at.isoformat(),
        )
        return True

    async def cancel(self, job_id: uuid.UUID) -> bool:
        """Cancel a pending or processing job.

        Cancelling a processing job does not stop its handler; the handler's
        eventual complete/fail becomes a no-op.

        Returns:
            True if the job was cancelled; False for any other state
            (including unknown ids), which is not an error.

        Raises:
            JobQueueError: If the update fails.
        """
        now = self.now()
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]),
                    )
                    .values(
                        status=JobStatus.CANCELLED,
                        completed_at=now,
                        updated_at=now,
                        worker_id=None,
                        locked_at=None,
                        locked_until=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                cancelled = result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error("Failed to cancel job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to cancel job: {e}") from e

        if cancelled:
            logger.info("Job cancelled: job_id=%s", job_id)
        else:
            logger.debug("Cancel ignored, job not pending or processing: job_id=%s", job_id)
        return cancelled

    async def extend_lease(
        self,
        job_id: uuid.UUID,
        worker_id: str,
        lease_seconds: int | None = None,
    ) -> bool:
        """Push locked_until forward while worker_id still holds the lease.

        Returns:
            True if the lease was extended; False if the caller no longer
            holds it (job finished, cancelled, or reclaimed by another worker).
        """
        now = self.now()
        lease = timedelta(seconds=lease_seconds or self.settings.lease_seconds)
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.worker_id == worker_id,
                        Job.status == JobStatus.PROCESSING,
                    )
                    .values(locked_until=now + lease, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error("Failed to extend lease for job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to extend lease: {e}") from e

    async def release_expired_leases(self) -> int:
        """Return processing jobs with expired leases to pending.

        Returns:
            Number of jobs released.
        """
        now = self.now()
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(Job)
                    .where(Job.status == JobStatus.PROCESSING, Job.locked_until < now)
                    .values(
                        status=JobStatus.PENDING,
                        worker_id=None,
                        locked_at=None,
                        locked_until=None,
                        scheduled_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                released = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error("Failed to release expired leases: %s", str(e))
            raise JobQueueError(f"Failed to release expired leases: {e}") from e

        if released:
            logger.warning("Released %d jobs with expired leases", released)
        return released

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: uuid.UUID) -> Job:
        """Retrieve a job by id.

        Raises:
            JobNotFoundError: If no job has this id.
            JobQueueError: If the query fails.
        """
        try:
            async with self._session_factory() as session:
                job = await self._load(session, job_id)
        except SQLAlchemyError as e:
            logger.error("Failed to get job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to get job: {e}") from e

        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def get_stats(self, queue_name: str | None = None, day: date | None = None) -> QueueStats:
        """Daily counters for one queue, or summed over all queues.

        Args:
            queue_name: Queue to report; None aggregates every queue.
            day: UTC date to report. Defaults to today.
        """
        day = day or self.now().date()
        stmt = select(
            *(func.coalesce(func.sum(getattr(QueueStat, name)), 0) for name in STAT_COUNTERS)
        ).where(QueueStat.stat_date == day)
        if queue_name:
            stmt = stmt.where(QueueStat.queue_name == queue_name)

        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).one()
        except SQLAlchemyError as e:
            logger.error("Failed to get stats: %s", str(e))
            raise JobQueueError(f"Failed to get stats: {e}") from e

        return QueueStats(
            queue_name,
            day,
            **{name: int(value) for name, value in zip(STAT_COUNTERS, row, strict=True)},
        )

    async def get_queue_health(self, queue_name: str | None = None) -> list[QueueHealth]:
        """Count ready, scheduled, processing and stuck jobs per queue."""
        now = self.now()
        pending = Job.status == JobStatus.PENDING
        processing = Job.status == JobStatus.PROCESSING

        def _count(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        stmt = (
            select(
                Job.queue_name,
                _count(and_(pending, Job.scheduled_at <= now)),
                _count(and_(pending, Job.scheduled_at > now)),
                _count(processing),
                _count(and_(processing, Job.locked_until < now)),
            )
            .where(or_(pending, processing))
            .group_by(Job.queue_name)
            .order_by(Job.queue_name)
        )
        if queue_name:
            stmt = stmt.where(Job.queue_name == queue_name)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            logger.error("Failed to get queue health: %s", str(e))
            raise JobQueueError(f"Failed to get queue health: {e}") from e

        return [
            QueueHealth(name, int(ready), int(scheduled), int(busy), int(stuck))
            for name, ready, scheduled, busy, stuck in rows
        ]

    async def list_dead_letters(
        self,
        queue_name: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterJob]:
        """Most recent dead-lettered jobs first."""
        stmt = select(DeadLetterJob).order_by(DeadLetterJob.failed_at.desc()).limit(limit)
        if queue_name:
            stmt = stmt.where(DeadLetterJob.queue_name == queue_name)

        try:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to list dead letters: %s", str(e))
            raise JobQueueError(f"Failed to list dead letters: {e}") from e

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, session: AsyncSession, job_id: uuid.UUID) -> Job | None:
        result = await session.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def _guarded_update(self, session: AsyncSession, snapshot: Job, *extra, **values) -> bool:
        """Apply values only if the row is still in the snapshot's lease.

        The lease (status + locked_at) acts as an optimistic version, so a
        concurrent cancel or reclaim turns this update into a no-op.
        """
        result = await session.execute(
            update(Job)
            .where(
                Job.id == snapshot.id,
                Job.status == JobStatus.PROCESSING,
                Job.locked_at == snapshot.locked_at,
                *extra,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _bump_stats(
        self,
        session: AsyncSession,
        queue_name: str,
        now: datetime,
        **increments: int,
    ) -> None:
        """Add increments to today's queue_stats row, creating it if needed."""
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            insert_fn = pg_insert
        elif dialect == "sqlite":
            insert_fn = sqlite_insert
        else:
            msg = f"Unsupported database dialect for queue stats: {dialect}"
            raise JobQueueError(msg)

        stmt = insert_fn(QueueStat).values(
            id=uuid.uuid4(),
            queue_name=queue_name,
            stat_date=now.date(),
            created_at=now,
            updated_at=now,
            **increments,
        )
        columns = QueueStat.__table__.c
        stmt = stmt.on_conflict_do_update(
            index_elements=[columns.queue_name, columns.stat_date],
            set_={
                **{name: columns[name] + stmt.excluded[name] for name in increments},
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)

    @staticmethod
    def _log_ignored(operation: str, job_id: uuid.UUID, job: Job | None) -> None:
        logger.info(
            "Ignored %s: job_id=%s, status=%s",
            operation,
            job_id,
            job.status.value if job is not None else "missing",
        )
