"""Job queue tables.

- job_queue: the durable job records, claimed with leases by workers
- queue_stats: per-queue, per-day counters maintained by the store
- job_dead_letter_queue: copies of jobs that failed permanently
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import date, datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import BigInteger, CheckConstraint, Date, Enum, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.db.models.base import (
    Base,
    JobStatus,
    JSONDocument,
    OptionalTimestampTZ,
    OptionalUUID,
    TimestampTZ,
    UTCDateTime,
    UUIDPrimaryKey,
    utcnow,
)


class Job(Base):
    """A persisted unit of work.

    Jobs are claimed by workers through a guarded UPDATE (after
    SELECT ... FOR UPDATE SKIP LOCKED on PostgreSQL). The lease columns
    (worker_id, locked_at, locked_until) are only set while processing.
    """

    __tablename__ = "job_queue"

    id: Mapped[UUIDPrimaryKey]
    organization_id: Mapped[OptionalUUID]

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False, default="default")
    # Handler lookup key, e.g. 'email.send', 'contacts.import'
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # FailureKind tag for error_message (validation, no_handler, handler_error, infra)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Higher = claimed first
    priority: Mapped[int] = mapped_column(nullable=False, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            create_constraint=True,
            length=20,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )
    attempt_count: Mapped[int] = mapped_column(nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(nullable=False, default=3)

    # Lease
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[OptionalTimestampTZ]
    locked_until: Mapped[OptionalTimestampTZ]

    created_at: Mapped[TimestampTZ]
    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONDocument, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint(
            "attempt_count >= 0 AND attempt_count <= max_attempts",
            name="attempt_bounds",
        ),
        # Claim path: eligible rows per queue in claim order
        Index("ix_job_queue_claim", "queue_name", "status", "priority", "scheduled_at"),
        Index("ix_job_queue_scheduled_at", "scheduled_at"),
        Index("ix_job_queue_worker_id", "worker_id"),
        Index("ix_job_queue_organization_id", "organization_id", "status"),
        Index("ix_job_queue_completed_at", "completed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Job id={self.id} queue={self.queue_name} type={self.job_type} "
            f"status={self.status.value if self.status else None}>"
        )


class QueueStat(Base):
    """Daily counters for one queue."""

    __tablename__ = "queue_stats"

    id: Mapped[UUIDPrimaryKey]
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)

    jobs_enqueued: Mapped[int] = mapped_column(nullable=False, default=0)
    jobs_completed: Mapped[int] = mapped_column(nullable=False, default=0)
    jobs_failed: Mapped[int] = mapped_column(nullable=False, default=0)
    total_processing_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    __table_args__ = (UniqueConstraint("queue_name", "stat_date"),)


class DeadLetterJob(Base):
    """Snapshot of a job at the moment it failed permanently."""

    __tablename__ = "job_dead_letter_queue"

    id: Mapped[UUIDPrimaryKey]
    original_job_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    organization_id: Mapped[OptionalUUID]

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)

    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    attempt_count: Mapped[int] = mapped_column(nullable=False)
    failed_at: Mapped[TimestampTZ]

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONDocument, nullable=False, default=dict
    )

    __table_args__ = (
        Index("ix_job_dead_letter_queue_queue_name", "queue_name", "failed_at"),
        Index("ix_job_dead_letter_queue_organization_id", "organization_id", "failed_at"),
    )
