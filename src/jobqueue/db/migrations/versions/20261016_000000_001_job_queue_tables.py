"""Create job queue tables.

Revision ID: 001
Revises:
Create Date: 2026-10-16 00:00:00.000000+00:00

Creates:
- job_queue: durable jobs with lease columns and claim index
- queue_stats: daily per-queue counters, unique per (queue_name, stat_date)
- job_dead_letter_queue: snapshots of permanently failed jobs
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JOB_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")


def upgrade() -> None:
    """Apply migration: Create job queue tables."""
    op.create_table(
        "job_queue",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("queue_name", sa.String(100), nullable=False, server_default="default"),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(32), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "scheduled_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        # Lease, set only while processing
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_job_queue")),
        sa.CheckConstraint(
            "status IN ({})".format(", ".join(f"'{s}'" for s in JOB_STATUSES)),
            name=op.f("ck_job_queue_job_status"),
        ),
        sa.CheckConstraint(
            "attempt_count >= 0 AND attempt_count <= max_attempts",
            name=op.f("ck_job_queue_attempt_bounds"),
        ),
    )

    op.create_index(
        "ix_job_queue_claim",
        "job_queue",
        ["queue_name", "status", "priority", "scheduled_at"],
        unique=False,
    )
    op.create_index("ix_job_queue_scheduled_at", "job_queue", ["scheduled_at"], unique=False)
    op.create_index("ix_job_queue_worker_id", "job_queue", ["worker_id"], unique=False)
    op.create_index(
        "ix_job_queue_organization_id",
        "job_queue",
        ["organization_id", "status"],
        unique=False,
    )
    op.create_index("ix_job_queue_completed_at", "job_queue", ["completed_at"], unique=False)

    op.create_table(
        "queue_stats",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("queue_name", sa.String(100), nullable=False),
        sa.Column("stat_date", sa.Date(), nullable=False),
        sa.Column("jobs_enqueued", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_completed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "total_processing_ms",
            sa.BigInteger(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_queue_stats")),
        sa.UniqueConstraint(
            "queue_name",
            "stat_date",
            name=op.f("uq_queue_stats_queue_name"),
        ),
    )

    op.create_table(
        "job_dead_letter_queue",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("original_job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("queue_name", sa.String(100), nullable=False),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_kind", sa.String(32), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column(
            "failed_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_job_dead_letter_queue")),
    )

    op.create_index(
        "ix_job_dead_letter_queue_queue_name",
        "job_dead_letter_queue",
        ["queue_name", "failed_at"],
        unique=False,
    )
    op.create_index(
        "ix_job_dead_letter_queue_organization_id",
        "job_dead_letter_queue",
        ["organization_id", "failed_at"],
        unique=False,
    )


def downgrade() -> None:
    """Revert migration: Drop job queue tables."""
    op.drop_index("ix_job_dead_letter_queue_organization_id", table_name="job_dead_letter_queue")
    op.drop_index("ix_job_dead_letter_queue_queue_name", table_name="job_dead_letter_queue")
    op.drop_table("job_dead_letter_queue")

    op.drop_table("queue_stats")

    op.drop_index("ix_job_queue_completed_at", table_name="job_queue")
    op.drop_index("ix_job_queue_organization_id", table_name="job_queue")
    op.drop_index("ix_job_queue_worker_id", table_name="job_queue")
    op.drop_index("ix_job_queue_scheduled_at", table_name="job_queue")
    op.drop_index("ix_job_queue_claim", table_name="job_queue")
    op.drop_table("job_queue")
