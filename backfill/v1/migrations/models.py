"""
Queue table for scheduled background migration jobs.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    Index,
    SmallInteger,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from backfill.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize timestamps read back from backends that drop tzinfo (SQLite)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    RUNNING = "running"
    DEADLETTER = "deadletter"


# Statuses that count as outstanding work for a migration
PENDING_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class ScheduledJob(Base):
    """
    One scheduled invocation of a migration unit.

    Rows are deleted on successful acknowledgement, so every row that is
    queued or running is pending work. Dead-lettered rows stay for operators.
    """

    __tablename__ = "background_migration_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Migration unit name"
    )
    arguments: Mapped[list[Any]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Primitive arguments passed to perform",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|running|deadletter",
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Priority 1-10, lower is higher priority",
    )
    run_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Earliest time the job may be claimed",
    )
    attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Number of attempts made"
    )

    # Worker coordination
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="When job was claimed"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker or drainer holding the claim"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Last claim heartbeat"
    )

    # Failures
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error identifier"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'deadletter')",
            name="background_migration_jobs_status_check",
        ),
        CheckConstraint(
            "priority BETWEEN 1 AND 10",
            name="background_migration_jobs_priority_check",
        ),
        Index("ix_background_migration_jobs_status_run_at", "status", "run_at"),
        Index("ix_background_migration_jobs_name_status", "name", "status"),
        Index("ix_background_migration_jobs_heartbeat_at", "heartbeat_at"),
    )
