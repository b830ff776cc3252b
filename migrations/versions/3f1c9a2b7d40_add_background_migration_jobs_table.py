"""add background migration jobs table

Revision ID: 3f1c9a2b7d40
Revises:
Create Date: 2026-10-18 09:12:41.508313

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1c9a2b7d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "background_migration_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text, nullable=False, comment="Migration unit name"),
        sa.Column(
            "arguments",
            sa.JSON,
            nullable=False,
            comment="Primitive arguments passed to perform",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            comment="Job status: queued|running|deadletter",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            comment="Priority 1-10, lower is higher priority",
        ),
        sa.Column(
            "run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time the job may be claimed",
        ),
        sa.Column(
            "attempts",
            sa.SmallInteger,
            nullable=False,
            comment="Number of attempts made",
        ),
        # Worker coordination fields
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When job was claimed",
        ),
        sa.Column(
            "locked_by",
            sa.Text,
            nullable=True,
            comment="Worker or drainer holding the claim",
        ),
        sa.Column(
            "heartbeat_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Last claim heartbeat",
        ),
        # Failures
        sa.Column(
            "error_code", sa.Text, nullable=True, comment="Structured error identifier"
        ),
        sa.Column("last_error", sa.Text, nullable=True, comment="Last error message"),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Constraints
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'deadletter')",
            name="background_migration_jobs_status_check",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 1 AND 10",
            name="background_migration_jobs_priority_check",
        ),
    )

    # Claim, pending-count and recovery lookups
    op.create_index(
        "ix_background_migration_jobs_status_run_at",
        "background_migration_jobs",
        ["status", "run_at"],
    )
    op.create_index(
        "ix_background_migration_jobs_name_status",
        "background_migration_jobs",
        ["name", "status"],
    )
    op.create_index(
        "ix_background_migration_jobs_heartbeat_at",
        "background_migration_jobs",
        ["heartbeat_at"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("background_migration_jobs")
