"""Initial schema with delayed_jobs table

Revision ID: 001
Revises: 
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create delayed_jobs table
    op.create_table(
        "delayed_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("queue_name", sa.String(100), nullable=False),
        sa.Column("actor_id", sa.String(36), nullable=False),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column(
            "run_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("complete", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "completed_with_failure",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column(
            "created",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("version", sa.BigInteger, nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )

    # Eligible-job scans
    op.create_index(
        "idx_delayed_jobs_queue_name_run_at",
        "delayed_jobs",
        ["queue_name", "run_at", "complete", "locked"],
    )

    # Partial index for lease reclamation
    op.execute("""
        CREATE INDEX idx_delayed_jobs_locked
        ON delayed_jobs (locked, locked_at)
        WHERE locked = true
    """)

    # Partial index for failure monitoring
    op.execute("""
        CREATE INDEX idx_delayed_jobs_failed
        ON delayed_jobs (failed_at DESC)
        WHERE failed_at IS NOT NULL
    """)


def downgrade() -> None:
    # Drop indexes
    op.execute("DROP INDEX IF EXISTS idx_delayed_jobs_failed")
    op.execute("DROP INDEX IF EXISTS idx_delayed_jobs_locked")
    op.drop_index("idx_delayed_jobs_queue_name_run_at")

    # Drop table
    op.drop_table("delayed_jobs")
