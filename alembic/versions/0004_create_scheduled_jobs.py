"""create scheduled_jobs

Revision ID: 0004_create_scheduled_jobs
Revises: 0003_create_character_journal
Create Date: 2026-09-18

Persisted due-time table polled by the scheduler loop.
"""

from alembic import op
import sqlalchemy as sa


revision = "0004_create_scheduled_jobs"
down_revision = "0003_create_character_journal"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("guild_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("slot", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=False, server_default=""),
        sa.Column("locked_by", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_scheduled_jobs_unique", "scheduled_jobs", ["kind", "guild_id", "slot"], unique=True)
    op.create_index("ix_scheduled_jobs_due", "scheduled_jobs", ["status", "due_at"])


def downgrade() -> None:
    op.drop_index("ix_scheduled_jobs_due", table_name="scheduled_jobs")
    op.drop_index("ix_scheduled_jobs_unique", table_name="scheduled_jobs")
    op.drop_table("scheduled_jobs")
