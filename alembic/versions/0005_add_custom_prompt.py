"""add server_config.custom_prompt

Revision ID: 0005_add_custom_prompt
Revises: 0004_create_scheduled_jobs
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0005_add_custom_prompt"
down_revision = "0004_create_scheduled_jobs"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("server_config", sa.Column("custom_prompt", sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column("server_config", "custom_prompt")
