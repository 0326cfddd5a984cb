"""create character sheet, journal and pending interest tables

Revision ID: 0003_create_character_journal
Revises: 0002_create_persona_state
Create Date: 2026-09-10
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_create_character_journal"
down_revision = "0002_create_persona_state"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bri_character_sheet",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("sheet", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("routine", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("last_aged_on", sa.String(length=10), nullable=False, server_default=""),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "bri_journal_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("entry_type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("related_id", sa.String(length=64), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("embedding", sa.Text(), nullable=False, server_default=""),
        sa.Column("posted_message_id", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bri_journal_entries_guild_id", "bri_journal_entries", ["guild_id"])
    op.create_index("ix_bri_journal_entries_guild_day", "bri_journal_entries", ["guild_id", "created_at"])

    op.create_table(
        "bri_pending_interests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bri_pending_interests_guild_id", "bri_pending_interests", ["guild_id"])


def downgrade() -> None:
    op.drop_index("ix_bri_pending_interests_guild_id", table_name="bri_pending_interests")
    op.drop_table("bri_pending_interests")
    op.drop_index("ix_bri_journal_entries_guild_day", table_name="bri_journal_entries")
    op.drop_index("ix_bri_journal_entries_guild_id", table_name="bri_journal_entries")
    op.drop_table("bri_journal_entries")
    op.drop_table("bri_character_sheet")
