"""create relationship, interest and storyline tables

Revision ID: 0002_create_persona_state
Revises: 0001_create_credit_tables
Create Date: 2026-09-04
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_create_persona_state"
down_revision = "0001_create_credit_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bri_relationships",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("interaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_interaction", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shared_interests", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("conversation_topics", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("inside_jokes", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bri_relationships_user_id", "bri_relationships", ["user_id"])
    op.create_index("ix_bri_relationships_guild_id", "bri_relationships", ["guild_id"])
    op.create_index("ix_bri_relationships_unique", "bri_relationships", ["user_id", "guild_id"], unique=True)

    op.create_table(
        "bri_interests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("facts", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("tags", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("share_threshold", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("embedding", sa.Text(), nullable=False, server_default=""),
        sa.Column("first_mentioned", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_discussed", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "bri_guild_interests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("interest_id", sa.Integer(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("guild_facts", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("guild_tags", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("last_discussed", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bri_guild_interests_guild_id", "bri_guild_interests", ["guild_id"])
    op.create_index("ix_bri_guild_interests_interest_id", "bri_guild_interests", ["interest_id"])
    op.create_index("ix_bri_guild_interests_unique", "bri_guild_interests", ["guild_id", "interest_id"], unique=True)

    op.create_table(
        "bri_potential_interests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("mention_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("users_mentioned", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("data", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("max_enthusiasm", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bri_potential_interests_guild_id", "bri_potential_interests", ["guild_id"])
    op.create_index("ix_bri_potential_interests_unique", "bri_potential_interests", ["guild_id", "name"], unique=True)

    op.create_table(
        "bri_storyline",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=True),
        sa.Column("event_key", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("title", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="in_progress"),
        sa.Column("progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("start_date", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updates", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("share_threshold", sa.Float(), nullable=False, server_default="0.6"),
        sa.Column("related_interests", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bri_storyline_guild_id", "bri_storyline", ["guild_id"])
    op.create_index("ix_bri_storyline_status", "bri_storyline", ["status"])


def downgrade() -> None:
    op.drop_index("ix_bri_storyline_status", table_name="bri_storyline")
    op.drop_index("ix_bri_storyline_guild_id", table_name="bri_storyline")
    op.drop_table("bri_storyline")
    op.drop_index("ix_bri_potential_interests_unique", table_name="bri_potential_interests")
    op.drop_index("ix_bri_potential_interests_guild_id", table_name="bri_potential_interests")
    op.drop_table("bri_potential_interests")
    op.drop_index("ix_bri_guild_interests_unique", table_name="bri_guild_interests")
    op.drop_index("ix_bri_guild_interests_interest_id", table_name="bri_guild_interests")
    op.drop_index("ix_bri_guild_interests_guild_id", table_name="bri_guild_interests")
    op.drop_table("bri_guild_interests")
    op.drop_table("bri_interests")
    op.drop_index("ix_bri_relationships_unique", table_name="bri_relationships")
    op.drop_index("ix_bri_relationships_guild_id", table_name="bri_relationships")
    op.drop_index("ix_bri_relationships_user_id", table_name="bri_relationships")
    op.drop_table("bri_relationships")
