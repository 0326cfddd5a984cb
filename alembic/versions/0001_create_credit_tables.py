"""create server_credits, credit_transactions, server_subscriptions, server_config

Revision ID: 0001_create_credit_tables
Revises: 
Create Date: 2026-09-02
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_create_credit_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "server_credits",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("remaining_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_used_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchased_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_used_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_used_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchased_used_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_free_refresh", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_free_refresh", sa.DateTime(timezone=True), nullable=True),
        sa.Column("low_credits_warning_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_server_credits_next_refresh", "server_credits", ["next_free_refresh"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("feature_type", sa.String(length=64), nullable=True),
        sa.Column("payment_id", sa.String(length=128), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_credit_transactions_guild_id", "credit_transactions", ["guild_id"])
    op.create_index("ix_credit_transactions_guild_day", "credit_transactions", ["guild_id", "created_at"])

    op.create_table(
        "server_subscriptions",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("plan", sa.String(length=16), nullable=False, server_default="standard"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="inactive"),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=128), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_server_subscriptions_stripe_sub", "server_subscriptions", ["stripe_subscription_id"])

    op.create_table(
        "server_config",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("prefix", sa.String(length=16), nullable=False, server_default="bri"),
        sa.Column("enabled_features", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("designated_channels", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("credits_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("journal_channel_id", sa.BigInteger(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="America/New_York"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("server_config")
    op.drop_index("ix_server_subscriptions_stripe_sub", table_name="server_subscriptions")
    op.drop_table("server_subscriptions")
    op.drop_index("ix_credit_transactions_guild_day", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_guild_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_index("ix_server_credits_next_refresh", table_name="server_credits")
    op.drop_table("server_credits")
