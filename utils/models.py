"""
SQLAlchemy models. Postgres is the source of truth; SQLite is used in dev/tests.

JSON-shaped columns are stored as Text (json.dumps) so the schema stays
portable across both dialects.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes for timezone=True columns; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ------------------------------------------------------------------
# Credits & subscriptions
# ------------------------------------------------------------------

class ServerCredits(Base):
    """Per-guild credit balance split across free/subscription/purchased pools."""

    __tablename__ = "server_credits"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    remaining_credits: Mapped[int] = mapped_column(Integer, default=0)
    total_used_credits: Mapped[int] = mapped_column(Integer, default=0)

    free_credits: Mapped[int] = mapped_column(Integer, default=0)
    subscription_credits: Mapped[int] = mapped_column(Integer, default=0)
    purchased_credits: Mapped[int] = mapped_column(Integer, default=0)

    free_used_credits: Mapped[int] = mapped_column(Integer, default=0)
    subscription_used_credits: Mapped[int] = mapped_column(Integer, default=0)
    purchased_used_credits: Mapped[int] = mapped_column(Integer, default=0)

    last_free_refresh: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_free_refresh: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    low_credits_warning_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_server_credits_next_refresh", "next_free_refresh"),)


class CreditTransaction(Base):
    """Append-only audit log of credit changes."""

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, index=True)

    amount: Mapped[int] = mapped_column(Integer, default=0)
    # 'usage' | 'purchase' | 'free_monthly' | 'subscription' | 'refund' | 'admin'
    transaction_type: Mapped[str] = mapped_column(String(32), default="usage")
    feature_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_credit_transactions_guild_day", "guild_id", "created_at"),)


class ServerSubscription(Base):
    __tablename__ = "server_subscriptions"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    plan: Mapped[str] = mapped_column(String(16), default="standard")
    status: Mapped[str] = mapped_column(String(16), default="inactive")
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_server_subscriptions_stripe_sub", "stripe_subscription_id"),)


class ServerConfig(Base):
    """Per-guild settings edited through /server-settings and /setup-journal."""

    __tablename__ = "server_config"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    prefix: Mapped[str] = mapped_column(String(16), default="bri")
    enabled_features: Mapped[str] = mapped_column(Text, default="{}")
    designated_channels: Mapped[str] = mapped_column(Text, default="[]")
    credits_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    journal_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")
    custom_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)


# ------------------------------------------------------------------
# Relationships
# ------------------------------------------------------------------

class Relationship(Base):
    """Per-(user, guild) familiarity with the persona."""

    __tablename__ = "bri_relationships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, index=True)

    level: Mapped[int] = mapped_column(Integer, default=0)
    interaction_count: Mapped[int] = mapped_column(Integer, default=0)
    last_interaction: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    shared_interests: Mapped[str] = mapped_column(Text, default="[]")
    conversation_topics: Mapped[str] = mapped_column(Text, default="{}")
    inside_jokes: Mapped[str] = mapped_column(Text, default="[]")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_bri_relationships_unique", "user_id", "guild_id", unique=True),)


# ------------------------------------------------------------------
# Interests & storylines
# ------------------------------------------------------------------

class Interest(Base):
    """Global interest shared by every guild's persona instance."""

    __tablename__ = "bri_interests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    facts: Mapped[str] = mapped_column(Text, default="[]")
    tags: Mapped[str] = mapped_column(Text, default="[]")
    share_threshold: Mapped[float] = mapped_column(Float, default=0.5)
    embedding: Mapped[str] = mapped_column(Text, default="")

    first_mentioned: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    last_discussed: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)


class GuildInterest(Base):
    """Guild-local overlay of a global Interest."""

    __tablename__ = "bri_guild_interests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, index=True)
    interest_id: Mapped[int] = mapped_column(Integer, index=True)

    level: Mapped[int] = mapped_column(Integer, default=1)
    guild_facts: Mapped[str] = mapped_column(Text, default="[]")
    guild_tags: Mapped[str] = mapped_column(Text, default="[]")
    last_discussed: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_bri_guild_interests_unique", "guild_id", "interest_id", unique=True),)


class PotentialInterest(Base):
    """Staging row for a topic that has not yet earned a GuildInterest."""

    __tablename__ = "bri_potential_interests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, index=True)
    name: Mapped[str] = mapped_column(String(128))

    mention_count: Mapped[int] = mapped_column(Integer, default=0)
    users_mentioned: Mapped[str] = mapped_column(Text, default="[]")
    data: Mapped[str] = mapped_column(Text, default="{}")
    max_enthusiasm: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_bri_potential_interests_unique", "guild_id", "name", unique=True),)


class Storyline(Base):
    __tablename__ = "bri_storyline"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    event_key: Mapped[str] = mapped_column(String(128), default="")
    title: Mapped[str] = mapped_column(String(256), default="")
    description: Mapped[str] = mapped_column(Text, default="")

    # 'in_progress' | 'completed'
    status: Mapped[str] = mapped_column(String(16), default="in_progress")
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updates: Mapped[str] = mapped_column(Text, default="[]")
    share_threshold: Mapped[float] = mapped_column(Float, default=0.6)
    related_interests: Mapped[str] = mapped_column(Text, default="[]")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_bri_storyline_status", "status"),)


# ------------------------------------------------------------------
# Character sheet & journal
# ------------------------------------------------------------------

class CharacterSheetRow(Base):
    """Versioned persona biography for one guild (see utils/character_sheet.py)."""

    __tablename__ = "bri_character_sheet"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    schema_version: Mapped[int] = mapped_column(Integer, default=2)
    sheet: Mapped[str] = mapped_column(Text, default="{}")
    routine: Mapped[str] = mapped_column(Text, default="{}")
    last_aged_on: Mapped[str] = mapped_column(String(10), default="")  # YYYY-MM-DD (guild tz)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)


class JournalEntry(Base):
    __tablename__ = "bri_journal_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, index=True)
    entry_type: Mapped[str] = mapped_column(String(32), default="daily_thought")
    title: Mapped[str] = mapped_column(String(256), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    related_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    embedding: Mapped[str] = mapped_column(Text, default="")
    posted_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_bri_journal_entries_guild_day", "guild_id", "created_at"),)


class PendingInterest(Base):
    """Interests picked up from journal extraction, awaiting the daily interest journal."""

    __tablename__ = "bri_pending_interests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, index=True)
    name: Mapped[str] = mapped_column(String(128))
    description: Mapped[str] = mapped_column(Text, default="")
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)


# ------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------

class ScheduledJob(Base):
    """Persisted due-time row polled by utils/scheduler_loop.py."""

    __tablename__ = "scheduled_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32))
    guild_id: Mapped[int] = mapped_column(BigInteger, default=0)
    slot: Mapped[str] = mapped_column(String(32), default="")

    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    # 'pending' | 'running' | 'cancelled'
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default="")
    locked_by: Mapped[str] = mapped_column(String(64), default="")
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (
        Index("ix_scheduled_jobs_unique", "kind", "guild_id", "slot", unique=True),
        Index("ix_scheduled_jobs_due", "status", "due_at"),
    )
