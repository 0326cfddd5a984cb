# utils/credits_store.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

import config
from core.entitlements import (
    FEATURE_UNLIMITED_REMINDERS,
    FEATURE_UNLIMITED_SCHEDULING,
    FEATURE_UNLIMITED_VISION,
    plan_monthly_credits,
)
from utils.db import get_sessionmaker
from utils.models import CreditTransaction, ServerCredits, as_utc
from utils.prom import credit_debits_total

if TYPE_CHECKING:
    from core.services import BotServices

logger = logging.getLogger("bot.credits")

# ---- Cost table (single source of truth) ----
CREDIT_COSTS: dict[str, int] = {
    "CHAT_MESSAGE": 1,
    "IMAGE_GENERATION": 10,
    "MEMORY_OPERATION": 2,
    "REMINDER_CREATION": 5,
    "SCHEDULE_MESSAGE": 15,
    "VISION_ANALYSIS": 5,
    "JOURNAL_ENTRY": 3,
}
DEFAULT_COST = 1

# Operations an active plan can make free.
UNLIMITED_FEATURE_FOR_OPERATION: dict[str, str] = {
    "REMINDER_CREATION": FEATURE_UNLIMITED_REMINDERS,
    "SCHEDULE_MESSAGE": FEATURE_UNLIMITED_SCHEDULING,
    "VISION_ANALYSIS": FEATURE_UNLIMITED_VISION,
}

# source -> pool column
_SOURCE_POOLS: dict[str, str] = {
    "purchase": "purchased_credits",
    "admin": "purchased_credits",
    "subscription": "subscription_credits",
    "free_monthly": "free_credits",
}

LOW_CREDITS_RATIO = 0.10


def credit_cost(operation_type: str) -> int:
    return int(CREDIT_COSTS.get(str(operation_type or "").upper(), DEFAULT_COST))


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def first_of_next_month(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def _meta(**kw: Any) -> str:
    return json.dumps(kw, separators=(",", ":"))


@dataclass(frozen=True)
class ServerCreditsSnapshot:
    guild_id: int
    remaining_credits: int
    total_used_credits: int
    free_credits: int
    subscription_credits: int
    purchased_credits: int
    free_used_credits: int
    subscription_used_credits: int
    purchased_used_credits: int
    last_free_refresh: datetime | None
    next_free_refresh: datetime | None
    low_credits_warning_sent: bool

    @property
    def free_remaining(self) -> int:
        return max(0, self.free_credits - self.free_used_credits)

    @property
    def subscription_remaining(self) -> int:
        return max(0, self.subscription_credits - self.subscription_used_credits)

    @property
    def purchased_remaining(self) -> int:
        return max(0, self.purchased_credits - self.purchased_used_credits)


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    cost: int
    remaining: int
    charged: bool = True  # False when the operation was free (unlimited plan / metering off)
    low_credits_warning: bool = False  # True only on the debit that first crossed the threshold


@dataclass(frozen=True)
class UsageRecord:
    amount: int
    transaction_type: str
    feature_type: str | None
    created_at: datetime


def _snapshot(row: ServerCredits) -> ServerCreditsSnapshot:
    return ServerCreditsSnapshot(
        guild_id=int(row.guild_id),
        remaining_credits=int(row.remaining_credits or 0),
        total_used_credits=int(row.total_used_credits or 0),
        free_credits=int(row.free_credits or 0),
        subscription_credits=int(row.subscription_credits or 0),
        purchased_credits=int(row.purchased_credits or 0),
        free_used_credits=int(row.free_used_credits or 0),
        subscription_used_credits=int(row.subscription_used_credits or 0),
        purchased_used_credits=int(row.purchased_used_credits or 0),
        last_free_refresh=as_utc(row.last_free_refresh),
        next_free_refresh=as_utc(row.next_free_refresh),
        low_credits_warning_sent=bool(row.low_credits_warning_sent),
    )


def _recompute_remaining(row: ServerCredits) -> None:
    pools = int(row.free_credits or 0) + int(row.subscription_credits or 0) + int(row.purchased_credits or 0)
    used = (
        int(row.free_used_credits or 0)
        + int(row.subscription_used_credits or 0)
        + int(row.purchased_used_credits or 0)
    )
    row.remaining_credits = max(0, pools - used)


def _low_threshold(row: ServerCredits) -> float:
    total = int(row.free_credits or 0) + int(row.subscription_credits or 0) + int(row.purchased_credits or 0)
    return max(total * LOW_CREDITS_RATIO, config.FREE_MONTHLY_CREDITS * LOW_CREDITS_RATIO)


def _new_row(guild_id: int, now: datetime) -> ServerCredits:
    free = int(config.FREE_MONTHLY_CREDITS)
    return ServerCredits(
        guild_id=int(guild_id),
        remaining_credits=free,
        total_used_credits=0,
        free_credits=free,
        subscription_credits=0,
        purchased_credits=0,
        free_used_credits=0,
        subscription_used_credits=0,
        purchased_used_credits=0,
        last_free_refresh=now,
        next_free_refresh=first_of_next_month(now),
        low_credits_warning_sent=False,
        created_at=now,
        updated_at=now,
    )


async def _locked_row(session, guild_id: int, *, create: bool = True) -> ServerCredits | None:
    res = await session.execute(
        select(ServerCredits)
        .where(ServerCredits.guild_id == int(guild_id))
        .with_for_update()
        .limit(1)
    )
    row = res.scalar_one_or_none()
    if row is None and create:
        now = _now_utc()
        row = _new_row(guild_id, now)
        session.add(row)
        session.add(
            CreditTransaction(
                guild_id=int(guild_id),
                amount=int(row.free_credits),
                transaction_type="free_monthly",
                meta_json=_meta(reason="initial_allowance"),
                created_at=now,
            )
        )
        await session.flush()
    return row


# ----------------------------
# Reads
# ----------------------------
async def get_server_credits(guild_id: int) -> ServerCreditsSnapshot | None:
    """Return the guild's balance, creating it (and running a due refill) on demand.

    Returns None on a database error.
    """
    gid = int(guild_id)
    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked_row(session, gid)
            snap = _snapshot(row)
            await session.commit()
    except Exception:
        logger.exception("get_server_credits failed guild=%s", gid)
        return None

    if snap.next_free_refresh is not None and snap.next_free_refresh <= _now_utc():
        if await process_monthly_rollover(gid):
            return await get_server_credits(gid)
    return snap


async def _is_free_for_guild(guild_id: int, operation_type: str, services: "BotServices | None") -> bool:
    """Metering off for the guild, or the operation is covered by an unlimited plan feature."""
    from utils.server_config import get_server_config
    from utils.subscriptions import is_feature_subscribed

    cfg = await get_server_config(
        guild_id, cache=services.config_cache if services is not None else None
    )
    if not cfg.credits_enabled:
        return True

    feature = UNLIMITED_FEATURE_FOR_OPERATION.get(str(operation_type or "").upper())
    if feature:
        return await is_feature_subscribed(
            guild_id,
            feature,
            cache=services.subscription_cache if services is not None else None,
        )
    return False


async def has_enough_credits(
    guild_id: int,
    operation_type: str,
    *,
    services: "BotServices | None" = None,
) -> bool:
    try:
        if await _is_free_for_guild(guild_id, operation_type, services):
            return True
        snap = await get_server_credits(guild_id)
    except Exception:
        logger.exception("has_enough_credits failed guild=%s op=%s", guild_id, operation_type)
        return False
    if snap is None:
        return False
    return snap.remaining_credits >= credit_cost(operation_type)


# ----------------------------
# Writes
# ----------------------------
def _drain_pools(row: ServerCredits, cost: int) -> None:
    """Charge ``cost`` against free, then subscription, then purchased."""
    left = int(cost)
    for total_col, used_col in (
        ("free_credits", "free_used_credits"),
        ("subscription_credits", "subscription_used_credits"),
        ("purchased_credits", "purchased_used_credits"),
    ):
        if left <= 0:
            break
        avail = max(0, int(getattr(row, total_col) or 0) - int(getattr(row, used_col) or 0))
        take = min(avail, left)
        if take:
            setattr(row, used_col, int(getattr(row, used_col) or 0) + take)
            left -= take


async def debit_credits(
    guild_id: int,
    operation_type: str,
    *,
    services: "BotServices | None" = None,
) -> DebitResult:
    """Debit the cost of ``operation_type`` in one locked transaction.

    Insufficient balance is a normal ``ok=False`` result. Database errors fail closed.
    """
    gid = int(guild_id)
    op = str(operation_type or "").upper()
    cost = credit_cost(op)

    try:
        if await _is_free_for_guild(gid, op, services):
            credit_debits_total.labels(operation=op, result="free").inc()
            logger.debug("Free operation guild=%s op=%s", gid, op)
            return DebitResult(ok=True, cost=0, remaining=-1, charged=False)

        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked_row(session, gid)
            _recompute_remaining(row)
            if int(row.remaining_credits) < cost:
                remaining = int(row.remaining_credits)
                await session.rollback()
                credit_debits_total.labels(operation=op, result="insufficient").inc()
                logger.info(
                    "Insufficient credits guild=%s op=%s cost=%s remaining=%s", gid, op, cost, remaining
                )
                return DebitResult(ok=False, cost=cost, remaining=remaining)

            _drain_pools(row, cost)
            row.total_used_credits = int(row.total_used_credits or 0) + cost
            _recompute_remaining(row)

            warn = False
            if not row.low_credits_warning_sent and row.remaining_credits <= _low_threshold(row):
                row.low_credits_warning_sent = True
                warn = True

            row.updated_at = _now_utc()
            session.add(
                CreditTransaction(
                    guild_id=gid,
                    amount=-cost,
                    transaction_type="usage",
                    feature_type=op,
                    meta_json=_meta(remaining=int(row.remaining_credits)),
                )
            )
            remaining = int(row.remaining_credits)
            await session.commit()
    except Exception:
        credit_debits_total.labels(operation=op, result="error").inc()
        logger.exception("debit_credits failed guild=%s op=%s", gid, op)
        return DebitResult(ok=False, cost=cost, remaining=0)

    credit_debits_total.labels(operation=op, result="ok").inc()
    if warn:
        logger.info("Guild %s is low on credits (%s remaining)", gid, remaining)
    return DebitResult(ok=True, cost=cost, remaining=remaining, low_credits_warning=warn)


async def use_credits(guild_id: int, operation_type: str, *, services: "BotServices | None" = None) -> bool:
    res = await debit_credits(guild_id, operation_type, services=services)
    return res.ok


async def add_credits(
    guild_id: int,
    amount: int,
    source: str,
    *,
    payment_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> bool:
    """Deposit ``amount`` into the pool for ``source``. Returns False on error."""
    gid = int(guild_id)
    amount = int(amount)
    pool = _SOURCE_POOLS.get(source)
    if pool is None:
        logger.warning("add_credits: unknown source %r guild=%s", source, gid)
        return False
    if amount <= 0:
        logger.warning("add_credits: non-positive amount %s guild=%s", amount, gid)
        return False

    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked_row(session, gid)
            setattr(row, pool, int(getattr(row, pool) or 0) + amount)
            _recompute_remaining(row)
            row.low_credits_warning_sent = False
            row.updated_at = _now_utc()
            session.add(
                CreditTransaction(
                    guild_id=gid,
                    amount=amount,
                    transaction_type=source,
                    payment_id=payment_id,
                    meta_json=_meta(**(meta or {})),
                )
            )
            await session.commit()
    except Exception:
        logger.exception("add_credits failed guild=%s amount=%s source=%s", gid, amount, source)
        return False

    logger.info("Added %s credits guild=%s source=%s", amount, gid, source)
    return True


async def remove_purchased_credits(guild_id: int, amount: int, *, payment_id: str | None = None) -> int:
    """Take back refunded purchased credits. Never removes credits already spent.

    Returns the number of credits actually removed.
    """
    gid = int(guild_id)
    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked_row(session, gid, create=False)
            if row is None:
                return 0
            purchased = int(row.purchased_credits or 0)
            used = int(row.purchased_used_credits or 0)
            removable = max(0, min(int(amount), purchased - used))
            if removable <= 0:
                await session.rollback()
                return 0
            row.purchased_credits = purchased - removable
            _recompute_remaining(row)
            row.updated_at = _now_utc()
            session.add(
                CreditTransaction(
                    guild_id=gid,
                    amount=-removable,
                    transaction_type="refund",
                    payment_id=payment_id,
                    meta_json=_meta(requested=int(amount)),
                )
            )
            await session.commit()
    except Exception:
        logger.exception("remove_purchased_credits failed guild=%s", gid)
        return 0

    logger.info("Refund removed %s purchased credits guild=%s", removable, gid)
    return removable


async def process_monthly_rollover(guild_id: int, *, now: datetime | None = None) -> bool:
    """Reset pools for a new month. No-op unless ``next_free_refresh`` has passed.

    Returns True when a rollover was applied.
    """
    from utils.subscriptions import has_active_subscription

    gid = int(guild_id)
    now = now or _now_utc()
    sub = await has_active_subscription(gid)
    plan_credits = plan_monthly_credits(sub.plan) if sub.subscribed else 0

    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked_row(session, gid, create=False)
            if row is None:
                return False
            due = as_utc(row.next_free_refresh)
            if due is not None and due > now:
                await session.rollback()
                return False

            free = int(row.free_credits or 0)
            sub_total = int(row.subscription_credits or 0)
            eff_free_used = min(int(row.free_used_credits or 0), free)
            eff_sub_used = min(int(row.subscription_used_credits or 0), sub_total)
            excess = max(0, int(row.total_used_credits or 0) - eff_free_used - eff_sub_used)
            remaining_purchased = max(0, int(row.purchased_credits or 0) - excess)

            row.free_credits = int(config.FREE_MONTHLY_CREDITS)
            row.subscription_credits = int(plan_credits)
            row.purchased_credits = remaining_purchased
            row.free_used_credits = 0
            row.subscription_used_credits = 0
            row.purchased_used_credits = 0
            row.total_used_credits = 0
            _recompute_remaining(row)
            row.low_credits_warning_sent = False
            row.last_free_refresh = now
            row.next_free_refresh = first_of_next_month(now)
            row.updated_at = now

            session.add(
                CreditTransaction(
                    guild_id=gid,
                    amount=int(config.FREE_MONTHLY_CREDITS),
                    transaction_type="free_monthly",
                    meta_json=_meta(carried_purchased=remaining_purchased),
                    created_at=now,
                )
            )
            if plan_credits > 0:
                session.add(
                    CreditTransaction(
                        guild_id=gid,
                        amount=int(plan_credits),
                        transaction_type="subscription",
                        meta_json=_meta(plan=sub.plan, reason="monthly_rollover"),
                        created_at=now,
                    )
                )
            await session.commit()
    except Exception:
        logger.exception("process_monthly_rollover failed guild=%s", gid)
        return False

    logger.info(
        "Monthly rollover guild=%s free=%s plan_credits=%s purchased=%s",
        gid, config.FREE_MONTHLY_CREDITS, plan_credits, remaining_purchased,
    )
    return True


async def refresh_due_guilds(now: datetime | None = None) -> int:
    """Run the monthly rollover for every guild whose refresh is due. Returns the count refreshed."""
    now = now or _now_utc()
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(ServerCredits.guild_id).where(ServerCredits.next_free_refresh <= now)
        )
        guild_ids = [int(g) for g in res.scalars().all()]

    done = 0
    for gid in guild_ids:
        if await process_monthly_rollover(gid, now=now):
            done += 1
    if guild_ids:
        logger.info("Credit refresh: %s/%s guilds rolled over", done, len(guild_ids))
    return done


async def get_usage_history(guild_id: int, days: int = 7, *, limit: int = 25) -> list[UsageRecord]:
    days = max(1, min(int(days), 30))
    since = _now_utc() - timedelta(days=days)
    try:
        Session = get_sessionmaker()
        async with Session() as session:
            res = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.guild_id == int(guild_id))
                .where(CreditTransaction.created_at >= since)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .limit(int(limit))
            )
            rows = res.scalars().all()
    except Exception:
        logger.exception("get_usage_history failed guild=%s", guild_id)
        return []
    return [
        UsageRecord(
            amount=int(r.amount or 0),
            transaction_type=str(r.transaction_type or ""),
            feature_type=r.feature_type,
            created_at=as_utc(r.created_at),
        )
        for r in rows
    ]
