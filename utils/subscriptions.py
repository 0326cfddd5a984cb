# utils/subscriptions.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

from core.entitlements import get_plan, normalize_plan, plan_has_feature
from utils.cache import TTLCache
from utils.db import get_sessionmaker
from utils.models import ServerSubscription, as_utc

logger = logging.getLogger("bot.subscriptions")

VALID_STATUSES = {"active", "inactive", "canceled", "past_due"}


@dataclass(frozen=True)
class SubscriptionStatus:
    subscribed: bool
    plan: str | None = None
    current_period_end: datetime | None = None
    error: bool = False


_NOT_SUBSCRIBED = SubscriptionStatus(subscribed=False)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_active_row(row: ServerSubscription | None, *, now: datetime | None = None) -> bool:
    """Active = status 'active' and period end absent or still in the future."""
    if row is None or (row.status or "") != "active":
        return False
    end = as_utc(row.current_period_end)
    return end is None or end > (now or _now_utc())


async def get_subscription(guild_id: int) -> ServerSubscription | None:
    Session = get_sessionmaker()
    async with Session() as session:
        return await session.get(ServerSubscription, int(guild_id))


async def has_active_subscription(guild_id: int, *, cache: TTLCache | None = None) -> SubscriptionStatus:
    gid = int(guild_id)
    if cache is not None:
        hit = cache.get(gid)
        if hit is not None:
            return hit

    try:
        row = await get_subscription(gid)
    except Exception:
        logger.exception("has_active_subscription failed guild=%s", gid)
        return SubscriptionStatus(subscribed=False, error=True)

    if is_active_row(row) and normalize_plan(row.plan):
        status = SubscriptionStatus(
            subscribed=True,
            plan=normalize_plan(row.plan),
            current_period_end=as_utc(row.current_period_end),
        )
    else:
        status = _NOT_SUBSCRIBED

    if cache is not None:
        cache.set(gid, status)
    return status


async def is_feature_subscribed(guild_id: int, feature: str, *, cache: TTLCache | None = None) -> bool:
    status = await has_active_subscription(guild_id, cache=cache)
    if not status.subscribed:
        return False
    return plan_has_feature(status.plan, feature)


async def update_server_subscription(
    guild_id: int,
    data: dict[str, Any],
    *,
    cache: TTLCache | None = None,
) -> bool:
    """Create or update the guild's subscription row.

    ``data`` keys: plan, status, current_period_end, stripe_customer_id,
    stripe_subscription_id. Missing keys keep their stored value.

    A transition into 'active' from inactive/absent deposits the plan's monthly
    credits once into the subscription pool.
    """
    gid = int(guild_id)
    status = data.get("status")
    if status is not None and status not in VALID_STATUSES:
        logger.warning("update_server_subscription: unknown status %r guild=%s", status, gid)
        return False
    plan = data.get("plan")
    if plan is not None and normalize_plan(plan) is None:
        logger.warning("update_server_subscription: unknown plan %r guild=%s", plan, gid)
        return False

    try:
        Session = get_sessionmaker()
        async with Session() as session:
            res = await session.execute(
                select(ServerSubscription)
                .where(ServerSubscription.guild_id == gid)
                .with_for_update()
                .limit(1)
            )
            row = res.scalar_one_or_none()
            was_active = is_active_row(row)
            if row is None:
                row = ServerSubscription(guild_id=gid, status="inactive")
                session.add(row)

            if plan is not None:
                row.plan = normalize_plan(plan)
            if status is not None:
                row.status = status
            if "current_period_end" in data:
                row.current_period_end = data["current_period_end"]
            if data.get("stripe_customer_id"):
                row.stripe_customer_id = str(data["stripe_customer_id"])
            if data.get("stripe_subscription_id"):
                row.stripe_subscription_id = str(data["stripe_subscription_id"])
            row.updated_at = _now_utc()

            became_active = (row.status == "active") and not was_active
            bonus_plan = row.plan
            await session.commit()
    except Exception:
        logger.exception("update_server_subscription failed guild=%s", gid)
        return False
    finally:
        if cache is not None:
            cache.delete(gid)

    logger.info("Subscription updated guild=%s plan=%s status=%s", gid, bonus_plan, status)

    if became_active:
        ent = get_plan(bonus_plan)
        if ent and ent.monthly_credits > 0:
            from utils.credits_store import add_credits

            ok = await add_credits(gid, ent.monthly_credits, "subscription")
            if ok:
                logger.info(
                    "Granted %s activation credits guild=%s plan=%s", ent.monthly_credits, gid, bonus_plan
                )
            else:
                logger.error("Activation credit grant failed guild=%s plan=%s", gid, bonus_plan)
    return True


async def deactivate_server_subscription(
    guild_id: int,
    *,
    status: str = "canceled",
    cache: TTLCache | None = None,
) -> bool:
    return await update_server_subscription(guild_id, {"status": status}, cache=cache)


async def find_guild_by_stripe_subscription(stripe_subscription_id: str) -> int | None:
    """Reverse lookup used by webhook events that carry no guild metadata."""
    if not stripe_subscription_id:
        return None
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(ServerSubscription.guild_id)
            .where(ServerSubscription.stripe_subscription_id == str(stripe_subscription_id))
            .limit(1)
        )
        gid = res.scalar_one_or_none()
        return int(gid) if gid is not None else None
