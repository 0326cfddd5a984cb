# core/stripe_checkout.py
"""Stripe Checkout Session creation helpers.

All Stripe API calls are synchronous (the `stripe` SDK is sync-only), so we
wrap them in asyncio.to_thread() to keep the event loop unblocked.
Every session is scoped to one guild through its metadata.
"""
from __future__ import annotations

import asyncio
import logging

import config
from core.entitlements import normalize_plan

log = logging.getLogger("stripe.checkout")

_stripe = None


def _get_stripe():
    global _stripe
    if _stripe is None:
        import stripe as _s
        _s.api_key = config.STRIPE_SECRET_KEY
        _stripe = _s
    return _stripe


def _require_stripe() -> None:
    if not config.PAYMENTS_ENABLED:
        raise RuntimeError("Payments are disabled")
    if not config.STRIPE_SECRET_KEY:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")


# ---------------------------------------------------------------------------
# Stripe Customer reuse
# ---------------------------------------------------------------------------

async def get_or_create_stripe_customer(*, guild_id: int, guild_name: str = "") -> str:
    """Return the guild's stored Stripe customer ID, or create a new customer.

    The new ID is persisted when the subscription checkout completes.
    """
    from utils.subscriptions import get_subscription

    row = await get_subscription(guild_id)
    if row is not None and row.stripe_customer_id:
        return str(row.stripe_customer_id)

    stripe = _get_stripe()
    cust = await asyncio.to_thread(
        stripe.Customer.create,
        metadata={"guild_id": str(guild_id)},
        name=guild_name or f"Discord Server {guild_id}",
    )
    return str(cust["id"])


def _url(session) -> str:
    url = str(session.get("url") or "")
    if not url:
        raise RuntimeError("Stripe did not return a checkout URL")
    return url


# ---------------------------------------------------------------------------
# Plan subscription checkout
# ---------------------------------------------------------------------------

async def create_subscription_checkout(
    *,
    guild_id: int,
    user_id: int,
    plan: str,
    guild_name: str = "",
) -> str:
    """Create a Checkout Session for a monthly server plan. Returns the checkout URL."""
    _require_stripe()
    plan_key = normalize_plan(plan)
    price_id = config.STRIPE_PLAN_PRICES.get(plan_key or "")
    if not price_id:
        raise RuntimeError(f"No Stripe price configured for plan {plan!r}")

    stripe = _get_stripe()
    customer_id = await get_or_create_stripe_customer(guild_id=guild_id, guild_name=guild_name)
    metadata = {
        "type": "server_subscription",
        "guild_id": str(guild_id),
        "user_id": str(user_id),
        "plan": plan_key,
    }
    session = await asyncio.to_thread(
        stripe.checkout.Session.create,
        mode="subscription",
        customer=customer_id,
        line_items=[{"price": price_id, "quantity": 1}],
        metadata=metadata,
        subscription_data={"metadata": metadata},
        success_url=config.STRIPE_SUCCESS_URL,
        cancel_url=config.STRIPE_CANCEL_URL,
    )
    log.info("Subscription checkout created guild=%s plan=%s", guild_id, plan_key)
    return _url(session)


# ---------------------------------------------------------------------------
# Credit bundle checkout
# ---------------------------------------------------------------------------

async def create_credits_checkout(
    *,
    guild_id: int,
    user_id: int,
    price_id: str,
    guild_name: str = "",
) -> str:
    """Create a one-time Checkout Session for a credit bundle. Returns the checkout URL."""
    _require_stripe()
    credits = config.STRIPE_CREDIT_BUNDLES.get(price_id)
    if not credits:
        raise RuntimeError(f"Unknown credit bundle price {price_id!r}")

    stripe = _get_stripe()
    customer_id = await get_or_create_stripe_customer(guild_id=guild_id, guild_name=guild_name)
    metadata = {
        "type": "credit_purchase",
        "guild_id": str(guild_id),
        "user_id": str(user_id),
        "credits": str(credits),
    }
    session = await asyncio.to_thread(
        stripe.checkout.Session.create,
        mode="payment",
        customer=customer_id,
        line_items=[{"price": price_id, "quantity": 1}],
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
        success_url=config.STRIPE_SUCCESS_URL,
        cancel_url=config.STRIPE_CANCEL_URL,
    )
    log.info("Credit checkout created guild=%s credits=%s", guild_id, credits)
    return _url(session)


def credit_bundles() -> list[tuple[str, int]]:
    """(price_id, credits) pairs, smallest bundle first."""
    return sorted(config.STRIPE_CREDIT_BUNDLES.items(), key=lambda kv: kv[1])


# ---------------------------------------------------------------------------
# Billing portal (for cancellation / payment method management)
# ---------------------------------------------------------------------------

async def get_billing_portal_url(*, stripe_customer_id: str) -> str:
    """Create a Stripe Billing Portal session and return the URL."""
    _require_stripe()
    stripe = _get_stripe()
    session = await asyncio.to_thread(
        stripe.billing_portal.Session.create,
        customer=stripe_customer_id,
        return_url=config.STRIPE_SUCCESS_URL,
    )
    return str(session.get("url") or "")
