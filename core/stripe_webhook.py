# core/stripe_webhook.py
"""Stripe webhook receiver running as an aiohttp web server inside the bot process.

Binds 0.0.0.0:PORT. The webhook verifies signatures, then dispatches to
handlers that update ServerSubscription rows and the guild credit pools.
GET / is the health check and GET /metrics serves Prometheus.
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
import os
import time
from datetime import datetime, timezone

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

import config
from core.services import services_for
from utils.prom import stripe_events_total
from utils.redis_conn import get_redis_or_none

log = logging.getLogger("stripe.webhook")

# ---------------------------------------------------------------------------
# In-memory rate limiter for the webhook endpoint (sliding window)
# ---------------------------------------------------------------------------
_RATE_LIMIT_MAX = 60          # max requests per window
_RATE_LIMIT_WINDOW_S = 60     # window size in seconds
_rate_timestamps: collections.deque[float] = collections.deque()

_EVENT_TTL_S = 48 * 3600

# Stripe subscription status -> ServerSubscription.status
_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}


def _rate_limit_ok() -> bool:
    """Return True if the request should be allowed, False to reject (429)."""
    now = time.monotonic()
    cutoff = now - _RATE_LIMIT_WINDOW_S
    while _rate_timestamps and _rate_timestamps[0] < cutoff:
        _rate_timestamps.popleft()
    if len(_rate_timestamps) >= _RATE_LIMIT_MAX:
        return False
    _rate_timestamps.append(now)
    return True


# Reference to the Discord bot for owner DMs and the shared caches.
_bot = None


def _get_stripe():
    import stripe as _s
    _s.api_key = config.STRIPE_SECRET_KEY
    return _s


def _sub_cache():
    return services_for(_bot).subscription_cache if _bot is not None else None


def _period_end(sub) -> datetime | None:
    """current_period_end, top-level on older API versions and per item on newer ones."""
    ts = sub.get("current_period_end")
    if not ts:
        items = ((sub.get("items") or {}).get("data")) or []
        if items:
            ts = items[0].get("current_period_end")
    return datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts else None


async def _try_dm_user(user_id: int, message: str) -> None:
    """Best-effort DM to a Discord user. Never raises."""
    try:
        if _bot is None:
            return
        user = await _bot.fetch_user(int(user_id))
        if user:
            await user.send(message[:2000])
    except Exception:
        log.debug("Could not DM user %s", user_id, exc_info=True)


async def _notify_owners(message: str) -> None:
    """Best-effort DM to all bot owners. Never raises."""
    for owner_id in config.BOT_OWNER_IDS:
        await _try_dm_user(owner_id, message)


async def _resolve_guild(sub_id: str, metadata: dict) -> int:
    guild_id = int(metadata.get("guild_id") or 0)
    if guild_id:
        return guild_id
    from utils.subscriptions import find_guild_by_stripe_subscription

    found = await find_guild_by_stripe_subscription(sub_id)
    if found:
        log.info("Resolved guild=%s from stored subscription %s", found, sub_id)
    return int(found or 0)


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------

async def _credits_for_session(session_id: str) -> int:
    """Sum bundle credits over the session's line items (price map x quantity)."""
    stripe = _get_stripe()
    items = await asyncio.to_thread(stripe.checkout.Session.list_line_items, session_id, limit=100)
    total = 0
    for item in items.get("data") or []:
        price_id = str(((item.get("price") or {}).get("id")) or "")
        per_unit = config.STRIPE_CREDIT_BUNDLES.get(price_id, 0)
        if not per_unit:
            log.warning("Unknown credit bundle price %s in session %s", price_id, session_id)
            continue
        total += per_unit * int(item.get("quantity") or 1)
    return total


async def handle_checkout_completed(session_obj: dict) -> None:
    """Handle checkout.session.completed: credit purchases and plan subscriptions."""
    metadata = session_obj.get("metadata") or {}
    purchase_type = metadata.get("type", "")
    guild_id = int(metadata.get("guild_id") or 0)
    session_id = str(session_obj.get("id") or "")

    if purchase_type == "credit_purchase":
        if not guild_id:
            log.warning("checkout.session.completed: credit purchase without guild_id (session=%s)", session_id)
            return
        credits = await _credits_for_session(session_id)
        if credits <= 0:
            log.warning("checkout.session.completed: no credits resolved for session=%s guild=%s", session_id, guild_id)
            return

        from utils.credits_store import add_credits

        ok = await add_credits(
            guild_id,
            credits,
            "purchase",
            payment_id=session_id,
            meta={"user_id": metadata.get("user_id")},
        )
        if not ok:
            raise RuntimeError(f"add_credits failed for guild={guild_id} session={session_id}")
        log.info("Credited %d purchased credits to guild=%s", credits, guild_id)
        await _notify_owners(
            f"\U0001f4b0 **New Credit Purchase!**\n"
            f"**Server:** {guild_id}\n"
            f"**Credits:** {credits:,}\n"
            f"**Purchaser:** <@{metadata.get('user_id', '?')}>",
        )

    elif purchase_type == "server_subscription":
        if not guild_id:
            log.warning("checkout.session.completed: subscription without guild_id (session=%s)", session_id)
            return
        plan = str(metadata.get("plan") or "")
        sub_id = str(session_obj.get("subscription") or "")
        cust_id = str(session_obj.get("customer") or "")

        period_end = None
        if sub_id:
            stripe = _get_stripe()
            try:
                sub = await asyncio.to_thread(stripe.Subscription.retrieve, sub_id)
                period_end = _period_end(sub)
                plan = plan or str((sub.get("metadata") or {}).get("plan") or "")
            except Exception:
                log.exception("Failed to retrieve subscription %s", sub_id)

        from utils.subscriptions import update_server_subscription

        await update_server_subscription(
            guild_id,
            {
                "plan": plan,
                "status": "active",
                "current_period_end": period_end,
                "stripe_customer_id": cust_id or None,
                "stripe_subscription_id": sub_id or None,
            },
            cache=_sub_cache(),
        )
        log.info("Activated %s plan for guild=%s sub=%s", plan, guild_id, sub_id)
        await _notify_owners(
            f"\U0001f4b0 **New Server Subscription!**\n"
            f"**Server:** {guild_id}\n"
            f"**Plan:** {plan}\n"
            f"**Renews:** {period_end.strftime('%B %d, %Y') if period_end else 'N/A'}",
        )

    else:
        log.info("checkout.session.completed: unknown type=%r, ignoring", purchase_type)


async def handle_invoice_paid(invoice: dict) -> None:
    """Handle invoice.paid: renew current_period_end."""
    sub_id = str(invoice.get("subscription") or "")
    if not sub_id:
        parent = (invoice.get("parent") or {}).get("subscription_details") or {}
        sub_id = str(parent.get("subscription") or "")
    if not sub_id:
        return

    stripe = _get_stripe()
    try:
        sub = await asyncio.to_thread(stripe.Subscription.retrieve, sub_id)
    except Exception:
        log.exception("Failed to retrieve subscription %s for invoice.paid", sub_id)
        return

    guild_id = await _resolve_guild(sub_id, sub.get("metadata") or {})
    if not guild_id:
        log.debug("invoice.paid: unknown guild for sub=%s, ignoring", sub_id)
        return

    period_end = _period_end(sub)
    if period_end is None:
        return
    from utils.subscriptions import update_server_subscription

    await update_server_subscription(
        guild_id,
        {"status": "active", "current_period_end": period_end},
        cache=_sub_cache(),
    )
    log.info("Renewed subscription for guild=%s until %s", guild_id, period_end.isoformat())


async def handle_subscription_updated(sub: dict) -> None:
    """Handle customer.subscription.updated: mirror status, plan and period end."""
    sub_id = str(sub.get("id") or "")
    metadata = sub.get("metadata") or {}
    guild_id = await _resolve_guild(sub_id, metadata)
    if not guild_id:
        log.debug("subscription.updated: unknown guild for sub=%s, ignoring", sub_id)
        return

    status = _STATUS_MAP.get(str(sub.get("status") or ""), "inactive")
    data = {"status": status, "stripe_subscription_id": sub_id or None}
    period_end = _period_end(sub)
    if period_end is not None:
        data["current_period_end"] = period_end
    if metadata.get("plan"):
        data["plan"] = str(metadata["plan"])

    from utils.subscriptions import update_server_subscription

    await update_server_subscription(guild_id, data, cache=_sub_cache())
    log.info(
        "subscription.updated: guild=%s status=%s cancel_at_period_end=%s sub=%s",
        guild_id, status, bool(sub.get("cancel_at_period_end", False)), sub_id,
    )


async def handle_subscription_deleted(sub: dict) -> None:
    """Handle customer.subscription.deleted: subscription fully ended."""
    sub_id = str(sub.get("id") or "")
    guild_id = await _resolve_guild(sub_id, sub.get("metadata") or {})
    if not guild_id:
        log.debug("subscription.deleted: unknown guild for sub=%s, ignoring", sub_id)
        return

    from utils.subscriptions import deactivate_server_subscription

    await deactivate_server_subscription(guild_id, status="canceled", cache=_sub_cache())
    log.info("Subscription deleted for guild=%s sub=%s", guild_id, sub_id)
    await _notify_owners(
        f"❌ **Server Subscription Ended**\n"
        f"**Server:** {guild_id}\n"
        f"**Subscription:** `{sub_id}`",
    )


async def _charge_metadata(charge: dict) -> dict:
    metadata = charge.get("metadata") or {}
    if metadata.get("type"):
        return metadata
    pi_id = str(charge.get("payment_intent") or "")
    if not pi_id:
        return metadata
    stripe = _get_stripe()
    try:
        pi = await asyncio.to_thread(stripe.PaymentIntent.retrieve, pi_id)
    except Exception:
        log.exception("charge.refunded: failed to retrieve payment intent %s", pi_id)
        return metadata
    return pi.get("metadata") or {}


async def handle_charge_refunded(charge: dict) -> None:
    """Handle charge.refunded: take refunded purchased credits back (never below 0)."""
    metadata = await _charge_metadata(charge)
    if metadata.get("type") != "credit_purchase":
        log.info("charge.refunded: type=%r is not a credit purchase; no reversal", metadata.get("type"))
        return

    guild_id = int(metadata.get("guild_id") or 0)
    credits = int(metadata.get("credits") or 0)
    amount = int(charge.get("amount") or 0)
    amount_refunded = int(charge.get("amount_refunded") or 0)
    if not guild_id or credits <= 0:
        log.warning("charge.refunded: missing guild_id/credits in metadata %r", metadata)
        return

    if amount > 0 and amount_refunded < amount:
        credits = int(credits * amount_refunded / amount)

    from utils.credits_store import remove_purchased_credits

    removed = await remove_purchased_credits(guild_id, credits, payment_id=str(charge.get("id") or ""))
    if removed < credits:
        log.warning(
            "charge.refunded: guild=%s had already spent part of the purchase; removed %d of %d",
            guild_id, removed, credits,
        )
    await _notify_owners(
        f"\U0001f4b8 **Stripe Refund**\n"
        f"**Server:** {guild_id}\n"
        f"**Credits removed:** {removed:,} of {credits:,}\n"
        f"**Amount refunded:** ${amount_refunded / 100:.2f}"
    )


_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "invoice.paid": handle_invoice_paid,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "charge.refunded": handle_charge_refunded,
}


# ---------------------------------------------------------------------------
# aiohttp webhook server
# ---------------------------------------------------------------------------

async def _check_idempotency(event_id: str) -> bool:
    """Return True if this event was already processed. Best-effort via Redis."""
    if not event_id:
        return False
    try:
        r = await get_redis_or_none()
        if r is None:
            return False
        return bool(await r.get(f"stripe:evt:{event_id}"))
    except Exception:
        return False


async def _mark_event_processed(event_id: str) -> None:
    """Record that this event has been processed. Best-effort via Redis (48h TTL)."""
    if not event_id:
        return
    try:
        r = await get_redis_or_none()
        if r is None:
            return
        await r.set(f"stripe:evt:{event_id}", "1", ex=_EVENT_TTL_S)
    except Exception:
        log.debug("Could not mark Stripe event %s processed", event_id, exc_info=True)


async def _handle_stripe_post(request):
    """POST /stripe/webhook: verify signature and dispatch."""
    if not _rate_limit_ok():
        log.warning("Webhook rate limit exceeded")
        return web.Response(status=429, text="Too many requests")

    payload = await request.read()
    sig_header = request.headers.get("Stripe-Signature", "")

    _is_prod = str(getattr(config, "ENVIRONMENT", "prod")).strip().lower() != "dev"

    if not config.STRIPE_WEBHOOK_SECRET:
        if _is_prod:
            log.error("STRIPE_WEBHOOK_SECRET not set in production; rejecting webhook")
            return web.Response(status=403, text="Webhook secret not configured")
        log.warning("STRIPE_WEBHOOK_SECRET not set (dev mode); accepting webhook without verification")
        try:
            event = json.loads(payload)
        except ValueError:
            return web.Response(status=400, text="Bad JSON")
    else:
        stripe = _get_stripe()
        try:
            event = stripe.Webhook.construct_event(
                payload.decode("utf-8"),
                sig_header,
                config.STRIPE_WEBHOOK_SECRET,
            )
        except Exception as exc:
            if "SignatureVerification" in type(exc).__name__:
                log.warning("Webhook signature verification failed")
                return web.Response(status=400, text="Invalid signature")
            log.exception("Webhook construction error")
            return web.Response(status=400, text="Bad request")

    event_id = str(event.get("id") or "")
    event_type = event.get("type", "")
    data_obj = (event.get("data") or {}).get("object") or {}

    log.info("Stripe event: %s (id=%s)", event_type, event_id or "?")

    if event_id and await _check_idempotency(event_id):
        log.info("Duplicate Stripe event %s (id=%s); skipping", event_type, event_id)
        return web.Response(status=200, text="ok (duplicate)")

    handler = _HANDLERS.get(event_type)
    try:
        if handler is not None:
            await handler(data_obj)
        else:
            log.debug("Unhandled Stripe event type: %s", event_type)
    except Exception:
        log.exception("Error handling Stripe event %s (id=%s)", event_type, event_id)
        return web.Response(status=500, text="Internal error")

    stripe_events_total.labels(event_type=event_type or "unknown").inc()

    # Only mark after successful handling so Stripe retries failures.
    await _mark_event_processed(event_id)
    return web.Response(status=200, text="ok")


async def _handle_health(request):
    """GET /: health check."""
    return web.Response(status=200, text=f"{config.BOT_NAME} is running")


async def _handle_metrics(request):
    """GET /metrics: Prometheus scrape endpoint."""
    return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})


def build_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/", _handle_health)
    app.router.add_get("/metrics", _handle_metrics)
    if config.STRIPE_SECRET_KEY:
        app.router.add_post("/stripe/webhook", _handle_stripe_post)
    else:
        log.info("STRIPE_SECRET_KEY not set; Stripe webhook endpoint disabled (health-check still active).")
    return app


async def start_webhook_server(bot) -> web.AppRunner:
    """Start the aiohttp web server for Stripe webhooks, health and metrics.

    Called from bot.py setup_hook. The health endpoint is always registered,
    even when Stripe is not configured.
    """
    global _bot
    _bot = bot

    port = int(os.getenv("PORT", "8080"))
    runner = web.AppRunner(build_app())
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log.info("Webhook/health server listening on 0.0.0.0:%d (stripe=%s)", port, bool(config.STRIPE_SECRET_KEY))
    return runner
