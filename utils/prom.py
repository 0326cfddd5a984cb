"""Prometheus metric definitions.

All metric objects are created at import time so any module can increment them.
The /metrics HTTP endpoint (registered in core/stripe_webhook.py) calls
``prometheus_client.generate_latest()`` to render current values.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge

credit_debits_total = Counter(
    "bot_credit_debits_total",
    "Credit debit attempts by operation and outcome",
    ["operation", "result"],
)

stripe_events_total = Counter(
    "bot_stripe_events_total",
    "Stripe webhook events received",
    ["event_type"],
)

llm_degradations_total = Counter(
    "bot_llm_degradations_total",
    "LLM calls that fell back to a canned result",
    ["operation"],
)

scheduler_jobs_total = Counter(
    "bot_scheduler_jobs_total",
    "Scheduled jobs executed by kind and outcome",
    ["kind", "result"],
)

active_guilds = Gauge(
    "bot_active_guilds",
    "Number of guilds the bot is currently in",
)
