import logging
import os
import sys

_config_log = logging.getLogger("config")


def _as_bool(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, str(default))).strip() or default)
    except ValueError:
        return default

# ---- Discord ----
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN") or os.getenv("TOKEN")

# ---- OpenAI ----
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip()
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small").strip()
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip()
# Hard default timeout: keep requests from hanging shards.
OPENAI_TIMEOUT_S = float(os.getenv("OPENAI_TIMEOUT_S", "30").strip() or "30")

# ---- Environment ----
ENVIRONMENT = os.getenv("ENVIRONMENT", "prod").strip().lower()
BOT_NAME = os.getenv("BOT_NAME", "Bri")

# ---- Emergency kill switch ----
# If true, ALL AI calls are disabled immediately. Callers degrade to fallbacks.
AI_DISABLED = _as_bool("AI_DISABLED", "false")

# ---- Guild sync ----
def _parse_id_list(raw: str | None) -> list[int]:
    if not raw:
        return []
    out: list[int] = []
    seen: set[int] = set()
    for part in str(raw).split(","):
        p = part.strip()
        if not p.isdigit():
            continue
        v = int(p)
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


DEV_GUILD_IDS = _parse_id_list(os.getenv("DEV_GUILD_ID"))
SYNC_GUILD_IDS = _parse_id_list(os.getenv("SYNC_GUILD_ID"))

# ---- Owners ----
BOT_OWNER_IDS = {
    int(x.strip())
    for x in (os.getenv("BOT_OWNER_IDS") or "").split(",")
    if x.strip().isdigit()
}

# ---- Credits ----
# Free allowance granted to every server on each monthly refresh.
FREE_MONTHLY_CREDITS = _as_int("FREE_MONTHLY_CREDITS", 1000)
# New servers start with credits charged. Set false to launch with metering off.
CREDITS_ENABLED_DEFAULT = _as_bool("CREDITS_ENABLED_DEFAULT", "true")

# ---- Persona / journal ----
DEFAULT_TIMEZONE = (os.getenv("DEFAULT_TIMEZONE") or "America/New_York").strip()
DEFAULT_PREFIX = (os.getenv("DEFAULT_PREFIX") or "bri").strip()

# ---- Scheduler ----
SCHEDULER_ENABLED = _as_bool("SCHEDULER_ENABLED", "true")
SCHEDULER_POLL_S = _as_int("SCHEDULER_POLL_S", 30)

# ---- Stripe (payments & subscriptions) ----
STRIPE_SECRET_KEY = (os.getenv("STRIPE_SECRET_KEY") or "").strip() or None
STRIPE_WEBHOOK_SECRET = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip() or None

# Subscription price IDs per plan (create these in the Stripe Dashboard -> Products)
STRIPE_PLAN_PRICES: dict[str, str] = {}
for _plan in ("standard", "premium", "enterprise"):
    _pid = (os.getenv(f"STRIPE_PRICE_{_plan.upper()}_MONTHLY") or "").strip()
    if _pid:
        STRIPE_PLAN_PRICES[_plan] = _pid

# Credit bundle price IDs. Lookup keys match the Stripe price lookup_key or the id.
STRIPE_PRICE_CREDITS_1000 = (os.getenv("STRIPE_PRICE_CREDITS_1000") or "").strip() or None
STRIPE_PRICE_CREDITS_5000 = (os.getenv("STRIPE_PRICE_CREDITS_5000") or "").strip() or None
STRIPE_PRICE_CREDITS_10000 = (os.getenv("STRIPE_PRICE_CREDITS_10000") or "").strip() or None
STRIPE_PRICE_CREDITS_25000 = (os.getenv("STRIPE_PRICE_CREDITS_25000") or "").strip() or None

# Map price key -> credits per unit. Bare amounts are always accepted so
# products created with lookup keys "1000", "5000", ... work without env vars.
STRIPE_CREDIT_BUNDLES: dict[str, int] = {
    "1000": 1_000,
    "5000": 5_000,
    "10000": 10_000,
    "25000": 25_000,
}
for _price_id, _credits in [
    (STRIPE_PRICE_CREDITS_1000, 1_000),
    (STRIPE_PRICE_CREDITS_5000, 5_000),
    (STRIPE_PRICE_CREDITS_10000, 10_000),
    (STRIPE_PRICE_CREDITS_25000, 25_000),
]:
    if _price_id:
        STRIPE_CREDIT_BUNDLES[_price_id] = _credits

STRIPE_SUCCESS_URL = (os.getenv("STRIPE_SUCCESS_URL") or "https://discord.com").strip()
STRIPE_CANCEL_URL = (os.getenv("STRIPE_CANCEL_URL") or "https://discord.com").strip()

# ---- Payments feature flag ----
PAYMENTS_ENABLED = _as_bool("PAYMENTS_ENABLED", "false")


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

def validate_config() -> None:
    """Check for required and recommended environment variables.

    Called at import time. In production, missing critical vars cause a hard
    exit so the problem is obvious.
    """
    is_prod = ENVIRONMENT != "dev"
    errors: list[str] = []
    warnings: list[str] = []

    if not DISCORD_TOKEN:
        errors.append("DISCORD_TOKEN (or TOKEN) is not set. The bot cannot start.")

    if is_prod:
        if not os.getenv("DATABASE_URL"):
            errors.append("DATABASE_URL is not set. Postgres is required in production.")
        if PAYMENTS_ENABLED and not STRIPE_WEBHOOK_SECRET:
            warnings.append(
                "STRIPE_WEBHOOK_SECRET is not set. Stripe webhooks will be rejected in production."
            )

    if not OPENAI_API_KEY:
        warnings.append("OPENAI_API_KEY is not set. Chat and journal generation will use fallbacks.")
    if PAYMENTS_ENABLED and not STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY is not set. Stripe payments will be disabled.")
    if FREE_MONTHLY_CREDITS <= 0:
        warnings.append("FREE_MONTHLY_CREDITS is 0. Servers without a plan cannot use metered features.")

    for w in warnings:
        _config_log.warning("CONFIG WARNING: %s", w)

    if errors:
        for e in errors:
            _config_log.critical("CONFIG ERROR: %s", e)
        if is_prod:
            sys.exit(1)


validate_config()
