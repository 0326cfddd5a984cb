# core/services.py
from __future__ import annotations

from dataclasses import dataclass, field

from utils.cache import TTLCache

SERVER_CONFIG_TTL_S = 10 * 60
SUBSCRIPTION_TTL_S = 5 * 60


@dataclass
class BotServices:
    """Process-scoped collaborators handed to cogs and background loops.

    Created once in bot.py and attached as ``bot.services``. Tests build their
    own instance so caches never leak between cases.
    """

    config_cache: TTLCache = field(default_factory=lambda: TTLCache(ttl_seconds=SERVER_CONFIG_TTL_S, max_entries=2048))
    subscription_cache: TTLCache = field(default_factory=lambda: TTLCache(ttl_seconds=SUBSCRIPTION_TTL_S, max_entries=2048))

    def invalidate_guild(self, guild_id: int) -> None:
        self.config_cache.delete(int(guild_id))
        self.subscription_cache.delete(int(guild_id))


def services_for(bot) -> BotServices:
    """Return the bot's services, creating them on first use (cogs loaded in tests)."""
    svc = getattr(bot, "services", None)
    if svc is None:
        svc = BotServices()
        try:
            bot.services = svc
        except Exception:
            pass
    return svc
