# utils/conversation_memory.py
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

from utils.redis_conn import dumps_compact, get_redis_or_none, loads_or

logger = logging.getLogger("bot.memory")

# Short rolling window per (guild, user). Redis only: without it the bot
# simply talks without recent-history context.
DEFAULT_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_MAX_ITEMS = 20
MAX_ITEM_CHARS = 500


def _key(guild_id: int, user_id: int) -> str:
    return f"bri:mem:{int(guild_id)}:{int(user_id)}"


def _trim_text(s: str, max_chars: int = MAX_ITEM_CHARS) -> str:
    s = " ".join((s or "").split())
    if len(s) <= max_chars:
        return s
    return s[: max_chars - 1].rstrip() + "…"


async def append_exchange(
    guild_id: int,
    user_id: int,
    user_text: str,
    bot_text: str,
    *,
    max_items: int = DEFAULT_MAX_ITEMS,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
) -> bool:
    r = await get_redis_or_none()
    if r is None:
        return False
    now = int(time.time())
    key = _key(guild_id, user_id)
    try:
        await r.rpush(
            key,
            dumps_compact({"role": "user", "content": _trim_text(user_text), "ts": now}),
            dumps_compact({"role": "assistant", "content": _trim_text(bot_text), "ts": now}),
        )
        await r.ltrim(key, -int(max_items), -1)
        await r.expire(key, int(ttl_seconds))
        return True
    except Exception:
        logger.warning("Conversation memory write failed guild=%s user=%s", guild_id, user_id, exc_info=True)
        return False


async def get_history(guild_id: int, user_id: int, *, limit: int = DEFAULT_MAX_ITEMS) -> List[Dict[str, Any]]:
    """Oldest-first list of ``{role, content, ts}``. Empty when Redis is unavailable."""
    r = await get_redis_or_none()
    if r is None:
        return []
    try:
        raw = await r.lrange(_key(guild_id, user_id), -max(1, int(limit)), -1)
    except Exception:
        logger.warning("Conversation memory read failed guild=%s user=%s", guild_id, user_id, exc_info=True)
        return []
    out = []
    for item in raw or []:
        v = loads_or(item, None)
        if isinstance(v, dict) and v.get("content"):
            out.append(v)
    return out


def history_messages(history: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {"role": h["role"], "content": str(h["content"])}
        for h in history
        if h.get("role") in ("user", "assistant")
    ]


async def clear_history(guild_id: int, user_id: int) -> bool:
    r = await get_redis_or_none()
    if r is None:
        return False
    try:
        await r.delete(_key(guild_id, user_id))
        return True
    except Exception:
        logger.warning("Conversation memory clear failed guild=%s user=%s", guild_id, user_id, exc_info=True)
        return False
