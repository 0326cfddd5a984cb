# utils/redis_conn.py
from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Optional

from redis.asyncio import Redis

# Redis client singleton (per process). Redis is optional: every caller must
# degrade gracefully when get_redis_or_none() returns None.
_redis: Optional[Redis] = None
_redis_lock = asyncio.Lock()


def _redis_url() -> str:
    url = (
        (os.getenv("REDIS_URL") or "").strip()
        or (os.getenv("REDIS_PRIVATE_URL") or "").strip()
        or (os.getenv("REDIS_PUBLIC_URL") or "").strip()
    )
    if not url:
        raise RuntimeError("Redis URL is missing. Set REDIS_URL (or REDIS_PRIVATE_URL).")
    return url


async def get_redis() -> Redis:
    global _redis
    if _redis is not None:
        return _redis
    async with _redis_lock:
        if _redis is not None:
            return _redis
        _redis = Redis.from_url(
            _redis_url(),
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        return _redis


async def get_redis_or_none() -> Optional[Redis]:
    """Best-effort Redis getter.

    Returns None if Redis is missing/unavailable.
    """
    try:
        return await get_redis()
    except Exception:
        return None


async def close_redis() -> None:
    global _redis
    async with _redis_lock:
        if _redis is not None:
            try:
                await _redis.aclose()
            except Exception:
                pass
            _redis = None


def dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def loads_or(s: str | bytes | None, default: Any = None) -> Any:
    if s is None:
        return default
    if isinstance(s, (bytes, bytearray)):
        s = s.decode("utf-8", errors="ignore")
    try:
        return json.loads(s)
    except Exception:
        return default
