# utils/server_config.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

import config
from utils.cache import TTLCache
from utils.db import get_sessionmaker
from utils.models import ServerConfig

logger = logging.getLogger("bot.server_config")

DEFAULT_FEATURES: dict[str, bool] = {
    "quotes": True,
    "memory": True,
    "reminders": True,
    "character": True,
}

# Columns /server-settings and /setup-journal may write.
_UPDATABLE = {
    "prefix",
    "enabled_features",
    "designated_channels",
    "credits_enabled",
    "journal_channel_id",
    "timezone",
    "custom_prompt",
}


@dataclass(frozen=True)
class ServerConfigSnapshot:
    guild_id: int
    prefix: str = "bri"
    enabled_features: dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_FEATURES))
    designated_channels: list[int] = field(default_factory=list)
    credits_enabled: bool = True
    journal_channel_id: int | None = None
    timezone: str = "America/New_York"
    custom_prompt: str | None = None


def default_config(guild_id: int) -> ServerConfigSnapshot:
    return ServerConfigSnapshot(
        guild_id=int(guild_id),
        prefix=config.DEFAULT_PREFIX,
        credits_enabled=bool(config.CREDITS_ENABLED_DEFAULT),
        timezone=config.DEFAULT_TIMEZONE,
    )


def _loads(raw: str | None, default: Any) -> Any:
    try:
        v = json.loads(raw or "")
    except (TypeError, ValueError):
        return default
    return v if isinstance(v, type(default)) else default


def _to_snapshot(row: ServerConfig) -> ServerConfigSnapshot:
    feats = dict(DEFAULT_FEATURES)
    feats.update({str(k): bool(v) for k, v in _loads(row.enabled_features, {}).items()})
    channels = [int(c) for c in _loads(row.designated_channels, []) if str(c).isdigit()]
    return ServerConfigSnapshot(
        guild_id=int(row.guild_id),
        prefix=(row.prefix or config.DEFAULT_PREFIX),
        enabled_features=feats,
        designated_channels=channels,
        credits_enabled=bool(row.credits_enabled),
        journal_channel_id=int(row.journal_channel_id) if row.journal_channel_id else None,
        timezone=(row.timezone or config.DEFAULT_TIMEZONE),
        custom_prompt=(row.custom_prompt or None),
    )


async def get_server_config(guild_id: int, *, cache: TTLCache | None = None) -> ServerConfigSnapshot:
    """Read-through config lookup. Creates the row with defaults on first access.

    On a database error the defaults are returned (not cached).
    """
    gid = int(guild_id)
    if cache is not None:
        hit = cache.get(gid)
        if hit is not None:
            return hit

    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await session.get(ServerConfig, gid)
            if row is None:
                d = default_config(gid)
                row = ServerConfig(
                    guild_id=gid,
                    prefix=d.prefix,
                    enabled_features=json.dumps(d.enabled_features, separators=(",", ":")),
                    designated_channels="[]",
                    credits_enabled=d.credits_enabled,
                    timezone=d.timezone,
                )
                session.add(row)
                await session.commit()
            snap = _to_snapshot(row)
    except Exception:
        logger.exception("get_server_config failed guild=%s", gid)
        return default_config(gid)

    if cache is not None:
        cache.set(gid, snap)
    return snap


async def update_server_config(
    guild_id: int,
    updates: dict[str, Any],
    *,
    cache: TTLCache | None = None,
) -> ServerConfigSnapshot | None:
    """Apply a partial update. Returns the new snapshot, or None on failure."""
    gid = int(guild_id)
    unknown = set(updates) - _UPDATABLE
    if unknown:
        raise ValueError(f"Unknown server config fields: {sorted(unknown)}")

    # Merge into the current snapshot so JSON columns are written whole.
    current = await get_server_config(gid, cache=None)
    merged = replace(current, **{k: v for k, v in updates.items()})

    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await session.get(ServerConfig, gid)
            if row is None:
                row = ServerConfig(guild_id=gid)
                session.add(row)
            row.prefix = merged.prefix
            row.enabled_features = json.dumps(merged.enabled_features, separators=(",", ":"))
            row.designated_channels = json.dumps([int(c) for c in merged.designated_channels])
            row.credits_enabled = bool(merged.credits_enabled)
            row.journal_channel_id = merged.journal_channel_id
            row.timezone = merged.timezone
            row.custom_prompt = merged.custom_prompt or None
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
    except Exception:
        logger.exception("update_server_config failed guild=%s", gid)
        return None

    if cache is not None:
        cache.delete(gid)
    logger.info("Server config updated guild=%s fields=%s", gid, sorted(updates))
    return merged


async def list_journal_guilds() -> list[ServerConfigSnapshot]:
    """Configs of every guild with a journal channel set."""
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(ServerConfig).where(ServerConfig.journal_channel_id.is_not(None))
        )
        return [_to_snapshot(r) for r in res.scalars().all()]
