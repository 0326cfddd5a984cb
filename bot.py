# bot.py
import os
import sys
import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

print("[boot] bot.py loading…", flush=True)

import discord
from discord.ext import commands
from dotenv import load_dotenv
from pythonjsonlogger.json import JsonFormatter
import asyncio

# Environment first so config.py sees .env values.
load_dotenv()

import config

print(f"[boot] config OK  env={getattr(config, 'ENVIRONMENT', '?')}", flush=True)
from core.services import BotServices
from utils.db import init_db
from utils.prom import active_guilds
from utils.redis_conn import get_redis_or_none


async def ensure_redis_best_effort() -> bool:
    """Best-effort Redis readiness.

    The bot degrades (no idempotency markers, no conversation memory) when Redis
    is down or misconfigured; it never crash-loops on it.
    """
    r = await get_redis_or_none()
    if r is None:
        return False
    for _ in range(1, 6):
        try:
            await r.ping()
            return True
        except Exception:
            await asyncio.sleep(1.0)
    return False


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------

intents = discord.Intents.default()
intents.guilds = True

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_DIR = Path(__file__).parent / "logs"
LOG_DIR.mkdir(exist_ok=True)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

root_logger = logging.getLogger()
root_logger.setLevel(logging.INFO)


def _make_json_formatter() -> logging.Formatter:
    """JSON formatter for structured file logs."""
    return JsonFormatter(
        "{asctime}{levelname}{name}{message}",
        style="{",
        rename_fields={"asctime": "timestamp", "levelname": "level"},
    )


def setup_logging() -> None:
    """Configure logging once (safe for reloads)."""
    for handler in root_logger.handlers:
        if getattr(handler, "_bri_handler", False):
            return

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    console._bri_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(console)

    json_fmt = _make_json_formatter()

    file = RotatingFileHandler(
        LOG_DIR / "bot.log",
        maxBytes=5_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    file.setFormatter(json_fmt)
    file._bri_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(file)

    errors = RotatingFileHandler(
        LOG_DIR / "errors.log",
        maxBytes=2_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    errors.setLevel(logging.ERROR)
    errors.setFormatter(json_fmt)
    errors._bri_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(errors)

    # discord.py is chatty at INFO on reconnects.
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)


setup_logging()
logger = logging.getLogger("bot")

# ---------------------------------------------------------------------------
# Extensions
# ---------------------------------------------------------------------------

EXTENSIONS = [
    "commands.slash.credits",
    "commands.slash.server_settings",
    "commands.slash.subscription",
    "commands.slash.journal",
    "commands.slash.talk",
    "commands.slash.memory",
    "commands.slash.personality",
]

# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------


class BriBot(commands.AutoShardedBot):
    """Slash-only bot. Owns the process-scoped services and background tasks."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.services = BotServices()
        self.start_time = time.time()
        self._background: list[asyncio.Task] = []
        self._webhook_runner = None

    async def setup_hook(self) -> None:
        redis_ok = await ensure_redis_best_effort()
        if not redis_ok:
            logger.warning("Redis unavailable at startup; running in degraded mode.")

        await init_db()

        # Health-check + Stripe webhook server.
        try:
            from core.stripe_webhook import start_webhook_server
            self._webhook_runner = await start_webhook_server(self)
        except Exception:
            logger.exception("Failed to start webhook/health server")

        await load_extensions(self)

        if config.SCHEDULER_ENABLED:
            try:
                from utils.scheduler_loop import start_scheduler_loop
                self._background.append(start_scheduler_loop(self))
            except Exception:
                logger.exception("Failed to start scheduler loop")
        else:
            logger.info("SCHEDULER_ENABLED=false; journal and refresh jobs will not run in this process")

        # Interests stored before embeddings were available.
        if not config.AI_DISABLED:
            self._background.append(asyncio.create_task(_backfill_embeddings()))

        try:
            await sync_commands(self)
        except Exception:
            logger.exception("sync_commands() failed")

    async def on_message(self, message: discord.Message):
        return  # slash commands only

    async def close(self) -> None:
        for task in self._background:
            task.cancel()
        if self._webhook_runner is not None:
            try:
                await self._webhook_runner.cleanup()
            except Exception:
                logger.exception("Webhook server cleanup failed")
        await super().close()


async def _backfill_embeddings() -> None:
    from utils.interests_store import backfill_interest_embeddings

    try:
        n = await backfill_interest_embeddings()
        if n:
            logger.info("Backfilled %d interest embeddings", n)
    except Exception:
        logger.exception("Interest embedding backfill failed")


def _get_env_int(name: str) -> int | None:
    try:
        v = int(str(os.getenv(name, "")).strip())
        return v if v > 0 else None
    except ValueError:
        return None


bot = BriBot(
    command_prefix=commands.when_mentioned,
    intents=intents,
    shard_count=_get_env_int("SHARD_COUNT"),
)


async def load_extensions(target: commands.Bot) -> None:
    """Load all extensions. Log failures but keep going so one broken cog
    doesn't take down the health-check server."""
    failed: list[str] = []
    for ext in EXTENSIONS:
        try:
            await target.load_extension(ext)
            logger.info("Loaded extension: %s", ext)
        except Exception:
            logger.exception("FAILED loading extension: %s", ext)
            failed.append(ext)
    if failed:
        logger.error("Extensions that failed to load: %s", failed)


async def sync_commands(target: commands.Bot) -> None:
    env = str(getattr(config, "ENVIRONMENT", "prod")).lower().strip()

    if env == "dev":
        guild_ids = list(config.SYNC_GUILD_IDS or []) or list(config.DEV_GUILD_IDS or [])
        if not guild_ids:
            logger.warning("No SYNC_GUILD_ID/DEV_GUILD_ID set; skipping dev guild slash-command sync")
            return
        for guild_id in guild_ids:
            guild = discord.Object(id=int(guild_id))
            # Copy globals so guild sync is instant in dev.
            target.tree.copy_global_to(guild=guild)
            await target.tree.sync(guild=guild)
            logger.info("Synced slash commands to guild=%s", guild_id)
    else:
        await target.tree.sync()
        logger.info("Synced slash commands globally (prod)")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@bot.event
async def on_ready():
    logger.info("%s is ready. Logged in as %s (guilds=%d)", config.BOT_NAME, bot.user, len(bot.guilds))
    active_guilds.set(len(bot.guilds))


@bot.event
async def on_guild_join(guild):
    logger.info("Joined guild=%s (%s)", guild.id, guild.name)
    active_guilds.set(len(bot.guilds))


@bot.event
async def on_guild_remove(guild):
    logger.info("Removed from guild=%s", guild.id)
    active_guilds.set(len(bot.guilds))
    bot.services.invalidate_guild(guild.id)
    try:
        from utils.schedule_store import cancel_guild_jobs
        await cancel_guild_jobs(guild.id)
    except Exception:
        logger.exception("Cancelling jobs for removed guild=%s failed", guild.id)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

async def main():
    try:
        print("[boot] connecting to Discord…", flush=True)
        await bot.start(config.DISCORD_TOKEN)
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Received shutdown signal")
    finally:
        if not bot.is_closed():
            logger.info("Closing bot connection...")
            await bot.close()
        try:
            from utils.db import get_engine
            await get_engine().dispose()
            logger.info("Database engine disposed")
        except Exception:
            logger.exception("Engine dispose failed")
        from utils.ai_client import aclose_ai_client
        from utils.redis_conn import close_redis
        await aclose_ai_client()
        await close_redis()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    import signal

    def _handle_signal(sig, _frame):
        logger.info("Signal %s received, initiating graceful shutdown...", signal.Signals(sig).name)
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, _handle_signal)
    try:
        signal.signal(signal.SIGTERM, _handle_signal)
    except (OSError, AttributeError):
        pass  # SIGTERM not available on Windows

    asyncio.run(main())
