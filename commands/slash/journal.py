# commands/slash/journal.py
from __future__ import annotations

import logging
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import discord
from discord import app_commands
from discord.ext import commands

import config
from core.entitlements import FEATURE_JOURNALING
from core.services import services_for
from core.ui import (
    feature_locked,
    safe_defer,
    safe_ephemeral_send,
    send_generic_error,
    send_insufficient_credits,
    send_ui_error,
)
from utils import journal as journal_mod
from utils.credits_store import debit_credits, has_enough_credits
from utils.schedule_store import ensure_guild_jobs
from utils.server_config import update_server_config
from utils.subscriptions import is_feature_subscribed

logger = logging.getLogger("bot.journal")

JOURNAL_OPERATION = "JOURNAL_ENTRY"

_MANUAL_TYPES = [
    app_commands.Choice(name="Daily thought", value=journal_mod.ENTRY_DAILY_THOUGHT),
    app_commands.Choice(name="Future plan", value=journal_mod.ENTRY_FUTURE_PLAN),
    app_commands.Choice(name="Storyline update", value=journal_mod.ENTRY_STORYLINE_UPDATE),
    app_commands.Choice(name="Interest", value=journal_mod.ENTRY_INTEREST_UPDATE),
]


def is_owner_or_admin(interaction: discord.Interaction) -> bool:
    if int(interaction.user.id) in config.BOT_OWNER_IDS:
        return True
    perms = getattr(interaction.user, "guild_permissions", None)
    return bool(perms and (perms.administrator or perms.manage_guild))


def valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


class JournalCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    async def _journaling_allowed(self, interaction: discord.Interaction) -> bool:
        gid = int(interaction.guild.id)
        if await is_feature_subscribed(gid, FEATURE_JOURNALING, cache=services_for(self.bot).subscription_cache):
            return True
        logger.info("Journaling denied guild=%s user=%s: not in plan", gid, interaction.user.id)
        await send_ui_error(interaction, feature_locked(FEATURE_JOURNALING))
        return False

    @app_commands.command(name="setup-journal", description="Choose where Bri posts her journal")
    @app_commands.guild_only()
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(channel="Journal channel", timezone="IANA timezone, e.g. America/New_York")
    async def setup_journal(
        self,
        interaction: discord.Interaction,
        channel: discord.TextChannel,
        timezone: Optional[str] = None,
    ):
        tz_name = (timezone or config.DEFAULT_TIMEZONE).strip()
        if not valid_timezone(tz_name):
            await safe_ephemeral_send(interaction, f"`{tz_name}` isn't a timezone I know. Try something like `America/Chicago`.")
            return
        if not await self._journaling_allowed(interaction):
            return

        await safe_defer(interaction, ephemeral=True)
        gid = int(interaction.guild.id)
        try:
            cfg = await update_server_config(
                gid,
                {"journal_channel_id": int(channel.id), "timezone": tz_name},
                cache=services_for(self.bot).config_cache,
            )
            if cfg is None:
                await safe_ephemeral_send(interaction, "Couldn't save the journal settings. Please try again.")
                return

            from utils.character_sheet import get_character_sheet
            from utils.interests_store import seed_default_interests
            from utils.storylines import seed_default_storylines

            await get_character_sheet(gid)
            await seed_default_interests(gid)
            await seed_default_storylines(gid)
            await ensure_guild_jobs(gid, tz_name)
        except Exception:
            await send_generic_error(interaction, logger, "/setup-journal")
            return

        logger.info("Journal set up guild=%s channel=%s tz=%s", gid, channel.id, tz_name)
        await safe_ephemeral_send(
            interaction,
            f"📔 Bri will post her journal in {channel.mention} (timezone `{tz_name}`). "
            "Entries arrive in the morning, at lunch and in the evening.",
        )

    @app_commands.command(name="journal-entry", description="Ask Bri to write a journal entry now")
    @app_commands.guild_only()
    @app_commands.describe(entry_type="What kind of entry")
    @app_commands.choices(entry_type=_MANUAL_TYPES)
    async def journal_entry(
        self,
        interaction: discord.Interaction,
        entry_type: Optional[app_commands.Choice[str]] = None,
    ):
        if not is_owner_or_admin(interaction):
            await safe_ephemeral_send(interaction, "Only server admins can trigger journal entries.")
            return
        if not await self._journaling_allowed(interaction):
            return

        gid = int(interaction.guild.id)
        svc = services_for(self.bot)
        if not await has_enough_credits(gid, JOURNAL_OPERATION, services=svc):
            await send_insufficient_credits(interaction, gid, JOURNAL_OPERATION)
            return

        await safe_defer(interaction, ephemeral=True)
        kind = entry_type.value if entry_type else None
        try:
            entry = await self._write(gid, kind)
        except Exception:
            await send_generic_error(interaction, logger, "/journal-entry")
            return

        if entry is None:
            await safe_ephemeral_send(interaction, "Nothing to write about for that type right now.")
            return

        # Charged only once an entry exists.
        debit = await debit_credits(gid, JOURNAL_OPERATION, services=svc)
        if not debit.ok:
            logger.warning("Journal entry %s written but debit failed guild=%s", entry.id, gid)
        where = "posted to the journal channel" if entry.posted_message_id else "saved (no journal channel set)"
        await safe_ephemeral_send(interaction, f"✅ **{entry.title}** {where}.")

    async def _write(self, guild_id: int, kind: str | None):
        if kind == journal_mod.ENTRY_STORYLINE_UPDATE:
            from utils.storylines import latest_update, recent_in_progress

            stories = await recent_in_progress(guild_id, limit=1)
            if not stories:
                return None
            story = stories[0]
            return await journal_mod.create_storyline_journal_entry(
                guild_id, story, latest_update(story), bot=self.bot
            )
        if kind == journal_mod.ENTRY_INTEREST_UPDATE:
            entry = await journal_mod.process_pending_interests(guild_id, bot=self.bot)
            if entry is not None:
                return entry
            from utils.interests_store import get_guild_interests

            interests = await get_guild_interests(guild_id, limit=1)
            if not interests:
                return None
            it = interests[0]
            return await journal_mod.create_interest_journal_entry(
                guild_id, it.name, it.description, is_new=False, bot=self.bot
            )
        return await journal_mod.create_random_journal_entry(guild_id, bot=self.bot, entry_type=kind)

    @app_commands.command(name="manual-journal", description="Post a hand-written journal entry as Bri")
    @app_commands.guild_only()
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(title="Entry title", content="Entry text")
    async def manual_journal(
        self,
        interaction: discord.Interaction,
        title: app_commands.Range[str, 1, 200],
        content: app_commands.Range[str, 1, 1800],
    ):
        if not await self._journaling_allowed(interaction):
            return
        await safe_defer(interaction, ephemeral=True)
        try:
            entry = await journal_mod.create_manual_journal_entry(
                int(interaction.guild.id), title, content, bot=self.bot
            )
        except Exception:
            await send_generic_error(interaction, logger, "/manual-journal")
            return
        await safe_ephemeral_send(interaction, f"✅ Journal entry **{entry.title}** saved.")

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.MissingPermissions):
            await safe_ephemeral_send(interaction, "You need the **Manage Server** permission for that.")
            return
        logger.error("journal command failed", exc_info=error)
        await safe_ephemeral_send(interaction, "Something went wrong. Please try again.")


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(JournalCog(bot))
