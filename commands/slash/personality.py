# commands/slash/personality.py
"""Per-server persona instructions (premium ``custom_prompt`` feature)."""
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from core.entitlements import FEATURE_CUSTOM_PROMPT
from core.services import services_for
from core.ui import feature_locked, safe_ephemeral_send, send_ui_error
from utils.server_config import get_server_config, update_server_config
from utils.subscriptions import is_feature_subscribed

logger = logging.getLogger("bot.personality")

MAX_PROMPT_LEN = 1000


class PersonalityCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    personality = app_commands.Group(
        name="personality",
        description="Tell Bri how to act on this server",
        default_permissions=discord.Permissions(manage_guild=True),
        guild_only=True,
    )

    async def _allowed(self, interaction: discord.Interaction) -> bool:
        gid = int(interaction.guild.id)
        cache = services_for(self.bot).subscription_cache
        if await is_feature_subscribed(gid, FEATURE_CUSTOM_PROMPT, cache=cache):
            return True
        logger.info("Custom prompt denied guild=%s user=%s: not in plan", gid, interaction.user.id)
        await send_ui_error(interaction, feature_locked(FEATURE_CUSTOM_PROMPT))
        return False

    async def _save(self, interaction: discord.Interaction, prompt: str | None):
        cache = services_for(self.bot).config_cache
        return await update_server_config(int(interaction.guild.id), {"custom_prompt": prompt}, cache=cache)

    @personality.command(name="set", description="Give Bri extra instructions for this server")
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(prompt="e.g. 'Talk like a pirate and love board games'")
    async def personality_set(self, interaction: discord.Interaction, prompt: str):
        if not await self._allowed(interaction):
            return
        prompt = prompt.strip()
        if not prompt or len(prompt) > MAX_PROMPT_LEN:
            await safe_ephemeral_send(interaction, f"Instructions must be 1-{MAX_PROMPT_LEN} characters.")
            return
        if await self._save(interaction, prompt) is None:
            await safe_ephemeral_send(interaction, "Couldn't save that right now. Please try again.")
            return
        logger.info("Custom prompt set guild=%s len=%s", interaction.guild.id, len(prompt))
        await safe_ephemeral_send(interaction, "✅ Got it! I'll keep that in mind when chatting here.")

    @personality.command(name="view", description="Show Bri's instructions for this server")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def personality_view(self, interaction: discord.Interaction):
        cfg = await get_server_config(int(interaction.guild.id), cache=services_for(self.bot).config_cache)
        if not cfg.custom_prompt:
            await safe_ephemeral_send(interaction, "No custom instructions are set. Bri is just being Bri.")
            return
        await safe_ephemeral_send(interaction, f"Current instructions:\n>>> {cfg.custom_prompt}")

    @personality.command(name="reset", description="Remove Bri's custom instructions")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def personality_reset(self, interaction: discord.Interaction):
        if await self._save(interaction, None) is None:
            await safe_ephemeral_send(interaction, "Couldn't save that right now. Please try again.")
            return
        await safe_ephemeral_send(interaction, "✅ Custom instructions cleared.")

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.MissingPermissions):
            await safe_ephemeral_send(interaction, "You need the **Manage Server** permission for that.")
            return
        logger.error("personality command failed", exc_info=error)
        await safe_ephemeral_send(interaction, "Something went wrong. Please try again.")


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(PersonalityCog(bot))
