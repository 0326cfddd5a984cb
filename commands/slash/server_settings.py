# commands/slash/server_settings.py
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from core.services import services_for
from core.ui import safe_ephemeral_send, safe_send_embed
from utils.server_config import DEFAULT_FEATURES, get_server_config, update_server_config

logger = logging.getLogger("bot.server_settings")

MAX_PREFIX_LEN = 16


class ServerSettingsCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    settings = app_commands.Group(
        name="server-settings",
        description="Configure Bri for this server",
        default_permissions=discord.Permissions(manage_guild=True),
        guild_only=True,
    )

    async def _update(self, interaction: discord.Interaction, updates: dict):
        cache = services_for(self.bot).config_cache
        return await update_server_config(int(interaction.guild.id), updates, cache=cache)

    @settings.command(name="view", description="Show this server's settings")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def settings_view(self, interaction: discord.Interaction):
        cfg = await get_server_config(int(interaction.guild.id), cache=services_for(self.bot).config_cache)
        features = "\n".join(
            f"{'✅' if cfg.enabled_features.get(name) else '❌'} `{name}`" for name in sorted(DEFAULT_FEATURES)
        )
        channels = ", ".join(f"<#{c}>" for c in cfg.designated_channels) or "*(any channel)*"
        embed = discord.Embed(title="Server settings", color=discord.Color.blurple())
        embed.add_field(name="Prefix", value=f"`{cfg.prefix}`", inline=True)
        embed.add_field(name="Credits", value="on" if cfg.credits_enabled else "off", inline=True)
        embed.add_field(name="Timezone", value=cfg.timezone, inline=True)
        embed.add_field(
            name="Journal channel",
            value=f"<#{cfg.journal_channel_id}>" if cfg.journal_channel_id else "*(not set)*",
            inline=True,
        )
        embed.add_field(name="Designated channels", value=channels[:1024], inline=False)
        embed.add_field(name="Features", value=features, inline=False)
        await safe_send_embed(interaction, embed, ephemeral=True)

    @settings.command(name="prefix", description="Set the name prefix Bri answers to")
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(prefix="New prefix (max 16 characters)")
    async def settings_prefix(self, interaction: discord.Interaction, prefix: str):
        prefix = prefix.strip()
        if not prefix or len(prefix) > MAX_PREFIX_LEN:
            await safe_ephemeral_send(interaction, f"Prefix must be 1-{MAX_PREFIX_LEN} characters.")
            return
        if await self._update(interaction, {"prefix": prefix}) is None:
            await safe_ephemeral_send(interaction, "Couldn't save that right now. Please try again.")
            return
        await safe_ephemeral_send(interaction, f"✅ Prefix set to `{prefix}`.")

    @settings.command(name="toggle", description="Turn a feature on or off")
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.choices(feature=[app_commands.Choice(name=f, value=f) for f in sorted(DEFAULT_FEATURES)])
    async def settings_toggle(
        self,
        interaction: discord.Interaction,
        feature: app_commands.Choice[str],
        enabled: bool,
    ):
        cfg = await get_server_config(int(interaction.guild.id), cache=services_for(self.bot).config_cache)
        features = dict(cfg.enabled_features)
        features[feature.value] = bool(enabled)
        if await self._update(interaction, {"enabled_features": features}) is None:
            await safe_ephemeral_send(interaction, "Couldn't save that right now. Please try again.")
            return
        await safe_ephemeral_send(interaction, f"✅ `{feature.value}` is now **{'on' if enabled else 'off'}**.")

    @settings.command(name="channel", description="Add or remove a channel where Bri may talk")
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(channel="The channel", allowed="Whether Bri may talk there")
    async def settings_channel(self, interaction: discord.Interaction, channel: discord.TextChannel, allowed: bool):
        cfg = await get_server_config(int(interaction.guild.id), cache=services_for(self.bot).config_cache)
        channels = [c for c in cfg.designated_channels if int(c) != int(channel.id)]
        if allowed:
            channels.append(int(channel.id))
        if await self._update(interaction, {"designated_channels": channels}) is None:
            await safe_ephemeral_send(interaction, "Couldn't save that right now. Please try again.")
            return
        verb = "added to" if allowed else "removed from"
        await safe_ephemeral_send(interaction, f"✅ {channel.mention} {verb} Bri's channels.")

    @settings.command(name="credits", description="Turn credit metering on or off for this server")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def settings_credits(self, interaction: discord.Interaction, enabled: bool):
        if await self._update(interaction, {"credits_enabled": bool(enabled)}) is None:
            await safe_ephemeral_send(interaction, "Couldn't save that right now. Please try again.")
            return
        logger.info("Credit metering %s guild=%s by user=%s", "on" if enabled else "off", interaction.guild.id, interaction.user.id)
        await safe_ephemeral_send(interaction, f"✅ Credit metering is now **{'on' if enabled else 'off'}**.")

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.MissingPermissions):
            await safe_ephemeral_send(interaction, "You need the **Manage Server** permission for that.")
            return
        logger.error("server-settings command failed", exc_info=error)
        await safe_ephemeral_send(interaction, "Something went wrong. Please try again.")


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(ServerSettingsCog(bot))
