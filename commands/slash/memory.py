# commands/slash/memory.py
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from core.ui import safe_ephemeral_send
from utils.conversation_memory import clear_history
from utils.relationships_store import clear_relationship

logger = logging.getLogger("bot.memory")


class ConfirmClearView(discord.ui.View):
    def __init__(self, user_id: int, guild_id: int):
        super().__init__(timeout=60)
        self.user_id = user_id
        self.guild_id = guild_id

    @discord.ui.button(label="Yes, forget me", style=discord.ButtonStyle.danger)
    async def confirm(self, interaction: discord.Interaction, button: discord.ui.Button):
        if interaction.user.id != self.user_id:
            await safe_ephemeral_send(interaction, "This button is not for you.")
            return
        removed = await clear_relationship(self.user_id, self.guild_id)
        await clear_history(self.guild_id, self.user_id)
        logger.info("Memories cleared user=%s guild=%s (relationship_removed=%s)", self.user_id, self.guild_id, removed)
        self.stop()
        await interaction.response.edit_message(
            content="🧹 Done! I've forgotten our chats and everything I knew about you here.",
            view=None,
        )

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.secondary)
    async def cancel(self, interaction: discord.Interaction, button: discord.ui.Button):
        self.stop()
        await interaction.response.edit_message(content="Okay, nothing was cleared.", view=None)


class MemoryCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @app_commands.command(name="clearmemories", description="Make Bri forget your chats in this server")
    @app_commands.guild_only()
    async def clearmemories(self, interaction: discord.Interaction):
        view = ConfirmClearView(int(interaction.user.id), int(interaction.guild.id))
        await interaction.response.send_message(
            "This clears our relationship level, shared interests, inside jokes and recent chat history "
            "in this server. Are you sure?",
            view=view,
            ephemeral=True,
        )


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(MemoryCog(bot))
