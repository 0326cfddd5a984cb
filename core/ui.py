# core/ui.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import discord

log = logging.getLogger("bot.ui")

GENERIC_ERROR = "Something went wrong on my end. Please try again in a moment."


async def safe_send(interaction: discord.Interaction, content: str, *, ephemeral: bool = False) -> None:
    """Send via the initial response or a followup, whichever is still available. Never raises."""
    try:
        if interaction.response.is_done():
            await interaction.followup.send(content[:2000], ephemeral=ephemeral)
        else:
            await interaction.response.send_message(content[:2000], ephemeral=ephemeral)
    except discord.HTTPException:
        log.debug("safe_send failed", exc_info=True)


async def safe_ephemeral_send(interaction: discord.Interaction, content: str) -> None:
    await safe_send(interaction, content, ephemeral=True)


async def safe_send_embed(interaction: discord.Interaction, embed: discord.Embed, *, ephemeral: bool = False) -> None:
    try:
        if interaction.response.is_done():
            await interaction.followup.send(embed=embed, ephemeral=ephemeral)
        else:
            await interaction.response.send_message(embed=embed, ephemeral=ephemeral)
    except discord.HTTPException:
        log.debug("safe_send_embed failed", exc_info=True)


async def safe_defer(interaction: discord.Interaction, *, ephemeral: bool = True) -> None:
    try:
        if not interaction.response.is_done():
            await interaction.response.defer(ephemeral=ephemeral, thinking=True)
    except discord.HTTPException:
        log.debug("safe_defer failed", exc_info=True)


@dataclass(frozen=True)
class UiError:
    """A structured, user-facing refusal (not an exception)."""

    message: str
    hint: Optional[str] = None

    def render(self) -> str:
        text = f"⚠️ {self.message}"
        if self.hint:
            text += f"\n{self.hint}"
        return text


async def send_ui_error(interaction: discord.Interaction, err: UiError) -> None:
    await safe_ephemeral_send(interaction, err.render())


def insufficient_credits(operation: str, cost: int, remaining: int) -> UiError:
    return UiError(
        f"This server doesn't have enough credits for {operation.lower().replace('_', ' ')} "
        f"({cost} needed, {max(0, int(remaining))} remaining).",
        hint="Check `/credits check`, or an admin can use `/subscription buy-credits`.",
    )


async def send_insufficient_credits(interaction: discord.Interaction, guild_id: int, operation: str) -> None:
    """Refuse with the guild's current balance next to the operation's cost."""
    from utils.credits_store import credit_cost, get_server_credits

    snap = await get_server_credits(guild_id)
    remaining = snap.remaining_credits if snap else 0
    await send_ui_error(interaction, insufficient_credits(operation, credit_cost(operation), remaining))


def feature_locked(feature: str) -> UiError:
    return UiError(
        f"The **{feature.replace('_', ' ')}** feature isn't included in this server's plan.",
        hint="See `/subscription status` for plans.",
    )


LOW_CREDITS_NOTE = "\n\n-# ⚠️ This server is running low on credits."


async def send_generic_error(interaction: discord.Interaction, logger: logging.Logger, what: str) -> None:
    """Log the active exception with stack and reply with a generic ephemeral message."""
    logger.exception("%s failed (guild=%s user=%s)", what, interaction.guild_id, getattr(interaction.user, "id", None))
    await safe_ephemeral_send(interaction, GENERIC_ERROR)
