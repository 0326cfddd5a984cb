# commands/slash/credits.py
from __future__ import annotations

import logging
from collections import defaultdict

import discord
from discord import app_commands
from discord.ext import commands

import config
from core.services import services_for
from core.ui import safe_ephemeral_send, safe_send_embed, send_generic_error
from utils.credits_store import CREDIT_COSTS, get_server_credits, get_usage_history
from utils.server_config import get_server_config
from utils.subscriptions import has_active_subscription

logger = logging.getLogger("bot.credits")


def _ts(dt) -> str:
    return f"<t:{int(dt.timestamp())}:D>" if dt else "n/a"


def group_usage(records) -> dict[str, int]:
    """Credits spent per feature (usage rows only, positive totals)."""
    out: dict[str, int] = defaultdict(int)
    for r in records:
        if r.transaction_type == "usage":
            out[r.feature_type or "OTHER"] += abs(int(r.amount))
    return dict(sorted(out.items(), key=lambda kv: -kv[1]))


class CreditsCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    credits = app_commands.Group(name="credits", description="This server's credit balance and usage")

    @credits.command(name="check", description="Show this server's remaining credits")
    async def credits_check(self, interaction: discord.Interaction):
        if interaction.guild is None:
            await safe_ephemeral_send(interaction, "This command can only be used in a server.")
            return
        gid = int(interaction.guild.id)
        try:
            svc = services_for(self.bot)
            cfg = await get_server_config(gid, cache=svc.config_cache)
            snap = await get_server_credits(gid)
            sub = await has_active_subscription(gid, cache=svc.subscription_cache)
        except Exception:
            await send_generic_error(interaction, logger, "/credits check")
            return

        if snap is None:
            await safe_ephemeral_send(interaction, "Couldn't load credits right now. Please try again later.")
            return

        embed = discord.Embed(
            title="Server Credits",
            description=f"**{snap.remaining_credits:,}** credits remaining",
            color=discord.Color.blurple() if snap.remaining_credits > 0 else discord.Color.red(),
        )
        embed.add_field(name="Free", value=f"{snap.free_remaining:,} / {snap.free_credits:,}", inline=True)
        embed.add_field(
            name="Subscription",
            value=f"{snap.subscription_remaining:,} / {snap.subscription_credits:,}",
            inline=True,
        )
        embed.add_field(name="Purchased", value=f"{snap.purchased_remaining:,}", inline=True)
        embed.add_field(name="Used this cycle", value=f"{snap.total_used_credits:,}", inline=True)
        embed.add_field(name="Next free refill", value=_ts(snap.next_free_refresh), inline=True)
        embed.add_field(name="Plan", value=(sub.plan or "free").title() if sub.subscribed else "Free", inline=True)
        if not cfg.credits_enabled:
            embed.set_footer(text="Credit metering is turned off for this server.")
        await safe_send_embed(interaction, embed, ephemeral=True)

    @credits.command(name="usage", description="Show recent credit usage")
    @app_commands.describe(days="How many days back to look (1-30)")
    async def credits_usage(self, interaction: discord.Interaction, days: app_commands.Range[int, 1, 30] = 7):
        if interaction.guild is None:
            await safe_ephemeral_send(interaction, "This command can only be used in a server.")
            return
        try:
            records = await get_usage_history(int(interaction.guild.id), int(days))
        except Exception:
            await send_generic_error(interaction, logger, "/credits usage")
            return

        if not records:
            await safe_ephemeral_send(interaction, f"No credit activity in the last {days} day(s).")
            return

        by_feature = group_usage(records)
        lines = [f"`{feat}`: **{amt:,}**" for feat, amt in by_feature.items()] or ["(no usage)"]
        recent = [
            f"{_ts(r.created_at)} {'+' if r.amount > 0 else ''}{r.amount:,} {r.transaction_type}"
            + (f" ({r.feature_type})" if r.feature_type else "")
            for r in records[:10]
        ]
        embed = discord.Embed(title=f"Credit usage: last {days} day(s)", color=discord.Color.blurple())
        embed.add_field(name="By feature", value="\n".join(lines)[:1024], inline=False)
        embed.add_field(name="Recent transactions", value="\n".join(recent)[:1024], inline=False)
        await safe_send_embed(interaction, embed, ephemeral=True)

    @credits.command(name="info", description="How credits work and what things cost")
    async def credits_info(self, interaction: discord.Interaction):
        costs = "\n".join(
            f"`{op.lower().replace('_', ' ')}`: {cost}" for op, cost in sorted(CREDIT_COSTS.items(), key=lambda kv: kv[1])
        )
        embed = discord.Embed(
            title="How credits work",
            description=(
                f"Every server gets **{config.FREE_MONTHLY_CREDITS:,}** free credits on the 1st of each month. "
                "Subscriptions add monthly credits, and admins can buy extra bundles that never expire.\n"
                "Credits are spent in order: free, then subscription, then purchased."
            ),
            color=discord.Color.blurple(),
        )
        embed.add_field(name="Costs", value=costs, inline=False)
        await safe_send_embed(interaction, embed, ephemeral=True)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(CreditsCog(bot))
