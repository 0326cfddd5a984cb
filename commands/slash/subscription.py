# commands/slash/subscription.py
"""Slash commands for Stripe-powered server plans and credit bundle purchases."""
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

import config
from core.entitlements import PLAN_NAMES, all_plans, get_plan
from core.services import services_for
from core.ui import safe_ephemeral_send

log = logging.getLogger("bot.subscription")


def _plan_lines() -> str:
    lines = []
    for p in all_plans():
        feats = ", ".join(sorted(f.replace("_", " ") for f in p.features))
        lines.append(f"**{p.display_name}** ({p.price_label}): {p.monthly_credits:,} credits/month; {feats}")
    return "\n".join(lines)


async def _send_ephemeral(interaction: discord.Interaction, msg: str = "", *, embed: discord.Embed | None = None, view: discord.ui.View | None = None) -> None:
    kwargs: dict = {"ephemeral": True}
    if msg:
        kwargs["content"] = msg
    if embed:
        kwargs["embed"] = embed
    if view:
        kwargs["view"] = view
    try:
        if not interaction.response.is_done():
            await interaction.response.send_message(**kwargs)
        else:
            await interaction.followup.send(**kwargs)
    except discord.HTTPException:
        log.debug("subscription reply failed", exc_info=True)


def _link_view(url: str, label: str, emoji: str) -> discord.ui.View:
    view = discord.ui.View()
    view.add_item(discord.ui.Button(label=label, url=url, style=discord.ButtonStyle.link, emoji=emoji))
    return view


# ---------------------------------------------------------------------------
# Credit bundle select menu
# ---------------------------------------------------------------------------

class CreditBundleSelect(discord.ui.Select):
    def __init__(self, guild_id: int, user_id: int, guild_name: str):
        from core.stripe_checkout import credit_bundles

        self.guild_id = guild_id
        self.user_id_val = user_id
        self.guild_name = guild_name

        options = [
            discord.SelectOption(label=f"{credits:,} credits", value=price_id)
            for price_id, credits in credit_bundles()
        ] or [discord.SelectOption(label="No bundles configured", value="none")]

        super().__init__(placeholder="Choose a credit bundle...", min_values=1, max_values=1, options=options)

    async def callback(self, interaction: discord.Interaction) -> None:
        if interaction.user.id != self.user_id_val:
            await safe_ephemeral_send(interaction, "This menu is not for you.")
            return
        price_id = self.values[0]
        if price_id == "none":
            await safe_ephemeral_send(interaction, "No credit bundles are configured yet.")
            return

        await interaction.response.defer(ephemeral=True)
        try:
            from core.stripe_checkout import create_credits_checkout
            url = await create_credits_checkout(
                guild_id=self.guild_id,
                user_id=self.user_id_val,
                price_id=price_id,
                guild_name=self.guild_name,
            )
        except Exception:
            log.exception("Failed to create credits checkout guild=%s", self.guild_id)
            await interaction.followup.send("Something went wrong creating the checkout. Please try again later.", ephemeral=True)
            return

        credits = config.STRIPE_CREDIT_BUNDLES.get(price_id, 0)
        embed = discord.Embed(
            title="Buy Credits",
            description=(
                f"Click below to buy **{credits:,} credits** for this server.\n"
                "Purchased credits never expire and are used after free and subscription credits."
            ),
            color=discord.Color.green(),
        )
        await interaction.followup.send(embed=embed, view=_link_view(url, "Complete Purchase", "\U0001f4b3"), ephemeral=True)


class CreditBundleView(discord.ui.View):
    def __init__(self, guild_id: int, user_id: int, guild_name: str):
        super().__init__(timeout=120)
        self.add_item(CreditBundleSelect(guild_id, user_id, guild_name))


# ---------------------------------------------------------------------------
# Cog
# ---------------------------------------------------------------------------

class SubscriptionCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    subscription = app_commands.Group(name="subscription", description="This server's plan and credit purchases", guild_only=True)

    @subscription.command(name="status", description="Show this server's plan")
    async def subscription_status(self, interaction: discord.Interaction) -> None:
        from utils.subscriptions import has_active_subscription

        status = await has_active_subscription(int(interaction.guild.id), cache=services_for(self.bot).subscription_cache)
        if status.subscribed:
            plan = get_plan(status.plan)
            embed = discord.Embed(
                title=f"{plan.display_name if plan else status.plan} plan",
                description="This server has an active subscription.",
                color=discord.Color.gold(),
            )
            if plan:
                embed.add_field(name="Monthly credits", value=f"{plan.monthly_credits:,}", inline=True)
                embed.add_field(
                    name="Features",
                    value=", ".join(sorted(f.replace("_", " ") for f in plan.features)) or "none",
                    inline=False,
                )
            if status.current_period_end:
                ts = int(status.current_period_end.timestamp())
                embed.add_field(name="Renews", value=f"<t:{ts}:F> (<t:{ts}:R>)", inline=True)
        else:
            desc = "This server is on the **free** tier.\n\n" + _plan_lines()
            if config.PAYMENTS_ENABLED:
                desc += "\n\nUse `/subscription subscribe` to upgrade."
            embed = discord.Embed(title="Free tier", description=desc, color=discord.Color.greyple())
            if status.error:
                embed.set_footer(text="Subscription status is temporarily unavailable.")
        await _send_ephemeral(interaction, embed=embed)

    @subscription.command(name="subscribe", description="Subscribe this server to a plan")
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.choices(plan=[app_commands.Choice(name=p.title(), value=p) for p in PLAN_NAMES])
    async def subscription_subscribe(self, interaction: discord.Interaction, plan: app_commands.Choice[str]) -> None:
        if not config.PAYMENTS_ENABLED or not config.STRIPE_SECRET_KEY:
            await safe_ephemeral_send(interaction, "Payments are not available right now. Stay tuned!")
            return
        if plan.value not in config.STRIPE_PLAN_PRICES:
            await safe_ephemeral_send(interaction, f"The {plan.name} plan isn't available for purchase yet.")
            return

        await interaction.response.defer(ephemeral=True)
        try:
            from core.stripe_checkout import create_subscription_checkout
            url = await create_subscription_checkout(
                guild_id=int(interaction.guild.id),
                user_id=int(interaction.user.id),
                plan=plan.value,
                guild_name=interaction.guild.name,
            )
        except Exception:
            log.exception("Failed to create subscription checkout guild=%s", interaction.guild.id)
            await interaction.followup.send("Something went wrong. Please try again later.", ephemeral=True)
            return

        info = get_plan(plan.value)
        embed = discord.Embed(
            title=f"{info.display_name} plan",
            description=(
                f"**{info.price_label}** for this server, with {info.monthly_credits:,} credits every month.\n\n"
                "Click the button below to subscribe."
            ),
            color=discord.Color.gold(),
        )
        await interaction.followup.send(embed=embed, view=_link_view(url, "Subscribe", "⭐"), ephemeral=True)

    @subscription.command(name="buy-credits", description="Buy a credit bundle for this server")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def subscription_buy_credits(self, interaction: discord.Interaction) -> None:
        if not config.PAYMENTS_ENABLED or not config.STRIPE_SECRET_KEY:
            await safe_ephemeral_send(interaction, "Payments are not available right now. Stay tuned!")
            return
        if not config.STRIPE_CREDIT_BUNDLES:
            await safe_ephemeral_send(interaction, "No credit bundles are available right now.")
            return
        embed = discord.Embed(
            title="Buy Credits",
            description="Select a bundle below. Credits are added to this server as soon as payment completes.",
            color=discord.Color.green(),
        )
        view = CreditBundleView(int(interaction.guild.id), int(interaction.user.id), interaction.guild.name)
        await _send_ephemeral(interaction, embed=embed, view=view)

    @subscription.command(name="manage", description="Open the billing portal for this server's plan")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def subscription_manage(self, interaction: discord.Interaction) -> None:
        if not config.STRIPE_SECRET_KEY:
            await safe_ephemeral_send(interaction, "Payments are not available right now. Stay tuned!")
            return
        from utils.subscriptions import get_subscription

        row = await get_subscription(int(interaction.guild.id))
        if row is None or not row.stripe_customer_id:
            await safe_ephemeral_send(interaction, "This server has no Stripe subscription to manage.")
            return

        await interaction.response.defer(ephemeral=True)
        try:
            from core.stripe_checkout import get_billing_portal_url
            url = await get_billing_portal_url(stripe_customer_id=row.stripe_customer_id)
        except Exception:
            log.exception("Failed to create billing portal session guild=%s", interaction.guild.id)
            await interaction.followup.send("Something went wrong. Please try again later.", ephemeral=True)
            return
        await interaction.followup.send(
            "Update payment details or cancel the plan here:",
            view=_link_view(url, "Billing portal", "💳"),
            ephemeral=True,
        )

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.MissingPermissions):
            await safe_ephemeral_send(interaction, "You need the **Manage Server** permission for that.")
            return
        log.error("subscription command failed", exc_info=error)
        await safe_ephemeral_send(interaction, "Something went wrong. Please try again.")


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(SubscriptionCog(bot))
