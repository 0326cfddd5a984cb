# commands/slash/talk.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from core.entitlements import FEATURE_CUSTOM_PROMPT
from core.services import services_for
from core.ui import (
    LOW_CREDITS_NOTE,
    insufficient_credits,
    safe_defer,
    safe_ephemeral_send,
    safe_send,
    safe_send_embed,
    send_generic_error,
    send_insufficient_credits,
    send_ui_error,
)
from utils import conversation_memory as memory
from utils import relationships as rules
from utils.ai_client import AIError, chat_completion
from utils.credits_store import debit_credits, has_enough_credits
from utils.interests_store import ANALYSIS_WINDOW, analyze_conversation_for_interests, get_personal_content
from utils.relationships_store import (
    detect_and_store_inside_joke,
    get_relationship,
    personalize_response,
    update_relationship_after_interaction,
)
from utils.server_config import get_server_config
from utils.subscriptions import is_feature_subscribed

if TYPE_CHECKING:
    from core.services import BotServices

logger = logging.getLogger("bot.talk")

CHAT_OPERATION = "CHAT_MESSAGE"
HISTORY_TURNS = 10
FALLBACK_REPLY = "Sorry, my brain's a little fuzzy right now 😅 Can you say that again in a bit?"

PERSONA = (
    "You are Bri, a friendly, curious and upbeat 14-year-old girl chatting on Discord. "
    "You talk casually like a real teen: short messages, the occasional emoji, genuine questions back. "
    "You never claim to be an adult, never share personal contact details and keep things age-appropriate."
)


async def persona_system_prompt(guild_id: int, *, services: "BotServices | None" = None) -> str:
    from utils.character_sheet import get_character_sheet

    prompt = PERSONA
    try:
        sheet, _ = await get_character_sheet(guild_id)
    except Exception:
        logger.exception("Character sheet unavailable guild=%s", guild_id)
    else:
        hobbies = ", ".join(h.name for h in sheet.hobbies[:5]) or "lots of things"
        friends = ", ".join(f.name for f in sorted(sheet.friends, key=lambda f: -f.closeness)[:3])
        prompt += f" You're {sheet.age}, in grade {sheet.grade}, and you love {hobbies}."
        if friends:
            prompt += f" Your closest friends are {friends}."

    custom = await guild_custom_prompt(guild_id, services=services)
    if custom:
        prompt += f"\n\nThis server's admins describe how you should act here:\n{custom}"
    return prompt


async def guild_custom_prompt(guild_id: int, *, services: "BotServices | None" = None) -> str | None:
    """The stored /personality text, only while the plan still includes it."""
    cfg = await get_server_config(guild_id, cache=services.config_cache if services else None)
    if not cfg.custom_prompt:
        return None
    cache = services.subscription_cache if services else None
    if not await is_feature_subscribed(guild_id, FEATURE_CUSTOM_PROMPT, cache=cache):
        return None
    return cfg.custom_prompt


async def build_reply(
    guild_id: int,
    user_text: str,
    history: list[dict],
    *,
    services: "BotServices | None" = None,
) -> str:
    system = await persona_system_prompt(guild_id, services=services)
    messages = [{"role": "system", "content": system}]
    messages.extend(memory.history_messages(history[-HISTORY_TURNS:]))
    messages.append({"role": "user", "content": user_text})
    try:
        out = await chat_completion(messages, temperature=0.8, max_tokens=400)
    except AIError as e:
        logger.warning("Persona reply failed guild=%s: %s: %s", guild_id, type(e).__name__, e)
        return FALLBACK_REPLY
    return str(out).strip() or FALLBACK_REPLY


class TalkCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @app_commands.command(name="talk", description="Chat with Bri")
    @app_commands.guild_only()
    @app_commands.describe(message="What do you want to say?")
    async def talk(self, interaction: discord.Interaction, message: app_commands.Range[str, 1, 1500]):
        gid, uid = int(interaction.guild.id), int(interaction.user.id)
        svc = services_for(self.bot)

        cfg = await get_server_config(gid, cache=svc.config_cache)
        if cfg.designated_channels and int(interaction.channel_id or 0) not in cfg.designated_channels:
            channels = ", ".join(f"<#{c}>" for c in cfg.designated_channels)
            await safe_ephemeral_send(interaction, f"I only chat in {channels} on this server!")
            return

        if not await has_enough_credits(gid, CHAT_OPERATION, services=svc):
            logger.info("Chat denied guild=%s user=%s: insufficient credits", gid, uid)
            await send_insufficient_credits(interaction, gid, CHAT_OPERATION)
            return

        await safe_defer(interaction, ephemeral=False)
        try:
            use_memory = cfg.enabled_features.get("memory") is True
            history = await memory.get_history(gid, uid) if use_memory else []

            reply = await build_reply(gid, message, history, services=svc)
            if reply == FALLBACK_REPLY:
                # Nothing was generated, so nothing is charged or remembered.
                await safe_send(interaction, f"> {message[:300]}\n{reply}")
                return

            debit = await debit_credits(gid, CHAT_OPERATION, services=svc)
            if not debit.ok:
                await send_ui_error(interaction, insufficient_credits(CHAT_OPERATION, debit.cost, debit.remaining))
                return

            shared = await get_personal_content(uid, gid, message)
            if shared:
                reply = f"{reply}\n\n{shared}"
            reply = await personalize_response(uid, gid, reply)

            text = f"> {message[:300]}\n{reply}"
            if debit.low_credits_warning:
                text += LOW_CREDITS_NOTE
            await safe_send(interaction, text)
        except Exception:
            await send_generic_error(interaction, logger, "/talk")
            return

        await self._after_reply(gid, uid, message, reply, history, use_memory)

    async def _after_reply(self, gid: int, uid: int, message: str, reply: str, history: list[dict], use_memory: bool):
        try:
            snap = await update_relationship_after_interaction(uid, gid, message)
            await detect_and_store_inside_joke(uid, gid, message, reply)
            if snap is not None and snap.interaction_count % ANALYSIS_WINDOW == 0:
                convo = history + [{"role": "user", "content": message}, {"role": "assistant", "content": reply}]
                await analyze_conversation_for_interests(uid, gid, convo, bot=self.bot)
            if use_memory:
                await memory.append_exchange(gid, uid, message, reply)
        except Exception:
            logger.exception("Post-reply bookkeeping failed guild=%s user=%s", gid, uid)

    @app_commands.command(name="relationship", description="See how well Bri knows you")
    @app_commands.guild_only()
    async def relationship(self, interaction: discord.Interaction):
        gid, uid = int(interaction.guild.id), int(interaction.user.id)
        try:
            snap = await get_relationship(uid, gid)
        except Exception:
            await send_generic_error(interaction, logger, "/relationship")
            return

        if snap is None:
            await safe_ephemeral_send(interaction, "We haven't really talked yet! Say hi with `/talk` 👋")
            return

        topics = rules.top_topics(snap.conversation_topics, 5)
        embed = discord.Embed(
            title=f"You and Bri: {snap.level_name}",
            description=f"Level **{snap.level}/{rules.MAX_LEVEL}** after **{snap.interaction_count:,}** chats.",
            color=discord.Color.pink(),
        )
        embed.add_field(
            name="Top topics",
            value="\n".join(f"`{t}` ×{n}" for t, n in topics) or "*(none yet)*",
            inline=True,
        )
        embed.add_field(
            name="Shared interests",
            value=", ".join(snap.shared_interests[:8]) or "*(none yet)*",
            inline=True,
        )
        if snap.inside_jokes:
            embed.set_footer(text=f"{len(snap.inside_jokes)} inside joke(s) 😄")
        await safe_send_embed(interaction, embed, ephemeral=True)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(TalkCog(bot))
