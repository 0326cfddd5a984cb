"""Slash command flows driven through cog callbacks with mocked interactions."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from discord import app_commands

import config
from core.services import BotServices
from core.ui import insufficient_credits
from utils.ai_client import AIConnectionError
from utils.credits_store import get_server_credits
from utils.subscriptions import update_server_subscription


def _bot():
    bot = MagicMock()
    bot.services = BotServices()
    return bot


def _interaction(guild_id: int, user_id: int = 10):
    it = MagicMock()
    it.guild.id = guild_id
    it.guild_id = guild_id
    it.user.id = user_id
    it.channel_id = 500
    it.response.is_done.return_value = False
    it.response.send_message = AsyncMock()
    it.response.defer = AsyncMock()
    it.followup.send = AsyncMock()
    return it


def _sent(it) -> list[str]:
    out = []
    for call in it.response.send_message.await_args_list + it.followup.send.await_args_list:
        out.append(call.args[0] if call.args else call.kwargs.get("content", ""))
    return out


def test_insufficient_credits_lists_balance_and_cost():
    text = insufficient_credits("IMAGE_GENERATION", 10, 4).render()
    assert "image generation" in text
    assert "(10 needed, 4 remaining)" in text


class TestTalk:

    @pytest.fixture
    def cog(self, monkeypatch):
        from commands.slash import talk

        cog = talk.TalkCog(_bot())
        monkeypatch.setattr(cog, "_after_reply", AsyncMock())
        monkeypatch.setattr(talk, "get_personal_content", AsyncMock(return_value=None))
        monkeypatch.setattr(talk, "personalize_response", AsyncMock(side_effect=lambda u, g, r: r))
        return cog

    @pytest.mark.asyncio
    async def test_reply_is_charged(self, db, no_llm, cog, monkeypatch):
        from commands.slash import talk

        monkeypatch.setattr(talk, "chat_completion", AsyncMock(return_value="omg hi!!"))
        it = _interaction(60)
        await cog.talk.callback(cog, it, "hey bri")

        assert "omg hi!!" in _sent(it)[-1]
        assert (await get_server_credits(60)).total_used_credits == 1
        cog._after_reply.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fallback_reply_is_free(self, db, no_llm, cog, monkeypatch):
        from commands.slash import talk

        monkeypatch.setattr(talk, "chat_completion", AsyncMock(side_effect=AIConnectionError("down")))
        it = _interaction(61)
        await cog.talk.callback(cog, it, "hey bri")

        assert talk.FALLBACK_REPLY in _sent(it)[-1]
        assert (await get_server_credits(61)).total_used_credits == 0
        cog._after_reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refusal_shows_balance(self, db, no_llm, cog, monkeypatch):
        from commands.slash import talk

        monkeypatch.setattr(config, "FREE_MONTHLY_CREDITS", 0)
        llm = AsyncMock(return_value="unused")
        monkeypatch.setattr(talk, "chat_completion", llm)
        it = _interaction(62)
        await cog.talk.callback(cog, it, "hey bri")

        assert "(1 needed, 0 remaining)" in _sent(it)[-1]
        llm.assert_not_awaited()


class TestJournalEntry:

    @pytest.fixture
    def cog(self):
        from commands.slash import journal

        return journal.JournalCog(_bot())

    @pytest.mark.asyncio
    async def test_nothing_written_is_not_charged(self, db, no_llm, cog):
        await update_server_subscription(70, {"plan": "standard", "status": "active"})
        before = await get_server_credits(70)

        it = _interaction(70)
        choice = app_commands.Choice(name="Storyline update", value="storyline_update")
        await cog.journal_entry.callback(cog, it, choice)

        assert "Nothing to write about" in _sent(it)[-1]
        after = await get_server_credits(70)
        assert after.remaining_credits == before.remaining_credits

    @pytest.mark.asyncio
    async def test_written_entry_is_charged(self, db, no_llm, cog):
        await update_server_subscription(71, {"plan": "standard", "status": "active"})
        before = await get_server_credits(71)

        it = _interaction(71)
        choice = app_commands.Choice(name="Daily thought", value="daily_thought")
        await cog.journal_entry.callback(cog, it, choice)

        assert _sent(it)[-1].startswith("✅")
        after = await get_server_credits(71)
        assert after.remaining_credits == before.remaining_credits - 3


class TestPersonality:

    @pytest.fixture
    def cog(self):
        from commands.slash import personality

        return personality.PersonalityCog(_bot())

    @pytest.mark.asyncio
    async def test_requires_plan_feature(self, db, cog):
        from utils.server_config import get_server_config

        await update_server_subscription(80, {"plan": "standard", "status": "active"})
        it = _interaction(80)
        await cog.personality_set.callback(cog, it, "Talk like a pirate")

        assert "custom prompt" in _sent(it)[-1]
        assert (await get_server_config(80)).custom_prompt is None

    @pytest.mark.asyncio
    async def test_prompt_shapes_persona_while_subscribed(self, db, cog):
        from commands.slash.talk import persona_system_prompt

        await update_server_subscription(81, {"plan": "premium", "status": "active"})
        it = _interaction(81)
        await cog.personality_set.callback(cog, it, "  Talk like a pirate  ")
        assert _sent(it)[-1].startswith("✅")

        assert "Talk like a pirate" in await persona_system_prompt(81)

        await update_server_subscription(81, {"status": "canceled"})
        assert "Talk like a pirate" not in await persona_system_prompt(81)

    @pytest.mark.asyncio
    async def test_reset_clears_prompt(self, db, cog):
        from utils.server_config import get_server_config, update_server_config

        await update_server_config(82, {"custom_prompt": "be extra bubbly"})
        await cog.personality_reset.callback(cog, _interaction(82))
        assert (await get_server_config(82)).custom_prompt is None
