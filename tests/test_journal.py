"""Tests for journal entry generation, storage and posting."""
from __future__ import annotations

import random
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.services import BotServices
from utils import journal
from utils.model_output import JournalOut
from utils.models import JournalEntry, PendingInterest


class LowRng(random.Random):
    def random(self):
        return 0.0


def _bot(message_id: int = 555):
    bot = MagicMock()
    bot.services = BotServices()
    channel = MagicMock()
    channel.send = AsyncMock(return_value=MagicMock(id=message_id))
    bot.get_channel.return_value = channel
    return bot, channel


class TestTimeContext:

    def test_school_day_morning(self):
        ctx = journal.time_context("America/New_York", datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc))
        assert ctx.period == "morning"
        assert ctx.activity == "at school"
        assert ctx.is_school_day

    def test_weekend(self):
        ctx = journal.time_context("America/New_York", datetime(2026, 10, 17, 18, 0, tzinfo=timezone.utc))
        assert ctx.is_weekend and not ctx.is_school_day
        assert ctx.activity == "out with friends or doing hobbies"

    def test_holiday(self):
        ctx = journal.time_context("America/New_York", datetime(2026, 12, 25, 15, 0, tzinfo=timezone.utc))
        assert ctx.is_holiday and not ctx.is_school_day
        assert "holiday" in ctx.describe()

    def test_bad_timezone_falls_back(self):
        ctx = journal.time_context("Mars/Olympus", datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc))
        assert ctx.local_time.utcoffset() is not None


def test_message_format_and_truncation():
    entry = journal.JournalEntryView(
        id=1, guild_id=1, entry_type="daily_thought", title="Rainy day", content="x" * 3000,
        created_at=datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc),
    )
    text = journal.format_journal_message(entry, tz_name="America/New_York")
    assert text.startswith("## 📔 Rainy day\n*Wednesday, October 14, 2026*")
    assert len(text) == journal.MAX_DISCORD_CHARS
    assert text.endswith("…")


@pytest.mark.asyncio
async def test_unknown_entry_type_rejected(db, no_llm):
    with pytest.raises(ValueError):
        await journal.create_journal_entry(1, "poem", "t", "c")


@pytest.mark.asyncio
async def test_entry_stored_without_embedding(db, no_llm):
    entry = await journal.create_journal_entry(1, journal.ENTRY_DAILY_THOUGHT, " Hi ", " Body ", metadata={"a": 1})
    assert entry.title == "Hi" and entry.content == "Body"
    assert entry.metadata == {"a": 1}
    async with db() as session:
        row = await session.get(JournalEntry, entry.id)
    assert row.embedding == ""


@pytest.mark.asyncio
async def test_post_records_message_id(db, no_llm):
    from utils.server_config import update_server_config

    await update_server_config(2, {"journal_channel_id": 999})
    bot, channel = _bot(777)
    entry = await journal.create_journal_entry(2, journal.ENTRY_DAILY_THOUGHT, "T", "C")

    assert await journal.post_journal_entry(bot, 2, entry) == 777
    bot.get_channel.assert_called_once_with(999)
    assert "## 📔 T" in channel.send.call_args.args[0]
    assert (await journal.recent_entries(2))[0].posted_message_id == 777


@pytest.mark.asyncio
async def test_post_without_channel_is_noop(db, no_llm):
    bot, channel = _bot()
    entry = await journal.create_journal_entry(3, journal.ENTRY_DAILY_THOUGHT, "T", "C")
    assert await journal.post_journal_entry(bot, 3, entry) is None
    channel.send.assert_not_called()


@pytest.mark.asyncio
async def test_random_entry_falls_back_when_model_down(db, no_llm, monkeypatch):
    extract = AsyncMock()
    monkeypatch.setattr("utils.character_sheet.extract_updates_from_journal", extract)

    entry = await journal.create_random_journal_entry(4, entry_type=journal.ENTRY_DAILY_THOUGHT, slot="morning")
    assert (entry.title, entry.content) == journal.RANDOM_FALLBACK
    assert entry.metadata["slot"] == "morning"
    extract.assert_not_awaited()


@pytest.mark.asyncio
async def test_random_entry_generated_feeds_character_sheet(db, no_llm, monkeypatch):
    from utils.interests_store import seed_default_interests

    await seed_default_interests(5)
    extract = AsyncMock(return_value=True)
    monkeypatch.setattr("utils.character_sheet.extract_updates_from_journal", extract)
    write = AsyncMock(return_value=JournalOut(title="Stargazing", content="Saw Jupiter tonight!"))
    monkeypatch.setattr(journal, "_write", write)

    entry = await journal.create_random_journal_entry(5, rng=LowRng(3))

    assert entry.entry_type == journal.ENTRY_FUTURE_PLAN
    assert entry.metadata["interest"] in {"space exploration", "animals", "arts and crafts"}
    assert "Mention her interest" in write.call_args.args[0]
    extract.assert_awaited_once_with(5, "Stargazing", "Saw Jupiter tonight!")


@pytest.mark.asyncio
async def test_storyline_entry_fallback(db, no_llm):
    from utils.storylines import StorylineView

    story = StorylineView(
        id=9, guild_id=6, event_key="k", title="Science Fair", description="plants",
        status="in_progress", progress=0.45, start_date=None, end_date=None,
    )
    entry = await journal.create_storyline_journal_entry(6, story, "Beans sprouted!")
    assert entry.entry_type == journal.ENTRY_STORYLINE_UPDATE
    assert entry.related_id == "9"
    assert entry.title == "Update on my Science Fair"
    assert "45%" in entry.content


@pytest.mark.asyncio
async def test_pending_interest_becomes_new_interest_entry(db, no_llm):
    from utils.interests_store import get_guild_interests

    async with db() as session:
        session.add(PendingInterest(guild_id=7, name="pottery", description="wheel throwing"))
        await session.commit()

    entry = await journal.process_pending_interests(7)
    assert entry.entry_type == journal.ENTRY_NEW_INTEREST
    assert entry.title == "I'm Totally Into Pottery Now!"
    assert [i.name for i in await get_guild_interests(7)] == ["pottery"]

    assert await journal.process_pending_interests(7) is None


@pytest.mark.asyncio
async def test_pending_known_interest_is_update(db, no_llm):
    from utils.interests_store import seed_default_interests

    await seed_default_interests(8)
    async with db() as session:
        session.add(PendingInterest(guild_id=8, name="animals"))
        await session.commit()

    entry = await journal.process_pending_interests(8)
    assert entry.entry_type == journal.ENTRY_INTEREST_UPDATE


@pytest.mark.asyncio
async def test_manual_entry_runs_extraction(db, no_llm, monkeypatch):
    extract = AsyncMock(return_value=False)
    monkeypatch.setattr("utils.character_sheet.extract_updates_from_journal", extract)
    entry = await journal.create_manual_journal_entry(9, "Note", "Got a new bike")
    assert entry.metadata == {"manual": True}
    extract.assert_awaited_once()
