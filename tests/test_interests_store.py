"""Tests for interest staging, promotion and sharing."""
from __future__ import annotations

import json
import random
from unittest.mock import AsyncMock

import pytest

from utils import interests_store as store
from utils.models import JournalEntry, PotentialInterest, Relationship


class FixedRng(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


async def _potential(Session, guild_id: int, name: str) -> PotentialInterest | None:
    from sqlalchemy import select

    async with Session() as session:
        res = await session.execute(
            select(PotentialInterest)
            .where(PotentialInterest.guild_id == guild_id)
            .where(PotentialInterest.name == name)
        )
        return res.scalar_one_or_none()


async def _journal_types(Session, guild_id: int) -> list[str]:
    from sqlalchemy import select

    async with Session() as session:
        res = await session.execute(
            select(JournalEntry.entry_type).where(JournalEntry.guild_id == guild_id).order_by(JournalEntry.id)
        )
        return list(res.scalars().all())


def test_should_promote_rule():
    assert store.should_promote(3, 1, 0.1)
    assert store.should_promote(1, 2, 0.1)
    assert store.should_promote(1, 1, 0.95)
    assert not store.should_promote(2, 1, 0.5)


def test_cosine_similarity():
    assert store.cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert store.cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert store.cosine_similarity([1, 0], [1, 0, 0]) == 0.0
    assert store.cosine_similarity([], []) == 0.0


def test_personal_questions():
    assert store.is_personal_question("hey Bri, how's your day going?")
    assert store.is_personal_question("What have you been up to?")
    assert not store.is_personal_question("can you help with my math homework")


@pytest.mark.asyncio
async def test_single_mention_stays_staged(db, no_llm):
    promoted = await store.stage_potential_interest(1, 10, {"name": "Skateboarding", "facts": ["ollie"]})
    assert promoted is False
    row = await _potential(db, 1, "skateboarding")
    assert row.mention_count == 1
    assert json.loads(row.users_mentioned) == [10]
    assert await store.get_guild_interests(1) == []


@pytest.mark.asyncio
async def test_second_user_promotes(db, no_llm):
    await store.stage_potential_interest(2, 10, {"name": "chess", "facts": ["en passant exists"]})
    promoted = await store.stage_potential_interest(2, 11, {"name": "Chess", "tags": ["strategy"]})
    assert promoted is True

    interests = await store.get_guild_interests(2)
    assert [i.name for i in interests] == ["chess"]
    assert interests[0].level == 1
    assert "en passant exists" in interests[0].facts
    assert "strategy" in interests[0].tags
    assert await _potential(db, 2, "chess") is None


@pytest.mark.asyncio
async def test_three_mentions_promote(db, no_llm):
    for _ in range(2):
        assert await store.stage_potential_interest(3, 10, {"name": "baking"}) is False
    assert await store.stage_potential_interest(3, 10, {"name": "baking"}) is True


@pytest.mark.asyncio
async def test_high_enthusiasm_promotes_immediately(db, no_llm):
    assert await store.stage_potential_interest(4, 10, {"name": "volcanoes"}, enthusiasm=0.95) is True


@pytest.mark.asyncio
async def test_tracked_interest_levels_up(db, no_llm):
    await store.seed_default_interests(5)
    before = {i.name: i.level for i in await store.get_guild_interests(5)}

    promoted = await store.stage_potential_interest(5, 10, {"name": "Animals", "facts": ["Otters hold hands"]})
    assert promoted is False
    after = {i.name: i for i in await store.get_guild_interests(5)}
    assert after["animals"].level == before["animals"] + 1
    assert "Otters hold hands" in after["animals"].facts
    assert await _potential(db, 5, "animals") is None


@pytest.mark.asyncio
async def test_guild_level_capped(db, no_llm):
    await store.seed_default_interests(6)
    for _ in range(10):
        await store.stage_potential_interest(6, 10, {"name": "animals"})
    levels = {i.name: i.level for i in await store.get_guild_interests(6)}
    assert levels["animals"] == store.MAX_GUILD_LEVEL


@pytest.mark.asyncio
async def test_interest_is_global_with_guild_overlay(db, no_llm):
    await store.stage_potential_interest(7, 10, {"name": "origami", "facts": ["cranes"]}, enthusiasm=1.0)
    await store.stage_potential_interest(8, 10, {"name": "origami", "facts": ["frogs"]}, enthusiasm=1.0)

    g7 = (await store.get_guild_interests(7))[0]
    g8 = (await store.get_guild_interests(8))[0]
    assert g7.interest_id == g8.interest_id
    assert "cranes" in g7.facts and "frogs" in g8.facts


@pytest.mark.asyncio
async def test_seed_only_once(db):
    assert await store.seed_default_interests(9) == len(store.DEFAULT_INTERESTS)
    assert await store.seed_default_interests(9) == 0
    assert await store.seed_default_interests(10) == len(store.DEFAULT_INTERESTS)
    names = [i.name for i in await store.get_guild_interests(9)]
    assert names[0] == "animals"


@pytest.mark.asyncio
async def test_match_interests_by_embedding(db, no_llm, monkeypatch):
    monkeypatch.setattr(store, "embed_text", AsyncMock(return_value=[1.0, 0.0, 0.0]))
    await store.stage_potential_interest(11, 10, {"name": "rockets"}, enthusiasm=1.0)

    hits = await store.match_interests([0.9, 0.1, 0.0], guild_id=11)
    assert hits and hits[0][0].name == "rockets"
    assert await store.match_interests([0.0, 1.0, 0.0], guild_id=11) == []
    assert await store.match_interests([0.9, 0.1, 0.0], guild_id=12) == []


@pytest.mark.asyncio
async def test_backfill_embeddings(db, monkeypatch):
    await store.seed_default_interests(13)
    monkeypatch.setattr(store, "embed_text", AsyncMock(return_value=[0.5, 0.5]))
    assert await store.backfill_interest_embeddings() == len(store.DEFAULT_INTERESTS)
    assert await store.backfill_interest_embeddings() == 0


@pytest.mark.asyncio
async def test_analysis_needs_enough_text(db, monkeypatch):
    fake = AsyncMock()
    monkeypatch.setattr(store, "generate_structured", fake)
    assert await store.analyze_conversation_for_interests(1, 14, [{"role": "user", "content": "short"}]) is False
    fake.assert_not_awaited()


@pytest.mark.asyncio
async def test_analysis_stages_and_shares(db, no_llm, monkeypatch):
    from utils.model_output import InterestAnalysisOut
    from utils.relationships_store import get_relationship

    async with db() as session:
        session.add(Relationship(user_id=20, guild_id=15, level=1, interaction_count=5))
        await session.commit()

    monkeypatch.setattr(
        store,
        "generate_structured",
        AsyncMock(
            return_value=InterestAnalysisOut.model_validate(
                {"interest_detected": True, "enthusiasm": 0.4, "interest": {"name": "Robotics"}}
            )
        ),
    )
    convo = [
        {"role": "user", "content": "I spent all weekend building a robot arm for the competition"},
        {"role": "assistant", "content": "whoa"},
        {"role": "user", "content": "it can pick up a pencil now"},
    ]
    assert await store.analyze_conversation_for_interests(20, 15, convo) is True
    assert (await _potential(db, 15, "robotics")).mention_count == 1
    assert (await get_relationship(20, 15)).shared_interests == ["robotics"]


@pytest.mark.asyncio
async def test_strangers_get_nothing_shared(db, no_llm):
    await store.seed_default_interests(16)
    assert await store.find_relevant_content_to_share(30, 16, "how are you?", rng=FixedRng(0.0)) is None


@pytest.mark.asyncio
async def test_personal_question_shares_interest(db, no_llm):
    await store.seed_default_interests(17)
    async with db() as session:
        session.add(Relationship(user_id=31, guild_id=17, level=2, interaction_count=40))
        await session.commit()

    content = await store.find_relevant_content_to_share(31, 17, "what's up?", rng=FixedRng(0.0))
    assert content is not None and content.type == "interest"
    text = store.format_personal_content(content, 2, rng=random.Random(1))
    assert content.data.name in text


def test_format_storyline_content():
    from utils.storylines import StorylineView

    story = StorylineView(
        id=1, guild_id=1, event_key="k", title="Science Fair", description="plants",
        status="in_progress", progress=0.4, start_date=None, end_date=None,
        updates=[{"date": "2026-01-01", "content": "Beans sprouted!"}],
    )
    text = store.format_personal_content(store.SharedContent(type="storyline", data=story), 3)
    assert text == "Guess what? Beans sprouted! It's part of my science fair!"


def test_journal_worthy_level_change():
    assert store.is_journal_worthy_level_change(3, 4)
    assert store.is_journal_worthy_level_change(1, 3)
    assert not store.is_journal_worthy_level_change(2, 3)
    assert not store.is_journal_worthy_level_change(5, 5)


@pytest.mark.asyncio
async def test_promotion_writes_new_interest_entry(db, no_llm):
    await store.stage_potential_interest(40, 10, {"name": "baking"})
    assert await _journal_types(db, 40) == []

    assert await store.stage_potential_interest(40, 11, {"name": "Baking"}) is True
    assert await _journal_types(db, 40) == ["new_interest"]


@pytest.mark.asyncio
async def test_reaching_high_level_writes_update_entry(db, no_llm):
    await store.seed_default_interests(41)

    # space exploration 2 -> 3: quiet
    await store.stage_potential_interest(41, 10, {"name": "space exploration"})
    assert await _journal_types(db, 41) == []

    # animals 3 -> 4 -> 5, then capped
    for _ in range(3):
        await store.stage_potential_interest(41, 10, {"name": "animals"})
    assert await _journal_types(db, 41) == ["interest_update", "interest_update"]


@pytest.mark.asyncio
async def test_staging_without_journal(db, no_llm):
    await store.stage_potential_interest(42, 10, {"name": "kites"}, enthusiasm=1.0, journal=False)
    assert [i.name for i in await store.get_guild_interests(42)] == ["kites"]
    assert await _journal_types(db, 42) == []


@pytest.mark.asyncio
async def test_analysis_promotion_posts_to_journal_channel(db, no_llm, monkeypatch):
    from unittest.mock import MagicMock

    from core.services import BotServices
    from utils.model_output import InterestAnalysisOut
    from utils.server_config import update_server_config

    await update_server_config(43, {"journal_channel_id": 900})
    bot = MagicMock()
    bot.services = BotServices()
    channel = MagicMock()
    channel.send = AsyncMock(return_value=MagicMock(id=77))
    bot.get_channel.return_value = channel

    monkeypatch.setattr(
        store,
        "generate_structured",
        AsyncMock(
            return_value=InterestAnalysisOut.model_validate(
                {"interest_detected": True, "enthusiasm": 0.97, "interest": {"name": "Skateboarding"}}
            )
        ),
    )
    convo = [{"role": "user", "content": "I landed my first kickflip today after trying for three whole weeks!!"}]
    assert await store.analyze_conversation_for_interests(21, 43, convo, bot=bot) is True

    assert await _journal_types(db, 43) == ["new_interest"]
    channel.send.assert_awaited_once()
