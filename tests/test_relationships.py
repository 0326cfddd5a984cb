"""Tests for per-user relationship tracking."""
from __future__ import annotations

import json
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from utils import relationships as rules
from utils import relationships_store as store
from utils.models import Relationship


class AlwaysRng(random.Random):
    """Every roll succeeds; choice picks the first item."""

    def random(self):
        return 0.0

    def choice(self, seq):
        return seq[0]


def _replies(monkeypatch, *payloads):
    """Queue JSON replies for structured model calls."""
    from utils import model_output

    queue = [json.dumps(p) for p in payloads]

    async def _fake(messages, **kwargs):
        return queue.pop(0)

    monkeypatch.setattr(model_output, "chat_completion", _fake)


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "count,level",
    [(0, rules.STRANGER), (9, rules.STRANGER), (10, rules.ACQUAINTANCE), (30, rules.FRIENDLY), (100, rules.FRIEND)],
)
def test_level_thresholds(count, level):
    assert rules.level_for_count(count) == level


def test_close_friend_only_via_fast_track():
    assert rules.level_for_count(10_000) == rules.FRIEND
    assert rules.next_level(rules.FRIEND, 105, days_since_last=0.5) == rules.CLOSE_FRIEND


def test_fast_track_needs_recent_contact():
    assert rules.next_level(0, 5, days_since_last=1.0) == rules.ACQUAINTANCE
    assert rules.next_level(0, 5, days_since_last=8.0) == rules.STRANGER
    assert rules.next_level(0, 5, days_since_last=None) == rules.STRANGER
    assert rules.next_level(0, 6, days_since_last=1.0) == rules.STRANGER


def test_level_never_decreases_or_exceeds_max():
    assert rules.next_level(rules.FRIEND, 11, days_since_last=30) == rules.FRIEND
    assert rules.next_level(rules.CLOSE_FRIEND, 200, days_since_last=0.1) == rules.MAX_LEVEL


def test_merge_topics_caps_and_normalizes():
    merged = rules.merge_topics({"music": 2}, ["Music", "Games", "school", "art"])
    assert merged == {"music": 3, "games": 1, "school": 1}


def test_humor_detection():
    assert rules.looks_humorous("LOL that was great")
    assert rules.looks_humorous("remember when we got lost")
    assert not rules.looks_humorous("what's the homework for today")


def test_personalizations_need_friendly():
    assert rules.choose_personalizations(
        level=rules.ACQUAINTANCE, interaction_count=50, shared_interests=["art"], inside_jokes=[], rng=AlwaysRng()
    ) == []


def test_personalizations_for_friend():
    out = rules.choose_personalizations(
        level=rules.FRIEND,
        interaction_count=50,
        shared_interests=["art"],
        inside_jokes=[{"reference": "the goose", "timestamp": "2026-01-01"}],
        rng=AlwaysRng(),
    )
    assert len(out) == 3
    assert '"art"' in out[0]
    assert "the goose" in out[1]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_interaction_creates_stranger(db, no_llm):
    snap = await store.update_relationship_after_interaction(1, 100, "hello there, how are you doing?")
    assert snap.level == rules.STRANGER
    assert snap.interaction_count == 1
    assert (await store.get_relationship_level(1, 100)) == rules.STRANGER


@pytest.mark.asyncio
async def test_fifth_quick_interaction_fast_tracks(db, no_llm):
    for _ in range(5):
        snap = await store.update_relationship_after_interaction(2, 100, "hi")
    assert snap.interaction_count == 5
    assert snap.level == rules.ACQUAINTANCE


@pytest.mark.asyncio
async def test_topics_merged_from_model(db, monkeypatch):
    _replies(monkeypatch, {"topics": ["Music", "School"]}, {"topics": ["music"]})
    await store.update_relationship_after_interaction(3, 100, "I practiced piano before class today")
    snap = await store.update_relationship_after_interaction(3, 100, "my band played a new song")
    assert snap.conversation_topics == {"music": 2, "school": 1}


@pytest.mark.asyncio
async def test_short_messages_skip_topic_extraction(db, monkeypatch):
    from utils import model_output

    fake = AsyncMock()
    monkeypatch.setattr(model_output, "chat_completion", fake)
    await store.update_relationship_after_interaction(4, 100, "ok")
    fake.assert_not_awaited()


@pytest.mark.asyncio
async def test_inside_joke_stored_for_friendly(db, monkeypatch):
    async with db() as session:
        session.add(Relationship(user_id=5, guild_id=100, level=rules.FRIENDLY, interaction_count=40))
        await session.commit()

    _replies(monkeypatch, {"is_inside_joke": True, "joke": {"reference": "the flying pizza", "context": "lunch"}})
    assert await store.detect_and_store_inside_joke(5, 100, "lol remember the flying pizza", "haha never again")

    snap = await store.get_relationship(5, 100)
    assert snap.inside_jokes[0]["reference"] == "the flying pizza"
    assert "timestamp" in snap.inside_jokes[0]


@pytest.mark.asyncio
async def test_inside_joke_needs_humor_and_level(db, monkeypatch):
    from utils import model_output

    fake = AsyncMock()
    monkeypatch.setattr(model_output, "chat_completion", fake)
    async with db() as session:
        session.add(Relationship(user_id=6, guild_id=100, level=rules.ACQUAINTANCE, interaction_count=12))
        await session.commit()

    assert await store.detect_and_store_inside_joke(6, 100, "what time is it", "3pm") is False
    assert await store.detect_and_store_inside_joke(6, 100, "lol so funny", "haha") is False
    fake.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_joke_reply_degrades(db, monkeypatch):
    async with db() as session:
        session.add(Relationship(user_id=7, guild_id=100, level=rules.FRIEND, interaction_count=120))
        await session.commit()

    from utils import model_output

    async def _garbage(messages, **kwargs):
        return "sure! here's your json"

    monkeypatch.setattr(model_output, "chat_completion", _garbage)
    assert await store.detect_and_store_inside_joke(7, 100, "haha the goose", "lmao") is False
    assert (await store.get_relationship(7, 100)).inside_jokes == []


@pytest.mark.asyncio
async def test_shared_interests_deduplicated(db, no_llm):
    await store.update_relationship_after_interaction(8, 100, "hi")
    assert await store.add_shared_interest(8, 100, "Astronomy")
    assert await store.add_shared_interest(8, 100, "astronomy") is False
    assert (await store.get_relationship(8, 100)).shared_interests == ["astronomy"]


@pytest.mark.asyncio
async def test_clear_relationship(db, no_llm):
    await store.update_relationship_after_interaction(9, 100, "hi")
    assert await store.clear_relationship(9, 100) is True
    assert await store.get_relationship(9, 100) is None
    assert await store.clear_relationship(9, 100) is False


@pytest.mark.asyncio
async def test_personalize_stranger_unchanged(db, no_llm):
    assert await store.personalize_response(10, 100, "hey!") == "hey!"


@pytest.mark.asyncio
async def test_personalize_friend_rewrites(db, monkeypatch):
    now = datetime.now(timezone.utc)
    async with db() as session:
        session.add(
            Relationship(
                user_id=11, guild_id=100, level=rules.FRIEND, interaction_count=150,
                last_interaction=now - timedelta(hours=1), shared_interests='["art"]',
            )
        )
        await session.commit()

    rewrite = AsyncMock(return_value="  hey! still drawing?  ")
    monkeypatch.setattr(store, "generate_text", rewrite)
    out = await store.personalize_response(11, 100, "hey!", rng=AlwaysRng())
    assert out == "hey! still drawing?"
    assert "art" in rewrite.call_args.args[0]


@pytest.mark.asyncio
async def test_personalize_falls_back_on_ai_error(db, monkeypatch):
    from utils.ai_client import AIRateLimitError

    async with db() as session:
        session.add(Relationship(user_id=12, guild_id=100, level=rules.FRIEND, interaction_count=150))
        await session.commit()

    monkeypatch.setattr(store, "generate_text", AsyncMock(side_effect=AIRateLimitError("slow down")))
    assert await store.personalize_response(12, 100, "base", rng=AlwaysRng()) == "base"
