# utils/relationships_store.py
from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import delete, select

from utils import relationships as rules
from utils.ai_client import AIError, generate_text
from utils.db import get_sessionmaker
from utils.model_output import InsideJokeOut, TopicsOut, generate_structured, with_fallback
from utils.models import Relationship, as_utc

logger = logging.getLogger("bot.relationships")

PERSONA_SYSTEM = "You are Bri, a friendly AI with the personality of a curious, upbeat 14-year-old girl."
ANALYST_SYSTEM = "You analyze chat messages and answer only with the JSON object requested."


@dataclass(frozen=True)
class RelationshipSnapshot:
    user_id: int
    guild_id: int
    level: int
    interaction_count: int
    last_interaction: datetime | None
    shared_interests: list[str] = field(default_factory=list)
    conversation_topics: dict[str, int] = field(default_factory=dict)
    inside_jokes: list[dict] = field(default_factory=list)

    @property
    def level_name(self) -> str:
        return rules.level_name(self.level)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _loads(raw: str | None, default):
    try:
        v = json.loads(raw or "")
    except (TypeError, ValueError):
        return default
    return v if isinstance(v, type(default)) else default


def _dumps(v) -> str:
    return json.dumps(v, separators=(",", ":"), ensure_ascii=False)


def _snapshot(row: Relationship) -> RelationshipSnapshot:
    return RelationshipSnapshot(
        user_id=int(row.user_id),
        guild_id=int(row.guild_id),
        level=int(row.level or 0),
        interaction_count=int(row.interaction_count or 0),
        last_interaction=as_utc(row.last_interaction),
        shared_interests=[str(x) for x in _loads(row.shared_interests, [])],
        conversation_topics={str(k): int(v) for k, v in _loads(row.conversation_topics, {}).items()},
        inside_jokes=[j for j in _loads(row.inside_jokes, []) if isinstance(j, dict)],
    )


async def _locked(session, user_id: int, guild_id: int) -> Relationship | None:
    res = await session.execute(
        select(Relationship)
        .where(Relationship.user_id == int(user_id))
        .where(Relationship.guild_id == int(guild_id))
        .with_for_update()
        .limit(1)
    )
    return res.scalar_one_or_none()


async def get_relationship(user_id: int, guild_id: int) -> RelationshipSnapshot | None:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(Relationship)
            .where(Relationship.user_id == int(user_id))
            .where(Relationship.guild_id == int(guild_id))
            .limit(1)
        )
        row = res.scalar_one_or_none()
        return _snapshot(row) if row is not None else None


async def get_relationship_level(user_id: int, guild_id: int) -> int:
    try:
        snap = await get_relationship(user_id, guild_id)
    except Exception:
        logger.exception("get_relationship_level failed user=%s guild=%s", user_id, guild_id)
        return rules.STRANGER
    return snap.level if snap else rules.STRANGER


# ----------------------------
# LLM helpers
# ----------------------------
async def _extract_topics(message: str) -> list[str]:
    prompt = (
        "Extract up to 3 main conversation topics from this message. Use general categories, "
        'not specific details (for example "cooking", "movies", "school", "family").\n\n'
        f'Message: "{message}"\n\n'
        'Respond as JSON: {"topics": ["topic1", "topic2"]}. If there are none, return {"topics": []}.'
    )
    out = await generate_structured(prompt, TopicsOut, system=ANALYST_SYSTEM, temperature=0.2, max_tokens=100)
    return out.topics[: rules.MAX_TOPICS_PER_MESSAGE]


async def extract_conversation_topics(message: str) -> list[str]:
    if len(message or "") < rules.MIN_TOPIC_MESSAGE_CHARS:
        return []
    return await with_fallback(_extract_topics(message), [], what="relationship.topics")


# ----------------------------
# Writes
# ----------------------------
async def update_relationship_after_interaction(
    user_id: int,
    guild_id: int,
    message: str,
) -> RelationshipSnapshot | None:
    """Count one interaction, advance the level and merge message topics.

    Returns None on a database error.
    """
    topics = await extract_conversation_topics(message)
    now = _now_utc()

    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked(session, user_id, guild_id)
            if row is None:
                row = Relationship(
                    user_id=int(user_id),
                    guild_id=int(guild_id),
                    level=rules.STRANGER,
                    interaction_count=1,
                    last_interaction=now,
                    conversation_topics=_dumps(rules.merge_topics({}, topics)),
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                new_count = int(row.interaction_count or 0) + 1
                days = rules.days_between(as_utc(row.last_interaction), now)
                old_level = int(row.level or 0)
                row.level = rules.next_level(old_level, new_count, days)
                row.interaction_count = new_count
                row.last_interaction = now
                if topics:
                    row.conversation_topics = _dumps(
                        rules.merge_topics(_loads(row.conversation_topics, {}), topics)
                    )
                row.updated_at = now
                if row.level > old_level:
                    logger.info(
                        "Relationship level up user=%s guild=%s %s -> %s",
                        user_id, guild_id, old_level, row.level,
                    )
            await session.commit()
            return _snapshot(row)
    except Exception:
        logger.exception("update_relationship_after_interaction failed user=%s guild=%s", user_id, guild_id)
        return None


async def _classify_joke(user_message: str, bot_response: str) -> InsideJokeOut:
    prompt = (
        'Decide whether this exchange contains or references an "inside joke": a humorous reference '
        "that only makes sense to people who share a specific experience.\n"
        "Look for references to past shared experiences, unusual phrases with special meaning, "
        "or callbacks to earlier jokes.\n\n"
        f'User: "{user_message}"\n'
        f'Bri: "{bot_response}"\n\n'
        'Respond as JSON: {"is_inside_joke": true/false, "joke": {"reference": "what is referenced", '
        '"context": "why it is funny"}}. If there is no inside joke, return {"is_inside_joke": false}.'
    )
    return await generate_structured(prompt, InsideJokeOut, system=ANALYST_SYSTEM, temperature=0.2, max_tokens=200)


async def detect_and_store_inside_joke(
    user_id: int,
    guild_id: int,
    user_message: str,
    bot_response: str,
) -> bool:
    """Store an inside joke when a FRIENDLY+ exchange looks like one. Returns True if stored."""
    if not rules.looks_humorous(user_message):
        return False
    level = await get_relationship_level(user_id, guild_id)
    if level < rules.FRIENDLY:
        return False

    result = await with_fallback(
        _classify_joke(user_message, bot_response),
        None,
        what="relationship.inside_joke",
    )
    if result is None or not result.is_inside_joke or result.joke is None:
        return False

    joke = {
        "reference": result.joke.reference,
        "context": result.joke.context,
        "timestamp": _now_utc().isoformat(),
    }
    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked(session, user_id, guild_id)
            if row is None:
                return False
            jokes = _loads(row.inside_jokes, [])
            jokes.append(joke)
            row.inside_jokes = _dumps(jokes)
            row.updated_at = _now_utc()
            await session.commit()
    except Exception:
        logger.exception("Storing inside joke failed user=%s guild=%s", user_id, guild_id)
        return False

    logger.info("Stored inside joke user=%s guild=%s", user_id, guild_id)
    return True


async def add_shared_interest(user_id: int, guild_id: int, interest_name: str) -> bool:
    name = (interest_name or "").strip().lower()
    if not name:
        return False
    try:
        Session = get_sessionmaker()
        async with Session() as session:
            row = await _locked(session, user_id, guild_id)
            if row is None:
                return False
            shared = _loads(row.shared_interests, [])
            if name in shared:
                return False
            shared.append(name)
            row.shared_interests = _dumps(shared)
            row.updated_at = _now_utc()
            await session.commit()
            return True
    except Exception:
        logger.exception("add_shared_interest failed user=%s guild=%s", user_id, guild_id)
        return False


async def clear_relationship(user_id: int, guild_id: int) -> bool:
    try:
        Session = get_sessionmaker()
        async with Session() as session:
            res = await session.execute(
                delete(Relationship)
                .where(Relationship.user_id == int(user_id))
                .where(Relationship.guild_id == int(guild_id))
            )
            await session.commit()
            return bool(res.rowcount)
    except Exception:
        logger.exception("clear_relationship failed user=%s guild=%s", user_id, guild_id)
        return False


# ----------------------------
# Personalization
# ----------------------------
async def personalize_response(
    user_id: int,
    guild_id: int,
    base_text: str,
    *,
    rng: random.Random | None = None,
) -> str:
    """Rewrite ``base_text`` with relationship callbacks. Falls back to ``base_text``."""
    try:
        snap = await get_relationship(user_id, guild_id)
    except Exception:
        logger.exception("personalize_response lookup failed user=%s guild=%s", user_id, guild_id)
        return base_text
    if snap is None:
        return base_text

    instructions = rules.choose_personalizations(
        level=snap.level,
        interaction_count=snap.interaction_count,
        shared_interests=snap.shared_interests,
        inside_jokes=snap.inside_jokes,
        rng=rng,
    )
    if not instructions:
        return base_text

    try:
        out = await generate_text(
            rules.personalization_prompt(base_text, instructions, snap.level),
            system=PERSONA_SYSTEM,
            temperature=0.7,
            max_tokens=600,
        )
    except AIError as e:
        logger.warning("Personalization skipped user=%s guild=%s: %s", user_id, guild_id, e)
        return base_text
    return out.strip() or base_text
