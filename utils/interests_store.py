# utils/interests_store.py
from __future__ import annotations

import json
import logging
import math
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import delete, select

from utils import relationships as rules
from utils.ai_client import embed_text
from utils.db import get_sessionmaker
from utils.model_output import InterestAnalysisOut, generate_structured, with_fallback
from utils.models import GuildInterest, Interest, PotentialInterest

logger = logging.getLogger("bot.interests")

# Promotion rule for staged topics.
PROMOTE_MENTIONS = 3
PROMOTE_DISTINCT_USERS = 2
# Self-reported by the model; tune freely.
PROMOTE_ENTHUSIASM = 0.92

MAX_GUILD_LEVEL = 5
# Reaching this guild level is worth a journal entry.
JOURNAL_LEVEL = 4
DEFAULT_SHARE_THRESHOLD = 0.5
MATCH_THRESHOLD = 0.7
MIN_ANALYSIS_CHARS = 50
ANALYSIS_WINDOW = 5
PERSONAL_INTEREST_SHARE = 0.7

_PERSONAL_QUESTION_RES = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"how are you",
        r"how('s| is) your day",
        r"what('s| is) up",
        r"what('s| have) you been (up to|doing)",
        r"tell me about yourself",
        r"what do you like",
        r"what are you (doing|working on)",
        r"what('s| is) new",
    )
]

DEFAULT_INTERESTS: list[dict[str, Any]] = [
    {
        "name": "space exploration",
        "level": 2,
        "share_threshold": 0.7,
        "description": "Learning about planets, stars, and space missions",
        "facts": [
            "Mars has the largest volcano in the solar system, Olympus Mons",
            "A day on Venus is longer than its year",
            "The footprints on the Moon will stay there for millions of years",
        ],
        "tags": ["astronomy", "planets", "NASA", "stars", "galaxies"],
    },
    {
        "name": "animals",
        "level": 3,
        "share_threshold": 0.8,
        "description": "Learning about different animals and their behaviors",
        "facts": [
            "Octopuses have three hearts and blue blood",
            "Sloths can hold their breath longer than dolphins",
            "Cows have best friends and get stressed when separated",
        ],
        "tags": ["wildlife", "pets", "nature", "zoology", "marine life"],
    },
    {
        "name": "arts and crafts",
        "level": 2,
        "share_threshold": 0.6,
        "description": "Making creative projects with different materials",
        "facts": [
            "Origami comes from Japanese words meaning folding paper",
            "Friendship bracelets can be made with many different patterns",
            "Tie-dye was popular in the 1960s but has been around much longer",
        ],
        "tags": ["drawing", "painting", "DIY", "crafts", "creativity"],
    },
]


@dataclass(frozen=True)
class InterestView:
    """A global Interest merged with one guild's overlay."""

    interest_id: int
    name: str
    level: int
    description: str
    facts: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    share_threshold: float = DEFAULT_SHARE_THRESHOLD


@dataclass(frozen=True)
class SharedContent:
    type: str  # 'interest' | 'storyline'
    data: Any


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


def _union(a: Sequence[str], b: Sequence[str]) -> list[str]:
    out = list(a)
    seen = {str(x).lower() for x in out}
    for x in b:
        if str(x).lower() not in seen:
            out.append(x)
            seen.add(str(x).lower())
    return out


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def is_personal_question(message: str) -> bool:
    return any(p.search(message or "") for p in _PERSONAL_QUESTION_RES)


def _view(interest: Interest, overlay: GuildInterest | None) -> InterestView:
    facts = _loads(interest.facts, [])
    tags = _loads(interest.tags, [])
    if overlay is not None:
        facts = _union(facts, _loads(overlay.guild_facts, []))
        tags = _union(tags, _loads(overlay.guild_tags, []))
    return InterestView(
        interest_id=int(interest.id),
        name=interest.name,
        level=int(overlay.level) if overlay is not None else 1,
        description=interest.description or "",
        facts=[str(f) for f in facts],
        tags=[str(t) for t in tags],
        share_threshold=float(interest.share_threshold or 0.0),
    )


# ----------------------------
# Reads
# ----------------------------
async def get_guild_interests(guild_id: int, *, limit: int | None = None) -> list[InterestView]:
    """Guild's tracked interests, highest level first."""
    Session = get_sessionmaker()
    async with Session() as session:
        q = (
            select(Interest, GuildInterest)
            .join(GuildInterest, GuildInterest.interest_id == Interest.id)
            .where(GuildInterest.guild_id == int(guild_id))
            .order_by(GuildInterest.level.desc(), GuildInterest.last_discussed.desc())
        )
        if limit:
            q = q.limit(int(limit))
        res = await session.execute(q)
        return [_view(i, gi) for i, gi in res.all()]


async def match_interests(
    embedding: Sequence[float],
    *,
    threshold: float = MATCH_THRESHOLD,
    count: int = 1,
    guild_id: int | None = None,
) -> list[tuple[InterestView, float]]:
    """Cosine similarity over stored interest embeddings, best first."""
    Session = get_sessionmaker()
    async with Session() as session:
        if guild_id is None:
            res = await session.execute(select(Interest).where(Interest.embedding != ""))
            pairs = [(i, None) for i in res.scalars().all()]
        else:
            res = await session.execute(
                select(Interest, GuildInterest)
                .join(GuildInterest, GuildInterest.interest_id == Interest.id)
                .where(GuildInterest.guild_id == int(guild_id))
                .where(Interest.embedding != "")
            )
            pairs = list(res.all())

    scored: list[tuple[InterestView, float]] = []
    for interest, overlay in pairs:
        vec = _loads(interest.embedding, [])
        score = cosine_similarity(embedding, vec)
        if score > threshold:
            scored.append((_view(interest, overlay), score))
    scored.sort(key=lambda p: p[1], reverse=True)
    return scored[: max(1, int(count))]


def _weighted_pick(items: list[InterestView], rng: random.Random) -> InterestView | None:
    if not items:
        return None
    total = sum(max(1, i.level) for i in items)
    roll = rng.random() * total
    for item in items:
        roll -= max(1, item.level)
        if roll <= 0:
            return item
    return items[0]


# ----------------------------
# Staging & promotion
# ----------------------------
def should_promote(mention_count: int, distinct_users: int, enthusiasm: float) -> bool:
    return (
        mention_count >= PROMOTE_MENTIONS
        or distinct_users >= PROMOTE_DISTINCT_USERS
        or enthusiasm >= PROMOTE_ENTHUSIASM
    )


async def _bump_guild_interest(
    session, guild_id: int, name: str, data: dict[str, Any]
) -> tuple[int, int, str] | None:
    """Level up an interest the guild already tracks.

    Returns (old level, new level, description), or None if the guild doesn't track it.
    """
    res = await session.execute(
        select(Interest, GuildInterest)
        .join(GuildInterest, GuildInterest.interest_id == Interest.id)
        .where(GuildInterest.guild_id == int(guild_id))
        .where(Interest.name == name)
        .with_for_update()
        .limit(1)
    )
    hit = res.first()
    if hit is None:
        return None
    interest, overlay = hit
    now = _now_utc()
    old_level = int(overlay.level or 1)
    overlay.guild_facts = _dumps(_union(_loads(overlay.guild_facts, []), data.get("facts") or []))
    overlay.guild_tags = _dumps(_union(_loads(overlay.guild_tags, []), data.get("tags") or []))
    overlay.level = min(old_level + 1, MAX_GUILD_LEVEL)
    overlay.last_discussed = now
    interest.last_discussed = now
    return old_level, int(overlay.level), interest.description or ""


def is_journal_worthy_level_change(old_level: int, new_level: int) -> bool:
    """A big jump, or reaching one of the top levels, earns a journal entry."""
    if new_level <= old_level:
        return False
    return new_level - old_level >= 2 or new_level >= JOURNAL_LEVEL


async def _journal_interest(guild_id: int, name: str, description: str, *, is_new: bool, bot=None) -> None:
    from utils.journal import create_interest_journal_entry

    try:
        await create_interest_journal_entry(guild_id, name, description, is_new=is_new, bot=bot)
    except Exception:
        logger.exception("Interest journal entry failed guild=%s name=%s", guild_id, name)


async def stage_potential_interest(
    guild_id: int,
    user_id: int,
    data: dict[str, Any],
    enthusiasm: float = 0.0,
    *,
    journal: bool = True,
    bot=None,
) -> bool:
    """Record a mention of a topic. Returns True when the mention promoted it.

    A topic the guild already tracks is levelled up directly instead. With
    ``journal`` set, a promotion or a big level change also writes a journal entry.
    """
    name = str(data.get("name") or "").strip().lower()
    if not name:
        return False
    gid = int(guild_id)

    Session = get_sessionmaker()
    async with Session() as session:
        bumped = await _bump_guild_interest(session, gid, name, data)
        if bumped is not None:
            await session.commit()
            old_level, new_level, description = bumped
            logger.info("Interest levelled guild=%s name=%s level=%s", gid, name, new_level)
            if journal and is_journal_worthy_level_change(old_level, new_level):
                await _journal_interest(gid, name, description, is_new=False, bot=bot)
            return False

        res = await session.execute(
            select(PotentialInterest)
            .where(PotentialInterest.guild_id == gid)
            .where(PotentialInterest.name == name)
            .with_for_update()
            .limit(1)
        )
        row = res.scalar_one_or_none()
        if row is None:
            row = PotentialInterest(guild_id=gid, name=name, mention_count=0, users_mentioned="[]", data="{}")
            session.add(row)

        users = [int(u) for u in _loads(row.users_mentioned, [])]
        if int(user_id) not in users:
            users.append(int(user_id))
        merged = _loads(row.data, {})
        merged["name"] = name
        if data.get("description"):
            merged["description"] = str(data["description"])
        merged["facts"] = _union(merged.get("facts") or [], data.get("facts") or [])
        merged["tags"] = _union(merged.get("tags") or [], data.get("tags") or [])

        row.mention_count = int(row.mention_count or 0) + 1
        row.users_mentioned = _dumps(users)
        row.data = _dumps(merged)
        row.max_enthusiasm = max(float(row.max_enthusiasm or 0.0), float(enthusiasm or 0.0))
        row.updated_at = _now_utc()
        promote = should_promote(int(row.mention_count), len(users), float(enthusiasm or 0.0))
        await session.commit()

    if promote:
        view = await promote_potential_interest(gid, name)
        if journal and view is not None:
            await _journal_interest(gid, view.name, view.description, is_new=True, bot=bot)
        return True
    return False


async def _embedding_for(name: str, description: str) -> list[float] | None:
    return await with_fallback(embed_text(f"{name} {description}".strip()), None, what="interests.embedding")


async def promote_potential_interest(guild_id: int, name: str) -> InterestView | None:
    """Turn a staged topic into a global Interest plus this guild's overlay."""
    gid = int(guild_id)
    name = (name or "").strip().lower()

    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(PotentialInterest)
            .where(PotentialInterest.guild_id == gid)
            .where(PotentialInterest.name == name)
            .limit(1)
        )
        staged = res.scalar_one_or_none()
        data = _loads(staged.data, {}) if staged is not None else {"name": name}

    res_interest = None
    async with Session() as session:
        res = await session.execute(select(Interest).where(Interest.name == name).limit(1))
        interest = res.scalar_one_or_none()
        need_embedding = interest is None or not (interest.embedding or "").strip()

    vec = await _embedding_for(name, str(data.get("description") or "")) if need_embedding else None

    async with Session() as session:
        res = await session.execute(
            select(Interest).where(Interest.name == name).with_for_update().limit(1)
        )
        interest = res.scalar_one_or_none()
        now = _now_utc()
        if interest is None:
            interest = Interest(
                name=name,
                description=str(data.get("description") or ""),
                facts=_dumps(list(data.get("facts") or [])),
                tags=_dumps(list(data.get("tags") or [])),
                share_threshold=DEFAULT_SHARE_THRESHOLD,
                embedding=_dumps(vec) if vec else "",
                first_mentioned=now,
                last_discussed=now,
            )
            session.add(interest)
            await session.flush()
        elif vec and not (interest.embedding or "").strip():
            interest.embedding = _dumps(vec)

        res = await session.execute(
            select(GuildInterest)
            .where(GuildInterest.guild_id == gid)
            .where(GuildInterest.interest_id == interest.id)
            .limit(1)
        )
        overlay = res.scalar_one_or_none()
        if overlay is None:
            overlay = GuildInterest(
                guild_id=gid,
                interest_id=int(interest.id),
                level=1,
                guild_facts=_dumps(list(data.get("facts") or [])),
                guild_tags=_dumps(list(data.get("tags") or [])),
                last_discussed=now,
            )
            session.add(overlay)
        else:
            overlay.guild_facts = _dumps(_union(_loads(overlay.guild_facts, []), data.get("facts") or []))
            overlay.guild_tags = _dumps(_union(_loads(overlay.guild_tags, []), data.get("tags") or []))
            overlay.last_discussed = now

        await session.execute(
            delete(PotentialInterest)
            .where(PotentialInterest.guild_id == gid)
            .where(PotentialInterest.name == name)
        )
        await session.commit()
        res_interest = _view(interest, overlay)

    logger.info("Promoted interest guild=%s name=%s", gid, name)
    return res_interest


# ----------------------------
# Conversation analysis
# ----------------------------
async def _analyze(text: str) -> InterestAnalysisOut:
    prompt = (
        "Analyze this conversation snippet and decide whether the user shows enthusiasm for, or deep "
        "knowledge of, a specific interest or hobby that a 14-year-old girl might also enjoy.\n"
        "Only report clear interests with strong engagement, not passing mentions.\n\n"
        f"Conversation: {text}\n\n"
        "Respond as JSON:\n"
        '{"interest_detected": true/false, "enthusiasm": 0.0-1.0, '
        '"interest": {"name": "...", "description": "...", "facts": ["..."], "tags": ["..."]}}\n'
        'If nothing clear is detected, return {"interest_detected": false}.'
    )
    return await generate_structured(prompt, InterestAnalysisOut, temperature=0.3, max_tokens=400)


async def analyze_conversation_for_interests(
    user_id: int,
    guild_id: int,
    conversation: Sequence[dict[str, str]],
    *,
    bot=None,
) -> bool:
    """Look for an interest in the user's recent messages. Returns True if one was recorded."""
    user_msgs = [m.get("content", "") for m in conversation if m.get("role") == "user"][-ANALYSIS_WINDOW:]
    text = " ".join(m for m in user_msgs if m)
    if len(text) < MIN_ANALYSIS_CHARS:
        return False

    result = await with_fallback(_analyze(text), None, what="interests.analysis")
    if result is None or not result.interest_detected or result.interest is None:
        return False

    try:
        await stage_potential_interest(
            guild_id,
            user_id,
            result.interest.model_dump(),
            enthusiasm=result.enthusiasm,
            bot=bot,
        )
    except Exception:
        logger.exception("Staging interest failed user=%s guild=%s", user_id, guild_id)
        return False

    from utils.relationships_store import add_shared_interest

    await add_shared_interest(user_id, guild_id, result.interest.name)
    return True


# ----------------------------
# Sharing
# ----------------------------
async def find_relevant_content_to_share(
    user_id: int,
    guild_id: int,
    message: str,
    *,
    rng: random.Random | None = None,
) -> SharedContent | None:
    from utils.relationships_store import get_relationship_level
    from utils.storylines import recent_in_progress

    rng = rng or random
    try:
        level = await get_relationship_level(user_id, guild_id)
        if level < rules.ACQUAINTANCE:
            return None

        if not is_personal_question(message):
            vec = await with_fallback(embed_text(message), None, what="interests.match_embedding")
            if not vec:
                return None
            matches = await match_interests(vec, threshold=MATCH_THRESHOLD, count=1, guild_id=guild_id)
            if matches and rng.random() < matches[0][0].share_threshold:
                return SharedContent(type="interest", data=matches[0][0])
            return None

        if rng.random() < PERSONAL_INTEREST_SHARE:
            interest = _weighted_pick(await get_guild_interests(guild_id), rng)
            if interest is not None and rng.random() < interest.share_threshold:
                return SharedContent(type="interest", data=interest)
        else:
            stories = await recent_in_progress(guild_id, limit=3)
            if stories:
                story = rng.choice(stories)
                if rng.random() < story.share_threshold:
                    return SharedContent(type="storyline", data=story)
    except Exception:
        logger.exception("find_relevant_content_to_share failed user=%s guild=%s", user_id, guild_id)
    return None


def format_personal_content(content: SharedContent, level: int, *, rng: random.Random | None = None) -> str:
    rng = rng or random
    if content.type == "interest":
        it: InterestView = content.data
        fact = rng.choice(it.facts) if it.facts else ""
        if level <= rules.ACQUAINTANCE:
            text = f"I really like {it.name}! {fact}"
        elif level <= rules.FRIENDLY:
            text = f"I'm super into {it.name} right now! {fact} I think it's so cool!"
        else:
            text = (
                f"I've been really excited about {it.name} lately! {fact} "
                f"{it.description}. I could talk about this all day!"
            )
        return " ".join(text.split())
    if content.type == "storyline":
        from utils.storylines import latest_update

        story = content.data
        return f"Guess what? {latest_update(story)} It's part of my {story.title.lower()}!"
    return ""


async def get_personal_content(user_id: int, guild_id: int, message: str) -> str | None:
    from utils.relationships_store import get_relationship_level

    content = await find_relevant_content_to_share(user_id, guild_id, message)
    if content is None:
        return None
    level = await get_relationship_level(user_id, guild_id)
    return format_personal_content(content, level) or None


# ----------------------------
# Seeds
# ----------------------------
async def seed_default_interests(guild_id: int) -> int:
    """Give a guild the starter interests when it tracks none. Returns rows added."""
    gid = int(guild_id)
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(select(GuildInterest.id).where(GuildInterest.guild_id == gid).limit(1))
        if res.scalar_one_or_none() is not None:
            return 0

        added = 0
        now = _now_utc()
        for seed in DEFAULT_INTERESTS:
            res = await session.execute(select(Interest).where(Interest.name == seed["name"]).limit(1))
            interest = res.scalar_one_or_none()
            if interest is None:
                interest = Interest(
                    name=seed["name"],
                    description=seed["description"],
                    facts=_dumps(seed["facts"]),
                    tags=_dumps(seed["tags"]),
                    share_threshold=seed["share_threshold"],
                    embedding="",
                    first_mentioned=now,
                    last_discussed=now,
                )
                session.add(interest)
                await session.flush()
            session.add(
                GuildInterest(
                    guild_id=gid,
                    interest_id=int(interest.id),
                    level=seed["level"],
                    guild_facts="[]",
                    guild_tags="[]",
                    last_discussed=now,
                )
            )
            added += 1
        await session.commit()

    logger.info("Seeded %s default interests guild=%s", added, gid)
    return added


async def backfill_interest_embeddings(limit: int = 20) -> int:
    """Embed interests stored without a vector (seeds, or promotions made while the API was down)."""
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(select(Interest).where(Interest.embedding == "").limit(int(limit)))
        pending = [(int(i.id), i.name, i.description or "") for i in res.scalars().all()]

    done = 0
    for iid, name, desc in pending:
        vec = await _embedding_for(name, desc)
        if not vec:
            break
        async with Session() as session:
            row = await session.get(Interest, iid)
            if row is not None:
                row.embedding = _dumps(vec)
                await session.commit()
                done += 1
    return done
