# utils/storylines.py
from __future__ import annotations

import json
import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import or_, select

from utils.ai_client import generate_text
from utils.db import get_sessionmaker
from utils.model_output import NewStorylineOut, generate_structured, with_fallback
from utils.models import Storyline, as_utc

logger = logging.getLogger("bot.storylines")

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"

UPDATE_MIN_DAYS = 2
UPDATE_CHANCE = 0.30
MAX_STEP = 0.20
PROGRESS_CAP = 0.95
NEW_STORYLINE_CHANCE = 0.10
NEW_STORYLINE_PROGRESS = 0.1
NEW_STORYLINE_SHARE_THRESHOLD = 0.6
NEW_STORYLINE_DAYS = (14, 28)

UPDATE_SYSTEM = "You write brief, excited updates in the voice of a 14-year-old girl."


@dataclass(frozen=True)
class StorylineView:
    id: int
    guild_id: int | None
    event_key: str
    title: str
    description: str
    status: str
    progress: float
    start_date: datetime | None
    end_date: datetime | None
    updates: list[dict[str, str]] = field(default_factory=list)
    share_threshold: float = 0.6


@dataclass
class SweepResult:
    completed: int = 0
    updated: int = 0
    created: int = 0
    journal_entries: int = 0


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


def to_view(row: Storyline) -> StorylineView:
    return StorylineView(
        id=int(row.id),
        guild_id=int(row.guild_id) if row.guild_id is not None else None,
        event_key=row.event_key or "",
        title=row.title or "",
        description=row.description or "",
        status=row.status or STATUS_IN_PROGRESS,
        progress=float(row.progress or 0.0),
        start_date=as_utc(row.start_date),
        end_date=as_utc(row.end_date),
        updates=[u for u in _loads(row.updates, []) if isinstance(u, dict)],
        share_threshold=float(row.share_threshold or 0.0),
    )


def latest_update(story: StorylineView) -> str:
    if not story.updates:
        return f"I'm working on {story.description}."
    latest = sorted(story.updates, key=lambda u: str(u.get("date") or ""))[-1]
    return str(latest.get("content") or "")


def _last_update_at(story: StorylineView) -> datetime | None:
    if story.updates:
        raw = str(story.updates[-1].get("date") or "")
        try:
            dt = datetime.fromisoformat(raw)
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return story.start_date


def is_significant(old: float, new: float) -> bool:
    return (new - old) > 0.1 or int(new * 10) > int(old * 10)


def _scope(q, guild_id: int | None):
    if guild_id is None:
        return q
    return q.where(or_(Storyline.guild_id == int(guild_id), Storyline.guild_id.is_(None)))


async def get_storyline(storyline_id: int) -> StorylineView | None:
    Session = get_sessionmaker()
    async with Session() as session:
        row = await session.get(Storyline, int(storyline_id))
        return to_view(row) if row is not None else None


async def recent_in_progress(guild_id: int | None, *, limit: int = 3) -> list[StorylineView]:
    Session = get_sessionmaker()
    async with Session() as session:
        q = _scope(select(Storyline).where(Storyline.status == STATUS_IN_PROGRESS), guild_id)
        res = await session.execute(q.order_by(Storyline.updated_at.desc()).limit(int(limit)))
        return [to_view(r) for r in res.scalars().all()]


# ----------------------------
# LLM text
# ----------------------------
def _history(story: StorylineView) -> str:
    return "\n".join(f"- {u.get('content', '')}" for u in story.updates[-6:]) or "- (none yet)"


async def _completion_text(story: StorylineView) -> str:
    prompt = (
        "You are Bri, a 14-year-old girl who has been working on this project/goal:\n"
        f"{story.title}: {story.description}\n\n"
        f"Your progress so far is {round(story.progress * 100)}% and today it is finished.\n\n"
        f"Previous updates:\n{_history(story)}\n\n"
        "Write a VERY BRIEF, excited update about finishing it, in first person. Under 2 sentences."
    )
    return (await generate_text(prompt, system=UPDATE_SYSTEM, temperature=0.9, max_tokens=150)).strip()


async def _progress_text(story: StorylineView, new_progress: float) -> str:
    prompt = (
        "You are Bri, a 14-year-old girl who has been working on this project/goal:\n"
        f"{story.title}: {story.description}\n\n"
        f"Your progress was {round(story.progress * 100)}% and you're now at {round(new_progress * 100)}%.\n\n"
        f"Previous updates:\n{_history(story)}\n\n"
        "Write a VERY BRIEF, excited update about your progress, in first person. "
        "Under 2 sentences. Don't repeat previous updates."
    )
    return (await generate_text(prompt, system=UPDATE_SYSTEM, temperature=0.9, max_tokens=150)).strip()


def completion_fallback(story: StorylineView) -> str:
    return f"I finally finished my {story.title.lower()}! I'm so proud of how it turned out!"


def progress_fallback(story: StorylineView) -> str:
    return f"Made some more progress on my {story.title.lower()} today!"


# ----------------------------
# Sweep
# ----------------------------
async def _journal(story: StorylineView, update_text: str, bot) -> bool:
    if story.guild_id is None:
        return False
    from utils.journal import create_storyline_journal_entry

    try:
        entry = await create_storyline_journal_entry(story.guild_id, story, update_text, bot=bot)
    except Exception:
        logger.exception("Storyline journal entry failed storyline=%s", story.id)
        return False
    return entry is not None


async def _append_update(
    storyline_id: int,
    content: str,
    *,
    now: datetime,
    progress: float,
    status: str | None = None,
) -> StorylineView | None:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(Storyline).where(Storyline.id == int(storyline_id)).with_for_update().limit(1)
        )
        row = res.scalar_one_or_none()
        if row is None or row.status == STATUS_COMPLETED:
            return None
        updates = _loads(row.updates, [])
        updates.append({"date": now.isoformat(), "content": content})
        row.updates = _dumps(updates)
        row.progress = float(progress)
        if status:
            row.status = status
        row.updated_at = now
        await session.commit()
        return to_view(row)


async def storyline_guilds() -> list[int]:
    """Guilds a global sweep may start a storyline for.

    Any guild that ever had a storyline, tracks an interest, or has a journal
    channel. Guilds whose storylines all completed stay eligible.
    """
    from utils.models import GuildInterest
    from utils.server_config import list_journal_guilds

    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(select(Storyline.guild_id).where(Storyline.guild_id.is_not(None)).distinct())
        gids = {int(g) for g in res.scalars().all()}
        res = await session.execute(select(GuildInterest.guild_id).distinct())
        gids.update(int(g) for g in res.scalars().all())
    gids.update(int(c.guild_id) for c in await list_journal_guilds())
    return sorted(gids)


async def advance_storylines_periodic_task(
    guild_id: int | None = None,
    *,
    bot=None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> SweepResult:
    """Complete overdue storylines, progress active ones and occasionally start a new one.

    ``guild_id=None`` sweeps every storyline.
    """
    rng = rng or random
    now = now or _now_utc()
    result = SweepResult()

    Session = get_sessionmaker()
    async with Session() as session:
        q = _scope(select(Storyline).where(Storyline.status == STATUS_IN_PROGRESS), guild_id)
        res = await session.execute(q)
        stories = [to_view(r) for r in res.scalars().all()]

    for story in stories:
        try:
            if story.end_date is not None and story.end_date < now:
                text = await with_fallback(
                    _completion_text(story), completion_fallback(story), what="storyline.completion"
                )
                updated = await _append_update(
                    story.id, text or completion_fallback(story), now=now, progress=1.0, status=STATUS_COMPLETED
                )
                if updated is not None:
                    result.completed += 1
                    logger.info("Completed storyline id=%s title=%s", story.id, story.title)
                    if await _journal(updated, text, bot):
                        result.journal_entries += 1
                continue

            last = _last_update_at(story)
            if last is not None and (now - last) < timedelta(days=UPDATE_MIN_DAYS):
                continue
            if rng.random() >= UPDATE_CHANCE:
                continue

            new_progress = min(story.progress + rng.uniform(0, MAX_STEP), PROGRESS_CAP)
            text = await with_fallback(
                _progress_text(story, new_progress), progress_fallback(story), what="storyline.progress"
            )
            updated = await _append_update(
                story.id, text or progress_fallback(story), now=now, progress=new_progress
            )
            if updated is None:
                continue
            result.updated += 1
            if is_significant(story.progress, new_progress) and await _journal(updated, text, bot):
                result.journal_entries += 1
        except Exception:
            logger.exception("Storyline sweep failed for id=%s", story.id)

    # A global sweep rolls once per known guild, including ones with no active storyline.
    if guild_id is not None:
        candidates = [int(guild_id)]
    else:
        try:
            candidates = await storyline_guilds()
        except Exception:
            logger.exception("Listing storyline guilds failed")
            candidates = sorted({s.guild_id for s in stories if s.guild_id is not None})
    for gid in candidates:
        if rng.random() >= NEW_STORYLINE_CHANCE:
            continue
        created = await create_new_storyline(gid, rng=rng, now=now)
        if created is not None:
            result.created += 1
            if await _journal(created, latest_update(created), bot):
                result.journal_entries += 1

    logger.info(
        "Storyline sweep guild=%s completed=%s updated=%s created=%s",
        guild_id, result.completed, result.updated, result.created,
    )
    return result


async def _new_storyline_idea(interest_names: list[str]) -> NewStorylineOut:
    liked = f"She's interested in: {', '.join(interest_names)}\n" if interest_names else ""
    prompt = (
        "Create a new mini-project, goal, or activity for Bri, a 14-year-old girl.\n"
        f"{liked}\n"
        "It should take 2-4 weeks, be realistic for a 14-year-old, and be educational, creative, "
        "or wholesome.\n\n"
        "Respond as JSON:\n"
        '{"event_key": "short_id_no_spaces", "title": "Activity Title", '
        '"description": "what Bri is trying to do", "initial_update": "Bri\'s excited first message"}'
    )
    return await generate_structured(prompt, NewStorylineOut, temperature=0.9, max_tokens=400)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9_]+", "_", text.strip().lower()).strip("_")[:64] or "storyline"


async def create_new_storyline(
    guild_id: int,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> StorylineView | None:
    """LLM-invented storyline drawn from the guild's top interests. None on degradation."""
    from utils.interests_store import get_guild_interests

    rng = rng or random
    now = now or _now_utc()
    top = await get_guild_interests(guild_id, limit=5)
    idea = await with_fallback(
        _new_storyline_idea([i.name for i in top]), None, what="storyline.create"
    )
    if idea is None:
        return None

    days = rng.randint(*NEW_STORYLINE_DAYS)
    first = idea.initial_update or f"Starting something new: {idea.title}!"
    row = Storyline(
        guild_id=int(guild_id),
        event_key=_slug(idea.event_key),
        title=idea.title,
        description=idea.description,
        status=STATUS_IN_PROGRESS,
        progress=NEW_STORYLINE_PROGRESS,
        start_date=now,
        end_date=now + timedelta(days=days),
        updates=_dumps([{"date": now.isoformat(), "content": first}]),
        share_threshold=NEW_STORYLINE_SHARE_THRESHOLD,
        related_interests=_dumps([i.name for i in top]),
        updated_at=now,
    )
    Session = get_sessionmaker()
    async with Session() as session:
        session.add(row)
        await session.commit()
        view = to_view(row)
    logger.info("Created storyline guild=%s key=%s title=%s", guild_id, view.event_key, view.title)
    return view


def default_storylines(now: datetime) -> list[dict[str, Any]]:
    return [
        {
            "event_key": "science_fair_project",
            "title": "Science Fair Project",
            "description": "Working on a science fair project about how plants grow in different conditions",
            "progress": 0.3,
            "start_date": now - timedelta(days=20),
            "end_date": now + timedelta(days=45),
            "share_threshold": 0.5,
            "updates": [
                {
                    "date": (now - timedelta(days=16)).isoformat(),
                    "content": "Started my science fair project today! I'm growing bean plants in different types of soil.",
                },
                {
                    "date": (now - timedelta(days=3)).isoformat(),
                    "content": "The plants in the sandy soil aren't growing very well, but the ones in the compost are huge!",
                },
            ],
        },
        {
            "event_key": "learning_chess",
            "title": "Learning Chess",
            "description": "Trying to learn how to play chess",
            "progress": 0.2,
            "start_date": now - timedelta(days=35),
            "end_date": None,
            "share_threshold": 0.4,
            "updates": [
                {
                    "date": (now - timedelta(days=35)).isoformat(),
                    "content": "My friend taught me how all the chess pieces move today! The knights are confusing.",
                },
            ],
        },
    ]


async def seed_default_storylines(guild_id: int) -> int:
    """Insert the starter storylines for a guild that has none. Returns rows added."""
    gid = int(guild_id)
    now = _now_utc()
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(select(Storyline.id).where(Storyline.guild_id == gid).limit(1))
        if res.scalar_one_or_none() is not None:
            return 0
        seeds = default_storylines(now)
        for s in seeds:
            session.add(
                Storyline(
                    guild_id=gid,
                    event_key=s["event_key"],
                    title=s["title"],
                    description=s["description"],
                    status=STATUS_IN_PROGRESS,
                    progress=s["progress"],
                    start_date=s["start_date"],
                    end_date=s["end_date"],
                    updates=_dumps(s["updates"]),
                    share_threshold=s["share_threshold"],
                    related_interests="[]",
                    updated_at=now,
                )
            )
        await session.commit()
    logger.info("Seeded %s default storylines guild=%s", len(seeds), gid)
    return len(seeds)
