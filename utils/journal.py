# utils/journal.py
from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

import discord
from sqlalchemy import select, update

import config
from utils.ai_client import embed_text
from utils.db import get_sessionmaker
from utils.model_output import JournalOut, generate_structured, with_fallback
from utils.models import JournalEntry, PendingInterest, as_utc

logger = logging.getLogger("bot.journal")

ENTRY_STORYLINE_UPDATE = "storyline_update"
ENTRY_NEW_INTEREST = "new_interest"
ENTRY_INTEREST_UPDATE = "interest_update"
ENTRY_DAILY_THOUGHT = "daily_thought"
ENTRY_FUTURE_PLAN = "future_plan"

ENTRY_TYPES = (
    ENTRY_STORYLINE_UPDATE,
    ENTRY_NEW_INTEREST,
    ENTRY_INTEREST_UPDATE,
    ENTRY_DAILY_THOUGHT,
    ENTRY_FUTURE_PLAN,
)

FUTURE_PLAN_CHANCE = 0.30
REFERENCE_INTEREST_CHANCE = 0.70
REFERENCE_STORYLINE_CHANCE = 0.50
RECENT_CONTEXT_ENTRIES = 3
MAX_DISCORD_CHARS = 2000

MOODS = ("excited", "happy", "thoughtful", "curious", "calm", "hopeful", "busy")

RANDOM_TOPICS = (
    "something funny that happened at school",
    "a conversation with a friend",
    "a new song she can't stop listening to",
    "a show she's been watching",
    "a dream she had last night",
    "something she's looking forward to",
    "a random thought about the future",
    "the weather and how it made her feel",
)

HOLIDAYS = {(1, 1), (7, 4), (12, 25), (12, 31)}

JOURNAL_SYSTEM = (
    "You are a creative writer specialized in authentic teen journal writing. "
    "You write as Bri, a curious, upbeat 14-year-old girl. Entries are casual, personal and "
    "one to three short paragraphs. Answer only with the JSON object requested."
)


# ----------------------------
# Time-of-day context
# ----------------------------
@dataclass(frozen=True)
class TimeContext:
    local_time: datetime
    period: str  # morning | afternoon | evening | night
    is_weekend: bool
    is_holiday: bool
    activity: str

    @property
    def is_school_day(self) -> bool:
        return not self.is_weekend and not self.is_holiday

    def describe(self) -> str:
        day = self.local_time.strftime("%A, %B %d")
        kind = "holiday" if self.is_holiday else ("weekend" if self.is_weekend else "school day")
        return f"It's {self.period} on {day} ({kind}); Bri is probably {self.activity}."


def _zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or config.DEFAULT_TIMEZONE)
    except Exception:
        logger.warning("Unknown timezone %r; using %s", tz_name, config.DEFAULT_TIMEZONE)
        return ZoneInfo(config.DEFAULT_TIMEZONE)


def _period(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "night"


def time_context(tz_name: str | None = None, now: datetime | None = None) -> TimeContext:
    local = (now or datetime.now(timezone.utc)).astimezone(_zone(tz_name))
    hour = local.hour
    weekend = local.weekday() >= 5
    holiday = (local.month, local.day) in HOLIDAYS

    if weekend or holiday:
        if hour < 10:
            activity = "enjoying a slow weekend morning"
        elif hour < 18:
            activity = "out with friends or doing hobbies"
        else:
            activity = "relaxing on a weekend evening"
    elif 5 <= hour < 8:
        activity = "getting ready for school"
    elif 8 <= hour < 15:
        activity = "at school"
    elif 15 <= hour < 17:
        activity = "just back from school"
    else:
        activity = "at home for the evening"

    return TimeContext(
        local_time=local,
        period=_period(hour),
        is_weekend=weekend,
        is_holiday=holiday,
        activity=activity,
    )


# ----------------------------
# Entries
# ----------------------------
@dataclass(frozen=True)
class JournalEntryView:
    id: int
    guild_id: int
    entry_type: str
    title: str
    content: str
    created_at: datetime | None
    related_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    posted_message_id: int | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(v: Any) -> str:
    return json.dumps(v, separators=(",", ":"), ensure_ascii=False)


def _view(row: JournalEntry) -> JournalEntryView:
    try:
        meta = json.loads(row.metadata_json or "{}")
    except ValueError:
        meta = {}
    return JournalEntryView(
        id=int(row.id),
        guild_id=int(row.guild_id),
        entry_type=row.entry_type or ENTRY_DAILY_THOUGHT,
        title=row.title or "",
        content=row.content or "",
        created_at=as_utc(row.created_at),
        related_id=row.related_id,
        metadata=meta if isinstance(meta, dict) else {},
        posted_message_id=int(row.posted_message_id) if row.posted_message_id else None,
    )


async def create_journal_entry(
    guild_id: int,
    entry_type: str,
    title: str,
    content: str,
    *,
    related_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> JournalEntryView:
    """Store an entry. The embedding is best-effort; an entry without one is still kept."""
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"Unknown journal entry type: {entry_type}")

    vec = await with_fallback(embed_text(f"{title}\n{content}"), None, what="journal.embedding")

    Session = get_sessionmaker()
    async with Session() as session:
        row = JournalEntry(
            guild_id=int(guild_id),
            entry_type=entry_type,
            title=title.strip()[:256],
            content=content.strip(),
            related_id=related_id,
            metadata_json=_dumps(metadata or {}),
            embedding=_dumps(vec) if vec else "",
            created_at=_now_utc(),
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
        view = _view(row)

    logger.info("Journal entry stored guild=%s id=%s type=%s", guild_id, view.id, entry_type)
    return view


async def recent_entries(guild_id: int, limit: int = RECENT_CONTEXT_ENTRIES) -> list[JournalEntryView]:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(JournalEntry)
            .where(JournalEntry.guild_id == int(guild_id))
            .order_by(JournalEntry.created_at.desc(), JournalEntry.id.desc())
            .limit(max(1, int(limit)))
        )
        return [_view(r) for r in res.scalars().all()]


def format_journal_message(entry: JournalEntryView, *, tz_name: str | None = None) -> str:
    when = entry.created_at or _now_utc()
    day = when.astimezone(_zone(tz_name)).strftime("%A, %B %d, %Y")
    text = f"## 📔 {entry.title}\n*{day}*\n\n{entry.content}"
    if len(text) > MAX_DISCORD_CHARS:
        text = text[: MAX_DISCORD_CHARS - 1] + "…"
    return text


async def post_journal_entry(bot, guild_id: int, entry: JournalEntryView) -> Optional[int]:
    """Post to the guild's journal channel. Returns the message id, or None if not posted."""
    from utils.server_config import get_server_config

    services = getattr(bot, "services", None)
    cfg = await get_server_config(guild_id, cache=getattr(services, "config_cache", None))
    if not cfg.journal_channel_id:
        logger.info("No journal channel for guild=%s; entry %s stored only", guild_id, entry.id)
        return None

    channel = bot.get_channel(int(cfg.journal_channel_id))
    if channel is None:
        try:
            channel = await bot.fetch_channel(int(cfg.journal_channel_id))
        except (discord.NotFound, discord.Forbidden, discord.HTTPException):
            logger.warning("Journal channel %s unavailable guild=%s", cfg.journal_channel_id, guild_id)
            return None

    try:
        msg = await channel.send(format_journal_message(entry, tz_name=cfg.timezone))
    except (discord.Forbidden, discord.HTTPException):
        logger.warning("Posting journal entry %s failed guild=%s", entry.id, guild_id, exc_info=True)
        return None

    Session = get_sessionmaker()
    async with Session() as session:
        await session.execute(
            update(JournalEntry).where(JournalEntry.id == entry.id).values(posted_message_id=int(msg.id))
        )
        await session.commit()
    return int(msg.id)


async def _context_block(guild_id: int, tz_name: str | None) -> str:
    from utils.character_sheet import get_character_sheet

    sheet, routine = await get_character_sheet(guild_id)
    recent = await recent_entries(guild_id)
    ctx = time_context(tz_name)
    recent_txt = "\n".join(f"- {e.title}: {e.content[:160]}" for e in recent) or "- (none yet)"
    return (
        f"CHARACTER SHEET:\n{sheet.model_dump_json(exclude={'past_events'})}\n\n"
        f"ROUTINE:\n{routine.model_dump_json()}\n\n"
        f"TIME: {ctx.describe()}\n\n"
        f"RECENT ENTRIES:\n{recent_txt}"
    )


async def _write(prompt: str, guild_id: int, tz_name: str | None) -> JournalOut:
    context = await _context_block(guild_id, tz_name)
    full = (
        f"{context}\n\n{prompt}\n\n"
        "Stay consistent with the character sheet and recent entries.\n"
        'Respond as JSON: {"title": "...", "content": "...", "mood": "...", '
        '"referenced_interests": [], "referenced_storylines": []}'
    )
    return await generate_structured(full, JournalOut, system=JOURNAL_SYSTEM, temperature=0.8, max_tokens=700)


async def _finish(
    bot,
    guild_id: int,
    entry_type: str,
    title: str,
    content: str,
    *,
    generated: bool,
    related_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> JournalEntryView:
    entry = await create_journal_entry(
        guild_id, entry_type, title, content, related_id=related_id, metadata=metadata
    )
    if bot is not None:
        await post_journal_entry(bot, guild_id, entry)
    if generated:
        from utils.character_sheet import extract_updates_from_journal

        await extract_updates_from_journal(guild_id, entry.title, entry.content)
    return entry


async def _guild_tz(guild_id: int, bot=None) -> str:
    from utils.server_config import get_server_config

    services = getattr(bot, "services", None)
    cfg = await get_server_config(guild_id, cache=getattr(services, "config_cache", None))
    return cfg.timezone


# ----------------------------
# Generators
# ----------------------------
def storyline_fallback(title: str, update_text: str, progress: float) -> tuple[str, str]:
    pct = int(round(float(progress) * 100))
    return (
        f"Update on my {title}",
        f"I made some progress on my {title} today! {update_text} "
        f"I'm about {pct}% done with it. I'll keep working on it!",
    )


def interest_fallback(name: str, description: str, *, is_new: bool) -> tuple[str, str]:
    label = name.title()
    if is_new:
        return (
            f"I'm Totally Into {label} Now!",
            f"So I've gotten really into {name} lately. {description} "
            "I can't stop thinking about it and I want to learn everything!",
        )
    return (
        f"More About My {label} Obsession",
        f"I keep finding out more about {name}. {description} It's honestly so cool.",
    )


RANDOM_FALLBACK = (
    "Just Another Day",
    "Today was pretty normal. Did some homework, talked with friends, and just chilled out. "
    "Nothing too exciting, but it was nice. Maybe tomorrow will be more interesting!",
)


async def create_storyline_journal_entry(guild_id: int, story, update_text: str, *, bot=None) -> JournalEntryView:
    tz_name = await _guild_tz(guild_id, bot)
    completed = getattr(story, "status", "") == "completed"
    prompt = (
        f'Write a journal entry about the storyline "{story.title}" ({story.description}).\n'
        f"Latest update: {update_text}\n"
        f"Progress: {int(round(story.progress * 100))}%"
        + (" and it's finished!" if completed else ".")
    )
    out = await with_fallback(_write(prompt, guild_id, tz_name), None, what="journal.storyline")
    if out is None:
        title, content = storyline_fallback(story.title, update_text, story.progress)
    else:
        title, content = out.title, out.content
    return await _finish(
        bot,
        guild_id,
        ENTRY_STORYLINE_UPDATE,
        title,
        content,
        generated=out is not None,
        related_id=str(story.id),
        metadata={"progress": story.progress, "status": getattr(story, "status", "")},
    )


async def create_interest_journal_entry(
    guild_id: int,
    name: str,
    description: str = "",
    *,
    is_new: bool,
    bot=None,
) -> JournalEntryView:
    tz_name = await _guild_tz(guild_id, bot)
    if is_new:
        prompt = f'Write a journal entry about how Bri just got into "{name}". {description}'
    else:
        prompt = f'Write a journal entry about something new Bri learned or did with "{name}". {description}'
    out = await with_fallback(_write(prompt, guild_id, tz_name), None, what="journal.interest")
    title, content = (out.title, out.content) if out else interest_fallback(name, description, is_new=is_new)
    return await _finish(
        bot,
        guild_id,
        ENTRY_NEW_INTEREST if is_new else ENTRY_INTEREST_UPDATE,
        title,
        content,
        generated=out is not None,
        related_id=name,
    )


async def create_random_journal_entry(
    guild_id: int,
    *,
    bot=None,
    entry_type: str | None = None,
    rng: random.Random | None = None,
    slot: str | None = None,
) -> JournalEntryView:
    """A daily thought or future plan, optionally weaving in an interest or storyline."""
    from utils.interests_store import get_guild_interests
    from utils.storylines import recent_in_progress

    rng = rng or random
    if entry_type is None:
        entry_type = ENTRY_FUTURE_PLAN if rng.random() < FUTURE_PLAN_CHANCE else ENTRY_DAILY_THOUGHT
    mood = rng.choice(MOODS)
    tz_name = await _guild_tz(guild_id, bot)

    hints: list[str] = []
    meta: dict[str, Any] = {"mood": mood}
    if slot:
        meta["slot"] = slot
    if rng.random() < REFERENCE_INTEREST_CHANCE:
        interests = await get_guild_interests(guild_id, limit=5)
        if interests:
            it = rng.choice(interests)
            hints.append(f'Mention her interest in "{it.name}" naturally.')
            meta["interest"] = it.name
    if rng.random() < REFERENCE_STORYLINE_CHANCE:
        stories = await recent_in_progress(guild_id)
        if stories:
            st = rng.choice(stories)
            hints.append(f'Mention how "{st.title}" is going ({int(st.progress * 100)}% done).')
            meta["storyline"] = st.title

    if entry_type == ENTRY_FUTURE_PLAN:
        ask = "Write a journal entry about something Bri is planning or looking forward to."
    else:
        ask = f"Write a journal entry about {rng.choice(RANDOM_TOPICS)}."
    prompt = f"{ask} Her mood is {mood}.\n" + "\n".join(hints)

    out = await with_fallback(_write(prompt, guild_id, tz_name), None, what="journal.random")
    title, content = (out.title, out.content) if out else RANDOM_FALLBACK
    return await _finish(bot, guild_id, entry_type, title, content, generated=out is not None, metadata=meta)


async def create_manual_journal_entry(guild_id: int, title: str, content: str, *, bot=None) -> JournalEntryView:
    return await _finish(bot, guild_id, ENTRY_DAILY_THOUGHT, title, content, generated=True, metadata={"manual": True})


# ----------------------------
# Daily interest journal
# ----------------------------
async def process_pending_interests(guild_id: int, *, bot=None) -> JournalEntryView | None:
    """Turn the oldest pending interest into a journal entry. Returns None when none are queued."""
    from utils.interests_store import stage_potential_interest

    gid = int(guild_id)
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(PendingInterest)
            .where(PendingInterest.guild_id == gid)
            .where(PendingInterest.processed.is_(False))
            .order_by(PendingInterest.created_at.asc(), PendingInterest.id.asc())
            .with_for_update()
            .limit(1)
        )
        pending = res.scalar_one_or_none()
        if pending is None:
            return None
        name, description = pending.name, pending.description or ""
        pending.processed = True
        await session.commit()

    # Self-discovered interests promote on the spot; known ones level up.
    promoted = await stage_potential_interest(
        gid, 0, {"name": name, "description": description}, enthusiasm=1.0, journal=False
    )
    return await create_interest_journal_entry(gid, name, description, is_new=promoted, bot=bot)
