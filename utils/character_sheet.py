# utils/character_sheet.py
"""
Bri's per-guild biography ("character sheet") and daily routine.

Stored documents carry a ``schema_version`` tag and are decoded through a
pydantic discriminated union. ``migrate_sheet`` is the only place that knows
how older versions map onto the current one; nothing inspects shapes at read
time.

  v1  legacy: friends/family/pets/hobbies may be bare strings
  v2  current: structured friends (closeness, last_mentioned), hobbies
      (enthusiasm, last_practiced) and a past_events archive
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from utils.db import get_sessionmaker
from utils.model_output import MalformedModelOutput, SheetExtractionOut, generate_structured, with_fallback
from utils.models import CharacterSheetRow, PendingInterest

logger = logging.getLogger("bot.character")

CURRENT_VERSION = 2
DECAY_AFTER_DAYS = 30
RECENT_EVENT_DAYS = 30
MAX_PAST_EVENTS = 50
SCHOOL_YEAR_START = (9, 1)  # month, day


class _Doc(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---- v2 (current) ----
class FamilyMember(_Doc):
    name: str
    relation: str = ""
    details: str = ""


class Friend(_Doc):
    name: str
    relationship: str = "friend"
    closeness: int = Field(default=3, ge=1, le=5)
    last_mentioned: Optional[str] = None  # YYYY-MM-DD
    last_decay: Optional[str] = None


class Pet(_Doc):
    name: str
    type: str = ""
    details: str = ""


class Hobby(_Doc):
    name: str
    details: str = ""
    enthusiasm: int = Field(default=3, ge=1, le=5)
    last_practiced: Optional[str] = None
    last_decay: Optional[str] = None


class SchoolInfo(_Doc):
    name: Optional[str] = None
    grade: Optional[int] = None
    favorite_subjects: list[str] = Field(default_factory=list)
    classes: list[dict[str, Any]] = Field(default_factory=list)
    teachers: list[dict[str, Any]] = Field(default_factory=list)


class LifeEvent(_Doc):
    name: str
    date: Optional[str] = None  # YYYY-MM-DD
    details: str = ""


class CharacterSheetV2(_Doc):
    schema_version: Literal[2] = 2
    name: str = "Bri"
    age: int = 14
    grade: int = 9
    birthday: str = "05-14"  # MM-DD
    family: list[FamilyMember] = Field(default_factory=list)
    friends: list[Friend] = Field(default_factory=list)
    pets: list[Pet] = Field(default_factory=list)
    hobbies: list[Hobby] = Field(default_factory=list)
    school: SchoolInfo = Field(default_factory=lambda: SchoolInfo(grade=9))
    upcoming_events: list[LifeEvent] = Field(default_factory=list)
    recent_events: list[LifeEvent] = Field(default_factory=list)
    past_events: list[LifeEvent] = Field(default_factory=list)


# ---- v1 (legacy) ----
class CharacterSheetV1(_Doc):
    schema_version: Literal[1] = 1
    name: str = "Bri"
    age: int = 14
    grade: Optional[int] = None
    birthday: Optional[str] = None
    family: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    friends: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    pets: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    hobbies: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    school: dict[str, Any] = Field(default_factory=dict)
    upcoming_events: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    recent_events: list[Union[str, dict[str, Any]]] = Field(default_factory=list)


AnySheet = Annotated[Union[CharacterSheetV1, CharacterSheetV2], Field(discriminator="schema_version")]
_SHEET_ADAPTER: TypeAdapter = TypeAdapter(AnySheet)


class Routine(_Doc):
    weekday: dict[str, str] = Field(default_factory=dict)
    weekend: dict[str, str] = Field(default_factory=dict)
    special_days: list[Any] = Field(default_factory=list)


DEFAULT_ROUTINE = Routine(
    weekday={
        "morning_routine": "Gets ready for school and has breakfast around 7 AM",
        "school_hours": "In school from 8 AM to 3 PM",
        "after_school": "Usually home by 3:30 PM, does homework and activities afterwards",
        "evening_routine": "Dinner around 6 PM, free time until 10 PM bedtime",
    },
    weekend={
        "morning_routine": "Sleeps in until around 9 AM on weekends",
        "daytime_activities": "Free time for hobbies and hanging out with friends",
        "evening_routine": "Similar to weekdays but with more flexibility",
    },
)


def default_sheet() -> CharacterSheetV2:
    return CharacterSheetV2()


# ----------------------------
# Migration
# ----------------------------
def _named(item: Union[str, dict[str, Any]], key: str = "name") -> dict[str, Any]:
    if isinstance(item, str):
        return {key: item}
    return dict(item)


def _camel_to_snake(d: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    out = dict(d)
    for old, new in mapping.items():
        if old in out and new not in out:
            out[new] = out.pop(old)
    return out


def _v1_to_v2(old: CharacterSheetV1) -> CharacterSheetV2:
    school = _camel_to_snake(old.school, {"favoriteSubjects": "favorite_subjects"})
    grade = old.grade or school.get("grade") or 9
    friends = []
    for f in old.friends:
        d = _camel_to_snake(_named(f), {"lastMentioned": "last_mentioned"})
        d.setdefault("relationship", d.pop("details", "friend") or "friend")
        friends.append(d)
    hobbies = [_camel_to_snake(_named(h), {"lastMentioned": "last_practiced"}) for h in old.hobbies]
    return CharacterSheetV2.model_validate(
        {
            "schema_version": 2,
            "name": old.name,
            "age": old.age,
            "grade": int(grade),
            "birthday": old.birthday or "05-14",
            "family": [_named(x) for x in old.family],
            "friends": friends,
            "pets": [_named(x) for x in old.pets],
            "hobbies": hobbies,
            "school": {**school, "grade": int(grade)},
            "upcoming_events": [_named(x) for x in old.upcoming_events],
            "recent_events": [_named(x) for x in old.recent_events],
            "past_events": [],
        }
    )


def migrate_sheet(raw: dict[str, Any] | None) -> CharacterSheetV2:
    """Decode a stored sheet of any version and upgrade it to the current schema.

    Rows written before the sheet was versioned have no tag and are read as v1.
    Raises pydantic.ValidationError for documents that fit no version.
    """
    if not raw:
        return default_sheet()
    doc = dict(raw)
    doc.setdefault("schema_version", 1)
    sheet = _SHEET_ADAPTER.validate_python(doc)
    if isinstance(sheet, CharacterSheetV1):
        return _v1_to_v2(sheet)
    return sheet


# ----------------------------
# Aging
# ----------------------------
def _parse_day(s: str | None) -> date | None:
    if not s:
        return None
    try:
        return date.fromisoformat(str(s)[:10])
    except ValueError:
        return None


def _is_birthday(sheet: CharacterSheetV2, today: date) -> bool:
    try:
        month, day = (int(p) for p in sheet.birthday.split("-")[-2:])
    except ValueError:
        return False
    return (today.month, today.day) == (month, day)


def _decay_due(last_seen: str | None, last_decay: str | None, today: date) -> bool:
    anchors = [d for d in (_parse_day(last_seen), _parse_day(last_decay)) if d is not None]
    if not anchors:
        return False
    return (today - max(anchors)).days >= DECAY_AFTER_DAYS


def age_character_sheet(sheet: CharacterSheetV2, today: date) -> list[str]:
    """Apply one day of aging to ``sheet`` in place. Returns human-readable changes."""
    changes: list[str] = []

    if _is_birthday(sheet, today):
        sheet.age += 1
        changes.append(f"Birthday! {sheet.name} is now {sheet.age}.")

    if (today.month, today.day) == SCHOOL_YEAR_START:
        sheet.grade += 1
        sheet.school.grade = sheet.grade
        changes.append(f"New school year: now in grade {sheet.grade}.")

    still_upcoming: list[LifeEvent] = []
    for ev in sheet.upcoming_events:
        when = _parse_day(ev.date)
        if when is not None and when < today:
            sheet.recent_events.append(ev)
            changes.append(f"Event happened: {ev.name}")
        else:
            still_upcoming.append(ev)
    sheet.upcoming_events = still_upcoming

    still_recent: list[LifeEvent] = []
    for ev in sheet.recent_events:
        when = _parse_day(ev.date)
        if when is not None and (today - when).days > RECENT_EVENT_DAYS:
            sheet.past_events.append(ev)
            changes.append(f"Archived event: {ev.name}")
        else:
            still_recent.append(ev)
    sheet.recent_events = still_recent
    if len(sheet.past_events) > MAX_PAST_EVENTS:
        sheet.past_events = sheet.past_events[-MAX_PAST_EVENTS:]

    for fr in sheet.friends:
        if fr.closeness > 1 and _decay_due(fr.last_mentioned, fr.last_decay, today):
            fr.closeness -= 1
            fr.last_decay = today.isoformat()
            changes.append(f"Drifting from {fr.name} (closeness {fr.closeness})")

    for hb in sheet.hobbies:
        if hb.enthusiasm > 1 and _decay_due(hb.last_practiced, hb.last_decay, today):
            hb.enthusiasm -= 1
            hb.last_decay = today.isoformat()
            changes.append(f"Less into {hb.name} lately (enthusiasm {hb.enthusiasm})")

    return changes


# ----------------------------
# Persistence
# ----------------------------
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(v: Any) -> str:
    return json.dumps(v, separators=(",", ":"), ensure_ascii=False)


def _load_routine(raw: str | None) -> Routine:
    try:
        data = json.loads(raw or "")
    except (TypeError, ValueError):
        data = None
    if not isinstance(data, dict) or not data:
        return DEFAULT_ROUTINE.model_copy(deep=True)
    try:
        return Routine.model_validate(
            _camel_to_snake(data, {"specialDays": "special_days"})
        )
    except ValidationError:
        logger.warning("Stored routine invalid; using default")
        return DEFAULT_ROUTINE.model_copy(deep=True)


async def get_character_sheet(guild_id: int) -> tuple[CharacterSheetV2, Routine]:
    """Load (creating or upgrading as needed) the guild's sheet and routine."""
    gid = int(guild_id)
    Session = get_sessionmaker()
    async with Session() as session:
        row = await session.get(CharacterSheetRow, gid)
        if row is None:
            sheet, routine = default_sheet(), DEFAULT_ROUTINE.model_copy(deep=True)
            session.add(
                CharacterSheetRow(
                    guild_id=gid,
                    schema_version=CURRENT_VERSION,
                    sheet=sheet.model_dump_json(),
                    routine=routine.model_dump_json(),
                    last_aged_on="",
                    updated_at=_now_utc(),
                )
            )
            await session.commit()
            return sheet, routine

        try:
            raw = json.loads(row.sheet or "{}")
        except ValueError:
            raw = {}
        if isinstance(raw, dict) and "schema_version" not in raw and row.schema_version:
            raw["schema_version"] = int(row.schema_version)
        try:
            sheet = migrate_sheet(raw if isinstance(raw, dict) else {})
        except ValidationError:
            logger.exception("Character sheet for guild %s is unreadable; resetting to default", gid)
            sheet = default_sheet()
        routine = _load_routine(row.routine)

        if int(row.schema_version or 1) != CURRENT_VERSION:
            row.schema_version = CURRENT_VERSION
            row.sheet = sheet.model_dump_json()
            row.updated_at = _now_utc()
            await session.commit()
            logger.info("Migrated character sheet guild=%s to v%s", gid, CURRENT_VERSION)
        return sheet, routine


async def save_character_sheet(
    guild_id: int,
    sheet: CharacterSheetV2,
    routine: Routine | None = None,
    *,
    aged_on: str | None = None,
) -> None:
    gid = int(guild_id)
    Session = get_sessionmaker()
    async with Session() as session:
        row = await session.get(CharacterSheetRow, gid)
        if row is None:
            row = CharacterSheetRow(guild_id=gid, last_aged_on="")
            session.add(row)
        row.schema_version = CURRENT_VERSION
        row.sheet = sheet.model_dump_json()
        if routine is not None:
            row.routine = routine.model_dump_json()
        elif not row.routine:
            row.routine = DEFAULT_ROUTINE.model_dump_json()
        if aged_on is not None:
            row.last_aged_on = aged_on
        row.updated_at = _now_utc()
        await session.commit()


def local_today(tz_name: str, now: datetime | None = None) -> date:
    try:
        tz = ZoneInfo(tz_name)
    except Exception:
        tz = ZoneInfo("America/New_York")
    return (now or _now_utc()).astimezone(tz).date()


async def run_character_aging(guild_id: int, tz_name: str, *, now: datetime | None = None) -> list[str]:
    """Age the guild's sheet at most once per local day."""
    gid = int(guild_id)
    today = local_today(tz_name, now)
    Session = get_sessionmaker()
    async with Session() as session:
        row = await session.get(CharacterSheetRow, gid)
        if row is not None and (row.last_aged_on or "") == today.isoformat():
            return []

    sheet, routine = await get_character_sheet(gid)
    changes = age_character_sheet(sheet, today)
    await save_character_sheet(gid, sheet, routine, aged_on=today.isoformat())
    if changes:
        logger.info("Character aging guild=%s: %s", gid, "; ".join(changes))
    return changes


# ----------------------------
# Extraction from journal entries
# ----------------------------
_EXTRACT_SYSTEM = (
    "You analyze a 14-year-old girl's journal entries and keep her character profile consistent. "
    "You add new details while preserving everything already known."
)


async def _extract(entry_title: str, entry_content: str, sheet: CharacterSheetV2, routine: Routine):
    prompt = (
        "Update this character sheet and routine with anything new in the journal entry.\n"
        "Look for family, friends, pets, school details, hobbies, upcoming plans, significant recent "
        "events and routine changes. Dates use YYYY-MM-DD.\n\n"
        f"CURRENT CHARACTER SHEET:\n{sheet.model_dump_json(indent=2)}\n\n"
        f"CURRENT ROUTINE:\n{routine.model_dump_json(indent=2)}\n\n"
        f"JOURNAL ENTRY:\nTITLE: {entry_title}\nCONTENT: {entry_content}\n\n"
        "Respond as JSON:\n"
        '{"updated_sheet": {full sheet, same structure}, "updated_routine": {full routine}, '
        '"rationale": "what changed", "new_interests": [{"name": "...", "description": "..."}]}\n'
        "Keep ALL existing information. new_interests lists hobbies or topics she just got into."
    )
    out = await generate_structured(prompt, SheetExtractionOut, system=_EXTRACT_SYSTEM, temperature=0.2, max_tokens=3000)
    try:
        new_sheet = CharacterSheetV2.model_validate({**out.updated_sheet, "schema_version": CURRENT_VERSION})
        new_routine = Routine.model_validate(out.updated_routine) if out.updated_routine else routine
    except ValidationError as e:
        raise MalformedModelOutput("CharacterSheetV2", json.dumps(out.updated_sheet)[:300], f"{e.error_count()} validation error(s)") from e
    return new_sheet, new_routine, out


async def extract_updates_from_journal(guild_id: int, title: str, content: str) -> bool:
    """Fold a new journal entry back into the sheet. Returns True if the sheet changed."""
    gid = int(guild_id)
    sheet, routine = await get_character_sheet(gid)
    result = await with_fallback(_extract(title, content, sheet, routine), None, what="character.extraction")
    if result is None:
        return False

    new_sheet, new_routine, out = result
    # Aging counters are owned by the daily job, not the model.
    new_sheet.age, new_sheet.grade, new_sheet.birthday = sheet.age, sheet.grade, sheet.birthday
    await save_character_sheet(gid, new_sheet, new_routine)
    if out.rationale:
        logger.info("Character sheet updated guild=%s: %s", gid, out.rationale[:200])

    if out.new_interests:
        Session = get_sessionmaker()
        async with Session() as session:
            for it in out.new_interests:
                session.add(
                    PendingInterest(
                        guild_id=gid,
                        name=it.name.strip().lower(),
                        description=it.description,
                        processed=False,
                        created_at=_now_utc(),
                    )
                )
            await session.commit()
        logger.info("Queued %s pending interests guild=%s", len(out.new_interests), gid)
    return True
