# utils/schedule_store.py
"""
Persisted job schedule (``scheduled_jobs``).

Each row is one recurring job: a kind, a guild (0 for global jobs), a slot
name and the next due time. ``utils/scheduler_loop.py`` claims due rows with a
conditional UPDATE, runs them and hands them back here to be rescheduled.
A cancelled or deleted row is never rescheduled.
"""
from __future__ import annotations

import logging
import os
import random
import socket
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select, update

import config
from utils.db import get_sessionmaker
from utils.models import ScheduledJob, as_utc

logger = logging.getLogger("bot.scheduler")

KIND_JOURNAL = "journal"
KIND_INTEREST_JOURNAL = "daily_interest_journal"
KIND_CHARACTER_AGING = "character_aging"
KIND_CREDIT_REFRESH = "credit_refresh"
KIND_STORYLINE_SWEEP = "storyline_sweep"

GLOBAL_GUILD_ID = 0

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_CANCELLED = "cancelled"

JOURNAL_SLOTS = ("morning", "lunch", "evening", "bonus")
BONUS_CHANCE = 0.30

# kind -> slots created per guild
GUILD_JOBS: dict[str, tuple[str, ...]] = {
    KIND_JOURNAL: JOURNAL_SLOTS,
    KIND_INTEREST_JOURNAL: ("daily",),
    KIND_CHARACTER_AGING: ("daily",),
}

GLOBAL_INTERVALS: dict[str, timedelta] = {
    KIND_CREDIT_REFRESH: timedelta(hours=6),
    KIND_STORYLINE_SWEEP: timedelta(hours=6),
}

FAILURE_BACKOFF: dict[str, timedelta] = {
    KIND_JOURNAL: timedelta(minutes=30),
    KIND_INTEREST_JOURNAL: timedelta(minutes=60),
}
DEFAULT_BACKOFF = timedelta(minutes=30)

STALE_LOCK = timedelta(minutes=15)
MAX_ERROR_CHARS = 500

PROCESS_ID = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class JobView:
    id: int
    kind: str
    guild_id: int
    slot: str
    due_at: datetime | None
    status: str
    attempts: int
    last_error: str = ""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _view(row: ScheduledJob) -> JobView:
    return JobView(
        id=int(row.id),
        kind=row.kind,
        guild_id=int(row.guild_id or 0),
        slot=row.slot or "",
        due_at=as_utc(row.due_at),
        status=row.status or STATUS_PENDING,
        attempts=int(row.attempts or 0),
        last_error=row.last_error or "",
    )


def _zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or config.DEFAULT_TIMEZONE)
    except Exception:
        return ZoneInfo(config.DEFAULT_TIMEZONE)


# ----------------------------
# Due-time computation
# ----------------------------
def slot_time(kind: str, slot: str, rng: random.Random | None = None) -> time:
    """Local wall-clock time for one occurrence of a daily job."""
    rng = rng or random
    if kind == KIND_CHARACTER_AGING:
        return time(0, 5)
    if kind == KIND_INTEREST_JOURNAL:
        return time(18, rng.randint(0, 59))
    if slot == "morning":
        return time(7, rng.randint(0, 29))
    if slot == "lunch":
        minutes = 11 * 60 + 30 + rng.randint(0, 59)
        return time(minutes // 60, minutes % 60)
    if slot == "evening":
        minutes = 17 * 60 + rng.randint(0, 179)
        return time(minutes // 60, minutes % 60)
    if slot == "bonus":
        if rng.random() < 0.70:
            return time(rng.randint(13, 16), rng.randint(0, 59))
        return time(rng.randint(21, 22), rng.randint(0, 59))
    raise ValueError(f"Unknown schedule slot {kind}/{slot}")


def next_due(
    kind: str,
    slot: str,
    *,
    tz_name: str | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
    allow_today: bool = True,
) -> datetime:
    """Next due time in UTC.

    Daily jobs land on today's slot if it is still ahead (and ``allow_today``),
    otherwise on tomorrow's. Global jobs repeat on a fixed interval.
    """
    now = now or _now_utc()
    if kind in GLOBAL_INTERVALS:
        return now + GLOBAL_INTERVALS[kind]

    zone = _zone(tz_name)
    local_today: date = now.astimezone(zone).date()
    at = slot_time(kind, slot, rng)
    candidate = datetime.combine(local_today, at, tzinfo=zone)
    if not allow_today or candidate <= now:
        candidate = datetime.combine(local_today + timedelta(days=1), at, tzinfo=zone)
    return candidate.astimezone(timezone.utc)


# ----------------------------
# Row management
# ----------------------------
async def _upsert(session, kind: str, guild_id: int, slot: str, due: datetime) -> bool:
    res = await session.execute(
        select(ScheduledJob)
        .where(ScheduledJob.kind == kind)
        .where(ScheduledJob.guild_id == int(guild_id))
        .where(ScheduledJob.slot == slot)
        .limit(1)
    )
    row = res.scalar_one_or_none()
    if row is None:
        session.add(
            ScheduledJob(
                kind=kind,
                guild_id=int(guild_id),
                slot=slot,
                due_at=due,
                status=STATUS_PENDING,
                attempts=0,
                last_error="",
                locked_by="",
                updated_at=_now_utc(),
            )
        )
        return True
    if row.status == STATUS_CANCELLED:
        row.status = STATUS_PENDING
        row.due_at = due
        row.attempts = 0
        row.last_error = ""
        row.locked_by = ""
        row.locked_at = None
        row.updated_at = _now_utc()
        return True
    return False


async def ensure_guild_jobs(
    guild_id: int,
    tz_name: str | None = None,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> int:
    """Create (or re-enable) the guild's journal, interest and aging jobs. Returns rows touched."""
    now = now or _now_utc()
    touched = 0
    Session = get_sessionmaker()
    async with Session() as session:
        for kind, slots in GUILD_JOBS.items():
            for slot in slots:
                due = next_due(kind, slot, tz_name=tz_name, now=now, rng=rng)
                if await _upsert(session, kind, guild_id, slot, due):
                    touched += 1
        await session.commit()
    if touched:
        logger.info("Scheduled %s jobs for guild=%s tz=%s", touched, guild_id, tz_name)
    return touched


async def ensure_global_jobs(*, now: datetime | None = None) -> int:
    now = now or _now_utc()
    touched = 0
    Session = get_sessionmaker()
    async with Session() as session:
        for kind in GLOBAL_INTERVALS:
            # First run shortly after startup, then on the interval.
            if await _upsert(session, kind, GLOBAL_GUILD_ID, "", now + timedelta(minutes=1)):
                touched += 1
        await session.commit()
    return touched


async def cancel_guild_jobs(guild_id: int) -> int:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            update(ScheduledJob)
            .where(ScheduledJob.guild_id == int(guild_id))
            .where(ScheduledJob.status != STATUS_CANCELLED)
            .values(status=STATUS_CANCELLED, locked_by="", locked_at=None, updated_at=_now_utc())
        )
        await session.commit()
        n = int(res.rowcount or 0)
    logger.info("Cancelled %s jobs for guild=%s", n, guild_id)
    return n


async def list_guild_jobs(guild_id: int) -> list[JobView]:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(ScheduledJob)
            .where(ScheduledJob.guild_id == int(guild_id))
            .order_by(ScheduledJob.due_at.asc())
        )
        return [_view(r) for r in res.scalars().all()]


# ----------------------------
# Claiming
# ----------------------------
async def reclaim_stale_jobs(*, now: datetime | None = None) -> int:
    """Return rows stuck in running (crashed worker) to pending."""
    now = now or _now_utc()
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            update(ScheduledJob)
            .where(ScheduledJob.status == STATUS_RUNNING)
            .where(ScheduledJob.locked_at < now - STALE_LOCK)
            .values(status=STATUS_PENDING, locked_by="", locked_at=None, updated_at=now)
        )
        await session.commit()
        n = int(res.rowcount or 0)
    if n:
        logger.warning("Reclaimed %s stale scheduled jobs", n)
    return n


async def claim_due_jobs(
    *,
    now: datetime | None = None,
    limit: int = 20,
    worker: str = PROCESS_ID,
) -> list[JobView]:
    """Atomically move due rows from pending to running for this worker."""
    now = now or _now_utc()
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(ScheduledJob.id)
            .where(ScheduledJob.status == STATUS_PENDING)
            .where(ScheduledJob.due_at <= now)
            .order_by(ScheduledJob.due_at.asc())
            .limit(max(1, int(limit)))
        )
        candidates = [int(x) for x in res.scalars().all()]

        claimed_ids: list[int] = []
        for job_id in candidates:
            upd = await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id)
                .where(ScheduledJob.status == STATUS_PENDING)
                .values(
                    status=STATUS_RUNNING,
                    locked_by=worker,
                    locked_at=now,
                    attempts=ScheduledJob.attempts + 1,
                    updated_at=now,
                )
            )
            if upd.rowcount == 1:
                claimed_ids.append(job_id)
        await session.commit()

        if not claimed_ids:
            return []
        res = await session.execute(select(ScheduledJob).where(ScheduledJob.id.in_(claimed_ids)))
        rows = sorted(res.scalars().all(), key=lambda r: claimed_ids.index(int(r.id)))
        return [_view(r) for r in rows]


async def _running_row(session, job_id: int) -> ScheduledJob | None:
    res = await session.execute(
        select(ScheduledJob).where(ScheduledJob.id == int(job_id)).with_for_update().limit(1)
    )
    row = res.scalar_one_or_none()
    if row is None or row.status != STATUS_RUNNING:
        return None
    return row


async def complete_job(
    job_id: int,
    *,
    tz_name: str | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> datetime | None:
    """Reschedule a finished row. Returns the next due time, or None if the row was cancelled or removed."""
    now = now or _now_utc()
    Session = get_sessionmaker()
    async with Session() as session:
        row = await _running_row(session, job_id)
        if row is None:
            await session.rollback()
            return None
        due = next_due(row.kind, row.slot or "", tz_name=tz_name, now=now, rng=rng, allow_today=False)
        row.status = STATUS_PENDING
        row.due_at = due
        row.attempts = 0
        row.last_error = ""
        row.locked_by = ""
        row.locked_at = None
        row.updated_at = now
        await session.commit()
        return due


async def fail_job(job_id: int, error: str, *, now: datetime | None = None) -> datetime | None:
    """Put a failed row back to pending after the kind's backoff."""
    now = now or _now_utc()
    Session = get_sessionmaker()
    async with Session() as session:
        row = await _running_row(session, job_id)
        if row is None:
            await session.rollback()
            return None
        due = now + FAILURE_BACKOFF.get(row.kind, DEFAULT_BACKOFF)
        row.status = STATUS_PENDING
        row.due_at = due
        row.last_error = (error or "")[:MAX_ERROR_CHARS]
        row.locked_by = ""
        row.locked_at = None
        row.updated_at = now
        await session.commit()
        return due
