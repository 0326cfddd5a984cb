"""Tests for the persisted job schedule and the loop that runs it."""
from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from core.services import BotServices
from utils import schedule_store as store
from utils import scheduler_loop as loop

NY = "America/New_York"
# 06:00 in New York (EDT)
EARLY = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)
# 11:00 in New York
LATE = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)


class HighRng(random.Random):
    def random(self):
        return 0.99


def _bot():
    bot = MagicMock()
    bot.services = BotServices()
    return bot


class TestNextDue:

    def test_morning_slot_today_when_still_ahead(self):
        due = store.next_due(store.KIND_JOURNAL, "morning", tz_name=NY, now=EARLY, rng=random.Random(1))
        local = due.astimezone(ZoneInfo(NY))
        assert local.date() == EARLY.astimezone(ZoneInfo(NY)).date()
        assert local.hour == 7 and local.minute < 30
        assert due.tzinfo is timezone.utc

    def test_morning_slot_tomorrow_when_passed(self):
        due = store.next_due(store.KIND_JOURNAL, "morning", tz_name=NY, now=LATE, rng=random.Random(1))
        local = due.astimezone(ZoneInfo(NY))
        assert local.day == 19
        assert local.hour == 7

    def test_allow_today_false_always_tomorrow(self):
        due = store.next_due(
            store.KIND_JOURNAL, "evening", tz_name=NY, now=EARLY, rng=random.Random(2), allow_today=False
        )
        assert due.astimezone(ZoneInfo(NY)).day == 19

    def test_aging_runs_just_after_midnight(self):
        due = store.next_due(store.KIND_CHARACTER_AGING, "daily", tz_name="Asia/Tokyo", now=EARLY)
        local = due.astimezone(ZoneInfo("Asia/Tokyo"))
        assert (local.hour, local.minute) == (0, 5)
        assert due > EARLY

    def test_evening_window(self):
        rng = random.Random(7)
        for _ in range(30):
            t = store.slot_time(store.KIND_JOURNAL, "evening", rng)
            assert 17 <= t.hour <= 19

    def test_global_jobs_use_interval(self):
        assert store.next_due(store.KIND_CREDIT_REFRESH, "", now=EARLY) == EARLY + timedelta(hours=6)

    def test_unknown_timezone_falls_back(self):
        due = store.next_due(store.KIND_CHARACTER_AGING, "daily", tz_name="Mars/Olympus", now=EARLY)
        assert due > EARLY

    def test_unknown_slot_raises(self):
        with pytest.raises(ValueError):
            store.slot_time(store.KIND_JOURNAL, "midnight")


class TestRows:

    @pytest.mark.asyncio
    async def test_ensure_guild_jobs_is_idempotent(self, db):
        assert await store.ensure_guild_jobs(1, NY, now=EARLY) == 6
        assert await store.ensure_guild_jobs(1, NY, now=EARLY) == 0

        jobs = await store.list_guild_jobs(1)
        assert sorted((j.kind, j.slot) for j in jobs) == sorted(
            [(store.KIND_JOURNAL, s) for s in store.JOURNAL_SLOTS]
            + [(store.KIND_INTEREST_JOURNAL, "daily"), (store.KIND_CHARACTER_AGING, "daily")]
        )
        assert all(j.status == store.STATUS_PENDING for j in jobs)

    @pytest.mark.asyncio
    async def test_cancel_then_reenable(self, db):
        await store.ensure_guild_jobs(2, NY, now=EARLY)
        assert await store.cancel_guild_jobs(2) == 6
        assert {j.status for j in await store.list_guild_jobs(2)} == {store.STATUS_CANCELLED}

        assert await store.ensure_guild_jobs(2, NY, now=EARLY) == 6
        assert {j.status for j in await store.list_guild_jobs(2)} == {store.STATUS_PENDING}

    @pytest.mark.asyncio
    async def test_global_jobs(self, db):
        assert await store.ensure_global_jobs(now=EARLY) == 2
        assert await store.ensure_global_jobs(now=EARLY) == 0
        jobs = await store.list_guild_jobs(store.GLOBAL_GUILD_ID)
        assert all(j.due_at == EARLY + timedelta(minutes=1) for j in jobs)


class TestClaiming:

    @pytest.mark.asyncio
    async def test_claim_then_complete_reschedules_to_later_day(self, db):
        await store.ensure_guild_jobs(3, NY, now=EARLY)
        later = EARLY + timedelta(days=2)

        claimed = await store.claim_due_jobs(now=later, worker="w1")
        assert len(claimed) == 6
        assert all(j.status == store.STATUS_RUNNING and j.attempts == 1 for j in claimed)
        assert await store.claim_due_jobs(now=later, worker="w2") == []

        morning = next(j for j in claimed if j.slot == "morning")
        due = await store.complete_job(morning.id, tz_name=NY, now=later, rng=random.Random(4))
        assert due is not None and due > later
        assert due.astimezone(ZoneInfo(NY)).date() > later.astimezone(ZoneInfo(NY)).date()

        job = next(j for j in await store.list_guild_jobs(3) if j.id == morning.id)
        assert job.status == store.STATUS_PENDING
        assert job.attempts == 0

    @pytest.mark.asyncio
    async def test_nothing_due_yet(self, db):
        await store.ensure_guild_jobs(4, NY, now=EARLY)
        assert await store.claim_due_jobs(now=EARLY - timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_cancelled_while_running_is_not_rescheduled(self, db):
        await store.ensure_guild_jobs(5, NY, now=EARLY)
        claimed = await store.claim_due_jobs(now=EARLY + timedelta(days=2))
        await store.cancel_guild_jobs(5)

        assert await store.complete_job(claimed[0].id, tz_name=NY) is None
        assert await store.fail_job(claimed[1].id, "boom") is None
        assert {j.status for j in await store.list_guild_jobs(5)} == {store.STATUS_CANCELLED}

    @pytest.mark.asyncio
    async def test_fail_job_backs_off_by_kind(self, db):
        await store.ensure_guild_jobs(6, NY, now=EARLY)
        at = EARLY + timedelta(days=2)
        claimed = await store.claim_due_jobs(now=at)

        journal = next(j for j in claimed if j.kind == store.KIND_JOURNAL)
        interest = next(j for j in claimed if j.kind == store.KIND_INTEREST_JOURNAL)
        assert await store.fail_job(journal.id, "x" * 900, now=at) == at + timedelta(minutes=30)
        assert await store.fail_job(interest.id, "model down", now=at) == at + timedelta(minutes=60)

        jobs = {j.id: j for j in await store.list_guild_jobs(6)}
        assert len(jobs[journal.id].last_error) == store.MAX_ERROR_CHARS
        assert jobs[interest.id].last_error == "model down"
        assert jobs[interest.id].status == store.STATUS_PENDING

    @pytest.mark.asyncio
    async def test_reclaim_stale_jobs(self, db):
        await store.ensure_guild_jobs(7, NY, now=EARLY)
        at = EARLY + timedelta(days=2)
        await store.claim_due_jobs(now=at)

        assert await store.reclaim_stale_jobs(now=at + timedelta(minutes=5)) == 0
        assert await store.reclaim_stale_jobs(now=at + timedelta(minutes=20)) == 6
        assert len(await store.claim_due_jobs(now=at + timedelta(minutes=21))) == 6


def _job(kind: str, slot: str = "daily", guild_id: int = 100) -> store.JobView:
    return store.JobView(
        id=1, kind=kind, guild_id=guild_id, slot=slot, due_at=EARLY, status=store.STATUS_RUNNING, attempts=1
    )


class TestDispatch:

    @pytest.mark.asyncio
    async def test_journal_skipped_without_channel(self, db, monkeypatch):
        writer = AsyncMock()
        monkeypatch.setattr("utils.journal.create_random_journal_entry", writer)

        result = await loop.dispatch_job(_bot(), _job(store.KIND_JOURNAL, "morning"))
        assert result == loop.RESULT_SKIPPED
        writer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_journal_skipped_without_plan(self, db):
        from utils.server_config import update_server_config

        await update_server_config(100, {"journal_channel_id": 555})
        assert await loop._journaling_allowed(_bot(), 100) is False

    @pytest.mark.asyncio
    async def test_journal_runs_when_allowed(self, db, monkeypatch):
        from utils.server_config import update_server_config
        from utils.subscriptions import update_server_subscription

        await update_server_config(100, {"journal_channel_id": 555})
        await update_server_subscription(100, {"plan": "standard", "status": "active"})
        writer = AsyncMock()
        monkeypatch.setattr("utils.journal.create_random_journal_entry", writer)

        bot = _bot()
        assert await loop.dispatch_job(bot, _job(store.KIND_JOURNAL, "lunch")) == loop.RESULT_OK
        writer.assert_awaited_once_with(100, bot=bot, slot="lunch")

    @pytest.mark.asyncio
    async def test_bonus_slot_can_skip_without_touching_db(self):
        result = await loop.dispatch_job(_bot(), _job(store.KIND_JOURNAL, "bonus"), rng=HighRng())
        assert result == loop.RESULT_SKIPPED

    @pytest.mark.asyncio
    async def test_credit_refresh(self, monkeypatch):
        refresh = AsyncMock(return_value=3)
        monkeypatch.setattr("utils.credits_store.refresh_due_guilds", refresh)
        job = _job(store.KIND_CREDIT_REFRESH, "", guild_id=0)
        assert await loop.dispatch_job(_bot(), job) == loop.RESULT_OK
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_kind_is_skipped(self):
        assert await loop.dispatch_job(_bot(), _job("mystery")) == loop.RESULT_SKIPPED


@pytest.mark.asyncio
async def test_tick_records_failures(db, monkeypatch):
    past = datetime.now(timezone.utc) - timedelta(days=3)
    await store.ensure_guild_jobs(200, NY, now=past)

    monkeypatch.setattr(loop, "dispatch_job", AsyncMock(side_effect=RuntimeError("kaboom")))
    assert await loop._tick(_bot()) == 6

    jobs = await store.list_guild_jobs(200)
    assert all(j.status == store.STATUS_PENDING for j in jobs)
    assert all(j.last_error == "RuntimeError: kaboom" for j in jobs)
    assert all(j.due_at > datetime.now(timezone.utc) for j in jobs)


@pytest.mark.asyncio
async def test_tick_completes_jobs(db, monkeypatch):
    past = datetime.now(timezone.utc) - timedelta(days=3)
    await store.ensure_guild_jobs(201, NY, now=past)

    monkeypatch.setattr(loop, "dispatch_job", AsyncMock(return_value=loop.RESULT_OK))
    assert await loop._tick(_bot()) == 6
    assert await loop._tick(_bot()) == 0


def test_store_module_docstring():
    assert store.__doc__ is not None
    assert "scheduled_jobs" in store.__doc__
