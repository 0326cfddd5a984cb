"""Tests for the guild credit ledger (utils/credits_store.py)."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import config
from core.services import BotServices
from utils import credits_store as cs
from utils.models import CreditTransaction, ServerCredits


async def _set_row(Session, guild_id: int, **fields) -> None:
    async with Session() as session:
        row = await session.get(ServerCredits, guild_id)
        for k, v in fields.items():
            setattr(row, k, v)
        await session.commit()


async def _transactions(Session, guild_id: int) -> list[CreditTransaction]:
    from sqlalchemy import select

    async with Session() as session:
        res = await session.execute(
            select(CreditTransaction).where(CreditTransaction.guild_id == guild_id).order_by(CreditTransaction.id)
        )
        return list(res.scalars().all())


def test_cost_table():
    assert cs.credit_cost("CHAT_MESSAGE") == 1
    assert cs.credit_cost("image_generation") == 10
    assert cs.credit_cost("SCHEDULE_MESSAGE") == 15
    assert cs.credit_cost("SOMETHING_NEW") == cs.DEFAULT_COST


def test_first_of_next_month_wraps_year():
    assert cs.first_of_next_month(datetime(2026, 12, 15, tzinfo=timezone.utc)) == datetime(
        2027, 1, 1, tzinfo=timezone.utc
    )
    assert cs.first_of_next_month(datetime(2026, 3, 31, tzinfo=timezone.utc)).month == 4


class TestBalance:

    @pytest.mark.asyncio
    async def test_new_guild_gets_free_allowance(self, db):
        snap = await cs.get_server_credits(1)
        assert snap.free_credits == config.FREE_MONTHLY_CREDITS
        assert snap.remaining_credits == config.FREE_MONTHLY_CREDITS
        assert snap.next_free_refresh > datetime.now(timezone.utc)

        txs = await _transactions(db, 1)
        assert [t.transaction_type for t in txs] == ["free_monthly"]

    @pytest.mark.asyncio
    async def test_has_enough_credits(self, db, monkeypatch):
        monkeypatch.setattr(config, "FREE_MONTHLY_CREDITS", 5)
        assert await cs.has_enough_credits(2, "VISION_ANALYSIS") is True
        assert await cs.has_enough_credits(2, "IMAGE_GENERATION") is False

    @pytest.mark.asyncio
    async def test_purchase_unblocks_refused_operation(self, db, monkeypatch):
        monkeypatch.setattr(config, "FREE_MONTHLY_CREDITS", 5)
        assert await cs.has_enough_credits(3, "IMAGE_GENERATION") is False

        assert await cs.add_credits(3, 10, "purchase") is True
        assert (await cs.get_server_credits(3)).remaining_credits == 15
        assert await cs.has_enough_credits(3, "IMAGE_GENERATION") is True

        assert await cs.use_credits(3, "IMAGE_GENERATION") is True
        snap = await cs.get_server_credits(3)
        assert snap.remaining_credits == 5
        assert snap.free_used_credits == 5 and snap.purchased_used_credits == 5


class TestDebit:

    @pytest.mark.asyncio
    async def test_debit_reduces_balance_and_logs_usage(self, db):
        res = await cs.debit_credits(10, "JOURNAL_ENTRY", services=BotServices())
        assert res.ok and res.charged
        assert res.cost == 3
        assert res.remaining == config.FREE_MONTHLY_CREDITS - 3

        snap = await cs.get_server_credits(10)
        assert snap.free_used_credits == 3
        assert snap.total_used_credits == 3

        usage = [t for t in await _transactions(db, 10) if t.transaction_type == "usage"]
        assert len(usage) == 1
        assert usage[0].amount == -3
        assert usage[0].feature_type == "JOURNAL_ENTRY"

    @pytest.mark.asyncio
    async def test_insufficient_leaves_balance_untouched(self, db, monkeypatch):
        monkeypatch.setattr(config, "FREE_MONTHLY_CREDITS", 2)
        res = await cs.debit_credits(11, "JOURNAL_ENTRY")
        assert res.ok is False
        assert res.remaining == 2

        snap = await cs.get_server_credits(11)
        assert snap.remaining_credits == 2
        assert snap.total_used_credits == 0
        assert not [t for t in await _transactions(db, 11) if t.transaction_type == "usage"]

    @pytest.mark.asyncio
    async def test_pools_drain_free_then_subscription_then_purchased(self, db):
        await cs.get_server_credits(12)
        await _set_row(
            db, 12,
            free_credits=2, subscription_credits=3, purchased_credits=10, remaining_credits=15,
        )
        res = await cs.debit_credits(12, "REMINDER_CREATION")  # 5 credits
        assert res.ok

        snap = await cs.get_server_credits(12)
        assert snap.free_used_credits == 2
        assert snap.subscription_used_credits == 3
        assert snap.purchased_used_credits == 0

        await cs.debit_credits(12, "MEMORY_OPERATION")  # 2 credits
        snap = await cs.get_server_credits(12)
        assert snap.purchased_used_credits == 2
        assert snap.remaining_credits == 8

    @pytest.mark.asyncio
    async def test_use_credits_is_boolean_debit(self, db, monkeypatch):
        monkeypatch.setattr(config, "FREE_MONTHLY_CREDITS", 4)
        assert await cs.use_credits(17, "JOURNAL_ENTRY") is True
        assert await cs.use_credits(17, "JOURNAL_ENTRY") is False
        assert (await cs.get_server_credits(17)).remaining_credits == 1

    @pytest.mark.asyncio
    async def test_low_credit_warning_fires_once(self, db, monkeypatch):
        monkeypatch.setattr(config, "FREE_MONTHLY_CREDITS", 10)
        warnings = []
        for _ in range(10):
            res = await cs.debit_credits(13, "CHAT_MESSAGE")
            assert res.ok
            warnings.append(res.low_credits_warning)
        assert warnings.count(True) == 1
        assert warnings.index(True) == 8  # remaining hit 1 (10% of 10)

    @pytest.mark.asyncio
    async def test_deposit_resets_low_warning(self, db, monkeypatch):
        monkeypatch.setattr(config, "FREE_MONTHLY_CREDITS", 10)
        for _ in range(9):
            await cs.debit_credits(14, "CHAT_MESSAGE")
        assert (await cs.get_server_credits(14)).low_credits_warning_sent is True

        assert await cs.add_credits(14, 100, "purchase", payment_id="cs_1")
        snap = await cs.get_server_credits(14)
        assert snap.low_credits_warning_sent is False
        assert snap.purchased_credits == 100
        assert snap.remaining_credits == 101

    @pytest.mark.asyncio
    async def test_metering_off_is_free(self, db):
        from utils.server_config import update_server_config

        await update_server_config(15, {"credits_enabled": False})
        res = await cs.debit_credits(15, "IMAGE_GENERATION")
        assert res.ok and res.charged is False and res.cost == 0

        snap = await cs.get_server_credits(15)
        assert snap.total_used_credits == 0

    @pytest.mark.asyncio
    async def test_unlimited_plan_feature_is_free(self, db):
        from utils.subscriptions import update_server_subscription

        await update_server_subscription(16, {"plan": "enterprise", "status": "active"})
        before = await cs.get_server_credits(16)

        res = await cs.debit_credits(16, "VISION_ANALYSIS")
        assert res.ok and res.charged is False

        chat = await cs.debit_credits(16, "CHAT_MESSAGE")
        assert chat.charged is True
        after = await cs.get_server_credits(16)
        assert after.total_used_credits == before.total_used_credits + 1


class TestDeposits:

    @pytest.mark.asyncio
    async def test_unknown_source_rejected(self, db):
        assert await cs.add_credits(20, 10, "gift") is False
        assert await cs.add_credits(20, 0, "purchase") is False

    @pytest.mark.asyncio
    async def test_refund_never_removes_spent_credits(self, db):
        await cs.get_server_credits(21)
        await _set_row(db, 21, purchased_credits=100, purchased_used_credits=60)

        removed = await cs.remove_purchased_credits(21, 80, payment_id="ch_1")
        assert removed == 40
        snap = await cs.get_server_credits(21)
        assert snap.purchased_credits == 60
        assert snap.purchased_remaining == 0

    @pytest.mark.asyncio
    async def test_refund_unknown_guild(self, db):
        assert await cs.remove_purchased_credits(999, 50) == 0


class TestRollover:

    @pytest.mark.asyncio
    async def test_rollover_carries_unspent_purchased(self, db):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        await cs.get_server_credits(30)
        await _set_row(
            db, 30,
            free_credits=10, free_used_credits=10,
            purchased_credits=100, purchased_used_credits=30,
            total_used_credits=40, next_free_refresh=past,
        )

        assert await cs.process_monthly_rollover(30) is True
        snap = await cs.get_server_credits(30)
        assert snap.purchased_credits == 70
        assert snap.free_credits == config.FREE_MONTHLY_CREDITS
        assert snap.subscription_credits == 0
        assert snap.total_used_credits == 0
        assert snap.remaining_credits == config.FREE_MONTHLY_CREDITS + 70
        assert snap.next_free_refresh > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_rollover_grants_plan_credits(self, db):
        from utils.subscriptions import update_server_subscription

        await update_server_subscription(31, {"plan": "premium", "status": "active"})
        await _set_row(db, 31, next_free_refresh=datetime.now(timezone.utc) - timedelta(minutes=1))

        assert await cs.process_monthly_rollover(31) is True
        snap = await cs.get_server_credits(31)
        assert snap.subscription_credits == 1000

    @pytest.mark.asyncio
    async def test_rollover_discards_unused_subscription_credits(self, db):
        from utils.subscriptions import update_server_subscription

        await update_server_subscription(33, {"plan": "standard", "status": "active"})
        await _set_row(
            db, 33,
            subscription_credits=800, subscription_used_credits=100, total_used_credits=100,
            next_free_refresh=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        assert await cs.process_monthly_rollover(33) is True
        snap = await cs.get_server_credits(33)
        assert snap.subscription_credits == 500
        assert snap.subscription_used_credits == 0
        assert snap.remaining_credits == config.FREE_MONTHLY_CREDITS + 500

    @pytest.mark.asyncio
    async def test_rollover_not_due_is_noop(self, db):
        await cs.get_server_credits(32)
        assert await cs.process_monthly_rollover(32) is False

    @pytest.mark.asyncio
    async def test_refresh_due_guilds(self, db):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        for gid in (40, 41, 42):
            await cs.get_server_credits(gid)
        await _set_row(db, 40, next_free_refresh=past)
        await _set_row(db, 42, next_free_refresh=past)

        assert await cs.refresh_due_guilds() == 2


@pytest.mark.asyncio
async def test_usage_history_newest_first(db):
    await cs.debit_credits(50, "CHAT_MESSAGE")
    await cs.debit_credits(50, "IMAGE_GENERATION")

    history = await cs.get_usage_history(50, days=7)
    usage = [r for r in history if r.transaction_type == "usage"]
    assert [r.feature_type for r in usage] == ["IMAGE_GENERATION", "CHAT_MESSAGE"]
    assert all(r.created_at.tzinfo is not None for r in history)
