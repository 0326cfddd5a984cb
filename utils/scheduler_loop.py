# utils/scheduler_loop.py
"""Background loop: run due rows from ``scheduled_jobs``.

Polls every SCHEDULER_POLL_S seconds. Rows are claimed atomically, so several
processes can share one table without running the same job twice.
"""
from __future__ import annotations

import asyncio
import logging
import random

import config
from core.entitlements import FEATURE_JOURNALING
from core.services import services_for
from utils import schedule_store as store
from utils.prom import scheduler_jobs_total

logger = logging.getLogger("bot.scheduler")

CLAIM_BATCH = 20

RESULT_OK = "ok"
RESULT_SKIPPED = "skipped"
RESULT_ERROR = "error"


async def _guild_tz(bot, guild_id: int) -> str:
    from utils.server_config import get_server_config

    cfg = await get_server_config(guild_id, cache=services_for(bot).config_cache)
    return cfg.timezone


async def _journaling_allowed(bot, guild_id: int) -> bool:
    from utils.server_config import get_server_config
    from utils.subscriptions import is_feature_subscribed

    svc = services_for(bot)
    cfg = await get_server_config(guild_id, cache=svc.config_cache)
    if not cfg.journal_channel_id:
        return False
    if not await is_feature_subscribed(guild_id, FEATURE_JOURNALING, cache=svc.subscription_cache):
        logger.info("Journal job skipped guild=%s: journaling not in plan", guild_id)
        return False
    return True


async def dispatch_job(bot, job: store.JobView, *, rng: random.Random | None = None) -> str:
    """Run one claimed job. Returns the metric result label."""
    rng = rng or random
    kind, gid = job.kind, job.guild_id

    if kind == store.KIND_CREDIT_REFRESH:
        from utils.credits_store import refresh_due_guilds

        await refresh_due_guilds()
        return RESULT_OK

    if kind == store.KIND_STORYLINE_SWEEP:
        from utils.storylines import advance_storylines_periodic_task

        result = await advance_storylines_periodic_task(bot=bot)
        logger.info(
            "Storyline sweep: completed=%s updated=%s created=%s journal=%s",
            result.completed, result.updated, result.created, result.journal_entries,
        )
        return RESULT_OK

    if kind == store.KIND_CHARACTER_AGING:
        from utils.character_sheet import run_character_aging

        await run_character_aging(gid, await _guild_tz(bot, gid))
        return RESULT_OK

    if kind == store.KIND_JOURNAL:
        if job.slot == "bonus" and rng.random() >= store.BONUS_CHANCE:
            return RESULT_SKIPPED
        if not await _journaling_allowed(bot, gid):
            return RESULT_SKIPPED
        from utils.journal import create_random_journal_entry

        await create_random_journal_entry(gid, bot=bot, slot=job.slot)
        return RESULT_OK

    if kind == store.KIND_INTEREST_JOURNAL:
        if not await _journaling_allowed(bot, gid):
            return RESULT_SKIPPED
        from utils.journal import process_pending_interests

        entry = await process_pending_interests(gid, bot=bot)
        return RESULT_OK if entry is not None else RESULT_SKIPPED

    logger.warning("Unknown scheduled job kind=%s id=%s", kind, job.id)
    return RESULT_SKIPPED


async def _tick(bot) -> int:
    await store.reclaim_stale_jobs()
    jobs = await store.claim_due_jobs(limit=CLAIM_BATCH)
    for job in jobs:
        tz_name = None
        try:
            if job.guild_id:
                tz_name = await _guild_tz(bot, job.guild_id)
            result = await dispatch_job(bot, job)
        except Exception as e:
            logger.exception("Scheduled job failed id=%s kind=%s guild=%s", job.id, job.kind, job.guild_id)
            scheduler_jobs_total.labels(kind=job.kind, result=RESULT_ERROR).inc()
            await store.fail_job(job.id, f"{type(e).__name__}: {e}")
            continue
        scheduler_jobs_total.labels(kind=job.kind, result=result).inc()
        await store.complete_job(job.id, tz_name=tz_name)
    return len(jobs)


async def _resume(bot) -> None:
    """Make sure global jobs exist and every journal guild has its rows."""
    from utils.server_config import list_journal_guilds

    await store.ensure_global_jobs()
    for cfg in await list_journal_guilds():
        await store.ensure_guild_jobs(cfg.guild_id, cfg.timezone)


async def _loop(bot) -> None:
    logger.info("Scheduler loop started (poll=%ss worker=%s)", config.SCHEDULER_POLL_S, store.PROCESS_ID)
    try:
        await _resume(bot)
    except Exception:
        logger.exception("Scheduler resume failed")
    while True:
        try:
            await _tick(bot)
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Scheduler loop tick error")
        await asyncio.sleep(config.SCHEDULER_POLL_S)


def start_scheduler_loop(bot) -> asyncio.Task:
    """Start the background scheduler loop."""
    task = asyncio.create_task(_loop(bot))
    task.add_done_callback(
        lambda t: None if t.cancelled() else logger.warning("Scheduler loop exited: %s", t.exception())
    )
    return task
