"""
Async SQLAlchemy engine/session helpers.

Postgres (asyncpg) is the source of truth in production. In dev a local SQLite
file (aiosqlite) is used when DATABASE_URL is unset.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

log = logging.getLogger("db")

_engine: Any = None
_sessionmaker: Any = None


def get_database_url() -> str:
    """Public accessor for the database URL (used by Alembic and other tooling)."""
    return _database_url()


def _database_url() -> str:
    url = (os.getenv("DATABASE_URL", "") or "").strip()
    if url:
        # Convert sync postgres URLs to asyncpg URLs if needed
        if url.startswith("postgres://"):
            url = "postgresql+asyncpg://" + url[len("postgres://") :]
        elif url.startswith("postgresql://") and "+asyncpg" not in url:
            url = "postgresql+asyncpg://" + url[len("postgresql://") :]
        return url

    env = (os.getenv("ENVIRONMENT", "prod") or "prod").strip().lower()
    if env != "dev":
        raise RuntimeError(
            "DATABASE_URL is missing. Set DATABASE_URL (Postgres) in your environment. "
            "If you are running locally, set ENVIRONMENT=dev to allow a local SQLite fallback."
        )

    return "sqlite+aiosqlite:///./bri.db"


def get_engine():
    global _engine
    if _engine is None:
        url = _database_url()
        pool_kwargs: dict = {}
        if not url.startswith("sqlite"):
            pool_kwargs = {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 1800,
                "pool_pre_ping": True,
            }
        _engine = create_async_engine(url, future=True, echo=False, **pool_kwargs)
    return _engine


def get_sessionmaker():
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _sessionmaker


_DB_RETRY_ATTEMPTS = 5
_DB_RETRY_BASE_DELAY = 2.0


async def init_db() -> None:
    """Initialize the engine and verify connectivity.

    Dev (or DB_AUTO_CREATE=1) creates missing tables directly; production
    expects `alembic upgrade head` to have been applied.

    Retries up to 5 times with exponential backoff for transient connectivity
    failures (the DB often boots after the app on cold starts).
    """
    from utils.models import Base

    engine = get_engine()
    env = (os.getenv("ENVIRONMENT", "prod") or "prod").strip().lower()
    auto_create = str(os.getenv("DB_AUTO_CREATE", "")).strip().lower() in {"1", "true", "yes", "on"}

    for attempt in range(1, _DB_RETRY_ATTEMPTS + 1):
        try:
            async with engine.begin() as conn:
                if env == "dev" or auto_create:
                    await conn.run_sync(Base.metadata.create_all)
                    log.info("DB init OK (tables ensured; env=%s auto_create=%s)", env, auto_create)
                else:
                    await conn.execute(text("SELECT 1"))
                    log.info("DB preflight OK (env=%s). Apply migrations via Alembic.", env)
            return
        except Exception as exc:
            if attempt >= _DB_RETRY_ATTEMPTS:
                log.exception("DB init/preflight failed after %d attempts", _DB_RETRY_ATTEMPTS)
                raise
            delay = _DB_RETRY_BASE_DELAY * (2 ** (attempt - 1))
            log.warning(
                "DB init attempt %d/%d failed (%s); retrying in %.1fs",
                attempt, _DB_RETRY_ATTEMPTS, exc, delay,
            )
            await asyncio.sleep(delay)
