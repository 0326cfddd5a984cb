"""Pytest configuration and fixtures. Run without real Redis/DB by default."""
from __future__ import annotations

import os
import sys

import pytest

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Avoid loading .env that might point at prod
os.environ.setdefault("ENVIRONMENT", "dev")


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    """By default, make get_redis_or_none return None so tests don't need Redis."""
    from utils import conversation_memory, redis_conn
    from core import stripe_webhook

    async def _none():
        return None

    monkeypatch.setattr(redis_conn, "get_redis_or_none", _none)
    monkeypatch.setattr(conversation_memory, "get_redis_or_none", _none)
    monkeypatch.setattr(stripe_webhook, "get_redis_or_none", _none)


@pytest.fixture
async def db(monkeypatch):
    """Point utils.db at a fresh in-memory SQLite database with all tables created."""
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    from utils import db as db_mod
    from utils.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    Session = async_sessionmaker(engine, expire_on_commit=False)
    monkeypatch.setattr(db_mod, "_engine", engine)
    monkeypatch.setattr(db_mod, "_sessionmaker", Session)
    yield Session

    await engine.dispose()


@pytest.fixture
def no_llm(monkeypatch):
    """Make every model call fail so callers take their fallback paths."""
    from utils import ai_client, interests_store, journal, model_output

    async def _down(*args, **kwargs):
        raise ai_client.AIConnectionError("model offline")

    monkeypatch.setattr(model_output, "chat_completion", _down)
    monkeypatch.setattr(ai_client, "chat_completion", _down)
    monkeypatch.setattr(interests_store, "embed_text", _down)
    monkeypatch.setattr(journal, "embed_text", _down)
    return _down
