"""Verify all registered cogs can be imported and set up (no Discord connection)."""
from __future__ import annotations

import importlib
from unittest.mock import AsyncMock, MagicMock

import pytest


# Extensions list from bot.py (we avoid importing bot so no client is built)
EXTENSIONS = [
    "commands.slash.credits",
    "commands.slash.server_settings",
    "commands.slash.subscription",
    "commands.slash.journal",
    "commands.slash.talk",
    "commands.slash.memory",
    "commands.slash.personality",
]


@pytest.mark.parametrize("ext", EXTENSIONS)
def test_extension_imports(ext: str):
    """Each extension module must import without error."""
    mod = importlib.import_module(ext)
    assert mod is not None
    assert callable(getattr(mod, "setup", None))


@pytest.mark.asyncio
@pytest.mark.parametrize("ext", EXTENSIONS)
async def test_extension_setup_adds_one_cog(ext: str):
    bot = MagicMock()
    bot.add_cog = AsyncMock()
    mod = importlib.import_module(ext)
    await mod.setup(bot)
    bot.add_cog.assert_awaited_once()
