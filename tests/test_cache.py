"""Tests for the in-process TTL cache."""
from __future__ import annotations

import pytest

from core.services import BotServices, services_for
from utils.cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire():
    clock = FakeClock()
    c = TTLCache(ttl_seconds=10, clock=clock)
    c.set("a", 1)
    clock.now = 9.9
    assert c.get("a") == 1
    clock.now = 10.0
    assert c.get("a") is None
    assert c.misses == 1 and c.hits == 1


def test_lru_eviction_keeps_recently_read():
    c = TTLCache(ttl_seconds=60, max_entries=2)
    c.set("a", 1)
    c.set("b", 2)
    c.get("a")
    c.set("c", 3)
    assert "a" in c
    assert "b" not in c
    assert len(c) == 2


def test_invalidate_prefix():
    c = TTLCache(ttl_seconds=60)
    c.set("cfg:1", 1)
    c.set("cfg:2", 2)
    c.set("sub:1", 3)
    c.set(7, 4)
    assert c.invalidate_prefix("cfg:") == 2
    assert "sub:1" in c and 7 in c


def test_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        TTLCache(ttl_seconds=0)


def test_services_are_per_bot():
    class Bot:
        pass

    a, b = Bot(), Bot()
    sa = services_for(a)
    assert services_for(a) is sa
    assert services_for(b) is not sa

    sa.config_cache.set(5, "x")
    sa.subscription_cache.set(5, "y")
    sa.invalidate_guild(5)
    assert 5 not in sa.config_cache and 5 not in sa.subscription_cache


def test_services_instances_do_not_share_caches():
    one, two = BotServices(), BotServices()
    one.config_cache.set(1, "a")
    assert two.config_cache.get(1) is None
