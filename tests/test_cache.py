import asyncio
import pytest

from media_request_service.app.cache import ListingCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ListingCache(maxsize=100, timer=clock)


def test_set_then_get_returns_value(cache):
    cache.set("k", {"items": [1, 2]}, 60)
    assert cache.get("k") == {"items": [1, 2]}


def test_get_missing_key_is_none(cache):
    assert cache.get("nope") is None


def test_entry_expires_after_ttl(cache, clock):
    cache.set("k", "v", 1)
    clock.advance(0.5)
    assert cache.get("k") == "v"
    clock.advance(0.6)
    assert cache.get("k") is None


def test_set_overwrites_value_and_ttl(cache, clock):
    cache.set("k", "old", 1)
    cache.set("k", "new", 10)
    clock.advance(5)
    assert cache.get("k") == "new"


def test_non_positive_ttl_rejected(cache):
    with pytest.raises(ValueError):
        cache.set("k", "v", 0)


def test_wildcard_delete_removes_only_matching_keys(cache):
    cache.set("admin:requests:1:10:all:all:none:desc", "a", 60)
    cache.set("admin:requests:2:10:movie:all:none:desc", "b", 60)
    cache.set("user:profile:1", "c", 60)

    removed = cache.delete("admin:requests:*")

    assert removed == 2
    assert cache.get("admin:requests:1:10:all:all:none:desc") is None
    assert cache.get("admin:requests:2:10:movie:all:none:desc") is None
    assert cache.get("user:profile:1") == "c"


def test_exact_delete_and_missing_key_noop(cache):
    cache.set("a", 1, 60)
    cache.set("ab", 2, 60)
    assert cache.delete("a") == 1
    assert cache.get("ab") == 2
    assert cache.delete("a") == 0


def test_invalidate_tag(cache):
    cache.set("admin:requests:1", "x", 60, tags=("listing",))
    cache.set("admin:requests:2", "y", 60, tags=("listing",))
    cache.set("stats", "z", 60, tags=("stats",))

    assert cache.invalidate_tag("listing") == 2
    assert cache.get("admin:requests:1") is None
    assert cache.get("stats") == "z"
    assert cache.invalidate_tag("listing") == 0


def test_retagged_key_leaves_old_tag(cache):
    cache.set("k", 1, 60, tags=("old",))
    cache.set("k", 2, 60, tags=("new",))
    assert cache.invalidate_tag("old") == 0
    assert cache.get("k") == 2


def test_flush(cache):
    cache.set("a", 1, 60)
    cache.set("b", 2, 60, tags=("listing",))
    cache.flush()
    assert len(cache) == 0
    assert cache.invalidate_tag("listing") == 0


def test_purge_expired(cache, clock):
    cache.set("short", 1, 1, tags=("listing",))
    cache.set("long", 2, 100)
    clock.advance(2)
    assert cache.purge_expired() == 1
    assert cache.get("long") == 2
    assert cache.purge_expired() == 0


def test_key_expired_on_set_keeps_only_new_tag(cache, clock):
    cache.set("k1", "old", 1, tags=("listing",))
    clock.advance(2)
    # storing another key evicts the expired k1 inside the cache
    cache.set("k2", "other", 60)
    cache.set("k1", "new", 60, tags=("stats",))

    assert cache.invalidate_tag("listing") == 0
    assert cache.get("k1") == "new"
    assert cache.invalidate_tag("stats") == 1
    assert cache.get("k1") is None


def test_tag_index_bounded_by_evictions(clock):
    cache = ListingCache(maxsize=5, timer=clock)
    for i in range(1000):
        cache.set(f"admin:requests:{i}", i, 1, tags=("listing",))
        if i % 2:
            clock.advance(2)

    clock.advance(2)
    cache.purge_expired()

    assert len(cache) == 0
    assert cache._tags == {}


def test_size_eviction_forgets_tags(clock):
    cache = ListingCache(maxsize=2, timer=clock)
    cache.set("a", 1, 60, tags=("listing",))
    cache.set("b", 2, 60, tags=("listing",))
    cache.set("c", 3, 60, tags=("stats",))

    assert cache._tags["listing"] == {"b"}
    assert cache.invalidate_tag("listing") == 1
    assert cache.get("c") == 3


@pytest.mark.asyncio
async def test_entry_expires_in_real_time():
    cache = ListingCache()
    cache.set("k", "v", 1)
    assert cache.get("k") == "v"
    await asyncio.sleep(1.1)
    assert cache.get("k") is None


@pytest.mark.asyncio
async def test_reaper_evicts_expired_entries(cache, clock):
    cache.set("k", "v", 1)
    clock.advance(5)
    cache.start_reaper(0.01)
    await asyncio.sleep(0.1)
    # already evicted by the background reaper
    assert cache.purge_expired() == 0
    await cache.close()
    assert len(cache) == 0
