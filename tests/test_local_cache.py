import pytest

from ratelimit_service.local_cache import LocalCache, LocalCacheStats
from ratelimit_service.metrics import RecordingSink, Store


class FakeClock:
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


def test_set_then_get_returns_value():
    cache = LocalCache()
    cache.set("k", b"v", 60)
    assert cache.get("k") == b"v"
    assert cache.hit_count == 1
    assert cache.miss_count == 0


def test_missing_key_raises_and_counts_miss():
    cache = LocalCache()
    with pytest.raises(KeyError):
        cache.get("absent")
    assert cache.miss_count == 1
    assert cache.lookup_count == cache.hit_count + cache.miss_count


def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = LocalCache(clock=clock)
    cache.set("k", b"", 10)
    assert cache.get("k") == b""
    clock.now += 10
    with pytest.raises(KeyError):
        cache.get("k")
    assert cache.expired_count == 1
    assert cache.entry_count == 0


def test_zero_ttl_never_expires():
    clock = FakeClock()
    cache = LocalCache(clock=clock)
    cache.set("k", b"x", 0)
    clock.now += 10**9
    assert cache.get("k") == b"x"


def test_overwrite_is_counted_and_replaces_value():
    cache = LocalCache()
    cache.set("k", b"a", 60)
    cache.set("k", b"b", 60)
    assert cache.get("k") == b"b"
    assert cache.overwrite_count == 1
    assert cache.entry_count == 1


def test_least_recently_used_entry_is_evicted():
    cache = LocalCache(max_entries=2)
    cache.set("a", b"", 60)
    cache.set("b", b"", 60)
    cache.get("a")
    cache.set("c", b"", 60)
    assert cache.get("a") == b""
    with pytest.raises(KeyError):
        cache.get("b")
    assert cache.evacuate_count == 1
    assert cache.entry_count == 2


def test_invalid_capacity_rejected():
    with pytest.raises(ValueError):
        LocalCache(max_entries=0)


def test_average_access_time_tracks_clock():
    clock = FakeClock(now=500)
    cache = LocalCache(clock=clock)
    assert cache.average_access_time == 0
    cache.set("a", b"", 0)
    assert cache.average_access_time == 500


def test_stats_are_published_as_gauges():
    sink = RecordingSink()
    store = Store(sink)
    cache = LocalCache()
    stats = LocalCacheStats(cache, store.scope("localcache"))

    with pytest.raises(KeyError):
        cache.get("k")
    cache.set("k", b"", 3600)
    cache.get("k")

    stats.generate_stats()
    store.flush()

    names = {
        "evacuateCount", "expiredCount", "entryCount", "averageAccessTime",
        "hitCount", "missCount", "lookupCount", "overwriteCount",
    }
    assert {f"localcache.{name}" for name in names} <= set(sink.gauges)
    assert sink.gauges["localcache.hitCount"] == cache.hit_count
    assert sink.gauges["localcache.missCount"] == cache.miss_count
    assert sink.gauges["localcache.lookupCount"] == cache.lookup_count
    assert sink.gauges["localcache.entryCount"] == cache.entry_count