import random

import pytest

from ratelimit_service.base_limiter import BaseRateLimiter, LimitInfo
from ratelimit_service.config import new_rate_limit
from ratelimit_service.local_cache import LocalCache
from ratelimit_service.metrics import StatsManager, Store
from ratelimit_service.model import (
    Code,
    DescriptorEntry,
    DescriptorStatus,
    RateLimitDescriptor,
    RateLimitRequest,
    TimeSource,
    Unit,
    calculate_reset,
)


class FixedTime(TimeSource):
    def __init__(self, now):
        self.now = now

    def unix_now(self):
        return self.now


def make_limiter(now=1000000, local_cache=None):
    return BaseRateLimiter(
        FixedTime(now), random.Random(1), 0, local_cache, 0.8, "", StatsManager(Store())
    )


def make_limit(requests, unit, key, shadow_mode=False):
    manager = StatsManager(Store())
    return new_rate_limit(requests, unit, manager.new_stats(key), False, shadow_mode, "", None)


def test_empty_key_is_ok_without_limit():
    limiter = make_limiter()
    status = limiter.get_response_descriptor_status("", LimitInfo(None, 0, 0), False, 1)
    assert status == DescriptorStatus(Code.OK, None, 0, None)


def test_near_limit_sequence():
    limiter = make_limiter(now=1000000)
    limit = make_limit(15, Unit.HOUR, "key4_value4")
    key = "domain_key4_value4_997200"
    reset = calculate_reset(Unit.HOUR, limiter.time_source)

    status = limiter.get_response_descriptor_status(key, LimitInfo(limit, 10, 11), False, 1)
    assert status == DescriptorStatus(Code.OK, limit.limit, 4, reset)
    assert limit.stats.near_limit.value() == 0
    assert limit.stats.within_limit.value() == 1

    status = limiter.get_response_descriptor_status(key, LimitInfo(limit, 12, 13), False, 1)
    assert status == DescriptorStatus(Code.OK, limit.limit, 2, reset)
    assert limit.stats.near_limit.value() == 1
    assert limit.stats.within_limit.value() == 2

    status = limiter.get_response_descriptor_status(key, LimitInfo(limit, 15, 16), False, 1)
    assert status == DescriptorStatus(Code.OVER_LIMIT, limit.limit, 0, reset)
    assert limit.stats.over_limit.value() == 1
    assert limit.stats.near_limit.value() == 1
    assert limit.stats.within_limit.value() == 2


@pytest.mark.parametrize(
    "requests, hits, after, code, remaining, over, near, within",
    [
        (20, 3, 5, Code.OK, 15, 0, 0, 3),
        (8, 2, 7, Code.OK, 1, 0, 1, 2),
        (20, 3, 19, Code.OK, 1, 0, 3, 3),
        (20, 3, 22, Code.OVER_LIMIT, 0, 2, 1, 0),
        (20, 7, 22, Code.OVER_LIMIT, 0, 2, 4, 0),
        (10, 3, 30, Code.OVER_LIMIT, 0, 3, 0, 0),
    ],
)
def test_hits_addend_split_between_ranges(requests, hits, after, code, remaining, over, near, within):
    limiter = make_limiter(now=1234)
    limit = make_limit(requests, Unit.SECOND, "key")
    info = LimitInfo(limit, after - hits, after)
    status = limiter.get_response_descriptor_status("domain_key_1234", info, False, hits)
    assert status.code == code
    assert status.limit_remaining == remaining
    assert status.current_limit == limit.limit
    assert limit.stats.over_limit.value() == over
    assert limit.stats.near_limit.value() == near
    assert limit.stats.within_limit.value() == within


def test_over_limit_populates_local_cache():
    cache = LocalCache()
    limiter = make_limiter(local_cache=cache)
    limit = make_limit(15, Unit.HOUR, "key4_value4")
    key = "domain_key4_value4_997200"

    assert not limiter.is_over_limit_with_local_cache(key)
    limiter.get_response_descriptor_status(key, LimitInfo(limit, 15, 16), False, 1)
    assert limiter.is_over_limit_with_local_cache(key)

    status = limiter.get_response_descriptor_status(key, LimitInfo(limit, 0, 1), True, 1)
    assert status.code == Code.OVER_LIMIT
    assert status.limit_remaining == 0
    assert limit.stats.over_limit.value() == 2
    assert limit.stats.over_limit_with_local_cache.value() == 1


def test_without_local_cache_never_over_limit_locally():
    limiter = make_limiter()
    assert limiter.is_over_limit_with_local_cache("anything") is False


def test_shadow_mode_reports_ok_but_counts():
    limiter = make_limiter()
    limit = make_limit(15, Unit.HOUR, "key4_value4", shadow_mode=True)
    status = limiter.get_response_descriptor_status(
        "domain_key4_value4_997200", LimitInfo(limit, 15, 16), False, 1
    )
    assert status.code == Code.OK
    assert status.limit_remaining == 0
    assert limit.stats.over_limit.value() == 1
    assert limit.stats.shadow_mode.value() == 1


def test_generate_cache_keys_counts_hits():
    limiter = make_limiter(now=1234)
    limit = make_limit(10, Unit.SECOND, "key_value")
    request = RateLimitRequest(
        "domain",
        [
            RateLimitDescriptor([DescriptorEntry("key2", "value2")]),
            RateLimitDescriptor([DescriptorEntry("key", "value")]),
        ],
        1,
    )
    keys = limiter.generate_cache_keys(request, [None, limit], 3)
    assert [k.key for k in keys] == ["", "domain_key_value_1234"]
    assert keys[1].per_second is True
    assert limit.stats.total_hits.value() == 3


def test_generate_cache_keys_length_mismatch():
    limiter = make_limiter()
    request = RateLimitRequest("domain", [RateLimitDescriptor([DescriptorEntry("k", "v")])], 1)
    with pytest.raises(ValueError):
        limiter.generate_cache_keys(request, [], 1)