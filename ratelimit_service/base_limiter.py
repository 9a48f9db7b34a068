"""Logic shared by every cache backend: cache keys, thresholds and statistics."""

from __future__ import annotations

import logging
import math
import random
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from .cache_key import CacheKey, CacheKeyGenerator
from .local_cache import LocalCache
from .metrics import StatsManager
from .model import (
    Code,
    DescriptorStatus,
    RateLimitRequest,
    RateLimitValue,
    TimeSource,
    calculate_reset,
    unit_to_divider,
)

if TYPE_CHECKING:
    from .config import RateLimit

logger = logging.getLogger(__name__)


def _float32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


@dataclass
class LimitInfo:
    """Counter values around one increment, with the thresholds they are judged by."""

    limit: RateLimit | None
    limit_before_increase: int
    limit_after_increase: int
    near_limit_threshold: int = 0
    over_limit_threshold: int = 0


class BaseRateLimiter:
    """Turns counter values into descriptor statuses and keeps limit statistics."""

    def __init__(
        self,
        time_source: TimeSource,
        jitter_rand: random.Random,
        expiration_jitter_max_seconds: int,
        local_cache: LocalCache | None,
        near_limit_ratio: float,
        cache_key_prefix: str,
        stats_manager: StatsManager,
    ) -> None:
        self.time_source = time_source
        self.jitter_rand = jitter_rand
        self.expiration_jitter_max_seconds = expiration_jitter_max_seconds
        self.cache_key_generator = CacheKeyGenerator(cache_key_prefix)
        self.local_cache = local_cache
        self.near_limit_ratio = near_limit_ratio
        self.stats_manager = stats_manager

    def generate_cache_keys(
        self,
        request: RateLimitRequest,
        limits: Sequence[RateLimit | None],
        hits_addend: int,
    ) -> list[CacheKey]:
        """One key per descriptor (empty where there is no limit); counts total hits."""
        if len(request.descriptors) != len(limits):
            raise ValueError(
                f"assertion failed: {len(request.descriptors)} descriptors but {len(limits)} limits"
            )
        now = self.time_source.unix_now()
        keys = []
        for descriptor, limit in zip(request.descriptors, limits):
            keys.append(
                self.cache_key_generator.generate_cache_key(request.domain, descriptor, limit, now)
            )
            if limit is not None:
                limit.stats.total_hits.add(hits_addend)
        return keys

    def is_over_limit_with_local_cache(self, key: str) -> bool:
        """True when the local cache is enabled and holds the key."""
        if self.local_cache is None:
            return False
        try:
            self.local_cache.get(key)
        except KeyError:
            return False
        return True

    def get_response_descriptor_status(
        self,
        key: str,
        limit_info: LimitInfo,
        is_over_limit_with_local_cache: bool,
        hits_addend: int,
    ) -> DescriptorStatus:
        """Judge one descriptor against its limit and update its statistics."""
        if key == "":
            return self._status(Code.OK, None, 0)

        limit = limit_info.limit
        stats = limit.stats
        over_limit = False
        if is_over_limit_with_local_cache:
            over_limit = True
            stats.over_limit.add(hits_addend)
            stats.over_limit_with_local_cache.add(hits_addend)
            status = self._status(Code.OVER_LIMIT, limit.limit, 0)
        else:
            limit_info.over_limit_threshold = limit.limit.requests_per_unit
            limit_info.near_limit_threshold = int(
                math.floor(
                    _float32(
                        _float32(float(limit_info.over_limit_threshold))
                        * _float32(self.near_limit_ratio)
                    )
                )
            )
            logger.debug("cache key: %s current: %d", key, limit_info.limit_after_increase)
            if limit_info.limit_after_increase > limit_info.over_limit_threshold:
                over_limit = True
                status = self._status(Code.OVER_LIMIT, limit.limit, 0)
                self._check_over_limit_threshold(limit_info, hits_addend)
                if self.local_cache is not None:
                    # The key changes with every window, so a TTL of one whole
                    # unit is enough to cover the rest of the current window.
                    self.local_cache.set(key, b"", unit_to_divider(limit.limit.unit))
            else:
                status = self._status(
                    Code.OK,
                    limit.limit,
                    limit_info.over_limit_threshold - limit_info.limit_after_increase,
                )
                self._check_near_limit_threshold(limit_info, hits_addend)
                stats.within_limit.add(hits_addend)

        if over_limit and limit.shadow_mode:
            logger.debug("Limit with key %s, is in shadow_mode", limit.full_key)
            status.code = Code.OK
            stats.shadow_mode.add(hits_addend)

        return status

    @staticmethod
    def _check_over_limit_threshold(limit_info: LimitInfo, hits_addend: int) -> None:
        stats = limit_info.limit.stats
        if limit_info.limit_before_increase >= limit_info.over_limit_threshold:
            stats.over_limit.add(hits_addend)
        else:
            stats.over_limit.add(limit_info.limit_after_increase - limit_info.over_limit_threshold)
            # Part of the hits fell between the near and the over threshold.
            stats.near_limit.add(
                limit_info.over_limit_threshold
                - max(limit_info.near_limit_threshold, limit_info.limit_before_increase)
            )

    @staticmethod
    def _check_near_limit_threshold(limit_info: LimitInfo, hits_addend: int) -> None:
        if limit_info.limit_after_increase <= limit_info.near_limit_threshold:
            return
        stats = limit_info.limit.stats
        if limit_info.limit_before_increase >= limit_info.near_limit_threshold:
            stats.near_limit.add(hits_addend)
        else:
            stats.near_limit.add(
                limit_info.limit_after_increase - limit_info.near_limit_threshold
            )

    def _status(
        self, code: Code, limit: RateLimitValue | None, limit_remaining: int
    ) -> DescriptorStatus:
        if limit is None:
            return DescriptorStatus(code=code, current_limit=None, limit_remaining=limit_remaining)
        return DescriptorStatus(
            code=code,
            current_limit=limit,
            limit_remaining=limit_remaining,
            duration_until_reset=calculate_reset(limit.unit, self.time_source),
        )