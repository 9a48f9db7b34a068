"""Fixed-window rate limiting backed by redis."""

from __future__ import annotations

import logging
import random
import threading
from typing import TYPE_CHECKING, Sequence

from .base_limiter import BaseRateLimiter, LimitInfo
from .local_cache import LocalCache
from .metrics import StatsManager
from .model import DescriptorStatus, RateLimitCache, RateLimitRequest, TimeSource, unit_to_divider
from .redis_driver import Client

if TYPE_CHECKING:
    from .config import RateLimit

logger = logging.getLogger(__name__)


class FixedRateLimitCache(RateLimitCache):
    """Counts hits with INCRBY/EXPIRE; per-second limits may use a dedicated client."""

    def __init__(
        self,
        client: Client,
        per_second_client: Client | None,
        time_source: TimeSource,
        jitter_rand: random.Random,
        expiration_jitter_max_seconds: int,
        local_cache: LocalCache | None,
        near_limit_ratio: float,
        cache_key_prefix: str,
        stats_manager: StatsManager,
    ) -> None:
        self.client = client
        self.per_second_client = per_second_client
        self.base = BaseRateLimiter(
            time_source,
            jitter_rand,
            expiration_jitter_max_seconds,
            local_cache,
            near_limit_ratio,
            cache_key_prefix,
            stats_manager,
        )
        self._idle = threading.Condition()
        self._pending = 0

    def do_limit(
        self, request: RateLimitRequest, limits: Sequence[RateLimit | None]
    ) -> list[DescriptorStatus]:
        with self._idle:
            self._pending += 1
        try:
            return self._do_limit(request, limits)
        finally:
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()

    def _do_limit(
        self, request: RateLimitRequest, limits: Sequence[RateLimit | None]
    ) -> list[DescriptorStatus]:
        logger.debug("starting cache lookup")
        hits_addend = max(1, request.hits_addend)
        cache_keys = self.base.generate_cache_keys(request, limits, hits_addend)

        over_local = [False] * len(cache_keys)
        results = [0] * len(cache_keys)
        pipeline: list | None = None
        per_second_pipeline: list | None = None
        slots: list[int] = []
        per_second_slots: list[int] = []

        for i, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
            if cache_key.key == "":
                continue
            if self.base.is_over_limit_with_local_cache(cache_key.key):
                if limit.shadow_mode:
                    logger.debug(
                        "Cache key %s would be rate limited but shadow mode is enabled on this rule",
                        cache_key.key,
                    )
                else:
                    logger.debug("cache key is over the limit: %s", cache_key.key)
                    over_local[i] = True
                continue

            logger.debug("looking up cache key: %s", cache_key.key)
            expiration = unit_to_divider(limit.limit.unit)
            if self.base.expiration_jitter_max_seconds > 0:
                expiration += self.base.jitter_rand.randrange(
                    self.base.expiration_jitter_max_seconds
                )

            if self.per_second_client is not None and cache_key.per_second:
                client = self.per_second_client
                per_second_pipeline = per_second_pipeline or []
                per_second_slots.append(i)
                per_second_pipeline = client.pipe_append(
                    per_second_pipeline, "INCRBY", cache_key.key, hits_addend
                )
                per_second_pipeline = client.pipe_append(
                    per_second_pipeline, "EXPIRE", cache_key.key, expiration
                )
            else:
                pipeline = pipeline or []
                slots.append(i)
                pipeline = self.client.pipe_append(pipeline, "INCRBY", cache_key.key, hits_addend)
                pipeline = self.client.pipe_append(pipeline, "EXPIRE", cache_key.key, expiration)

        if pipeline:
            self._collect(self.client.pipe_do(pipeline), slots, results)
        if per_second_pipeline:
            self._collect(
                self.per_second_client.pipe_do(per_second_pipeline), per_second_slots, results
            )

        statuses = []
        for i, cache_key in enumerate(cache_keys):
            after = results[i]
            info = LimitInfo(limits[i], after - hits_addend, after)
            statuses.append(
                self.base.get_response_descriptor_status(
                    cache_key.key, info, over_local[i], hits_addend
                )
            )
        return statuses

    @staticmethod
    def _collect(replies: list, slots: list[int], results: list[int]) -> None:
        # Each slot queued an INCRBY followed by an EXPIRE.
        for position, slot in enumerate(slots):
            results[slot] = int(replies[2 * position])

    def flush(self) -> None:
        """Wait until no do_limit call is in progress; redis updates are synchronous."""
        with self._idle:
            self._idle.wait_for(lambda: self._pending == 0)