"""Rate limiting backed by memcached.

Counters are read with one multi-get and incremented in the background,
since memcached has no multi-increment. A missing key is created with an
explicit add; if that add loses a race, the increment is tried again.
Memcached keys are limited to 250 characters.
"""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Protocol, Sequence

from .base_limiter import BaseRateLimiter, LimitInfo
from .cache_key import CacheKey
from .local_cache import LocalCache
from .memcached_client import CacheMissError, Client, Item, MemcacheError, NotStoredError
from .metrics import StatsManager
from .model import DescriptorStatus, RateLimitCache, RateLimitRequest, TimeSource, unit_to_divider

if TYPE_CHECKING:
    from .config import RateLimit

logger = logging.getLogger(__name__)

_UINT32_MASK = 0xFFFFFFFF
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


class SrvResolver(Protocol):
    def server_strings_from_srv(self, srv: str) -> list[str]: ...


def _check_server(server: str) -> str:
    server = server.strip()
    if "/" in server:
        return server
    host, sep, port = server.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise MemcacheError(f"invalid memcache server address '{server}'")
    return server


class ServerList:
    """A thread-safe list of memcached server addresses."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._servers: list[str] = []

    def set_servers(self, *args: str) -> None:
        """Replace the servers; raises MemcacheError and keeps the old ones on a bad address."""
        servers = [_check_server(server) for server in args]
        with self._lock:
            self._servers = servers

    def servers(self) -> list[str]:
        with self._lock:
            return list(self._servers)


def refresh_servers(server_list: ServerList, srv: str, resolver: SrvResolver) -> None:
    """Resolve the SRV record and replace the server list; errors leave it unchanged."""
    servers = resolver.server_strings_from_srv(srv)
    server_list.set_servers(*servers)


def refresh_servers_periodically(
    server_list: ServerList,
    srv: str,
    interval: float,
    resolver: SrvResolver,
    finish: threading.Event,
) -> None:
    """Refresh the server list every interval seconds until finish is set."""
    while not finish.wait(interval):
        try:
            refresh_servers(server_list, srv, resolver)
        except Exception:
            logger.warning("failed to refresh memcache hosts")
        else:
            logger.debug("refreshed memcache hosts")


class MemcachedRateLimitCache(RateLimitCache):
    """Fixed-window limits counted in memcached, with increments done asynchronously."""

    def __init__(
        self,
        client: Client,
        time_source: TimeSource,
        jitter_rand: random.Random,
        expiration_jitter_max_seconds: int,
        local_cache: LocalCache | None,
        stats_manager: StatsManager,
        near_limit_ratio: float,
        cache_key_prefix: str,
        auto_flush: bool = False,
    ) -> None:
        self.client = client
        self.jitter_rand = jitter_rand
        self.expiration_jitter_max_seconds = expiration_jitter_max_seconds
        self.auto_flush = auto_flush
        self.base = BaseRateLimiter(
            time_source,
            jitter_rand,
            expiration_jitter_max_seconds,
            local_cache,
            near_limit_ratio,
            cache_key_prefix,
            stats_manager,
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memcache-increment")
        self._pending = 0
        self._pending_cond = threading.Condition()

    def do_limit(
        self, request: RateLimitRequest, limits: Sequence[RateLimit | None]
    ) -> list[DescriptorStatus]:
        logger.debug("starting cache lookup")
        hits_addend = max(1, request.hits_addend)
        cache_keys = self.base.generate_cache_keys(request, limits, hits_addend)

        over_local = [False] * len(cache_keys)
        keys_to_get = []
        for i, cache_key in enumerate(cache_keys):
            if cache_key.key == "":
                continue
            if self.base.is_over_limit_with_local_cache(cache_key.key):
                over_local[i] = True
                logger.debug("cache key is over the limit: %s", cache_key.key)
                continue
            logger.debug("looking up cache key: %s", cache_key.key)
            keys_to_get.append(cache_key.key)

        values: dict[str, Item] = {}
        if keys_to_get:
            try:
                values = self.client.get_multi(keys_to_get)
            except MemcacheError as err:
                logger.error("Error multi-getting memcache keys (%s): %s", keys_to_get, err)
                values = {}

        statuses = []
        for i, cache_key in enumerate(cache_keys):
            before = self._decode(values.get(cache_key.key))
            after = (before + hits_addend) & _UINT32_MASK
            info = LimitInfo(limits[i], before, after)
            statuses.append(
                self.base.get_response_descriptor_status(
                    cache_key.key, info, over_local[i], hits_addend
                )
            )

        self._submit(list(cache_keys), over_local, list(limits), hits_addend)
        if self.auto_flush:
            self.flush()
        return statuses

    @staticmethod
    def _decode(item: Item | None) -> int:
        if item is None:
            return 0
        try:
            decoded = int(bytes(item.value).decode("ascii"), 10)
            if not _INT32_MIN <= decoded <= _INT32_MAX:
                raise ValueError("out of range")
        except (ValueError, UnicodeDecodeError):
            logger.error("Unexpected non-numeric value in memcached: %r", item)
            return 0
        return decoded & _UINT32_MASK

    def _submit(
        self,
        cache_keys: list[CacheKey],
        over_local: list[bool],
        limits: list,
        hits_addend: int,
    ) -> None:
        with self._pending_cond:
            self._pending += 1

        def task() -> None:
            try:
                self._increase(cache_keys, over_local, limits, hits_addend)
            except Exception:
                logger.exception("unexpected error while incrementing memcache keys")
            finally:
                with self._pending_cond:
                    self._pending -= 1
                    self._pending_cond.notify_all()

        self._executor.submit(task)

    def _increase(
        self,
        cache_keys: list[CacheKey],
        over_local: list[bool],
        limits: list,
        hits_addend: int,
    ) -> None:
        for cache_key, is_over, limit in zip(cache_keys, over_local, limits):
            key = cache_key.key
            if key == "" or is_over:
                continue
            try:
                self.client.increment(key, hits_addend)
            except CacheMissError:
                pass
            except MemcacheError as err:
                logger.error("Failed to increment key %s: %s", key, err)
                continue
            else:
                continue

            expiration = unit_to_divider(limit.limit.unit)
            if self.expiration_jitter_max_seconds > 0:
                expiration += self.jitter_rand.randrange(self.expiration_jitter_max_seconds)
            try:
                self.client.add(Item(key, str(hits_addend).encode(), expiration))
            except NotStoredError:
                # Another writer created the key first; incrementing works now.
                try:
                    self.client.increment(key, hits_addend)
                except MemcacheError as err:
                    logger.error("Failed to increment key %s after failing to add: %s", key, err)
            except MemcacheError as err:
                logger.error("Failed to add key %s: %s", key, err)

    def flush(self) -> None:
        """Wait until every background increment has finished."""
        with self._pending_cond:
            self._pending_cond.wait_for(lambda: self._pending == 0)

    def close(self) -> None:
        """Finish outstanding increments and stop the background worker."""
        self.flush()
        self._executor.shutdown(wait=True)