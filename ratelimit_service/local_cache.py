"""A small in-process cache with expiry, and gauges that report on it."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from .metrics import Scope


@dataclass
class _Entry:
    value: bytes
    expire_at: int
    access_time: int


class LocalCache:
    """A bounded key/value cache with per-entry expiry and usage counters.

    Entries past their expiry are treated as missing. When the cache is full
    the least recently used entry is evicted.
    """

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.time) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._hit_count = 0
        self._miss_count = 0
        self._expired_count = 0
        self._evacuate_count = 0
        self._overwrite_count = 0

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _is_expired(entry: _Entry, now: int) -> bool:
        return entry.expire_at != 0 and entry.expire_at <= now

    def get(self, key: str) -> bytes:
        """Return the value stored under key; raises KeyError if absent or expired."""
        now = self._now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._miss_count += 1
                raise KeyError(key)
            if self._is_expired(entry, now):
                del self._entries[key]
                self._expired_count += 1
                self._miss_count += 1
                raise KeyError(key)
            entry.access_time = now
            self._entries.move_to_end(key)
            self._hit_count += 1
            return entry.value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Store value under key; a ttl of 0 or less means it never expires."""
        now = self._now()
        expire_at = now + ttl_seconds if ttl_seconds > 0 else 0
        with self._lock:
            if key in self._entries:
                self._overwrite_count += 1
                self._entries.move_to_end(key)
            else:
                while len(self._entries) >= self._max_entries:
                    _, evicted = self._entries.popitem(last=False)
                    if self._is_expired(evicted, now):
                        self._expired_count += 1
                    else:
                        self._evacuate_count += 1
            self._entries[key] = _Entry(bytes(value), expire_at, now)

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def hit_count(self) -> int:
        with self._lock:
            return self._hit_count

    @property
    def miss_count(self) -> int:
        with self._lock:
            return self._miss_count

    @property
    def lookup_count(self) -> int:
        with self._lock:
            return self._hit_count + self._miss_count

    @property
    def expired_count(self) -> int:
        with self._lock:
            return self._expired_count

    @property
    def evacuate_count(self) -> int:
        with self._lock:
            return self._evacuate_count

    @property
    def overwrite_count(self) -> int:
        with self._lock:
            return self._overwrite_count

    @property
    def average_access_time(self) -> int:
        """Mean of the last access times (unix seconds) of the stored entries."""
        with self._lock:
            if not self._entries:
                return 0
            total = sum(entry.access_time for entry in self._entries.values())
            return total // len(self._entries)


class LocalCacheStats:
    """Copies the usage counters of a LocalCache into gauges."""

    def __init__(self, cache: LocalCache, scope: Scope) -> None:
        self._cache = cache
        self._evacuate_count = scope.new_gauge("evacuateCount")
        self._expired_count = scope.new_gauge("expiredCount")
        self._entry_count = scope.new_gauge("entryCount")
        self._average_access_time = scope.new_gauge("averageAccessTime")
        self._hit_count = scope.new_gauge("hitCount")
        self._miss_count = scope.new_gauge("missCount")
        self._lookup_count = scope.new_gauge("lookupCount")
        self._overwrite_count = scope.new_gauge("overwriteCount")

    def generate_stats(self) -> None:
        cache = self._cache
        self._evacuate_count.set(cache.evacuate_count)
        self._expired_count.set(cache.expired_count)
        self._entry_count.set(cache.entry_count)
        self._average_access_time.set(cache.average_access_time)
        self._hit_count.set(cache.hit_count)
        self._miss_count.set(cache.miss_count)
        self._lookup_count.set(cache.lookup_count)
        self._overwrite_count.set(cache.overwrite_count)