"""The memcached client interface and a wrapper that counts its calls."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from .metrics import Scope


class MemcacheError(Exception):
    """Raised when talking to memcached fails."""


class CacheMissError(MemcacheError):
    """The requested key is not stored."""


class NotStoredError(MemcacheError):
    """An add was refused because the key already exists."""


@dataclass
class Item:
    """A memcached entry; expiration is in seconds, 0 meaning never."""

    key: str
    value: bytes
    expiration: int = 0


class Client(ABC):
    """The operations the rate limiter needs from memcached."""

    @abstractmethod
    def get_multi(self, keys: Sequence[str]) -> dict[str, Item]:
        """Return the items found for the given keys; missing keys are left out."""

    @abstractmethod
    def increment(self, key: str, delta: int) -> int:
        """Add delta to a stored number and return the new value; raises CacheMissError."""

    @abstractmethod
    def add(self, item: Item) -> None:
        """Store an item only if its key is absent; raises NotStoredError."""


class StatsCollectingClient(Client):
    """Wraps a Client and counts successes, misses and errors of every call."""

    def __init__(self, client: Client, scope: Scope) -> None:
        self._client = client
        self.multi_get_success = scope.new_counter_with_tags("multiget", {"code": "success"})
        self.multi_get_error = scope.new_counter_with_tags("multiget", {"code": "error"})
        self.increment_success = scope.new_counter_with_tags("increment", {"code": "success"})
        self.increment_miss = scope.new_counter_with_tags("increment", {"code": "miss"})
        self.increment_error = scope.new_counter_with_tags("increment", {"code": "error"})
        self.add_success = scope.new_counter_with_tags("add", {"code": "success"})
        self.add_error = scope.new_counter_with_tags("add", {"code": "error"})
        self.add_not_stored = scope.new_counter_with_tags("add", {"code": "not_stored"})
        self.keys_requested = scope.new_counter("keys_requested")
        self.keys_found = scope.new_counter("keys_found")

    def get_multi(self, keys: Sequence[str]) -> dict[str, Item]:
        self.keys_requested.add(len(keys))
        try:
            results = self._client.get_multi(keys)
        except Exception:
            self.multi_get_error.inc()
            raise
        self.keys_found.add(len(results))
        self.multi_get_success.inc()
        return results

    def increment(self, key: str, delta: int) -> int:
        try:
            value = self._client.increment(key, delta)
        except CacheMissError:
            self.increment_miss.inc()
            raise
        except Exception:
            self.increment_error.inc()
            raise
        self.increment_success.inc()
        return value

    def add(self, item: Item) -> None:
        try:
            self._client.add(item)
        except NotStoredError:
            self.add_not_stored.inc()
            raise
        except Exception:
            self.add_error.inc()
            raise
        self.add_success.inc()