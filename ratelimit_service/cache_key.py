"""Generation of backend cache keys for rate limit lookups."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .model import RateLimitDescriptor, Unit, unit_to_divider

if TYPE_CHECKING:
    from .config import RateLimit


@dataclass(frozen=True)
class CacheKey:
    """A cache key; per_second is true when the limit's unit is SECOND."""

    key: str
    per_second: bool = False


def is_per_second_limit(unit: Unit) -> bool:
    return unit == Unit.SECOND


class CacheKeyGenerator:
    """Builds keys of the form <prefix><domain>_<key>_<value>_..._<window start>."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    def generate_cache_key(
        self,
        domain: str,
        descriptor: RateLimitDescriptor,
        limit: RateLimit | None,
        now: int,
    ) -> CacheKey:
        """Return the key for a lookup; an empty key when there is no limit."""
        if limit is None:
            return CacheKey("", False)

        entries = "".join(f"{entry.key}_{entry.value}_" for entry in descriptor.entries)
        unit = limit.limit.unit
        divider = unit_to_divider(unit)
        window_start = (now // divider) * divider
        return CacheKey(
            f"{self.prefix}{domain}_{entries}{window_start}",
            is_per_second_limit(unit),
        )