"""Request, response and time types shared by the rate limit service."""

from __future__ import annotations

import enum
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class Unit(enum.IntEnum):
    UNKNOWN = 0
    SECOND = 1
    MINUTE = 2
    HOUR = 3
    DAY = 4


class Code(enum.IntEnum):
    UNKNOWN = 0
    OK = 1
    OVER_LIMIT = 2


@dataclass(frozen=True)
class DescriptorEntry:
    key: str
    value: str = ""


@dataclass(frozen=True)
class LimitOverride:
    """A limit supplied by the caller instead of the configuration."""

    requests_per_unit: int
    unit: Unit


@dataclass
class RateLimitDescriptor:
    entries: list[DescriptorEntry] = field(default_factory=list)
    limit: LimitOverride | None = None


@dataclass
class RateLimitRequest:
    domain: str
    descriptors: list[RateLimitDescriptor] = field(default_factory=list)
    hits_addend: int = 0


@dataclass(frozen=True)
class RateLimitValue:
    """The configured number of requests allowed per unit of time."""

    requests_per_unit: int
    unit: Unit


@dataclass
class DescriptorStatus:
    code: Code
    current_limit: RateLimitValue | None = None
    limit_remaining: int = 0
    duration_until_reset: int | None = None


class TimeSource:
    """Supplies the current unix time in seconds."""

    def unix_now(self) -> int:
        return int(time.time())


class RateLimitCache(ABC):
    """A cache backend that performs rate limiting."""

    @abstractmethod
    def do_limit(self, request: RateLimitRequest, limits: list) -> list[DescriptorStatus]:
        """Return one status per descriptor; a limit of None means the descriptor is not checked."""

    @abstractmethod
    def flush(self) -> None:
        """Wait for any unfinished asynchronous work."""


_DIVIDERS = {
    Unit.SECOND: 1,
    Unit.MINUTE: 60,
    Unit.HOUR: 60 * 60,
    Unit.DAY: 60 * 60 * 24,
}


def parse_unit(name: str) -> Unit:
    """Parse a unit name case-insensitively; unknown names give Unit.UNKNOWN."""
    try:
        return Unit[name.upper()]
    except KeyError:
        return Unit.UNKNOWN


def unit_to_divider(unit: Unit) -> int:
    """Number of seconds in one unit."""
    try:
        return _DIVIDERS[Unit(unit)]
    except (KeyError, ValueError):
        raise ValueError(f"unit has no duration: {unit!r}") from None


def calculate_reset(unit: Unit, time_source: TimeSource) -> int:
    """Seconds until the current window of the given unit ends."""
    divider = unit_to_divider(unit)
    now = time_source.unix_now()
    return divider - now % divider