"""Loading of YAML rate limit configuration and lookup of limits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import yaml

from .metrics import RateLimitStats, StatsManager
from .model import RateLimitDescriptor, RateLimitValue, Unit, parse_unit

logger = logging.getLogger(__name__)

_VALID_KEYS = frozenset(
    {
        "domain",
        "key",
        "value",
        "descriptors",
        "rate_limit",
        "unit",
        "requests_per_unit",
        "unlimited",
        "shadow_mode",
        "name",
        "replaces",
    }
)

_UINT32_MAX = 2**32 - 1


class RateLimitConfigError(Exception):
    """Raised when a configuration cannot be loaded."""


@dataclass
class RateLimit:
    """A configured limit together with its statistics."""

    full_key: str
    stats: RateLimitStats
    limit: RateLimitValue
    unlimited: bool = False
    shadow_mode: bool = False
    name: str = ""
    replaces: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RateLimitConfigToLoad:
    """One configuration file: its name and its YAML text."""

    name: str
    contents: str


def new_rate_limit(
    requests_per_unit: int,
    unit: Unit,
    stats: RateLimitStats,
    unlimited: bool,
    shadow_mode: bool,
    name: str,
    replaces: Iterable[str] | None,
) -> RateLimit:
    return RateLimit(
        full_key=stats.key,
        stats=stats,
        limit=RateLimitValue(requests_per_unit, Unit(unit)),
        unlimited=unlimited,
        shadow_mode=shadow_mode,
        name=name,
        replaces=list(replaces or []),
    )


def _error(config: RateLimitConfigToLoad, text: str) -> RateLimitConfigError:
    return RateLimitConfigError(f"{config.name}: {text}")


def _load_error(config: RateLimitConfigToLoad, text: str) -> RateLimitConfigError:
    message = f"error loading config file: {text}"
    logger.debug(message)
    return _error(config, message)


def _as_str(config: RateLimitConfigToLoad, value: Any, what: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int)):
        return str(value)
    raise _load_error(config, f"cannot decode {type(value).__name__} into string field '{what}'")


def _as_bool(config: RateLimitConfigToLoad, value: Any, what: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise _load_error(config, f"cannot decode {value!r} into bool field '{what}'")


def _as_uint32(config: RateLimitConfigToLoad, value: Any, what: str) -> int:
    if value is None:
        return 0
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= _UINT32_MAX:
        return value
    raise _load_error(config, f"cannot decode {value!r} into uint32 field '{what}'")


def _as_list(config: RateLimitConfigToLoad, value: Any, what: str) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise _load_error(config, f"cannot decode {type(value).__name__} into list field '{what}'")


def _as_map(config: RateLimitConfigToLoad, value: Any, what: str) -> dict | None:
    if value is None or isinstance(value, dict):
        return value
    raise _load_error(config, f"cannot decode {type(value).__name__} into map field '{what}'")


def _validate_keys(config: RateLimitConfigToLoad, mapping: dict) -> None:
    for key, value in mapping.items():
        if not isinstance(key, str):
            text = f"config error, key is not of type string: {key}"
            logger.debug(text)
            raise _error(config, text)
        if key not in _VALID_KEYS:
            text = f"config error, unknown key '{key}'"
            logger.debug(text)
            raise _error(config, text)
        if isinstance(value, list):
            for element in value:
                if not isinstance(element, dict):
                    text = f"config error, yaml file contains list of type other than map: {element}"
                    logger.debug(text)
                    raise _error(config, text)
                _validate_keys(config, element)
        elif isinstance(value, dict):
            _validate_keys(config, value)
        elif value is None or isinstance(value, (str, int, bool)):
            continue
        else:
            text = "error checking config"
            logger.debug(text)
            raise _error(config, text)


@dataclass
class _Descriptor:
    descriptors: dict[str, _Descriptor] = field(default_factory=dict)
    limit: RateLimit | None = None

    def dump(self) -> str:
        lines = []
        if self.limit is not None:
            lines.append(
                f"{self.limit.full_key}: unit={self.limit.limit.unit.name} "
                f"requests_per_unit={self.limit.limit.requests_per_unit}, "
                f"shadow_mode: {str(self.limit.shadow_mode).lower()}\n"
            )
        lines.extend(child.dump() for child in self.descriptors.values())
        return "".join(lines)

    def load(
        self,
        config: RateLimitConfigToLoad,
        parent_key: str,
        descriptors: list,
        stats_manager: StatsManager,
    ) -> None:
        for raw in descriptors:
            key = _as_str(config, raw.get("key"), "key")
            value = _as_str(config, raw.get("value"), "value")
            shadow_mode = _as_bool(config, raw.get("shadow_mode"), "shadow_mode")
            raw_limit = _as_map(config, raw.get("rate_limit"), "rate_limit")
            children = _as_list(config, raw.get("descriptors"), "descriptors")

            if not key:
                raise _error(config, "descriptor has empty key")

            final_key = f"{key}_{value}" if value else key
            new_parent_key = parent_key + final_key
            if final_key in self.descriptors:
                raise _error(config, f"duplicate descriptor composite key '{new_parent_key}'")

            rate_limit = None
            debug = ""
            if raw_limit is not None:
                rate_limit = self._build_limit(
                    config, new_parent_key, raw_limit, shadow_mode, stats_manager
                )
                debug = (
                    f" ratelimit={{requests_per_unit={rate_limit.limit.requests_per_unit}, "
                    f"unit={rate_limit.limit.unit.name}, "
                    f"unlimited={str(rate_limit.unlimited).lower()}, "
                    f"shadow_mode={str(rate_limit.shadow_mode).lower()}}}"
                )

            logger.debug("loading descriptor: key=%s%s", new_parent_key, debug)
            child = _Descriptor(limit=rate_limit)
            child.load(config, new_parent_key + ".", children, stats_manager)
            self.descriptors[final_key] = child

    @staticmethod
    def _build_limit(
        config: RateLimitConfigToLoad,
        full_key: str,
        raw: dict,
        shadow_mode: bool,
        stats_manager: StatsManager,
    ) -> RateLimit:
        unit_name = _as_str(config, raw.get("unit"), "unit")
        requests_per_unit = _as_uint32(config, raw.get("requests_per_unit"), "requests_per_unit")
        unlimited = _as_bool(config, raw.get("unlimited"), "unlimited")
        name = _as_str(config, raw.get("name"), "name")
        replaces = [
            _as_str(config, (_as_map(config, entry, "replaces") or {}).get("name"), "name")
            for entry in _as_list(config, raw.get("replaces"), "replaces")
        ]

        unit = parse_unit(unit_name)
        valid_unit = unit is not Unit.UNKNOWN
        if unlimited:
            if valid_unit:
                raise _error(config, "should not specify rate limit unit when unlimited")
        elif not valid_unit:
            raise _error(config, f"invalid rate limit unit '{unit_name}'")

        rate_limit = new_rate_limit(
            requests_per_unit,
            unit,
            stats_manager.new_stats(full_key),
            unlimited,
            shadow_mode,
            name,
            replaces,
        )

        for replaced in replaces:
            if replaced == "":
                raise _error(config, "should not have an empty replaces entry")
            if replaced == name:
                raise _error(config, "replaces should not contain name of same descriptor")
        return rate_limit


def descriptor_key(domain: str, descriptor: RateLimitDescriptor) -> str:
    """Build the stats key for a descriptor: domain.key_value.key_value..."""
    parts = [f"{e.key}_{e.value}" if e.value else e.key for e in descriptor.entries]
    return f"{domain}.{'.'.join(parts)}"


class RateLimitConfig:
    """A loaded set of rate limit domains."""

    def __init__(self, stats_manager: StatsManager, merge_domain_configs: bool = False) -> None:
        self._domains: dict[str, _Descriptor] = {}
        self._stats_manager = stats_manager
        self._merge_domain_configs = merge_domain_configs

    def _load(self, config: RateLimitConfigToLoad) -> None:
        try:
            document = yaml.safe_load(config.contents)
        except yaml.YAMLError as err:
            raise _load_error(config, str(err)) from err
        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise _load_error(config, f"cannot decode {type(document).__name__} into a map")
        _validate_keys(config, document)

        domain = _as_str(config, document.get("domain"), "domain")
        descriptors = _as_list(config, document.get("descriptors"), "descriptors")

        if not domain:
            raise _error(config, "config file cannot have empty domain")

        existing = self._domains.get(domain)
        if existing is not None:
            if not self._merge_domain_configs:
                raise _error(config, f"duplicate domain '{domain}' in config file")
            logger.debug("patching domain: %s", domain)
            existing.load(config, domain + ".", descriptors, self._stats_manager)
            return

        logger.debug("loading domain: %s", domain)
        new_domain = _Descriptor()
        new_domain.load(config, domain + ".", descriptors, self._stats_manager)
        self._domains[domain] = new_domain

    def dump(self) -> str:
        """Render every configured limit, one per line, for debugging."""
        return "".join(domain.dump() for domain in self._domains.values())

    def get_limit(self, domain: str, descriptor: RateLimitDescriptor) -> RateLimit | None:
        """Return the limit that applies to a descriptor, or None."""
        logger.debug("starting get limit lookup")
        root = self._domains.get(domain)
        if root is None:
            logger.debug("unknown domain '%s'", domain)
            return None

        if descriptor.limit is not None:
            # Limits supplied with the request never run in shadow mode.
            return new_rate_limit(
                descriptor.limit.requests_per_unit,
                descriptor.limit.unit,
                self._stats_manager.new_stats(descriptor_key(domain, descriptor)),
                False,
                False,
                "",
                [],
            )

        rate_limit = None
        descriptors = root.descriptors
        last = len(descriptor.entries) - 1
        for position, entry in enumerate(descriptor.entries):
            final_key = f"{entry.key}_{entry.value}"
            logger.debug("looking up key: %s", final_key)
            node = descriptors.get(final_key)
            if node is None:
                final_key = entry.key
                logger.debug("looking up key: %s", final_key)
                node = descriptors.get(final_key)

            if node is not None and node.limit is not None:
                logger.debug("found rate limit: %s", final_key)
                if position == last:
                    rate_limit = node.limit
                else:
                    logger.debug(
                        "request depth does not match config depth, "
                        "there are more entries in the request's descriptor"
                    )

            if node is not None and node.descriptors:
                logger.debug("iterating to next level")
                descriptors = node.descriptors
            else:
                break

        return rate_limit


def load_config(
    configs: Iterable[RateLimitConfigToLoad],
    stats_manager: StatsManager,
    merge_domain_configs: bool = False,
) -> RateLimitConfig:
    """Build a configuration from YAML files; raises RateLimitConfigError."""
    result = RateLimitConfig(stats_manager, merge_domain_configs)
    for config in configs:
        result._load(config)
    return result