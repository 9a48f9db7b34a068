"""In-process statistics: counters, gauges, timers, scopes and a flushing store."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

_T = TypeVar("_T")


class Counter:
    """A monotonically increasing count that reports deltas on flush."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._value = 0
        self._flushed = 0

    def add(self, delta: int) -> None:
        with self._lock:
            self._value += delta

    def inc(self) -> None:
        self.add(1)

    def value(self) -> int:
        with self._lock:
            return self._value

    def _latch(self) -> int:
        with self._lock:
            delta = self._value - self._flushed
            self._flushed = self._value
            return delta


class Gauge:
    """A value that can be set, raised and lowered."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._value = 0

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    def add(self, delta: int) -> None:
        with self._lock:
            self._value += delta

    def sub(self, delta: int) -> None:
        with self._lock:
            self._value -= delta

    def value(self) -> int:
        with self._lock:
            return self._value


class Timer:
    """Records timing samples; each sample goes straight to the sink."""

    def __init__(self, name: str, sink: RecordingSink | None) -> None:
        self.name = name
        self._sink = sink
        self._lock = threading.Lock()
        self._values: list[float] = []

    def add_value(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
        if self._sink is not None:
            self._sink.flush_timer(self.name, value)

    def values(self) -> list[float]:
        with self._lock:
            return list(self._values)


class RecordingSink:
    """A sink that keeps everything flushed to it in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: dict[str, int] = {}
        self.gauges: dict[str, int] = {}
        self.timers: dict[str, list[float]] = {}
        self.record: dict[str, Any] = {}

    def flush_counter(self, name: str, value: int) -> None:
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + value
            self.record[name] = value

    def flush_gauge(self, name: str, value: int) -> None:
        with self._lock:
            self.gauges[name] = value
            self.record[name] = value

    def flush_timer(self, name: str, value: float) -> None:
        with self._lock:
            self.timers.setdefault(name, []).append(value)
            self.record[name] = value

    def clear(self) -> None:
        with self._lock:
            self.counters.clear()
            self.gauges.clear()
            self.timers.clear()
            self.record.clear()


class Scope:
    """A named prefix under which statistics are created."""

    def __init__(self, store: Store, prefix: str = "") -> None:
        self._store = store
        self._prefix = prefix

    def _full_name(self, name: str) -> str:
        return f"{self._prefix}.{name}" if self._prefix else name

    def scope(self, name: str) -> Scope:
        return Scope(self._store, self._full_name(name))

    def new_counter(self, name: str) -> Counter:
        return self._store._register(self._store._counters, self._full_name(name), Counter)

    def new_counter_with_tags(self, name: str, tags: dict[str, str]) -> Counter:
        suffix = "".join(f".__{key}={value}" for key, value in sorted(tags.items()))
        return self.new_counter(name + suffix)

    def new_gauge(self, name: str) -> Gauge:
        return self._store._register(self._store._gauges, self._full_name(name), Gauge)

    def new_timer(self, name: str) -> Timer:
        sink = self._store._sink
        return self._store._register(
            self._store._timers, self._full_name(name), lambda full: Timer(full, sink)
        )


class Store(Scope):
    """Root scope owning every statistic and flushing them to a sink."""

    def __init__(self, sink: RecordingSink | None = None) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._timers: dict[str, Timer] = {}
        super().__init__(self, "")

    def _register(self, registry: dict[str, _T], name: str, factory: Callable[[str], _T]) -> _T:
        with self._lock:
            stat = registry.get(name)
            if stat is None:
                stat = factory(name)
                registry[name] = stat
            return stat

    def flush(self) -> None:
        with self._lock:
            counters = list(self._counters.values())
            gauges = list(self._gauges.values())
        for counter in counters:
            delta = counter._latch()
            if self._sink is not None:
                self._sink.flush_counter(counter.name, delta)
        for gauge in gauges:
            if self._sink is not None:
                self._sink.flush_gauge(gauge.name, gauge.value())


@dataclass
class RateLimitStats:
    """Counters kept for one rate limit."""

    key: str
    total_hits: Counter
    over_limit: Counter
    near_limit: Counter
    over_limit_with_local_cache: Counter
    within_limit: Counter
    shadow_mode: Counter


class StatsManager:
    """Creates per-limit statistics under a common scope."""

    def __init__(self, scope: Scope, prefix: str = "ratelimit.service.rate_limit") -> None:
        self._scope = scope.scope(prefix) if prefix else scope

    def new_stats(self, key: str) -> RateLimitStats:
        scope = self._scope.scope(key)
        return RateLimitStats(
            key=key,
            total_hits=scope.new_counter("total_hits"),
            over_limit=scope.new_counter("over_limit"),
            near_limit=scope.new_counter("near_limit"),
            over_limit_with_local_cache=scope.new_counter("over_limit_with_local_cache"),
            within_limit=scope.new_counter("within_limit"),
            shadow_mode=scope.new_counter("shadow_mode"),
        )


def split_method_name(full_method_name: str) -> tuple[str, str]:
    """Split '/service/method' into its service and method parts."""
    if full_method_name.startswith("/"):
        full_method_name = full_method_name[1:]
    service, sep, method = full_method_name.partition("/")
    if not sep:
        return "unknown", "unknown"
    return service, method


class ServerReporter:
    """Reports request counts and response times for server calls."""

    def __init__(self, scope: Scope) -> None:
        self._scope = scope

    def unary_server_interceptor(self) -> Callable[[Any, str, Callable[[Any], Any]], Any]:
        def interceptor(request: Any, full_method: str, handler: Callable[[Any], Any]) -> Any:
            start = time.perf_counter_ns()
            _, method = split_method_name(full_method)
            total_requests = self._scope.new_counter(method + ".total_requests")
            response_time = self._scope.new_timer(method + ".response_time")
            total_requests.inc()
            try:
                return handler(request)
            finally:
                elapsed_ms = (time.perf_counter_ns() - start) // 1_000_000
                response_time.add_value(float(elapsed_ms))

        return interceptor