"""Redis client used by the rate limit cache: single, cluster and sentinel modes."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol

import redis
import redis.cluster
import redis.sentinel

from .metrics import Counter, Gauge, Scope

logger = logging.getLogger(__name__)


class RedisError(Exception):
    """Raised when talking to redis fails."""


@dataclass(frozen=True)
class _Command:
    cmd: str
    key: str
    args: tuple


Pipeline = list


class HealthChecker(Protocol):
    def health_check_ok(self) -> None: ...

    def health_check_fail(self) -> None: ...


class Client(ABC):
    """Interface for a redis client."""

    @abstractmethod
    def do_cmd(self, cmd: str, key: str, *args: Any) -> Any:
        """Run one command and return its result."""

    @abstractmethod
    def pipe_append(self, pipeline: list, cmd: str, key: str, *args: Any) -> list:
        """Return the pipeline with one more command queued."""

    @abstractmethod
    def pipe_do(self, pipeline: list) -> list:
        """Run every queued command and return their results in order."""

    @abstractmethod
    def close(self) -> None:
        """Close the client."""

    @abstractmethod
    def num_active_conns(self) -> int:
        """Number of active connections."""

    @abstractmethod
    def implicit_pipelining_enabled(self) -> bool:
        """True when commands are pipelined implicitly."""


@dataclass
class PoolStats:
    connection_active: Gauge
    connection_total: Counter
    connection_close: Counter

    @classmethod
    def from_scope(cls, scope: Scope) -> PoolStats:
        return cls(
            scope.new_gauge("cx_active"),
            scope.new_counter("cx_total"),
            scope.new_counter("cx_local_close"),
        )


class RedisClient(Client):
    """A Client over a redis-py connection object."""

    def __init__(
        self,
        backend: Any,
        stats: PoolStats,
        implicit_pipelining: bool,
        health_check_active_connection: bool = False,
        health_checker: HealthChecker | None = None,
    ) -> None:
        self._backend = backend
        self._stats = stats
        self._implicit_pipelining = implicit_pipelining
        self._health_check = health_check_active_connection
        self._health_checker = health_checker
        self._closed = False

    def _connection_opened(self) -> None:
        self._stats.connection_total.add(1)
        self._stats.connection_active.add(1)
        if self._health_check and self._health_checker is not None:
            self._health_checker.health_check_ok()

    def do_cmd(self, cmd: str, key: str, *args: Any) -> Any:
        if self._closed:
            raise RedisError("client is closed")
        try:
            return self._backend.execute_command(cmd, key, *args)
        except (redis.exceptions.RedisError, OSError) as err:
            raise RedisError(str(err)) from err

    def pipe_append(self, pipeline: list, cmd: str, key: str, *args: Any) -> list:
        return [*pipeline, _Command(cmd, key, args)]

    def pipe_do(self, pipeline: list) -> list:
        if self._closed:
            raise RedisError("client is closed")
        try:
            if self._implicit_pipelining:
                return [
                    self._backend.execute_command(c.cmd, c.key, *c.args) for c in pipeline
                ]
            pipe = self._backend.pipeline(transaction=False)
            for c in pipeline:
                pipe.execute_command(c.cmd, c.key, *c.args)
            return list(pipe.execute())
        except (redis.exceptions.RedisError, OSError) as err:
            raise RedisError(str(err)) from err

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._backend.close()
        finally:
            self._stats.connection_active.sub(1)
            self._stats.connection_close.add(1)
            if (
                self._health_check
                and self._health_checker is not None
                and self._stats.connection_active.value() == 0
            ):
                self._health_checker.health_check_fail()

    def num_active_conns(self) -> int:
        return self._stats.connection_active.value()

    def implicit_pipelining_enabled(self) -> bool:
        return self._implicit_pipelining


def _mask_url(url: str) -> str:
    return re.sub(r"//[^@/]*@", "//*****@", url)


def _host_port(address: str) -> tuple[str, int]:
    host, sep, port = address.strip().rpartition(":")
    if not sep or not port.isdigit():
        raise RedisError(f"invalid redis address '{address}'")
    return host, int(port)


def new_client(
    scope: Scope,
    use_tls: bool,
    auth: str,
    socket_type: str,
    redis_type: str,
    url: str,
    pool_size: int,
    pipeline_window: float,
    pipeline_limit: int,
    tls_config: dict | None,
    health_check_active_connection: bool,
    health_checker: HealthChecker | None,
) -> RedisClient:
    """Connect to redis and check the connection with PING; raises RedisError."""
    logger.warning("connecting to redis on %s with pool size %d", _mask_url(url), pool_size)
    options: dict[str, Any] = {"max_connections": pool_size}
    if use_tls:
        options["ssl"] = True
        options.update(tls_config or {})
    if auth:
        logger.warning("enabling authentication to redis on %s", _mask_url(url))
        options["password"] = auth

    implicit_pipelining = not (pipeline_window == 0 and pipeline_limit == 0)
    logger.debug("Implicit pipelining enabled: %s", implicit_pipelining)

    kind = redis_type.lower()
    if kind == "single":
        if socket_type == "unix":
            options.pop("ssl", None)
            backend = redis.Redis(unix_socket_path=url, **options)
        else:
            host, port = _host_port(url)
            backend = redis.Redis(host=host, port=port, **options)
    elif kind == "cluster":
        urls = url.split(",")
        if not implicit_pipelining:
            raise RedisError(
                "Implicit Pipelining must be enabled to work with Redis Cluster Mode. "
                "Set values for REDIS_PIPELINE_WINDOW or REDIS_PIPELINE_LIMIT to enable "
                "implicit pipelining"
            )
        logger.warning("Creating cluster with urls %s", urls)
        nodes = [redis.cluster.ClusterNode(*_host_port(u)) for u in urls]
        backend = redis.cluster.RedisCluster(startup_nodes=nodes, **options)
    elif kind == "sentinel":
        urls = url.split(",")
        if len(urls) < 2:
            raise RedisError(
                "Expected master name and a list of urls for the sentinels, in the format: "
                "<redis master name>,<sentinel1>,...,<sentineln>"
            )
        sentinel = redis.sentinel.Sentinel([_host_port(u) for u in urls[1:]])
        backend = sentinel.master_for(urls[0], **options)
    else:
        raise RedisError("Unrecognized redis type " + redis_type)

    try:
        pong = backend.ping()
    except (redis.exceptions.RedisError, OSError) as err:
        raise RedisError(str(err)) from err
    if pong is not True and pong not in ("PONG", b"PONG"):
        raise RedisError(f"connecting redis error: {pong}")

    client = RedisClient(
        backend,
        PoolStats.from_scope(scope),
        implicit_pipelining,
        health_check_active_connection,
        health_checker,
    )
    client._connection_opened()
    return client