import pytest

from ratelimit_service.metrics import Store
from ratelimit_service.redis_driver import PoolStats, RedisClient, RedisError, new_client


class FakeBackend:
    def __init__(self):
        self.data = {}
        self.broken = False
        self.pipelines = 0

    def execute_command(self, cmd, key, *args):
        if self.broken:
            raise ConnectionError("EOF")
        if cmd == "SET":
            self.data[key] = args[0]
            return True
        if cmd == "GET":
            return self.data.get(key)
        if cmd == "INCRBY":
            self.data[key] = int(self.data.get(key, 0)) + int(args[0])
            return self.data[key]
        if cmd == "EXPIRE":
            return 1
        raise AssertionError(cmd)

    def pipeline(self, transaction=False):
        self.pipelines += 1
        backend = self

        class Pipe:
            def __init__(self):
                self.cmds = []

            def execute_command(self, *a):
                self.cmds.append(a)

            def execute(self):
                return [backend.execute_command(*a) for a in self.cmds]

        return Pipe()

    def close(self):
        pass


def make(implicit):
    backend = FakeBackend()
    stats = PoolStats.from_scope(Store())
    return backend, RedisClient(backend, stats, implicit)


def test_connection_refused():
    with pytest.raises(RedisError):
        new_client(Store(), False, "", "tcp", "single", "localhost:1", 1, 0, 0, None, False, None)


def test_unrecognized_type():
    with pytest.raises(RedisError, match="Unrecognized redis type bogus"):
        new_client(Store(), False, "", "tcp", "bogus", "localhost:1", 1, 0, 0, None, False, None)


def test_cluster_requires_pipelining():
    with pytest.raises(RedisError, match="Implicit Pipelining must be enabled"):
        new_client(Store(), False, "", "tcp", "cluster", "localhost:1", 1, 0, 0, None, False, None)


def test_sentinel_requires_urls():
    with pytest.raises(RedisError, match="Expected master name"):
        new_client(Store(), False, "", "tcp", "sentinel", "mymaster", 1, 0, 0, None, False, None)


@pytest.mark.parametrize("implicit", [True, False])
def test_implicit_flag(implicit):
    _, client = make(implicit)
    assert client.implicit_pipelining_enabled() is implicit


def test_do_cmd_set_get_and_incrby():
    _, client = make(False)
    assert client.do_cmd("SET", "foo", "bar") is True
    assert client.do_cmd("GET", "foo") == "bar"
    assert client.do_cmd("INCRBY", "a", 1) == 1
    assert client.do_cmd("INCRBY", "a", 1) == 2


def test_do_cmd_connection_broken():
    backend, client = make(False)
    backend.broken = True
    with pytest.raises(RedisError, match="EOF"):
        client.do_cmd("GET", "foo")


@pytest.mark.parametrize("implicit", [True, False])
def test_pipe_do(implicit):
    backend, client = make(implicit)
    pipeline = client.pipe_append([], "SET", "foo", "bar")
    pipeline = client.pipe_append(pipeline, "GET", "foo")
    assert client.pipe_do(pipeline) == [True, "bar"]
    assert client.pipe_do(client.pipe_append([], "INCRBY", "a", 1)) == [1]
    assert client.pipe_do(client.pipe_append([], "INCRBY", "a", 1)) == [2]
    assert backend.pipelines == (0 if implicit else 3)


@pytest.mark.parametrize("implicit", [True, False])
def test_pipe_do_connection_broken(implicit):
    backend, client = make(implicit)
    backend.broken = True
    with pytest.raises(RedisError, match="EOF"):
        client.pipe_do(client.pipe_append([], "GET", "foo"))


def test_pipe_append_does_not_mutate():
    _, client = make(False)
    empty = []
    assert len(client.pipe_append(empty, "GET", "x")) == 1
    assert empty == []


def test_close_updates_stats_and_health():
    events = []

    class Checker:
        def health_check_ok(self):
            events.append("ok")

        def health_check_fail(self):
            events.append("fail")

    stats = PoolStats.from_scope(Store())
    client = RedisClient(FakeBackend(), stats, False, True, Checker())
    client._connection_opened()
    assert client.num_active_conns() == 1
    client.close()
    assert client.num_active_conns() == 0
    assert events == ["ok", "fail"]
    with pytest.raises(RedisError):
        client.do_cmd("GET", "x")