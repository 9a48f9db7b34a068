# ratelimit_service

Descriptor-based rate limiting. Limits are declared per domain in YAML files as
a tree of descriptors (`key`/`value` pairs), each optionally carrying a
`rate_limit` with `requests_per_unit` and a `unit` (`second`, `minute`,
`hour`, `day`). Requests are matched against that tree and counted in Redis
or memcached using fixed time windows.

## Installing

```
pip install .
```

## Configuration files

```yaml
domain: mongo_cps
descriptors:
  - key: database
    value: users
    rate_limit:
      unit: second
      requests_per_unit: 500
  - key: database
    value: default
    shadow_mode: true
    rate_limit:
      unit: minute
      requests_per_unit: 500
```

Only the keys `domain`, `key`, `value`, `descriptors`, `rate_limit`, `unit`,
`requests_per_unit`, `unlimited`, `shadow_mode`, `name` and `replaces` are
accepted. Every descriptor needs a non-empty `key`, and a file needs a
non-empty `domain`. A limit marked `unlimited: true` must not name a unit; any
other limit must name a valid one. Entries under `replaces` must have a
non-empty `name` that differs from the limit's own `name`. Two files naming
the same domain are rejected unless domain merging is switched on, in which
case their descriptors are combined. Any of these problems raises
`ratelimit_service.config.RateLimitConfigError`, whose message starts with the
file's name.

## Checking a configuration directory

```
ratelimit-config-check --config_dir /etc/ratelimit/config
ratelimit-config-check --config_dir /etc/ratelimit/config --merge_domain_configs
```

The command loads every file in the directory (in name order), prints each
path as it opens it, and exits with status 1 and a message if the directory
cannot be read or any file is invalid. The same check is available in code as
`ratelimit_service.config_check.load_configs(all_configs, merge_domain_configs)`.

## Loading a configuration and looking up limits

```python
from pathlib import Path

from ratelimit_service.config import RateLimitConfigToLoad, load_config
from ratelimit_service.metrics import StatsManager, Store
from ratelimit_service.model import DescriptorEntry, RateLimitDescriptor

text = Path("config.yaml").read_text()
config = load_config(
    [RateLimitConfigToLoad("config.yaml", text)],
    StatsManager(Store()),
    False,
)
limit = config.get_limit(
    "mongo_cps",
    RateLimitDescriptor([DescriptorEntry("database", "users")]),
)
print(config.dump())
```

`get_limit` first tries `key_value` and then `key` alone at each level of the
tree, and returns a limit only when the match ends on the descriptor's last
entry. A descriptor carrying a `LimitOverride` gets that limit instead, never
in shadow mode. Unknown domains and unmatched descriptors give `None`.

## Counting requests

The limits found for a request's descriptors are passed, in the same order,
to a cache's `do_limit(request, limits)`, which returns one `DescriptorStatus`
per descriptor: the code (`Code.OK` or `Code.OVER_LIMIT`), the current limit,
the remaining quota and the seconds until the window resets. A `None` limit
means that descriptor is not checked and always answers `OK`.

- `ratelimit_service.redis_cache.FixedRateLimitCache` counts with `INCRBY`
  and `EXPIRE` through a `ratelimit_service.redis_driver.Client`; limits with
  a `SECOND` unit can go to a separate client. `redis_driver.new_client`
  connects to a single server, a cluster (`host:port,host:port,...`, which
  needs a pipeline window or limit) or a sentinel set
  (`master,sentinel1,...`), checks the connection with `PING` and raises
  `RedisError` on failure.
- `ratelimit_service.memcached_cache.MemcachedRateLimitCache` reads counters
  with one multi-get and increments them in a background worker; `flush()`
  waits for that work and `close()` stops the worker. It works through any
  implementation of `ratelimit_service.memcached_client.Client`, optionally
  wrapped in `StatsCollectingClient` to count successes, misses and errors.
  `ServerList`, `refresh_servers` and `refresh_servers_periodically` keep a
  list of server addresses up to date from an SRV resolver you supply.

Cache keys have the form `<prefix><domain>_<key>_<value>_..._<window start>`
(`ratelimit_service.cache_key.CacheKeyGenerator`). Expiry can be lengthened by
a random jitter. Limits in shadow mode are counted but always answer `OK`. An
optional `ratelimit_service.local_cache.LocalCache` remembers keys that went
over their limit so that further requests in the same window skip the
backend; `LocalCacheStats` copies its hit, miss, entry and eviction counts into
gauges.

## Statistics

`ratelimit_service.metrics` holds in-process counters, gauges and timers,
created through a `Store` and its named `Scope`s and flushed to a
`RecordingSink` that keeps them in memory. A `StatsManager` creates the
per-limit counters (total hits, over limit, near limit, over limit with local
cache, within limit, shadow mode). `ServerReporter.unary_server_interceptor()`
returns a function `(request, full_method, handler)` that counts calls and
records response times in milliseconds per method name.

## What it does not do

The package contains no network server answering rate limit requests and no
command-line client for one; `ratelimit-config-check` is its only command. It
does not include a memcached network client or a DNS SRV resolver: those are
supplied by the caller through `memcached_client.Client` and an object with a
`server_strings_from_srv` method. Statistics stay in process; there is no
exporter to an external metrics system.