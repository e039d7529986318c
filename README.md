# chcache

`chcache` stores the results of ClickHouse queries so that repeated queries
can be answered without running them again, and lets concurrent identical
queries wait for the first one instead of all running at once.

## What is in the package

- `chcache.key` – `Key`, a frozen dataclass holding the query text and the
  request settings that change the response (accept encoding, default format,
  database, compression flags, cache namespace, result limits, and hashes of
  user, query-parameter and credential values). `str(key)` is a 32-character
  hex digest used as the storage name; `key.file_path(directory)` joins it
  to a directory. `new_key(query, origin_params, accept_encoding,
  user_params_hash, query_params_hash, user_credential_hash)` builds a key
  from request parameters given as a mapping of names to a value or a list of
  values (as returned by `urllib.parse.parse_qs`).
- `chcache.base` – the `Cache` interface (`get`, `put`, `stats`, `name`,
  `close`), `ContentMetadata`, `CachedData`, `Stats`, `CacheMissError`, and
  the settings dataclasses `CacheConfig`, `FileSystemCacheConfig` and
  `RedisCacheConfig`. Durations in the settings are in seconds.
- `chcache.filesystem` – `FileSystemCache`, one file per entry in a
  directory. Entries past their expiry are still served during the grace
  time. A background thread removes expired files and, when the total size
  is over `max_size`, removes randomly chosen files until it fits (at most
  three passes). `clean()` runs the same cleaning on demand.
- `chcache.redis_cache` – `RedisCache`, which stores each entry under the
  string form of its key. Values are written into a temporary key and
  renamed when complete. Small values are returned from one read; larger
  ones are read in 2 MiB chunks by `RedisStreamReader`, or, when the key has
  15 seconds or less left to live, first copied into a temporary file
  (`FileWriterReader`) that is removed when closed. A value that shrinks or
  disappears while being read raises `RedisCacheError`; undecodable stored
  metadata raises `RedisCacheCorruptionError`.
- `chcache.transactions` – `InMemoryTransactionRegistry` and
  `RedisTransactionRegistry`, which record whether a query is pending,
  completed or failed (`TransactionState`, `TransactionStatus`). Pending
  records expire after the registry's deadline, ended ones after a short
  time.
- `chcache.async_cache` – `AsyncCache`, a cache and a registry in one
  object. `await_for_concurrent_transaction(key)` polls the registry every
  100 ms and returns once the transaction is no longer pending, or an absent
  status once the grace time has passed. `new_async_cache(config,
  max_execution_time)` builds one for `mode="file_system"` or
  `mode="redis"`; any other mode raises `ValueError`. A grace time of 0 in
  the settings means `max_execution_time`; a negative one disables waiting.
- `chcache.clients` – `new_redis_client(config)`, which returns a plain
  Redis client for one address or a cluster client for several, with
  retries and optional TLS, and raises `ConnectionError` if the server does
  not answer a ping.
- `chcache.decompressor` – `CompressedReader`, which reads ClickHouse's
  native compressed block stream (uncompressed, LZ4 and ZSTD blocks). Block
  checksums are skipped, not verified. Truncated or malformed input raises
  `DecompressionError`.
- `chcache.tmpfile_writer` – `TmpFileResponseWriter`, which spools a
  response body into a temporary file, captures the `Content-Type` and
  `Content-Encoding` of the wrapped response on the first write, and
  records the status code (200 when none was set). The wrapped response
  must have a `headers` mapping and a `close_notify()` method.

## Installation

```
pip install chcache
```

## Example

```python
import io

from chcache.async_cache import new_async_cache
from chcache.base import CacheConfig, ContentMetadata, FileSystemCacheConfig
from chcache.key import Key

config = CacheConfig(
    name="results",
    mode="file_system",
    file_system=FileSystemCacheConfig(dir="/var/cache/results", max_size=100 * 1024 * 1024),
    expire=60.0,
)
cache = new_async_cache(config, max_execution_time=30.0)

key = Key(query=b"SELECT 1")
cache.create(key)
cache.put(io.BytesIO(b"1\n"), ContentMetadata(length=2, type="text/plain", encoding=""), key)
cache.complete(key)

with cache.get(key) as data:
    print(data.data.read())

cache.close()
```

A second request for the same query can call
`cache.await_for_concurrent_transaction(key)` before deciding whether to run
the query itself.

## What this package does not do

`chcache` is a library only. It has no command, no HTTP proxy or server, and
does not read configuration files: the caller builds `CacheConfig` objects,
forwards queries to ClickHouse and passes the responses to the cache.

## Running the tests

```
pip install chcache[test]
pytest
```