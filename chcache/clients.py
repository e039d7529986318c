"""Construction of redis clients from cache settings."""

from __future__ import annotations

from typing import Any

import redis
from redis.backoff import ExponentialBackoff
from redis.cluster import ClusterNode, RedisCluster
from redis.retry import Retry

from chcache.base import RedisCacheConfig

DEFAULT_ADDRESS = "127.0.0.1:6379"
DEFAULT_PORT = 6379

# Seven attempts with a backoff between 8 ms and 512 ms: the client waits
# up to about one second in total before giving up.
MAX_RETRIES = 7
MIN_RETRY_BACKOFF = 0.008
MAX_RETRY_BACKOFF = 0.512


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, DEFAULT_PORT
    host = host.strip("[]")
    try:
        return host, int(port)
    except ValueError as exc:
        raise ValueError(f"invalid redis address {address!r}") from exc


def _connection_options(config: RedisCacheConfig) -> dict[str, Any]:
    options: dict[str, Any] = {
        "retry": Retry(ExponentialBackoff(cap=MAX_RETRY_BACKOFF, base=MIN_RETRY_BACKOFF), MAX_RETRIES),
        "retry_on_error": [redis.ConnectionError, redis.TimeoutError],
    }
    if config.username:
        options["username"] = config.username
    if config.password:
        options["password"] = config.password
    if config.pool_size > 0:
        options["max_connections"] = config.pool_size
    if config.cert_file or config.key_file:
        options["ssl"] = True
        options["ssl_certfile"] = config.cert_file or None
        options["ssl_keyfile"] = config.key_file or None
        options["ssl_cert_reqs"] = "none" if config.insecure_skip_verify else "required"
    return options


def new_redis_client(config: RedisCacheConfig) -> Any:
    """Create a redis client for config and check that the server answers.

    A single address gives a plain client using the configured database;
    several addresses give a cluster client. Raises ConnectionError when
    the server cannot be reached.
    """
    addresses = config.addresses or [DEFAULT_ADDRESS]
    options = _connection_options(config)

    try:
        if len(addresses) == 1:
            host, port = _parse_address(addresses[0])
            client = redis.Redis(host=host, port=port, db=config.db_index, **options)
        else:
            nodes = [ClusterNode(*_parse_address(address)) for address in addresses]
            client = RedisCluster(startup_nodes=nodes, **options)
        client.ping()
    except redis.RedisError as exc:
        raise ConnectionError(f"failed to reach redis: {exc}") from exc
    return client