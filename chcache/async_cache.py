"""Cache able to serve the results of concurrent identical queries."""

from __future__ import annotations

import logging
import time
from typing import BinaryIO

from chcache.base import Cache, CacheConfig, CachedData, ContentMetadata, Stats
from chcache.clients import new_redis_client
from chcache.filesystem import FileSystemCache
from chcache.key import Key
from chcache.redis_cache import RedisCache
from chcache.transactions import (
    TRANSACTION_ENDED_TTL,
    InMemoryTransactionRegistry,
    RedisTransactionRegistry,
    TransactionRegistry,
    TransactionState,
    TransactionStatus,
)

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class AsyncCache(Cache, TransactionRegistry):
    """A cache paired with a registry of the queries being computed.

    When an identical query arrives while another one is running, it waits
    at most the grace time (in seconds) for the first one to finish.
    """

    def __init__(
        self,
        cache: Cache | None,
        registry: TransactionRegistry | None,
        grace_time: float,
        max_payload_size: int = 0,
        shared_with_all_users: bool = False,
    ) -> None:
        self.cache = cache
        self.registry = registry
        self.grace_time = grace_time
        self.max_payload_size = max_payload_size
        self.shared_with_all_users = shared_with_all_users

    def close(self) -> None:
        if self.registry is not None:
            self.registry.close()
        if self.cache is not None:
            self.cache.close()

    def await_for_concurrent_transaction(self, key: Key) -> TransactionStatus:
        """Wait until the transaction for key is no longer pending or the grace time ends.

        When the grace time ends first, an absent status is returned so the
        caller computes the result itself.
        """
        start = time.monotonic()
        while True:
            if time.monotonic() - start > self.grace_time:
                return TransactionStatus(TransactionState.ABSENT)
            status = self.status(key)
            if not status.state.is_pending():
                return status
            # Waiting protects against a thundering herd when a single slow
            # query is sent by many concurrent requests.
            time.sleep(min(_POLL_INTERVAL, self.grace_time))

    def get(self, key: Key) -> CachedData:
        return self.cache.get(key)

    def put(self, reader: BinaryIO, metadata: ContentMetadata, key: Key) -> float:
        return self.cache.put(reader, metadata, key)

    def stats(self) -> Stats:
        return self.cache.stats()

    def name(self) -> str:
        return self.cache.name()

    def create(self, key: Key) -> None:
        self.registry.create(key)

    def complete(self, key: Key) -> None:
        self.registry.complete(key)

    def fail(self, key: Key, reason: str) -> None:
        self.registry.fail(key, reason)

    def status(self, key: Key) -> TransactionStatus:
        return self.registry.status(key)

    def __enter__(self) -> AsyncCache:
        return self


def new_async_cache(config: CacheConfig, max_execution_time: float) -> AsyncCache:
    """Build an AsyncCache for config; durations are in seconds.

    Raises ValueError for an unknown mode or invalid settings and
    ConnectionError when redis cannot be reached.
    """
    grace_time = config.grace_time
    if grace_time > 0:
        log.error(
            "[DEPRECATED] detected grace time configuration %ss. "
            "It will be removed in the new version",
            grace_time,
        )
    if grace_time == 0:
        grace_time = max_execution_time
    if grace_time < 0:
        # Disables the protection from the dogpile effect.
        grace_time = 0.0

    # Transactions are kept until no concurrent query can still be running.
    transaction_deadline = 2 * grace_time

    if config.mode == "file_system":
        cache: Cache = FileSystemCache(config, grace_time)
        registry: TransactionRegistry = InMemoryTransactionRegistry(
            transaction_deadline, TRANSACTION_ENDED_TTL
        )
    elif config.mode == "redis":
        client = new_redis_client(config.redis)
        cache = RedisCache(client, config)
        registry = RedisTransactionRegistry(client, transaction_deadline, TRANSACTION_ENDED_TTL)
    else:
        raise ValueError("unknown config mode")

    return AsyncCache(
        cache=cache,
        registry=registry,
        grace_time=grace_time,
        max_payload_size=config.max_payload_size,
        shared_with_all_users=config.shared_with_all_users,
    )