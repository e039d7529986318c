"""Registries of ongoing queries, kept in memory or in redis."""

from __future__ import annotations

import abc
import enum
import logging
import threading
import time
from dataclasses import dataclass

import redis

from chcache.key import Key

log = logging.getLogger(__name__)

# Seconds a transaction record is kept after being completed or failed.
TRANSACTION_ENDED_TTL = 0.5


class TransactionState(enum.IntEnum):
    CREATED = 0
    COMPLETED = 1
    FAILED = 2
    ABSENT = 3

    def is_absent(self) -> bool:
        return self is TransactionState.ABSENT

    def is_failed(self) -> bool:
        return self is TransactionState.FAILED

    def is_completed(self) -> bool:
        return self is TransactionState.COMPLETED

    def is_pending(self) -> bool:
        return self is TransactionState.CREATED


@dataclass(frozen=True)
class TransactionStatus:
    state: TransactionState
    fail_reason: str = ""


class TransactionRegistry(abc.ABC):
    """A registry of ongoing queries identified by Key."""

    @abc.abstractmethod
    def create(self, key: Key) -> None:
        """Register a new pending transaction."""

    @abc.abstractmethod
    def complete(self, key: Key) -> None:
        """Mark the transaction for key as completed."""

    @abc.abstractmethod
    def fail(self, key: Key, reason: str) -> None:
        """Mark the transaction for key as failed with reason."""

    @abc.abstractmethod
    def status(self, key: Key) -> TransactionStatus:
        """Return the status of the transaction for key."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the resources held by the registry."""

    def __enter__(self) -> TransactionRegistry:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class _PendingEntry:
    deadline: float
    state: TransactionState
    failed_reason: str = ""


class InMemoryTransactionRegistry(TransactionRegistry):
    """Transaction registry kept in process memory.

    Deadlines are in seconds; a background thread drops expired records.
    """

    def __init__(self, deadline: float, transaction_ended_deadline: float) -> None:
        self._deadline = deadline
        self._ended_deadline = transaction_ended_deadline
        self._lock = threading.Lock()
        self._entries: dict[str, _PendingEntry] = {}
        self._stop = threading.Event()
        self._cleaner = threading.Thread(
            target=self._clean_pending_entries,
            name="inmem-transaction-cleaner",
            daemon=True,
        )
        self._cleaner.start()

    def create(self, key: Key) -> None:
        name = str(key)
        with self._lock:
            if name not in self._entries:
                self._entries[name] = _PendingEntry(
                    deadline=time.monotonic() + self._deadline,
                    state=TransactionState.CREATED,
                )

    def complete(self, key: Key) -> None:
        self._update_state(key, TransactionState.COMPLETED, "")

    def fail(self, key: Key, reason: str) -> None:
        self._update_state(key, TransactionState.FAILED, reason)

    def _update_state(self, key: Key, state: TransactionState, reason: str) -> None:
        name = str(key)
        deadline = time.monotonic() + self._ended_deadline
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                log.error(
                    "[attempt to complete transaction] entry not found for key: %s, "
                    "registering new entry with %s status",
                    name,
                    state.name,
                )
                self._entries[name] = _PendingEntry(deadline, state, reason)
                return
            entry.state = state
            entry.failed_reason = reason
            entry.deadline = deadline

    def status(self, key: Key) -> TransactionStatus:
        with self._lock:
            entry = self._entries.get(str(key))
            if entry is None:
                return TransactionStatus(TransactionState.ABSENT)
            return TransactionStatus(entry.state, entry.failed_reason)

    def close(self) -> None:
        self._stop.set()
        self._cleaner.join()

    def _clean_pending_entries(self) -> None:
        log.debug("inmem transaction: cleaner start")
        interval = min(max(self._deadline, 0.1), 1.0)
        while True:
            now = time.monotonic()
            # Drop outdated entries, which would otherwise stay forever
            # when a transaction is never ended.
            with self._lock:
                expired = [name for name, entry in self._entries.items() if now > entry.deadline]
                for name in expired:
                    del self._entries[name]
            if self._stop.wait(interval):
                break
        log.debug("inmem transaction: cleaner stop")


def transaction_key(key: Key) -> str:
    """Return the redis key under which the transaction for key is stored."""
    return f"{key}-transaction"


def _ttl_ms(seconds: float) -> int | None:
    if seconds <= 0:
        return None
    return max(1, int(seconds * 1000))


class RedisTransactionRegistry(TransactionRegistry):
    """Transaction registry stored in redis with expiring records.

    Deadlines are in seconds.
    """

    def __init__(self, client, deadline: float, ended_deadline: float) -> None:
        self._client = client
        self._deadline = deadline
        self._ended_deadline = ended_deadline

    def create(self, key: Key) -> None:
        self._client.set(
            transaction_key(key),
            bytes([TransactionState.CREATED]),
            px=_ttl_ms(self._deadline),
        )

    def complete(self, key: Key) -> None:
        self._update_state(key, bytes([TransactionState.COMPLETED]))

    def fail(self, key: Key, reason: str) -> None:
        self._update_state(key, bytes([TransactionState.FAILED]) + reason.encode("utf-8"))

    def _update_state(self, key: Key, value: bytes) -> None:
        self._client.set(transaction_key(key), value, px=_ttl_ms(self._ended_deadline))

    def status(self, key: Key) -> TransactionStatus:
        try:
            raw = self._client.get(transaction_key(key))
        except redis.RedisError:
            log.error("Failed to fetch transaction status from redis for key: %s", key)
            raise
        if raw is None:
            return TransactionStatus(TransactionState.ABSENT)
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        if not raw:
            log.error("Failed to fetch transaction status from redis raw value: %s", key)
            return TransactionStatus(TransactionState.ABSENT)
        try:
            state = TransactionState(raw[0])
        except ValueError:
            log.error("Unknown transaction state %d in redis for key: %s", raw[0], key)
            return TransactionStatus(TransactionState.ABSENT)
        reason = ""
        if state.is_failed() and len(raw) > 1:
            reason = raw[1:].decode("utf-8", errors="replace")
        return TransactionStatus(state, reason)

    def close(self) -> None:
        self._client.close()