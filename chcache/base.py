"""Core cache types shared by every cache backend."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, BinaryIO

if TYPE_CHECKING:
    from chcache.key import Key


@dataclass
class ContentMetadata:
    """HTTP content description stored next to a cached payload."""

    length: int = 0
    type: str = ""
    encoding: str = ""


@dataclass
class CachedData:
    """A cached payload as returned by a cache lookup.

    The data stream belongs to the caller, who must close it once read.
    """

    metadata: ContentMetadata
    data: BinaryIO
    ttl: float = 0.0

    @property
    def length(self) -> int:
        return self.metadata.length

    @property
    def type(self) -> str:
        return self.metadata.type

    @property
    def encoding(self) -> str:
        return self.metadata.encoding

    def close(self) -> None:
        """Close the underlying data stream."""
        self.data.close()

    def __enter__(self) -> CachedData:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class Stats:
    """Cache statistics: total size in bytes and number of items."""

    size: int = 0
    items: int = 0


class CacheMissError(LookupError):
    """Raised when an entry is not found in the cache."""

    def __init__(self, message: str = "missing cache entry") -> None:
        super().__init__(message)


class Cache(abc.ABC):
    """Stores results of executed queries identified by a Key."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the resources held by the cache."""

    @abc.abstractmethod
    def stats(self) -> Stats:
        """Return the current cache statistics."""

    @abc.abstractmethod
    def get(self, key: Key) -> CachedData:
        """Return the cached data for key or raise CacheMissError."""

    @abc.abstractmethod
    def put(self, reader: BinaryIO, metadata: ContentMetadata, key: Key) -> float:
        """Store the content of reader under key and return its TTL in seconds."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the cache name."""

    def __enter__(self) -> Cache:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class FileSystemCacheConfig:
    """Settings of a file system cache."""

    dir: str = ""
    max_size: int = 0


@dataclass
class RedisCacheConfig:
    """Settings of a redis cache connection."""

    addresses: list[str] = field(default_factory=list)
    username: str = ""
    password: str = ""
    pool_size: int = 0
    db_index: int = 0
    cert_file: str = ""
    key_file: str = ""
    insecure_skip_verify: bool = False


@dataclass
class CacheConfig:
    """Settings of a cache. Durations are in seconds."""

    name: str = ""
    mode: str = ""
    file_system: FileSystemCacheConfig = field(default_factory=FileSystemCacheConfig)
    redis: RedisCacheConfig = field(default_factory=RedisCacheConfig)
    expire: float = 0.0
    grace_time: float = 0.0
    max_payload_size: int = 0
    shared_with_all_users: bool = False