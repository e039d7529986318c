"""Query result cache stored in redis."""

from __future__ import annotations

import io
import logging
import os
import random
import re
import tempfile
from collections.abc import Mapping
from typing import Any, BinaryIO

import redis

from chcache.base import (
    Cache,
    CacheConfig,
    CachedData,
    CacheMissError,
    ContentMetadata,
    Stats,
)
from chcache.key import Key

log = logging.getLogger(__name__)

# Results whose remaining TTL in seconds is above this value are streamed
# straight from redis; the others are first copied into a temporary file,
# since the redis entry could disappear while it is being read.
MIN_TTL_FOR_STREAMING = 15.0

REDIS_TMP_FILE_PREFIX = "chcacheRedisTmp"

# The first fetch is large enough to hold the metadata and, for most
# queries, the whole result.
_FIRST_FETCH_SIZE = 100 * 1024
_CHUNK_SIZE = 2 * 1024 * 1024
_USED_MEMORY_PATTERN = re.compile(r"used_memory:([0-9]+)\r\n")
_UINT64_MASK = (1 << 64) - 1


class RedisCacheError(Exception):
    """Raised when a cached result could not be fully read from redis."""

    def __init__(
        self,
        key: str,
        read_payload_size: int,
        expected_payload_size: int,
        root_cause: BaseException | None = None,
    ) -> None:
        self.key = key
        self.read_payload_size = read_payload_size
        self.expected_payload_size = expected_payload_size
        self.root_cause = root_cause
        message = (
            f"error while reading cached result in redis for key {key}, "
            f"only {read_payload_size} bytes of {expected_payload_size} were fetched"
        )
        if root_cause is not None:
            message = f"{message}, root cause:{root_cause}"
        super().__init__(message)


class RedisCacheCorruptionError(ValueError):
    """Raised when a cached result stored in redis cannot be decoded."""

    def __init__(
        self,
        message: str = "the cached result in redis cannot be decoded, it seems to have been corrupted",
    ) -> None:
        super().__init__(message)


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape")
    return bytes(value)


def encode_string(value: str) -> bytes:
    """Encode value prefixed with its length as a 4-byte big-endian integer."""
    raw = value.encode("utf-8", "surrogateescape")
    return len(raw).to_bytes(4, "big") + raw


def decode_string(data: bytes) -> tuple[str, int]:
    """Decode a string written by encode_string; return it and the bytes consumed."""
    if len(data) < 4:
        raise RedisCacheCorruptionError()
    size = int.from_bytes(data[:4], "big")
    if len(data) < 4 + size:
        raise RedisCacheCorruptionError()
    return data[4 : 4 + size].decode("utf-8", "surrogateescape"), 4 + size


def encode_metadata(metadata: ContentMetadata) -> bytes:
    """Encode the content length, type and encoding stored before a payload."""
    length = (metadata.length & _UINT64_MASK).to_bytes(8, "big")
    return length + encode_string(metadata.type) + encode_string(metadata.encoding)


def decode_metadata(data: bytes) -> tuple[ContentMetadata, int]:
    """Decode metadata written by encode_metadata; return it and the payload offset."""
    if len(data) < 8:
        raise RedisCacheCorruptionError()
    length = int.from_bytes(data[:8], "big", signed=True)
    offset = 8
    content_type, size = decode_string(data[offset:])
    offset += size
    content_encoding, size = decode_string(data[offset:])
    offset += size
    metadata = ContentMetadata(length=length, type=content_type, encoding=content_encoding)
    return metadata, offset


class RedisStreamReader:
    """Reads a value from redis chunk by chunk, starting at a byte offset."""

    def __init__(self, offset: int, client: Any, key: str, payload_size: int) -> None:
        self._client = client
        self._key = key
        self._redis_offset = offset
        self._expected_payload_size = payload_size
        self._read_payload_size = 0
        self._buffer = b""
        self._buffer_offset = 0
        self._redis_eof = False
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        """Return up to size bytes; b"" once the whole payload was read."""
        if size is None or size < 0:
            return self.readall()
        if size == 0:
            return b""
        while self._buffer_offset >= len(self._buffer):
            if self._redis_eof:
                # The value may have expired while it was being read.
                if self._read_payload_size != self._expected_payload_size:
                    log.debug("error while fetching data from redis payload size doesn't match")
                    raise RedisCacheError(
                        self._key, self._read_payload_size, self._expected_payload_size
                    )
                return b""
            self._fetch()
        chunk = self._buffer[self._buffer_offset : self._buffer_offset + size]
        self._buffer_offset += len(chunk)
        self._read_payload_size += len(chunk)
        return chunk

    def readall(self) -> bytes:
        """Return every remaining byte of the payload."""
        parts = []
        while chunk := self.read(_CHUNK_SIZE):
            parts.append(chunk)
        return b"".join(parts)

    def _fetch(self) -> None:
        start = self._redis_offset
        try:
            data = _as_bytes(self._client.getrange(self._key, start, start + _CHUNK_SIZE - 1))
        except redis.RedisError as exc:
            self._redis_eof = True
            log.debug("failed to get key %s with error: %s", self._key, exc)
            raise RedisCacheError(
                self._key, self._read_payload_size, self._expected_payload_size, exc
            ) from exc
        self._redis_offset += len(data)
        # Less data than asked means the end of the value was reached.
        if len(data) < _CHUNK_SIZE:
            self._redis_eof = True
        self._buffer = data
        self._buffer_offset = 0

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> RedisStreamReader:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class FileWriterReader:
    """A temporary file written first, then read back, and removed on close."""

    def __init__(self, directory: str) -> None:
        try:
            fd, self._path = tempfile.mkstemp(prefix=REDIS_TMP_FILE_PREFIX, dir=directory)
        except OSError as exc:
            raise OSError(f"cannot create temporary file in {directory!r}: {exc}") from exc
        self._file: BinaryIO = open(fd, "w+b")

    @property
    def path(self) -> str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._file.closed

    def read(self, size: int = -1) -> bytes:
        return self._file.read(size)

    def write(self, data: bytes) -> int:
        return self._file.write(data)

    def reset_offset(self) -> None:
        """Move back to the start of the file."""
        self._file.seek(0, os.SEEK_SET)

    def close(self) -> None:
        """Close and remove the file."""
        self._file.close()
        os.remove(self._path)

    def __enter__(self) -> FileWriterReader:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class RedisCache(Cache):
    """Cache keeping results in redis, each under the string form of its key."""

    def __init__(self, client: Any, config: CacheConfig) -> None:
        self._client = client
        self._name = config.name
        self._expire = config.expire

    def name(self) -> str:
        return self._name

    def close(self) -> None:
        self._client.close()

    def stats(self) -> Stats:
        """Return the number of keys and used memory of the whole redis database."""
        return Stats(size=self.number_of_bytes(), items=self.number_of_keys())

    def number_of_keys(self) -> int:
        try:
            return int(self._client.dbsize())
        except redis.RedisError as exc:
            log.error("failed to fetch nb of keys in redis: %s", exc)
            return 0

    def number_of_bytes(self) -> int:
        try:
            info = self._client.info("memory")
        except redis.RedisError as exc:
            log.error("failed to fetch nb of bytes in redis: %s", exc)
            return 0
        if isinstance(info, Mapping):
            value = info.get("used_memory", 0)
            try:
                return int(value)
            except (TypeError, ValueError) as exc:
                log.error("failed to parse memory usage with error %s", exc)
                return 0
        match = _USED_MEMORY_PATTERN.search(_as_bytes(info).decode("ascii", "replace"))
        return int(match.group(1)) if match else 0

    def _expire_ms(self) -> int | None:
        if self._expire <= 0:
            return None
        return max(1, int(self._expire * 1000))

    def get(self, key: Key) -> CachedData:
        name = str(key)
        try:
            raw = _as_bytes(self._client.getrange(name, 0, _FIRST_FETCH_SIZE))
        except redis.RedisError as exc:
            log.error("failed to get key %s with error: %s", name, exc)
            raise CacheMissError() from exc
        if not raw:
            raise CacheMissError()

        ttl = self._client.ttl(name)
        ttl = -1.0 if ttl is None else float(ttl)

        try:
            metadata, offset = decode_metadata(raw)
        except RedisCacheCorruptionError as exc:
            log.error("an error happened while handling redis key =%s, err=%s", name, exc)
            raise

        if offset + metadata.length < _FIRST_FETCH_SIZE:
            # The first fetch holds the whole payload.
            return CachedData(metadata=metadata, data=io.BytesIO(raw[offset:]), ttl=ttl)
        return self._read_results_above_limit(offset, name, metadata, ttl)

    def _read_results_above_limit(
        self, offset: int, name: str, metadata: ContentMetadata, ttl: float
    ) -> CachedData:
        stream = RedisStreamReader(offset, self._client, name, metadata.length)
        if ttl > MIN_TTL_FOR_STREAMING:
            return CachedData(metadata=metadata, data=stream, ttl=ttl)

        spool = FileWriterReader(tempfile.gettempdir())
        try:
            while chunk := stream.read(_CHUNK_SIZE):
                spool.write(chunk)
            spool.reset_offset()
        except BaseException:
            spool.close()
            raise
        return CachedData(metadata=metadata, data=spool, ttl=ttl)

    def put(self, reader: BinaryIO, metadata: ContentMetadata, key: Key) -> float:
        header = encode_metadata(metadata)
        name = str(key)
        # The value is streamed into a temporary key first and renamed once
        # complete. The braces keep both keys in the same cluster hash slot.
        tmp_name = "{" + name + "}" + str(random.randrange(1 << 63)) + "_tmp"

        self._client.set(tmp_name, header, px=self._expire_ms())
        expected = len(header)
        while chunk := reader.read(_CHUNK_SIZE):
            try:
                written = self._client.append(tmp_name, chunk)
            except redis.RedisError:
                self._remove(tmp_name)
                raise
            expected += len(chunk)
            if int(written) != expected:
                self._remove(tmp_name)
                raise OSError(
                    f"could not stream the value into redis, only {written} bytes "
                    f"were written instead of {expected}"
                )

        try:
            self._client.rename(tmp_name, name)
        except redis.RedisError as exc:
            log.error("cannot rename redis key %s to %s: %s", tmp_name, name, exc)
        return self._expire

    def _remove(self, name: str) -> None:
        try:
            self._client.delete(name)
        except redis.RedisError as exc:
            log.debug(
                "redis item was only partially inserted and could not be removed because of %s",
                exc,
            )
        else:
            log.debug("redis item was only partially inserted, it was removed")