"""Query result cache stored as files in a directory."""

from __future__ import annotations

import logging
import os
import random
import re
import threading
import time
from collections.abc import Iterator
from typing import BinaryIO

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

# Names of cache files: the hex form of a key.
CACHE_FILE_PATTERN = re.compile(r"[0-9a-f]{32}")

_COPY_CHUNK = 64 * 1024
_CONTENT_LENGTH_PATTERN = re.compile(r"[+-]?[0-9]+")


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def write_header(stream: BinaryIO, value: str) -> None:
    """Write value prefixed with its length as a 4-byte big-endian integer."""
    raw = value.encode("utf-8", "surrogateescape")
    stream.write(len(raw).to_bytes(4, "big") + raw)


def read_header(stream: BinaryIO) -> str:
    """Read a value written by write_header."""
    raw = _read_exact(stream, 4)
    if len(raw) < 4:
        raise EOFError("cannot read header length: unexpected EOF")
    size = int.from_bytes(raw, "big")
    value = _read_exact(stream, size)
    if len(value) < size:
        raise EOFError(f"cannot read header value with length {size}: unexpected EOF")
    return value.decode("utf-8", "surrogateescape")


def decode_header(stream: BinaryIO) -> ContentMetadata:
    """Read the content type, encoding and length stored before a cached payload."""
    try:
        content_type = read_header(stream)
    except EOFError as exc:
        raise EOFError(f"cannot read Content-Type from provided reader: {exc}") from exc
    try:
        content_encoding = read_header(stream)
    except EOFError as exc:
        raise EOFError(f"cannot read Content-Encoding from provided reader: {exc}") from exc
    try:
        length_text = read_header(stream)
    except EOFError as exc:
        raise EOFError(f"cannot read Content-Length from provided reader: {exc}") from exc

    if _CONTENT_LENGTH_PATTERN.fullmatch(length_text):
        length = int(length_text)
    else:
        log.error("found corrupted content length %r", length_text)
        length = 0
    return ContentMetadata(length=length, type=content_type, encoding=content_encoding)


def walk_dir(directory: str) -> Iterator[os.DirEntry]:
    """Yield the cache files of directory, skipping subdirectories and other names."""
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                continue
            if not CACHE_FILE_PATTERN.fullmatch(entry.name):
                continue
            yield entry


def _entry_stat(entry: os.DirEntry) -> os.stat_result | None:
    try:
        return entry.stat(follow_symlinks=False)
    except OSError:
        return None


class FileSystemCache(Cache):
    """Cache keeping each result in its own file.

    Durations are in seconds. A background thread removes expired files and
    keeps the total size under the configured maximum.
    """

    def __init__(self, config: CacheConfig, grace_time: float) -> None:
        if not config.file_system.dir:
            raise ValueError("`dir` cannot be empty")
        if config.file_system.max_size <= 0:
            raise ValueError("`max_size` must be positive")
        if config.expire <= 0:
            raise ValueError("`expire` must be positive")

        self._name = config.name
        self._dir = config.file_system.dir
        self._max_size = config.file_system.max_size
        self._expire = config.expire
        self._grace = grace_time
        self._stats = Stats()
        self._stats_lock = threading.Lock()
        self._clean_lock = threading.Lock()
        self._stop = threading.Event()

        try:
            os.makedirs(self._dir, mode=0o700, exist_ok=True)
        except OSError as exc:
            raise OSError(f"cannot create {self._dir!r}: {exc}") from exc

        self._cleaner = threading.Thread(
            target=self._run_cleaner,
            name=f"cache-cleaner-{self._name}",
            daemon=True,
        )
        self._cleaner.start()

    @property
    def directory(self) -> str:
        return self._dir

    @property
    def max_size(self) -> int:
        return self._max_size

    def name(self) -> str:
        return self._name

    def close(self) -> None:
        log.debug("cache %r: stopping", self._name)
        self._stop.set()
        self._cleaner.join()
        log.debug("cache %r: stopped", self._name)

    def stats(self) -> Stats:
        with self._stats_lock:
            return Stats(size=self._stats.size, items=self._stats.items)

    def get(self, key: Key) -> CachedData:
        path = key.file_path(self._dir)
        try:
            file = open(path, "rb")
        except OSError:
            raise CacheMissError() from None

        try:
            age = time.time() - os.fstat(file.fileno()).st_mtime
            # Expired files are still served during the grace time, in the
            # hope they are replaced by fresh ones meanwhile.
            if age > self._expire + self._grace:
                raise CacheMissError()
            metadata = decode_header(file)
        except BaseException:
            file.close()
            raise

        return CachedData(metadata=metadata, data=file, ttl=self._expire - age)

    def put(self, reader: BinaryIO, metadata: ContentMetadata, key: Key) -> float:
        path = key.file_path(self._dir)
        written = 0
        with open(path, "wb") as file:
            write_header(file, metadata.type)
            write_header(file, metadata.encoding)
            write_header(file, str(metadata.length))
            while chunk := reader.read(_COPY_CHUNK):
                file.write(chunk)
                written += len(chunk)

        with self._stats_lock:
            self._stats.size += written
            self._stats.items += 1
        return self._expire

    def clean(self) -> None:
        """Remove expired files, then random files while the cache is too large."""
        with self._clean_lock:
            self._clean()

    def _clean(self) -> None:
        now = time.time()
        log.debug("cache %r: start cleaning dir %r", self._name, self._dir)

        # Files are removed only after the grace time following their
        # expiration, so they may be served until replaced.
        expire = self._expire + self._grace

        total_size = total_items = removed_size = removed_items = 0
        try:
            for entry in walk_dir(self._dir):
                info = _entry_stat(entry)
                if info is None:
                    continue
                size = info.st_size
                if now - info.st_mtime > expire:
                    try:
                        os.remove(entry.path)
                    except OSError as exc:
                        log.error("cache %r: cannot remove file %r: %s", self._name, entry.path, exc)
                    else:
                        removed_size += size
                        removed_items += 1
                        continue
                total_size += size
                total_items += 1
        except OSError as exc:
            log.error("cache %r: %s", self._name, exc)
            return

        rnd = random.Random()
        loops = 0
        while total_size > self._max_size and loops < 3:
            excess = total_size - self._max_size
            # Remove 10% more than the excess.
            percent = int(excess / total_size * 100) + 10
            try:
                for entry in walk_dir(self._dir):
                    if rnd.randrange(100) > percent:
                        continue
                    info = _entry_stat(entry)
                    if info is None:
                        continue
                    try:
                        os.remove(entry.path)
                    except OSError as exc:
                        log.error("cache %r: cannot remove file %r: %s", self._name, entry.path, exc)
                        continue
                    removed_size += info.st_size
                    removed_items += 1
                    total_size -= info.st_size
                    total_items -= 1
            except OSError as exc:
                log.error("cache %r: %s", self._name, exc)
                return
            # Protects from an endless loop.
            loops += 1

        with self._stats_lock:
            self._stats = Stats(size=total_size, items=total_items)

        log.debug(
            "cache %r: final size %d; final items %d; removed size %d; removed items %d",
            self._name,
            total_size,
            total_items,
            removed_size,
            removed_items,
        )
        log.debug("cache %r: finish cleaning dir %r", self._name, self._dir)

    def _run_cleaner(self) -> None:
        log.debug("cache %r: cleaner start", self._name)
        interval = min(max(self._expire / 2, 60.0), 3600.0)
        self.clean()
        next_forced = time.monotonic() + interval
        while not self._stop.wait(1.0):
            if time.monotonic() >= next_forced:
                # Forcibly clean the cache from expired items.
                self.clean()
                next_forced = time.monotonic() + interval
            elif self.stats().size > self._max_size:
                self.clean()
        log.debug("cache %r: cleaner stop", self._name)