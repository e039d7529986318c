import io

import pytest

from chcache.base import (
    Cache,
    CachedData,
    CacheConfig,
    CacheMissError,
    ContentMetadata,
    FileSystemCacheConfig,
    RedisCacheConfig,
    Stats,
)


class DictCache(Cache):
    def __init__(self):
        self.entries = {}
        self.closed = False

    def close(self):
        self.closed = True

    def stats(self):
        return Stats(
            size=sum(len(v) for v, _ in self.entries.values()),
            items=len(self.entries),
        )

    def get(self, key):
        try:
            payload, metadata = self.entries[key]
        except KeyError:
            raise CacheMissError() from None
        return CachedData(metadata=metadata, data=io.BytesIO(payload), ttl=60.0)

    def put(self, reader, metadata, key):
        self.entries[key] = (reader.read(), metadata)
        return 60.0

    def name(self):
        return "dict"


def test_cached_data_exposes_metadata_fields():
    metadata = ContentMetadata(length=3, type="text/plain", encoding="gzip")
    cached = CachedData(metadata=metadata, data=io.BytesIO(b"abc"), ttl=1.5)
    assert cached.length == 3
    assert cached.type == "text/plain"
    assert cached.encoding == "gzip"
    assert cached.ttl == 1.5


def test_cached_data_close_closes_stream():
    stream = io.BytesIO(b"abc")
    cached = CachedData(metadata=ContentMetadata(), data=stream)
    cached.close()
    assert stream.closed


def test_cached_data_context_manager_closes_stream():
    stream = io.BytesIO(b"abc")
    with CachedData(metadata=ContentMetadata(), data=stream) as cached:
        assert cached.data.read() == b"abc"
    assert stream.closed


def test_stats_defaults_are_empty():
    stats = Stats()
    assert (stats.size, stats.items) == (0, 0)


def test_cache_miss_error_message():
    assert str(CacheMissError()) == "missing cache entry"
    assert issubclass(CacheMissError, LookupError)


def test_cache_is_abstract():
    with pytest.raises(TypeError):
        Cache()


def test_concrete_cache_round_trip_and_miss():
    cache = DictCache()
    metadata = ContentMetadata(length=5, type="ct", encoding="ce")
    ttl = cache.put(io.BytesIO(b"hello"), metadata, "k")
    assert ttl == 60.0
    with cache.get("k") as cached:
        assert cached.data.read() == b"hello"
        assert cached.metadata == metadata
    with pytest.raises(CacheMissError):
        cache.get("other")
    stats = cache.stats()
    assert stats.items == 1
    assert stats.size == len(b"hello")


def test_cache_context_manager_closes():
    cache = DictCache()
    entered = Cache.__enter__(cache)
    assert entered is cache
    assert cache.closed is False
    Cache.__exit__(cache, None, None, None)
    assert cache.closed is True

    with DictCache() as managed:
        assert managed.stats() == Stats(size=0, items=0)
    assert managed.closed is True


def test_config_defaults_are_independent():
    first = CacheConfig()
    second = CacheConfig()
    first.redis.addresses.append("localhost:6379")
    assert second.redis.addresses == []
    assert first.file_system == FileSystemCacheConfig()
    assert second.redis == RedisCacheConfig()
    assert first.expire == 0.0
    assert first.shared_with_all_users is False