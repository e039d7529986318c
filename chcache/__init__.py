"""Query result caching for ClickHouse on the file system or in Redis, with registries of running queries."""

__version__ = "0.1.0"

__all__ = [
    "async_cache",
    "base",
    "clients",
    "decompressor",
    "filesystem",
    "key",
    "redis_cache",
    "tmpfile_writer",
    "transactions",
]