[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chcache"
version = "0.1.0"
description = "Query result caching with de-duplication of concurrent queries for ClickHouse, on the file system or in Redis."
requires-python = ">=3.10"
keywords = ["clickhouse", "cache", "redis", "lz4", "zstd", "compression"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]
dependencies = [
    "redis",
    "lz4",
    "zstandard",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["chcache"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
