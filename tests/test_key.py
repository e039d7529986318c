import os
import re
from urllib.parse import parse_qs

import pytest

from chcache.key import VERSION, Key, new_key

CACHE_FILE_RE = re.compile(r"^[0-9a-f]{32}$")

QUERY = b"SELECT 1 FROM system.numbers LIMIT 10"
PARAM_QUERY = b"SELECT * FROM {table_name:Identifier} LIMIT 10"


@pytest.mark.parametrize(
    "key, expected",
    [
        (Key(query=QUERY, version=2), "f11e8438adeeb325881c9a4da01925b3"),
        (
            Key(query=QUERY, accept_encoding="gzip", version=2),
            "045cbb29a40a81c42378569cf0bc4078",
        ),
        (
            Key(query=QUERY, accept_encoding="gzip", default_format="JSON", version=2),
            "186386850c49c60a49dbf7af89c671c9",
        ),
        (
            Key(
                query=QUERY,
                accept_encoding="gzip",
                default_format="JSON",
                database="foobar",
                version=2,
            ),
            "68f3231d17cad0a3473e63f419e07580",
        ),
        (
            Key(
                query=QUERY,
                accept_encoding="gzip",
                default_format="JSON",
                database="foobar",
                namespace="ns123",
                version=2,
            ),
            "8f5e765e69df7c24a58f13cdf752ad2f",
        ),
        (
            Key(
                query=QUERY,
                accept_encoding="gzip",
                default_format="JSON",
                database="foobar",
                compress="1",
                namespace="ns123",
                version=2,
            ),
            "93a121f03f438ef7969540c78e943e2c",
        ),
        (
            Key(query=PARAM_QUERY, query_params_hash=3825709, version=3),
            "7edddc7d9db4bc4036dee36893f57cb1",
        ),
        (
            Key(query=PARAM_QUERY, query_params_hash=3825710, version=3),
            "68ba76fb53a6fa71ba8fe63dd34a2201",
        ),
        (
            Key(
                query=PARAM_QUERY,
                query_params_hash=3825710,
                version=3,
                user_credential_hash=234324,
            ),
            "c5b58ecb4ff026e62ee846dc63c749d5",
        ),
    ],
)
def test_key_string(key, expected):
    s = str(key)
    assert CACHE_FILE_RE.match(s)
    assert s == expected


def test_key_string_is_stable_and_distinguishes_fields():
    a = Key(query=b"SELECT 1")
    b = Key(query=b"SELECT 1")
    c = Key(query=b"SELECT 1", database="other")
    assert str(a) == str(b)
    assert str(a) != str(c)


def test_key_string_handles_non_utf8_query():
    key = Key(query=b"SELECT '\xff\x00\n\"'")
    assert CACHE_FILE_RE.match(str(key))
    assert str(key) != str(Key(query=b"SELECT '\xfe\x00\n\"'"))


def test_file_path_joins_directory_and_key():
    key = Key(query=b"SELECT 1")
    assert key.file_path("cache-dir") == os.path.join("cache-dir", str(key))


def test_new_key_reads_parameters_from_parse_qs():
    params = parse_qs(
        "default_format=JSON&database=db&compress=1&enable_http_compression=1"
        "&cache_namespace=ns&extremes=0&max_result_rows=10&result_overflow_mode=break"
    )
    key = new_key(b"SELECT 1", params, "gzip", 1, 2, 3)
    assert key.query == b"SELECT 1"
    assert key.accept_encoding == "gzip"
    assert key.default_format == "JSON"
    assert key.database == "db"
    assert key.compress == "1"
    assert key.enable_http_compression == "1"
    assert key.namespace == "ns"
    assert key.extremes == "0"
    assert key.max_result_rows == "10"
    assert key.result_overflow_mode == "break"
    assert key.user_params_hash == 1
    assert key.query_params_hash == 2
    assert key.user_credential_hash == 3
    assert key.version == VERSION


def test_new_key_missing_parameters_are_empty():
    key = new_key(b"SELECT 1", {"database": "db"}, "", 0, 0, 0)
    assert key.database == "db"
    assert key.default_format == ""
    assert key.namespace == ""
    assert key == Key(query=b"SELECT 1", database="db")