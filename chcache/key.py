"""Cache keys identifying query results."""

from __future__ import annotations

import hashlib
import os
from collections.abc import Mapping
from dataclasses import dataclass

# Must be increased with each backward-incompatible change in cache storage.
VERSION = 5

_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
    '"': '\\"',
    "\\": "\\\\",
}


def _quote(value: bytes | str) -> str:
    """Quote value as a double-quoted string with escapes for unprintable data."""
    raw = value if isinstance(value, bytes) else value.encode("utf-8", "surrogateescape")
    text = raw.decode("utf-8", errors="surrogateescape")
    parts = ['"']
    for char in text:
        code = ord(char)
        if char in _ESCAPES:
            parts.append(_ESCAPES[char])
        elif 0xDC80 <= code <= 0xDCFF:
            # A byte that is not part of valid UTF-8.
            parts.append(f"\\x{code - 0xDC00:02x}")
        elif char.isprintable():
            parts.append(char)
        elif code < 0x20 or code == 0x7F:
            parts.append(f"\\x{code:02x}")
        elif code < 0x10000:
            parts.append(f"\\u{code:04x}")
        else:
            parts.append(f"\\U{code:08x}")
    parts.append('"')
    return "".join(parts)


@dataclass(frozen=True)
class Key:
    """The identity of a cached query result."""

    query: bytes = b""
    accept_encoding: str = ""
    default_format: str = ""
    database: str = ""
    compress: str = ""
    enable_http_compression: str = ""
    namespace: str = ""
    max_result_rows: str = ""
    extremes: str = ""
    result_overflow_mode: str = ""
    user_params_hash: int = 0
    version: int = VERSION
    query_params_hash: int = 0
    user_credential_hash: int = 0

    def file_path(self, directory: str) -> str:
        """Return the path of the cache file for this key inside directory."""
        return os.path.join(directory, str(self))

    def __str__(self) -> str:
        description = (
            f"V{self.version}; Query={_quote(self.query)}; "
            f"AcceptEncoding={_quote(self.accept_encoding)}; "
            f"DefaultFormat={_quote(self.default_format)}; "
            f"Database={_quote(self.database)}; "
            f"Compress={_quote(self.compress)}; "
            f"EnableHTTPCompression={_quote(self.enable_http_compression)}; "
            f"Namespace={_quote(self.namespace)}; "
            f"MaxResultRows={_quote(self.max_result_rows)}; "
            f"Extremes={_quote(self.extremes)}; "
            f"ResultOverflowMode={_quote(self.result_overflow_mode)}; "
            f"UserParams={self.user_params_hash}; "
            f"QueryParams={self.query_params_hash}; "
            f"UserCredentialHash={self.user_credential_hash}"
        )
        digest = hashlib.sha256(description.encode("utf-8", "surrogateescape")).digest()
        # The first 16 bytes of the hash are enough to prevent collisions.
        return digest[:16].hex()


def _first(params: Mapping, name: str) -> str:
    value = params.get(name)
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value


def new_key(
    query: bytes,
    origin_params: Mapping,
    accept_encoding: str,
    user_params_hash: int,
    query_params_hash: int,
    user_credential_hash: int,
) -> Key:
    """Build a key from a query and its request parameters.

    origin_params maps parameter names to a value or to a list of values,
    as produced by urllib.parse.parse_qs; the first value is used.
    """
    return Key(
        query=query,
        accept_encoding=accept_encoding,
        default_format=_first(origin_params, "default_format"),
        database=_first(origin_params, "database"),
        compress=_first(origin_params, "compress"),
        enable_http_compression=_first(origin_params, "enable_http_compression"),
        namespace=_first(origin_params, "cache_namespace"),
        extremes=_first(origin_params, "extremes"),
        max_result_rows=_first(origin_params, "max_result_rows"),
        result_overflow_mode=_first(origin_params, "result_overflow_mode"),
        user_params_hash=user_params_hash,
        version=VERSION,
        query_params_hash=query_params_hash,
        user_credential_hash=user_credential_hash,
    )