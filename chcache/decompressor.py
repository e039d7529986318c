"""Reader of the ClickHouse native compressed stream format."""

from __future__ import annotations

from typing import BinaryIO

import lz4.block
import zstandard

NONE_TYPE = 0x02
LZ4_TYPE = 0x82
ZSTD_TYPE = 0x90

_CHECKSUM_SIZE = 16
# Compression type byte plus the two size fields.
_HEADER_SIZE = 9


class DecompressionError(Exception):
    """Raised when the compressed stream is truncated or malformed."""


class CompressedReader:
    """Reads decompressed bytes from a ClickHouse compressed stream."""

    def __init__(self, source: BinaryIO) -> None:
        self._source = source
        self._data = b""

    def read(self, size: int = -1) -> bytes:
        """Return up to size decompressed bytes; b"" at the end of the stream."""
        if size is None or size < 0:
            return self.readall()
        if size == 0:
            return b""
        while not self._data:
            if not self._read_next_block():
                return b""
        chunk, self._data = self._data[:size], self._data[size:]
        return chunk

    def readall(self) -> bytes:
        """Return all remaining decompressed bytes."""
        parts = [self._data]
        self._data = b""
        while self._read_next_block():
            parts.append(self._data)
            self._data = b""
        return b"".join(parts)

    def _read_exact(self, size: int) -> bytes:
        data = bytearray()
        while len(data) < size:
            chunk = self._source.read(size - len(data))
            if not chunk:
                break
            data += chunk
        return bytes(data)

    def _read_uint32(self, what: str) -> int:
        raw = self._read_exact(4)
        if len(raw) < 4:
            raise DecompressionError(f"cannot read {what}: unexpected EOF")
        return int.from_bytes(raw, "little")

    def _read_next_block(self) -> bool:
        checksum = self._read_exact(_CHECKSUM_SIZE)
        if not checksum:
            return False
        if len(checksum) < _CHECKSUM_SIZE:
            raise DecompressionError("cannot read checksum: unexpected EOF")

        kind = self._read_exact(1)
        if not kind:
            raise DecompressionError("cannot read compression type: EOF")
        compression_type = kind[0]

        compressed_size = self._read_uint32("compressed size") - _HEADER_SIZE
        if compressed_size < 0:
            raise DecompressionError(f"invalid compressed size: {compressed_size + _HEADER_SIZE}")
        decompressed_size = self._read_uint32("decompressed size")

        block = self._read_exact(compressed_size)
        if len(block) < compressed_size:
            raise DecompressionError("cannot read compressed block: unexpected EOF")

        self._data = _decompress_block(block, compression_type, decompressed_size)
        return True


def _decompress_block(block: bytes, compression_type: int, decompressed_size: int) -> bytes:
    if compression_type == NONE_TYPE:
        return block
    if compression_type == LZ4_TYPE:
        try:
            return lz4.block.decompress(block, uncompressed_size=decompressed_size)
        except lz4.block.LZ4BlockError as exc:
            raise DecompressionError(f"cannot decompress lz4 block: {exc}") from exc
    if compression_type == ZSTD_TYPE:
        try:
            return zstandard.ZstdDecompressor().decompress(
                block, max_output_size=decompressed_size
            )
        except zstandard.ZstdError as exc:
            raise DecompressionError(f"cannot decompress zstd block: {exc}") from exc
    raise DecompressionError(f"unknown compressionType: {compression_type:X}")