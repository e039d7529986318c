"""Response writer that spools a response body into a temporary file."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from typing import Any, BinaryIO

log = logging.getLogger(__name__)

_DEFAULT_STATUS = 200


def _header_value(headers: Mapping, name: str) -> str:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        value = next((v for k, v in headers.items() if k.lower() == lowered), None)
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value


class TmpFileResponseWriter:
    """Captures a response into a temporary file, keeping headers in memory.

    The wrapped response must expose a ``headers`` mapping and a
    ``close_notify()`` method.
    """

    def __init__(self, response: Any, directory: str) -> None:
        if not callable(getattr(response, "close_notify", None)):
            raise TypeError("the response writer does not implement close_notify")
        self._response = response
        self._content_length = 0
        self._content_type = ""
        self._content_encoding = ""
        self._headers_captured = False
        self._status_code = 0

        try:
            fd, self._path = tempfile.mkstemp(prefix="tmp", dir=directory)
        except OSError as exc:
            raise OSError(f"cannot create temporary file in {directory!r}: {exc}") from exc
        self._file: BinaryIO = open(fd, "w+b")

    @property
    def path(self) -> str:
        return self._path

    def close(self) -> None:
        """Close and remove the temporary file."""
        self._file.close()
        os.remove(self._path)

    def __enter__(self) -> TmpFileResponseWriter:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def get_file(self) -> BinaryIO:
        """Flush pending data and return the temporary file."""
        try:
            self._file.flush()
        except OSError as exc:
            try:
                self._file.close()
            except OSError as close_exc:
                log.error("cannot close tmpFile: %s, error: %s", self._path, close_exc)
            try:
                os.remove(self._path)
            except OSError as remove_exc:
                log.error("cannot remove tmpFile: %s, error: %s", self._path, remove_exc)
            raise OSError(f"cannot flush data into {self._path!r}: {exc}") from exc
        return self._file

    def reader(self) -> BinaryIO:
        """Return the temporary file for reading."""
        return self.get_file()

    def reset_file_offset(self) -> None:
        """Move the read position back to the start of the file."""
        self.get_file().seek(0, os.SEEK_SET)

    def _capture_headers(self) -> None:
        if self._headers_captured:
            return
        self._headers_captured = True
        headers = getattr(self._response, "headers", None) or {}
        self._content_type = _header_value(headers, "Content-Type")
        self._content_encoding = _header_value(headers, "Content-Encoding")

    def captured_content_type(self) -> str:
        return self._content_type

    def captured_content_length(self) -> int:
        """Return the content length, measured from the file when not known."""
        if self._content_length == 0:
            end = self.get_file().seek(0, os.SEEK_END)
            self.reset_file_offset()
            return end
        return self._content_length

    def captured_content_encoding(self) -> str:
        return self._content_encoding

    def close_notify(self) -> Any:
        return self._response.close_notify()

    def write_header(self, status_code: int) -> None:
        """Record the status code; the wrapped response is not written to."""
        self._status_code = status_code

    def status_code(self) -> int:
        return self._status_code or _DEFAULT_STATUS

    def write(self, data: bytes) -> int:
        self._capture_headers()
        return self._file.write(data)