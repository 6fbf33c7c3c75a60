"""Line reader over a raw file descriptor with an internal buffer."""

from __future__ import annotations

import os

__all__ = ["LineReader"]

_BUF_SIZE = 8192
_CAPACITY = 2 * _BUF_SIZE


class LineReader:
    """Reads newline-terminated lines from a descriptor, one ``read`` per call.

    Read errors, including ``BlockingIOError`` on a non-blocking descriptor
    with nothing to read, are raised as ``OSError``.
    """

    def __init__(self, fd: int) -> None:
        self.fd = fd
        self._buffer = bytearray()
        self._eof = False

    @property
    def eof(self) -> bool:
        """True once a read returned end of file."""
        return self._eof

    def rewind(self) -> None:
        """Clear the end-of-file flag so reading may be tried again."""
        self._eof = False

    def read_line(self, size: int) -> bytes | None:
        """Return the next line of at most ``size`` bytes, or None if no
        complete line is available yet."""
        if size < 1:
            raise ValueError("size must be at least 1")

        buffer = self._buffer
        line_end: int | None = None
        if buffer:
            idx = buffer.find(b"\n")
            if idx >= 0:
                line_end = idx
            elif len(buffer) >= size:
                line_end = len(buffer) - 1

        if line_end is None and len(buffer) < _CAPACITY and not self._eof:
            chunk = os.read(self.fd, _CAPACITY - len(buffer))
            if chunk:
                buffer.extend(chunk)
            else:
                self._eof = True
            idx = buffer.find(b"\n")
            if idx >= 0:
                line_end = idx

        if line_end is not None:
            line_len = min(line_end + 1, size)
        elif len(buffer) >= _CAPACITY or len(buffer) >= size:
            line_len = min(size, len(buffer))
        else:
            return None

        line = bytes(buffer[:line_len])
        del buffer[:line_len]
        return line