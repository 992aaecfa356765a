"""Bounded buffer allocation and big-endian socket reading and writing."""

from __future__ import annotations

import struct
from array import array
from typing import Any, List, Optional

BYTE_LIMIT = 20 * 1024 * 1024
STRING_LIMIT = 10240


def _check(size: int, total: int, limit: int) -> None:
    if size < 0 or total > limit:
        raise ValueError(f"ILLEGAL MEMORY SIZE REQUEST {size}")


def new_byte_array(size: int) -> bytearray:
    """Return a zeroed byte buffer, refusing sizes above the byte limit."""
    _check(size, size, BYTE_LIMIT)
    return bytearray(size)


def new_string_list(size: int) -> List[str]:
    """Return a list of empty strings, refusing more than 10240 entries."""
    _check(size, size, STRING_LIMIT)
    return [""] * size


def new_int16_array(size: int) -> array:
    """Return a zeroed array of 16-bit integers."""
    _check(size, size * 2, BYTE_LIMIT)
    return array("h", [0]) * size


def new_int32_array(size: int) -> array:
    """Return a zeroed array of 32-bit integers."""
    _check(size, size * 4, BYTE_LIMIT)
    return array("i", [0]) * size


def new_int64_array(size: int) -> array:
    """Return a zeroed array of 64-bit integers."""
    _check(size, size * 8, BYTE_LIMIT)
    return array("q", [0]) * size


def new_float32_array(size: int) -> array:
    """Return a zeroed array of 32-bit floats."""
    _check(size, size * 4, BYTE_LIMIT)
    return array("f", [0.0]) * size


def new_float64_array(size: int) -> array:
    """Return a zeroed array of 64-bit floats."""
    _check(size, size * 8, BYTE_LIMIT)
    return array("d", [0.0]) * size


class NetReader:
    """Reads exact-length, big-endian values from a connected socket."""

    def __init__(self, sock: Any) -> None:
        self.sock = sock

    def read_bytes(self, size: int) -> bytes:
        """Read exactly *size* bytes; raise EOFError if the peer closes early."""
        buffer = new_byte_array(size)
        view = memoryview(buffer)
        received = 0
        while received < size:
            chunk = self.sock.recv(size - received)
            if not chunk:
                raise EOFError(f"connection closed after {received} of {size} bytes")
            view[received:received + len(chunk)] = chunk
            received += len(chunk)
        return bytes(buffer)

    def read_byte(self) -> int:
        return self.read_bytes(1)[0]

    def read_short(self) -> int:
        return struct.unpack(">h", self.read_bytes(2))[0]

    def read_int(self) -> int:
        return struct.unpack(">i", self.read_bytes(4))[0]

    def read_long(self) -> int:
        return struct.unpack(">q", self.read_bytes(8))[0]

    def read_int_bytes_limit(self, maximum: int) -> bytes:
        """Read a 4-byte length prefix and then that many bytes, up to *maximum*."""
        size = self.read_int()
        if size < 0 or size > maximum:
            raise ValueError("ReadIntBytesLimit max reached")
        return self.read_bytes(size)


class NetWriter:
    """Writes whole buffers to a connected socket."""

    def __init__(self, sock: Any) -> None:
        self.sock = sock

    def write_bytes(self, data: bytes, timeout: Optional[float]) -> None:
        """Send all of *data*, each send bounded by *timeout* seconds.

        On failure the socket is closed and the error re-raised.
        """
        view = memoryview(data)
        sent = 0
        while sent < len(view):
            try:
                self.sock.settimeout(timeout)
                sent += self.sock.send(view[sent:])
            except OSError:
                self.sock.close()
                raise
        self.sock.settimeout(None)