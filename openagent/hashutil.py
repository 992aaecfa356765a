"""Hashing helpers for structures, byte strings and files."""

from __future__ import annotations

import hashlib
import os
from typing import Any, Union

_FNV64_OFFSET_BASIS = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF
_CHUNK = 64 * 1024


def struct_hash(obj: Any) -> str:
    """Return the hex MD5 digest of the object's full ``repr``."""
    return hashlib.md5(repr(obj).encode("utf-8")).hexdigest()


def byte_hash(data: Union[bytes, bytearray, memoryview, str]) -> int:
    """Return the 64-bit FNV-1a hash of *data*."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    value = _FNV64_OFFSET_BASIS
    for octet in bytes(data):
        value ^= octet
        value = (value * _FNV64_PRIME) & _MASK64
    return value


def file_hash(path: Union[str, os.PathLike]) -> str:
    """Return the hex MD5 digest of a file's contents.

    Raises OSError if the file cannot be opened or read.
    """
    digest = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()