"""A buffer that assembles frontend protocol messages."""

from __future__ import annotations

import struct
from typing import BinaryIO

_CHUNK_SIZE = 4096
_NULL_PARAM_LENGTH = -1


def _byte(c: int | str) -> int:
    return ord(c) if isinstance(c, str) else c


class WriteBuffer:
    """Accumulates length-prefixed messages in ``data`` until flushed."""

    def __init__(self) -> None:
        self.data = bytearray()
        self._msg_start = 0
        self._param_start = 0

    def __bytes__(self) -> bytes:
        return bytes(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def start_message(self, c: int | str) -> None:
        """Begin a message of type ``c``; type 0 writes no type byte."""
        c = _byte(c)
        if c != 0:
            self.data.append(c)
        self._msg_start = len(self.data)
        self.data += b"\x00\x00\x00\x00"

    def finish_message(self) -> None:
        struct.pack_into(
            ">I", self.data, self._msg_start, len(self.data) - self._msg_start
        )

    def start_param(self) -> None:
        self._param_start = len(self.data)
        self.data += b"\x00\x00\x00\x00"

    def finish_param(self) -> None:
        struct.pack_into(
            ">I",
            self.data,
            self._param_start,
            len(self.data) - self._param_start - 4,
        )

    def finish_null_param(self) -> None:
        struct.pack_into(">i", self.data, self._param_start, _NULL_PARAM_LENGTH)

    def write(self, b: bytes) -> int:
        self.data += b
        return len(b)

    def write_int16(self, num: int) -> None:
        self.data += struct.pack(">H", num & 0xFFFF)

    def write_int32(self, num: int) -> None:
        self.data += struct.pack(">I", num & 0xFFFFFFFF)

    def write_string(self, s: str) -> None:
        """Write ``s`` as a NUL-terminated UTF-8 string."""
        self.data += s.encode()
        self.data.append(0)

    def write_bytes(self, b: bytes) -> None:
        """Write ``b`` followed by a NUL byte."""
        self.data += b
        self.data.append(0)

    def write_byte(self, c: int | str) -> None:
        self.data.append(_byte(c))

    def reset(self) -> None:
        self.data.clear()

    def read_from(self, r: BinaryIO) -> int:
        """Append one chunk read from ``r``; return its size, 0 at end of input."""
        chunk = r.read(_CHUNK_SIZE)
        if not chunk:
            return 0
        if isinstance(chunk, str):
            chunk = chunk.encode()
        self.data += chunk
        return len(chunk)