"""A single server connection with buffered reads and a pending-write buffer."""

from __future__ import annotations

import time
from typing import Any

from .write_buffer import WriteBuffer

_RECV_SIZE = 65536


def _hex_dump(data: bytes) -> str:
    lines = []
    for off in range(0, len(data), 16):
        chunk = data[off:off + 16]
        left = " ".join(f"{b:02x}" for b in chunk[:8])
        right = " ".join(f"{b:02x}" for b in chunk[8:])
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{off:08x}  {left:<23}  {right:<23}  |{text}|\n")
    return "".join(lines)


def _format_addr(addr: Any) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            host = f"[{host}]"
        return f"{host}:{port}"
    if isinstance(addr, bytes):
        return addr.decode("utf-8", "replace")
    return str(addr) if addr else ""


class Conn:
    """A network connection to the server together with its protocol state."""

    def __init__(self, sock: Any) -> None:
        self._rbuf = bytearray()
        self.wr = WriteBuffer()
        self.columns: list[bytes] = []
        self.inited_at: float | None = None
        self.used_at = time.monotonic()
        self.process_id = 0
        self.secret_key = 0
        self._last_id = 0
        self._read_deadline: float | None = None
        self._write_deadline: float | None = None
        self._sock: Any = None
        self.set_net_conn(sock)

    @property
    def net_conn(self) -> Any:
        """The underlying socket-like object."""
        return self._sock

    @property
    def buffered(self) -> int:
        """Number of bytes received but not consumed yet."""
        return len(self._rbuf)

    def remote_addr(self) -> str:
        """The peer address as ``host:port``, or an empty string if unknown."""
        try:
            return _format_addr(self._sock.getpeername())
        except (OSError, AttributeError):
            return ""

    def set_net_conn(self, sock: Any) -> None:
        """Switch to another socket, discarding anything buffered from the old one."""
        self._sock = sock
        self._rbuf.clear()

    def next_id(self) -> str:
        self._last_id += 1
        return str(self._last_id)

    def set_read_write_timeout(self, rt: float, wt: float) -> None:
        """Set deadlines ``rt`` and ``wt`` seconds from now; 0 means no deadline."""
        now = time.monotonic()
        self.used_at = now
        self._read_deadline = now + rt if rt and rt > 0 else None
        self._write_deadline = now + wt if wt and wt > 0 else None

    def _set_timeout(self, deadline: float | None, op: str) -> None:
        if deadline is None:
            self._sock.settimeout(None)
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"{op}: i/o timeout")
        self._sock.settimeout(remaining)

    def _fill(self) -> None:
        self._set_timeout(self._read_deadline, "read")
        try:
            chunk = self._sock.recv(_RECV_SIZE)
        except TimeoutError as exc:
            raise TimeoutError("read: i/o timeout") from exc
        if not chunk:
            raise EOFError("unexpected EOF" if self._rbuf else "EOF")
        self._rbuf += chunk

    def read_n(self, n: int) -> bytes:
        """Read exactly ``n`` bytes."""
        if n < 0:
            raise ValueError(f"pg: negative read length {n}")
        while len(self._rbuf) < n:
            self._fill()
        data = bytes(self._rbuf[:n])
        del self._rbuf[:n]
        return data

    def read_byte(self) -> int:
        return self.read_n(1)[0]

    def read_cstring(self) -> bytes:
        """Read up to and including a NUL byte; return the bytes before it."""
        start = 0
        while True:
            end = self._rbuf.find(0, start)
            if end != -1:
                data = bytes(self._rbuf[:end])
                del self._rbuf[:end + 1]
                return data
            start = len(self._rbuf)
            self._fill()

    def flush_writer(self) -> None:
        """Send the pending write buffer and clear it, even on failure."""
        try:
            self._set_timeout(self._write_deadline, "write")
            try:
                self._sock.sendall(bytes(self.wr.data))
            except TimeoutError as exc:
                raise TimeoutError("write: i/o timeout") from exc
        finally:
            self.wr.reset()

    def close(self) -> None:
        self._sock.close()

    def check_health(self) -> None:
        """Raise ``ConnectionError`` if unread data is left in the read buffer."""
        if self._rbuf:
            raise ConnectionError(
                "connection has unread data:\n" + _hex_dump(bytes(self._rbuf))
            )