"""Receiving notifications sent with the NOTIFY command."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .conn import Conn
from .errors import Error, is_bad_conn
from .pool import logger
from .protocol import quote_identifier, read_notification, write_query_msg

if TYPE_CHECKING:
    from .db import DB

_CHANNEL_SIZE = 100
_CHANNEL_POLL = 5.0


@dataclass(frozen=True)
class Notification:
    """A notification received on a channel."""

    channel: str
    payload: str


class ListenerClosedError(Error):
    def __init__(self, message: str = "pg: listener is closed") -> None:
        super().__init__(message)


def append_if_not_exists(ss: list[str], *args: str) -> list[str]:
    """Return ``ss`` extended by those of ``args`` not in it yet."""
    result = list(ss)
    for e in args:
        if e not in result:
            result.append(e)
    return result


class Listener:
    """Listens for notifications; only ``channel`` may be used from other threads."""

    def __init__(self, db: DB) -> None:
        self._db = db
        self.channels: list[str] = []
        self._lock = threading.Lock()
        self._cn: Conn | None = None
        self._closed = False

    def __enter__(self) -> Listener:
        return self

    def __exit__(self, *exc: Any) -> None:
        if not self._closed:
            self.close()

    def current_conn(self) -> Conn | None:
        """The connection in use, if any."""
        return self._cn

    def _conn(self, read_timeout: float) -> Conn:
        with self._lock:
            if self._closed:
                raise ListenerClosedError()
            if self._cn is None:
                cn = self._db._conn()
                self._cn = cn
                if self.channels:
                    self._listen(cn, self.channels)
            self._cn.set_read_write_timeout(
                read_timeout, self._db.options().write_timeout
            )
            return self._cn

    def channel(self) -> queue.Queue[Notification | None]:
        """A queue fed with notifications by a background thread.

        ``None`` is put on the queue once the listener is closed.
        """
        ch: queue.Queue[Notification | None] = queue.Queue(maxsize=_CHANNEL_SIZE)

        def pump() -> None:
            while True:
                try:
                    notification = self.receive_timeout(_CHANNEL_POLL)
                except ListenerClosedError:
                    break
                except Exception:
                    continue
                ch.put(notification)
            ch.put(None)

        threading.Thread(target=pump, name="pgwire-listener", daemon=True).start()
        return ch

    def listen(self, *args: str) -> None:
        """Start listening for notifications on the given channels."""
        cn = self._conn(self._db.options().read_timeout)
        try:
            self._listen(cn, args)
        except Exception as exc:
            self._free_conn(exc)
            raise
        self.channels = append_if_not_exists(self.channels, *args)

    @staticmethod
    def _listen(cn: Conn, channels: Any) -> None:
        for channel in channels:
            write_query_msg(cn.wr, "LISTEN " + quote_identifier(channel))
        cn.flush_writer()

    def receive(self) -> Notification:
        """Wait for a notification without a time limit."""
        return self.receive_timeout(0)

    def receive_timeout(self, timeout: float) -> Notification:
        """Wait up to ``timeout`` seconds for a notification; 0 means no limit."""
        try:
            cn = self._conn(timeout)
            channel, payload = read_notification(cn)
        except Exception as exc:
            self._free_conn(exc)
            raise
        return Notification(channel, payload)

    def _free_conn(self, err: BaseException) -> None:
        if is_bad_conn(err, True):
            self._close_conn(err)

    def _close_conn(self, reason: BaseException) -> None:
        with self._lock:
            if self._cn is None:
                return
            if not self._closed:
                logger.warning("pg: discarding bad listener connection: %s", reason)
            cn, self._cn = self._cn, None
        self._db.pool().remove(cn, reason)

    def close(self) -> None:
        """Close the listener; raise ``ListenerClosedError`` if already closed."""
        with self._lock:
            was_closed = self._closed
            self._closed = True
        if was_closed:
            raise ListenerClosedError()
        self._close_conn(ListenerClosedError())