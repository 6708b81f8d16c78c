"""A bounded pool of server connections."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .conn import Conn

RETRY_BACKOFF = 0.25
"""Base delay in seconds between query retries; doubled on every attempt."""

logger = logging.getLogger("pgwire")
query_logger = logging.getLogger("pgwire.query")


class PoolClosedError(Exception):
    def __init__(self, message: str = "pg: database is closed") -> None:
        super().__init__(message)


class PoolTimeoutError(Exception):
    def __init__(self, message: str = "pg: connection pool timeout") -> None:
        super().__init__(message)


class _StaleConnError(Exception):
    def __init__(self) -> None:
        super().__init__("pg: connection is stale")


@dataclass
class PoolOptions:
    """Settings of a connection pool; durations are in seconds."""

    dial: Callable[[], Any]
    on_close: Callable[[Conn], Any] | None = None
    pool_size: int = 0
    pool_timeout: float = 0.0
    idle_timeout: float = 0.0
    idle_check_frequency: float = 0.0
    max_age: float = 0.0


@dataclass
class Stats:
    """Pool state and accumulated counters."""

    requests: int = 0
    hits: int = 0
    timeouts: int = 0
    total_conns: int = 0
    free_conns: int = 0


class ConnPool:
    """Hands out at most ``pool_size`` connections at a time."""

    def __init__(self, opt: PoolOptions) -> None:
        self.opt = opt
        self._queue = threading.Semaphore(opt.pool_size)
        self._conns_lock = threading.Lock()
        self._conns: list[Conn] = []
        self._free_lock = threading.Lock()
        self._free: list[Conn] = []
        self._stats_lock = threading.Lock()
        self._requests = 0
        self._hits = 0
        self._timeouts = 0
        self._close_lock = threading.Lock()
        self._closed = threading.Event()

        if opt.idle_timeout > 0 and opt.idle_check_frequency > 0:
            threading.Thread(
                target=self._reaper,
                args=(opt.idle_check_frequency,),
                name="pgwire-reaper",
                daemon=True,
            ).start()

    def __len__(self) -> int:
        with self._conns_lock:
            return len(self._conns)

    def new_conn(self) -> Conn:
        """Dial a new connection that the pool does not track."""
        return Conn(self.opt.dial())

    def _is_stale(self, cn: Conn) -> bool:
        if self.opt.idle_timeout == 0 and self.opt.max_age == 0:
            return False
        now = time.monotonic()
        if self.opt.idle_timeout > 0 and now - cn.used_at >= self.opt.idle_timeout:
            return True
        if self.opt.max_age > 0 and (
            cn.inited_at is None or now - cn.inited_at >= self.opt.max_age
        ):
            return True
        return False

    def _count_timeout(self) -> None:
        with self._stats_lock:
            self._timeouts += 1

    def pop_free(self) -> Conn | None:
        """Take a free connection, or return ``None`` if there is none or on timeout."""
        if not self._queue.acquire(timeout=self.opt.pool_timeout):
            self._count_timeout()
            return None
        with self._free_lock:
            cn = self._free.pop() if self._free else None
        if cn is None:
            self._queue.release()
        return cn

    def get(self) -> tuple[Conn, bool]:
        """Return a connection and whether it was newly dialled."""
        if self.closed():
            raise PoolClosedError()
        with self._stats_lock:
            self._requests += 1

        if not self._queue.acquire(timeout=self.opt.pool_timeout):
            self._count_timeout()
            raise PoolTimeoutError()

        while True:
            with self._free_lock:
                cn = self._free.pop() if self._free else None
            if cn is None:
                break
            if self._is_stale(cn):
                self._remove(cn, _StaleConnError())
                continue
            with self._stats_lock:
                self._hits += 1
            return cn, False

        try:
            new_cn = self.new_conn()
        except BaseException:
            self._queue.release()
            raise
        with self._conns_lock:
            self._conns.append(new_cn)
        return new_cn, True

    def put(self, cn: Conn) -> None:
        """Return a connection to the pool; one with unread data is removed instead."""
        try:
            cn.check_health()
        except ConnectionError as exc:
            logger.warning("%s", exc)
            self.remove(cn, exc)
            return
        with self._free_lock:
            self._free.append(cn)
        self._queue.release()

    def remove(self, cn: Conn, reason: BaseException | None) -> None:
        """Close a checked-out connection and release its slot."""
        self._remove(cn, reason)
        self._queue.release()

    def _remove(self, cn: Conn, reason: BaseException | None) -> None:
        try:
            self._close_conn(cn, reason)
        except Exception:
            pass
        with self._conns_lock:
            try:
                self._conns.remove(cn)
            except ValueError:
                pass

    def free_len(self) -> int:
        with self._free_lock:
            return len(self._free)

    def stats(self) -> Stats:
        with self._stats_lock:
            requests, hits, timeouts = self._requests, self._hits, self._timeouts
        return Stats(
            requests=requests,
            hits=hits,
            timeouts=timeouts,
            total_conns=len(self),
            free_conns=self.free_len(),
        )

    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Close every connection; raise ``PoolClosedError`` if already closed."""
        with self._close_lock:
            if self._closed.is_set():
                raise PoolClosedError()
            self._closed.set()

        first_err: Exception | None = None
        with self._conns_lock:
            for cn in self._conns:
                try:
                    self._close_conn(cn, PoolClosedError())
                except Exception as exc:
                    if first_err is None:
                        first_err = exc
            self._conns = []
        with self._free_lock:
            self._free = []
        if first_err is not None:
            raise first_err

    def _close_conn(self, cn: Conn, reason: BaseException | None) -> None:
        if self.opt.on_close is not None:
            try:
                self.opt.on_close(cn)
            except Exception:
                pass
        cn.close()

    def _reap_stale_conn(self) -> bool:
        if not self._free:
            return False
        cn = self._free[0]
        if not self._is_stale(cn):
            return False
        self._remove(cn, _StaleConnError())
        del self._free[0]
        return True

    def reap_stale_conns(self) -> int:
        """Close stale free connections from the oldest on; return how many."""
        n = 0
        while True:
            self._queue.acquire()
            try:
                with self._free_lock:
                    reaped = self._reap_stale_conn()
            finally:
                self._queue.release()
            if not reaped:
                return n
            n += 1

    def _reaper(self, frequency: float) -> None:
        while not self._closed.wait(frequency):
            try:
                n = self.reap_stale_conns()
            except Exception as exc:
                logger.warning("ReapStaleConns failed: %s", exc)
                continue
            s = self.stats()
            logger.debug(
                "reaper: removed %d stale conns (TotalConns=%d FreeConns=%d "
                "Requests=%d Hits=%d Timeouts=%d)",
                n, s.total_conns, s.free_conns, s.requests, s.hits, s.timeouts,
            )