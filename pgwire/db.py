"""A database handle that runs queries over a pool of connections."""

from __future__ import annotations

import dataclasses
import json
import time
from typing import Any, BinaryIO

from .auth import enable_ssl, startup
from .conn import Conn
from .errors import PGError, assert_one_row, is_bad_conn, is_network_error
from .listener import Listener
from .options import Options
from .pool import RETRY_BACKOFF, ConnPool, PoolOptions, logger
from .protocol import (
    CommandResult,
    Row,
    read_copy_data,
    read_copy_in_response,
    read_copy_out_response,
    read_ready_for_query,
    read_simple_query,
    read_simple_query_data,
    terminate_conn,
    write_cancel_request_msg,
    write_copy_data,
    write_copy_done,
    write_query_msg,
)

_MAX_QUERY_ATTEMPTS = 3

QueryResult = tuple["CommandResult | None", list[str], list[Row]]


def new_conn_pool(opt: Options) -> ConnPool:
    """Create the connection pool described by ``opt``."""
    return ConnPool(
        PoolOptions(
            dial=opt.get_dialer(),
            on_close=terminate_conn,
            pool_size=opt.pool_size,
            pool_timeout=opt.pool_timeout,
            idle_timeout=opt.idle_timeout,
            idle_check_frequency=opt.idle_check_frequency,
            max_age=opt.max_age,
        )
    )


def connect(opt: Options) -> DB:
    """Return a handle for the database described by ``opt``; nothing is dialled yet."""
    opt.apply_defaults()
    return DB(opt, new_conn_pool(opt))


class DB:
    """A handle to a database, safe to share between threads."""

    def __init__(self, opt: Options, pool: ConnPool) -> None:
        self._opt = opt
        self._pool = pool

    def __str__(self) -> str:
        return f"DB<Addr={json.dumps(self._opt.addr, ensure_ascii=False)}>"

    __repr__ = __str__

    def __enter__(self) -> DB:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def options(self) -> Options:
        """The options the handle was created with; treat them as read-only."""
        return self._opt

    def pool(self) -> ConnPool:
        return self._pool

    def with_timeout(self, d: float) -> DB:
        """A handle sharing this pool that uses ``d`` seconds as read/write timeout."""
        opt = dataclasses.replace(self._opt, read_timeout=d, write_timeout=d)
        return DB(opt, self._pool)

    def _conn(self) -> Conn:
        cn, _ = self._pool.get()
        cn.set_read_write_timeout(self._opt.read_timeout, self._opt.write_timeout)
        if cn.inited_at is None:
            try:
                self._init_conn(cn)
            except Exception as exc:
                self._pool.remove(cn, exc)
                raise
            cn.inited_at = time.monotonic()
        return cn

    def _init_conn(self, cn: Conn) -> None:
        if self._opt.ssl_context is not None:
            enable_ssl(cn, self._opt.ssl_context)
        startup(cn, self._opt.user, self._opt.password, self._opt.database)

    def _free_conn(self, cn: Conn, err: BaseException | None) -> None:
        if is_bad_conn(err, False):
            self._pool.remove(cn, err)
        else:
            self._pool.put(cn)

    def _should_retry(self, err: BaseException) -> bool:
        if isinstance(err, PGError):
            code = err.field("C")
            if code in ("40001", "55000"):
                return True
            if code == "57014":
                return self._opt.retry_statement_timeout
            return False
        return is_network_error(err)

    def close(self) -> None:
        """Close the pool and every connection in it."""
        st = self._pool.stats()
        if st.total_conns != st.free_conns:
            logger.warning(
                "connection leaking detected: total_conns=%d free_conns=%d",
                st.total_conns,
                st.free_conns,
            )
        self._pool.close()

    def _run(self, fn: Any, query: str | bytes, limit: int | None) -> Any:
        attempt = 0
        while True:
            cn = self._conn()
            try:
                result = fn(cn, query)
            except Exception as exc:
                self._free_conn(cn, exc)
                if (
                    (limit is not None and attempt + 1 >= limit)
                    or attempt >= self._opt.max_retries
                    or not self._should_retry(exc)
                ):
                    raise
            else:
                self._free_conn(cn, None)
                return result
            time.sleep(RETRY_BACKOFF * (1 << attempt))
            attempt += 1

    def execute(self, query: str | bytes) -> CommandResult | None:
        """Run a query, discarding any rows it returns."""
        return self._run(self._simple_query, query, None)

    def execute_one(self, query: str | bytes) -> CommandResult | None:
        """Like ``execute``, but the query must affect exactly one row."""
        res = self.execute(query)
        assert_one_row(res.rows_affected() if res is not None else 0)
        return res

    def query(self, query: str | bytes) -> QueryResult:
        """Run a query and return its result, column names and rows."""
        return self._run(self._simple_query_data, query, _MAX_QUERY_ATTEMPTS)

    def query_one(self, query: str | bytes) -> QueryResult:
        """Like ``query``, but the query must return exactly one row."""
        res, columns, rows = self.query(query)
        assert_one_row(res.rows_affected() if res is not None else 0)
        return res, columns, rows

    def listen(self, *args: str) -> Listener:
        """Return a listener subscribed to the given channels."""
        ln = Listener(self)
        try:
            ln.listen(*args)
        except Exception:
            pass
        return ln

    def copy_from(self, reader: BinaryIO, query: str | bytes) -> CommandResult | None:
        """Copy data read from ``reader`` into a table with a COPY ... FROM STDIN."""
        cn = self._conn()
        try:
            res = self._copy_from(cn, reader, query)
        except Exception as exc:
            self._free_conn(cn, exc)
            raise
        self._free_conn(cn, None)
        return res

    def copy_to(self, writer: BinaryIO, query: str | bytes) -> CommandResult | None:
        """Copy table data to ``writer`` with a COPY ... TO STDOUT."""
        cn = self._conn()
        try:
            write_query_msg(cn.wr, query)
        except Exception:
            self._pool.put(cn)
            raise
        try:
            cn.flush_writer()
            read_copy_out_response(cn)
            res = read_copy_data(cn, writer)
        except Exception as exc:
            self._free_conn(cn, exc)
            raise
        self._pool.put(cn)
        return res

    def _cancel_request(self, process_id: int, secret_key: int) -> None:
        cn = self._pool.new_conn()
        write_cancel_request_msg(cn.wr, process_id, secret_key)
        cn.flush_writer()
        cn.close()

    @staticmethod
    def _simple_query(cn: Conn, query: str | bytes) -> CommandResult | None:
        write_query_msg(cn.wr, query)
        cn.flush_writer()
        return read_simple_query(cn)

    @staticmethod
    def _simple_query_data(cn: Conn, query: str | bytes) -> QueryResult:
        write_query_msg(cn.wr, query)
        cn.flush_writer()
        return read_simple_query_data(cn)

    @staticmethod
    def _copy_from(
        cn: Conn, reader: BinaryIO, query: str | bytes
    ) -> CommandResult | None:
        write_query_msg(cn.wr, query)
        cn.flush_writer()
        read_copy_in_response(cn)
        while write_copy_data(cn.wr, reader):
            cn.flush_writer()
        write_copy_done(cn.wr)
        cn.flush_writer()
        return read_ready_for_query(cn)