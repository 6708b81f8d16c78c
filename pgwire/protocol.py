"""Frontend/backend protocol messages: writers for requests, readers for replies."""

from __future__ import annotations

import datetime
import logging
import struct
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, BinaryIO

from .conn import Conn
from .errors import PGError
from .pool import query_logger
from .write_buffer import WriteBuffer

_COMMAND_COMPLETE = "C"
_ERROR_RESPONSE = "E"
_NOTICE_RESPONSE = "N"
_PARAMETER_STATUS = "S"
_NO_DATA = "n"
_AUTH_REPLY = "p"
_TERMINATE = "X"

_NOTIFICATION_RESPONSE = "A"

_DESCRIBE = "D"
_PARAMETER_DESCRIPTION = "t"

_QUERY = "Q"
_READY_FOR_QUERY = "Z"
_ROW_DESCRIPTION = "T"
_DATA_ROW = "D"

_PARSE = "P"
_PARSE_COMPLETE = "1"

_BIND = "B"
_BIND_COMPLETE = "2"

_EXECUTE = "E"

_SYNC = "S"
_FLUSH = "H"

_CLOSE = "C"
_CLOSE_COMPLETE = "3"

_COPY_IN_RESPONSE = "G"
_COPY_OUT_RESPONSE = "H"
_COPY_DATA = "d"
_COPY_DONE = "c"

_PROTOCOL_VERSION = 196608
_SSL_REQUEST_CODE = 80877103
_CANCEL_REQUEST_CODE = 80877102

_TERMINATE_MESSAGE = bytes([ord(_TERMINATE), 0, 0, 0, 4])

Row = tuple["bytes | None", ...]


def _decode(b: bytes) -> str:
    return b.decode("utf-8", "replace")


@dataclass(frozen=True)
class CommandResult:
    """The outcome of a command: its completion tag and the rows it returned."""

    tag: str
    returned: int = 0

    def rows_affected(self) -> int:
        """The row count carried by the tag; 0 if it has none, -1 if unreadable."""
        _, sep, last = self.tag.rpartition(" ")
        if not sep:
            return 0
        try:
            return int(last)
        except ValueError:
            return -1

    def rows_returned(self) -> int:
        return self.returned


def _new_result(b: bytes, rows: int) -> CommandResult:
    return CommandResult(_decode(b.rstrip(b"\x00")), rows)


def _unexpected(where: str, c: str) -> ValueError:
    return ValueError(f"pg: {where}: unexpected message {ord(c):#x}")


def _skip_async(cn: Conn, c: str, msg_len: int) -> bool:
    """Consume a notice or parameter status message; report whether ``c`` was one."""
    if c in (_NOTICE_RESPONSE, _PARAMETER_STATUS):
        cn.read_n(msg_len)
        return True
    return False


def quote_identifier(name: str) -> str:
    """Quote ``name`` as an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def write_startup_msg(buf: WriteBuffer, user: str, database: str) -> None:
    buf.start_message(0)
    buf.write_int32(_PROTOCOL_VERSION)
    buf.write_string("user")
    buf.write_string(user)
    buf.write_string("database")
    buf.write_string(database)
    buf.write_string("")
    buf.finish_message()


def write_ssl_msg(buf: WriteBuffer) -> None:
    buf.start_message(0)
    buf.write_int32(_SSL_REQUEST_CODE)
    buf.finish_message()


def write_password_msg(buf: WriteBuffer, password: str) -> None:
    buf.start_message(_AUTH_REPLY)
    buf.write_string(password)
    buf.finish_message()


def write_flush_msg(buf: WriteBuffer) -> None:
    buf.start_message(_FLUSH)
    buf.finish_message()


def write_cancel_request_msg(
    buf: WriteBuffer, process_id: int, secret_key: int
) -> None:
    buf.start_message(0)
    buf.write_int32(_CANCEL_REQUEST_CODE)
    buf.write_int32(process_id)
    buf.write_int32(secret_key)
    buf.finish_message()


def write_query_msg(buf: WriteBuffer, query: str | bytes) -> None:
    """Append a simple Query message; the whole buffer is reset on failure."""
    if isinstance(query, str):
        data = query.encode()
    elif isinstance(query, (bytes, bytearray)):
        data = bytes(query)
    else:
        buf.reset()
        raise TypeError(f"pg: can't append {type(query).__name__}")
    if query_logger.isEnabledFor(logging.DEBUG):
        query_logger.debug("%s", _decode(data).rstrip("\t\n"))
    buf.start_message(_QUERY)
    buf.write(data)
    buf.write_byte(0)
    buf.finish_message()


def write_sync_msg(buf: WriteBuffer) -> None:
    buf.start_message(_SYNC)
    buf.finish_message()


def write_parse_describe_sync_msg(buf: WriteBuffer, name: str, q: str) -> None:
    buf.start_message(_PARSE)
    buf.write_string(name)
    buf.write_string(q)
    buf.write_int16(0)
    buf.finish_message()

    buf.start_message(_DESCRIBE)
    buf.write_byte("S")
    buf.write_string(name)
    buf.finish_message()

    write_sync_msg(buf)


def read_parse_describe_sync(cn: Conn) -> list[str]:
    """Read the replies to Parse/Describe/Sync; return the statement's columns."""
    columns: list[str] = []
    while True:
        c, msg_len = read_message_type(cn)
        if c == _ROW_DESCRIPTION:
            columns = read_row_description(cn)
        elif c in (_PARSE_COMPLETE, _PARAMETER_DESCRIPTION, _NO_DATA):
            cn.read_n(msg_len)
        elif c == _READY_FOR_QUERY:
            cn.read_n(msg_len)
            return columns
        elif c == _ERROR_RESPONSE:
            raise read_error(cn)
        elif not _skip_async(cn, c, msg_len):
            raise _unexpected("readParseDescribeSync", c)


def _encode_param(value: Any) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return b"TRUE" if value else b"FALSE"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return b"\\x" + bytes(value).hex().encode()
    if isinstance(value, str):
        return value.encode()
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        if isinstance(value, datetime.datetime):
            return value.isoformat(" ").encode()
        return value.isoformat().encode()
    return str(value).encode()


def write_bind_execute_msg(buf: WriteBuffer, name: str, *args: Any) -> None:
    """Append Bind, Execute and Sync messages for prepared statement ``name``."""
    buf.start_message(_BIND)
    buf.write_string("")
    buf.write_string(name)
    buf.write_int16(0)
    buf.write_int16(len(args))
    for param in args:
        buf.start_param()
        data = _encode_param(param)
        if data is None:
            buf.finish_null_param()
        else:
            buf.write(data)
            buf.finish_param()
    buf.write_int16(0)
    buf.finish_message()

    buf.start_message(_EXECUTE)
    buf.write_string("")
    buf.write_int32(0)
    buf.finish_message()

    write_sync_msg(buf)


def read_bind_msg(cn: Conn) -> None:
    while True:
        c, msg_len = read_message_type(cn)
        if c == _BIND_COMPLETE:
            cn.read_n(msg_len)
        elif c == _READY_FOR_QUERY:
            cn.read_n(msg_len)
            return
        elif c == _ERROR_RESPONSE:
            raise read_error(cn)
        elif not _skip_async(cn, c, msg_len):
            raise _unexpected("readBindMsg", c)


def write_close_msg(buf: WriteBuffer, name: str) -> None:
    buf.start_message(_CLOSE)
    buf.write_byte("S")
    buf.write_string(name)
    buf.finish_message()


def read_close_complete_msg(cn: Conn) -> None:
    while True:
        c, msg_len = read_message_type(cn)
        if c == _CLOSE_COMPLETE:
            cn.read_n(msg_len)
            return
        if c == _ERROR_RESPONSE:
            raise read_error(cn)
        if not _skip_async(cn, c, msg_len):
            raise _unexpected("readCloseCompleteMsg", c)


def _read_query(cn: Conn, where: str, extended: bool) -> CommandResult | None:
    res: CommandResult | None = None
    first_err: Exception | None = None
    rows = 0
    while True:
        c, msg_len = read_message_type(cn)
        if c == _COMMAND_COMPLETE:
            res = _new_result(cn.read_n(msg_len), rows)
        elif c == _READY_FOR_QUERY:
            cn.read_n(msg_len)
            if first_err is not None:
                raise first_err
            return res
        elif c == _DATA_ROW:
            cn.read_n(msg_len)
            rows += 1
        elif (c == _BIND_COMPLETE) if extended else (c == _ROW_DESCRIPTION):
            cn.read_n(msg_len)
        elif c == _ERROR_RESPONSE:
            e = read_error(cn)
            if first_err is None:
                first_err = e
        elif not _skip_async(cn, c, msg_len):
            raise _unexpected(where, c)


def read_simple_query(cn: Conn) -> CommandResult | None:
    """Read the reply to a simple query, discarding rows; raise the first error."""
    return _read_query(cn, "readSimpleQuery", extended=False)


def read_ext_query(cn: Conn) -> CommandResult | None:
    """Read the reply to Bind/Execute/Sync, discarding rows; raise the first error."""
    return _read_query(cn, "readExtQuery", extended=True)


def read_row_description(cn: Conn) -> list[str]:
    """Read a RowDescription body and return the column names."""
    count = read_int16(cn)
    columns = []
    for _ in range(count):
        columns.append(_decode(cn.read_cstring()))
        cn.read_n(18)
    return columns


def _read_values(cn: Conn) -> Row:
    count = read_int16(cn)
    values: list[bytes | None] = []
    for _ in range(count):
        length = read_int32(cn)
        values.append(None if length == -1 else cn.read_n(length))
    return tuple(values)


def _column_mismatch(got: int, wanted: int) -> ValueError:
    return ValueError(
        f"pg: data row has {got} columns, row description has {wanted}"
    )


def read_data_row(cn: Conn, columns: Sequence[str]) -> Row:
    """Read a DataRow body; ``None`` stands for SQL NULL."""
    values = _read_values(cn)
    if len(values) != len(columns):
        raise _column_mismatch(len(values), len(columns))
    return values


def _read_query_data(
    cn: Conn, columns: list[str], where: str, extended: bool
) -> tuple[CommandResult | None, list[str], list[Row]]:
    res: CommandResult | None = None
    first_err: Exception | None = None
    rows: list[Row] = []
    count = 0

    def set_err(err: Exception) -> None:
        nonlocal first_err
        if first_err is None:
            first_err = err

    while True:
        c, msg_len = read_message_type(cn)
        if not extended and c == _ROW_DESCRIPTION:
            columns = read_row_description(cn)
            cn.columns = columns
        elif extended and c == _BIND_COMPLETE:
            cn.read_n(msg_len)
        elif c == _DATA_ROW:
            values = _read_values(cn)
            if len(values) != len(columns):
                set_err(_column_mismatch(len(values), len(columns)))
            else:
                rows.append(values)
            count += 1
        elif c == _COMMAND_COMPLETE:
            res = _new_result(cn.read_n(msg_len), count)
        elif c == _READY_FOR_QUERY:
            cn.read_n(msg_len)
            if first_err is not None:
                raise first_err
            return res, columns, rows
        elif c == _ERROR_RESPONSE:
            set_err(read_error(cn))
        elif not _skip_async(cn, c, msg_len):
            raise _unexpected(where, c)


def read_simple_query_data(
    cn: Conn,
) -> tuple[CommandResult | None, list[str], list[Row]]:
    """Read the reply to a simple query; return the result, columns and rows."""
    return _read_query_data(cn, [], "readSimpleQueryData", extended=False)


def read_ext_query_data(
    cn: Conn, columns: Sequence[str]
) -> tuple[CommandResult | None, list[str], list[Row]]:
    """Read the reply to Bind/Execute/Sync whose columns are already known."""
    return _read_query_data(cn, list(columns), "readExtQueryData", extended=True)


def _read_copy_response(cn: Conn, expected: str, where: str) -> None:
    while True:
        c, msg_len = read_message_type(cn)
        if c == expected:
            cn.read_n(msg_len)
            return
        if c == _ERROR_RESPONSE:
            raise read_error(cn)
        if not _skip_async(cn, c, msg_len):
            raise _unexpected(where, c)


def read_copy_in_response(cn: Conn) -> None:
    _read_copy_response(cn, _COPY_IN_RESPONSE, "readCopyInResponse")


def read_copy_out_response(cn: Conn) -> None:
    _read_copy_response(cn, _COPY_OUT_RESPONSE, "readCopyOutResponse")


def read_copy_data(cn: Conn, w: BinaryIO) -> CommandResult | None:
    """Write every CopyData payload to ``w`` until the server is ready again."""
    res: CommandResult | None = None
    while True:
        c, msg_len = read_message_type(cn)
        if c == _COPY_DATA:
            w.write(cn.read_n(msg_len))
        elif c == _COPY_DONE:
            cn.read_n(msg_len)
        elif c == _COMMAND_COMPLETE:
            res = _new_result(cn.read_n(msg_len), 0)
        elif c == _READY_FOR_QUERY:
            cn.read_n(msg_len)
            return res
        elif c == _ERROR_RESPONSE:
            raise read_error(cn)
        elif not _skip_async(cn, c, msg_len):
            raise _unexpected("readCopyData", c)


def write_copy_data(buf: WriteBuffer, r: BinaryIO) -> int:
    """Append one CopyData message read from ``r``; return 0 and add nothing at end."""
    start = len(buf.data)
    buf.start_message(_COPY_DATA)
    n = buf.read_from(r)
    if n == 0:
        del buf.data[start:]
        return 0
    buf.finish_message()
    return n


def write_copy_done(buf: WriteBuffer) -> None:
    buf.start_message(_COPY_DONE)
    buf.finish_message()


def read_ready_for_query(cn: Conn) -> CommandResult | None:
    """Read up to ReadyForQuery; raise the last error reported on the way."""
    res: CommandResult | None = None
    err: Exception | None = None
    while True:
        c, msg_len = read_message_type(cn)
        if c == _COMMAND_COMPLETE:
            res = _new_result(cn.read_n(msg_len), 0)
        elif c == _READY_FOR_QUERY:
            cn.read_n(msg_len)
            if err is not None:
                raise err
            return res
        elif c == _ERROR_RESPONSE:
            err = read_error(cn)
        elif not _skip_async(cn, c, msg_len):
            raise _unexpected("readReadyForQueryOrError", c)


def read_notification(cn: Conn) -> tuple[str, str]:
    """Wait for a NotificationResponse and return its channel and payload."""
    while True:
        c, msg_len = read_message_type(cn)
        if c in (_COMMAND_COMPLETE, _READY_FOR_QUERY, _NOTICE_RESPONSE):
            cn.read_n(msg_len)
        elif c == _ERROR_RESPONSE:
            raise read_error(cn)
        elif c == _NOTIFICATION_RESPONSE:
            read_int32(cn)
            channel = read_string(cn)
            payload = read_string(cn)
            return channel, payload
        else:
            raise ValueError(f"pg: unexpected message {c!r}")


def terminate_conn(cn: Conn) -> None:
    """Send Terminate straight to the socket, bypassing the write buffer."""
    cn.net_conn.sendall(_TERMINATE_MESSAGE)


def read_int16(cn: Conn) -> int:
    return struct.unpack(">h", cn.read_n(2))[0]


def read_int32(cn: Conn) -> int:
    return struct.unpack(">i", cn.read_n(4))[0]


def read_string(cn: Conn) -> str:
    return _decode(cn.read_cstring())


def read_error(cn: Conn) -> PGError:
    """Read an ErrorResponse body and return it as an exception, not raised."""
    fields = {"a": cn.remote_addr()}
    while True:
        c = cn.read_byte()
        if c == 0:
            break
        fields[chr(c)] = read_string(cn)
    return PGError(fields)


def read_message_type(cn: Conn) -> tuple[str, int]:
    """Read a message header; return its type and the length of its body."""
    c = cn.read_byte()
    length = read_int32(cn)
    return chr(c), length - 4