import io
import struct

import pytest

from pgwire.conn import Conn
from pgwire.errors import PGError
from pgwire.protocol import (
    CommandResult,
    quote_identifier,
    read_bind_msg,
    read_close_complete_msg,
    read_copy_data,
    read_copy_in_response,
    read_copy_out_response,
    read_data_row,
    read_error,
    read_ext_query,
    read_ext_query_data,
    read_int16,
    read_int32,
    read_message_type,
    read_notification,
    read_parse_describe_sync,
    read_ready_for_query,
    read_row_description,
    read_simple_query,
    read_simple_query_data,
    read_string,
    terminate_conn,
    write_bind_execute_msg,
    write_cancel_request_msg,
    write_close_msg,
    write_copy_data,
    write_copy_done,
    write_flush_msg,
    write_parse_describe_sync_msg,
    write_password_msg,
    write_query_msg,
    write_ssl_msg,
    write_startup_msg,
    write_sync_msg,
)
from pgwire.write_buffer import WriteBuffer


class FakeSocket:
    def __init__(self, data=b"", chunk=7, peer=("127.0.0.1", 5432)):
        self._data = bytearray(data)
        self._chunk = chunk
        self._peer = peer
        self.sent = bytearray()
        self.closed = False

    def recv(self, n):
        size = min(n, self._chunk)
        out = bytes(self._data[:size])
        del self._data[:size]
        return out

    def sendall(self, b):
        self.sent += b

    def settimeout(self, t):
        pass

    def getpeername(self):
        return self._peer

    def close(self):
        self.closed = True


def make_conn(data=b""):
    return Conn(FakeSocket(data))


def msg(t, body=b""):
    return t.encode() + struct.pack(">i", len(body) + 4) + body


def cstr(s):
    return s.encode() + b"\x00"


def row_description(*names):
    body = struct.pack(">h", len(names))
    body += b"".join(cstr(n) + bytes(18) for n in names)
    return msg("T", body)


def data_row(*values):
    body = struct.pack(">h", len(values))
    for v in values:
        if v is None:
            body += struct.pack(">i", -1)
        else:
            body += struct.pack(">i", len(v)) + v
    return msg("D", body)


def command_complete(tag):
    return msg("C", cstr(tag))


def error_response(**fields):
    body = b"".join(k.encode() + cstr(v) for k, v in fields.items())
    return msg("E", body + b"\x00")


READY = msg("Z", b"I")


def split_messages(data):
    out = []
    pos = 0
    while pos < len(data):
        t = chr(data[pos])
        (length,) = struct.unpack_from(">i", data, pos + 1)
        out.append((t, bytes(data[pos + 5:pos + 1 + length])))
        pos += 1 + length
    return out


def test_ssl_msg_bytes():
    buf = WriteBuffer()
    write_ssl_msg(buf)
    assert bytes(buf) == struct.pack(">ii", 8, 80877103)


def test_cancel_request_msg_bytes():
    buf = WriteBuffer()
    write_cancel_request_msg(buf, 7, 9)
    assert bytes(buf) == struct.pack(">iiii", 16, 80877102, 7, 9)


def test_startup_msg_layout():
    buf = WriteBuffer()
    write_startup_msg(buf, "alice", "db")
    data = bytes(buf)
    length, version = struct.unpack_from(">ii", data)
    assert length == len(data)
    assert version == 196608
    assert data[8:] == b"user\x00alice\x00database\x00db\x00\x00"


def test_password_msg():
    buf = WriteBuffer()
    password = "password"
    write_password_msg(buf, password)
    assert split_messages(bytes(buf)) == [("p", b"password\x00")]


def test_flush_and_sync_msgs():
    buf = WriteBuffer()
    write_flush_msg(buf)
    write_sync_msg(buf)
    assert split_messages(bytes(buf)) == [("H", b""), ("S", b"")]


def test_query_msg():
    buf = WriteBuffer()
    write_query_msg(buf, "SELECT 1")
    assert split_messages(bytes(buf)) == [("Q", b"SELECT 1\x00")]


def test_query_msg_rejects_other_types_and_resets():
    buf = WriteBuffer()
    write_sync_msg(buf)
    with pytest.raises(TypeError, match="can't append int"):
        write_query_msg(buf, 42)
    assert len(buf) == 0


def test_parse_describe_sync_msg():
    buf = WriteBuffer()
    write_parse_describe_sync_msg(buf, "s1", "SELECT $1")
    assert split_messages(bytes(buf)) == [
        ("P", b"s1\x00SELECT $1\x00" + struct.pack(">h", 0)),
        ("D", b"Ss1\x00"),
        ("S", b""),
    ]


def test_bind_execute_msg_params():
    buf = WriteBuffer()
    write_bind_execute_msg(buf, "stmt", 1, None, "x")
    msgs = split_messages(bytes(buf))
    assert [t for t, _ in msgs] == ["B", "E", "S"]
    expected = (
        b"\x00stmt\x00"
        + struct.pack(">hh", 0, 3)
        + struct.pack(">i", 1) + b"1"
        + struct.pack(">i", -1)
        + struct.pack(">i", 1) + b"x"
        + struct.pack(">h", 0)
    )
    assert msgs[0][1] == expected
    assert msgs[1][1] == b"\x00" + struct.pack(">i", 0)


def test_close_msg():
    buf = WriteBuffer()
    write_close_msg(buf, "s1")
    assert split_messages(bytes(buf)) == [("C", b"Ss1\x00")]


def test_copy_data_round_trip():
    buf = WriteBuffer()
    reader = io.BytesIO(b"1\n2\n")
    assert write_copy_data(buf, reader) == 4
    before = len(buf)
    assert write_copy_data(buf, reader) == 0
    assert len(buf) == before
    write_copy_done(buf)
    assert split_messages(bytes(buf)) == [("d", b"1\n2\n"), ("c", b"")]


def test_quote_identifier_escapes_quotes():
    assert quote_identifier('a"b') == '"a""b"'
    assert quote_identifier("chan").strip('"') == "chan"


def test_command_result_counts():
    assert CommandResult("INSERT 0 5", 0).rows_affected() == 5
    res = CommandResult("SELECT 3", 3)
    assert res.rows_affected() == 3
    assert res.rows_returned() == 3
    assert CommandResult("BEGIN").rows_affected() == 0


def test_read_ints_and_string():
    cn = make_conn(struct.pack(">hi", -2, -70000) + cstr("hi"))
    assert read_int16(cn) == -2
    assert read_int32(cn) == -70000
    assert read_string(cn) == "hi"


def test_read_message_type():
    cn = make_conn(READY)
    assert read_message_type(cn) == ("Z", 1)


def test_read_message_type_eof():
    cn = make_conn(b"")
    with pytest.raises(EOFError):
        read_message_type(cn)


def test_read_error_fields_and_message():
    body = error_response(
        S="ERROR",
        C="22P02",
        M='invalid input syntax for integer: "corrupted data"',
    )
    cn = make_conn(body)
    c, _ = read_message_type(cn)
    assert c == "E"
    err = read_error(cn)
    assert isinstance(err, PGError)
    assert err.field("C") == "22P02"
    assert str(err) == (
        'ERROR #22P02 invalid input syntax for integer: "corrupted data" '
        '(addr="127.0.0.1:5432")'
    )


def test_read_simple_query_counts_rows():
    data = (
        row_description("n")
        + data_row(b"1")
        + data_row(b"2")
        + command_complete("SELECT 2")
        + READY
    )
    res = read_simple_query(make_conn(data))
    assert res.rows_returned() == 2
    assert res.rows_affected() == 2


def test_read_simple_query_raises_first_error_after_ready():
    data = (
        msg("N", b"notice\x00")
        + error_response(S="ERROR", C="42P01", M="first")
        + error_response(S="ERROR", C="42000", M="second")
        + READY
    )
    cn = make_conn(data)
    with pytest.raises(PGError) as info:
        read_simple_query(cn)
    assert info.value.field("M") == "first"
    with pytest.raises(EOFError):
        read_message_type(cn)


def test_read_simple_query_unexpected_message():
    with pytest.raises(ValueError, match="unexpected message"):
        read_simple_query(make_conn(msg("?", b"")))


def test_read_ext_query():
    data = msg("2") + data_row(b"1") + command_complete("UPDATE 1") + READY
    res = read_ext_query(make_conn(data))
    assert res.rows_affected() == 1
    assert res.rows_returned() == 1


def test_read_simple_query_data_rows():
    data = (
        msg("S", cstr("TimeZone") + cstr("UTC"))
        + row_description("id", "name")
        + data_row(b"1", None)
        + data_row(b"2", b"bob")
        + command_complete("SELECT 2")
        + READY
    )
    cn = make_conn(data)
    res, columns, rows = read_simple_query_data(cn)
    assert columns == ["id", "name"]
    assert rows == [(b"1", None), (b"2", b"bob")]
    assert res.rows_returned() == len(rows)
    assert cn.columns == columns


def test_read_simple_query_data_column_mismatch():
    data = (
        row_description("id")
        + data_row(b"1", b"2")
        + command_complete("SELECT 1")
        + READY
    )
    with pytest.raises(ValueError, match="data row has 2 columns"):
        read_simple_query_data(make_conn(data))


def test_read_ext_query_data_uses_given_columns():
    data = msg("2") + data_row(b"x") + command_complete("SELECT 1") + READY
    res, columns, rows = read_ext_query_data(make_conn(data), ["col"])
    assert columns == ["col"]
    assert rows == [(b"x",)]
    assert res.rows_returned() == 1


def test_read_row_description_and_data_row():
    data = row_description("a", "b")[5:] + data_row(b"1", None)[5:]
    cn = make_conn(data)
    columns = read_row_description(cn)
    assert columns == ["a", "b"]
    assert read_data_row(cn, columns) == (b"1", None)


def test_read_parse_describe_sync_returns_columns():
    data = (
        msg("1")
        + msg("t", struct.pack(">h", 0))
        + row_description("x", "y")
        + READY
    )
    assert read_parse_describe_sync(make_conn(data)) == ["x", "y"]


def test_read_parse_describe_sync_error():
    data = error_response(S="ERROR", C="42601", M="syntax")
    with pytest.raises(PGError) as info:
        read_parse_describe_sync(make_conn(data))
    assert info.value.field("C") == "42601"


def test_read_bind_msg_consumes_until_ready():
    cn = make_conn(msg("2") + READY)
    read_bind_msg(cn)
    with pytest.raises(EOFError):
        read_message_type(cn)


def test_read_close_complete_msg():
    cn = make_conn(msg("3") + READY)
    read_close_complete_msg(cn)
    assert read_message_type(cn) == ("Z", 1)


def test_read_copy_out_and_data():
    data = (
        msg("H", b"\x00" + struct.pack(">h", 0))
        + msg("d", b"1\n")
        + msg("d", b"2\n")
        + msg("c")
        + command_complete("COPY 2")
        + READY
    )
    cn = make_conn(data)
    read_copy_out_response(cn)
    out = io.BytesIO()
    res = read_copy_data(cn, out)
    assert out.getvalue() == b"1\n2\n"
    assert res.rows_affected() == 2


def test_read_copy_in_response_error():
    data = error_response(S="ERROR", C="42P01", M="missing")
    with pytest.raises(PGError) as info:
        read_copy_in_response(make_conn(data))
    assert info.value.field("M") == "missing"


def test_read_ready_for_query_raises_last_error():
    data = (
        error_response(S="ERROR", C="1", M="first")
        + error_response(S="ERROR", C="2", M="second")
        + READY
    )
    with pytest.raises(PGError) as info:
        read_ready_for_query(make_conn(data))
    assert info.value.field("M") == "second"


def test_read_ready_for_query_result():
    data = command_complete("COPY 3") + READY
    assert read_ready_for_query(make_conn(data)).rows_affected() == 3


def test_read_notification():
    data = (
        command_complete("LISTEN")
        + READY
        + msg("A", struct.pack(">i", 42) + cstr("test_channel") + cstr(""))
    )
    assert read_notification(make_conn(data)) == ("test_channel", "")


def test_read_notification_unexpected():
    with pytest.raises(ValueError, match="unexpected message"):
        read_notification(make_conn(msg("S", cstr("k") + cstr("v"))))


def test_terminate_conn_writes_to_socket():
    sock = FakeSocket()
    cn = Conn(sock)
    terminate_conn(cn)
    assert bytes(sock.sent) == bytes([ord("X"), 0, 0, 0, 4])
    assert len(cn.wr) == 0