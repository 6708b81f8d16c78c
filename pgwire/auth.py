"""Connection startup, TLS negotiation and password authentication."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import ssl

from .conn import Conn
from .errors import Error
from .protocol import (
    read_error,
    read_int32,
    read_message_type,
    read_string,
    write_password_msg,
    write_ssl_msg,
    write_startup_msg,
)

_AUTHENTICATION = "R"
_ERROR_RESPONSE = "E"
_PARAMETER_STATUS = "S"
_BACKEND_KEY_DATA = "K"
_READY_FOR_QUERY = "Z"
_SASL_INITIAL_RESPONSE = "p"
_SASL_RESPONSE = "p"

_AUTH_OK = 0
_AUTH_CLEARTEXT_PASSWORD = 3
_AUTH_MD5_PASSWORD = 5
_AUTH_SASL = 10
_AUTH_SASL_CONTINUE = 11
_AUTH_SASL_FINAL = 12

_SCRAM_SHA_256_PLUS = "SCRAM-SHA-256-PLUS"


def _quote(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


def _parse_attributes(data: bytes) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for part in data.decode("utf-8", "replace").split(","):
        key, sep, value = part.partition("=")
        if sep and key:
            attrs.setdefault(key, value)
    return attrs


def _hmac(key: bytes, msg: bytes) -> bytes:
    return hmac.new(key, msg, hashlib.sha256).digest()


class ScramSha256:
    """Client side of a SCRAM-SHA-256 exchange without channel binding."""

    NAME = "SCRAM-SHA-256"

    def __init__(self, user: str, password: str, nonce: str | None = None) -> None:
        self.user = user
        self.password = password
        self.nonce = nonce or base64.b64encode(secrets.token_bytes(18)).decode()
        self._client_first_bare = (
            "n=" + user.replace("=", "=3D").replace(",", "=2C") + ",r=" + self.nonce
        ).encode()
        self._salted: bytes | None = None
        self._auth_message: bytes | None = None

    def first_message(self) -> bytes:
        """The client-first message, with the ``n,,`` GS2 header."""
        return b"n,," + self._client_first_bare

    def final_message(self, server_first: bytes) -> bytes:
        """Answer the server-first message with the client-final message."""
        attrs = _parse_attributes(bytes(server_first))
        try:
            server_nonce = attrs["r"]
            salt = base64.b64decode(attrs["s"], validate=True)
            iterations = int(attrs["i"])
        except (KeyError, ValueError) as exc:
            raise ValueError(
                f"pg: SASL: malformed server message: {exc}"
            ) from exc
        if not server_nonce.startswith(self.nonce) or server_nonce == self.nonce:
            raise ValueError("pg: SASL: server nonce does not extend client nonce")
        if iterations <= 0:
            raise ValueError(f"pg: SASL: invalid iteration count {iterations}")

        self._salted = hashlib.pbkdf2_hmac(
            "sha256", self.password.encode(), salt, iterations
        )
        client_key = _hmac(self._salted, b"Client Key")
        stored_key = hashlib.sha256(client_key).digest()
        without_proof = b"c=biws,r=" + server_nonce.encode()
        self._auth_message = b",".join(
            (self._client_first_bare, bytes(server_first), without_proof)
        )
        signature = _hmac(stored_key, self._auth_message)
        proof = bytes(a ^ b for a, b in zip(client_key, signature))
        return without_proof + b",p=" + base64.b64encode(proof)

    def verify(self, server_final: bytes) -> None:
        """Check the server's signature; raise ``ValueError`` if it is wrong."""
        if self._salted is None or self._auth_message is None:
            raise ValueError("pg: SASL: server final message before client final")
        attrs = _parse_attributes(bytes(server_final))
        if "e" in attrs:
            raise ValueError(f"pg: SASL: server error: {attrs['e']}")
        if "v" not in attrs:
            raise ValueError("pg: SASL: missing server signature")
        try:
            got = base64.b64decode(attrs["v"], validate=True)
        except ValueError as exc:
            raise ValueError("pg: SASL: malformed server signature") from exc
        server_key = _hmac(self._salted, b"Server Key")
        wanted = _hmac(server_key, self._auth_message)
        if not hmac.compare_digest(got, wanted):
            raise ValueError("pg: SASL: invalid server signature")


def md5s(s: str | bytes) -> str:
    """Hex MD5 digest of ``s``; strings are hashed as UTF-8."""
    data = s.encode() if isinstance(s, str) else bytes(s)
    return hashlib.md5(data).hexdigest()


def startup(cn: Conn, user: str, password: str, database: str) -> None:
    """Send the startup message and run authentication until the server is ready."""
    write_startup_msg(cn.wr, user, database)
    cn.flush_writer()

    while True:
        c, msg_len = read_message_type(cn)
        if c == _BACKEND_KEY_DATA:
            cn.process_id = read_int32(cn)
            cn.secret_key = read_int32(cn)
        elif c == _PARAMETER_STATUS:
            cn.read_n(msg_len)
        elif c == _AUTHENTICATION:
            authenticate(cn, user, password)
        elif c == _READY_FOR_QUERY:
            cn.read_n(msg_len)
            return
        elif c == _ERROR_RESPONSE:
            raise read_error(cn)
        else:
            raise ValueError(f"pg: unknown startup message response: {c!r}")


def _server_hostname(cn: Conn) -> str | None:
    host = cn.remote_addr().rpartition(":")[0]
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host or None


def enable_ssl(cn: Conn, ssl_context: ssl.SSLContext) -> None:
    """Ask the server for TLS and wrap the connection's socket on success."""
    write_ssl_msg(cn.wr)
    cn.flush_writer()

    if cn.read_byte() != ord("S"):
        raise Error("pg: SSL is not enabled on the server")

    hostname = _server_hostname(cn) if ssl_context.check_hostname else None
    cn.set_net_conn(ssl_context.wrap_socket(cn.net_conn, server_hostname=hostname))


def _read_auth_ok(cn: Conn) -> None:
    c, _ = read_message_type(cn)
    if c == _AUTHENTICATION:
        code = read_int32(cn)
        if code != _AUTH_OK:
            raise ValueError(f"pg: unexpected authentication code: {code}")
        return
    if c == _ERROR_RESPONSE:
        raise read_error(cn)
    raise ValueError(f"pg: unknown password message response: {c!r}")


def _send_password(cn: Conn, secret: str) -> None:
    write_password_msg(cn.wr, secret)
    cn.flush_writer()
    _read_auth_ok(cn)


def _read_sasl_mechanism(cn: Conn) -> str:
    mechanism = ""
    while True:
        s = read_string(cn)
        if s == "":
            break
        if s == ScramSha256.NAME:
            mechanism = s
        elif s == _SCRAM_SHA_256_PLUS:
            continue
        else:
            raise ValueError(f"got {_quote(s)}, wanted {_quote(ScramSha256.NAME)}")
    if not mechanism:
        raise ValueError(f"pg: SASL: server does not offer {ScramSha256.NAME}")
    return mechanism


def _authenticate_sasl(cn: Conn, user: str, password: str) -> None:
    mechanism = _read_sasl_mechanism(cn)
    client = ScramSha256(user, password)

    resp = client.first_message()
    cn.wr.start_message(_SASL_INITIAL_RESPONSE)
    cn.wr.write_string(mechanism)
    cn.wr.write_int32(len(resp))
    cn.wr.write(resp)
    cn.wr.finish_message()
    cn.flush_writer()

    c, n = read_message_type(cn)
    if c == _ERROR_RESPONSE:
        raise read_error(cn)
    if c != _AUTHENTICATION:
        raise ValueError(f"pg: SASL: got {c!r}, wanted {_AUTHENTICATION!r}")
    code = read_int32(cn)
    if code != _AUTH_SASL_CONTINUE:
        raise ValueError(f"pg: SASL: got {code}, wanted {_AUTH_SASL_CONTINUE}")
    resp = client.final_message(cn.read_n(n - 4))

    cn.wr.start_message(_SASL_RESPONSE)
    cn.wr.write(resp)
    cn.wr.finish_message()
    cn.flush_writer()

    _read_auth_sasl_final(cn, client)


def _read_auth_sasl_final(cn: Conn, client: ScramSha256) -> None:
    c, n = read_message_type(cn)
    if c == _ERROR_RESPONSE:
        raise read_error(cn)
    if c != _AUTHENTICATION:
        raise ValueError(f"pg: SASL: got {c!r}, wanted {_AUTHENTICATION!r}")
    code = read_int32(cn)
    if code != _AUTH_SASL_FINAL:
        raise ValueError(f"pg: SASL: got {code}, wanted {_AUTH_SASL_FINAL}")
    client.verify(cn.read_n(n - 4))
    _read_auth_ok(cn)


def authenticate(cn: Conn, user: str, password: str) -> None:
    """Handle an Authentication request whose type code is still unread."""
    num = read_int32(cn)
    if num == _AUTH_OK:
        return
    if num == _AUTH_CLEARTEXT_PASSWORD:
        _send_password(cn, password)
    elif num == _AUTH_MD5_PASSWORD:
        salt = cn.read_n(4)
        _send_password(cn, "md5" + md5s(md5s(password + user).encode() + salt))
    elif num == _AUTH_SASL:
        _authenticate_sasl(cn, user, password)
    else:
        raise ValueError(f"pg: unknown authentication message response: {num}")