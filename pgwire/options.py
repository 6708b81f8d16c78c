"""Connection options and parsing of ``postgres://`` URLs."""

from __future__ import annotations

import socket
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

_DEFAULT_PORT = "5432"


def _insecure_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _split_host_port(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


@dataclass
class Options:
    """Database connection options; durations are in seconds."""

    network: str = ""
    addr: str = ""
    dialer: Callable[[str, str], Any] | None = None
    user: str = ""
    password: str = ""
    database: str = ""
    ssl_context: ssl.SSLContext | None = None
    max_retries: int = 0
    retry_statement_timeout: bool = False
    dial_timeout: float = 0.0
    read_timeout: float = 0.0
    write_timeout: float = 0.0
    pool_size: int = 0
    pool_timeout: float = 0.0
    idle_timeout: float = 0.0
    max_age: float = 0.0
    idle_check_frequency: float = 0.0
    disable_transaction: bool = False

    def apply_defaults(self) -> None:
        """Fill in defaults for every option left unset."""
        if not self.network:
            self.network = "tcp"
        if not self.addr:
            if self.network == "tcp":
                self.addr = "localhost:5432"
            elif self.network == "unix":
                self.addr = "/var/run/postgresql/.s.PGSQL.5432"
        if self.pool_size == 0:
            self.pool_size = 20
        if self.pool_timeout == 0:
            if self.read_timeout != 0:
                self.pool_timeout = self.read_timeout + 1.0
            else:
                self.pool_timeout = 30.0
        if self.dial_timeout == 0:
            self.dial_timeout = 5.0
        if self.idle_check_frequency == 0:
            self.idle_check_frequency = 60.0

    def get_dialer(self) -> Callable[[], Any]:
        """Return a function that opens a new connection to the server."""
        if self.dialer is not None:
            dialer = self.dialer
            return lambda: dialer(self.network, self.addr)
        return self._dial

    def _dial(self) -> socket.socket:
        timeout = self.dial_timeout or None
        if self.network == "unix":
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.settimeout(timeout)
                sock.connect(self.addr)
            except BaseException:
                sock.close()
                raise
        elif self.network == "tcp":
            sock = socket.create_connection(
                _split_host_port(self.addr), timeout=timeout
            )
        else:
            raise ValueError(f"pg: unknown network {self.network!r}")
        sock.settimeout(None)
        return sock


def parse_url(url: str) -> Options:
    """Parse a ``postgres://`` URL into connection options."""
    parsed = urlsplit(url)
    if parsed.scheme != "postgres":
        raise ValueError("pg: invalid scheme: " + parsed.scheme)

    addr = parsed.netloc.rpartition("@")[2]
    if ":" not in addr:
        addr += ":" + _DEFAULT_PORT
    options = Options(addr=addr)

    if parsed.username is not None:
        options.user = unquote(parsed.username)
    if parsed.password is not None:
        options.password = unquote(parsed.password)
    if not options.user:
        options.user = "postgres"

    path = unquote(parsed.path)
    if not path.strip("/"):
        raise ValueError("pg: database name not provided")
    options.database = path[1:]

    query = parse_qs(parsed.query, keep_blank_values=True)
    modes = query.pop("sslmode", None)
    if modes:
        mode = modes[0]
        if mode in ("allow", "prefer"):
            options.ssl_context = _insecure_context()
        elif mode == "disable":
            options.ssl_context = None
        else:
            raise ValueError(f"pg: sslmode '{mode}' is not supported")
    else:
        options.ssl_context = _insecure_context()

    if query:
        raise ValueError("pg: options other than 'sslmode' are not supported")
    return options