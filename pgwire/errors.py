"""Error types raised by the client and helpers that classify them."""

from __future__ import annotations

import json
from collections.abc import Mapping

_INTEGRITY_CODES = frozenset(
    {"23000", "23001", "23502", "23503", "23505", "23514", "23P01"}
)


def _field_key(k: int | str) -> str:
    return chr(k) if isinstance(k, int) else k


class Error(Exception):
    """An error detected by the client itself rather than by the server."""


class NoRowsError(Error):
    """The query returned or affected no rows where exactly one was expected."""

    def __init__(self, message: str = "pg: no rows in result set") -> None:
        super().__init__(message)


class MultiRowsError(Error):
    """The query returned or affected several rows where exactly one was expected."""

    def __init__(self, message: str = "pg: multiple rows in result set") -> None:
        super().__init__(message)


class PGError(Exception):
    """An error reported by the server, holding the fields of its ErrorResponse."""

    def __init__(self, fields: Mapping[int | str, str]) -> None:
        self.fields: dict[str, str] = {
            _field_key(k): v for k, v in fields.items()
        }
        super().__init__(
            "{} #{} {} (addr={})".format(
                self.field("S"),
                self.field("C"),
                self.field("M"),
                json.dumps(self.field("a"), ensure_ascii=False),
            )
        )

    def field(self, k: int | str) -> str:
        """Return the field with type code ``k``, or an empty string."""
        return self.fields.get(_field_key(k), "")

    def integrity_violation(self) -> bool:
        """Whether the SQLSTATE code denotes an integrity constraint violation."""
        return self.field("C") in _INTEGRITY_CODES


def assert_one_row(n: int) -> None:
    """Raise unless ``n`` is exactly one."""
    if n == 0:
        raise NoRowsError()
    if n > 1:
        raise MultiRowsError()


def is_bad_conn(err: BaseException | None, allow_timeout: bool) -> bool:
    """Whether ``err`` means the connection it happened on can not be reused."""
    if err is None:
        return False
    if isinstance(err, Error):
        return False
    if isinstance(err, PGError) and err.field("S") != "FATAL":
        return False
    if allow_timeout and isinstance(err, TimeoutError):
        return False
    return True


def is_network_error(err: BaseException | None) -> bool:
    """Whether ``err`` came from the network layer."""
    return isinstance(err, (EOFError, OSError))