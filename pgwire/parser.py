"""Parsers for the text forms of PostgreSQL arrays and hstore values."""

from __future__ import annotations

import json

_PG_NULL = b"NULL"
_BACKSLASH = ord("\\")
_DQUOTE = ord('"')
_SQUOTE = ord("'")
_COMMA = ord(",")
_LBRACE = ord("{")
_RBRACE = ord("}")
_UNDERSCORE = ord("_")


def _byte(c: int | str) -> int:
    return ord(c) if isinstance(c, str) else c


def _is_num(c: int) -> bool:
    return ord("0") <= c <= ord("9")


def _is_alpha(c: int) -> bool:
    return ord("a") <= c <= ord("z") or ord("A") <= c <= ord("Z")


def _quote(b: bytes) -> str:
    return json.dumps(b.decode("utf-8", "replace"), ensure_ascii=False)


class Parser:
    """A cursor over a byte string."""

    def __init__(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode()
        self._buf = bytes(data)
        self._pos = 0

    @property
    def rest(self) -> bytes:
        """The bytes not consumed yet."""
        return self._buf[self._pos:]

    def valid(self) -> bool:
        return self._pos < len(self._buf)

    def read(self) -> int:
        if not self.valid():
            raise IndexError("read past the end of input")
        c = self._buf[self._pos]
        self._pos += 1
        return c

    def peek(self) -> int:
        """Return the next byte without consuming it, or 0 at the end."""
        return self._buf[self._pos] if self.valid() else 0

    def advance(self) -> None:
        if not self.valid():
            raise IndexError("advance past the end of input")
        self._pos += 1

    def skip(self, c: int | str) -> bool:
        if self.valid() and self.peek() == _byte(c):
            self._pos += 1
            return True
        return False

    def skip_bytes(self, b: bytes) -> bool:
        if self._buf.startswith(b, self._pos):
            self._pos += len(b)
            return True
        return False

    def read_sep(self, c: int | str) -> tuple[bytes, bool]:
        """Read up to separator ``c``, consuming it; report whether it was found."""
        ind = self._buf.find(bytes([_byte(c)]), self._pos)
        if ind == -1:
            chunk = self.rest
            self._pos = len(self._buf)
            return chunk, False
        chunk = self._buf[self._pos:ind]
        self._pos = ind + 1
        return chunk, True

    def read_identifier(self) -> tuple[str, bool]:
        """Read a run of letters, digits and underscores; report if all digits."""
        end = len(self._buf)
        numeric = True
        for i, ch in enumerate(self._buf[self._pos:], start=self._pos):
            if _is_num(ch):
                continue
            if _is_alpha(ch) or ch == _UNDERSCORE:
                numeric = False
                continue
            end = i
            break
        if end <= self._pos:
            return "", False
        ident = self._buf[self._pos:end].decode("ascii")
        self._pos = end
        return ident, numeric

    def read_number(self) -> int:
        """Read a run of digits as an integer, or return 0 if there is none."""
        end = len(self._buf)
        for i, ch in enumerate(self._buf[self._pos:], start=self._pos):
            if not _is_num(ch):
                end = i
                break
        if end <= self._pos:
            return 0
        n = int(self._buf[self._pos:end])
        self._pos = end
        return n

    def _read_substring(self) -> bytes:
        out = bytearray()
        while self.valid():
            c = self.read()
            if c == _BACKSLASH:
                nxt = self.peek()
                if nxt in (_BACKSLASH, _DQUOTE):
                    out.append(nxt)
                    self._pos += 1
                else:
                    out.append(c)
            elif c == _SQUOTE:
                if self.peek() == _SQUOTE:
                    out.append(_SQUOTE)
                    self._pos += 1
                else:
                    out.append(c)
            elif c == _DQUOTE:
                break
            else:
                out.append(c)
        return bytes(out)


class ArrayParser(Parser):
    """Reads the elements of an array literal such as ``{1,2,"x"}``."""

    def __init__(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode()
        self._error: ValueError | None = None
        if len(data) < 2 or data[0] != _LBRACE or data[-1] != _RBRACE:
            self._error = ValueError(
                "pg: can't parse array: " + data.decode("utf-8", "replace")
            )
            super().__init__(data)
        else:
            super().__init__(data[1:-1])

    def next_elem(self) -> bytes | None:
        """Return the next element; ``None`` stands for SQL NULL."""
        if self._error is not None:
            raise self._error
        c = self.peek()
        if c == _DQUOTE:
            self._pos += 1
            elem = self._read_substring()
            self.skip(_COMMA)
            return elem
        if c == _LBRACE:
            elem = self._read_elem() + b"}"
            self.skip(_COMMA)
            return elem
        elem, _ = self.read_sep(_COMMA)
        return None if elem == _PG_NULL else elem

    def _read_elem(self) -> bytes:
        out = bytearray()
        while self.valid():
            c = self.read()
            if c == _DQUOTE:
                out.append(_DQUOTE)
                while True:
                    chunk, found = self.read_sep(_DQUOTE)
                    out += chunk
                    stop = bool(out) and out[-1] != _BACKSLASH
                    if found:
                        out.append(_DQUOTE)
                    if stop or not found:
                        break
            elif c == _RBRACE:
                break
            else:
                out.append(c)
        return bytes(out)


class HstoreParser(Parser):
    """Reads key/value pairs of an hstore literal such as ``"k"=>"v"``."""

    def next_key(self) -> bytes:
        if self.skip(_COMMA):
            self.skip(" ")
        if not self.skip(_DQUOTE):
            raise ValueError("pg: can't parse hstore key: " + _quote(self.rest))
        key = self._read_substring()
        if not (self.skip("=") and self.skip(">")):
            raise ValueError("pg: can't parse hstore key: " + _quote(self.rest))
        return key

    def next_value(self) -> bytes:
        if not self.skip(_DQUOTE):
            raise ValueError("pg: can't parse hstore value: " + _quote(self.rest))
        value = self._read_substring()
        self.skip_bytes(b", ")
        return value