"""Conversions between identifier spellings."""

from __future__ import annotations

_ASCII_UPPER = str.maketrans(
    "abcdefghijklmnopqrstuvwxyz", "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
)


def _is_upper(c: str) -> bool:
    return "A" <= c <= "Z"


def underscore(s: str) -> str:
    """Convert ``"CamelCasedString"`` to ``"camel_cased_string"``."""
    out = []
    last = len(s) - 1
    for i, c in enumerate(s):
        if not _is_upper(c):
            out.append(c)
            continue
        lower = c.lower()
        if 0 < i < last and (not _is_upper(s[i - 1]) or not _is_upper(s[i + 1])):
            out.append("_" + lower)
        else:
            out.append(lower)
    return "".join(out)


def to_upper(s: str) -> str:
    """Upper-case the ASCII letters of ``s``."""
    return s.translate(_ASCII_UPPER)


def to_exported(s: str) -> str:
    """Upper-case the first letter of ``s`` if it is a lower-case ASCII letter."""
    if s and "a" <= s[0] <= "z":
        return s[0].upper() + s[1:]
    return s