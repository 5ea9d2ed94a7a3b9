"""Value coercion functions for legacy dump tokens.

All functions accept str | None and return the appropriate type or None.
A bare SQL ``NULL`` survives tokenization as the text "NULL", so the
strings "NULL" and "null" are treated exactly like an absent value.
"""

from __future__ import annotations

import re
from datetime import datetime

_NULL_TOKENS = frozenset({"", "NULL", "null"})
_SENTINEL_DATE_PREFIXES = ("1976", "0000")
_TS_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d")
_INT_PREFIX = re.compile(r"\s*([+-]?[0-9]+)")


# ---------------------------------------------------------------------------
# Rule 1: is_null_token
# ---------------------------------------------------------------------------

def is_null_token(value: str | None) -> bool:
    """True for None, empty, and the textual NULL keyword."""
    return value is None or value in _NULL_TOKENS


# ---------------------------------------------------------------------------
# Rule 2: to_str
# ---------------------------------------------------------------------------

def to_str(value: str | None) -> str | None:
    """Return the token unchanged, or None for null-like tokens."""
    if is_null_token(value):
        return None
    return value


# ---------------------------------------------------------------------------
# Rule 3: to_int
# ---------------------------------------------------------------------------

def to_int(value: str | None) -> int | None:
    """Parse the leading base-10 integer of a token.

    Leading whitespace is skipped and a trailing non-numeric remainder
    is ignored ("12abc" → 12, "1.5" → 1).
    Tokens with no numeric prefix return None.
    """
    if is_null_token(value):
        return None
    m = _INT_PREFIX.match(value)
    if m is None:
        return None
    return int(m.group(1))


# ---------------------------------------------------------------------------
# Rule 4: to_date
# ---------------------------------------------------------------------------

def to_date(value: str | None) -> datetime | None:
    """Parse a MySQL DATE/DATETIME token into a naive datetime.

    Placeholder dates beginning with 1976 or 0000 mean "unset" in the
    legacy system and map to None, as does anything unparseable.
    """
    if is_null_token(value):
        return None
    if value.startswith(_SENTINEL_DATE_PREFIXES):
        return None
    v = value.strip()
    for fmt in _TS_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(v)
    except ValueError:
        return None


def truncate_message(exc: BaseException, limit: int | None = None) -> str:
    """First line of an exception message, optionally cut to limit chars."""
    lines = str(exc).strip().splitlines()
    msg = lines[0] if lines else type(exc).__name__
    return msg[:limit] if limit is not None else msg
