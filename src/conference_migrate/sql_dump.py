"""conference_migrate.sql_dump

Tokenizer for MySQL ``mysqldump`` text.

Responsibilities:
  - Split dump text into statements on semicolons that sit outside
    string literals and comments
  - Select the ``INSERT INTO `<table>` ... VALUES`` statements for one table
  - Break the VALUES section into parenthesized row groups
  - Split each row group into unquoted string tokens (RawRow)

String literals are scanned by a single routine (``_scan_string``) with
fixed escape precedence:
  1. backslash + any character is consumed as a pair; ``\\'`` inside a
     single-quoted string yields a literal quote, every other pair is
     kept verbatim
  2. the active quote doubled yields one literal quote
  3. the active quote alone closes the string

Usage:
    from conference_migrate.sql_dump import parse_insert_values, read_dump

    sql = read_dump(Path("vachira_register.sql"))
    rows = parse_insert_values(sql, "hospital")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

log = logging.getLogger(__name__)

RawRow = list[str]

_QUOTES = ("'", '"')
_IDENT_QUOTE = "`"

# Inside a string literal: escape pair, doubled quote, or closing quote.
# Alternation order encodes the precedence documented above.
_STRING_STOPS = {
    q: re.compile(r"\\.|%s%s|%s" % (re.escape(q), re.escape(q), re.escape(q)), re.S)
    for q in (*_QUOTES, _IDENT_QUOTE)
}

# Outside string literals: anything that can open a string, a comment,
# or end a statement.
_OUTSIDE_STOPS = re.compile(r"['\"`;]|--(?=\s)|/\*|#")

# VALUES keyword or anything that opens a quoted region it could hide in.
_VALUES_STOPS = re.compile(r"['\"`]|\bVALUES\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Scan statistics
# ---------------------------------------------------------------------------

@dataclass
class ScanStats:
    """Parse-level counters so silent data loss becomes visible."""

    statements: int = 0
    rows: int = 0
    statements_without_values: int = 0
    unbalanced_statements: int = 0

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


# ---------------------------------------------------------------------------
# String literal scanning
# ---------------------------------------------------------------------------

def _scan_string(text: str, start: int, quote: str) -> tuple[str, int, bool]:
    """Scan a string literal whose opening quote sits at ``start - 1``.

    Returns (decoded body, index just past the closing quote, closed).
    An unterminated literal runs to the end of ``text`` with closed=False.
    """
    pattern = _STRING_STOPS[quote]
    parts: list[str] = []
    pos = start
    while True:
        m = pattern.search(text, pos)
        if m is None:
            parts.append(text[pos:])
            return "".join(parts), len(text), False
        parts.append(text[pos:m.start()])
        token = m.group()
        if token == quote:
            return "".join(parts), m.end(), True
        if token[0] == "\\" and token[1] != quote:
            parts.append(token)
        else:
            parts.append(quote)
        pos = m.end()


# ---------------------------------------------------------------------------
# Statement splitting
# ---------------------------------------------------------------------------

def iter_statements(sql: str) -> Iterator[str]:
    """Yield statements (without the trailing ';'), comments stripped.

    Comments are only removed when they precede a statement; mysqldump
    never emits them mid-statement.  Conditional ``/*!...*/`` blocks are
    treated as comments.  A leading byte-order mark is dropped.
    """
    if sql.startswith("\ufeff"):
        sql = sql[1:]
    n = len(sql)
    start = 0
    pos = 0
    while True:
        m = _OUTSIDE_STOPS.search(sql, pos)
        if m is None:
            break
        token = m.group()
        if token == ";":
            statement = sql[start:m.start()].strip()
            if statement:
                yield statement
            start = pos = m.end()
            continue
        if token in _QUOTES or token == _IDENT_QUOTE:
            _, pos, _ = _scan_string(sql, m.end(), token)
            continue
        if token == "/*":
            end = sql.find("*/", m.end())
            pos = n if end == -1 else end + 2
        else:
            end = sql.find("\n", m.end())
            pos = n if end == -1 else end + 1
        if not sql[start:m.start()].strip():
            start = pos
    tail = sql[start:].strip()
    if tail:
        yield tail


def _insert_pattern(table: str) -> re.Pattern[str]:
    return re.compile(r"INSERT\s+INTO\s+`%s`" % re.escape(table), re.IGNORECASE)


def iter_insert_statements(sql: str, table: str) -> Iterator[str]:
    """Yield every ``INSERT INTO `table``` statement in dump order."""
    pattern = _insert_pattern(table)
    for statement in iter_statements(sql):
        if pattern.match(statement):
            yield statement


# ---------------------------------------------------------------------------
# Row groups and row values
# ---------------------------------------------------------------------------

def split_row_groups(values: str) -> tuple[list[str], bool]:
    """Split a VALUES section into the inner text of each ``(...)`` group.

    Returns (groups, balanced).  Parens nested below the outer group are
    kept verbatim in the group text.  When the section is unbalanced the
    trailing partial group is lost and balanced is False.
    """
    groups: list[str] = []
    depth = 0
    group_start = 0
    balanced = True
    pos = 0
    n = len(values)
    while pos < n:
        ch = values[pos]
        if ch in _QUOTES:
            _, pos, closed = _scan_string(values, pos + 1, ch)
            if not closed:
                balanced = False
            continue
        if ch == "(":
            depth += 1
            if depth == 1:
                group_start = pos + 1
        elif ch == ")":
            if depth == 0:
                balanced = False
            else:
                depth -= 1
                if depth == 0:
                    groups.append(values[group_start:pos])
        pos += 1
    return groups, balanced and depth == 0


def parse_row_values(row: str) -> RawRow:
    """Split one row group on top-level commas into trimmed, unquoted tokens.

    The token after the final comma is always emitted, even when empty.
    """
    values: RawRow = []
    current: list[str] = []
    pos = 0
    n = len(row)
    while pos < n:
        ch = row[pos]
        if ch in _QUOTES:
            body, pos, _ = _scan_string(row, pos + 1, ch)
            current.append(body)
            continue
        if ch == ",":
            values.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        pos += 1
    values.append("".join(current).strip())
    return values


def _values_offset(statement: str) -> int | None:
    """Index just past the VALUES keyword, ignoring quoted text and identifiers."""
    pos = 0
    while True:
        m = _VALUES_STOPS.search(statement, pos)
        if m is None:
            return None
        token = m.group()
        if token in _QUOTES or token == _IDENT_QUOTE:
            _, pos, _ = _scan_string(statement, m.end(), token)
            continue
        return m.end()


def parse_insert_values(
    sql: str,
    table: str,
    stats: ScanStats | None = None,
) -> list[RawRow]:
    """Return one RawRow per VALUES group of every INSERT for ``table``."""
    if stats is None:
        stats = ScanStats()
    results: list[RawRow] = []
    for statement in iter_insert_statements(sql, table):
        stats.statements += 1
        offset = _values_offset(statement)
        if offset is None:
            stats.statements_without_values += 1
            continue
        groups, balanced = split_row_groups(statement[offset:])
        if not balanced:
            stats.unbalanced_statements += 1
            log.warning(
                "Unbalanced INSERT for table %s; %d row group(s) recovered",
                table, len(groups),
            )
        for group in groups:
            values = parse_row_values(group)
            if values:
                results.append(values)
                stats.rows += 1
    return results


def read_dump(path: Path) -> str:
    """Read the whole dump into memory as UTF-8 text, minus any byte-order mark."""
    return path.read_text(encoding="utf-8-sig")
