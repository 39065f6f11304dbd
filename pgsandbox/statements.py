"""Lightweight PostgreSQL statement parsing and classification."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Sequence

from pgsandbox.sqlfallback import ReturningColumn


class SqlParseError(ValueError):
    """Raised when a query cannot be parsed."""


@dataclass(frozen=True)
class _Token:
    kind: str  # ident, qident, string, number, param, op, punct
    value: str
    start: int
    end: int

    @property
    def keyword(self) -> str:
        return self.value.upper() if self.kind == "ident" else ""


@dataclass(frozen=True)
class Statement:
    """One parsed statement with its location (0-based offset) in the query."""

    kind: str
    location: int
    length: int
    savepoint_name: str = ""
    deallocate_name: str = ""
    deallocate_all: bool = False
    returning: Optional[tuple[ReturningColumn, ...]] = None
    params: tuple[tuple[int, int], ...] = field(default=())


_IDENT_RE = re.compile(r"[^\W\d][\w$]*")
_NUMBER_RE = re.compile(r"(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_OPERATOR_CHARS = set("+-*/<>=~!@#%^&|`?:")

_LEADING = {
    "SELECT", "WITH", "VALUES", "TABLE", "INSERT", "UPDATE", "DELETE", "MERGE",
    "BEGIN", "START", "COMMIT", "END", "ROLLBACK", "ABORT", "SAVEPOINT", "RELEASE",
    "SET", "RESET", "SHOW", "CREATE", "DROP", "ALTER", "DEALLOCATE", "PREPARE",
    "EXECUTE", "EXPLAIN", "ANALYZE", "ANALYSE", "VACUUM", "TRUNCATE", "GRANT",
    "REVOKE", "COPY", "LOCK", "LISTEN", "NOTIFY", "UNLISTEN", "DO", "CALL",
    "DECLARE", "FETCH", "MOVE", "CLOSE", "DISCARD", "COMMENT", "REFRESH",
    "REINDEX", "CLUSTER", "CHECKPOINT", "LOAD", "SECURITY", "IMPORT", "REASSIGN",
}
_DROP_OTHER = {"DATABASE", "ROLE", "USER", "GROUP", "OWNED", "TABLESPACE", "SUBSCRIPTION"}
_DML = {"SELECT": "select", "VALUES": "select", "TABLE": "select",
        "INSERT": "insert", "UPDATE": "update", "DELETE": "delete"}

_CLASSIFICATION = {
    "select": "SELECT", "insert": "INSERT", "update": "UPDATE", "delete": "DELETE",
    "begin": "BEGIN", "commit": "COMMIT", "rollback": "ROLLBACK",
    "rollback_to": "ROLLBACK", "savepoint": "SAVEPOINT", "release": "RELEASE",
    "set": "SET", "create": "CREATE", "drop": "DROP", "deallocate": "DEALLOCATE",
}
_TAGS = {"INSERT": "INSERT 0 1", "UPDATE": "UPDATE 0", "DELETE": "DELETE 0", "OTHER": "OK"}


def _scan_string(sql: str, i: int, backslash: bool) -> int:
    j = i + 1
    while True:
        if j >= len(sql):
            raise SqlParseError("unterminated quoted string")
        ch = sql[j]
        if backslash and ch == "\\":
            j += 2
            continue
        if ch == "'":
            if j + 1 < len(sql) and sql[j + 1] == "'":
                j += 2
                continue
            return j + 1
        j += 1


def _tokenize(sql: str) -> list[_Token]:
    tokens: list[_Token] = []
    i, n = 0, len(sql)
    while i < n:
        c = sql[i]
        if c.isspace():
            i += 1
        elif sql.startswith("--", i):
            j = sql.find("\n", i)
            i = n if j < 0 else j + 1
        elif sql.startswith("/*", i):
            depth, j = 1, i + 2
            while j < n and depth:
                if sql.startswith("/*", j):
                    depth, j = depth + 1, j + 2
                elif sql.startswith("*/", j):
                    depth, j = depth - 1, j + 2
                else:
                    j += 1
            if depth:
                raise SqlParseError("unterminated /* comment")
            i = j
        elif c in "eE" and sql.startswith("'", i + 1):
            j = _scan_string(sql, i + 1, backslash=True)
            tokens.append(_Token("string", sql[i:j], i, j))
            i = j
        elif c == "'":
            j = _scan_string(sql, i, backslash=False)
            tokens.append(_Token("string", sql[i:j], i, j))
            i = j
        elif c == '"':
            j = i + 1
            while True:
                if j >= n:
                    raise SqlParseError("unterminated quoted identifier")
                if sql[j] == '"':
                    if sql.startswith('"', j + 1):
                        j += 2
                        continue
                    break
                j += 1
            name = sql[i + 1 : j].replace('""', '"')
            if not name:
                raise SqlParseError("zero-length delimited identifier")
            tokens.append(_Token("qident", name, i, j + 1))
            i = j + 1
        elif c == "$":
            if i + 1 < n and sql[i + 1].isdigit():
                j = i + 1
                while j < n and sql[j].isdigit():
                    j += 1
                tokens.append(_Token("param", sql[i + 1 : j], i, j))
                i = j
                continue
            match = _DOLLAR_TAG_RE.match(sql, i)
            if not match:
                raise SqlParseError('syntax error at or near "$"')
            tag = match.group(0)
            end = sql.find(tag, match.end())
            if end < 0:
                raise SqlParseError("unterminated dollar-quoted string")
            tokens.append(_Token("string", sql[i : end + len(tag)], i, end + len(tag)))
            i = end + len(tag)
        elif c.isdigit() or (c == "." and i + 1 < n and sql[i + 1].isdigit()):
            match = _NUMBER_RE.match(sql, i)
            tokens.append(_Token("number", match.group(0), i, match.end()))
            i = match.end()
        elif c.isalpha() or c == "_":
            match = _IDENT_RE.match(sql, i)
            tokens.append(_Token("ident", match.group(0), i, match.end()))
            i = match.end()
        elif c in "(),;[].":
            tokens.append(_Token("punct", c, i, i + 1))
            i += 1
        elif c in _OPERATOR_CHARS:
            j = i
            while j < n and sql[j] in _OPERATOR_CHARS:
                j += 1
            tokens.append(_Token("op", sql[i:j], i, j))
            i = j
        else:
            raise SqlParseError(f'syntax error at or near "{c}"')
    return tokens


def _depths(tokens: Sequence[_Token]) -> list[int]:
    depths, depth = [], 0
    for tok in tokens:
        if tok.kind == "punct" and tok.value == ")":
            depth -= 1
        depths.append(depth)
        if tok.kind == "punct" and tok.value == "(":
            depth += 1
    return depths


def _name_of(tok: _Token) -> str:
    if tok.kind == "ident":
        return tok.value.lower()
    if tok.kind == "qident":
        return tok.value
    raise SqlParseError(f'syntax error at or near "{tok.value}"')


def _returning_item_name(item: list[_Token]) -> str:
    if not item:
        return ""
    last = item[-1]
    if len(item) >= 3 and item[-2].keyword == "AS" and last.kind in ("ident", "qident"):
        return _name_of(last)
    named = last.kind in ("ident", "qident")
    if len(item) >= 2 and named and item[-2].kind not in ("punct", "op"):
        return _name_of(last)
    # Column reference: ident ('.' (ident | '*'))*
    if item[0].kind not in ("ident", "qident"):
        return ""
    for k, tok in enumerate(item[1:], start=1):
        expected_dot = k % 2 == 1
        if expected_dot and tok.value != ".":
            return ""
        if not expected_dot and not (tok.kind in ("ident", "qident") or tok.value == "*"):
            return ""
    return _name_of(item[0])


def _returning(tokens: list[_Token], depths: list[int], start: int):
    idx = next(
        (k for k in range(start, len(tokens)) if depths[k] == 0 and tokens[k].keyword == "RETURNING"),
        None,
    )
    if idx is None:
        return None
    items: list[list[_Token]] = [[]]
    for k in range(idx + 1, len(tokens)):
        if depths[k] == 0 and tokens[k].value == "," and tokens[k].kind == "punct":
            items.append([])
        else:
            items[-1].append(tokens[k])
    columns = []
    for item in items:
        name = _returning_item_name(item)
        if not name:
            return None
        columns.append(ReturningColumn.for_name(name))
    return tuple(columns)


def _build(tokens: list[_Token]) -> Statement:
    depths = _depths(tokens)
    first = tokens[0]
    kw = tokens[0].keyword
    location, length = first.start, tokens[-1].end - first.start
    params = tuple((t.start, int(t.value)) for t in tokens if t.kind == "param")

    def word(k: int) -> str:
        return tokens[k].keyword if k < len(tokens) else ""

    def name_at(k: int) -> str:
        if k >= len(tokens):
            raise SqlParseError("syntax error at end of input")
        return _name_of(tokens[k])

    def make(kind: str, **extra: Any) -> Statement:
        return Statement(kind, location, length, params=params, **extra)

    if first.kind == "punct" and first.value == "(":
        return make("select")
    if kw not in _LEADING:
        raise SqlParseError(f'syntax error at or near "{first.value}"')

    if kw in ("WITH", "SELECT", "VALUES", "TABLE", "INSERT", "UPDATE", "DELETE"):
        main = 0
        if kw == "WITH":
            main = next(
                (k for k in range(1, len(tokens)) if depths[k] == 0 and tokens[k].keyword in _DML),
                None,
            )
            if main is None:
                raise SqlParseError("syntax error at end of input")
        kind = _DML[tokens[main].keyword]
        returning = _returning(tokens, depths, main) if kind != "select" else None
        return make(kind, returning=returning)
    if kw == "START":
        if word(1) != "TRANSACTION":
            raise SqlParseError("syntax error after START")
        return make("begin")
    if kw == "BEGIN":
        return make("begin")
    if kw in ("COMMIT", "END"):
        return make("other" if word(1) == "PREPARED" else "commit")
    if kw in ("ROLLBACK", "ABORT"):
        if word(1) == "PREPARED":
            return make("other")
        k = 2 if word(1) in ("WORK", "TRANSACTION") else 1
        if kw == "ROLLBACK" and word(k) == "TO":
            k += 1
            if word(k) == "SAVEPOINT":
                k += 1
            return make("rollback_to", savepoint_name=name_at(k))
        return make("rollback")
    if kw == "SAVEPOINT":
        return make("savepoint", savepoint_name=name_at(1))
    if kw == "RELEASE":
        k = 2 if word(1) == "SAVEPOINT" else 1
        return make("release", savepoint_name=name_at(k))
    if kw == "DEALLOCATE":
        k = 2 if word(1) == "PREPARE" else 1
        if word(k) == "ALL":
            return make("deallocate", deallocate_all=True)
        return make("deallocate", deallocate_name=name_at(k))
    if kw == "SET":
        return make("other" if word(1) == "CONSTRAINTS" else "set")
    if kw == "CREATE":
        k = 1
        if word(k) in ("GLOBAL", "LOCAL"):
            k += 1
        if word(k) in ("TEMP", "TEMPORARY", "UNLOGGED"):
            k += 1
        if word(k) != "TABLE":
            return make("other")
        as_clause = any(depths[j] == 0 and tokens[j].keyword == "AS" for j in range(k + 1, len(tokens)))
        return make("other" if as_clause else "create")
    if kw == "DROP":
        return make("other" if word(1) in _DROP_OTHER else "drop")
    return make("other")


def parse_statements(sql: str) -> list[Statement]:
    """Parse SQL into one Statement per command; raises SqlParseError."""
    statements: list[Statement] = []
    segment: list[_Token] = []
    depth = 0
    for tok in _tokenize(sql):
        if tok.kind == "punct":
            if tok.value == "(":
                depth += 1
            elif tok.value == ")":
                depth -= 1
                if depth < 0:
                    raise SqlParseError('syntax error at or near ")"')
            elif tok.value == ";":
                if depth:
                    raise SqlParseError('syntax error at or near ";"')
                if segment:
                    statements.append(_build(segment))
                segment = []
                continue
        segment.append(tok)
    if depth:
        raise SqlParseError("syntax error at end of input")
    if segment:
        statements.append(_build(segment))
    return statements


def command_string_from_raw(query: str, raw: Optional[Statement]) -> str:
    """Return the trimmed text of ``raw`` within ``query``, or '' if invalid."""
    if raw is None or raw.location < 0 or raw.length <= 0 or raw.location >= len(query):
        return ""
    return query[raw.location : raw.location + raw.length].strip()


def classify_statement(stmt: Optional[Statement]) -> str:
    """Return SELECT, INSERT, ..., DEALLOCATE, SET, CREATE, DROP or OTHER."""
    if stmt is None:
        return "OTHER"
    return _CLASSIFICATION.get(stmt.kind, "OTHER")


def get_returning_columns(stmt: Optional[Statement]) -> Optional[list[ReturningColumn]]:
    """RETURNING columns of INSERT/UPDATE/DELETE; None for ``*`` or no clause."""
    if stmt is None or not stmt.returning:
        return None
    return list(stmt.returning)


def stmt_returns_result_set(stmt: Optional[Statement]) -> bool:
    """True for SELECT or for DML with a describable RETURNING clause."""
    if stmt is None:
        return False
    return stmt.kind == "select" or bool(get_returning_columns(stmt))


def parse_deallocate(stmt: Optional[Statement]) -> Optional[tuple[str, bool]]:
    """Return ``(name, is_all)`` for DEALLOCATE, otherwise None."""
    if stmt is None or stmt.kind != "deallocate":
        return None
    if stmt.deallocate_all:
        return "", True
    return stmt.deallocate_name, False


def max_param_index(stmt: Optional[Statement]) -> int:
    """Highest ``$n`` parameter number used; 0 if none."""
    if stmt is None:
        return 0
    return max((number for _, number in stmt.params), default=0)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign, digit_tuple, exponent = Decimal(repr(value)).normalize().as_tuple()
    digits = "".join(map(str, digit_tuple))
    prefix = "-" if sign else ""
    adjusted = len(digits) - 1 + exponent
    if -4 <= adjusted < 21:
        if exponent >= 0:
            body = digits + "0" * exponent
        else:
            point = len(digits) + exponent
            body = digits[:point] + "." + digits[point:] if point > 0 else "0." + "0" * -point + digits
    else:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        body = f"{mantissa}e{'+' if adjusted >= 0 else '-'}{abs(adjusted):02d}"
    return prefix + body


def _format_arg(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).decode("utf-8", errors="replace")
    else:
        text = str(value)
    return "'" + text.replace("'", "''") + "'"


def _substitute_fallback(sql: str, args: Sequence[Any]) -> str:
    for i in range(len(args), 0, -1):
        sql = sql.replace(f"${i}", _format_arg(args[i - 1]))
    return sql


def substitute_params(sql: str, args: Sequence[Any], conn_label: str = "") -> str:
    """Inline ``$n`` parameters as SQL literals, prefixed with ``[conn_label] ``."""
    label = conn_label.strip()
    prefix = f"[{label}] " if label else ""
    if not args:
        return prefix + sql
    try:
        statements = parse_statements(sql)
    except SqlParseError:
        return prefix + _substitute_fallback(sql, args)
    if not statements or not statements[0].params:
        return prefix + _substitute_fallback(sql, args)
    pieces: list[str] = []
    prev = 0
    for pos, number in sorted(statements[0].params):
        end = pos + 1
        while end < len(sql) and sql[end].isdigit():
            end += 1
        pieces.append(sql[prev:pos])
        pieces.append(_format_arg(args[number - 1]) if 1 <= number <= len(args) else sql[pos:end])
        prev = end
    pieces.append(sql[prev:])
    result = "".join(pieces)
    if any(f"${i}" in result for i in range(1, len(args) + 1)):
        return prefix + _substitute_fallback(sql, args)
    return prefix + result


def _is_kind(stmt: Optional[Statement], kind: str) -> bool:
    return stmt is not None and stmt.kind == kind


def is_transaction_begin(stmt: Optional[Statement]) -> bool:
    """True for BEGIN / START TRANSACTION."""
    return _is_kind(stmt, "begin")


def is_transaction_commit(stmt: Optional[Statement]) -> bool:
    """True for COMMIT."""
    return _is_kind(stmt, "commit")


def is_transaction_rollback(stmt: Optional[Statement]) -> bool:
    """True for a plain ROLLBACK (not ROLLBACK TO SAVEPOINT)."""
    return _is_kind(stmt, "rollback")


def is_savepoint(stmt: Optional[Statement]) -> bool:
    """True for SAVEPOINT name."""
    return _is_kind(stmt, "savepoint")


def is_release_savepoint(stmt: Optional[Statement]) -> bool:
    """True for RELEASE SAVEPOINT name."""
    return _is_kind(stmt, "release")


def is_rollback_to_savepoint(stmt: Optional[Statement]) -> bool:
    """True for ROLLBACK TO SAVEPOINT name."""
    return _is_kind(stmt, "rollback_to")


def get_savepoint_name(stmt: Optional[Statement]) -> str:
    """Savepoint name of SAVEPOINT / RELEASE / ROLLBACK TO, else ''."""
    return stmt.savepoint_name if stmt is not None else ""


def stmt_command_tag(stmt: Optional[Statement]) -> str:
    """CommandComplete tag for the statement (e.g. ``INSERT 0 1``)."""
    kind = classify_statement(stmt)
    return _TAGS.get(kind, kind)


def is_deallocate_noise(stmt: Optional[Statement]) -> bool:
    """True for DEALLOCATE, which is driver noise in query history."""
    return _is_kind(stmt, "deallocate")