"""String-based SQL helpers used when the statement parser cannot handle a query."""

from __future__ import annotations

from dataclasses import dataclass

INT8OID = 20
"""PostgreSQL type OID for bigint (typical for id columns)."""

TEXTOID = 25
"""PostgreSQL type OID for text."""

_COMMAND_PREFIXES = (
    "SELECT",
    "INSERT",
    "UPDATE",
    "DELETE",
    "CREATE",
    "DROP",
    "ALTER",
    "SET",
    "SAVEPOINT",
    "RELEASE",
    "ROLLBACK",
)


@dataclass(frozen=True)
class ReturningColumn:
    """A column of a RETURNING clause: its name and PostgreSQL type OID."""

    name: str
    oid: int

    @classmethod
    def for_name(cls, name: str) -> "ReturningColumn":
        """Build a column, typing ``id`` as bigint and anything else as text."""
        return cls(name, INT8OID if name.lower() == "id" else TEXTOID)


def split_commands_fallback(query: str) -> list[str]:
    """Split on semicolons that are outside single- and double-quoted text."""
    commands: list[str] = []
    current: list[str] = []
    in_single = in_double = False
    for char in query:
        if char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double
        elif char == ";" and not in_single and not in_double:
            command = "".join(current).strip()
            if command:
                commands.append(command)
            current = []
            continue
        current.append(char)
    command = "".join(current).strip()
    if command:
        commands.append(command)
    return commands


def command_type_from_query_fallback(query: str) -> str:
    """Return the leading command word (e.g. ``SELECT``) or ``OTHER``."""
    upper = query.strip().upper()
    return next((p for p in _COMMAND_PREFIXES if upper.startswith(p)), "OTHER")


def get_command_tag_fallback(query: str) -> str:
    """Return the CommandComplete tag guessed from the query text."""
    upper = query.strip().upper()
    if upper.startswith("INSERT"):
        return "INSERT 0 1"
    if upper.startswith("UPDATE"):
        return "UPDATE 0"
    if upper.startswith("DELETE"):
        return "DELETE 0"
    kind = command_type_from_query_fallback(query)
    return kind if kind != "OTHER" else "OK"


def returns_result_set_fallback(query: str) -> bool:
    """True for SELECT, or INSERT/UPDATE/DELETE that mention RETURNING."""
    upper = query.strip().upper()
    if upper.startswith("SELECT"):
        return True
    if upper.startswith(("INSERT", "UPDATE", "DELETE")):
        return "RETURNING" in upper
    return False


def _trim_to_end_of_statement(text: str) -> str:
    in_single = in_double = False
    for i, char in enumerate(text):
        if char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double
        elif char == ";" and not in_single and not in_double:
            return text[:i].strip()
    return text.strip()


def _find_unescaped_quote(text: str, quote: str) -> int:
    i = 0
    while i < len(text):
        if text[i] == quote:
            if i + 1 < len(text) and text[i + 1] == quote:
                i += 2
                continue
            return i
        i += 1
    return -1


def returning_columns_fallback(query: str) -> list[ReturningColumn]:
    """Parse the RETURNING list from text; empty for ``RETURNING *`` or none."""
    idx = query.upper().find("RETURNING")
    if idx < 0:
        return []
    rest = _trim_to_end_of_statement(query[idx + len("RETURNING"):].strip())
    if not rest or rest.strip() == "*":
        return []
    columns: list[ReturningColumn] = []
    while rest:
        rest = rest.strip()
        if not rest:
            break
        if rest.startswith('"'):
            end = _find_unescaped_quote(rest[1:], '"')
            if end < 0:
                break
            name = rest[1 : 1 + end]
            rest = rest[end + 2 :].strip()
        else:
            i = 0
            while i < len(rest) and rest[i] not in ",;":
                i += 1
            name = rest[:i].strip()
            rest = rest[i:]
        if not name:
            break
        columns.append(ReturningColumn.for_name(name))
        if rest.startswith(","):
            rest = rest[1:]
        else:
            break
    return columns