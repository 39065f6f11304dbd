"""Table setup and row-count assertions for tests that run against a database.

An executor is a DB-API 2.0 connection (anything with ``cursor()``) or a cursor
(anything with ``execute()``, ``fetchone()`` and ``rowcount``). Queries with
parameters use the ``%s`` placeholder of PostgreSQL drivers.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Sequence

ID_AND_NAME_COLUMNS = "id SERIAL PRIMARY KEY, name VARCHAR(100)"
ID_AND_DATA_COLUMNS = "id SERIAL PRIMARY KEY, data VARCHAR(100)"
ID_COLUMN = "id INT"
ID_AND_VALUE_COLUMNS = "id SERIAL PRIMARY KEY, value TEXT"

_TABLE_EXISTS_QUERY = """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = %s
        )
    """


class DBAssertionError(AssertionError):
    """Raised when a database helper fails or a checked condition does not hold."""


def _with_context(message: str, context: str) -> str:
    return f"{message} ({context})" if context else message


@contextmanager
def _cursor(executor: Any) -> Iterator[Any]:
    if hasattr(executor, "cursor"):
        cursor = executor.cursor()
        try:
            yield cursor
        finally:
            cursor.close()
    else:
        yield executor


def _escape(text: str) -> str:
    return text.replace("'", "''")


def _execute(executor: Any, query: str, params: Sequence[Any] = ()) -> int:
    """Run a command and return the driver's affected-row count."""
    with _cursor(executor) as cursor:
        cursor.execute(query, tuple(params))
        return cursor.rowcount


def _fetch_first(executor: Any, query: str, params: Sequence[Any] = ()) -> Any:
    """Run a query and return the first column of its first row."""
    with _cursor(executor) as cursor:
        cursor.execute(query, tuple(params))
        row = cursor.fetchone()
    if row is None:
        raise LookupError("query returned no rows")
    return row[0]


def create_table(executor: Any, table_name: str, columns: str) -> None:
    """Create ``table_name`` with the given column definitions."""
    try:
        _execute(executor, f"CREATE TABLE {table_name} ({columns})")
    except Exception as exc:
        raise DBAssertionError(f"Failed to create table {table_name}: {exc}") from exc


def create_table_with_id_and_name(executor: Any, table_name: str) -> None:
    """Create a table with ``id SERIAL PRIMARY KEY, name VARCHAR(100)``."""
    create_table(executor, table_name, ID_AND_NAME_COLUMNS)


def create_table_with_id_and_data(executor: Any, table_name: str) -> None:
    """Create a table with ``id SERIAL PRIMARY KEY, data VARCHAR(100)``."""
    create_table(executor, table_name, ID_AND_DATA_COLUMNS)


def create_table_with_id(executor: Any, table_name: str) -> None:
    """Create a table with a single ``id INT`` column."""
    create_table(executor, table_name, ID_COLUMN)


def create_table_with_value_column(executor: Any, table_name: str) -> None:
    """Create a table with ``id SERIAL PRIMARY KEY, value TEXT``."""
    create_table(executor, table_name, ID_AND_VALUE_COLUMNS)


def insert_row(executor: Any, table_name: str, values: str, context_message: str = "") -> None:
    """Run ``INSERT INTO <table> <values>`` and require exactly one affected row."""
    try:
        affected = _execute(executor, f"INSERT INTO {table_name} {values}")
    except Exception as exc:
        message = _with_context(f"Failed to insert row into {table_name}", context_message)
        raise DBAssertionError(f"{message}: {exc}") from exc
    if affected is None or affected < 0:
        message = _with_context(
            f"Failed to get rows affected from INSERT into {table_name}", context_message
        )
        raise DBAssertionError(f"{message}: row count not available")
    if affected != 1:
        raise DBAssertionError(
            _with_context(
                f"INSERT into {table_name} should affect 1 row, got: {affected}",
                context_message,
            )
        )


def insert_row_with_name(
    executor: Any, table_name: str, name_value: str, context_message: str = ""
) -> None:
    """Insert one row setting the ``name`` column."""
    insert_row(executor, table_name, f"(name) VALUES ('{_escape(name_value)}')", context_message)


def insert_row_with_data(
    executor: Any, table_name: str, data_value: str, context_message: str = ""
) -> None:
    """Insert one row setting the ``data`` column."""
    insert_row(executor, table_name, f"(data) VALUES ('{_escape(data_value)}')", context_message)


def insert_one_row(executor: Any, table_name: str, value: str, context_message: str = "") -> None:
    """Insert one row setting the ``value`` column."""
    insert_row(executor, table_name, f"(value) VALUES ('{_escape(value)}')", context_message)


def assert_table_count(
    executor: Any, table_name: str, expected_count: int, context_msg: str = ""
) -> int:
    """Require the table to hold ``expected_count`` rows; returns the count."""
    try:
        count = _fetch_first(executor, f"SELECT COUNT(*) FROM {table_name}")
    except Exception as exc:
        message = _with_context(f"Failed to check table count for {table_name}", context_msg)
        raise DBAssertionError(f"{message}: {exc}") from exc
    if count != expected_count:
        raise DBAssertionError(
            _with_context(
                f"Table {table_name} count = {count}, want {expected_count}", context_msg
            )
        )
    return count


def assert_row_count_with_condition(
    executor: Any,
    table_name: str,
    where_clause: str,
    expected_count: int,
    context_msg: str = "",
) -> int:
    """Require ``expected_count`` rows matching ``where_clause``; returns the count."""
    try:
        count = _fetch_first(
            executor, f"SELECT COUNT(*) FROM {table_name} WHERE {where_clause}"
        )
    except Exception as exc:
        message = _with_context(f"Failed to check row count for {table_name}", context_msg)
        raise DBAssertionError(f"{message}: {exc}") from exc
    if count != expected_count:
        raise DBAssertionError(
            _with_context(
                f"Row count for {table_name} ({where_clause}) = {count}, want {expected_count}",
                context_msg,
            )
        )
    return count


def assert_table_exists(executor: Any, table_name: str, context_msg: str = "") -> None:
    """Require the table to be listed in information_schema.tables."""
    try:
        exists = _fetch_first(executor, _TABLE_EXISTS_QUERY, (table_name,))
    except Exception as exc:
        message = _with_context(f"Failed to check if table {table_name} exists", context_msg)
        raise DBAssertionError(f"{message}: {exc}") from exc
    if not exists:
        raise DBAssertionError(_with_context(f"Table {table_name} should exist", context_msg))


def assert_savepoint_query(query: str, expected_level: int) -> None:
    """Require ``query`` to mention SAVEPOINT (any case) and the expected level."""
    if "SAVEPOINT" not in query.upper():
        raise DBAssertionError(
            f"Query should contain SAVEPOINT (case-insensitive), got: {query}"
        )
    if str(expected_level) not in query:
        raise DBAssertionError(f"Query should contain level {expected_level}, got: {query}")


def assert_release_savepoint_query(query: str, expected_level: int) -> None:
    """Require ``query`` to mention RELEASE and SAVEPOINT (any case) and the expected level."""
    upper = query.upper()
    if "RELEASE" not in upper or "SAVEPOINT" not in upper:
        raise DBAssertionError(
            f"Query should contain RELEASE SAVEPOINT (case-insensitive), got: {query}"
        )
    if str(expected_level) not in upper:
        raise DBAssertionError(f"Query should contain level {expected_level}, got: {query}")


def assert_rollback_to_savepoint_query(query: str, expected_level: int) -> None:
    """Require ``query`` to mention ROLLBACK and SAVEPOINT (any case) and the expected level."""
    upper = query.upper()
    if "ROLLBACK" not in upper or "SAVEPOINT" not in upper:
        raise DBAssertionError(
            f"Query should contain ROLLBACK TO SAVEPOINT (case-insensitive), got: {query}"
        )
    if str(expected_level) not in query:
        raise DBAssertionError(f"Query should contain level {expected_level}, got: {query}")