import sqlite3

import pytest

from pgsandbox.dbhelpers import (
    DBAssertionError,
    assert_release_savepoint_query,
    assert_rollback_to_savepoint_query,
    assert_row_count_with_condition,
    assert_savepoint_query,
    assert_table_count,
    assert_table_exists,
    create_table,
    create_table_with_id,
    create_table_with_id_and_data,
    create_table_with_id_and_name,
    create_table_with_value_column,
    insert_one_row,
    insert_row,
    insert_row_with_data,
    insert_row_with_name,
)


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:")
    yield conn
    conn.close()


class _FakeCursor:
    def __init__(self, owner):
        self.owner = owner
        self.rowcount = -1

    def execute(self, query, params):
        self.owner.calls.append((query, params))

    def fetchone(self):
        return self.owner.row

    def close(self):
        self.owner.closed += 1


class _FakeConnection:
    def __init__(self, row):
        self.row = row
        self.calls = []
        self.closed = 0

    def cursor(self):
        return _FakeCursor(self)


def _column_names(db, table):
    return [row[1] for row in db.execute(f"PRAGMA table_info({table})")]


def test_create_table_uses_given_columns(db):
    create_table(db, "things", "a INT, b TEXT")
    assert _column_names(db, "things") == ["a", "b"]


@pytest.mark.parametrize(
    "create, columns",
    [
        (create_table_with_id_and_name, ["id", "name"]),
        (create_table_with_id_and_data, ["id", "data"]),
        (create_table_with_id, ["id"]),
        (create_table_with_value_column, ["id", "value"]),
    ],
)
def test_create_table_variants(db, create, columns):
    create(db, "t")
    assert _column_names(db, "t") == columns


def test_create_existing_table_fails(db):
    create_table_with_id(db, "t")
    with pytest.raises(DBAssertionError, match="Failed to create table t"):
        create_table_with_id(db, "t")


def test_insert_one_row_escapes_quotes(db):
    create_table_with_value_column(db, "t")
    insert_one_row(db, "t", "O'Brien", "quoted")
    assert db.execute("SELECT value FROM t").fetchall() == [("O'Brien",)]


def test_insert_row_with_name_and_data(db):
    create_table_with_id_and_name(db, "people")
    create_table_with_id_and_data(db, "blobs")
    insert_row_with_name(db, "people", "ann")
    insert_row_with_data(db, "blobs", "x'y")
    assert db.execute("SELECT name FROM people").fetchone() == ("ann",)
    assert db.execute("SELECT data FROM blobs").fetchone() == ("x'y",)


def test_insert_row_requires_exactly_one_row(db):
    create_table_with_value_column(db, "t")
    with pytest.raises(DBAssertionError, match="should affect 1 row, got: 2 \\(ctx\\)"):
        insert_row(db, "t", "(value) VALUES ('a'), ('b')", "ctx")


def test_insert_into_missing_table_fails(db):
    with pytest.raises(DBAssertionError, match="Failed to insert row into missing"):
        insert_one_row(db, "missing", "v")


def test_assert_table_count_matches(db):
    create_table_with_value_column(db, "t")
    insert_one_row(db, "t", "a")
    insert_one_row(db, "t", "b")
    assert assert_table_count(db, "t", 2) == 2


def test_assert_table_count_mismatch_mentions_context(db):
    create_table_with_value_column(db, "t")
    insert_one_row(db, "t", "a")
    with pytest.raises(DBAssertionError) as info:
        assert_table_count(db, "t", 5, "after insert")
    assert str(info.value) == "Table t count = 1, want 5 (after insert)"


def test_assert_table_count_missing_table(db):
    with pytest.raises(DBAssertionError, match="Failed to check table count for nope"):
        assert_table_count(db, "nope", 0)


def test_assert_row_count_with_condition(db):
    create_table_with_value_column(db, "t")
    for value in ("a", "a", "b"):
        insert_one_row(db, "t", value)
    assert assert_row_count_with_condition(db, "t", "value = 'a'", 2) == 2
    with pytest.raises(DBAssertionError, match=r"Row count for t \(value = 'b'\)"):
        assert_row_count_with_condition(db, "t", "value = 'b'", 3)


def test_assert_table_exists_queries_information_schema():
    fake = _FakeConnection((True,))
    assert_table_exists(fake, "my_table")
    query, params = fake.calls[0]
    assert "information_schema.tables" in query
    assert params == ("my_table",)
    assert fake.closed == 1


def test_assert_table_exists_fails_when_absent():
    fake = _FakeConnection((False,))
    with pytest.raises(DBAssertionError, match="Table my_table should exist"):
        assert_table_exists(fake, "my_table")


def test_assert_table_exists_fails_without_row():
    fake = _FakeConnection(None)
    with pytest.raises(DBAssertionError, match="Failed to check if table my_table exists"):
        assert_table_exists(fake, "my_table")


def test_savepoint_query_checks():
    with pytest.raises(DBAssertionError, match="should contain SAVEPOINT"):
        assert_savepoint_query("SELECT 1", 1)
    with pytest.raises(DBAssertionError, match="should contain level 2"):
        assert_savepoint_query("savepoint pgtest_v_1", 2)


def test_release_savepoint_query_checks():
    with pytest.raises(DBAssertionError, match="RELEASE SAVEPOINT"):
        assert_release_savepoint_query("SAVEPOINT pgtest_v_1", 1)
    with pytest.raises(DBAssertionError, match="should contain level 3"):
        assert_release_savepoint_query("RELEASE SAVEPOINT pgtest_v_1", 3)


def test_rollback_to_savepoint_query_checks():
    with pytest.raises(DBAssertionError, match="ROLLBACK TO SAVEPOINT"):
        assert_rollback_to_savepoint_query("ROLLBACK", 1)
    with pytest.raises(DBAssertionError, match="should contain level 4"):
        assert_rollback_to_savepoint_query("ROLLBACK TO SAVEPOINT pgtest_v_1", 4)