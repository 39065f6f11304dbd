from datetime import datetime, timezone

import pytest

from pgsandbox.session_db import (
    DEFAULT_SELECT_ONE,
    GUARD_SAVEPOINT_PREFIX,
    GuardedRows,
    NoActiveTransactionError,
    SessionDB,
    command_invalidates_guard_on_success,
    is_savepoint_command,
    new_guard_savepoint_name,
    release_savepoint,
)
from pgsandbox.session_state import OnlyOneTransactionError


class FakeRows:
    def __init__(self, data, error=None):
        self.data = data
        self.error = error
        self.closed = False

    def __iter__(self):
        return iter(self.data)

    def close(self):
        self.closed = True


class FakeTx:
    def __init__(self, log, name="main", fail_on=(), fail_commit=False, row_error=None):
        self.log = log
        self.name = name
        self.fail_on = set(fail_on)
        self.fail_commit = fail_commit
        self.row_error = row_error

    def begin(self):
        child = FakeTx(self.log, f"guard{len(self.log)}", self.fail_on, self.fail_commit, self.row_error)
        self.log.append(("begin", child.name))
        return child

    def execute(self, sql, *args):
        self.log.append(("exec", self.name, sql, args))
        if sql in self.fail_on:
            raise RuntimeError("boom")
        return "TAG"

    def query(self, sql, *args):
        self.log.append(("query", self.name, sql, args))
        if sql in self.fail_on:
            raise RuntimeError("boom")
        return FakeRows([(1,)], self.row_error)

    def commit(self):
        self.log.append(("commit", self.name))
        if self.fail_commit:
            raise RuntimeError("commit failed")

    def rollback(self):
        self.log.append(("rollback", self.name))


class FakeConn:
    def __init__(self, log):
        self.log = log
        self.closed = False

    def begin(self):
        self.log.append(("conn_begin",))
        return FakeTx(self.log, "main")

    def execute(self, sql, *args):
        self.log.append(("conn_exec", sql, args))
        return "TAG"

    def ping(self):
        self.log.append(("ping",))

    def close(self):
        self.closed = True


@pytest.fixture
def log():
    return []


@pytest.fixture
def session(log):
    return SessionDB(FakeConn(log), FakeTx(log))


def test_handle_begin_without_transaction_raises():
    with pytest.raises(NoActiveTransactionError):
        SessionDB().handle_begin("t", None)


def test_handle_begin_first_then_noop(session):
    assert session.handle_begin("t", 1) == "SAVEPOINT pgtest_v_1"
    assert session.savepoint_level == 0
    session.increment_savepoint_level()
    assert session.handle_begin("t", 1) == DEFAULT_SELECT_ONE


def test_handle_begin_rejects_other_connection(session):
    session.claim_open_transaction(1)
    with pytest.raises(OnlyOneTransactionError):
        session.handle_begin("t", 2)
    assert session.handle_begin("t", 1) == "SAVEPOINT pgtest_v_1"


def test_handle_commit_and_rollback(session):
    assert session.handle_commit("t") == DEFAULT_SELECT_ONE
    assert session.handle_rollback("t") == DEFAULT_SELECT_ONE
    session.increment_savepoint_level()
    assert session.handle_commit("t") == "RELEASE SAVEPOINT pgtest_v_1"
    assert session.handle_rollback("t") == (
        "ROLLBACK TO SAVEPOINT pgtest_v_1; RELEASE SAVEPOINT pgtest_v_1"
    )
    assert session.savepoint_level == 1


def test_build_status_query(session):
    created = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert session.build_status_query(created, "t1") == (
        "SELECT 't1' AS test_id, true AS active, 0 AS level, "
        "'2024-01-02T03:04:05Z' AS created_at"
    )
    assert "false AS active" in SessionDB().build_status_query(created, "t1")


def test_query_and_execute_need_transaction(session, log):
    bare = SessionDB()
    with pytest.raises(NoActiveTransactionError):
        bare.query("SELECT 1")
    with pytest.raises(NoActiveTransactionError):
        bare.execute("SELECT 1")
    assert session.execute("INSERT INTO t VALUES ($1)", 5) == "TAG"
    assert log[-1] == ("exec", "main", "INSERT INTO t VALUES ($1)", (5,))


def test_safe_exec_commits_guard(session, log):
    assert session.safe_exec("INSERT INTO t VALUES (1)") == "TAG"
    guard = log[0][1]
    assert log[-1] == ("commit", guard)


def test_safe_exec_failure_rolls_back_guard(log):
    db = SessionDB(FakeConn(log), FakeTx(log, fail_on={"BAD"}))
    with pytest.raises(RuntimeError) as info:
        db.safe_exec("BAD")
    assert "BAD" in str(info.value)
    assert log[-1] == ("rollback", log[0][1])
    assert db.has_active_transaction()


def test_safe_exec_commit_failure_rolls_back(log):
    db = SessionDB(FakeConn(log), FakeTx(log, fail_commit=True))
    with pytest.raises(RuntimeError):
        db.safe_exec("INSERT INTO t VALUES (1)")
    assert log[-1][0] == "rollback"


def test_safe_exec_tcl_savepoint_runs_on_main_tx(session, log):
    assert session.safe_exec_tcl("SAVEPOINT pgtest_v_1") == "TAG"
    assert log == [("exec", "main", "SAVEPOINT pgtest_v_1", ())]


def test_safe_exec_tcl_rollback_to_leaves_guard_uncommitted(session, log):
    assert session.safe_exec_tcl("ROLLBACK TO SAVEPOINT pgtest_v_1") == "TAG"
    assert log[0][0] == "begin"
    assert all(entry[0] != "commit" for entry in log)


def test_safe_exec_tcl_other_commits_guard(session, log):
    assert session.safe_exec_tcl("SET search_path = public") == "TAG"
    assert log[-1][0] == "commit"


def test_safe_query_returns_guarded_rows(session, log):
    rows = session.safe_query("SELECT 1")
    assert isinstance(rows, GuardedRows)
    assert list(rows) == [(1,)]
    rows.close()
    rows.close()
    assert [e for e in log if e[0] == "commit"] == [("commit", log[0][1])]


def test_guarded_rows_rollback_on_row_error(log):
    db = SessionDB(FakeConn(log), FakeTx(log, row_error=ValueError("x")))
    with db.safe_query("SELECT 1") as rows:
        assert rows.error is not None
    assert log[-1] == ("rollback", log[0][1])


def test_safe_query_failure_raises(log):
    db = SessionDB(FakeConn(log), FakeTx(log, fail_on={"SELECT nope"}))
    with pytest.raises(RuntimeError):
        db.safe_query("SELECT nope")
    assert log[-1][0] == "rollback"


def test_rollback_user_savepoints_on_disconnect(session, log):
    session.increment_savepoint_level()
    session.rollback_user_savepoints_on_disconnect(2)
    assert session.savepoint_level == 0
    executed = [e[2] for e in log if e[0] == "exec"]
    assert executed == ["ROLLBACK TO SAVEPOINT pgtest_v_1; RELEASE SAVEPOINT pgtest_v_1"]


def test_rollback_user_savepoints_zero_count(session, log):
    session.increment_savepoint_level()
    session.rollback_user_savepoints_on_disconnect(0)
    assert session.savepoint_level == 1
    assert log == []


def test_begin_tx_idempotent(log):
    assert SessionDB().begin_tx() is None
    db = SessionDB(FakeConn(log))
    db.begin_tx()
    db.begin_tx()
    assert db.has_active_transaction()
    assert log.count(("conn_begin",)) == 1


def test_rollback_tx_clears(session, log):
    session.rollback_tx()
    assert not session.has_active_transaction()
    assert log == [("rollback", "main")]


def test_start_new_tx(session, log):
    old = session.tx
    session.start_new_tx()
    assert session.tx is not old
    assert log == [("rollback", "main"), ("conn_exec", "ROLLBACK", ()), ("conn_begin",)]


def test_close(log):
    conn = FakeConn(log)
    db = SessionDB(conn, FakeTx(log))
    db.last_query = "SELECT 1"
    db.start_keepalive(1.0)
    db.close()
    assert conn.closed
    assert db.last_query == ""
    assert db.connection is None
    assert not db.has_active_transaction()


def test_advisory_locks(session, log):
    session.acquire_advisory_lock(42)
    session.release_advisory_lock(42)
    assert log == [
        ("conn_exec", "SELECT pg_advisory_lock($1)", (42,)),
        ("conn_exec", "SELECT pg_advisory_unlock($1)", (42,)),
    ]
    with pytest.raises(RuntimeError):
        SessionDB().acquire_advisory_lock(1)


@pytest.mark.parametrize(
    "query, expected",
    [("SAVEPOINT a", True), ("RELEASE SAVEPOINT a", False), ("not sql ((", False)],
)
def test_is_savepoint_command(query, expected):
    assert is_savepoint_command(query) is expected


@pytest.mark.parametrize(
    "query, expected",
    [
        ("ROLLBACK", True),
        ("ROLLBACK TO SAVEPOINT a", True),
        ("RELEASE SAVEPOINT a", True),
        ("SAVEPOINT a", False),
        ("SELECT 1", False),
    ],
)
def test_command_invalidates_guard_on_success(query, expected):
    assert command_invalidates_guard_on_success(query) is expected


def test_release_savepoint(log):
    tx = FakeTx(log)
    assert release_savepoint(tx, "sp") == "TAG"
    assert log == [("exec", "main", "RELEASE SAVEPOINT sp", ())]


def test_new_guard_savepoint_name():
    name = new_guard_savepoint_name()
    assert name.startswith(GUARD_SAVEPOINT_PREFIX)
    assert name[len(GUARD_SAVEPOINT_PREFIX):].isdigit()