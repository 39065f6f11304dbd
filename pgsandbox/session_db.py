"""A test session's backend connection and the single transaction all its commands run in."""

from __future__ import annotations

import random
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Hashable, Optional, Protocol

from pgsandbox import logger
from pgsandbox.session_state import SessionState, OnlyOneTransactionError
from pgsandbox.statements import (
    SqlParseError,
    is_release_savepoint,
    is_rollback_to_savepoint,
    is_savepoint,
    is_transaction_rollback,
    parse_statements,
)
from pgsandbox.testenv import log_if_verbose

DEFAULT_SELECT_ONE = "SELECT 1"
"""Harmless query sent in place of a transaction command that has nothing to do."""

GUARD_SAVEPOINT_PREFIX = "pgtest_exec_guard_"

# Keepalive pings are stretched far apart on purpose so they almost never fire.
_KEEPALIVE_STRETCH = 10000


class Transaction(Protocol):
    """What the session needs from a transaction (or a savepoint inside one)."""

    def begin(self) -> "Transaction": ...

    def query(self, sql: str, *args: Any) -> Any: ...

    def execute(self, sql: str, *args: Any) -> Any: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class Connection(Protocol):
    """What the session needs from a backend connection."""

    def begin(self) -> Transaction: ...

    def execute(self, sql: str, *args: Any) -> Any: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class NoActiveTransactionError(RuntimeError):
    """Raised when a command needs the session's transaction and there is none."""

    def __init__(self, message: str = "no active transaction: use BeginTx first") -> None:
        super().__init__(message)


def _first_statement(query: str):
    try:
        statements = parse_statements(query)
    except SqlParseError:
        return None
    return statements[0] if statements else None


def is_savepoint_command(query: str) -> bool:
    """True for ``SAVEPOINT <name>``, which must run on the main transaction."""
    stmt = _first_statement(query)
    return stmt is not None and is_savepoint(stmt)


def command_invalidates_guard_on_success(query: str) -> bool:
    """True when success of the command leaves the guard savepoint gone (no commit then)."""
    stmt = _first_statement(query)
    if stmt is None:
        return False
    return (
        is_transaction_rollback(stmt)
        or is_rollback_to_savepoint(stmt)
        or is_release_savepoint(stmt)
    )


def release_savepoint(tx: Any, savepoint_name: str) -> Any:
    """Run ``RELEASE SAVEPOINT <name>`` on ``tx``."""
    return tx.execute("RELEASE SAVEPOINT " + savepoint_name)


def new_guard_savepoint_name() -> str:
    """A random name for an internal guard savepoint."""
    return f"{GUARD_SAVEPOINT_PREFIX}{random.randrange(2**31)}"


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.replace(microsecond=0).isoformat()
    if moment.utcoffset() == timedelta(0):
        text = text[:-6] + "Z"
    return text


class GuardedRows:
    """Rows read inside a guard savepoint; closing them finishes the savepoint."""

    def __init__(self, rows: Any, savepoint: Transaction) -> None:
        self._rows = rows
        self._savepoint = savepoint
        self.closed = False

    def __getattr__(self, name: str) -> Any:
        return getattr(self._rows, name)

    def __iter__(self):
        return iter(self._rows)

    def __enter__(self) -> "GuardedRows":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the rows, then roll back the guard on a row error or release it otherwise."""
        if self.closed:
            return
        self.closed = True
        self._rows.close()
        if getattr(self._rows, "error", None) is not None:
            try:
                self._savepoint.rollback()
            except Exception as exc:  # noqa: BLE001 - reported, not raised
                logger.error("[PROXY] failed to roll back guard savepoint after row error: %s", exc)
            return
        try:
            self._savepoint.commit()
        except Exception as exc:  # noqa: BLE001 - reported, not raised
            logger.warn("[PROXY] failed to release guard savepoint: %s", exc)


class SessionDB(SessionState):
    """Owns the backend connection and its transaction; data commands only go through the transaction."""

    def __init__(self, conn: Optional[Connection] = None, tx: Optional[Transaction] = None) -> None:
        super().__init__()
        self._conn = conn
        self._tx = tx
        self._stop_keepalive: Optional[Callable[[], None]] = None
        self.last_query = ""

    @property
    def connection(self) -> Optional[Connection]:
        with self._lock:
            return self._conn

    @property
    def tx(self) -> Optional[Transaction]:
        with self._lock:
            return self._tx

    # --- user transaction commands -------------------------------------------

    def handle_begin(self, test_id: str, conn_id: Optional[Hashable] = None) -> str:
        """SQL to run for a user BEGIN: the first opens a savepoint, later ones do nothing."""
        if not self.has_active_transaction():
            raise NoActiveTransactionError()
        if conn_id:
            with self._lock:
                held_by_other = self._held_by_other(conn_id)
            if held_by_other:
                raise OnlyOneTransactionError()
        try:
            self.begin_tx()
        except Exception as exc:
            raise RuntimeError(f"Failed to Begin a transaction: {exc}") from exc
        with self._lock:
            if self._savepoint_level >= 1:
                return DEFAULT_SELECT_ONE
            return f"SAVEPOINT {self.next_savepoint_name()}"

    def handle_commit(self, test_id: str) -> str:
        """SQL to run for a user COMMIT: release the current savepoint, if any."""
        with self._lock:
            if self._savepoint_level > 0:
                return f"RELEASE SAVEPOINT {self.savepoint_name()}"
            return DEFAULT_SELECT_ONE

    def handle_rollback(self, test_id: str) -> str:
        """SQL to run for a user ROLLBACK: undo and drop the current savepoint, if any."""
        with self._lock:
            if self._savepoint_level > 0:
                name = self.savepoint_name()
                return f"ROLLBACK TO SAVEPOINT {name}; RELEASE SAVEPOINT {name}"
            return DEFAULT_SELECT_ONE

    def build_status_query(self, created_at: datetime, test_id: str) -> str:
        """A SELECT that reports test id, whether a transaction is active, level and creation time."""
        with self._lock:
            active = self._tx is not None
            level = self._savepoint_level
        return (
            f"SELECT '{test_id}' AS test_id, {'true' if active else 'false'} AS active, "
            f"{level} AS level, '{_rfc3339(created_at)}' AS created_at"
        )

    # --- running SQL ---------------------------------------------------------

    def _require_tx(self) -> Transaction:
        if self._tx is None:
            raise NoActiveTransactionError()
        return self._tx

    def query(self, sql: str, *args: Any) -> Any:
        """Run a query in the session's transaction."""
        with self._lock:
            tx = self._require_tx()
        return tx.query(sql, *args)

    def execute(self, sql: str, *args: Any) -> Any:
        """Run a command in the session's transaction."""
        with self._lock:
            tx = self._require_tx()
        return tx.execute(sql, *args)

    def _open_guard(self, sql: str) -> Transaction:
        tx = self._require_tx()
        try:
            return tx.begin()
        except Exception as exc:
            raise RuntimeError(f"failed to start guard savepoint: {exc}, sql: '''{sql}'''") from exc

    @staticmethod
    def _fail_in_guard(guard: Transaction, exc: Exception, sql: str) -> RuntimeError:
        try:
            guard.rollback()
        except Exception as rb_exc:  # noqa: BLE001 - folded into the raised error
            error = RuntimeError(
                f"safe exec failed: {exc}; sql={sql!r}; guard rollback failed: {rb_exc}"
            )
        else:
            error = RuntimeError(f"safe exec failed: {exc}, sql: '''{sql}'''")
        error.__cause__ = exc
        return error

    def _commit_guard(self, guard: Transaction, sql: str) -> None:
        try:
            guard.commit()
        except Exception as exc:
            raise self._fail_in_guard(guard, exc, sql) from exc

    def safe_query(self, sql: str, *args: Any) -> GuardedRows:
        """Run a query inside a guard savepoint so a failure does not abort the transaction."""
        with self._lock:
            guard = self._open_guard(sql)
            try:
                rows = guard.query(sql, *args)
            except Exception as exc:
                message = f"query failed: {exc}"
                try:
                    guard.rollback()
                except Exception as rb_exc:  # noqa: BLE001 - folded into the raised error
                    message += f"; guard rollback failed: {rb_exc}"
                raise RuntimeError(f"{message}; for sql: {sql}") from exc
            return GuardedRows(rows, guard)

    def safe_exec(self, sql: str, *args: Any) -> Any:
        """Run a command inside a guard savepoint so a failure does not abort the transaction."""
        with self._lock:
            guard = self._open_guard(sql)
            try:
                result = guard.execute(sql, *args)
            except Exception as exc:
                raise self._fail_in_guard(guard, exc, sql) from exc
            self._commit_guard(guard, sql)
            return result

    def safe_exec_tcl(self, sql: str, *args: Any) -> Any:
        """Run transaction control: SAVEPOINT on the main transaction, the rest inside a guard."""
        with self._lock:
            if is_savepoint_command(sql):
                return self._require_tx().execute(sql, *args)
            guard = self._open_guard(sql)
            try:
                result = guard.execute(sql, *args)
            except Exception as exc:
                raise self._fail_in_guard(guard, exc, sql) from exc
            if command_invalidates_guard_on_success(sql):
                return result
            self._commit_guard(guard, sql)
            return result

    def rollback_user_savepoints_on_disconnect(self, count: int) -> None:
        """Undo up to ``count`` open user savepoints, leaving the base transaction alone."""
        for _ in range(max(count, 0)):
            with self._lock:
                if self._savepoint_level <= 0:
                    break
                name = self.savepoint_name()
                self._savepoint_level -= 1
            try:
                self.safe_exec_tcl(f"ROLLBACK TO SAVEPOINT {name}; RELEASE SAVEPOINT {name}")
            except Exception as exc:
                log_if_verbose("[PROXY] rollback_user_savepoints_on_disconnect: %s", exc)
                raise

    # --- the base transaction and connection ---------------------------------

    def has_active_transaction(self) -> bool:
        """True while the session has a transaction."""
        with self._lock:
            return self._tx is not None

    def begin_tx(self) -> None:
        """Begin a transaction on the connection; no-op without a connection or if one is open."""
        with self._lock:
            if self._conn is None or self._tx is not None:
                return
            try:
                self._tx = self._conn.begin()
            except Exception as exc:
                raise RuntimeError(f"begin transaction: {exc}") from exc

    def rollback_tx(self) -> None:
        """Roll back and forget the current transaction, if any."""
        with self._lock:
            tx, self._tx = self._tx, None
            if tx is not None:
                tx.rollback()

    def start_new_tx(self) -> None:
        """Throw away the current transaction, clear the connection's state and begin afresh."""
        with self._lock:
            if self._conn is None:
                return
            if self._tx is not None:
                try:
                    self._tx.rollback()
                except Exception as exc:  # noqa: BLE001 - reported, not raised
                    log_if_verbose("Failed to rollback on starting a new Tx: %s", exc)
                self._tx = None
            self._conn.execute("ROLLBACK")
            try:
                self._tx = self._conn.begin()
            except Exception as exc:
                raise RuntimeError(f"begin new transaction: {exc}") from exc

    def close(self) -> None:
        """Stop keepalive, roll back the transaction and close the connection."""
        with self._lock:
            stop, self._stop_keepalive = self._stop_keepalive, None
        if stop is not None:
            stop()
        with self._lock:
            self.last_query = ""
            tx, self._tx = self._tx, None
            if tx is not None:
                try:
                    tx.rollback()
                except Exception:  # noqa: BLE001 - the connection is going away anyway
                    pass
            conn, self._conn = self._conn, None
            if conn is not None:
                conn.close()

    def start_keepalive(self, interval: float) -> None:
        """Ping the connection from a background thread; ``interval`` is in seconds."""
        with self._lock:
            if self._conn is None or interval <= 0:
                return
            stopped = threading.Event()
            period = interval * _KEEPALIVE_STRETCH

            def run() -> None:
                while not stopped.wait(period):
                    with self._lock:
                        conn = self._conn
                        if conn is None:
                            continue
                        try:
                            conn.ping()
                        except Exception:  # noqa: BLE001 - a failed ping is not fatal
                            pass

            thread = threading.Thread(target=run, name="session-keepalive", daemon=True)
            thread.start()

            def stop() -> None:
                stopped.set()
                thread.join()

            self._stop_keepalive = stop

    def _connection_or_raise(self) -> Connection:
        with self._lock:
            conn = self._conn
        if conn is None:
            raise RuntimeError("connection is nil")
        return conn

    def acquire_advisory_lock(self, lock_key: int) -> None:
        """Take a session-level advisory lock on the connection, outside the transaction."""
        self._connection_or_raise().execute("SELECT pg_advisory_lock($1)", lock_key)

    def release_advisory_lock(self, lock_key: int) -> None:
        """Release a session-level advisory lock on the connection."""
        self._connection_or_raise().execute("SELECT pg_advisory_unlock($1)", lock_key)