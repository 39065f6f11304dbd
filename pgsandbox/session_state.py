"""Per-session bookkeeping: savepoint level, transaction ownership and Extended Query state."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Hashable, Optional, Sequence

from pgsandbox.statements import (
    SqlParseError,
    get_savepoint_name,
    is_release_savepoint,
    is_savepoint,
    parse_statements,
)

SAVEPOINT_PREFIX = "pgtest_v_"


class OnlyOneTransactionError(RuntimeError):
    """Raised when a second connection tries to BEGIN while another holds the session's transaction."""

    def __init__(self) -> None:
        super().__init__(
            "only one transaction could start a transaction at a time on our pgtest"
        )


@dataclass(frozen=True)
class PortalQuery:
    """The query, bound parameters and parameter format codes of a portal."""

    query: str
    params: Optional[tuple[Optional[bytes], ...]]
    format_codes: Optional[tuple[int, ...]]


def _first_statement(query: str):
    try:
        statements = parse_statements(query)
    except SqlParseError:
        return None
    return statements[0] if statements else None


def is_user_begin_query(query: str) -> bool:
    """True when the query is a user BEGIN, i.e. ``SAVEPOINT pgtest_v_*``."""
    stmt = _first_statement(query)
    return (
        stmt is not None
        and is_savepoint(stmt)
        and get_savepoint_name(stmt).startswith(SAVEPOINT_PREFIX)
    )


def is_user_release_query(query: str) -> bool:
    """True when the query is a user COMMIT, i.e. ``RELEASE SAVEPOINT pgtest_v_*``."""
    stmt = _first_statement(query)
    return (
        stmt is not None
        and is_release_savepoint(stmt)
        and get_savepoint_name(stmt).startswith(SAVEPOINT_PREFIX)
    )


def is_query_that_affects_claim(query: str) -> bool:
    """True for a query that claims (BEGIN) or releases (COMMIT) the open transaction."""
    return is_user_begin_query(query) or is_user_release_query(query)


def _copy_params(
    parameters: Optional[Sequence[Optional[bytes]]],
) -> Optional[tuple[Optional[bytes], ...]]:
    if parameters is None:
        return None
    return tuple(None if p is None else bytes(p) for p in parameters)


class SessionState:
    """Thread-safe state shared by all connections of one test session."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._savepoint_level = 0
        self._open_tx_owner: Optional[Hashable] = None
        self._prepared_statements: dict[str, str] = {}
        self._statement_descs: dict[str, Any] = {}
        self._portal_to_statement: dict[str, str] = {}
        self._portal_params: dict[str, Optional[tuple[Optional[bytes], ...]]] = {}
        self._portal_format_codes: dict[str, tuple[int, ...]] = {}
        self._portal_result_formats: dict[str, tuple[int, ...]] = {}

    # --- savepoint level -------------------------------------------------

    @property
    def savepoint_level(self) -> int:
        with self._lock:
            return self._savepoint_level

    def savepoint_name(self) -> str:
        """Name of the savepoint at the current level."""
        with self._lock:
            return f"{SAVEPOINT_PREFIX}{self._savepoint_level}"

    def next_savepoint_name(self) -> str:
        """Name for the next SAVEPOINT, without changing the level."""
        with self._lock:
            return f"{SAVEPOINT_PREFIX}{self._savepoint_level + 1}"

    def increment_savepoint_level(self) -> None:
        """Record that a SAVEPOINT was executed."""
        with self._lock:
            self._savepoint_level += 1

    def decrement_savepoint_level(self) -> None:
        """Record a RELEASE or ROLLBACK TO; no-op at level 0."""
        with self._lock:
            if self._savepoint_level > 0:
                self._savepoint_level -= 1

    # --- transaction ownership -------------------------------------------

    def _held_by_other(self, conn_id: Hashable) -> bool:
        return self._open_tx_owner is not None and self._open_tx_owner != conn_id

    def claim_open_transaction(self, conn_id: Hashable) -> None:
        """Mark ``conn_id`` as owning the user transaction; raises if another owns it."""
        with self._lock:
            if self._held_by_other(conn_id):
                raise OnlyOneTransactionError()
            self._open_tx_owner = conn_id

    def release_open_transaction(self, conn_id: Hashable) -> None:
        """Drop the claim if ``conn_id`` holds it."""
        with self._lock:
            if self._open_tx_owner == conn_id:
                self._open_tx_owner = None

    def has_open_user_transaction(self) -> bool:
        """True while some connection has an uncommitted user BEGIN."""
        with self._lock:
            return self._open_tx_owner is not None

    # --- Extended Query state --------------------------------------------

    def set_prepared_statement(self, statement_name: str, query: str) -> None:
        """Store the (intercepted) query of a prepared statement."""
        with self._lock:
            self._prepared_statements[statement_name] = query

    def set_statement_description(self, name: str, description: Any) -> None:
        """Cache the backend's description of a prepared statement."""
        with self._lock:
            self._statement_descs[name] = description

    def get_statement_description(self, name: str) -> Any:
        """Cached description of a statement, or None."""
        with self._lock:
            return self._statement_descs.get(name)

    def statement_description_for_portal(self, portal_name: str) -> Any:
        """Cached description of the statement bound to a portal, or None."""
        with self._lock:
            statement = self._portal_to_statement.get(portal_name, "")
            return self._statement_descs.get(statement)

    def portal_result_formats(self, portal_name: str) -> Optional[tuple[int, ...]]:
        """Result format codes given at Bind, or None."""
        with self._lock:
            return self._portal_result_formats.get(portal_name)

    def portal_statement_name(self, portal_name: str) -> str:
        """Statement bound to the portal ('' if none)."""
        with self._lock:
            return self._portal_to_statement.get(portal_name, "")

    def bind_portal(
        self,
        portal_name: str,
        statement_name: str,
        parameters: Optional[Sequence[Optional[bytes]]] = None,
        format_codes: Optional[Sequence[int]] = None,
        result_format_codes: Optional[Sequence[int]] = None,
    ) -> None:
        """Bind a portal to a statement, keeping copies of parameters and format codes."""
        with self._lock:
            self._portal_to_statement[portal_name] = statement_name
            self._portal_params[portal_name] = _copy_params(parameters)
            if format_codes is not None:
                self._portal_format_codes[portal_name] = tuple(format_codes)
            else:
                self._portal_format_codes.pop(portal_name, None)
            if result_format_codes is not None:
                self._portal_result_formats[portal_name] = tuple(result_format_codes)
            else:
                self._portal_result_formats.pop(portal_name, None)

    def query_for_portal(self, portal_name: str) -> Optional[PortalQuery]:
        """Query, parameters and format codes of a portal, or None if it has no query."""
        with self._lock:
            statement = self._portal_to_statement.get(portal_name, "")
            query = self._prepared_statements.get(statement, "")
            if not query:
                return None
            return PortalQuery(
                query,
                self._portal_params.get(portal_name),
                self._portal_format_codes.get(portal_name),
            )

    def query_for_describe(self, object_type: str, name: str) -> Optional[str]:
        """Query text for a statement ('S') or portal ('P'), or None."""
        with self._lock:
            if object_type == "S":
                query = self._prepared_statements.get(name, "")
            elif object_type == "P":
                statement = self._portal_to_statement.get(name, "")
                query = self._prepared_statements.get(statement, "")
            else:
                return None
            return query or None

    def close_statement_or_portal(self, object_type: str, name: str) -> None:
        """Forget a statement ('S') or portal ('P'); other types are ignored."""
        with self._lock:
            if object_type == "S":
                self._prepared_statements.pop(name, None)
                self._statement_descs.pop(name, None)
            elif object_type == "P":
                self._portal_to_statement.pop(name, None)
                self._portal_params.pop(name, None)
                self._portal_format_codes.pop(name, None)
                self._portal_result_formats.pop(name, None)