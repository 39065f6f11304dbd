# pgsandbox

Building blocks for a PostgreSQL test sandbox. In this model, all the
connections of a test session share one base transaction, and user `BEGIN`,
`COMMIT` and `ROLLBACK` are rewritten into savepoint commands named
`pgtest_v_<level>`. Nothing a test does is ever really committed.

The package has no third-party dependencies.

## Installation

```
pip install pgsandbox
```

With the test dependencies:

```
pip install "pgsandbox[test]"
```

## Modules

- `pgsandbox.statements`: a lightweight SQL tokenizer and statement splitter.
  - `parse_statements(sql)` returns one `Statement` per command. It raises
    `SqlParseError` on input it cannot handle, such as unterminated strings or
    comments, unbalanced parentheses, or an unknown leading keyword.
  - `classify_statement` returns `SELECT`, `INSERT`, `UPDATE`, `DELETE`,
    `BEGIN`, `COMMIT`, `ROLLBACK`, `SAVEPOINT`, `RELEASE`, `DEALLOCATE`, `SET`,
    `CREATE`, `DROP` or `OTHER`.
  - `stmt_command_tag` returns the CommandComplete tag, for example
    `INSERT 0 1`.
  - `get_returning_columns` and `stmt_returns_result_set` describe RETURNING
    clauses.
  - `parse_deallocate`, `max_param_index` and `get_savepoint_name` read details
    of a statement.
  - The `is_transaction_*`, `is_savepoint`, `is_release_savepoint`,
    `is_rollback_to_savepoint` and `is_deallocate_noise` predicates test the
    statement kind.
  - `substitute_params(sql, args, conn_label)` inlines `$n` parameters as SQL
    literals for display. A non-empty `conn_label` adds the prefix
    `[label] `.
- `pgsandbox.sqlfallback`: string-based checks for queries that cannot be
  parsed.
  - `split_commands_fallback` splits on semicolons that are outside quotes.
  - `command_type_from_query_fallback` and `get_command_tag_fallback` read the
    command type and tag from the text.
  - `returns_result_set_fallback` reports whether the query returns rows.
  - `returning_columns_fallback` parses the RETURNING list.
  - `ReturningColumn` holds a column name and its type OID. A column named `id`
    is given bigint (20); any other column is given text (25).
- `pgsandbox.session_state`: `SessionState` is thread-safe bookkeeping for one
  session.
  - It tracks the savepoint level and names.
  - It records which connection has claimed the open user transaction.
    `claim_open_transaction` raises `OnlyOneTransactionError` when a different
    connection already holds the claim.
  - It stores prepared statements, portal bindings, and format codes for the
    Extended Query protocol.
  - `is_user_begin_query`, `is_user_release_query` and
    `is_query_that_affects_claim` recognise the `pgtest_v_*` savepoint commands.
- `pgsandbox.session_db`: `SessionDB` extends `SessionState` with a backend
  connection and its base transaction.
  - `handle_begin`, `handle_commit` and `handle_rollback` return the SQL that
    runs in place of the user command. `SELECT 1` is returned when there is
    nothing to do.
  - `safe_exec`, `safe_query` and `safe_exec_tcl` run SQL inside a guard
    savepoint, so that a failure does not abort the base transaction.
    `safe_query` returns `GuardedRows`, which finishes its guard when closed.
  - `begin_tx`, `rollback_tx`, `start_new_tx` and `close` manage the base
    transaction and the connection.
  - `start_keepalive` pings the connection from a background thread.
  - `acquire_advisory_lock` and `release_advisory_lock` run outside the
    transaction.
  - `rollback_user_savepoints_on_disconnect` undoes the open user savepoints.
  - The connection is any object with `begin()`, `execute()`, `ping()` and
    `close()`. The transaction is any object with `begin()`, `query()`,
    `execute()`, `commit()` and `rollback()`.
- `pgsandbox.startup`: works on startup parameters.
  - `extract_test_id` takes `pgtest_<id>` or the application name itself. An
    empty name gives `default`.
  - `extract_appname` returns the application name.
  - `build_startup_message_for_postgres` copies the parameters and sets
    `application_name` to `pgtest-proxy`.
- `pgsandbox.fields`: `FieldDescription`, `convert_field_descriptions`,
  `field_descriptions_from_names_and_oids`, `data_type_size_for_oid` and
  `raw_value_to_text`. The last one converts binary int4 and int8 values to
  text.
- `pgsandbox.identifier`: `quote_identifier` and `quote_qualified_name`.
- `pgsandbox.logger`: `Logger` writes `[LEVEL] message` lines for each
  `LogLevel` (`DEBUG`, `INFO`, `WARN`, `ERROR`). There is a process-wide
  default logger, plus the module functions `debug`, `info`, `warn`, `error`,
  `would_log`, `set_default_level` and `set_default_level_from_string`.
  `init_from_config(level, file)` installs a default logger that can write to
  a file.
- `pgsandbox.testenv`:
  - `project_root` finds the nearest directory that contains a
    `pyproject.toml`.
  - `config_path` returns the path from `PGTEST_CONFIG`, or
    `config/pgtest-sandbox.yaml` under the project root.
  - `is_test_verbose` and `log_if_verbose` check and act on `PGTEST_VERBOSE=1`,
    or on a `test.v` command-line flag.
- `pgsandbox.dbhelpers`: table-creation, insert and row-count assertion
  helpers for any DB-API 2.0 connection or cursor. Queries use `%s`
  placeholders. When a check fails, the helpers raise `DBAssertionError`. The
  `assert_*_savepoint_query` helpers check the text of savepoint commands.
- `pgsandbox.tray`:
  - `proxy_address_from_gui_url` and `connection_string` give the proxy address
    and a `host=... port=...` line.
  - `rollback_all_url` gives the URL of the rollback-all endpoint.
  - `copy_to_clipboard` uses `powershell`, `pbcopy`, or `xclip`/`xsel`.
  - `open_browser` opens a URL in the default browser. Both it and
    `copy_to_clipboard` ignore failures.

## Example

```python
from pgsandbox.statements import parse_statements, classify_statement, substitute_params
from pgsandbox.identifier import quote_qualified_name
from pgsandbox.session_db import SessionDB

stmts = parse_statements("SELECT 1; ROLLBACK TO SAVEPOINT sp1")
print([classify_statement(s) for s in stmts])        # ['SELECT', 'ROLLBACK']

print(substitute_params("SELECT $1, $2", [10, "foo"], ""))  # SELECT 10, 'foo'
print(quote_qualified_name("public", "my table"))            # "public"."my table"

session = SessionDB()
print(session.handle_commit("t1"))                   # SELECT 1  (no savepoint open)
session.increment_savepoint_level()
print(session.handle_rollback("t1"))
# ROLLBACK TO SAVEPOINT pgtest_v_1; RELEASE SAVEPOINT pgtest_v_1
```

## What this package does not do

These are building blocks only. Some parts you might expect are not included:

- No proxy server and no network listener.
- No PostgreSQL wire-protocol reader or writer.
- No database driver. `SessionDB` works with whatever connection object you
  pass to it.
- No web GUI.
- No tray icon or menu.
- No reader for the YAML config file. `config_path` only returns where the
  file is expected to be.
- No command-line program.

## Running the tests

```
pytest
```