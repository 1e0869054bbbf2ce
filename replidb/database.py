"""A thin layer over SQLite that maps results onto the message types."""

from __future__ import annotations

import os
import re
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, TextIO

from replidb.dbvalues import normalize_row_values, parameters_to_values, random_string
from replidb.messages import ExecuteResult, QueryRows, Request, Statement, Values

DB_VERSION = sqlite3.sqlite_version
BACKUP_SLEEP = 0.25
READ_ONLY_VIOLATION = "attempt to change database via query operation"

NUM_EXECUTIONS = "executions"
NUM_EXECUTION_ERRORS = "execution_errors"
NUM_QUERIES = "queries"
NUM_QUERY_ERRORS = "query_errors"
NUM_ETX = "execute_transactions"
NUM_QTX = "query_transactions"

_stats_lock = threading.Lock()
_stats = {
    name: 0
    for name in (
        NUM_EXECUTIONS,
        NUM_EXECUTION_ERRORS,
        NUM_QUERIES,
        NUM_QUERY_ERRORS,
        NUM_ETX,
        NUM_QTX,
    )
}

_WRITE_ACTION_NAMES = (
    "SQLITE_INSERT",
    "SQLITE_UPDATE",
    "SQLITE_DELETE",
    "SQLITE_CREATE_INDEX",
    "SQLITE_CREATE_TABLE",
    "SQLITE_CREATE_TEMP_INDEX",
    "SQLITE_CREATE_TEMP_TABLE",
    "SQLITE_CREATE_TEMP_TRIGGER",
    "SQLITE_CREATE_TEMP_VIEW",
    "SQLITE_CREATE_TRIGGER",
    "SQLITE_CREATE_VIEW",
    "SQLITE_CREATE_VTABLE",
    "SQLITE_DROP_INDEX",
    "SQLITE_DROP_TABLE",
    "SQLITE_DROP_TEMP_INDEX",
    "SQLITE_DROP_TEMP_TABLE",
    "SQLITE_DROP_TEMP_TRIGGER",
    "SQLITE_DROP_TEMP_VIEW",
    "SQLITE_DROP_TRIGGER",
    "SQLITE_DROP_VIEW",
    "SQLITE_DROP_VTABLE",
    "SQLITE_ALTER_TABLE",
    "SQLITE_REINDEX",
    "SQLITE_ANALYZE",
    "SQLITE_ATTACH",
    "SQLITE_DETACH",
)
_WRITE_ACTIONS = frozenset(
    getattr(sqlite3, name) for name in _WRITE_ACTION_NAMES if hasattr(sqlite3, name)
)

_PARAM_SCAN = re.compile(
    r"""('(?:[^']|'')*')
      |("(?:[^"]|"")*"|`[^`]*`|\[[^\]]*\])
      |(--[^\n]*|/\*.*?\*/)
      |(?P<param>\?\d*|[:@$][A-Za-z_][A-Za-z0-9_]*)""",
    re.VERBOSE | re.DOTALL,
)


class DatabaseError(Exception):
    """Raised when the database cannot complete an operation."""


def _add(name: str, amount: int) -> None:
    with _stats_lock:
        _stats[name] += amount


def db_stats() -> dict[str, int]:
    """Return a snapshot of the database-layer counters."""
    with _stats_lock:
        return dict(_stats)


@dataclass
class PoolStats:
    max_open_connections: int = 0
    open_connections: int = 0
    in_use: int = 0
    idle: int = 0
    wait_count: int = 0
    wait_duration: float = 0.0
    max_idle_closed: int = 0
    max_idle_time_closed: int = 0
    max_lifetime_closed: int = 0


class _Connection:
    """A SQLite connection guarded by a lock, with usage counters."""

    def __init__(self, uri: str, fk_enabled: bool) -> None:
        try:
            self.raw = sqlite3.connect(
                uri, uri=True, isolation_level=None, check_same_thread=False
            )
            self.raw.execute(f"PRAGMA foreign_keys={'ON' if fk_enabled else 'OFF'}")
        except sqlite3.Error as exc:
            raise DatabaseError(str(exc)) from exc
        self.lock = threading.Lock()
        self.closed = False
        self.wait_count = 0
        self.wait_duration = 0.0

    def __enter__(self) -> sqlite3.Connection:
        if self.closed:
            raise DatabaseError("database is closed")
        if not self.lock.acquire(blocking=False):
            start = time.perf_counter()
            self.lock.acquire()
            self.wait_count += 1
            self.wait_duration += time.perf_counter() - start
        return self.raw

    def __exit__(self, *exc_info) -> None:
        self.lock.release()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.raw.close()

    def pool_stats(self) -> PoolStats:
        is_open = 0 if self.closed else 1
        busy = 1 if self.lock.locked() and is_open else 0
        return PoolStats(
            max_open_connections=1,
            open_connections=is_open,
            in_use=busy,
            idle=is_open - busy,
            wait_count=self.wait_count,
            wait_duration=self.wait_duration,
        )


def _request(sql: str) -> Request:
    return Request(statements=[Statement(sql=sql)])


def _split_statements(sql: str) -> list[str]:
    pieces = []
    start = 0
    for match in re.finditer(";", sql):
        candidate = sql[start:match.end()]
        if sqlite3.complete_statement(candidate):
            pieces.append(candidate)
            start = match.end()
    pieces.append(sql[start:])
    return [p for p in pieces if p.strip().strip(";").strip()]


def _column_types(conn: sqlite3.Connection, sql: str) -> list[str] | None:
    """Declared types of a query's result columns, or None if unknown."""
    body = _PARAM_SCAN.sub(
        lambda m: "NULL" if m.group("param") else m.group(0), sql
    ).strip().rstrip(";")
    name = f"_types_{random_string()}"
    try:
        conn.execute(f'CREATE TEMP VIEW "{name}" AS {body}')
    except sqlite3.Error:
        return None
    try:
        info = conn.execute(f'PRAGMA temp.table_info("{name}")').fetchall()
    except sqlite3.Error:
        return None
    finally:
        try:
            conn.execute(f'DROP VIEW temp."{name}"')
        except sqlite3.Error:
            pass
    return [(row[2] or "").lower() for row in info]


def _query_with_conn(
    conn: sqlite3.Connection, request: Request, timings: bool
) -> list[QueryRows]:
    in_tx = False
    if request.transaction:
        _add(NUM_QTX, 1)
        try:
            conn.execute("BEGIN")
        except sqlite3.Error as exc:
            raise DatabaseError(str(exc)) from exc
        in_tx = True

    results: list[QueryRows] = []
    try:
        for stmt in request.statements:
            sql = stmt.sql
            if not sql:
                continue
            rows = QueryRows()
            start = time.perf_counter()

            def fail(message: str) -> None:
                _add(NUM_QUERY_ERRORS, 1)
                rows.error = message
                results.append(rows)

            try:
                params = parameters_to_values(stmt.parameters)
            except (TypeError, ValueError) as exc:
                fail(str(exc))
                continue

            types = _column_types(conn, sql)
            written: list[int] = []

            def authorizer(action, *_args):
                if action in _WRITE_ACTIONS:
                    written.append(action)
                    return sqlite3.SQLITE_DENY
                return sqlite3.SQLITE_OK

            conn.set_authorizer(authorizer)
            try:
                cursor = conn.execute(sql, params)
                fetched = cursor.fetchall()
                description = cursor.description
            except sqlite3.Error as exc:
                fail(READ_ONLY_VIOLATION if written else str(exc))
                continue
            finally:
                conn.set_authorizer(None)

            columns = [d[0] for d in description] if description else []
            if types is None or len(types) != len(columns):
                types = [""] * len(columns)
            rows.values = [
                Values(parameters=normalize_row_values(row, types)) for row in fetched
            ]
            if timings:
                rows.time = time.perf_counter() - start
            rows.columns = columns
            rows.types = list(types)
            results.append(rows)
    except BaseException:
        if in_tx:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                pass
        raise

    if in_tx:
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise DatabaseError(str(exc)) from exc
    return results


def _copy(dst: "Database", src: "Database") -> None:
    with dst._rw as dst_conn, src._ro as src_conn:
        try:
            src_conn.backup(dst_conn, pages=-1, sleep=BACKUP_SLEEP)
        except sqlite3.Error as exc:
            raise DatabaseError(str(exc)) from exc


class Database:
    """A SQLite database with separate read-write and read-only connections."""

    def __init__(
        self,
        path: str,
        memory: bool,
        fk_enabled: bool,
        rw_dsn: str,
        ro_dsn: str,
        rw_uri: str,
        ro_uri: str,
    ) -> None:
        self.path = path
        self.in_memory = memory
        self.fk_enabled = fk_enabled
        self.rw_dsn = rw_dsn
        self.ro_dsn = ro_dsn
        self._rw = _Connection(rw_uri, fk_enabled)
        try:
            self._ro = _Connection(ro_uri, fk_enabled)
        except DatabaseError:
            self._rw.close()
            raise

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close both connections."""
        self._rw.close()
        self._ro.close()

    def stats(self) -> dict[str, Any]:
        """Return status and diagnostics for the database."""
        result: dict[str, Any] = {
            "version": DB_VERSION,
            "compile_options": self.compile_options(),
            "mem_stats": self._mem_stats(),
            "db_size": self.size(),
            "rw_dsn": self.rw_dsn,
            "ro_dsn": self.ro_dsn,
            "conn_pool_stats": {
                "ro": self.connection_pool_stats("ro"),
                "rw": self.connection_pool_stats("rw"),
            },
            "path": self.path,
        }
        if not self.in_memory:
            result["size"] = self.file_size()
        return result

    def _single_int(self, sql: str) -> int:
        rows = self.query_string_stmt(sql)
        if rows[0].error:
            raise DatabaseError(rows[0].error)
        return rows[0].values[0].parameters[0].value

    def size(self) -> int:
        """Return page_count * page_size in bytes."""
        return self._single_int(
            "SELECT page_count * page_size as size "
            "FROM pragma_page_count(), pragma_page_size()"
        )

    def file_size(self) -> int:
        """Return the size of the file on disk, or 0 when in memory."""
        if self.in_memory:
            return 0
        return os.stat(self.path).st_size

    def compile_options(self) -> list[str]:
        """Return the SQLite compilation options."""
        res = self.query_string_stmt("PRAGMA compile_options")
        if len(res) != 1:
            raise DatabaseError(f"compile options result wrong size ({len(res)})")
        options = []
        for values in res[0].values:
            if len(values.parameters) != 1:
                raise DatabaseError(
                    f"compile options values wrong size ({len(values.parameters)})"
                )
            options.append(values.parameters[0].value)
        return options

    def connection_pool_stats(self, which: str) -> PoolStats:
        """Return connection statistics for "ro" or "rw"."""
        if which == "ro":
            return self._ro.pool_stats()
        if which == "rw":
            return self._rw.pool_stats()
        raise ValueError(f"unknown connection {which!r}")

    def _mem_stats(self) -> dict[str, int]:
        return {
            name: self._single_int(f"PRAGMA {name}")
            for name in (
                "max_page_count",
                "page_count",
                "page_size",
                "hard_heap_limit",
                "soft_heap_limit",
                "cache_size",
                "freelist_count",
            )
        }

    def execute_string_stmt(self, query: str) -> list[ExecuteResult]:
        return self.execute(_request(query), False)

    def execute(self, request: Request, timings: bool) -> list[ExecuteResult]:
        """Execute statements that modify the database."""
        _add(NUM_EXECUTIONS, len(request.statements))
        with self._rw as conn:
            in_tx = False
            if request.transaction:
                _add(NUM_ETX, 1)
                try:
                    conn.execute("BEGIN")
                except sqlite3.Error as exc:
                    raise DatabaseError(str(exc)) from exc
                in_tx = True

            results: list[ExecuteResult] = []
            try:
                for stmt in request.statements:
                    if not stmt.sql:
                        continue
                    result = ExecuteResult()
                    start = time.perf_counter()
                    try:
                        params = parameters_to_values(stmt.parameters)
                        before = conn.total_changes
                        pieces = (
                            _split_statements(stmt.sql) if not params else [stmt.sql]
                        )
                        cursor = None
                        for piece in pieces:
                            cursor = conn.execute(piece, params)
                        if cursor is not None:
                            result.last_insert_id = cursor.lastrowid or 0
                        result.rows_affected = conn.total_changes - before
                    except (sqlite3.Error, TypeError, ValueError) as exc:
                        _add(NUM_EXECUTION_ERRORS, 1)
                        result.error = str(exc)
                        results.append(result)
                        if in_tx:
                            in_tx = False
                            try:
                                conn.execute("ROLLBACK")
                            except sqlite3.Error:
                                pass
                            break
                        continue
                    if timings:
                        result.time = time.perf_counter() - start
                    results.append(result)
            except BaseException:
                if in_tx:
                    try:
                        conn.execute("ROLLBACK")
                    except sqlite3.Error:
                        pass
                raise

            if in_tx:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    raise DatabaseError(str(exc)) from exc
            return results

    def query_string_stmt(self, query: str) -> list[QueryRows]:
        return self.query(_request(query), False)

    def query(self, request: Request, timings: bool) -> list[QueryRows]:
        """Run statements that return rows without changing the database."""
        _add(NUM_QUERIES, len(request.statements))
        with self._ro as conn:
            return _query_with_conn(conn, request, timings)

    def backup(self, path: str) -> None:
        """Write a consistent snapshot of the database to ``path``."""
        destination = open_database(path, False)
        try:
            _copy(destination, self)
        except DatabaseError as exc:
            raise DatabaseError(f"backup database: {exc}") from exc
        finally:
            destination.close()

    def copy(self, destination: "Database") -> None:
        """Copy the contents of this database into ``destination``."""
        try:
            _copy(destination, self)
        except DatabaseError as exc:
            raise DatabaseError(f"copy database: {exc}") from exc

    def serialize(self) -> bytes:
        """Return the database as the bytes of a SQLite file."""
        if not self.in_memory:
            with open(self.path, "rb") as handle:
                return handle.read()
        with self._ro as conn:
            try:
                return conn.serialize()
            except sqlite3.Error as exc:
                raise DatabaseError(f"failed to serialize database: {exc}") from exc

    def dump(self, writer: TextIO) -> None:
        """Write the database to ``writer`` as SQL text."""
        with self._ro as conn:
            def run(sql: str) -> QueryRows:
                return _query_with_conn(conn, _request(sql), False)[0]

            writer.write("PRAGMA foreign_keys=OFF;\nBEGIN TRANSACTION;\n")
            tables = run(
                'SELECT "name", "type", "sql" FROM "sqlite_master" '
                'WHERE "sql" NOT NULL AND "type" == \'table\' ORDER BY "name"'
            )
            for row in tables.values:
                table = row.parameters[0].value
                if table == "sqlite_sequence":
                    stmt = 'DELETE FROM "sqlite_sequence";'
                elif table == "sqlite_stat1":
                    stmt = 'ANALYZE "sqlite_master";'
                elif table.startswith("sqlite_"):
                    continue
                else:
                    stmt = row.parameters[2].value
                writer.write(f"{stmt};\n")

                ident = table.replace('"', '""')
                info = run(f'PRAGMA table_info("{ident}")')
                columns = ",".join(
                    f"'||quote(\"{v.parameters[1].value}\")||'" for v in info.values
                )
                inserts = run(
                    f"SELECT 'INSERT INTO \"{ident}\" VALUES({columns})' FROM \"{ident}\";"
                )
                for value in inserts.values:
                    writer.write(f"{value.parameters[0].value};\n")

            others = run(
                'SELECT "name", "type", "sql" FROM "sqlite_master" '
                "WHERE \"sql\" NOT NULL AND \"type\" IN ('index', 'trigger', 'view')"
            )
            for row in others.values:
                writer.write(f"{row.parameters[2].value};\n")
            writer.write("COMMIT;\n")


def open_database(path: str, fk_enabled: bool) -> Database:
    """Open a file-based database, creating the file if needed."""
    fk = str(bool(fk_enabled)).lower()
    rw_dsn = f"file:{path}?_fk={fk}"
    ro_dsn = f"file:{path}?mode=ro&_fk={fk}"
    return Database(
        path, False, fk_enabled, rw_dsn, ro_dsn, f"file:{path}", f"file:{path}?mode=ro"
    )


def open_in_memory(fk_enabled: bool) -> Database:
    """Open a new in-memory database shared by both connections."""
    fk = str(bool(fk_enabled)).lower()
    base = f"file:/{random_string()}"
    rw_dsn = f"{base}?mode=rw&vfs=memdb&_txlock=immediate&_fk={fk}"
    ro_dsn = f"{base}?mode=ro&vfs=memdb&_txlock=deferred&_fk={fk}"
    return Database(
        ":memory:",
        True,
        fk_enabled,
        rw_dsn,
        ro_dsn,
        f"{base}?vfs=memdb",
        f"{base}?mode=ro&vfs=memdb",
    )


def load_into_memory(path: str, fk_enabled: bool) -> Database:
    """Return an in-memory copy of the database file at ``path``."""
    destination = open_in_memory(fk_enabled)
    try:
        source = open_database(path, False)
        try:
            _copy(destination, source)
        finally:
            source.close()
    except BaseException:
        destination.close()
        raise
    return destination


def deserialize_into_memory(data: bytes, fk_enabled: bool) -> Database:
    """Return an in-memory database holding the SQLite file image ``data``."""
    tmp = sqlite3.connect(":memory:")
    try:
        try:
            tmp.deserialize(bytes(data))
        except sqlite3.Error as exc:
            raise DatabaseError(f"DeserializeIntoMemory: {exc}") from exc
        result = open_in_memory(fk_enabled)
        try:
            with result._rw as dst:
                tmp.backup(dst, pages=-1, sleep=BACKUP_SLEEP)
        except sqlite3.Error as exc:
            result.close()
            raise DatabaseError(f"DeserializeIntoMemory: {exc}") from exc
        return result
    finally:
        tmp.close()