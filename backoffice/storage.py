from __future__ import annotations

import atexit
import contextlib
import logging
import os
import signal
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence, TypeVar

from backoffice.errors import (
    BackofficeError,
    MigrationFailed,
    StorageUnavailable,
    UniqueConstraintViolation,
    WriteFailed,
)
from backoffice.schema import SCHEMA, SCHEMA_VERSION, Table

log = logging.getLogger("backoffice.storage")

T = TypeVar("T")

VERSION_KEY = "schema_version"

SETTINGS_DDL = """
CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
)
"""


def _unique_violation(exc: sqlite3.IntegrityError) -> UniqueConstraintViolation | None:
    text = str(exc)
    prefix = "UNIQUE constraint failed:"
    if not text.startswith(prefix):
        return None
    target = text[len(prefix):].split(",")[0].strip()
    return UniqueConstraintViolation(target.split(".")[-1])


def _exit_on_signal(signum: int, frame: Any) -> None:
    raise SystemExit(128 + signum)


class StorageEngine:
    """Owns the single connection to the database file.

    The schema is checked (and migrated if the stored version is older) the
    first time the connection is opened, so callers never observe a partial
    schema: ``open()`` either returns a connection on the current schema or
    raises.

    Only one process may own a database file at a time.
    """

    def __init__(self, db_path: Path, *, tables: Sequence[Table] = SCHEMA, version: int = SCHEMA_VERSION) -> None:
        self._db_path = Path(db_path)
        self._tables = tuple(tables)
        self._version = int(version)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._exit_hooks = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def expected_version(self) -> int:
        return self._version

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def table(self, name: str) -> Table:
        for table in self._tables:
            if table.name == name:
                return table
        raise KeyError(name)

    def open(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn
            conn = self._connect()
            try:
                self._ensure_schema(conn)
            except BaseException:
                conn.close()
                raise
            self._conn = conn
            return conn

    def close(self) -> None:
        with self._lock:
            conn = self._conn
            self._conn = None
            if conn is not None:
                conn.close()

    def close_on_exit(self) -> None:
        if self._exit_hooks:
            return
        self._exit_hooks = True
        atexit.register(self.close)
        if threading.current_thread() is threading.main_thread() and signal.getsignal(signal.SIGTERM) == signal.SIG_DFL:
            # SystemExit lets atexit run
            signal.signal(signal.SIGTERM, _exit_on_signal)

    def _connect(self) -> sqlite3.Connection:
        directory = self._db_path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable("open", exc) from exc
        if not os.access(directory, os.W_OK):
            raise StorageUnavailable("open", f"data directory is not writable: {directory}")

        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
        except sqlite3.Error as exc:
            if conn is not None:
                conn.close()
            raise StorageUnavailable("open", exc) from exc
        return conn

    def _existing_tables(self, conn: sqlite3.Connection) -> set[str]:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        return {str(row["name"]) for row in rows}

    def _stored_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM settings WHERE key=?", (VERSION_KEY,)).fetchone()
        if row is not None:
            try:
                return int(str(row["value"]).strip())
            except ValueError:
                raise MigrationFailed("open", f"invalid schema_version value: {row['value']!r}") from None
        existing = self._existing_tables(conn)
        if any(table.name in existing for table in self._tables):
            # tables written before the version row existed
            return 1
        return 0

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute(SETTINGS_DDL)
            stored = self._stored_version(conn)
        except sqlite3.Error as exc:
            raise StorageUnavailable("open", exc) from exc

        if stored > self._version:
            raise MigrationFailed("open", f"unsupported schema_version={stored} (expected <= {self._version})")
        if stored < self._version:
            self._migrate(conn, stored)
            return

        try:
            for table in self._tables:
                conn.execute(table.create_sql())
                for sql in table.index_sql():
                    conn.execute(sql)
        except sqlite3.Error as exc:
            raise StorageUnavailable("open", exc) from exc

    def _read_rows(self, conn: sqlite3.Connection, table_name: str) -> list[dict[str, Any]]:
        rows = conn.execute(f'SELECT rowid AS "__rowid__", * FROM "{table_name}"').fetchall()
        return [dict(row) for row in rows]

    def _convert_rows(
        self,
        table: Table,
        old_rows: list[dict[str, Any]],
        kept_ids: dict[str, set[int]],
    ) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        dropped = 0
        for old in old_rows:
            row = table.convert_row(old)
            keep = True
            for fk in table.foreign_keys:
                value = row.get(fk.column)
                column = table.column(fk.column)
                if value is None:
                    if column is not None and not column.nullable:
                        keep = False
                    continue
                if value in kept_ids.get(fk.table, set()):
                    continue
                if column is not None and column.nullable:
                    row[fk.column] = None
                else:
                    keep = False
            if keep:
                out.append(row)
            else:
                dropped += 1
        if dropped:
            log.warning("Dropped %d orphaned %s rows during migration", dropped, table.name)
        return self._repair_unique(table, out)

    def _repair_unique(self, table: Table, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Older files did not enforce UNIQUE: keep the first value, rename blanks and repeats."""
        for col in table.columns:
            if not col.unique:
                continue
            taken = {str(row[col.name]).strip() for row in rows if str(row[col.name] or "").strip()}
            seen: set[str] = set()
            renamed = 0
            for row in sorted(rows, key=lambda r: (r["id"] is None, r["id"] or 0)):
                value = str(row[col.name] or "").strip()
                if value and value not in seen:
                    seen.add(value)
                    continue
                base = f"{value}-dup{row['id']}" if value else f"legacy-{row['id']}"
                candidate = base
                n = 1
                while candidate in taken:
                    n += 1
                    candidate = f"{base}-{n}"
                taken.add(candidate)
                seen.add(candidate)
                log.warning("Renamed %s.%s %r to %r (id=%s) during migration", table.name, col.name, value, candidate, row["id"])
                row[col.name] = candidate
                renamed += 1
            if renamed:
                log.warning("Renamed %d blank or repeated %s.%s values", renamed, table.name, col.name)
        return rows

    def _migrate(self, conn: sqlite3.Connection, from_version: int) -> None:
        log.info("Migrating %s from schema_version=%s to %s", self._db_path, from_version, self._version)
        try:
            existing = self._existing_tables(conn)
            # has no effect inside a transaction, so switch it before BEGIN
            conn.execute("PRAGMA foreign_keys=OFF;")
            conn.execute("BEGIN IMMEDIATE")
            try:
                old_rows = {t.name: self._read_rows(conn, t.name) for t in self._tables if t.name in existing}
                for table in reversed(self._tables):
                    if table.name in existing:
                        conn.execute(f'DROP TABLE "{table.name}"')

                kept_ids: dict[str, set[int]] = {}
                for table in self._tables:
                    conn.execute(table.create_sql())
                    for sql in table.index_sql():
                        conn.execute(sql)
                    rows = self._convert_rows(table, old_rows.get(table.name, []), kept_ids)
                    ids: set[int] = set()
                    insert_sql = table.insert_sql()
                    for row in rows:
                        values = [row["id"], *(row[name] for name in table.column_names())]
                        cur = conn.execute(insert_sql, values)
                        ids.add(int(cur.lastrowid))
                    kept_ids[table.name] = ids
                    if table.name in existing:
                        log.info("Migrated %s: %d rows", table.name, len(rows))

                conn.execute(
                    "INSERT INTO settings(key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (VERSION_KEY, str(self._version)),
                )
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except Exception as exc:
            log.error("Migration of %s failed: %s", self._db_path, exc)
            raise MigrationFailed("migrate", exc) from exc
        finally:
            try:
                conn.execute("PRAGMA foreign_keys=ON;")
            except sqlite3.Error:
                log.exception("Failed to re-enable foreign keys on %s", self._db_path)

    @contextlib.contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def execute(self, unit: Callable[[sqlite3.Connection], T], *, operation: str) -> T:
        """Run ``unit`` atomically. Domain errors raised by the unit pass through after rollback."""
        with self._lock:
            conn = self.open()
            try:
                with self._transaction(conn):
                    return unit(conn)
            except BackofficeError:
                raise
            except sqlite3.IntegrityError as exc:
                unique = _unique_violation(exc)
                if unique is not None:
                    raise unique from exc
                raise WriteFailed(operation, exc) from exc
            except sqlite3.Error as exc:
                raise WriteFailed(operation, exc) from exc

    def query(self, sql: str, args: Sequence[Any] = (), *, operation: str = "query") -> list[sqlite3.Row]:
        with self._lock:
            conn = self.open()
            try:
                return conn.execute(sql, tuple(args)).fetchall()
            except sqlite3.Error as exc:
                raise StorageUnavailable(operation, exc) from exc

    def query_one(self, sql: str, args: Sequence[Any] = (), *, operation: str = "query") -> sqlite3.Row | None:
        rows = self.query(sql, args, operation=operation)
        if not rows:
            return None
        return rows[0]

    def schema_version(self) -> int:
        row = self.query_one("SELECT value FROM settings WHERE key=?", (VERSION_KEY,), operation="schema_version")
        if row is None:
            return 0
        return int(str(row["value"]))

    def ensure_columns(self, table_name: str) -> list[str]:
        """Add columns missing from an existing table in place. UNIQUE columns cannot be added this way."""
        table = self.table(table_name)

        def unit(conn: sqlite3.Connection) -> list[str]:
            present = {str(r["name"]) for r in conn.execute(f'PRAGMA table_info("{table.name}")').fetchall()}
            added: list[str] = []
            for col in table.columns:
                if col.name in present:
                    continue
                if col.unique:
                    log.warning("Cannot add UNIQUE column %s.%s in place", table.name, col.name)
                    continue
                conn.execute(f'ALTER TABLE "{table.name}" ADD COLUMN {col.ddl(for_alter=True)}')
                added.append(col.name)
            return added

        added = self.execute(unit, operation=f"ensure_columns:{table_name}")
        if added:
            log.info("Added columns to %s: %s", table_name, ", ".join(added))
        return added
