from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Callable

import bcrypt
import pytest

from backoffice.errors import MigrationFailed, NotFound, StorageUnavailable, UniqueConstraintViolation, WriteFailed
from backoffice.estimates import EstimateRepository
from backoffice.schema import DEFAULT_EXCLUSIONS, SCHEMA_VERSION
from backoffice.storage import StorageEngine
from backoffice.timesheets import TimesheetRepository
from backoffice.users import UserRepository


def _insert_estimate(conn: sqlite3.Connection, number: str) -> None:
    conn.execute(
        "INSERT INTO estimates(number, date, customer_name, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (number, "2024-01-01", "Acme", 1, 1),
    )


def _estimate_count(engine: StorageEngine) -> int:
    row = engine.query_one("SELECT COUNT(*) AS c FROM estimates")
    assert row is not None
    return int(row["c"])


def test_open_is_idempotent_and_sets_pragmas(engine: StorageEngine) -> None:
    conn = engine.open()
    assert engine.open() is conn
    assert str(conn.execute("PRAGMA journal_mode").fetchone()[0]).lower() == "wal"
    assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    assert engine.schema_version() == SCHEMA_VERSION


def test_close_is_idempotent_and_reopens(engine: StorageEngine) -> None:
    engine.execute(lambda conn: _insert_estimate(conn, "2024-001"), operation="seed")
    engine.close()
    engine.close()
    assert not engine.is_open
    assert _estimate_count(engine) == 1
    assert engine.is_open


def test_unwritable_data_dir_is_unavailable(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    engine = StorageEngine(blocker / "estimates.db")
    with pytest.raises(StorageUnavailable) as info:
        engine.open()
    assert info.value.operation == "open"
    assert not engine.is_open


def test_write_failure_rolls_back_and_keeps_cause(engine: StorageEngine) -> None:
    def unit(conn: sqlite3.Connection) -> None:
        _insert_estimate(conn, "2024-001")
        conn.execute("INSERT INTO no_such_table VALUES (1)")

    with pytest.raises(WriteFailed) as info:
        engine.execute(unit, operation="seed")
    assert info.value.operation == "seed"
    assert isinstance(info.value.cause, sqlite3.OperationalError)
    assert isinstance(info.value.__cause__, sqlite3.OperationalError)
    assert _estimate_count(engine) == 0


def test_domain_error_passes_through_after_rollback(engine: StorageEngine) -> None:
    def unit(conn: sqlite3.Connection) -> None:
        _insert_estimate(conn, "2024-001")
        raise NotFound("estimate", 42)

    with pytest.raises(NotFound):
        engine.execute(unit, operation="seed")
    assert _estimate_count(engine) == 0


def test_nested_execute_joins_outer_transaction(engine: StorageEngine) -> None:
    def outer(conn: sqlite3.Connection) -> None:
        engine.execute(lambda c: _insert_estimate(c, "2024-001"), operation="inner")
        raise NotFound("estimate", 1)

    with pytest.raises(NotFound):
        engine.execute(outer, operation="outer")
    assert _estimate_count(engine) == 0


def test_unique_integrity_error_is_mapped(engine: StorageEngine) -> None:
    engine.execute(lambda conn: _insert_estimate(conn, "2024-001"), operation="seed")
    with pytest.raises(UniqueConstraintViolation) as info:
        engine.execute(lambda conn: _insert_estimate(conn, "2024-001"), operation="seed")
    assert info.value.field == "number"
    assert _estimate_count(engine) == 1


def test_bad_read_is_unavailable(engine: StorageEngine) -> None:
    with pytest.raises(StorageUnavailable) as info:
        engine.query("SELECT * FROM no_such_table", operation="list_missing")
    assert info.value.operation == "list_missing"


def test_delete_estimate_cascades_line_items_at_engine_level(engine: StorageEngine) -> None:
    def seed(conn: sqlite3.Connection) -> None:
        _insert_estimate(conn, "2024-001")
        conn.execute("INSERT INTO line_items(estimate_id, description) VALUES (1, 'Labor')")

    engine.execute(seed, operation="seed")
    engine.execute(lambda conn: conn.execute("DELETE FROM estimates WHERE id=1"), operation="delete")
    assert engine.query("SELECT * FROM line_items") == []


# --- legacy files ---------------------------------------------------------


def _build_v1(path: Path) -> int:
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE estimates (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          number TEXT,
          date TEXT,
          po TEXT,
          salesRep TEXT,
          customerName TEXT,
          billToAddress TEXT,
          workShipAddress TEXT,
          scopeOfWork TEXT,
          salesTax REAL,
          total REAL,
          createdAt DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        CREATE TABLE line_items (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          estimateId INTEGER,
          quantity REAL,
          description TEXT,
          cost REAL,
          markup REAL,
          price REAL,
          total REAL
        );
        INSERT INTO estimates(number, date, salesRep, customerName, salesTax, total)
          VALUES ('2023-001', '2023-05-01', 'Sam', 'Acme', 0, 100);
        INSERT INTO estimates(number, date, salesRep, customerName, salesTax, total)
          VALUES ('2023-002', '2023-05-02', 'Sam', 'Globex', 'n/a', NULL);
        INSERT INTO estimates(number, date, customerName) VALUES ('2023-003', '2023-05-03', 'Initech');
        INSERT INTO line_items(estimateId, quantity, description, cost, markup, price, total)
          VALUES (1, 2, 'Labor', 30, 10, 50, 100);
        INSERT INTO line_items(estimateId, quantity, description, cost, markup, price, total)
          VALUES (99, 1, 'Orphan', 1, 1, 1, 1);
        """
    )
    conn.commit()
    conn.close()
    return 3


def _build_v2(path: Path) -> int:
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT NOT NULL);
        INSERT INTO settings(key, value) VALUES ('schema_version', '2');
        CREATE TABLE estimates (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          number TEXT UNIQUE NOT NULL,
          date TEXT,
          po TEXT,
          sales_rep TEXT,
          customer_name TEXT,
          customer_email TEXT,
          customer_phone TEXT,
          bill_to_address TEXT,
          work_ship_address TEXT,
          scope_of_work TEXT,
          sales_tax REAL,
          total_amount REAL
        );
        CREATE TABLE line_items (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          estimate_id INTEGER REFERENCES estimates(id) ON DELETE CASCADE,
          quantity REAL,
          description TEXT,
          price REAL,
          total REAL
        );
        INSERT INTO estimates(number, date, customer_name, customer_email, sales_tax, total_amount)
          VALUES ('2024-001', '2024-01-10', 'Acme', 'ops@acme.test', 5, 0);
        INSERT INTO estimates(number, date, customer_name, customer_phone)
          VALUES ('2024-002', '2024-01-11', 'Globex', '555-0100');
        INSERT INTO line_items(estimate_id, quantity, description, price, total) VALUES (1, 2, 'Labor', 50, 100);
        INSERT INTO line_items(estimate_id, quantity, description, price, total) VALUES (1, 1, 'Parts', 20, 20);
        """
    )
    conn.commit()
    conn.close()
    return 2


def _build_v3(path: Path) -> int:
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT NOT NULL);
        INSERT INTO settings(key, value) VALUES ('schema_version', '3');
        CREATE TABLE users (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          email TEXT UNIQUE NOT NULL,
          password TEXT NOT NULL,
          role TEXT DEFAULT 'user'
        );
        CREATE TABLE estimates (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          number TEXT UNIQUE NOT NULL,
          date TEXT,
          customer_name TEXT,
          sales_tax REAL,
          total_amount REAL
        );
        CREATE TABLE line_items (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          estimate_id INTEGER,
          quantity REAL,
          description TEXT,
          price REAL,
          total REAL
        );
        CREATE TABLE timesheet_entries (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          user_id INTEGER,
          estimate_id INTEGER,
          date TEXT,
          customer_name TEXT,
          time_in TEXT,
          time_out TEXT,
          total_hours REAL
        );
        INSERT INTO users(email, password, role) VALUES ('tech@example.com', '$2b$10$abcdefghijklmnopqrstuv', 'user');
        INSERT INTO estimates(number, date, customer_name) VALUES ('2024-010', '2024-02-01', 'Acme');
        INSERT INTO timesheet_entries(user_id, estimate_id, date, customer_name, time_in, time_out, total_hours)
          VALUES (1, 1, '2024-02-02', 'Acme', '08:00', '12:00', 4);
        INSERT INTO timesheet_entries(user_id, estimate_id, date, customer_name, time_in, time_out, total_hours)
          VALUES (1, 77, '2024-02-03', 'Acme', '08:00', '10:00', 2);
        """
    )
    conn.commit()
    conn.close()
    return 1


LEGACY_BUILDERS: dict[str, Callable[[Path], int]] = {"v1": _build_v1, "v2": _build_v2, "v3": _build_v3}


@pytest.mark.parametrize("version", sorted(LEGACY_BUILDERS))
def test_legacy_file_migrates_keeping_every_estimate(tmp_path: Path, version: str) -> None:
    path = tmp_path / "estimates.db"
    expected = LEGACY_BUILDERS[version](path)

    engine = StorageEngine(path)
    try:
        engine.open()
        assert engine.schema_version() == SCHEMA_VERSION
        rows = EstimateRepository(engine).get_all_estimates()
        assert len(rows) == expected
        for row in rows:
            assert row.exclusions == DEFAULT_EXCLUSIONS
            assert row.created_at > 0
    finally:
        engine.close()


def test_v1_columns_are_renamed_and_coerced(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    _build_v1(path)
    engine = StorageEngine(path)
    try:
        repo = EstimateRepository(engine)
        first = repo.get_estimate(1)
        assert first is not None
        assert first.sales_rep == "Sam"
        assert first.customer_name == "Acme"
        assert first.customer_email == ""
        assert first.total_amount == 100.0
        assert [(i.description, i.price, i.total) for i in first.items] == [("Labor", 50.0, 100.0)]

        second = repo.get_estimate(2)
        assert second is not None
        assert second.sales_tax == 0.0
        assert second.total_amount == 0.0

        # the line item pointing at a missing estimate is gone
        assert len(engine.query("SELECT * FROM line_items")) == 1
    finally:
        engine.close()


def test_v2_keeps_contact_fields_and_item_totals(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    _build_v2(path)
    engine = StorageEngine(path)
    try:
        estimate = EstimateRepository(engine).get_estimate(1)
        assert estimate is not None
        assert estimate.customer_email == "ops@acme.test"
        assert estimate.subtotal == 120.0
        # cached total was 0, recomputed from the items with 5% tax
        assert estimate.total_amount == 126.0
    finally:
        engine.close()


def test_v3_timesheets_and_users_survive(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    _build_v3(path)
    engine = StorageEngine(path)
    try:
        users = UserRepository(engine)
        users.initialize(admin_email="admin@example.com", admin_password="admin-pass-1")
        tech = users.get_user_by_email("tech@example.com")
        assert tech is not None
        assert tech.is_approved is False
        # the stored hash is malformed, so nothing can match it
        assert users.authenticate("tech@example.com", "whatever") is None

        sheets = TimesheetRepository(engine)
        entries = sheets.list_entries(tech.id, "2024-01-01", "2024-12-31")
        assert [e.estimate_id for e in entries] == [None, 1]
        assert entries[1].total_hours == 4.0
    finally:
        engine.close()


def test_bcrypt_accounts_log_in_after_migration(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    _build_v3(path)
    conn = sqlite3.connect(str(path))
    conn.execute(
        "INSERT INTO users(email, password, role) VALUES (?, ?, 'admin')",
        ("boss@example.com", bcrypt.hashpw(b"old-admin-pass", bcrypt.gensalt(rounds=4)).decode("ascii")),
    )
    conn.commit()
    conn.close()

    engine = StorageEngine(path)
    try:
        users = UserRepository(engine)
        # an admin already exists, so no bootstrap account is created
        users.initialize(admin_email="admin@example.com", admin_password="admin-pass-1")
        assert users.get_user_by_email("admin@example.com") is None

        assert users.authenticate("boss@example.com", "wrong-pass") is None
        boss = users.authenticate("boss@example.com", "old-admin-pass")
        assert boss is not None and boss.is_admin

        row = engine.query_one("SELECT password_hash FROM users WHERE email='boss@example.com'")
        assert row is not None
        assert str(row["password_hash"]).startswith("pbkdf2_sha256$")
        assert users.authenticate("boss@example.com", "old-admin-pass") is not None
    finally:
        engine.close()


def test_v1_blank_and_repeated_numbers_are_renamed(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE estimates (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          number TEXT,
          date TEXT,
          customerName TEXT
        );
        CREATE TABLE line_items (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          estimateId INTEGER,
          quantity REAL,
          description TEXT,
          price REAL,
          total REAL
        );
        INSERT INTO estimates(number, date, customerName) VALUES (NULL, '2023-05-01', 'Acme');
        INSERT INTO estimates(number, date, customerName) VALUES (NULL, '2023-05-02', 'Globex');
        INSERT INTO estimates(number, date, customerName) VALUES ('2023-001', '2023-05-03', 'Initech');
        INSERT INTO estimates(number, date, customerName) VALUES ('2023-001', '2023-05-04', 'Umbrella');
        INSERT INTO estimates(number, date, customerName) VALUES ('  ', '2023-05-05', 'Hooli');
        INSERT INTO line_items(estimateId, quantity, description, price, total) VALUES (4, 1, 'Labor', 10, 10);
        """
    )
    conn.commit()
    conn.close()

    engine = StorageEngine(path)
    try:
        engine.open()
        assert engine.schema_version() == SCHEMA_VERSION
        repo = EstimateRepository(engine)
        numbers = {e.id: e.number for e in repo.get_all_estimates()}
        assert numbers == {
            1: "legacy-1",
            2: "legacy-2",
            3: "2023-001",
            4: "2023-001-dup4",
            5: "legacy-5",
        }
        umbrella = repo.get_estimate(4)
        assert umbrella is not None and len(umbrella.items) == 1
        assert repo.get_next_estimate_number(2023) == "2023-002"
    finally:
        engine.close()


def test_renamed_number_avoids_existing_values(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE estimates (id INTEGER PRIMARY KEY AUTOINCREMENT, number TEXT, date TEXT, customerName TEXT);
        INSERT INTO estimates(id, number, date, customerName) VALUES (1, 'legacy-2', '2023-05-01', 'Acme');
        INSERT INTO estimates(id, number, date, customerName) VALUES (2, NULL, '2023-05-02', 'Globex');
        """
    )
    conn.commit()
    conn.close()

    engine = StorageEngine(path)
    try:
        numbers = {e.id: e.number for e in EstimateRepository(engine).get_all_estimates()}
        assert numbers == {1: "legacy-2", 2: "legacy-2-2"}
    finally:
        engine.close()


def test_newer_schema_version_is_refused(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
    conn.execute("INSERT INTO settings(key, value) VALUES ('schema_version', ?)", (str(SCHEMA_VERSION + 1),))
    conn.commit()
    conn.close()

    engine = StorageEngine(path)
    with pytest.raises(MigrationFailed):
        engine.open()
    assert not engine.is_open


def test_failed_migration_leaves_file_untouched(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "estimates.db"
    _build_v1(path)

    convert = StorageEngine._convert_rows

    def failing_convert(self, table, old_rows, kept_ids):
        # estimates are already reinserted when line_items fail
        if table.name == "line_items":
            raise sqlite3.OperationalError("disk I/O error")
        return convert(self, table, old_rows, kept_ids)

    monkeypatch.setattr(StorageEngine, "_convert_rows", failing_convert)
    engine = StorageEngine(path)
    with pytest.raises(MigrationFailed) as info:
        engine.open()
    assert isinstance(info.value.__cause__, sqlite3.OperationalError)
    assert not engine.is_open

    conn = sqlite3.connect(str(path))
    try:
        columns = {r[1] for r in conn.execute("PRAGMA table_info(estimates)").fetchall()}
        assert "salesRep" in columns
        assert conn.execute("SELECT COUNT(*) FROM estimates").fetchone()[0] == 3
        assert conn.execute("SELECT COUNT(*) FROM line_items").fetchone()[0] == 2
        assert conn.execute("SELECT value FROM settings WHERE key='schema_version'").fetchone() is None
    finally:
        conn.close()



def test_ensure_columns_adds_missing_user_columns(tmp_path: Path) -> None:
    path = tmp_path / "estimates.db"
    conn = sqlite3.connect(str(path))
    conn.executescript(
        f"""
        CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT NOT NULL);
        INSERT INTO settings(key, value) VALUES ('schema_version', '{SCHEMA_VERSION}');
        CREATE TABLE users (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          email TEXT NOT NULL UNIQUE,
          password_hash TEXT NOT NULL DEFAULT '',
          role TEXT NOT NULL DEFAULT 'user',
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL
        );
        """
    )
    conn.commit()
    conn.close()

    engine = StorageEngine(path)
    try:
        assert sorted(engine.ensure_columns("users")) == ["is_approved", "name"]
        assert engine.ensure_columns("users") == []
        users = UserRepository(engine)
        users.initialize(admin_email="admin@example.com", admin_password="admin-pass-1")
        admin = users.authenticate("admin@example.com", "admin-pass-1")
        assert admin is not None and admin.is_admin
    finally:
        engine.close()
