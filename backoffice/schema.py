from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

# v1: camelCase estimates, cost+price items
# v2: customer contact fields, direct price
# v3: timesheet_entries
# v4: users/quotes under the store, set-null estimate links, item positions
SCHEMA_VERSION = 4

TEXT = "TEXT"
INTEGER = "INTEGER"
REAL = "REAL"

CASCADE = "CASCADE"
SET_NULL = "SET NULL"

DEFAULT_EXCLUSIONS = (
    "Unless specifically listed in the scope of work, this estimate excludes permits, "
    "engineering, patching, painting and any work required by hidden conditions."
)


def now_ts() -> int:
    return int(time.time())


def _sql_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def as_int(value: Any, fallback: Callable[[], Any]) -> Any:
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    lowered = text.lower()
    if lowered in {"true", "yes", "on"}:
        return 1
    if lowered in {"false", "no", "off"}:
        return 0
    try:
        return int(float(text))
    except ValueError:
        pass
    # CURRENT_TIMESTAMP style values from the pre-versioned tables
    try:
        dt = datetime.fromisoformat(text.replace(" ", "T", 1))
    except ValueError:
        return fallback()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


@dataclass(frozen=True)
class Column:
    name: str
    type: str = TEXT
    default: Any = None
    nullable: bool = False
    unique: bool = False
    legacy_names: tuple[str, ...] = ()

    def fallback(self) -> Any:
        if callable(self.default):
            return self.default()
        if self.default is not None:
            return self.default
        if self.nullable:
            return None
        return "" if self.type == TEXT else 0

    def coerce(self, raw: Any) -> Any:
        if raw is None:
            return self.fallback()
        if self.type == TEXT:
            if isinstance(raw, bytes):
                return raw.decode("utf-8", errors="replace")
            return str(raw)
        if isinstance(raw, str) and not raw.strip():
            return self.fallback()
        if self.type == REAL:
            try:
                return float(raw)
            except (TypeError, ValueError):
                return self.fallback()
        return as_int(raw, self.fallback)

    def ddl(self, *, for_alter: bool = False) -> str:
        parts = [self.name, self.type]
        if not self.nullable:
            parts.append("NOT NULL")
        if self.unique and not for_alter:
            parts.append("UNIQUE")
        if callable(self.default):
            # ALTER TABLE ... ADD COLUMN NOT NULL needs a constant default
            if for_alter and not self.nullable:
                parts.append("DEFAULT 0")
        else:
            value = self.fallback()
            if value is not None:
                parts.append(f"DEFAULT {_sql_literal(value)}")
        return " ".join(parts)


@dataclass(frozen=True)
class ForeignKey:
    column: str
    table: str
    on_delete: str = CASCADE


@dataclass(frozen=True)
class Table:
    name: str
    columns: tuple[Column, ...]
    foreign_keys: tuple[ForeignKey, ...] = ()
    indexes: tuple[tuple[str, str], ...] = ()

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def column_names(self) -> list[str]:
        return [col.name for col in self.columns]

    def create_sql(self) -> str:
        parts = ["id INTEGER PRIMARY KEY AUTOINCREMENT"]
        parts.extend(col.ddl() for col in self.columns)
        for fk in self.foreign_keys:
            parts.append(f"FOREIGN KEY({fk.column}) REFERENCES {fk.table}(id) ON DELETE {fk.on_delete}")
        body = ",\n  ".join(parts)
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n  {body}\n)"

    def index_sql(self) -> list[str]:
        return [f"CREATE INDEX IF NOT EXISTS {name} ON {self.name}({cols})" for name, cols in self.indexes]

    def insert_sql(self) -> str:
        names = ["id", *self.column_names()]
        marks = ", ".join("?" for _ in names)
        return f"INSERT INTO {self.name} ({', '.join(names)}) VALUES ({marks})"

    def convert_row(self, old: Mapping[str, Any]) -> dict[str, Any]:
        """Map a row read under any older shape of this table onto the current columns."""
        raw_id = old.get("id")
        if raw_id is None:
            raw_id = old.get("__rowid__")
        out: dict[str, Any] = {"id": as_int(raw_id, lambda: None) if raw_id is not None else None}
        for col in self.columns:
            raw = None
            for key in (col.name, *col.legacy_names):
                if old.get(key) is not None:
                    raw = old[key]
                    break
            out[col.name] = col.coerce(raw)
        return out


USERS = Table(
    name="users",
    columns=(
        Column("email", unique=True),
        Column("password_hash", legacy_names=("password",)),
        Column("name"),
        Column("role", default="user"),
        Column("is_approved", INTEGER, default=0),
        Column("created_at", INTEGER, default=now_ts, legacy_names=("createdAt",)),
        Column("updated_at", INTEGER, default=now_ts, legacy_names=("updatedAt",)),
    ),
    indexes=(("idx_users_role", "role"),),
)

ESTIMATES = Table(
    name="estimates",
    columns=(
        Column("number", unique=True),
        Column("date"),
        Column("po"),
        Column("sales_rep", legacy_names=("salesRep",)),
        Column("customer_name", legacy_names=("customerName",)),
        Column("customer_email", legacy_names=("customerEmail",)),
        Column("customer_phone", legacy_names=("customerPhone",)),
        Column("bill_to_address", legacy_names=("billToAddress",)),
        Column("work_ship_address", legacy_names=("workShipAddress",)),
        Column("scope_of_work", legacy_names=("scopeOfWork",)),
        Column("exclusions", default=DEFAULT_EXCLUSIONS),
        Column("sales_tax", REAL, legacy_names=("salesTax",)),
        Column("total_amount", REAL, legacy_names=("total",)),
        Column("created_at", INTEGER, default=now_ts, legacy_names=("createdAt",)),
        Column("updated_at", INTEGER, default=now_ts, legacy_names=("updatedAt",)),
    ),
    indexes=(("idx_estimates_date", "date"),),
)

LINE_ITEMS = Table(
    name="line_items",
    columns=(
        Column("estimate_id", INTEGER, legacy_names=("estimateId",)),
        Column("position", INTEGER),
        Column("quantity", REAL),
        Column("description"),
        Column("price", REAL),
        Column("total", REAL),
    ),
    foreign_keys=(ForeignKey("estimate_id", "estimates", CASCADE),),
    indexes=(("idx_line_items_estimate", "estimate_id, position"),),
)

TIMESHEET_ENTRIES = Table(
    name="timesheet_entries",
    columns=(
        Column("user_id", INTEGER, legacy_names=("userId",)),
        Column("estimate_id", INTEGER, nullable=True, legacy_names=("estimateId",)),
        Column("date"),
        Column("customer_name"),
        Column("work_order"),
        Column("notes"),
        Column("travel_start"),
        Column("travel_start_location"),
        Column("time_in"),
        Column("time_in_location"),
        Column("time_out"),
        Column("time_out_location"),
        Column("travel_home"),
        Column("travel_home_location"),
        Column("total_hours", REAL),
        Column("created_at", INTEGER, default=now_ts),
        Column("updated_at", INTEGER, default=now_ts),
    ),
    foreign_keys=(
        ForeignKey("user_id", "users", CASCADE),
        ForeignKey("estimate_id", "estimates", SET_NULL),
    ),
    indexes=(
        ("idx_timesheet_user_date", "user_id, date"),
        ("idx_timesheet_estimate", "estimate_id"),
    ),
)

QUOTES = Table(
    name="quotes",
    columns=(
        Column("customer_name"),
        Column("customer_email"),
        Column("customer_phone"),
        Column("description"),
        Column("items", default="[]"),
        Column("total_amount", REAL),
        Column("status", default="pending"),
        Column("user_id", INTEGER, nullable=True),
        Column("created_at", INTEGER, default=now_ts),
        Column("updated_at", INTEGER, default=now_ts),
    ),
    foreign_keys=(ForeignKey("user_id", "users", SET_NULL),),
)

# parents before children
SCHEMA: tuple[Table, ...] = (USERS, ESTIMATES, LINE_ITEMS, TIMESHEET_ENTRIES, QUOTES)
