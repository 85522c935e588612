from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Mapping

from backoffice.errors import Forbidden, NotFound, ValidationError
from backoffice.schema import now_ts
from backoffice.storage import StorageEngine

log = logging.getLogger("backoffice.timesheets")

REQUIRED_FIELDS = ("date", "customer_name", "time_in", "time_out")

TEXT_FIELDS = (
    "date",
    "customer_name",
    "work_order",
    "notes",
    "travel_start",
    "travel_start_location",
    "time_in",
    "time_in_location",
    "time_out",
    "time_out_location",
    "travel_home",
    "travel_home_location",
)
TIME_FIELDS = ("travel_start", "time_in", "time_out", "travel_home")


@dataclass(frozen=True)
class TimesheetEntryRow:
    id: int
    user_id: int
    estimate_id: int | None
    date: str
    customer_name: str
    work_order: str
    notes: str
    travel_start: str
    travel_start_location: str
    time_in: str
    time_in_location: str
    time_out: str
    time_out_location: str
    travel_home: str
    travel_home_location: str
    total_hours: float
    created_at: int
    updated_at: int


def _parse_time(raw: str, field: str) -> time:
    try:
        return time.fromisoformat(raw)
    except ValueError:
        raise ValidationError(field, f"{field} must be HH:MM") from None


def _parse_date(raw: str, field: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(field, f"{field} must be YYYY-MM-DD") from None


def compute_total_hours(time_in: str | None, time_out: str | None) -> float:
    """Hours between clock-in and clock-out. A clock-out before clock-in is read as the next day."""
    if not time_in or not time_out:
        return 0.0
    t_in = _parse_time(time_in, "time_in")
    t_out = _parse_time(time_out, "time_out")
    start = t_in.hour * 3600 + t_in.minute * 60 + t_in.second
    end = t_out.hour * 3600 + t_out.minute * 60 + t_out.second
    seconds = end - start
    if seconds < 0:
        seconds += 24 * 3600
    return round(seconds / 3600.0, 2)


def _entry_values(entry: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        raw = entry.get(name)
        values[name] = "" if raw is None else str(raw).strip()
    for name in REQUIRED_FIELDS:
        if not values[name]:
            raise ValidationError(name)
    _parse_date(values["date"], "date")
    for name in TIME_FIELDS:
        if values[name]:
            _parse_time(values[name], name)

    raw_estimate = entry.get("estimate_id")
    if raw_estimate is None or str(raw_estimate).strip() == "":
        values["estimate_id"] = None
    else:
        try:
            values["estimate_id"] = int(raw_estimate)
        except (TypeError, ValueError):
            raise ValidationError("estimate_id", "estimate_id must be an integer") from None

    values["total_hours"] = compute_total_hours(values["time_in"], values["time_out"])
    return values


class TimesheetRepository:
    def __init__(self, engine: StorageEngine) -> None:
        self._engine = engine

    def _to_entry(self, row: sqlite3.Row) -> TimesheetEntryRow:
        return TimesheetEntryRow(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            estimate_id=int(row["estimate_id"]) if row["estimate_id"] is not None else None,
            date=str(row["date"]),
            customer_name=str(row["customer_name"] or ""),
            work_order=str(row["work_order"] or ""),
            notes=str(row["notes"] or ""),
            travel_start=str(row["travel_start"] or ""),
            travel_start_location=str(row["travel_start_location"] or ""),
            time_in=str(row["time_in"] or ""),
            time_in_location=str(row["time_in_location"] or ""),
            time_out=str(row["time_out"] or ""),
            time_out_location=str(row["time_out_location"] or ""),
            travel_home=str(row["travel_home"] or ""),
            travel_home_location=str(row["travel_home_location"] or ""),
            total_hours=float(row["total_hours"] or 0),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def _check_estimate(self, conn: sqlite3.Connection, estimate_id: int | None) -> None:
        if estimate_id is None:
            return
        if conn.execute("SELECT id FROM estimates WHERE id=?", (estimate_id,)).fetchone() is None:
            raise ValidationError("estimate_id", f"unknown estimate: {estimate_id}")

    def _load_owned(self, conn: sqlite3.Connection, entry_id: int, user_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM timesheet_entries WHERE id=?", (entry_id,)).fetchone()
        if row is None:
            raise NotFound("timesheet entry", entry_id)
        if int(row["user_id"]) != int(user_id):
            raise Forbidden(f"timesheet entry {entry_id} belongs to another user")
        return row

    def save_entry(self, user_id: int, entry: Mapping[str, Any]) -> int:
        values = _entry_values(entry)
        ts = now_ts()

        def unit(conn: sqlite3.Connection) -> int:
            self._check_estimate(conn, values["estimate_id"])
            cur = conn.execute(
                """
                INSERT INTO timesheet_entries(
                  user_id, estimate_id, date, customer_name, work_order, notes,
                  travel_start, travel_start_location, time_in, time_in_location,
                  time_out, time_out_location, travel_home, travel_home_location,
                  total_hours, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(user_id),
                    values["estimate_id"],
                    *(values[name] for name in TEXT_FIELDS),
                    values["total_hours"],
                    ts,
                    ts,
                ),
            )
            return int(cur.lastrowid)

        entry_id = self._engine.execute(unit, operation="save_timesheet_entry")
        log.info("Saved timesheet entry id=%s for user=%s (%.2fh)", entry_id, user_id, values["total_hours"])
        return entry_id

    def get_entry(self, entry_id: int, *, user_id: int | None = None) -> TimesheetEntryRow | None:
        row = self._engine.query_one(
            "SELECT * FROM timesheet_entries WHERE id=?",
            (int(entry_id),),
            operation="get_timesheet_entry",
        )
        if row is None:
            return None
        entry = self._to_entry(row)
        if user_id is not None and entry.user_id != int(user_id):
            raise Forbidden(f"timesheet entry {entry.id} belongs to another user")
        return entry

    def list_entries(self, user_id: int, start_date: str, end_date: str) -> list[TimesheetEntryRow]:
        _parse_date(str(start_date), "start_date")
        _parse_date(str(end_date), "end_date")
        rows = self._engine.query(
            """
            SELECT * FROM timesheet_entries
            WHERE user_id=? AND date>=? AND date<=?
            ORDER BY date DESC, time_in DESC
            """,
            (int(user_id), str(start_date), str(end_date)),
            operation="list_timesheet_entries",
        )
        return [self._to_entry(row) for row in rows]

    def daily_totals(self, user_id: int, start_date: str, end_date: str) -> list[dict[str, Any]]:
        _parse_date(str(start_date), "start_date")
        _parse_date(str(end_date), "end_date")
        rows = self._engine.query(
            """
            SELECT date, COUNT(*) AS entries, COALESCE(SUM(total_hours), 0) AS total_hours
            FROM timesheet_entries
            WHERE user_id=? AND date>=? AND date<=?
            GROUP BY date
            ORDER BY date
            """,
            (int(user_id), str(start_date), str(end_date)),
            operation="timesheet_daily_totals",
        )
        return [
            {
                "date": str(row["date"]),
                "entries": int(row["entries"] or 0),
                "total_hours": round(float(row["total_hours"] or 0), 2),
            }
            for row in rows
        ]

    def update_entry(self, entry_id: int, user_id: int, entry: Mapping[str, Any]) -> bool:
        values = _entry_values(entry)
        target = int(entry_id)

        def unit(conn: sqlite3.Connection) -> None:
            self._load_owned(conn, target, user_id)
            self._check_estimate(conn, values["estimate_id"])
            conn.execute(
                """
                UPDATE timesheet_entries SET
                  estimate_id=?, date=?, customer_name=?, work_order=?, notes=?,
                  travel_start=?, travel_start_location=?, time_in=?, time_in_location=?,
                  time_out=?, time_out_location=?, travel_home=?, travel_home_location=?,
                  total_hours=?, updated_at=?
                WHERE id=?
                """,
                (
                    values["estimate_id"],
                    *(values[name] for name in TEXT_FIELDS),
                    values["total_hours"],
                    now_ts(),
                    target,
                ),
            )

        self._engine.execute(unit, operation="update_timesheet_entry")
        log.info("Updated timesheet entry id=%s", target)
        return True

    def delete_entry(self, entry_id: int, user_id: int) -> bool:
        target = int(entry_id)

        def unit(conn: sqlite3.Connection) -> None:
            self._load_owned(conn, target, user_id)
            conn.execute("DELETE FROM timesheet_entries WHERE id=?", (target,))

        self._engine.execute(unit, operation="delete_timesheet_entry")
        log.info("Deleted timesheet entry id=%s", target)
        return True
