from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Mapping

from backoffice.errors import NotFound, ValidationError
from backoffice.schema import now_ts
from backoffice.storage import StorageEngine

log = logging.getLogger("backoffice.quotes")

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUSES = {STATUS_PENDING, STATUS_SENT, STATUS_ACCEPTED, STATUS_REJECTED}

TEXT_FIELDS = ("customer_name", "customer_email", "customer_phone", "description")


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _json_loads(text: str, *, default: Any) -> Any:
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


@dataclass(frozen=True)
class QuoteRow:
    id: int
    customer_name: str
    customer_email: str
    customer_phone: str
    description: str
    items: list[Any]
    total_amount: float
    status: str
    user_id: int | None
    created_at: int
    updated_at: int


def _items_total(items: list[Any]) -> float:
    total = 0.0
    for item in items:
        if not isinstance(item, Mapping):
            continue
        try:
            total += float(item.get("quantity") or 0) * float(item.get("price") or 0)
        except (TypeError, ValueError):
            continue
    return round(total, 2)


def _quote_values(data: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        raw = data.get(name)
        values[name] = "" if raw is None else str(raw)
    if not values["customer_name"].strip():
        raise ValidationError("customer_name")

    items = data.get("items") or []
    if not isinstance(items, list):
        raise ValidationError("items", "items must be a list")
    values["items"] = items

    raw_total = data.get("total_amount")
    if raw_total is None or str(raw_total).strip() == "":
        values["total_amount"] = _items_total(items)
    else:
        try:
            values["total_amount"] = float(raw_total)
        except (TypeError, ValueError):
            raise ValidationError("total_amount", "total_amount must be a number") from None

    status = str(data.get("status") or STATUS_PENDING).strip().lower()
    if status not in STATUSES:
        raise ValidationError("status", f"status must be one of: {', '.join(sorted(STATUSES))}")
    values["status"] = status
    return values


class QuoteRepository:
    """Older, simpler quote records. New work goes through estimates."""

    def __init__(self, engine: StorageEngine) -> None:
        self._engine = engine

    def _to_quote(self, row: sqlite3.Row) -> QuoteRow:
        items = _json_loads(str(row["items"] or ""), default=[]) or []
        if not isinstance(items, list):
            items = []
        return QuoteRow(
            id=int(row["id"]),
            customer_name=str(row["customer_name"] or ""),
            customer_email=str(row["customer_email"] or ""),
            customer_phone=str(row["customer_phone"] or ""),
            description=str(row["description"] or ""),
            items=items,
            total_amount=float(row["total_amount"] or 0),
            status=str(row["status"] or STATUS_PENDING),
            user_id=int(row["user_id"]) if row["user_id"] is not None else None,
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def create_quote(self, data: Mapping[str, Any], *, user_id: int | None = None) -> int:
        values = _quote_values(data)
        ts = now_ts()

        def unit(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                """
                INSERT INTO quotes(
                  customer_name, customer_email, customer_phone, description,
                  items, total_amount, status, user_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    *(values[name] for name in TEXT_FIELDS),
                    _json_dumps(values["items"]),
                    values["total_amount"],
                    values["status"],
                    int(user_id) if user_id is not None else None,
                    ts,
                    ts,
                ),
            )
            return int(cur.lastrowid)

        quote_id = self._engine.execute(unit, operation="create_quote")
        log.info("Created quote id=%s", quote_id)
        return quote_id

    def get_quote(self, quote_id: int) -> QuoteRow | None:
        row = self._engine.query_one("SELECT * FROM quotes WHERE id=?", (int(quote_id),), operation="get_quote")
        if row is None:
            return None
        return self._to_quote(row)

    def list_quotes(self) -> list[QuoteRow]:
        rows = self._engine.query("SELECT * FROM quotes ORDER BY created_at DESC, id DESC", operation="list_quotes")
        return [self._to_quote(row) for row in rows]

    def update_quote(self, quote_id: int, data: Mapping[str, Any]) -> bool:
        values = _quote_values(data)
        target = int(quote_id)

        def unit(conn: sqlite3.Connection) -> None:
            cur = conn.execute(
                """
                UPDATE quotes SET
                  customer_name=?, customer_email=?, customer_phone=?, description=?,
                  items=?, total_amount=?, status=?, updated_at=?
                WHERE id=?
                """,
                (
                    *(values[name] for name in TEXT_FIELDS),
                    _json_dumps(values["items"]),
                    values["total_amount"],
                    values["status"],
                    now_ts(),
                    target,
                ),
            )
            if int(cur.rowcount or 0) == 0:
                raise NotFound("quote", target)

        self._engine.execute(unit, operation="update_quote")
        return True

    def delete_quote(self, quote_id: int) -> bool:
        target = int(quote_id)

        def unit(conn: sqlite3.Connection) -> None:
            cur = conn.execute("DELETE FROM quotes WHERE id=?", (target,))
            if int(cur.rowcount or 0) == 0:
                raise NotFound("quote", target)

        self._engine.execute(unit, operation="delete_quote")
        log.info("Deleted quote id=%s", target)
        return True
