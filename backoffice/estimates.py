from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Sequence

from backoffice.errors import NotFound, UniqueConstraintViolation, ValidationError
from backoffice.schema import now_ts
from backoffice.storage import StorageEngine

log = logging.getLogger("backoffice.estimates")

NUMBER_RE = re.compile(r"^(\d{4})-(\d+)$")

TEXT_FIELDS = (
    "number",
    "date",
    "po",
    "sales_rep",
    "customer_name",
    "customer_email",
    "customer_phone",
    "bill_to_address",
    "work_ship_address",
    "scope_of_work",
    "exclusions",
)
REQUIRED_FIELDS = ("number", "date", "customer_name")

# form field names used by the estimate editor
FIELD_ALIASES = {
    "salesRep": "sales_rep",
    "customerName": "customer_name",
    "customerEmail": "customer_email",
    "customerPhone": "customer_phone",
    "billToAddress": "bill_to_address",
    "workShipAddress": "work_ship_address",
    "scopeOfWork": "scope_of_work",
    "salesTax": "sales_tax",
    "rows": "items",
}


@dataclass(frozen=True)
class LineItemRow:
    id: int
    estimate_id: int
    position: int
    quantity: float
    description: str
    price: float
    total: float


@dataclass(frozen=True)
class EstimateRow:
    id: int
    number: str
    date: str
    po: str
    sales_rep: str
    customer_name: str
    customer_email: str
    customer_phone: str
    bill_to_address: str
    work_ship_address: str
    scope_of_work: str
    exclusions: str
    sales_tax: float
    total_amount: float
    created_at: int
    updated_at: int
    items: tuple[LineItemRow, ...] = ()

    @property
    def subtotal(self) -> float:
        return round(sum(item.total for item in self.items), 2)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["items"] = [asdict(item) for item in self.items]
        data["subtotal"] = self.subtotal
        return data


def _as_number(value: Any, field: str) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        return 0.0
    if isinstance(value, bool):
        raise ValidationError(field, f"{field} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(field, f"{field} must be a number") from None


def compute_totals(items: Iterable[Mapping[str, Any]], sales_tax: float) -> dict[str, Any]:
    """Line totals are quantity x price; the estimate total applies sales tax (a percentage) to their sum."""
    lines: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            raise ValidationError(f"items[{index}]", "line item must be an object")
        quantity = _as_number(item.get("quantity"), f"items[{index}].quantity")
        price = _as_number(item.get("price"), f"items[{index}].price")
        lines.append(
            {
                "position": index,
                "quantity": quantity,
                "description": str(item.get("description") or ""),
                "price": price,
                "total": round(quantity * price, 2),
            }
        )
    subtotal = round(sum(line["total"] for line in lines), 2)
    total = round(subtotal * (1 + float(sales_tax) / 100.0), 2)
    return {
        "items": lines,
        "subtotal": subtotal,
        "sales_tax_amount": round(total - subtotal, 2),
        "total_amount": total,
    }


def normalize_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {FIELD_ALIASES.get(str(k), str(k)): v for k, v in fields.items()}


def _estimate_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    data = normalize_fields(fields)
    values: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        raw = data.get(name)
        values[name] = "" if raw is None else str(raw)
    for name in REQUIRED_FIELDS:
        values[name] = values[name].strip()
        if not values[name]:
            raise ValidationError(name)
    try:
        date.fromisoformat(values["date"])
    except ValueError:
        raise ValidationError("date", "date must be YYYY-MM-DD") from None

    sales_tax = _as_number(data.get("sales_tax"), "sales_tax")
    if sales_tax < 0:
        raise ValidationError("sales_tax", "sales_tax must not be negative")
    values["sales_tax"] = sales_tax
    return values


class EstimateRepository:
    def __init__(self, engine: StorageEngine) -> None:
        self._engine = engine

    def _to_item(self, row: sqlite3.Row) -> LineItemRow:
        return LineItemRow(
            id=int(row["id"]),
            estimate_id=int(row["estimate_id"]),
            position=int(row["position"] or 0),
            quantity=float(row["quantity"] or 0),
            description=str(row["description"] or ""),
            price=float(row["price"] or 0),
            total=float(row["total"] or 0),
        )

    def _to_estimate(self, row: sqlite3.Row, items: Sequence[LineItemRow]) -> EstimateRow:
        sales_tax = float(row["sales_tax"] or 0)
        total_amount = float(row["total_amount"] or 0)
        if not total_amount and items:
            subtotal = sum(item.total for item in items)
            total_amount = round(subtotal * (1 + sales_tax / 100.0), 2)
        return EstimateRow(
            id=int(row["id"]),
            number=str(row["number"]),
            date=str(row["date"] or ""),
            po=str(row["po"] or ""),
            sales_rep=str(row["sales_rep"] or ""),
            customer_name=str(row["customer_name"] or ""),
            customer_email=str(row["customer_email"] or ""),
            customer_phone=str(row["customer_phone"] or ""),
            bill_to_address=str(row["bill_to_address"] or ""),
            work_ship_address=str(row["work_ship_address"] or ""),
            scope_of_work=str(row["scope_of_work"] or ""),
            exclusions=str(row["exclusions"] or ""),
            sales_tax=sales_tax,
            total_amount=total_amount,
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            items=tuple(items),
        )

    def _insert_items(self, conn: sqlite3.Connection, estimate_id: int, lines: list[dict[str, Any]]) -> None:
        conn.executemany(
            """
            INSERT INTO line_items(estimate_id, position, quantity, description, price, total)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (estimate_id, line["position"], line["quantity"], line["description"], line["price"], line["total"])
                for line in lines
            ],
        )

    def _check_number_free(self, conn: sqlite3.Connection, number: str, *, estimate_id: int | None = None) -> None:
        row = conn.execute("SELECT id FROM estimates WHERE number=?", (number,)).fetchone()
        if row is not None and int(row["id"]) != estimate_id:
            raise UniqueConstraintViolation("number", number)

    def save_estimate(self, fields: Mapping[str, Any], items: Iterable[Mapping[str, Any]] = ()) -> int:
        values = _estimate_values(fields)
        totals = compute_totals(items or (), values["sales_tax"])
        ts = now_ts()

        def unit(conn: sqlite3.Connection) -> int:
            self._check_number_free(conn, values["number"])
            cur = conn.execute(
                """
                INSERT INTO estimates(
                  number, date, po, sales_rep, customer_name, customer_email, customer_phone,
                  bill_to_address, work_ship_address, scope_of_work, exclusions,
                  sales_tax, total_amount, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    *(values[name] for name in TEXT_FIELDS),
                    values["sales_tax"],
                    totals["total_amount"],
                    ts,
                    ts,
                ),
            )
            estimate_id = int(cur.lastrowid)
            self._insert_items(conn, estimate_id, totals["items"])
            return estimate_id

        estimate_id = self._engine.execute(unit, operation="save_estimate")
        log.info("Saved estimate %s (id=%s, %d items)", values["number"], estimate_id, len(totals["items"]))
        return estimate_id

    def get_estimate(self, estimate_id: int) -> EstimateRow | None:
        row = self._engine.query_one("SELECT * FROM estimates WHERE id=?", (int(estimate_id),), operation="get_estimate")
        if row is None:
            return None
        item_rows = self._engine.query(
            "SELECT * FROM line_items WHERE estimate_id=? ORDER BY position, id",
            (int(estimate_id),),
            operation="get_estimate",
        )
        return self._to_estimate(row, [self._to_item(r) for r in item_rows])

    def get_all_estimates(self, *, limit: int | None = None, offset: int = 0) -> list[EstimateRow]:
        sql = "SELECT * FROM estimates ORDER BY date DESC, number DESC"
        args: list[Any] = []
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            args.extend([int(limit), max(0, int(offset))])
        rows = self._engine.query(sql, args, operation="get_all_estimates")
        if not rows:
            return []

        if limit is None:
            item_rows = self._engine.query(
                "SELECT * FROM line_items ORDER BY estimate_id, position, id",
                operation="get_all_estimates",
            )
        else:
            ids = [int(r["id"]) for r in rows]
            marks = ", ".join("?" for _ in ids)
            item_rows = self._engine.query(
                f"SELECT * FROM line_items WHERE estimate_id IN ({marks}) ORDER BY estimate_id, position, id",
                ids,
                operation="get_all_estimates",
            )
        grouped: dict[int, list[LineItemRow]] = {}
        for r in item_rows:
            item = self._to_item(r)
            grouped.setdefault(item.estimate_id, []).append(item)
        return [self._to_estimate(row, grouped.get(int(row["id"]), [])) for row in rows]

    def update_estimate(
        self,
        estimate_id: int,
        fields: Mapping[str, Any],
        items: Iterable[Mapping[str, Any]] = (),
    ) -> bool:
        """Replace the estimate's fields and all of its line items."""
        values = _estimate_values(fields)
        totals = compute_totals(items or (), values["sales_tax"])
        target = int(estimate_id)

        def unit(conn: sqlite3.Connection) -> None:
            if conn.execute("SELECT id FROM estimates WHERE id=?", (target,)).fetchone() is None:
                raise NotFound("estimate", target)
            self._check_number_free(conn, values["number"], estimate_id=target)
            conn.execute(
                """
                UPDATE estimates SET
                  number=?, date=?, po=?, sales_rep=?, customer_name=?, customer_email=?, customer_phone=?,
                  bill_to_address=?, work_ship_address=?, scope_of_work=?, exclusions=?,
                  sales_tax=?, total_amount=?, updated_at=?
                WHERE id=?
                """,
                (
                    *(values[name] for name in TEXT_FIELDS),
                    values["sales_tax"],
                    totals["total_amount"],
                    now_ts(),
                    target,
                ),
            )
            conn.execute("DELETE FROM line_items WHERE estimate_id=?", (target,))
            self._insert_items(conn, target, totals["items"])

        self._engine.execute(unit, operation="update_estimate")
        log.info("Updated estimate %s (id=%s, %d items)", values["number"], target, len(totals["items"]))
        return True

    def delete_estimate(self, estimate_id: int) -> bool:
        target = int(estimate_id)

        def unit(conn: sqlite3.Connection) -> None:
            # line_items go with it (ON DELETE CASCADE)
            cur = conn.execute("DELETE FROM estimates WHERE id=?", (target,))
            if int(cur.rowcount or 0) == 0:
                raise NotFound("estimate", target)

        self._engine.execute(unit, operation="delete_estimate")
        log.info("Deleted estimate id=%s", target)
        return True

    def get_next_estimate_number(self, year: int | None = None) -> str:
        year = int(year) if year else date.today().year
        if not 1000 <= year <= 9999:
            raise ValidationError("year", "year must have four digits")
        rows = self._engine.query(
            "SELECT number FROM estimates WHERE number LIKE ?",
            (f"{year}-%",),
            operation="get_next_estimate_number",
        )
        # compare parsed suffixes, not strings: "2024-1000" sorts before "2024-999"
        latest = 0
        for row in rows:
            m = NUMBER_RE.match(str(row["number"]).strip())
            if m and int(m.group(1)) == year:
                latest = max(latest, int(m.group(2)))
        return f"{year}-{latest + 1:03d}"
