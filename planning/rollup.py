"""
Rollup and EAC (estimate at completion) engine.

For every sub-item that appears in a budget's baseline or in its purchase
feed one RollupRow is computed:

    remaining  = max(base_quantity - purchased_quantity, 0)
    eac_total  = purchased_total + remaining * eac_price
    variance   = eac_total - base_total

``eac_price`` depends on the row's method:

    weighted_avg  sum(qty * price) / sum(qty) over the row's purchases
    last_price    unit price of the latest-dated purchase
    manual        the user's manual price; without one the row falls back
                  to weighted_avg and carries ``eac_warning``

A row without purchases prices its remaining quantity at the baseline
price.  Aggregates (line item, major group, department, budget) are plain
sums of row totals; their variance % is recomputed from those sums.

``build_rollup`` is pure; ``compute_rollup`` loads its inputs from SQLite.
Nothing here writes rollup results back: rows are a view, recomputed on
every call.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Sequence

from planning import catalog
from planning.budgets import get_budget, require_editable, set_eac_fields
from planning.errors import NotFoundError, ValidationError
from planning.models import BaselineLine, Concepto, PurchaseRecord, RollupRow
from utils.config import EAC_METHODS, SUPPLY_STATUSES, AppConfig
from utils.database import batch_insert

logger = logging.getLogger("budget_control.rollup")

MANUAL_FALLBACK_WARNING = "manual price missing or negative; using weighted average"


# ── Pure computation ──────────────────────────────────────────────────────────


def _safe_ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def variance_pct(variance_total: float, base_total: float) -> float:
    """Variance as a fraction of the baseline; 0 when the baseline is 0."""
    return _safe_ratio(variance_total, base_total)


def completion_pct(purchased_quantity: float, base_quantity: float) -> float:
    """Percent (0-100) of the baseline quantity already purchased."""
    if base_quantity <= 0:
        return 100.0
    return min(purchased_quantity / base_quantity, 1.0) * 100.0


def derive_supply_status(base_quantity: float, purchased_quantity: float) -> str:
    if base_quantity <= 0:
        return "not_required"
    if purchased_quantity <= 0:
        return "required"
    if purchased_quantity < base_quantity:
        return "requested"
    return "delivered"


def _last_purchase(purchases: Sequence[tuple[int, PurchaseRecord]]) -> PurchaseRecord:
    """Latest purchase_date wins; ties go to the higher id (then feed order)."""
    return max(
        purchases,
        key=lambda pair: (pair[1].purchase_date,
                          pair[1].id if pair[1].id is not None else -1,
                          pair[0]),
    )[1]


def _compute_row(sub_item_id: int, lines: list[BaselineLine],
                 purchases: list[tuple[int, PurchaseRecord]],
                 stored_status: str | None) -> RollupRow:
    row = RollupRow(sub_item_id=sub_item_id)

    row.base_quantity = sum(line.quantity for line in lines)
    row.base_total = sum(line.total for line in lines)
    if row.base_quantity > 0:
        row.base_price = row.base_total / row.base_quantity
    elif lines:
        row.base_price = lines[0].unit_price
    row.concepto_ids = [line.concepto_id for line in lines if line.concepto_id is not None]

    row.purchased_quantity = sum(p.quantity for _, p in purchases)
    row.purchased_total = sum(p.quantity * p.unit_price for _, p in purchases)
    if row.purchased_quantity > 0:
        row.weighted_avg_price = row.purchased_total / row.purchased_quantity
        row.last_price = _last_purchase(purchases).unit_price
    else:
        row.weighted_avg_price = row.base_price
        row.last_price = None

    row.remaining_quantity = max(row.base_quantity - row.purchased_quantity, 0.0)

    method = lines[0].eac_method if lines else "weighted_avg"
    manual_price = lines[0].manual_price if lines else None
    row.manual_price = manual_price
    if method == "manual":
        if manual_price is not None and manual_price >= 0:
            row.eac_price = manual_price
        else:
            method = "weighted_avg"
            row.eac_warning = MANUAL_FALLBACK_WARNING
            row.eac_price = row.weighted_avg_price
    elif method == "last_price":
        row.eac_price = row.last_price if row.last_price is not None else row.base_price
    else:
        method = "weighted_avg"
        row.eac_price = row.weighted_avg_price
    row.eac_method = method

    if row.remaining_quantity > 0:
        row.eac_total = row.purchased_total + row.remaining_quantity * row.eac_price
    else:
        row.eac_total = row.purchased_total
    row.variance_total = row.eac_total - row.base_total
    row.variance_pct = variance_pct(row.variance_total, row.base_total)
    row.completion_pct = completion_pct(row.purchased_quantity, row.base_quantity)
    row.supply_status = stored_status or derive_supply_status(row.base_quantity,
                                                              row.purchased_quantity)
    return row


def build_rollup(
    baseline: Iterable[BaselineLine],
    purchases: Iterable[PurchaseRecord],
    supply_statuses: dict[int, str] | None = None,
) -> list[RollupRow]:
    """Compute one RollupRow per sub-item seen in *baseline* or *purchases*.

    Rows follow baseline order (first appearance of each sub-item), then
    purchase-only sub-items in feed order.  The first baseline line of a
    sub-item decides the row's EAC method; the store keeps all lines of a
    sub-item on the same selector.
    """
    supply_statuses = supply_statuses or {}
    by_sub_item: "OrderedDict[int, list[BaselineLine]]" = OrderedDict()
    for line in baseline:
        by_sub_item.setdefault(line.sub_item_id, []).append(line)

    bought: dict[int, list[tuple[int, PurchaseRecord]]] = defaultdict(list)
    for seq, purchase in enumerate(purchases):
        bought[purchase.sub_item_id].append((seq, purchase))
        by_sub_item.setdefault(purchase.sub_item_id, [])

    return [
        _compute_row(sub_item_id, lines, bought.get(sub_item_id, []),
                     supply_statuses.get(sub_item_id))
        for sub_item_id, lines in by_sub_item.items()
    ]


# ── Aggregation ───────────────────────────────────────────────────────────────


def summarize(rows: Sequence[RollupRow]) -> dict[str, Any]:
    """Budget KPIs: totals, variance % (fraction) and completion % (0-100).

    Completion counts rows that are fully purchased; a budget with no rows
    reports 0.
    """
    base = sum(r.base_total for r in rows)
    purchased = sum(r.purchased_total for r in rows)
    eac = sum(r.eac_total for r in rows)
    variance = sum(r.variance_total for r in rows)
    completed = sum(1 for r in rows if r.completion_pct >= 100.0)
    return {
        "base_total": base,
        "purchased_total": purchased,
        "eac_total": eac,
        "variance_total": variance,
        "variance_pct": variance_pct(variance, base),
        "completion_pct": _safe_ratio(completed, len(rows)) * 100.0,
        "row_count": len(rows),
        "completed_rows": completed,
    }


_GROUPINGS = {
    "line_item": ("line_item_id", "line_item_code", "line_item_name"),
    "major_group": ("major_group_id", "major_group_code", "major_group_name"),
    "department": ("department", "department", "department"),
}


def aggregate(rows: Sequence[RollupRow], level: str) -> list[dict[str, Any]]:
    """Sum rows by ``line_item``, ``major_group`` or ``department``."""
    if level not in _GROUPINGS:
        raise ValidationError("level", f"unknown aggregation level {level!r}")
    id_attr, code_attr, name_attr = _GROUPINGS[level]
    groups: "OrderedDict[Any, list[RollupRow]]" = OrderedDict()
    for row in rows:
        groups.setdefault(getattr(row, id_attr), []).append(row)
    result = []
    for key, members in groups.items():
        kpis = summarize(members)
        result.append({
            "level": level,
            "id": key,
            "code": getattr(members[0], code_attr),
            "name": getattr(members[0], name_attr),
            **kpis,
        })
    return result


def variance_band(pct: float, caution: float = 0.05, critical: float = 0.10) -> str:
    """Severity of a variance fraction: acceptable, caution or critical."""
    magnitude = round(abs(pct), 12)
    if magnitude <= caution:
        return "acceptable"
    if magnitude <= critical:
        return "caution"
    return "critical"


def top_variances(rows: Sequence[RollupRow], limit: int = 5) -> list[RollupRow]:
    """Rows with the largest absolute variance, skipping zero-variance rows."""
    ranked = sorted((r for r in rows if r.variance_total),
                    key=lambda r: abs(r.variance_total), reverse=True)
    return ranked[:limit]


def material_alerts(rows: Sequence[RollupRow]) -> list[dict[str, Any]]:
    """Pending purchases grouped by major group, largest pending amount first."""
    groups: "OrderedDict[Any, dict[str, Any]]" = OrderedDict()
    for row in rows:
        if row.remaining_quantity <= 0:
            continue
        group = groups.setdefault(row.major_group_id, {
            "major_group_id": row.major_group_id,
            "major_group_code": row.major_group_code,
            "major_group_name": row.major_group_name,
            "pending_items": 0,
            "pending_amount": 0.0,
            "sub_item_ids": [],
        })
        group["pending_items"] += 1
        group["pending_amount"] += row.remaining_quantity * row.base_price
        group["sub_item_ids"].append(row.sub_item_id)
    return sorted(groups.values(), key=lambda g: g["pending_amount"], reverse=True)


# ── Database-backed rollup ────────────────────────────────────────────────────


@dataclass
class Rollup:
    budget_id: int
    currency: str
    rows: list[RollupRow] = field(default_factory=list)
    kpis: dict[str, Any] = field(default_factory=dict)
    caution_pct: float = 0.05
    critical_pct: float = 0.10

    def band(self, pct: float) -> str:
        return variance_band(pct, self.caution_pct, self.critical_pct)

    def aggregates(self, level: str) -> list[dict[str, Any]]:
        return [dict(a, variance_band=self.band(a["variance_pct"]))
                for a in aggregate(self.rows, level)]

    def row_dicts(self) -> list[dict[str, Any]]:
        return [dict(r.to_dict(), variance_band=self.band(r.variance_pct))
                for r in self.rows]

    def to_dict(self) -> dict[str, Any]:
        return {
            "budget_id": self.budget_id,
            "currency": self.currency,
            "rows": self.row_dicts(),
            "kpis": dict(self.kpis, variance_band=self.band(self.kpis["variance_pct"])),
        }


def load_baseline(conn: sqlite3.Connection, budget_id: int) -> list[BaselineLine]:
    """Active, non-trashed conceptos with a sub-item, in partida/concepto order."""
    rows = conn.execute(
        "SELECT c.* FROM conceptos c JOIN partidas p ON p.id = c.partida_id "
        "WHERE p.budget_id = ? AND p.deleted_at IS NULL AND p.active = 1 "
        "AND c.deleted_at IS NULL AND c.active = 1 AND c.sub_item_id IS NOT NULL "
        "ORDER BY p.order_index, p.id, c.order_index, c.id",
        (budget_id,),
    ).fetchall()
    baseline = []
    for row in rows:
        c = Concepto.from_row(row)
        baseline.append(BaselineLine(
            sub_item_id=c.sub_item_id,
            quantity=c.adjusted_quantity,
            total=c.total_real,
            unit_price=c.unit_price_with_fee,
            eac_method=c.eac_method,
            manual_price=c.manual_price,
            concepto_id=c.id,
            line_item_id=c.line_item_id,
        ))
    return baseline


def list_purchases(conn: sqlite3.Connection, budget_id: int,
                   sub_item_id: int | None = None) -> list[PurchaseRecord]:
    get_budget(conn, budget_id)
    sql = "SELECT * FROM purchase_records WHERE budget_id = ?"
    params: list[Any] = [budget_id]
    if sub_item_id is not None:
        sql += " AND sub_item_id = ?"
        params.append(sub_item_id)
    sql += " ORDER BY purchase_date, id"
    return [PurchaseRecord.from_row(r) for r in conn.execute(sql, params).fetchall()]


def load_supply_statuses(conn: sqlite3.Connection, budget_id: int) -> dict[int, str]:
    rows = conn.execute(
        "SELECT sub_item_id, status FROM supply_statuses WHERE budget_id = ?", (budget_id,)
    ).fetchall()
    return {r["sub_item_id"]: r["status"] for r in rows}


def _fill_coordinates(conn: sqlite3.Connection, rows: list[RollupRow],
                      baseline: list[BaselineLine]) -> None:
    line_item_hint = {}
    for line in baseline:
        line_item_hint.setdefault(line.sub_item_id, line.line_item_id)
    for row in rows:
        try:
            sub_item = catalog.get_node(conn, row.sub_item_id)
        except NotFoundError:
            logger.warning("Rollup: sub-item %d is not in the catalog", row.sub_item_id)
            continue
        row.sub_item_code, row.sub_item_name = sub_item.code, sub_item.name
        line_item_id = sub_item.parent_id or line_item_hint.get(row.sub_item_id)
        if line_item_id is None:
            dept = catalog.department_of(conn, sub_item.id)
            row.department = dept.code if dept else ""
            continue
        path = catalog.catalog_path(conn, line_item_id)
        by_level = {n.level: n for n in path}
        if "line_item" in by_level:
            li = by_level["line_item"]
            row.line_item_id, row.line_item_code, row.line_item_name = li.id, li.code, li.name
        if "major_group" in by_level:
            mg = by_level["major_group"]
            row.major_group_id, row.major_group_code, row.major_group_name = mg.id, mg.code, mg.name
        if "department" in by_level:
            row.department = by_level["department"].code


def compute_rollup(conn: sqlite3.Connection, budget_id: int,
                   config: AppConfig | None = None) -> Rollup:
    """Recompute the rollup of a budget from its baseline and purchases.

    Rows are ordered by major group, line item and sub-item code.
    """
    config = config or AppConfig.from_env()
    budget = get_budget(conn, budget_id)
    baseline = load_baseline(conn, budget_id)
    purchases = list_purchases(conn, budget_id)
    rows = build_rollup(baseline, purchases, load_supply_statuses(conn, budget_id))
    _fill_coordinates(conn, rows, baseline)
    rows.sort(key=lambda r: (r.major_group_code, r.line_item_code, r.sub_item_code,
                             r.sub_item_id))
    kpis = summarize(rows)
    logger.info("Rollup budget %d: %d rows, EAC %.2f, variance %.2f",
                budget_id, kpis["row_count"], kpis["eac_total"], kpis["variance_total"])
    return Rollup(budget_id=budget_id, currency=budget.currency, rows=rows, kpis=kpis,
                  caution_pct=config.variance_caution_pct,
                  critical_pct=config.variance_critical_pct)


# ── State updates consumed by the next rollup ─────────────────────────────────


def set_eac_method(conn: sqlite3.Connection, concepto_id: int, method: str,
                   manual_price: float | None = None) -> Concepto:
    """Store a concepto's EAC method; the next rollup picks it up.

    ``manual`` without a price is accepted; rollup then falls back to the
    weighted average and flags the row.

    Raises:
        ValidationError: Unknown method or negative manual price.
    """
    if method not in EAC_METHODS:
        raise ValidationError("method", f"unknown EAC method {method!r}; "
                              f"expected one of {', '.join(EAC_METHODS)}")
    if manual_price is not None:
        try:
            manual_price = float(manual_price)
        except (TypeError, ValueError) as exc:
            raise ValidationError("manual_price", f"{manual_price!r} is not a number") from exc
        if manual_price < 0:
            raise ValidationError("manual_price", "must not be negative")
    return set_eac_fields(conn, concepto_id, method, manual_price)


def set_supply_status(conn: sqlite3.Connection, budget_id: int, sub_item_id: int,
                      status: str | None) -> None:
    """Store (or clear, with None) the user's supply status for a sub-item."""
    if status is not None and status not in SUPPLY_STATUSES:
        raise ValidationError("status", f"unknown supply status {status!r}")
    budget = get_budget(conn, budget_id)
    catalog.get_node(conn, sub_item_id, "sub_item")
    require_editable(budget)
    if status is None:
        conn.execute("DELETE FROM supply_statuses WHERE budget_id = ? AND sub_item_id = ?",
                     (budget_id, sub_item_id))
    else:
        conn.execute(
            "INSERT INTO supply_statuses (budget_id, sub_item_id, status, updated_at) "
            "VALUES (?, ?, ?, datetime('now')) "
            "ON CONFLICT(budget_id, sub_item_id) DO UPDATE SET "
            "status = excluded.status, updated_at = excluded.updated_at",
            (budget_id, sub_item_id, status),
        )
    conn.commit()


def _validate_purchase(index: str, quantity: Any, unit_price: Any,
                       purchase_date: Any) -> tuple[float, float, str]:
    try:
        qty = float(quantity)
        price = float(unit_price)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{index}quantity", "quantity and unit_price must be numbers") from exc
    if qty <= 0:
        raise ValidationError(f"{index}quantity", "must be greater than 0")
    if price < 0:
        raise ValidationError(f"{index}unit_price", "must not be negative")
    if purchase_date is None or purchase_date == "":
        purchase_date = date.today().isoformat()
    else:
        try:
            purchase_date = date.fromisoformat(str(purchase_date)[:10]).isoformat()
        except ValueError as exc:
            raise ValidationError(f"{index}purchase_date",
                                  f"{purchase_date!r} is not an ISO date") from exc
    return qty, price, purchase_date


def record_purchase(conn: sqlite3.Connection, budget_id: int, sub_item_id: int,
                    quantity: float, unit_price: float,
                    purchase_date: str | None = None,
                    reference: str | None = None,
                    provider: str | None = None) -> PurchaseRecord:
    """Append one purchase/commitment to a budget's feed."""
    qty, price, when = _validate_purchase("", quantity, unit_price, purchase_date)
    get_budget(conn, budget_id)
    catalog.get_node(conn, sub_item_id, "sub_item")
    cur = conn.execute(
        "INSERT INTO purchase_records (budget_id, sub_item_id, quantity, unit_price, "
        "purchase_date, reference, provider) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (budget_id, sub_item_id, qty, price, when, reference, provider),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM purchase_records WHERE id = ?",
                       (cur.lastrowid,)).fetchone()
    return PurchaseRecord.from_row(row)


def import_purchases(conn: sqlite3.Connection, budget_id: int,
                     records: Sequence[dict[str, Any]]) -> int:
    """Bulk-load purchase records; every record is validated before any insert.

    Returns:
        Number of records inserted.
    """
    get_budget(conn, budget_id)
    rows = []
    for i, rec in enumerate(records):
        if rec.get("sub_item_id") is None:
            raise ValidationError(f"records[{i}].sub_item_id", "is required")
        sub_item_id = int(rec["sub_item_id"])
        try:
            catalog.get_node(conn, sub_item_id, "sub_item")
        except NotFoundError as exc:
            raise ValidationError(f"records[{i}].sub_item_id", exc.reason) from exc
        qty, price, when = _validate_purchase(f"records[{i}].", rec.get("quantity"),
                                              rec.get("unit_price"), rec.get("purchase_date"))
        rows.append((budget_id, sub_item_id, qty, price, when,
                     rec.get("reference"), rec.get("provider")))
    inserted = batch_insert(
        conn,
        "INSERT INTO purchase_records (budget_id, sub_item_id, quantity, unit_price, "
        "purchase_date, reference, provider) VALUES (?, ?, ?, ?, ?, ?, ?)",
        rows,
    )
    logger.info("Imported %d purchase records into budget %d", inserted, budget_id)
    return inserted


def delete_purchase(conn: sqlite3.Connection, budget_id: int, purchase_id: int) -> None:
    cur = conn.execute("DELETE FROM purchase_records WHERE id = ? AND budget_id = ?",
                       (purchase_id, budget_id))
    if cur.rowcount == 0:
        raise NotFoundError("purchase", purchase_id)
    conn.commit()
