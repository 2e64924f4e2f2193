"""
Budget hierarchy: budgets, partidas and conceptos.

Lifecycle rules:
    draft      structural and value edits allowed
    published  value edits only (quantities, prices, percentages, EAC method)
    closed     read-only

Soft delete sets ``deleted_at``; normal reads treat trashed rows as missing.
Permanent deletion requires a draft budget with no recorded snapshot.

Fee and waste percentages resolve as ``partida override ?? budget default``
at read time (``effective_defaults``).
"""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from planning.errors import NotFoundError, PreconditionFailed, ValidationError
from planning.models import Budget, Concepto, Partida
from utils.config import BUDGET_STATUSES, DEFAULT_IMPORT_UNIT, EAC_METHODS, AppConfig
from utils.database import next_order_index
from utils.patterns import CURRENCY_CODE

logger = logging.getLogger("budget_control.budgets")

_BUDGET_FIELDS = ("name", "project_id", "currency", "enable_tax", "tax_rate",
                  "default_fee_pct", "default_waste_pct", "notes")
_PARTIDA_FIELDS = ("name", "order_index", "active", "fee_pct_override",
                   "waste_pct_override", "notes")
_CONCEPTO_FIELDS = ("code", "description", "long_description", "unit",
                    "real_quantity", "waste_pct", "real_unit_price", "fee_pct",
                    "provider", "active", "order_index", "line_item_id",
                    "sub_item_id")
_PCT_FIELDS = {"tax_rate", "default_fee_pct", "default_waste_pct",
               "fee_pct_override", "waste_pct_override", "waste_pct", "fee_pct"}
_NON_NEGATIVE_FIELDS = {"real_quantity", "real_unit_price"}

# Transitions allowed by change_status
_TRANSITIONS = {"draft": {"published"}, "published": {"closed"}, "closed": set()}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ── Validation ────────────────────────────────────────────────────────────────


def validate_pct(field: str, value: Any, allow_none: bool = False) -> float | None:
    """Return *value* as a float in [0, 1] or raise ValidationError."""
    if value is None:
        if allow_none:
            return None
        raise ValidationError(field, "a percentage is required")
    try:
        pct = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(field, f"{value!r} is not a number") from exc
    if not 0.0 <= pct <= 1.0:
        raise ValidationError(field, f"{pct} must be between 0 and 1")
    return pct


def validate_currency(value: Any) -> str:
    if not isinstance(value, str) or not CURRENCY_CODE.match(value.strip()):
        raise ValidationError("currency", f"{value!r} is not a 3-letter ISO currency code")
    return value.strip()


def _validate_non_negative(field: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(field, f"{value!r} is not a number") from exc
    if number < 0:
        raise ValidationError(field, f"{number} must not be negative")
    return number


def _validate_name(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must not be empty")
    return value.strip()


def _clean_fields(values: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    unknown = set(values) - set(allowed)
    if unknown:
        raise ValidationError(sorted(unknown)[0], "field cannot be updated")
    clean: dict[str, Any] = {}
    for key, value in values.items():
        if key in _PCT_FIELDS:
            clean[key] = validate_pct(key, value,
                                      allow_none=key.endswith("_override"))
        elif key in _NON_NEGATIVE_FIELDS:
            clean[key] = _validate_non_negative(key, value)
        elif key == "currency":
            clean[key] = validate_currency(value)
        elif key in ("name",):
            clean[key] = _validate_name(key, value)
        elif key in ("active", "enable_tax"):
            clean[key] = int(bool(value))
        else:
            clean[key] = value
    return clean


# ── Lifecycle guards ──────────────────────────────────────────────────────────


def require_editable(budget: Budget) -> None:
    """Value edits are rejected once a budget is closed."""
    if budget.status == "closed":
        raise PreconditionFailed(f"budget {budget.id} is closed")


def require_draft(budget: Budget) -> None:
    """Structural edits are only allowed while the budget is a draft."""
    if budget.status != "draft":
        raise PreconditionFailed(
            f"budget {budget.id} is {budget.status}; structural changes need a draft"
        )


def can_delete_permanently(status: str, deleted_at: str | None,
                           has_snapshot: bool) -> bool:
    """Hard-delete eligibility: a draft with no recorded snapshot.

    ``deleted_at`` does not matter; a budget may be purged from the trash or
    directly.
    """
    return status == "draft" and not has_snapshot


def _has_snapshot(conn: sqlite3.Connection, budget_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM budget_snapshots WHERE budget_id = ? LIMIT 1", (budget_id,)
    ).fetchone()
    return row is not None


# ── Budgets ───────────────────────────────────────────────────────────────────


def create_budget(
    conn: sqlite3.Connection,
    name: str,
    currency: str | None = None,
    *,
    project_id: int | None = None,
    enable_tax: bool = True,
    tax_rate: float | None = None,
    default_fee_pct: float | None = None,
    default_waste_pct: float | None = None,
    notes: str | None = None,
    config: AppConfig | None = None,
) -> Budget:
    """Create a draft budget.

    Unset settings come from the application configuration.

    Raises:
        ValidationError: Bad currency, empty name or a percentage outside [0, 1].
    """
    config = config or AppConfig.from_env()
    name = _validate_name("name", name)
    currency = validate_currency(currency if currency is not None else config.default_currency)
    tax_rate = validate_pct("tax_rate", config.default_tax_rate if tax_rate is None else tax_rate)
    fee = validate_pct("default_fee_pct",
                       config.default_fee_pct if default_fee_pct is None else default_fee_pct)
    waste = validate_pct("default_waste_pct",
                         config.default_waste_pct if default_waste_pct is None else default_waste_pct)
    now = _now()
    cur = conn.execute(
        "INSERT INTO budgets (name, project_id, currency, status, enable_tax, tax_rate, "
        "default_fee_pct, default_waste_pct, notes, created_at, updated_at) "
        "VALUES (?, ?, ?, 'draft', ?, ?, ?, ?, ?, ?, ?)",
        (name, project_id, currency, int(bool(enable_tax)), tax_rate, fee, waste,
         notes, now, now),
    )
    conn.commit()
    logger.info("Created budget %d (%s)", cur.lastrowid, name)
    return get_budget(conn, cur.lastrowid)


def get_budget(conn: sqlite3.Connection, budget_id: int,
               include_trashed: bool = False) -> Budget:
    """Return a budget.

    Raises:
        NotFoundError: If absent, or trashed and *include_trashed* is False.
    """
    row = conn.execute("SELECT * FROM budgets WHERE id = ?", (budget_id,)).fetchone()
    if row is None or (row["deleted_at"] is not None and not include_trashed):
        raise NotFoundError("budget", budget_id)
    return Budget.from_row(row)


def list_budgets(conn: sqlite3.Connection, trashed: bool = False,
                 status: str | None = None) -> list[Budget]:
    """List live budgets, or only trashed ones when *trashed* is True."""
    sql = "SELECT * FROM budgets WHERE deleted_at IS " + ("NOT NULL" if trashed else "NULL")
    params: list[Any] = []
    if status is not None:
        if status not in BUDGET_STATUSES:
            raise ValidationError("status", f"unknown status {status!r}")
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY id"
    return [Budget.from_row(r) for r in conn.execute(sql, params).fetchall()]


def update_budget(conn: sqlite3.Connection, budget_id: int, **values: Any) -> Budget:
    """Update budget settings.

    Raises:
        PreconditionFailed: If the budget is closed.
    """
    budget = get_budget(conn, budget_id)
    clean = _clean_fields(values, _BUDGET_FIELDS)
    require_editable(budget)
    if not clean:
        return budget
    clean["updated_at"] = _now()
    assignments = ", ".join(f"{k} = ?" for k in clean)
    conn.execute(f"UPDATE budgets SET {assignments} WHERE id = ?",
                 [*clean.values(), budget_id])
    conn.commit()
    return get_budget(conn, budget_id)


def change_status(conn: sqlite3.Connection, budget_id: int, new_status: str) -> Budget:
    """Move a budget along draft -> published -> closed.

    Raises:
        ValidationError: Unknown status.
        PreconditionFailed: Transition not allowed from the current status.
    """
    if new_status not in BUDGET_STATUSES:
        raise ValidationError("status", f"unknown status {new_status!r}")
    budget = get_budget(conn, budget_id)
    if new_status not in _TRANSITIONS[budget.status]:
        raise PreconditionFailed(
            f"budget {budget_id} cannot move from {budget.status} to {new_status}"
        )
    conn.execute("UPDATE budgets SET status = ?, updated_at = ? WHERE id = ?",
                 (new_status, _now(), budget_id))
    conn.commit()
    logger.info("Budget %d: %s -> %s", budget_id, budget.status, new_status)
    return get_budget(conn, budget_id)


def publish_budget(conn: sqlite3.Connection, budget_id: int,
                   notes: str | None = None) -> Budget:
    """Snapshot a draft budget and mark it published."""
    from planning import snapshots

    budget = get_budget(conn, budget_id)
    if budget.status != "draft":
        raise PreconditionFailed(f"budget {budget_id} is {budget.status}; only drafts publish")
    snapshots.create_snapshot(conn, budget_id, notes=notes or "Published")
    return change_status(conn, budget_id, "published")


def close_budget(conn: sqlite3.Connection, budget_id: int) -> Budget:
    return change_status(conn, budget_id, "closed")


def move_budget_to_trash(conn: sqlite3.Connection, budget_id: int) -> Budget:
    budget = get_budget(conn, budget_id)
    conn.execute("UPDATE budgets SET deleted_at = ?, updated_at = ? WHERE id = ?",
                 (_now(), _now(), budget.id))
    conn.commit()
    return get_budget(conn, budget_id, include_trashed=True)


def restore_budget(conn: sqlite3.Connection, budget_id: int) -> Budget:
    budget = get_budget(conn, budget_id, include_trashed=True)
    if budget.deleted_at is None:
        return budget
    conn.execute("UPDATE budgets SET deleted_at = NULL, updated_at = ? WHERE id = ?",
                 (_now(), budget_id))
    conn.commit()
    return get_budget(conn, budget_id)


def delete_budget_permanently(conn: sqlite3.Connection, budget_id: int) -> None:
    """Remove a budget and everything it owns.

    Raises:
        PreconditionFailed: Unless the budget is a draft without snapshots.
    """
    budget = get_budget(conn, budget_id, include_trashed=True)
    if not can_delete_permanently(budget.status, budget.deleted_at,
                                  _has_snapshot(conn, budget_id)):
        raise PreconditionFailed(
            f"budget {budget_id} can only be deleted permanently as a draft with no snapshots"
        )
    conn.execute("DELETE FROM budgets WHERE id = ?", (budget_id,))
    conn.commit()
    logger.info("Deleted budget %d permanently", budget_id)


# ── Partidas ──────────────────────────────────────────────────────────────────


def _budget_for_partida(conn: sqlite3.Connection, partida: Partida) -> Budget:
    return get_budget(conn, partida.budget_id)


def create_partida(
    conn: sqlite3.Connection,
    budget_id: int,
    name: str,
    order_index: int | None = None,
    fee_pct_override: float | None = None,
    waste_pct_override: float | None = None,
    notes: str | None = None,
    active: bool = True,
) -> Partida:
    """Add a partida at *order_index*, or after the last one."""
    name = _validate_name("name", name)
    fee = validate_pct("fee_pct_override", fee_pct_override, allow_none=True)
    waste = validate_pct("waste_pct_override", waste_pct_override, allow_none=True)
    budget = get_budget(conn, budget_id)
    require_draft(budget)
    if order_index is None:
        order_index = next_order_index(conn, "partidas", "budget_id", budget_id)
    cur = conn.execute(
        "INSERT INTO partidas (budget_id, name, order_index, active, fee_pct_override, "
        "waste_pct_override, notes) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (budget_id, name, order_index, int(bool(active)), fee, waste, notes),
    )
    conn.commit()
    return get_partida(conn, cur.lastrowid)


def get_partida(conn: sqlite3.Connection, partida_id: int,
                include_trashed: bool = False) -> Partida:
    row = conn.execute("SELECT * FROM partidas WHERE id = ?", (partida_id,)).fetchone()
    if row is None or (row["deleted_at"] is not None and not include_trashed):
        raise NotFoundError("partida", partida_id)
    return Partida.from_row(row)


def list_partidas(conn: sqlite3.Connection, budget_id: int,
                  trashed: bool = False) -> list[Partida]:
    get_budget(conn, budget_id)
    rows = conn.execute(
        "SELECT * FROM partidas WHERE budget_id = ? AND deleted_at IS "
        + ("NOT NULL" if trashed else "NULL")
        + " ORDER BY order_index, id",
        (budget_id,),
    ).fetchall()
    return [Partida.from_row(r) for r in rows]


def update_partida(conn: sqlite3.Connection, partida_id: int, **values: Any) -> Partida:
    partida = get_partida(conn, partida_id)
    clean = _clean_fields(values, _PARTIDA_FIELDS)
    require_editable(_budget_for_partida(conn, partida))
    if clean:
        assignments = ", ".join(f"{k} = ?" for k in clean)
        conn.execute(f"UPDATE partidas SET {assignments} WHERE id = ?",
                     [*clean.values(), partida_id])
        conn.commit()
    return get_partida(conn, partida_id)


def move_partida_to_trash(conn: sqlite3.Connection, partida_id: int) -> Partida:
    partida = get_partida(conn, partida_id)
    require_draft(_budget_for_partida(conn, partida))
    conn.execute("UPDATE partidas SET deleted_at = ? WHERE id = ?", (_now(), partida_id))
    conn.commit()
    return get_partida(conn, partida_id, include_trashed=True)


def restore_partida(conn: sqlite3.Connection, partida_id: int) -> Partida:
    partida = get_partida(conn, partida_id, include_trashed=True)
    require_draft(_budget_for_partida(conn, partida))
    conn.execute("UPDATE partidas SET deleted_at = NULL WHERE id = ?", (partida_id,))
    conn.commit()
    return get_partida(conn, partida_id)


def delete_partida_permanently(conn: sqlite3.Connection, partida_id: int) -> None:
    partida = get_partida(conn, partida_id, include_trashed=True)
    budget = _budget_for_partida(conn, partida)
    if not can_delete_permanently(budget.status, budget.deleted_at,
                                  _has_snapshot(conn, budget.id)):
        raise PreconditionFailed(
            f"partida {partida_id} belongs to a budget that is not a draft without snapshots"
        )
    conn.execute("DELETE FROM partidas WHERE id = ?", (partida_id,))
    conn.commit()


def resolve_pct(override: float | None, default: float) -> float:
    return default if override is None else override


def effective_defaults(conn: sqlite3.Connection, partida_id: int) -> dict[str, float]:
    """Fee/waste percentages in force for a partida (override ?? budget default)."""
    partida = get_partida(conn, partida_id)
    budget = _budget_for_partida(conn, partida)
    return {
        "fee_pct": resolve_pct(partida.fee_pct_override, budget.default_fee_pct),
        "waste_pct": resolve_pct(partida.waste_pct_override, budget.default_waste_pct),
    }


# ── Conceptos ─────────────────────────────────────────────────────────────────


def _sub_item_eac_fields(conn: sqlite3.Connection, budget_id: int,
                         sub_item_id: int | None) -> tuple[str, float | None]:
    """EAC selector already stored for a sub-item in a budget (default otherwise)."""
    if sub_item_id is None:
        return "weighted_avg", None
    row = conn.execute(
        "SELECT c.eac_method, c.manual_price FROM conceptos c "
        "JOIN partidas p ON p.id = c.partida_id "
        "WHERE p.budget_id = ? AND c.sub_item_id = ? ORDER BY c.id LIMIT 1",
        (budget_id, sub_item_id),
    ).fetchone()
    if row is None:
        return "weighted_avg", None
    return row["eac_method"], row["manual_price"]


def create_concepto(
    conn: sqlite3.Connection,
    partida_id: int,
    code: str,
    description: str,
    *,
    unit: str = DEFAULT_IMPORT_UNIT,
    real_quantity: float = 0.0,
    real_unit_price: float = 0.0,
    waste_pct: float | None = None,
    fee_pct: float | None = None,
    provider: str | None = None,
    order_index: int | None = None,
    long_description: str | None = None,
    line_item_id: int | None = None,
    sub_item_id: int | None = None,
    active: bool = True,
) -> Concepto:
    """Add a concepto to a partida.

    Percentages left as None inherit the partida's effective defaults.  A
    concepto on a sub-item the budget already prices takes that EAC selector.
    """
    real_quantity = _validate_non_negative("real_quantity", real_quantity)
    real_unit_price = _validate_non_negative("real_unit_price", real_unit_price)
    waste_pct = validate_pct("waste_pct", waste_pct, allow_none=True)
    fee_pct = validate_pct("fee_pct", fee_pct, allow_none=True)
    partida = get_partida(conn, partida_id)
    budget = _budget_for_partida(conn, partida)
    require_draft(budget)
    if waste_pct is None or fee_pct is None:
        defaults = effective_defaults(conn, partida_id)
        waste_pct = defaults["waste_pct"] if waste_pct is None else waste_pct
        fee_pct = defaults["fee_pct"] if fee_pct is None else fee_pct
    if order_index is None:
        order_index = next_order_index(conn, "conceptos", "partida_id", partida_id)
    eac_method, manual_price = _sub_item_eac_fields(conn, budget.id, sub_item_id)
    cur = conn.execute(
        "INSERT INTO conceptos (partida_id, code, description, long_description, unit, "
        "real_quantity, waste_pct, real_unit_price, fee_pct, provider, active, "
        "order_index, line_item_id, sub_item_id, eac_method, manual_price) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (partida_id, code or "", description or "", long_description, unit,
         real_quantity, waste_pct, real_unit_price, fee_pct, provider,
         int(bool(active)), order_index, line_item_id, sub_item_id,
         eac_method, manual_price),
    )
    conn.commit()
    return get_concepto(conn, cur.lastrowid)


def get_concepto(conn: sqlite3.Connection, concepto_id: int,
                 include_trashed: bool = False) -> Concepto:
    row = conn.execute("SELECT * FROM conceptos WHERE id = ?", (concepto_id,)).fetchone()
    if row is None or (row["deleted_at"] is not None and not include_trashed):
        raise NotFoundError("concepto", concepto_id)
    return Concepto.from_row(row)


def list_conceptos(conn: sqlite3.Connection, partida_id: int,
                   trashed: bool = False) -> list[Concepto]:
    get_partida(conn, partida_id)
    rows = conn.execute(
        "SELECT * FROM conceptos WHERE partida_id = ? AND deleted_at IS "
        + ("NOT NULL" if trashed else "NULL")
        + " ORDER BY order_index, id",
        (partida_id,),
    ).fetchall()
    return [Concepto.from_row(r) for r in rows]


def budget_for_concepto(conn: sqlite3.Connection, concepto: Concepto) -> Budget:
    return _budget_for_partida(conn, get_partida(conn, concepto.partida_id))


def update_concepto(conn: sqlite3.Connection, concepto_id: int, **values: Any) -> Concepto:
    """Update concepto values (quantities, prices, percentages, texts)."""
    concepto = get_concepto(conn, concepto_id)
    clean = _clean_fields(values, _CONCEPTO_FIELDS)
    require_editable(budget_for_concepto(conn, concepto))
    if clean:
        assignments = ", ".join(f"{k} = ?" for k in clean)
        conn.execute(f"UPDATE conceptos SET {assignments} WHERE id = ?",
                     [*clean.values(), concepto_id])
        conn.commit()
    return get_concepto(conn, concepto_id)


def set_eac_fields(conn: sqlite3.Connection, concepto_id: int, method: str,
                   manual_price: float | None) -> Concepto:
    """Store the EAC selector on a concepto (validated by the rollup module).

    Rollup prices one row per sub-item, so the selector is written to every
    concepto of the budget that shares the concepto's sub-item (trashed ones
    included, so a restore keeps the row consistent).
    """
    if method not in EAC_METHODS:
        raise ValidationError("method", f"unknown EAC method {method!r}")
    concepto = get_concepto(conn, concepto_id)
    budget = budget_for_concepto(conn, concepto)
    require_editable(budget)
    if concepto.sub_item_id is None:
        conn.execute("UPDATE conceptos SET eac_method = ?, manual_price = ? WHERE id = ?",
                     (method, manual_price, concepto_id))
    else:
        conn.execute(
            "UPDATE conceptos SET eac_method = ?, manual_price = ? "
            "WHERE sub_item_id = ? AND partida_id IN "
            "(SELECT id FROM partidas WHERE budget_id = ?)",
            (method, manual_price, concepto.sub_item_id, budget.id),
        )
    conn.commit()
    return get_concepto(conn, concepto_id)


def move_concepto_to_trash(conn: sqlite3.Connection, concepto_id: int) -> Concepto:
    concepto = get_concepto(conn, concepto_id)
    require_draft(budget_for_concepto(conn, concepto))
    conn.execute("UPDATE conceptos SET deleted_at = ? WHERE id = ?", (_now(), concepto_id))
    conn.commit()
    return get_concepto(conn, concepto_id, include_trashed=True)


def restore_concepto(conn: sqlite3.Connection, concepto_id: int) -> Concepto:
    concepto = get_concepto(conn, concepto_id, include_trashed=True)
    require_draft(budget_for_concepto(conn, concepto))
    conn.execute("UPDATE conceptos SET deleted_at = NULL WHERE id = ?", (concepto_id,))
    conn.commit()
    return get_concepto(conn, concepto_id)


def delete_concepto_permanently(conn: sqlite3.Connection, concepto_id: int) -> None:
    concepto = get_concepto(conn, concepto_id, include_trashed=True)
    budget = budget_for_concepto(conn, concepto)
    if not can_delete_permanently(budget.status, budget.deleted_at,
                                  _has_snapshot(conn, budget.id)):
        raise PreconditionFailed(
            f"concepto {concepto_id} belongs to a budget that is not a draft without snapshots"
        )
    conn.execute("DELETE FROM conceptos WHERE id = ?", (concepto_id,))
    conn.commit()


# ── Defaults, totals, duplication ─────────────────────────────────────────────


def apply_defaults(conn: sqlite3.Connection, budget_id: int,
                   apply_fee: bool = True, apply_waste: bool = True) -> dict[str, Any]:
    """Fill zero fee/waste percentages with each partida's effective defaults.

    Returns:
        ``{"updated": n, "errors": [...]}``; a failing concepto is reported
        and the rest still get updated.
    """
    budget = get_budget(conn, budget_id)
    require_editable(budget)
    updated = 0
    errors: list[str] = []
    for partida in list_partidas(conn, budget_id):
        fee = resolve_pct(partida.fee_pct_override, budget.default_fee_pct)
        waste = resolve_pct(partida.waste_pct_override, budget.default_waste_pct)
        for concepto in list_conceptos(conn, partida.id):
            if not concepto.active:
                continue
            changes: dict[str, float] = {}
            if apply_fee and concepto.fee_pct == 0:
                changes["fee_pct"] = fee
            if apply_waste and concepto.waste_pct == 0:
                changes["waste_pct"] = waste
            if not changes:
                continue
            try:
                assignments = ", ".join(f"{k} = ?" for k in changes)
                conn.execute(f"UPDATE conceptos SET {assignments} WHERE id = ?",
                             [*changes.values(), concepto.id])
                updated += 1
            except sqlite3.Error as exc:
                logger.warning("apply_defaults: concepto %d failed: %s", concepto.id, exc)
                errors.append(f"concepto {concepto.id} ({concepto.code}): {exc}")
    conn.commit()
    logger.info("Applied defaults to %d conceptos of budget %d", updated, budget_id)
    return {"updated": updated, "errors": errors}


def budget_totals(conn: sqlite3.Connection, budget_id: int) -> dict[str, Any]:
    """Subtotal per partida, tax and grand total over active conceptos."""
    budget = get_budget(conn, budget_id)
    partidas = []
    subtotal = 0.0
    for partida in list_partidas(conn, budget_id):
        amount = 0.0
        if partida.active:
            amount = sum(c.total_real for c in list_conceptos(conn, partida.id) if c.active)
        partidas.append({"partida_id": partida.id, "name": partida.name,
                         "subtotal": amount})
        subtotal += amount
    tax_amount = subtotal * budget.tax_rate if budget.enable_tax else 0.0
    return {
        "budget_id": budget_id,
        "currency": budget.currency,
        "partidas": partidas,
        "subtotal": subtotal,
        "tax_rate": budget.tax_rate if budget.enable_tax else 0.0,
        "tax_amount": tax_amount,
        "grand_total": subtotal + tax_amount,
    }


def budget_payload(conn: sqlite3.Connection, budget_id: int) -> dict[str, Any]:
    """Full budget tree as plain dicts (used for snapshots and exports)."""
    budget = get_budget(conn, budget_id)
    return {
        "budget": budget.to_dict(),
        "partidas": [
            dict(p.to_dict(), conceptos=[c.to_dict() for c in list_conceptos(conn, p.id)])
            for p in list_partidas(conn, budget_id)
        ],
    }


def duplicate_budget(
    conn: sqlite3.Connection,
    budget_id: int,
    new_name: str,
    preserve_quantities: bool = True,
    preserve_prices: bool = True,
) -> Budget:
    """Copy a budget's partidas, conceptos and mappings into a new draft."""
    source = get_budget(conn, budget_id)
    new_name = _validate_name("new_name", new_name)
    now = _now()
    cur = conn.execute(
        "INSERT INTO budgets (name, project_id, currency, status, enable_tax, tax_rate, "
        "default_fee_pct, default_waste_pct, notes, created_at, updated_at) "
        "VALUES (?, ?, ?, 'draft', ?, ?, ?, ?, ?, ?, ?)",
        (new_name, source.project_id, source.currency, int(source.enable_tax),
         source.tax_rate, source.default_fee_pct, source.default_waste_pct,
         f"Copy of budget {source.id}", now, now),
    )
    new_id = cur.lastrowid
    partida_ids: dict[int, int] = {}
    concepto_ids: dict[int, int] = {}
    for partida in list_partidas(conn, budget_id):
        pcur = conn.execute(
            "INSERT INTO partidas (budget_id, name, order_index, active, fee_pct_override, "
            "waste_pct_override, notes) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (new_id, partida.name, partida.order_index, int(partida.active),
             partida.fee_pct_override, partida.waste_pct_override, partida.notes),
        )
        partida_ids[partida.id] = pcur.lastrowid
        for c in list_conceptos(conn, partida.id):
            ccur = conn.execute(
                "INSERT INTO conceptos (partida_id, code, description, long_description, "
                "unit, real_quantity, waste_pct, real_unit_price, fee_pct, provider, "
                "active, order_index, line_item_id, sub_item_id, eac_method, manual_price) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (pcur.lastrowid, c.code, c.description, c.long_description, c.unit,
                 c.real_quantity if preserve_quantities else 0.0, c.waste_pct,
                 c.real_unit_price if preserve_prices else 0.0, c.fee_pct,
                 c.provider, int(c.active), c.order_index, c.line_item_id,
                 c.sub_item_id, c.eac_method, c.manual_price),
            )
            concepto_ids[c.id] = ccur.lastrowid
    rows = conn.execute(
        "SELECT * FROM catalog_mappings WHERE budget_id = ?", (budget_id,)
    ).fetchall()
    for m in rows:
        if m["partida_id"] not in partida_ids:
            continue
        conn.execute(
            "INSERT INTO catalog_mappings (budget_id, partida_id, concepto_id, department, "
            "major_group_id, line_item_id, sub_item_id, match_type, notes, created_at, "
            "updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (new_id, partida_ids[m["partida_id"]], concepto_ids.get(m["concepto_id"]),
             m["department"], m["major_group_id"], m["line_item_id"], m["sub_item_id"],
             m["match_type"], m["notes"], now, now),
        )
    conn.commit()
    logger.info("Duplicated budget %d into %d (%d partidas, %d conceptos)",
                budget_id, new_id, len(partida_ids), len(concepto_ids))
    return get_budget(conn, new_id)
