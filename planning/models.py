"""Domain records for the budget control planning code.

Rows read from SQLite are turned into these dataclasses by the service
modules.  Derived concepto amounts are computed on read and never stored.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field, fields
from typing import Any


def _from_row(cls, row: sqlite3.Row | dict):
    """Build a dataclass from a row, ignoring columns the class doesn't declare."""
    data = dict(row)
    names = {f.name for f in fields(cls) if f.init}
    return cls(**{k: v for k, v in data.items() if k in names})


# ── Catalog ───────────────────────────────────────────────────────────────────


@dataclass
class CatalogNode:
    """One node of the catalog tree (department, major group, line item or sub-item)."""

    id: int
    level: str
    code: str
    name: str
    parent_id: int | None = None
    active: bool = True
    is_global: bool = False
    applicable_department: str | None = None

    def __post_init__(self) -> None:
        self.active = bool(self.active)
        self.is_global = bool(self.is_global)

    @classmethod
    def from_row(cls, row) -> "CatalogNode":
        return _from_row(cls, row)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Budget hierarchy ──────────────────────────────────────────────────────────


@dataclass
class Budget:
    id: int
    name: str
    currency: str
    status: str
    enable_tax: bool
    tax_rate: float
    default_fee_pct: float
    default_waste_pct: float
    created_at: str
    updated_at: str
    project_id: int | None = None
    notes: str | None = None
    deleted_at: str | None = None

    def __post_init__(self) -> None:
        self.enable_tax = bool(self.enable_tax)

    @classmethod
    def from_row(cls, row) -> "Budget":
        return _from_row(cls, row)

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Partida:
    id: int
    budget_id: int
    name: str
    order_index: int
    active: bool = True
    fee_pct_override: float | None = None
    waste_pct_override: float | None = None
    notes: str | None = None
    deleted_at: str | None = None

    def __post_init__(self) -> None:
        self.active = bool(self.active)

    @classmethod
    def from_row(cls, row) -> "Partida":
        return _from_row(cls, row)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Concepto:
    """A priced item.  Quantities and prices are stored, totals are derived."""

    id: int
    partida_id: int
    code: str
    description: str
    unit: str = "PZA"
    real_quantity: float = 0.0
    waste_pct: float = 0.0
    real_unit_price: float = 0.0
    fee_pct: float = 0.0
    provider: str | None = None
    active: bool = True
    order_index: int = 0
    long_description: str | None = None
    line_item_id: int | None = None
    sub_item_id: int | None = None
    eac_method: str = "weighted_avg"
    manual_price: float | None = None
    deleted_at: str | None = None

    def __post_init__(self) -> None:
        self.active = bool(self.active)

    @classmethod
    def from_row(cls, row) -> "Concepto":
        return _from_row(cls, row)

    @property
    def adjusted_quantity(self) -> float:
        return self.real_quantity * (1 + self.waste_pct)

    @property
    def unit_price_with_fee(self) -> float:
        return self.real_unit_price * (1 + self.fee_pct)

    @property
    def total_real(self) -> float:
        return self.adjusted_quantity * self.unit_price_with_fee

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["adjusted_quantity"] = self.adjusted_quantity
        d["unit_price_with_fee"] = self.unit_price_with_fee
        d["total_real"] = self.total_real
        return d


# ── Mapping and purchases ─────────────────────────────────────────────────────


@dataclass
class MappingRecord:
    id: int
    budget_id: int
    partida_id: int
    department: str
    match_type: str
    created_at: str
    updated_at: str
    major_group_id: int | None = None
    line_item_id: int | None = None
    sub_item_id: int | None = None
    concepto_id: int | None = None
    notes: str | None = None

    @classmethod
    def from_row(cls, row) -> "MappingRecord":
        return _from_row(cls, row)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PurchaseRecord:
    """One purchase or commitment from the procurement feed."""

    sub_item_id: int
    quantity: float
    unit_price: float
    purchase_date: str
    id: int | None = None
    budget_id: int | None = None
    reference: str | None = None
    provider: str | None = None

    @classmethod
    def from_row(cls, row) -> "PurchaseRecord":
        return _from_row(cls, row)

    @property
    def amount(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Rollup ────────────────────────────────────────────────────────────────────


@dataclass
class BaselineLine:
    """Baseline contribution of one concepto to a sub-item's rollup row."""

    sub_item_id: int
    quantity: float
    total: float
    unit_price: float = 0.0
    eac_method: str = "weighted_avg"
    manual_price: float | None = None
    concepto_id: int | None = None
    line_item_id: int | None = None


@dataclass
class RollupRow:
    """Computed forecast for one sub-item; recomputed on every read."""

    sub_item_id: int
    base_quantity: float = 0.0
    base_price: float = 0.0
    base_total: float = 0.0
    purchased_quantity: float = 0.0
    purchased_total: float = 0.0
    weighted_avg_price: float = 0.0
    last_price: float | None = None
    remaining_quantity: float = 0.0
    eac_method: str = "weighted_avg"
    manual_price: float | None = None
    eac_price: float = 0.0
    eac_total: float = 0.0
    variance_total: float = 0.0
    variance_pct: float = 0.0
    completion_pct: float = 0.0
    supply_status: str = "required"
    eac_warning: str | None = None
    # Catalog coordinates, filled in by compute_rollup
    sub_item_code: str = ""
    sub_item_name: str = ""
    line_item_id: int | None = None
    line_item_code: str = ""
    line_item_name: str = ""
    major_group_id: int | None = None
    major_group_code: str = ""
    major_group_name: str = ""
    department: str = ""
    concepto_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
