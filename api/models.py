"""
Pydantic request/response models for the API.

Request models validate shapes and ranges; business rules (lifecycle,
catalog references) are enforced by the ``planning`` services and surface
through the error handlers in ``api.app``.  Optional fields default to None
so partial updates only touch what the client sent.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

EacMethod = Literal["weighted_avg", "last_price", "manual"]
SupplyStatus = Literal["not_required", "required", "requested", "in_transit", "delivered"]
MatchType = Literal["exact_code", "fuzzy_name", "manual", "none"]


# ── Catalog models ────────────────────────────────────────────────────────────

class CatalogNodeOut(BaseModel):
    """A node of the catalog tree."""
    id: int = Field(..., description="Unique node ID", examples=[3])
    level: str = Field(..., description="department | major_group | line_item | sub_item",
                       examples=["major_group"])
    code: str = Field(..., description="Code, unique within the parent", examples=["01"])
    name: str = Field(..., description="Display name", examples=["Cimentación"])
    parent_id: int | None = Field(None, description="Parent node ID (null for departments)")
    active: bool = Field(True, description="Inactive nodes are hidden from listings")
    is_global: bool = Field(False, description="Offered under every line item of its department")
    applicable_department: str | None = Field(None, description="Department code of a global sub-item")


# ── Budget models ─────────────────────────────────────────────────────────────

class BudgetCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Budget name", examples=["Casa Norte"])
    currency: str | None = Field(None, description="3-letter ISO currency code", examples=["MXN"])
    project_id: int | None = Field(None, description="Owning project ID")
    enable_tax: bool = Field(True, description="Add tax to the grand total")
    tax_rate: float | None = Field(None, ge=0, le=1, description="Tax rate as a fraction", examples=[0.16])
    default_fee_pct: float | None = Field(None, ge=0, le=1, description="Default fee %", examples=[0.17])
    default_waste_pct: float | None = Field(None, ge=0, le=1, description="Default waste %", examples=[0.05])
    notes: str | None = None


class BudgetUpdate(BaseModel):
    name: str | None = Field(None, min_length=1)
    currency: str | None = None
    project_id: int | None = None
    enable_tax: bool | None = None
    tax_rate: float | None = Field(None, ge=0, le=1)
    default_fee_pct: float | None = Field(None, ge=0, le=1)
    default_waste_pct: float | None = Field(None, ge=0, le=1)
    notes: str | None = None


class BudgetOut(BaseModel):
    """A budget header with its settings and lifecycle status."""
    id: int = Field(..., examples=[1])
    name: str = Field(..., examples=["Casa Norte"])
    project_id: int | None = None
    currency: str = Field(..., examples=["MXN"])
    status: str = Field(..., description="draft | published | closed", examples=["draft"])
    enable_tax: bool
    tax_rate: float = Field(..., examples=[0.16])
    default_fee_pct: float = Field(..., examples=[0.17])
    default_waste_pct: float = Field(..., examples=[0.05])
    notes: str | None = None
    created_at: str
    updated_at: str
    deleted_at: str | None = Field(None, description="Set while the budget is in the trash")


class StatusChange(BaseModel):
    status: Literal["published", "closed"] = Field(..., description="Target status")
    notes: str | None = Field(None, description="Snapshot notes when publishing")


class DuplicateRequest(BaseModel):
    new_name: str = Field(..., min_length=1, examples=["Casa Norte (v2)"])
    preserve_quantities: bool = True
    preserve_prices: bool = True


class ApplyDefaultsRequest(BaseModel):
    apply_fee: bool = True
    apply_waste: bool = True


class ApplyDefaultsOut(BaseModel):
    updated: int = Field(..., description="Conceptos changed")
    errors: list[str] = Field(default_factory=list)


class PartidaCreate(BaseModel):
    name: str = Field(..., min_length=1, examples=["01 - Cimentación"])
    order_index: int | None = Field(None, ge=0, description="Defaults to after the last partida")
    fee_pct_override: float | None = Field(None, ge=0, le=1)
    waste_pct_override: float | None = Field(None, ge=0, le=1)
    notes: str | None = None


class PartidaUpdate(BaseModel):
    name: str | None = Field(None, min_length=1)
    order_index: int | None = Field(None, ge=0)
    active: bool | None = None
    fee_pct_override: float | None = Field(None, ge=0, le=1)
    waste_pct_override: float | None = Field(None, ge=0, le=1)
    notes: str | None = None


class PartidaOut(BaseModel):
    id: int
    budget_id: int
    name: str
    order_index: int
    active: bool
    fee_pct_override: float | None = None
    waste_pct_override: float | None = None
    notes: str | None = None
    deleted_at: str | None = None


class ConceptoCreate(BaseModel):
    code: str = Field("", examples=["01.01"])
    description: str = Field("", examples=["Excavación / Manual"])
    long_description: str | None = None
    unit: str = Field("PZA", examples=["M3"])
    real_quantity: float = Field(0.0, ge=0)
    real_unit_price: float = Field(0.0, ge=0)
    waste_pct: float | None = Field(None, ge=0, le=1, description="Defaults to the partida's effective waste %")
    fee_pct: float | None = Field(None, ge=0, le=1, description="Defaults to the partida's effective fee %")
    provider: str | None = None
    order_index: int | None = Field(None, ge=0)
    line_item_id: int | None = None
    sub_item_id: int | None = None


class ConceptoUpdate(BaseModel):
    code: str | None = None
    description: str | None = None
    long_description: str | None = None
    unit: str | None = None
    real_quantity: float | None = Field(None, ge=0)
    real_unit_price: float | None = Field(None, ge=0)
    waste_pct: float | None = Field(None, ge=0, le=1)
    fee_pct: float | None = Field(None, ge=0, le=1)
    provider: str | None = None
    active: bool | None = None
    order_index: int | None = Field(None, ge=0)
    line_item_id: int | None = None
    sub_item_id: int | None = None


class ConceptoOut(BaseModel):
    """A priced item; adjusted quantity and totals are derived."""
    id: int
    partida_id: int
    code: str
    description: str
    long_description: str | None = None
    unit: str
    real_quantity: float
    waste_pct: float
    real_unit_price: float
    fee_pct: float
    provider: str | None = None
    active: bool
    order_index: int
    line_item_id: int | None = None
    sub_item_id: int | None = None
    eac_method: str = Field(..., examples=["weighted_avg"])
    manual_price: float | None = None
    deleted_at: str | None = None
    adjusted_quantity: float = Field(..., description="real_quantity * (1 + waste_pct)")
    unit_price_with_fee: float = Field(..., description="real_unit_price * (1 + fee_pct)")
    total_real: float = Field(..., description="adjusted_quantity * unit_price_with_fee")


class EffectiveDefaultsOut(BaseModel):
    fee_pct: float = Field(..., examples=[0.17])
    waste_pct: float = Field(..., examples=[0.05])


class SnapshotCreate(BaseModel):
    notes: str | None = None


# ── Mapping models ────────────────────────────────────────────────────────────

class MappingUpsert(BaseModel):
    department: str = Field(..., min_length=1, examples=["CONST"])
    major_group_id: int | None = None
    line_item_id: int | None = None
    sub_item_id: int | None = None
    concepto_id: int | None = None
    match_type: MatchType = "manual"
    notes: str | None = None


class MappingOut(BaseModel):
    id: int
    budget_id: int
    partida_id: int
    concepto_id: int | None = None
    department: str
    major_group_id: int | None = None
    line_item_id: int | None = None
    sub_item_id: int | None = None
    match_type: str
    notes: str | None = None
    created_at: str
    updated_at: str


class MatchRequest(BaseModel):
    code: str | None = Field(None, examples=["01"])
    name: str | None = Field(None, description="Partida name or concepto description",
                             examples=["Cimentación"])
    department: str | None = Field(None, description="Required for major group matching")
    major_group_id: int | None = Field(None, description="Preferred major group for sub-item matching")


class MatchOut(BaseModel):
    mapped: bool
    match_type: str = Field(..., examples=["exact_code"])
    node_id: int | None = None
    code: str | None = None
    name: str | None = None
    reason: str = Field("", description="Why nothing matched")


class TemplatePartidaIn(BaseModel):
    key: str | int
    code: str | None = None
    name: str | None = None


class TemplateConceptoIn(BaseModel):
    key: str | int
    partida_key: str | int | None = None
    code: str | None = None
    description: str | None = None


class TemplateMappingRequest(BaseModel):
    department: str = Field(..., min_length=1)
    partidas: list[TemplatePartidaIn] = Field(default_factory=list)
    conceptos: list[TemplateConceptoIn] = Field(default_factory=list)


class AutoMapRequest(BaseModel):
    department: str = Field(..., min_length=1, examples=["CONST"])


# ── Import models ─────────────────────────────────────────────────────────────

class LineItemSelectionIn(BaseModel):
    line_item_id: int
    sub_item_ids: list[int] = Field(default_factory=list)


class MajorGroupSelectionIn(BaseModel):
    major_group_id: int
    line_items: list[LineItemSelectionIn] = Field(default_factory=list)


class ImportRequest(BaseModel):
    department: str = Field(..., min_length=1, examples=["CONST"])
    selection: list[MajorGroupSelectionIn] = Field(default_factory=list)


class ImportOut(BaseModel):
    """Counts and per-item issues of a catalog import."""
    status: str = Field(..., description="completed | partial", examples=["completed"])
    partidas_created: int = Field(..., examples=[1])
    conceptos_created: int = Field(..., examples=[3])
    mappings_created: int = Field(..., examples=[1])
    partida_ids: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    issues: list[dict[str, Any]] = Field(default_factory=list)


# ── Rollup models ─────────────────────────────────────────────────────────────

class EacMethodUpdate(BaseModel):
    method: EacMethod = Field(..., examples=["manual"])
    manual_price: float | None = Field(None, ge=0, examples=[215.0])


class SupplyStatusUpdate(BaseModel):
    status: SupplyStatus | None = Field(None, description="Null clears the stored status")


class PurchaseIn(BaseModel):
    sub_item_id: int
    quantity: float = Field(..., gt=0, examples=[50])
    unit_price: float = Field(..., ge=0, examples=[200.0])
    purchase_date: str | None = Field(None, description="ISO date; defaults to today",
                                      examples=["2026-03-15"])
    reference: str | None = Field(None, examples=["PO-1042"])
    provider: str | None = None


class PurchaseOut(PurchaseIn):
    id: int
    budget_id: int


class RollupRowOut(BaseModel):
    """One sub-item's forecast."""
    sub_item_id: int
    sub_item_code: str = ""
    sub_item_name: str = ""
    line_item_id: int | None = None
    line_item_code: str = ""
    major_group_id: int | None = None
    major_group_code: str = ""
    department: str = ""
    base_quantity: float
    base_price: float
    base_total: float
    purchased_quantity: float
    purchased_total: float
    weighted_avg_price: float
    last_price: float | None = None
    remaining_quantity: float
    eac_method: str
    manual_price: float | None = None
    eac_price: float
    eac_total: float
    variance_total: float
    variance_pct: float = Field(..., description="Fraction of base_total")
    variance_band: str = Field(..., description="acceptable | caution | critical")
    completion_pct: float = Field(..., description="0-100")
    supply_status: str
    eac_warning: str | None = None


class RollupKpis(BaseModel):
    base_total: float
    purchased_total: float
    eac_total: float
    variance_total: float
    variance_pct: float
    variance_band: str
    completion_pct: float
    row_count: int
    completed_rows: int


class RollupOut(BaseModel):
    budget_id: int
    currency: str
    rows: list[RollupRowOut]
    kpis: RollupKpis


# ── Error models ──────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """Standard error response body."""
    error: str = Field(..., description="Error type", examples=["PreconditionFailed"])
    detail: str | None = Field(None, description="Human-readable reason")
    status_code: int = Field(..., description="HTTP status code", examples=[409])
