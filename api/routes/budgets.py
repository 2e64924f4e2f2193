"""
Budget, partida and concepto endpoints.

Budgets:
    GET    /api/v1/budgets                          → live budgets (?trashed=true for the trash)
    POST   /api/v1/budgets                          → create a draft
    GET    /api/v1/budgets/{id}                     → one budget
    PATCH  /api/v1/budgets/{id}                     → update settings
    POST   /api/v1/budgets/{id}/status              → publish (with snapshot) or close
    POST   /api/v1/budgets/{id}/trash | /restore    → soft delete / restore
    DELETE /api/v1/budgets/{id}                     → permanent delete (draft, no snapshots)
    POST   /api/v1/budgets/{id}/duplicate           → copy into a new draft
    POST   /api/v1/budgets/{id}/apply-defaults      → fill zero fee/waste percentages
    GET    /api/v1/budgets/{id}/totals              → subtotals, tax, grand total
    GET|POST /api/v1/budgets/{id}/snapshots         → list / record snapshots
    GET    /api/v1/budgets/{id}/snapshots/compare   → compare two versions

Partidas and conceptos follow the same trash / restore / delete pattern.
"""

import sqlite3

from fastapi import APIRouter, Depends, Query, Request, status

from api.database import get_db
from api.models import (
    ApplyDefaultsOut,
    ApplyDefaultsRequest,
    BudgetCreate,
    BudgetOut,
    BudgetUpdate,
    ConceptoCreate,
    ConceptoOut,
    ConceptoUpdate,
    DuplicateRequest,
    EffectiveDefaultsOut,
    PartidaCreate,
    PartidaOut,
    PartidaUpdate,
    SnapshotCreate,
    StatusChange,
)
from planning import budgets, snapshots
from planning.errors import NotFoundError, ValidationError

router = APIRouter(tags=["budgets"])


# ── Budgets ───────────────────────────────────────────────────────────────────

@router.get("/budgets", response_model=list[BudgetOut], summary="List budgets")
def list_budgets(
    trashed: bool = Query(False, description="List the trash instead of live budgets"),
    status_filter: str | None = Query(None, alias="status",
                                      description="draft | published | closed"),
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict]:
    return [b.to_dict() for b in budgets.list_budgets(conn, trashed, status_filter)]


@router.post("/budgets", response_model=BudgetOut, status_code=status.HTTP_201_CREATED,
             summary="Create a draft budget")
def create_budget(body: BudgetCreate, request: Request,
                  conn: sqlite3.Connection = Depends(get_db)) -> dict:
    """Unset currency and percentages come from the server configuration."""
    budget = budgets.create_budget(
        conn, body.name, body.currency,
        project_id=body.project_id,
        enable_tax=body.enable_tax,
        tax_rate=body.tax_rate,
        default_fee_pct=body.default_fee_pct,
        default_waste_pct=body.default_waste_pct,
        notes=body.notes,
        config=request.app.state.config,
    )
    return budget.to_dict()


@router.get("/budgets/{budget_id}", response_model=BudgetOut, summary="Get a budget")
def get_budget(budget_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.get_budget(conn, budget_id).to_dict()


@router.patch("/budgets/{budget_id}", response_model=BudgetOut,
              summary="Update budget settings")
def update_budget(budget_id: int, body: BudgetUpdate,
                  conn: sqlite3.Connection = Depends(get_db)) -> dict:
    values = body.model_dump(exclude_unset=True)
    return budgets.update_budget(conn, budget_id, **values).to_dict()


@router.post("/budgets/{budget_id}/status", response_model=BudgetOut,
             summary="Publish or close a budget")
def change_status(budget_id: int, body: StatusChange,
                  conn: sqlite3.Connection = Depends(get_db)) -> dict:
    """Publishing records a snapshot first; closing makes the budget read-only."""
    if body.status == "published":
        return budgets.publish_budget(conn, budget_id, notes=body.notes).to_dict()
    return budgets.close_budget(conn, budget_id).to_dict()


@router.post("/budgets/{budget_id}/trash", response_model=BudgetOut,
             summary="Move a budget to the trash")
def trash_budget(budget_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.move_budget_to_trash(conn, budget_id).to_dict()


@router.post("/budgets/{budget_id}/restore", response_model=BudgetOut,
             summary="Restore a budget from the trash")
def restore_budget(budget_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.restore_budget(conn, budget_id).to_dict()


@router.delete("/budgets/{budget_id}", status_code=status.HTTP_204_NO_CONTENT,
               summary="Delete a budget permanently")
def delete_budget(budget_id: int, conn: sqlite3.Connection = Depends(get_db)) -> None:
    budgets.delete_budget_permanently(conn, budget_id)


@router.post("/budgets/{budget_id}/duplicate", response_model=BudgetOut,
             status_code=status.HTTP_201_CREATED, summary="Duplicate a budget")
def duplicate_budget(budget_id: int, body: DuplicateRequest,
                     conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.duplicate_budget(
        conn, budget_id, body.new_name,
        preserve_quantities=body.preserve_quantities,
        preserve_prices=body.preserve_prices,
    ).to_dict()


@router.post("/budgets/{budget_id}/apply-defaults", response_model=ApplyDefaultsOut,
             summary="Fill zero fee/waste percentages with the defaults")
def apply_defaults(budget_id: int, body: ApplyDefaultsRequest,
                   conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.apply_defaults(conn, budget_id, body.apply_fee, body.apply_waste)


@router.get("/budgets/{budget_id}/totals", summary="Budget subtotals, tax and grand total")
def budget_totals(budget_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.budget_totals(conn, budget_id)


# ── Snapshots ─────────────────────────────────────────────────────────────────

@router.get("/budgets/{budget_id}/snapshots", summary="List snapshots, newest first")
def list_snapshots(budget_id: int, conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return snapshots.list_snapshots(conn, budget_id)


@router.post("/budgets/{budget_id}/snapshots", status_code=status.HTTP_201_CREATED,
             summary="Record a snapshot")
def create_snapshot(budget_id: int, body: SnapshotCreate,
                    conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return snapshots.create_snapshot(conn, budget_id, notes=body.notes)


def _snapshot_by_version(conn: sqlite3.Connection, budget_id: int, version: int) -> dict:
    for header in snapshots.list_snapshots(conn, budget_id):
        if header["version_number"] == version:
            return snapshots.get_snapshot(conn, header["id"])
    raise NotFoundError(f"snapshot version of budget {budget_id}", version)


@router.get("/budgets/{budget_id}/snapshots/compare",
            summary="Compare two snapshot versions")
def compare_snapshots(
    budget_id: int,
    from_version: int = Query(..., ge=1),
    to_version: int = Query(..., ge=1),
    conn: sqlite3.Connection = Depends(get_db),
) -> dict:
    if from_version == to_version:
        raise ValidationError("to_version", "must differ from from_version")
    return snapshots.compare_snapshots(
        _snapshot_by_version(conn, budget_id, from_version),
        _snapshot_by_version(conn, budget_id, to_version),
    )


@router.get("/snapshots/{snapshot_id}", summary="Get a snapshot with its payload")
def get_snapshot(snapshot_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return snapshots.get_snapshot(conn, snapshot_id)


# ── Partidas ──────────────────────────────────────────────────────────────────

@router.get("/budgets/{budget_id}/partidas", response_model=list[PartidaOut],
            summary="List partidas")
def list_partidas(budget_id: int, trashed: bool = Query(False),
                  conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return [p.to_dict() for p in budgets.list_partidas(conn, budget_id, trashed)]


@router.post("/budgets/{budget_id}/partidas", response_model=PartidaOut,
             status_code=status.HTTP_201_CREATED, summary="Add a partida")
def create_partida(budget_id: int, body: PartidaCreate,
                   conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.create_partida(conn, budget_id, **body.model_dump()).to_dict()


@router.get("/partidas/{partida_id}", response_model=PartidaOut, summary="Get a partida")
def get_partida(partida_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.get_partida(conn, partida_id).to_dict()


@router.patch("/partidas/{partida_id}", response_model=PartidaOut,
              summary="Update a partida")
def update_partida(partida_id: int, body: PartidaUpdate,
                   conn: sqlite3.Connection = Depends(get_db)) -> dict:
    values = body.model_dump(exclude_unset=True)
    return budgets.update_partida(conn, partida_id, **values).to_dict()


@router.get("/partidas/{partida_id}/defaults", response_model=EffectiveDefaultsOut,
            summary="Fee and waste percentages in force for a partida")
def partida_defaults(partida_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.effective_defaults(conn, partida_id)


@router.post("/partidas/{partida_id}/trash", response_model=PartidaOut,
             summary="Move a partida to the trash")
def trash_partida(partida_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.move_partida_to_trash(conn, partida_id).to_dict()


@router.post("/partidas/{partida_id}/restore", response_model=PartidaOut,
             summary="Restore a partida from the trash")
def restore_partida(partida_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.restore_partida(conn, partida_id).to_dict()


@router.delete("/partidas/{partida_id}", status_code=status.HTTP_204_NO_CONTENT,
               summary="Delete a partida permanently")
def delete_partida(partida_id: int, conn: sqlite3.Connection = Depends(get_db)) -> None:
    budgets.delete_partida_permanently(conn, partida_id)


# ── Conceptos ─────────────────────────────────────────────────────────────────

@router.get("/partidas/{partida_id}/conceptos", response_model=list[ConceptoOut],
            summary="List conceptos")
def list_conceptos(partida_id: int, trashed: bool = Query(False),
                   conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return [c.to_dict() for c in budgets.list_conceptos(conn, partida_id, trashed)]


@router.post("/partidas/{partida_id}/conceptos", response_model=ConceptoOut,
             status_code=status.HTTP_201_CREATED, summary="Add a concepto")
def create_concepto(partida_id: int, body: ConceptoCreate,
                    conn: sqlite3.Connection = Depends(get_db)) -> dict:
    """Percentages left out inherit the partida's effective defaults."""
    values = body.model_dump()
    code = values.pop("code")
    description = values.pop("description")
    return budgets.create_concepto(conn, partida_id, code, description, **values).to_dict()


@router.get("/conceptos/{concepto_id}", response_model=ConceptoOut,
            summary="Get a concepto")
def get_concepto(concepto_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.get_concepto(conn, concepto_id).to_dict()


@router.patch("/conceptos/{concepto_id}", response_model=ConceptoOut,
              summary="Update a concepto")
def update_concepto(concepto_id: int, body: ConceptoUpdate,
                    conn: sqlite3.Connection = Depends(get_db)) -> dict:
    values = body.model_dump(exclude_unset=True)
    return budgets.update_concepto(conn, concepto_id, **values).to_dict()


@router.post("/conceptos/{concepto_id}/trash", response_model=ConceptoOut,
             summary="Move a concepto to the trash")
def trash_concepto(concepto_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.move_concepto_to_trash(conn, concepto_id).to_dict()


@router.post("/conceptos/{concepto_id}/restore", response_model=ConceptoOut,
             summary="Restore a concepto from the trash")
def restore_concepto(concepto_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return budgets.restore_concepto(conn, concepto_id).to_dict()


@router.delete("/conceptos/{concepto_id}", status_code=status.HTTP_204_NO_CONTENT,
               summary="Delete a concepto permanently")
def delete_concepto(concepto_id: int, conn: sqlite3.Connection = Depends(get_db)) -> None:
    budgets.delete_concepto_permanently(conn, concepto_id)
