"""
Rollup / EAC endpoints.

GET    /api/v1/budgets/{id}/rollup                    → rows + KPIs
GET    /api/v1/budgets/{id}/rollup/summary            → KPIs only
GET    /api/v1/budgets/{id}/rollup/aggregates/{level} → line_item | major_group | department
GET    /api/v1/budgets/{id}/rollup/top-variances      → largest absolute variances
GET    /api/v1/budgets/{id}/rollup/alerts             → pending purchases by major group
GET    /api/v1/budgets/{id}/rollup/export?fmt=csv     → CSV, NDJSON or Excel download
PUT    /api/v1/conceptos/{id}/eac-method              → choose the EAC method
PUT    /api/v1/budgets/{id}/supply-status/{sub_item}  → set or clear a supply status
GET|POST /api/v1/budgets/{id}/purchases               → purchase feed
POST   /api/v1/budgets/{id}/purchases/bulk            → validated bulk load
DELETE /api/v1/budgets/{id}/purchases/{purchase_id}

Rollup rows are recomputed on every request; nothing here is cached.
"""

import csv
import io
import json
import sqlite3
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from api.database import get_db
from api.models import (
    ConceptoOut,
    EacMethodUpdate,
    PurchaseIn,
    PurchaseOut,
    RollupKpis,
    RollupOut,
    RollupRowOut,
    SupplyStatusUpdate,
)
from planning import rollup

router = APIRouter(tags=["rollup"])

_EXPORT_COLUMNS = [
    "department", "major_group_code", "major_group_name", "line_item_code",
    "line_item_name", "sub_item_id", "sub_item_code", "sub_item_name",
    "base_quantity", "base_price", "base_total", "purchased_quantity",
    "purchased_total", "weighted_avg_price", "last_price", "remaining_quantity",
    "eac_method", "eac_price", "eac_total", "variance_total", "variance_pct",
    "variance_band", "completion_pct", "supply_status", "eac_warning",
]


def _compute(request: Request, conn: sqlite3.Connection, budget_id: int) -> rollup.Rollup:
    return rollup.compute_rollup(conn, budget_id, config=request.app.state.config)


@router.get("/budgets/{budget_id}/rollup", response_model=RollupOut,
            summary="Rollup rows and KPIs")
def get_rollup(budget_id: int, request: Request,
               conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return _compute(request, conn, budget_id).to_dict()


@router.get("/budgets/{budget_id}/rollup/summary", response_model=RollupKpis,
            summary="Budget-level KPIs")
def get_summary(budget_id: int, request: Request,
                conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return _compute(request, conn, budget_id).to_dict()["kpis"]


@router.get("/budgets/{budget_id}/rollup/aggregates/{level}",
            summary="Rollup totals by catalog level")
def get_aggregates(budget_id: int, level: str, request: Request,
                   conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return _compute(request, conn, budget_id).aggregates(level)


@router.get("/budgets/{budget_id}/rollup/top-variances", response_model=list[RollupRowOut],
            summary="Rows with the largest absolute variance")
def get_top_variances(budget_id: int, request: Request,
                      limit: int = Query(5, ge=1, le=100),
                      conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    result = _compute(request, conn, budget_id)
    return [dict(r.to_dict(), variance_band=result.band(r.variance_pct))
            for r in rollup.top_variances(result.rows, limit)]


@router.get("/budgets/{budget_id}/rollup/alerts", summary="Pending purchases by major group")
def get_alerts(budget_id: int, request: Request,
               conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return rollup.material_alerts(_compute(request, conn, budget_id).rows)


@router.get("/budgets/{budget_id}/rollup/export",
            summary="Download the rollup as CSV, JSON or Excel")
def export_rollup(
    budget_id: int,
    request: Request,
    fmt: str = Query("csv", pattern="^(csv|json|xlsx)$", description="Output format"),
    conn: sqlite3.Connection = Depends(get_db),
) -> StreamingResponse:
    """Stream rollup rows; JSON is newline-delimited, Excel adds a Metadata sheet."""
    result = _compute(request, conn, budget_id)
    rows = result.row_dicts()
    export_date = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    extra_headers = {"X-Total-Count": str(len(rows))}
    filename = f"rollup_budget_{budget_id}"

    if fmt == "csv":
        def csv_stream():
            buf = io.StringIO()
            writer = csv.DictWriter(buf, fieldnames=_EXPORT_COLUMNS, extrasaction="ignore")
            writer.writeheader()
            yield buf.getvalue()
            for row in rows:
                buf.seek(0)
                buf.truncate()
                writer.writerow(row)
                yield buf.getvalue()

        return StreamingResponse(
            csv_stream(),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}.csv",
                     **extra_headers},
        )

    if fmt == "xlsx":
        import openpyxl

        def xlsx_bytes() -> bytes:
            wb = openpyxl.Workbook(write_only=True)
            meta_ws = wb.create_sheet("Metadata")
            meta_ws.append(["Budget", budget_id])
            meta_ws.append(["Currency", result.currency])
            meta_ws.append(["Export Date", export_date])
            meta_ws.append(["Total Records", len(rows)])
            for key in ("base_total", "eac_total", "variance_total", "completion_pct"):
                meta_ws.append([key, result.kpis[key]])
            ws = wb.create_sheet("Rollup")
            ws.append(_EXPORT_COLUMNS)
            for row in rows:
                ws.append([row.get(c) for c in _EXPORT_COLUMNS])
            buf = io.BytesIO()
            wb.save(buf)
            return buf.getvalue()

        return StreamingResponse(
            iter([xlsx_bytes()]),
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": f"attachment; filename={filename}.xlsx",
                     **extra_headers},
        )

    def json_stream():
        for row in rows:
            yield json.dumps({c: row.get(c) for c in _EXPORT_COLUMNS}) + "\n"

    return StreamingResponse(
        json_stream(),
        media_type="application/x-ndjson",
        headers={"Content-Disposition": f"attachment; filename={filename}.ndjson",
                 **extra_headers},
    )


# ── Inputs to the next rollup ─────────────────────────────────────────────────

@router.put("/conceptos/{concepto_id}/eac-method", response_model=ConceptoOut,
            summary="Choose a concepto's EAC method")
def put_eac_method(concepto_id: int, body: EacMethodUpdate,
                   conn: sqlite3.Connection = Depends(get_db)) -> dict:
    """``manual`` without a price is stored; the rollup falls back and flags the row."""
    return rollup.set_eac_method(conn, concepto_id, body.method, body.manual_price).to_dict()


@router.put("/budgets/{budget_id}/supply-status/{sub_item_id}",
            status_code=status.HTTP_204_NO_CONTENT, summary="Set a sub-item's supply status")
def put_supply_status(budget_id: int, sub_item_id: int, body: SupplyStatusUpdate,
                      conn: sqlite3.Connection = Depends(get_db)) -> None:
    rollup.set_supply_status(conn, budget_id, sub_item_id, body.status)


@router.get("/budgets/{budget_id}/purchases", response_model=list[PurchaseOut],
            summary="List purchases")
def list_purchases(budget_id: int,
                   sub_item_id: int | None = Query(None),
                   conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return [p.to_dict() for p in rollup.list_purchases(conn, budget_id, sub_item_id)]


@router.post("/budgets/{budget_id}/purchases", response_model=PurchaseOut,
             status_code=status.HTTP_201_CREATED, summary="Record a purchase")
def create_purchase(budget_id: int, body: PurchaseIn,
                    conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return rollup.record_purchase(conn, budget_id, **body.model_dump()).to_dict()


@router.post("/budgets/{budget_id}/purchases/bulk", status_code=status.HTTP_201_CREATED,
             summary="Bulk-load purchases")
def bulk_purchases(budget_id: int, body: list[PurchaseIn],
                   conn: sqlite3.Connection = Depends(get_db)) -> dict:
    """All records are validated before any is inserted."""
    inserted = rollup.import_purchases(conn, budget_id, [p.model_dump() for p in body])
    return {"inserted": inserted}


@router.delete("/budgets/{budget_id}/purchases/{purchase_id}",
               status_code=status.HTTP_204_NO_CONTENT, summary="Delete a purchase")
def delete_purchase(budget_id: int, purchase_id: int,
                    conn: sqlite3.Connection = Depends(get_db)) -> None:
    rollup.delete_purchase(conn, budget_id, purchase_id)
