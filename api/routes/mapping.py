"""
Catalog mapping endpoints.

GET    /api/v1/budgets/{id}/mappings                   → mapping records of a budget
GET    /api/v1/budgets/{id}/mappings/{partida_id}      → one partida's mapping
PUT    /api/v1/budgets/{id}/mappings/{partida_id}      → create or replace it
DELETE /api/v1/budgets/{id}/mappings/{partida_id}      → remove it
POST   /api/v1/budgets/{id}/mappings/auto              → match the budget's own partidas/conceptos
POST   /api/v1/mapping/major-group                     → match one partida
POST   /api/v1/mapping/sub-item                        → match one concepto
POST   /api/v1/mapping/template                        → match a whole template (read-only)

Unmatched items are normal results (``match_type = "none"`` with a reason).
"""

import sqlite3

from fastapi import APIRouter, Depends, status

from api.database import get_db
from api.models import (
    AutoMapRequest,
    MappingOut,
    MappingUpsert,
    MatchOut,
    MatchRequest,
    TemplateMappingRequest,
)
from planning import mapping
from planning.errors import ValidationError

router = APIRouter(tags=["mapping"])


@router.get("/budgets/{budget_id}/mappings", response_model=list[MappingOut],
            summary="List a budget's mappings")
def list_mappings(budget_id: int, conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return [m.to_dict() for m in mapping.list_mappings(conn, budget_id)]


@router.get("/budgets/{budget_id}/mappings/{partida_id}", response_model=MappingOut,
            summary="Get a partida's mapping")
def get_mapping(budget_id: int, partida_id: int,
                conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return mapping.get_mapping(conn, budget_id, partida_id).to_dict()


@router.put("/budgets/{budget_id}/mappings/{partida_id}", response_model=MappingOut,
            summary="Create or replace a partida's mapping")
def upsert_mapping(budget_id: int, partida_id: int, body: MappingUpsert,
                   conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return mapping.upsert_mapping(conn, budget_id, partida_id, **body.model_dump()).to_dict()


@router.delete("/budgets/{budget_id}/mappings/{partida_id}",
               status_code=status.HTTP_204_NO_CONTENT, summary="Remove a partida's mapping")
def delete_mapping(budget_id: int, partida_id: int,
                   conn: sqlite3.Connection = Depends(get_db)) -> None:
    mapping.delete_mapping(conn, budget_id, partida_id)


@router.post("/budgets/{budget_id}/mappings/auto", summary="Auto-map a budget")
def auto_map(budget_id: int, body: AutoMapRequest,
             conn: sqlite3.Connection = Depends(get_db)) -> dict:
    """Store mappings for matched partidas and link matched conceptos to sub-items."""
    return mapping.apply_template_mapping(conn, budget_id, body.department).to_dict()


@router.post("/mapping/major-group", response_model=MatchOut,
             summary="Match a partida to a major group")
def match_major_group(body: MatchRequest, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    if not body.department:
        raise ValidationError("department", "is required for major group matching")
    return mapping.map_partida_to_major_group(conn, body.code, body.name,
                                              body.department).to_dict()


@router.post("/mapping/sub-item", response_model=MatchOut,
             summary="Match a concepto to a sub-item")
def match_sub_item(body: MatchRequest, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return mapping.map_concepto_to_sub_item(conn, body.code, body.name,
                                            body.major_group_id).to_dict()


@router.post("/mapping/template", summary="Match a template against the catalog")
def match_template(body: TemplateMappingRequest,
                   conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return mapping.map_template_to_catalog(
        conn,
        [p.model_dump() for p in body.partidas],
        [c.model_dump() for c in body.conceptos],
        body.department,
    ).to_dict()
