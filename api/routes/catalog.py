"""
Catalog endpoints (read-only).

GET /api/v1/catalog/departments                       → active departments
GET /api/v1/catalog/major-groups?department=CONST     → major groups of a department
GET /api/v1/catalog/line-items?major_group_id=3       → line items of a major group
GET /api/v1/catalog/sub-items?line_item_id=7          → sub-items of a line item
GET /api/v1/catalog/sub-items/search                  → own + global sub-items, searchable
GET /api/v1/catalog/nodes/{id}/path                   → root-to-node chain

Listings are cached in-process for ``CATALOG_CACHE_TTL`` seconds; the catalog
is owned outside this service and changes rarely.
"""

import sqlite3

from fastapi import APIRouter, Depends, Query, Request

from api.database import get_db
from api.models import CatalogNodeOut
from planning import catalog

router = APIRouter(prefix="/catalog", tags=["catalog"])


def _cached(request: Request, key: tuple, compute):
    nodes = request.app.state.catalog_cache.get_or_compute(key, compute)
    return [n.to_dict() for n in nodes]


@router.get("/departments", response_model=list[CatalogNodeOut],
            summary="List departments")
def list_departments(request: Request,
                     conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return _cached(request, ("departments",),
                   lambda: catalog.list_departments(conn))


@router.get("/major-groups", response_model=list[CatalogNodeOut],
            summary="List major groups")
def list_major_groups(
    request: Request,
    department: str | None = Query(None, description="Department code or name"),
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict]:
    """Major groups ordered by code; an unknown department returns []."""
    return _cached(request, ("major_groups", department),
                   lambda: catalog.list_major_groups(conn, department))


@router.get("/line-items", response_model=list[CatalogNodeOut],
            summary="List line items")
def list_line_items(
    request: Request,
    major_group_id: int | None = Query(None, description="Parent major group"),
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict]:
    return _cached(request, ("line_items", major_group_id),
                   lambda: catalog.list_line_items(conn, major_group_id))


@router.get("/sub-items", response_model=list[CatalogNodeOut],
            summary="List sub-items")
def list_sub_items(
    request: Request,
    line_item_id: int | None = Query(None, description="Parent line item"),
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict]:
    return _cached(request, ("sub_items", line_item_id),
                   lambda: catalog.list_sub_items(conn, line_item_id))


@router.get("/sub-items/search", response_model=list[CatalogNodeOut],
            summary="Sub-items of a line item plus global sub-items")
def search_sub_items(
    request: Request,
    department: str = Query(..., description="Department code or name"),
    line_item_id: int | None = Query(None),
    q: str | None = Query(None, description="Matches code or name, ignoring case and accents"),
    limit: int = Query(50, ge=1, le=500),
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict]:
    """Global sub-items first, then the line item's own in natural code order."""
    config = request.app.state.config
    return _cached(
        request, ("sub_item_search", line_item_id, department, q, limit),
        lambda: catalog.list_sub_items_for_line_item_or_global(
            conn, line_item_id, department, search_text=q, limit=limit, config=config),
    )


@router.get("/nodes/{node_id}", response_model=CatalogNodeOut,
            summary="Get a catalog node")
def get_node(node_id: int, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    return catalog.get_node(conn, node_id).to_dict()


@router.get("/nodes/{node_id}/path", response_model=list[CatalogNodeOut],
            summary="Chain from the department down to a node")
def get_path(node_id: int, conn: sqlite3.Connection = Depends(get_db)) -> list[dict]:
    return [n.to_dict() for n in catalog.catalog_path(conn, node_id)]
