"""
POST /api/v1/budgets/{id}/import-catalog endpoint.

Creates one partida per selected major group and one zero-quantity concepto
per selected sub-item.  Bad ids are reported in the response body; the rest
of the selection is still imported.
"""

import sqlite3

from fastapi import APIRouter, Depends, Request, status

from api.database import get_db
from api.models import ImportOut, ImportRequest
from planning.importer import import_catalog_selection, parse_selection

router = APIRouter(tags=["imports"])


@router.post(
    "/budgets/{budget_id}/import-catalog",
    response_model=ImportOut,
    status_code=status.HTTP_201_CREATED,
    summary="Import a catalog selection into a draft budget",
)
def import_selection(budget_id: int, body: ImportRequest, request: Request,
                     conn: sqlite3.Connection = Depends(get_db)) -> dict:
    selection = parse_selection([mg.model_dump() for mg in body.selection])
    result = import_catalog_selection(conn, budget_id, selection, body.department,
                                      config=request.app.state.config)
    return result.to_dict()
