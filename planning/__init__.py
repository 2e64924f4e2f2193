"""Construction budget planning: catalog, budgets, mapping, import and rollup.

Every service function takes an open ``sqlite3.Connection`` (rows as
``sqlite3.Row``) as its first argument; see ``utils.database.get_connection``
and ``planning.schema.init_schema``.
"""

from planning.errors import (
    NotFoundError,
    PlanningError,
    PreconditionFailed,
    ValidationError,
)
from planning.importer import (
    LineItemSelection,
    MajorGroupSelection,
    import_catalog_selection,
)
from planning.models import (
    BaselineLine,
    Budget,
    CatalogNode,
    Concepto,
    MappingRecord,
    Partida,
    PurchaseRecord,
    RollupRow,
)
from planning.reports import ImportResult
from planning.rollup import build_rollup, compute_rollup, set_eac_method
from planning.schema import init_schema

__all__ = [
    "NotFoundError",
    "PlanningError",
    "PreconditionFailed",
    "ValidationError",
    "LineItemSelection",
    "MajorGroupSelection",
    "import_catalog_selection",
    "BaselineLine",
    "Budget",
    "CatalogNode",
    "Concepto",
    "MappingRecord",
    "Partida",
    "PurchaseRecord",
    "RollupRow",
    "ImportResult",
    "build_rollup",
    "compute_rollup",
    "set_eac_method",
    "init_schema",
]
